from collections.abc import Generator, Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings


def _ensure_sqlite_path(database: str | None) -> None:
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def _create_engine(url: str):
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": settings.debug,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()
    driver = parsed.get_driver_name()

    if backend == "sqlite":
        # The API and both jobs share one file in development.
        connect_args["check_same_thread"] = False
        _ensure_sqlite_path(parsed.database)
    else:
        # Both loops hold connections across slow feed and ledger calls; recycle
        # them before pooler idle timeouts and rely on pre-ping to revive stale ones.
        engine_kwargs["pool_recycle"] = 300

        if backend.startswith("postgresql"):
            connect_args.update(keepalives=1, keepalives_idle=120, keepalives_interval=30, keepalives_count=5)
            if driver == "psycopg":
                # psycopg 3.2+: no server-side prepared statements behind a transaction pooler.
                connect_args["prepare_threshold"] = None

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_engine(url, **engine_kwargs)


def create_session_factory(engine) -> sessionmaker[Session]:
    # expire_on_commit stays off: the creation cycle reads the new market id and
    # the checker keeps working with rows after intermediate commits.
    return sessionmaker(
        bind=engine,
        autoflush=True,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def _build_db_components(url: str):
    engine = _create_engine(url)
    session_factory = create_session_factory(engine)
    return engine, session_factory


engine, SessionLocal = _build_db_components(settings.resolved_database_url)
Base = declarative_base()


def _ensure_column(engine, table: str, column: str, definition: str) -> None:
    inspector = inspect(engine)
    columns = {col["name"] for col in inspector.get_columns(table)}
    if column in columns:
        return
    with engine.begin() as connection:
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {definition}"))


def _apply_schema_updates(target_engine) -> None:
    dialect_name = target_engine.dialect.name
    boolean_default = "BOOLEAN DEFAULT FALSE" if dialect_name == "postgresql" else "BOOLEAN DEFAULT 0"
    _ensure_column(target_engine, "markets", "commitment_hash", "VARCHAR(64)")
    _ensure_column(target_engine, "markets", "commitment_secret", "VARCHAR(64)")
    _ensure_column(target_engine, "markets", "token_address2", "VARCHAR(64)")
    _ensure_column(target_engine, "markets", "is_private", boolean_default)
    _ensure_column(target_engine, "transactions", "transfer_ref", "VARCHAR(128)")
    _ensure_column(target_engine, "transactions", "error_message", "TEXT")
    with target_engine.begin() as connection:
        connection.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_transactions_transfer_ref"
                " ON transactions (transfer_ref)"
            )
        )
        connection.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_resolution_tracking_status"
                " ON market_resolution_tracking (status)"
            )
        )


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(session_factory=None) -> Iterator[Session]:
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(target_engine=None) -> None:
    from . import models  # noqa: F401

    target_engine = target_engine or engine
    Base.metadata.create_all(bind=target_engine)
    _apply_schema_updates(target_engine)
