import argparse
import json

from loguru import logger

from app import crud
from app.db import init_db, session_scope
from app.models import ensure_utc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or toggle automated market creation")
    toggle = parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", help="Turn automated creation on")
    toggle.add_argument("--disable", action="store_true", help="Turn automated creation off")
    parser.add_argument(
        "--logs",
        type=int,
        default=10,
        metavar="N",
        help="Show the N most recent creation log entries (0 to skip)",
    )
    return parser.parse_args()


def _format_time(value) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def main() -> None:
    args = parse_args()
    init_db()

    with session_scope() as session:
        if args.enable or args.disable:
            config = crud.set_automation_enabled(session, args.enable)
            logger.info("Automated market creation is now {}", "enabled" if config.enabled else "disabled")
        else:
            config = crud.get_automation_config(session)

        report = {
            "enabled": bool(config.enabled),
            "last_run": _format_time(config.last_run),
            "logs": [
                {
                    "execution_time": _format_time(entry.execution_time),
                    "question_type": entry.question_type,
                    "success": entry.success,
                    "market_id": entry.market_id,
                    "error_message": entry.error_message,
                }
                for entry in crud.list_automation_logs(session, limit=args.logs)
            ]
            if args.logs > 0
            else [],
        }

    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
