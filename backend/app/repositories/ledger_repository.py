"""Bets, user balances and transaction rows touched by settlement."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from app.domain import TransactionStatus, TransactionType
from app.models import Bet, LedgerTransaction, User


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def bets_for_market(self, market_id: int) -> list[Bet]:
        query = (
            select(Bet)
            .options(selectinload(Bet.user))
            .where(Bet.market_id == market_id)
            .order_by(Bet.id.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def credit_balance(self, user_id: int, amount: Decimal) -> None:
        # Relative update so concurrent credits never overwrite each other.
        self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + Decimal(amount))
        )

    def record_transaction(
        self,
        *,
        user_id: int,
        market_id: int | None,
        tx_type: TransactionType,
        amount: Decimal,
        status: TransactionStatus,
        transfer_ref: str | None = None,
        error_message: str | None = None,
    ) -> LedgerTransaction:
        record = LedgerTransaction(
            user_id=user_id,
            market_id=market_id,
            type=tx_type.value,
            amount=Decimal(amount),
            status=status.value,
            transfer_ref=transfer_ref,
            error_message=error_message,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def list_transactions(
        self, *, market_id: int | None = None, tx_type: TransactionType | None = None
    ) -> list[LedgerTransaction]:
        query = select(LedgerTransaction).order_by(LedgerTransaction.id.asc())
        if market_id is not None:
            query = query.where(LedgerTransaction.market_id == market_id)
        if tx_type is not None:
            query = query.where(LedgerTransaction.type == tx_type.value)
        return list(self._session.execute(query).scalars().all())


__all__ = ["LedgerRepository"]
