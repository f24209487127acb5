"""Transaction feed: append-only record of user money movements.

Two implementations share one contract: an in-memory feed for local runs and
tests, and a SQLAlchemy Core feed used when DATABASE_URL is configured.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy import distinct, select
from sqlalchemy.exc import IntegrityError

from finquest.core.database import as_utc, get_db_session, transactions as transactions_table
from finquest.core.errors import ConflictError
from finquest.models.transaction import Transaction


class TransactionFeed(Protocol):
    def append(self, txn: Transaction) -> Transaction: ...

    def get(self, transaction_id: str) -> Optional[Transaction]: ...

    def list_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]: ...

    def user_ids_active_since(self, since: datetime) -> List[str]: ...


class InMemoryTransactionFeed:
    def __init__(self):
        self._by_id: Dict[str, Transaction] = {}
        self._lock = threading.Lock()

    def append(self, txn: Transaction) -> Transaction:
        with self._lock:
            if txn.id in self._by_id:
                raise ConflictError(f"Transaction {txn.id} already recorded")
            self._by_id[txn.id] = txn
        return txn

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self._by_id.get(transaction_id)

    def list_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        with self._lock:
            rows = [
                t for t in self._by_id.values()
                if t.user_id == user_id and (since is None or t.occurred_at >= since)
            ]
        return sorted(rows, key=lambda t: t.sort_key)

    def user_ids_active_since(self, since: datetime) -> List[str]:
        with self._lock:
            return sorted({t.user_id for t in self._by_id.values() if t.occurred_at >= since})

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()


class SqlTransactionFeed:
    def append(self, txn: Transaction) -> Transaction:
        try:
            with get_db_session() as session:
                session.execute(
                    transactions_table.insert().values(
                        id=txn.id,
                        user_id=txn.user_id,
                        amount=txn.amount,
                        type=txn.type,
                        category=txn.category,
                        description=txn.description,
                        occurred_at=txn.occurred_at,
                        created_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError as exc:
            raise ConflictError(f"Transaction {txn.id} already recorded") from exc
        return txn

    def get(self, transaction_id: str) -> Optional[Transaction]:
        with get_db_session() as session:
            row = session.execute(
                select(transactions_table).where(transactions_table.c.id == transaction_id)
            ).mappings().first()
        return _row_to_transaction(row) if row else None

    def list_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        stmt = select(transactions_table).where(transactions_table.c.user_id == user_id)
        if since is not None:
            stmt = stmt.where(transactions_table.c.occurred_at >= since)
        stmt = stmt.order_by(transactions_table.c.occurred_at, transactions_table.c.id)
        with get_db_session() as session:
            rows = session.execute(stmt).mappings().all()
        return [_row_to_transaction(row) for row in rows]

    def user_ids_active_since(self, since: datetime) -> List[str]:
        stmt = (
            select(distinct(transactions_table.c.user_id))
            .where(transactions_table.c.occurred_at >= since)
            .order_by(transactions_table.c.user_id)
        )
        with get_db_session() as session:
            return [row[0] for row in session.execute(stmt).all()]


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        type=row["type"],
        category=row["category"],
        description=row["description"] or "",
        occurred_at=as_utc(row["occurred_at"]),
    )
