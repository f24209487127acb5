"""
Reward points ledger.

Append-only: every award is a row keyed by a unique idempotency key, so
awarding the same key twice records one entry. Challenge rewards use the
challenge id as the key.
"""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finquest.core.database import as_utc, get_db_session, points_ledger
from finquest.core.errors import RewardIssuanceError, ValidationError


@dataclass(frozen=True)
class LedgerEntry:
    user_id: str
    amount: int
    reason: str
    idempotency_key: str
    created_at: datetime

    def to_dict(self) -> Dict:
        return asdict(self)


class PointsLedger(Protocol):
    def award_points(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> bool: ...

    def has_award(self, idempotency_key: str) -> bool: ...

    def balance(self, user_id: str) -> int: ...

    def entries(self, user_id: str) -> List[LedgerEntry]: ...


def _check_award(amount: int, idempotency_key: str) -> None:
    if amount <= 0:
        raise ValidationError("Award amount must be positive")
    if not idempotency_key:
        raise ValidationError("idempotency_key is required")


class InMemoryPointsLedger:
    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()

    def award_points(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> bool:
        """Record an award. Returns False when the key was already recorded."""
        _check_award(amount, idempotency_key)
        with self._lock:
            if idempotency_key in self._entries:
                return False
            self._entries[idempotency_key] = LedgerEntry(
                user_id=user_id,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
                created_at=datetime.now(timezone.utc),
            )
        return True

    def has_award(self, idempotency_key: str) -> bool:
        return idempotency_key in self._entries

    def balance(self, user_id: str) -> int:
        return sum(e.amount for e in self.entries(user_id))

    def entries(self, user_id: str) -> List[LedgerEntry]:
        with self._lock:
            rows = [e for e in self._entries.values() if e.user_id == user_id]
        return sorted(rows, key=lambda e: e.created_at)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class SqlPointsLedger:
    def award_points(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> bool:
        """Insert an award row; the unique key turns replays into no-ops."""
        _check_award(amount, idempotency_key)
        try:
            with get_db_session() as session:
                session.execute(
                    points_ledger.insert().values(
                        user_id=user_id,
                        amount=amount,
                        reason=reason,
                        idempotency_key=idempotency_key,
                        created_at=datetime.now(timezone.utc),
                    )
                )
            return True
        except IntegrityError:
            # UNIQUE constraint on idempotency_key: already awarded
            return False
        except SQLAlchemyError as exc:
            raise RewardIssuanceError(f"Ledger write failed for key {idempotency_key}") from exc

    def has_award(self, idempotency_key: str) -> bool:
        with get_db_session() as session:
            row = session.execute(
                select(points_ledger.c.id).where(points_ledger.c.idempotency_key == idempotency_key)
            ).first()
        return row is not None

    def balance(self, user_id: str) -> int:
        with get_db_session() as session:
            total = session.execute(
                select(func.coalesce(func.sum(points_ledger.c.amount), 0)).where(points_ledger.c.user_id == user_id)
            ).scalar()
        return int(total or 0)

    def entries(self, user_id: str) -> List[LedgerEntry]:
        with get_db_session() as session:
            rows = session.execute(
                select(points_ledger)
                .where(points_ledger.c.user_id == user_id)
                .order_by(points_ledger.c.created_at, points_ledger.c.id)
            ).mappings().all()
        return [
            LedgerEntry(
                user_id=row["user_id"],
                amount=row["amount"],
                reason=row["reason"],
                idempotency_key=row["idempotency_key"],
                created_at=as_utc(row["created_at"]),
            )
            for row in rows
        ]
