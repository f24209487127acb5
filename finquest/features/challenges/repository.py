"""Challenge repository: durable store keyed by id and by (user, status).

Writes are version-conditioned. ``save(challenge, expected_version)`` only
succeeds if the stored row still carries ``expected_version``; the stored copy
gets ``expected_version + 1``. A lost race raises ConcurrentModificationError.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import func, select

from finquest.core.database import as_utc, challenges as challenges_table, get_db_session
from finquest.core.errors import ConcurrentModificationError, NotFoundError
from finquest.models.challenge import Challenge, ChallengeProgress, ChallengeStatus


class ChallengeRepository(Protocol):
    def add(self, challenge: Challenge) -> Challenge: ...

    def get(self, challenge_id: str) -> Optional[Challenge]: ...

    def list_for_user(self, user_id: str, status: Optional[ChallengeStatus] = None) -> List[Challenge]: ...

    def count_active(self, user_id: str) -> int: ...

    def user_ids_with_active(self) -> List[str]: ...

    def save(self, challenge: Challenge, expected_version: int) -> Challenge: ...

    def mark_reward_issued(self, challenge_id: str) -> Challenge: ...

    def delete(self, challenge_id: str) -> None: ...


class InMemoryChallengeRepository:
    def __init__(self):
        self._rows: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def add(self, challenge: Challenge) -> Challenge:
        with self._lock:
            self._rows[challenge.id] = challenge
        return challenge

    def get(self, challenge_id: str) -> Optional[Challenge]:
        return self._rows.get(challenge_id)

    def list_for_user(self, user_id: str, status: Optional[ChallengeStatus] = None) -> List[Challenge]:
        with self._lock:
            rows = [
                c for c in self._rows.values()
                if c.user_id == user_id and (status is None or c.status == status)
            ]
        return sorted(rows, key=lambda c: (c.created_at, c.id), reverse=True)

    def count_active(self, user_id: str) -> int:
        return len(self.list_for_user(user_id, status="active"))

    def user_ids_with_active(self) -> List[str]:
        with self._lock:
            return sorted({c.user_id for c in self._rows.values() if c.status == "active"})

    def save(self, challenge: Challenge, expected_version: int) -> Challenge:
        with self._lock:
            stored = self._rows.get(challenge.id)
            if stored is None:
                raise NotFoundError(f"Challenge {challenge.id} not found")
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    f"Challenge {challenge.id} is at version {stored.version}, expected {expected_version}"
                )
            saved = challenge.model_copy(update={"version": expected_version + 1})
            self._rows[challenge.id] = saved
        return saved

    def mark_reward_issued(self, challenge_id: str) -> Challenge:
        with self._lock:
            stored = self._rows.get(challenge_id)
            if stored is None:
                raise NotFoundError(f"Challenge {challenge_id} not found")
            saved = stored.model_copy(update={"reward_issued": True, "version": stored.version + 1})
            self._rows[challenge_id] = saved
        return saved

    def delete(self, challenge_id: str) -> None:
        with self._lock:
            self._rows.pop(challenge_id, None)

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()


class SqlChallengeRepository:
    def add(self, challenge: Challenge) -> Challenge:
        with get_db_session() as session:
            session.execute(challenges_table.insert().values(**_to_row(challenge)))
        return challenge

    def get(self, challenge_id: str) -> Optional[Challenge]:
        with get_db_session() as session:
            row = session.execute(
                select(challenges_table).where(challenges_table.c.id == challenge_id)
            ).mappings().first()
        return _from_row(row) if row else None

    def list_for_user(self, user_id: str, status: Optional[ChallengeStatus] = None) -> List[Challenge]:
        stmt = select(challenges_table).where(challenges_table.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(challenges_table.c.status == status)
        stmt = stmt.order_by(challenges_table.c.created_at.desc(), challenges_table.c.id.desc())
        with get_db_session() as session:
            rows = session.execute(stmt).mappings().all()
        return [_from_row(row) for row in rows]

    def count_active(self, user_id: str) -> int:
        with get_db_session() as session:
            count = session.execute(
                select(func.count())
                .select_from(challenges_table)
                .where(challenges_table.c.user_id == user_id, challenges_table.c.status == "active")
            ).scalar()
        return int(count or 0)

    def user_ids_with_active(self) -> List[str]:
        stmt = (
            select(challenges_table.c.user_id)
            .where(challenges_table.c.status == "active")
            .distinct()
            .order_by(challenges_table.c.user_id)
        )
        with get_db_session() as session:
            return [row[0] for row in session.execute(stmt).all()]

    def save(self, challenge: Challenge, expected_version: int) -> Challenge:
        saved = challenge.model_copy(update={"version": expected_version + 1})
        values = _to_row(saved)
        values.pop("id")
        values.pop("created_at")
        with get_db_session() as session:
            result = session.execute(
                challenges_table.update()
                .where(challenges_table.c.id == challenge.id, challenges_table.c.version == expected_version)
                .values(**values)
            )
            if result.rowcount == 0:
                exists = session.execute(
                    select(challenges_table.c.version).where(challenges_table.c.id == challenge.id)
                ).first()
                if exists is None:
                    raise NotFoundError(f"Challenge {challenge.id} not found")
                raise ConcurrentModificationError(
                    f"Challenge {challenge.id} is at version {exists[0]}, expected {expected_version}"
                )
        return saved

    def mark_reward_issued(self, challenge_id: str) -> Challenge:
        with get_db_session() as session:
            result = session.execute(
                challenges_table.update()
                .where(challenges_table.c.id == challenge_id)
                .values(reward_issued=True, version=challenges_table.c.version + 1)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Challenge {challenge_id} not found")
        challenge = self.get(challenge_id)
        if challenge is None:
            raise NotFoundError(f"Challenge {challenge_id} not found")
        return challenge

    def delete(self, challenge_id: str) -> None:
        with get_db_session() as session:
            session.execute(challenges_table.delete().where(challenges_table.c.id == challenge_id))


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _to_row(challenge: Challenge) -> Dict:
    return {
        "id": challenge.id,
        "user_id": challenge.user_id,
        "type": challenge.type,
        "status": challenge.status,
        "difficulty": challenge.difficulty,
        "frequency": challenge.frequency,
        "title": challenge.title,
        "description": challenge.description,
        "rules": challenge.rules.model_dump(mode="json"),
        "progress": challenge.progress.model_dump(mode="json"),
        "reward_points": challenge.reward_points,
        "start_date": challenge.start_date,
        "end_date": challenge.end_date,
        "provenance": challenge.provenance,
        "generation_context": challenge.generation_context,
        "reward_issued": challenge.reward_issued,
        "version": challenge.version,
        "created_at": challenge.created_at,
        "updated_at": challenge.updated_at,
    }


def _from_row(row) -> Challenge:
    return Challenge(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        status=row["status"],
        difficulty=row["difficulty"],
        frequency=row["frequency"],
        title=row["title"],
        description=row["description"] or "",
        rules=row["rules"],
        progress=_progress_from_json(row["progress"]),
        reward_points=row["reward_points"],
        start_date=as_utc(row["start_date"]),
        end_date=as_utc(row["end_date"]),
        provenance=row["provenance"],
        generation_context=row["generation_context"],
        reward_issued=bool(row["reward_issued"]),
        version=row["version"],
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )


def _progress_from_json(data: Optional[Dict]) -> ChallengeProgress:
    progress = ChallengeProgress.model_validate(data or {})
    # JSON round-trips keep offsets; normalize so comparisons match in-memory values
    updates = {}
    for key in ("last_checked_at", "completed_at", "last_activity_at"):
        value: Optional[datetime] = getattr(progress, key)
        if value is not None:
            updates[key] = as_utc(value)
    return progress.model_copy(update=updates) if updates else progress
