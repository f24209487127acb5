"""Savings goal store and contribution log."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select

from finquest.core.database import as_utc, get_db_session, goal_contributions, savings_goals
from finquest.core.errors import NotFoundError, ValidationError
from finquest.models.goal import GoalContribution, SavingsGoal


class GoalStore(Protocol):
    def create(self, user_id: str, name: str, target_amount: int, deadline: Optional[datetime], now: datetime) -> SavingsGoal: ...

    def get(self, goal_id: str) -> Optional[SavingsGoal]: ...

    def list_for_user(self, user_id: str) -> List[SavingsGoal]: ...

    def contribute(self, goal_id: str, amount: int, now: datetime, note: Optional[str] = None) -> SavingsGoal: ...


class InMemoryGoalStore:
    def __init__(self):
        self._goals: Dict[str, SavingsGoal] = {}
        self._contributions: List[GoalContribution] = []
        self._lock = threading.Lock()

    def create(self, user_id: str, name: str, target_amount: int, deadline: Optional[datetime], now: datetime) -> SavingsGoal:
        goal = SavingsGoal(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            target_amount=target_amount,
            deadline=deadline,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._goals[goal.id] = goal
        return goal

    def get(self, goal_id: str) -> Optional[SavingsGoal]:
        return self._goals.get(goal_id)

    def list_for_user(self, user_id: str) -> List[SavingsGoal]:
        with self._lock:
            goals = [g for g in self._goals.values() if g.user_id == user_id]
        return sorted(goals, key=lambda g: g.created_at)

    def contribute(self, goal_id: str, amount: int, now: datetime, note: Optional[str] = None) -> SavingsGoal:
        if amount <= 0:
            raise ValidationError("Contribution amount must be positive")
        with self._lock:
            goal = self._goals.get(goal_id)
            if goal is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            updated = goal.model_copy(update={"current_amount": goal.current_amount + amount, "updated_at": now})
            self._goals[goal_id] = updated
            self._contributions.append(
                GoalContribution(goal_id=goal_id, user_id=goal.user_id, amount=amount, note=note, contributed_at=now)
            )
        return updated

    def contributions(self, goal_id: str) -> List[GoalContribution]:
        return [c for c in self._contributions if c.goal_id == goal_id]


class SqlGoalStore:
    def create(self, user_id: str, name: str, target_amount: int, deadline: Optional[datetime], now: datetime) -> SavingsGoal:
        goal_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                savings_goals.insert().values(
                    id=goal_id,
                    user_id=user_id,
                    name=name,
                    target_amount=target_amount,
                    current_amount=0,
                    deadline=deadline,
                    created_at=now,
                    updated_at=now,
                )
            )
        return SavingsGoal(
            id=goal_id,
            user_id=user_id,
            name=name,
            target_amount=target_amount,
            deadline=deadline,
            created_at=now,
            updated_at=now,
        )

    def get(self, goal_id: str) -> Optional[SavingsGoal]:
        with get_db_session() as session:
            row = session.execute(select(savings_goals).where(savings_goals.c.id == goal_id)).mappings().first()
        return _row_to_goal(row) if row else None

    def list_for_user(self, user_id: str) -> List[SavingsGoal]:
        with get_db_session() as session:
            rows = session.execute(
                select(savings_goals)
                .where(savings_goals.c.user_id == user_id)
                .order_by(savings_goals.c.created_at)
            ).mappings().all()
        return [_row_to_goal(row) for row in rows]

    def contribute(self, goal_id: str, amount: int, now: datetime, note: Optional[str] = None) -> SavingsGoal:
        if amount <= 0:
            raise ValidationError("Contribution amount must be positive")
        with get_db_session() as session:
            row = session.execute(select(savings_goals).where(savings_goals.c.id == goal_id)).mappings().first()
            if row is None:
                raise NotFoundError(f"Goal {goal_id} not found")
            # Increment in SQL so concurrent contributions do not overwrite each other
            session.execute(
                savings_goals.update()
                .where(savings_goals.c.id == goal_id)
                .values(current_amount=savings_goals.c.current_amount + amount, updated_at=now)
            )
            session.execute(
                goal_contributions.insert().values(
                    goal_id=goal_id,
                    user_id=row["user_id"],
                    amount=amount,
                    note=note,
                    contributed_at=now,
                )
            )
        goal = self.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        return goal


def _row_to_goal(row) -> SavingsGoal:
    return SavingsGoal(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        target_amount=row["target_amount"],
        current_amount=row["current_amount"],
        deadline=as_utc(row["deadline"]),
        created_at=as_utc(row["created_at"]),
        updated_at=as_utc(row["updated_at"]),
    )
