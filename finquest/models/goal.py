"""Savings goals and the contributions that fund them."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SavingsGoal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str = Field(min_length=1, max_length=200)
    target_amount: int = Field(gt=0)
    current_amount: int = Field(default=0, ge=0)
    deadline: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def percent_complete(self) -> float:
        return round(min(self.current_amount / self.target_amount, 1.0) * 100, 2)


class GoalContribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    goal_id: str
    user_id: str
    amount: int = Field(gt=0)
    note: Optional[str] = None
    contributed_at: datetime


class CreateGoalRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    target_amount: int = Field(gt=0)
    deadline: Optional[datetime] = None


class ContributeRequest(BaseModel):
    amount: int = Field(gt=0)
    note: Optional[str] = Field(default=None, max_length=500)
