"""Savings goal API endpoints."""

from fastapi import APIRouter, Depends, Request

from finquest.core.auth import get_current_user_id
from finquest.core.logging import get_request_id
from finquest.core.tracing import start_span
from finquest.features.challenges.service import ChallengeService, get_challenge_service
from finquest.models.goal import ContributeRequest, CreateGoalRequest


router = APIRouter(prefix="/v1/goals", tags=["goals"])


@router.post("", status_code=201)
def create_goal(
    body: CreateGoalRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    goal = service.create_goal(user_id, body)
    return {"data": goal.model_dump(mode="json"), "request_id": rid}


@router.get("/{goal_id}")
def get_goal(
    goal_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    goal = service.get_goal(user_id, goal_id)
    return {"data": {**goal.model_dump(mode="json"), "percent_complete": goal.percent_complete}, "request_id": rid}


@router.post("/{goal_id}/contributions", status_code=201)
def contribute(
    goal_id: str,
    body: ContributeRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Add money to a goal, then re-evaluate the caller's challenges."""
    rid = getattr(request.state, "request_id", None) or get_request_id()
    with start_span("api.goals.contribute", {"user_id": user_id, "goal_id": goal_id}):
        goal, changed = service.record_goal_contribution_and_evaluate(user_id, goal_id, body.amount, note=body.note)
        return {
            "data": {
                "goal": goal.model_dump(mode="json"),
                "challenges": [c.model_dump(mode="json") for c in changed],
            },
            "request_id": rid,
        }
