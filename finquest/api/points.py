"""Reward points API."""

from fastapi import APIRouter, Depends, Request

from finquest.core.auth import get_current_user_id
from finquest.core.logging import get_request_id
from finquest.features.challenges.service import ChallengeService, get_challenge_service


router = APIRouter(prefix="/v1/points", tags=["points"])


@router.get("")
def get_points(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Current points balance and the ledger entries behind it."""
    rid = getattr(request.state, "request_id", None) or get_request_id()
    return {"data": service.get_points(user_id), "request_id": rid}
