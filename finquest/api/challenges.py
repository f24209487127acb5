"""Challenge API endpoints.

All endpoints identify the caller by the X-User-Id header and return
``{"data": ..., "request_id": ...}``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from finquest.core.auth import get_current_user_id
from finquest.core.logging import get_request_id
from finquest.core.tracing import start_span
from finquest.features.challenges.service import ChallengeService, get_challenge_service
from finquest.features.challenges.validators import CreateChallengeRequest, GenerateChallengesRequest
from finquest.models.challenge import ChallengeStatus


router = APIRouter(prefix="/v1/challenges", tags=["challenges"])


def _rid(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or get_request_id()


def _dump(challenges):
    return [c.model_dump(mode="json") for c in challenges]


@router.post("", status_code=201)
def create_challenge(
    body: CreateChallengeRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Create a challenge manually. Rules must match the challenge type."""
    with start_span("api.challenges.create", {"user_id": user_id, "type": body.type}):
        challenge = service.create_challenge(user_id, body)
        return {"data": challenge.model_dump(mode="json"), "request_id": _rid(request)}


@router.post("/generate", status_code=201)
def generate_challenges(
    request: Request,
    body: Optional[GenerateChallengesRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Generate personalized challenges (content model, or templates as fallback)."""
    with start_span("api.challenges.generate", {"user_id": user_id}):
        created = service.generate_challenges(user_id, body or GenerateChallengesRequest())
        return {"data": _dump(created), "request_id": _rid(request)}


@router.get("")
def list_challenges(
    request: Request,
    status: Optional[ChallengeStatus] = None,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return {"data": _dump(service.list_challenges(user_id, status=status)), "request_id": _rid(request)}


@router.get("/stats")
def challenge_stats(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    return {"data": service.get_stats(user_id).to_dict(), "request_id": _rid(request)}


@router.post("/check-progress")
def check_progress(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    """Run a full evaluation for the caller now; returns changed and newly created challenges."""
    with start_span("api.challenges.check_progress", {"user_id": user_id}):
        changed = service.run_scheduled_evaluation(user_id)
        return {"data": _dump(changed), "request_id": _rid(request)}


@router.get("/{challenge_id}")
def get_challenge(
    challenge_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    challenge = service.get_challenge(challenge_id, user_id=user_id)
    return {"data": challenge.model_dump(mode="json"), "request_id": _rid(request)}


@router.delete("/{challenge_id}")
def delete_challenge(
    challenge_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    service.delete_challenge(user_id, challenge_id)
    return {"data": {"deleted": True, "id": challenge_id}, "request_id": _rid(request)}
