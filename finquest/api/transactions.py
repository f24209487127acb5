"""Transaction API endpoints.

Recording a transaction evaluates the caller's active challenges right away
and returns the challenges that changed alongside the stored record.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request

from finquest.core.auth import get_current_user_id
from finquest.core.logging import get_request_id
from finquest.core.tracing import start_span
from finquest.features.challenges.service import ChallengeService, get_challenge_service
from finquest.models.transaction import CreateTransactionRequest


router = APIRouter(prefix="/v1/transactions", tags=["transactions"])


@router.post("", status_code=201)
def record_transaction(
    body: CreateTransactionRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    with start_span("api.transactions.record", {"user_id": user_id, "type": body.type}):
        txn, changed = service.record_transaction(user_id, body)
        return {
            "data": {
                "transaction": txn.model_dump(mode="json"),
                "challenges": [c.model_dump(mode="json") for c in changed],
            },
            "request_id": rid,
        }


@router.get("")
def list_transactions(
    request: Request,
    since: Optional[datetime] = None,
    user_id: str = Depends(get_current_user_id),
    service: ChallengeService = Depends(get_challenge_service),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    rows = service.list_transactions(user_id, since=since)
    return {"data": [t.model_dump(mode="json") for t in rows], "request_id": rid}
