"""
Caller identity for the FinQuest API.

Authentication is terminated upstream (gateway); requests arrive with a
trusted X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, description="Authenticated user id set by the gateway")
) -> str:
    """
    Extract the current user ID from the request.

    Raises:
        HTTPException 401: Missing or blank X-User-Id
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
