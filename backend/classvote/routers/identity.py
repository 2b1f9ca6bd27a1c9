"""
Anonymous identity issuance for callers without an account.
"""
from fastapi import APIRouter

from classvote.services.identity import issue_anonymous

router = APIRouter()


@router.post("/anonymous")
async def create_anonymous_identity():
    """Issue a fresh anonymous uid to send back as X-User-Id."""
    actor = issue_anonymous()
    return {"uid": actor.uid, "is_anonymous": actor.is_anonymous}
