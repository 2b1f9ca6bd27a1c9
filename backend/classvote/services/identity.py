"""
Caller identity.

Authentication happens upstream (the identity provider or the gateway in
front of this API); requests arrive with the resolved uid in headers.
Anonymous callers get a random uid from `issue_anonymous`.
"""
import uuid
from dataclasses import dataclass

from fastapi import Header, HTTPException


@dataclass(frozen=True)
class Actor:
    uid: str
    is_anonymous: bool = True


def issue_anonymous() -> Actor:
    return Actor(uid=f"anon-{uuid.uuid4().hex}", is_anonymous=True)


async def optional_actor(
    x_user_id: str | None = Header(default=None),
    x_user_anonymous: bool = Header(default=True),
) -> Actor | None:
    """FastAPI dependency: the calling identity, or None for unidentified callers."""
    if not x_user_id:
        return None
    if "." in x_user_id:
        # uids are used as map keys in dotted update paths
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header")
    return Actor(uid=x_user_id, is_anonymous=x_user_anonymous)


async def require_actor(
    x_user_id: str | None = Header(default=None),
    x_user_anonymous: bool = Header(default=True),
) -> Actor:
    actor = await optional_actor(x_user_id, x_user_anonymous)
    if actor is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return actor
