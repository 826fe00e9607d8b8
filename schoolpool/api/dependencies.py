"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Header, HTTPException, Request

from schoolpool.domain.entities import Actor
from schoolpool.services.engine import PickupEngine


def get_engine(request: Request) -> PickupEngine:
    """The engine built in the app lifespan (or injected by tests)."""
    return request.app.state.engine


async def get_actor(
    x_profile_id: Optional[str] = Header(None),
    x_verified_provider: bool = Header(False),
    x_admin: bool = Header(False),
) -> Actor:
    """Caller identity as forwarded by the upstream identity provider."""
    if not x_profile_id:
        raise HTTPException(status_code=401, detail="Missing X-Profile-Id header")
    return Actor(
        profile_id=x_profile_id,
        is_verified_provider=x_verified_provider,
        is_admin=x_admin,
    )
