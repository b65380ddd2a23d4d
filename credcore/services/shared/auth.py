"""
credcore caller context
-----------------------
Provides the `get_actor` FastAPI dependency used by every write endpoint.

The upstream gateway authenticates the caller and forwards who they are:
  X-Actor-Id     user id (required)
  X-Actor-Role   member | approver | admin (default member)
  X-Company-Id   company the caller belongs to

credcore trusts these headers; it performs no authentication of its own.

Usage in a FastAPI route:
    from credcore.services.shared.auth import Actor, get_actor

    @router.post("/requests/{request_id}/approve")
    def approve(request_id: str, actor: Actor = Depends(get_actor), db=Depends(get_db)):
        ...
"""

import enum
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from credcore.services.shared.errors import Unauthorized


class ActorRole(str, enum.Enum):
    member   = "member"
    approver = "approver"
    admin    = "admin"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: ActorRole = ActorRole.member
    company_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.admin


def get_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
    x_company_id: str | None = Header(None, alias="X-Company-Id"),
) -> Actor:
    """FastAPI dependency: resolves the calling user from gateway headers."""
    if not x_actor_id:
        raise Unauthorized("X-Actor-Id header is required")
    try:
        role = ActorRole((x_actor_role or ActorRole.member.value).lower())
    except ValueError:
        raise Unauthorized(
            f"Unknown actor role '{x_actor_role}'",
            detail={"allowed": [r.value for r in ActorRole]},
        )
    return Actor(user_id=x_actor_id, role=role, company_id=x_company_id)
