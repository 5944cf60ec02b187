"""
Acting identity passed to every ledger write and status transition.

There is no ambient "current user": callers construct an Actor from the
authenticated token or name a system process explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from backend.app.models.enums import UserRole
from backend.app.models.shipment_enums import ActorKind


@dataclass(frozen=True)
class Actor:
    kind: ActorKind
    name: str
    id: Optional[int] = None
    role: Optional[UserRole] = None

    @classmethod
    def user(cls, user_id: int, name: str, role: UserRole) -> "Actor":
        return cls(kind=ActorKind.USER, name=name, id=user_id, role=role)

    @classmethod
    def system(cls, name: str) -> "Actor":
        return cls(kind=ActorKind.SYSTEM, name=name)

    @classmethod
    def from_token(cls, payload: dict) -> "Actor":
        """Build an Actor from a decoded access token payload."""
        return cls.user(
            user_id=payload["user_id"],
            name=payload.get("sub") or f"user-{payload['user_id']}",
            role=UserRole(payload["role"]),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def audit_fields(self) -> dict:
        """Column values shared by every ledger row this actor writes."""
        return {"actor_kind": self.kind, "actor_id": self.id, "actor_name": self.name}
