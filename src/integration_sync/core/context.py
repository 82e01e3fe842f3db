"""Explicit operator context threaded through every engine call.

Identity (organization, user, role) is resolved once per request by the
API layer and passed down as a value. Nothing in the engine reads it
from global or task-local state.
"""

from __future__ import annotations

from dataclasses import dataclass

SYSTEM_ROLE = "SYSTEM"


@dataclass(frozen=True)
class OperatorContext:
    """Immutable identity for the caller of an engine operation.

    Attributes:
        organization_id: Organization the operation is scoped to.
        user_id: Acting user, or None for scheduler-originated work.
        role: Role string as supplied by the upstream auth layer, None when
            the gateway forwarded none. Never assumed to be privileged.
    """

    organization_id: str
    user_id: str | None = None
    role: str | None = None

    @classmethod
    def system(cls, organization_id: str) -> OperatorContext:
        """Context used by background loops acting on behalf of an organization."""
        return cls(organization_id=organization_id, user_id=None, role=SYSTEM_ROLE)

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM_ROLE
