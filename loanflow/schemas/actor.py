from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from loanflow.core.permissions import Permission, Role


class Actor(BaseModel):
    """Authenticated caller as asserted by the identity subsystem."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    region_id: str | None = None
    manager_id: str | None = None

    @property
    def permissions(self) -> frozenset[Permission]:
        return self.role.permissions

    def has_permission(self, permission: Permission) -> bool:
        if self.role == Role.SUPER_ADMIN:
            return True
        return permission in self.permissions


class RequestProvenance(BaseModel):
    model_config = ConfigDict(frozen=True)

    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
