from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Iterable


class Permission(str, Enum):
    LOAN_CREATE = "loan.create"
    LOAN_VIEW_OWN = "loan.view_own"
    LOAN_VIEW_REGIONAL = "loan.view_regional"
    LOAN_VIEW_ALL = "loan.view_all"

    LOAN_REVIEW_AGENT = "loan.review.agent"
    LOAN_APPROVE = "loan.approve"
    LOAN_REJECT = "loan.reject"
    LOAN_APPROVE_HIGH_VALUE = "loan.approve.high_value"

    LOAN_AGREEMENT_GENERATE = "loan.agreement.generate"
    LOAN_DISBURSE = "loan.disburse"
    LOAN_STATUS_OVERRIDE = "loan.status.override"
    LOAN_PAYMENT_RECORD = "loan.payment.record"

    AUDIT_LOG_VIEW = "audit_log.view"

    @classmethod
    def normalize(cls, values: Iterable[str]) -> FrozenSet["Permission"]:
        """Return the valid members among ``values``; unknown codes are dropped."""
        normalized: set[Permission] = set()
        for value in values:
            try:
                normalized.add(cls(value))
            except ValueError:
                continue
        return frozenset(normalized)


class Role(str, Enum):
    """Staff roles, declared from least to most privileged."""

    AGENT = "agent"
    REGIONAL_MANAGER = "regional_manager"
    CEO = "ceo"
    MODERATE_ADMIN = "moderate_admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self) + 1

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank

    @property
    def is_admin(self) -> bool:
        return self in (Role.MODERATE_ADMIN, Role.SUPER_ADMIN)

    @property
    def is_region_scoped(self) -> bool:
        return self in (Role.AGENT, Role.REGIONAL_MANAGER)

    @property
    def permissions(self) -> FrozenSet[Permission]:
        return ROLE_PERMISSIONS[self]

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Strict parse: only the canonical lowercase role names are accepted."""
        try:
            return cls(value)
        except ValueError as exc:
            raise ValueError(f"Unknown role: {value!r}") from exc


_ROLE_ORDER = list(Role)


_AGENT_PERMISSIONS = frozenset(
    {
        Permission.LOAN_CREATE,
        Permission.LOAN_VIEW_OWN,
        Permission.LOAN_REVIEW_AGENT,
        Permission.LOAN_AGREEMENT_GENERATE,
        Permission.LOAN_PAYMENT_RECORD,
    }
)

_CEO_PERMISSIONS = frozenset(
    {
        Permission.LOAN_VIEW_ALL,
        Permission.LOAN_APPROVE_HIGH_VALUE,
        Permission.AUDIT_LOG_VIEW,
    }
)

ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.AGENT: _AGENT_PERMISSIONS,
    Role.REGIONAL_MANAGER: _AGENT_PERMISSIONS
    | {
        Permission.LOAN_VIEW_REGIONAL,
        Permission.LOAN_APPROVE,
        Permission.LOAN_REJECT,
        Permission.LOAN_DISBURSE,
        Permission.AUDIT_LOG_VIEW,
    },
    Role.CEO: _CEO_PERMISSIONS,
    Role.MODERATE_ADMIN: _CEO_PERMISSIONS
    | {
        Permission.LOAN_APPROVE,
        Permission.LOAN_REJECT,
        Permission.LOAN_AGREEMENT_GENERATE,
        Permission.LOAN_DISBURSE,
        Permission.LOAN_STATUS_OVERRIDE,
        Permission.LOAN_PAYMENT_RECORD,
    },
    Role.SUPER_ADMIN: frozenset(Permission),
}

missing_roles = set(Role) - set(ROLE_PERMISSIONS)
if missing_roles:  # pragma: no cover - import-time guard
    raise RuntimeError(f"Roles without a permission set: {sorted(r.value for r in missing_roles)}")
del missing_roles
