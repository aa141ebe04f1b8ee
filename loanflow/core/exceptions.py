from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RuleViolation:
    field: str
    code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


class LoanflowError(Exception):
    """Base class for errors raised by the lifecycle engine."""

    code = "loanflow_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class LoanValidationError(LoanflowError):
    code = "validation_failed"

    def __init__(self, violations: list[RuleViolation], message: str | None = None) -> None:
        self.violations = list(violations)
        summary = message or "; ".join(v.message for v in self.violations) or "Validation failed"
        super().__init__(summary, details={"errors": [v.as_dict() for v in self.violations]})

    @property
    def codes(self) -> list[str]:
        return [violation.code for violation in self.violations]


class OpenLoanExistsError(LoanValidationError):
    """A client may hold only one open loan; raised by the store when a write would break that."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        super().__init__(
            [RuleViolation("client_id", "EXISTING_ACTIVE_LOAN", "Client already has an open loan")]
        )


class NotFoundError(LoanflowError):
    code = "not_found"

    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "id": str(identifier)},
        )


class AuthorizationError(LoanflowError):
    code = "forbidden"


class InvalidStateError(LoanflowError):
    code = "invalid_state"

    def __init__(self, current_stage: str, target_stage: str) -> None:
        self.current_stage = current_stage
        self.target_stage = target_stage
        super().__init__(
            f"Cannot move loan from {current_stage} to {target_stage}",
            details={"current_stage": current_stage, "target_stage": target_stage},
        )


class ConcurrencyConflictError(LoanflowError):
    code = "conflict"


class DuplicateLoanError(LoanflowError):
    code = "duplicate_loan"


class ApplicationSequenceExhaustedError(LoanflowError):
    code = "application_sequence_exhausted"

    def __init__(self, year: int, month: int, limit: int) -> None:
        super().__init__(
            f"No loan application ids left for {year}-{month:02d}",
            details={"year": year, "month": month, "limit": limit},
        )


class ExternalServiceError(LoanflowError):
    code = "external_service_error"

    def __init__(self, service: str, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.service = service
        super().__init__(f"{service}: {message}", details={"service": service, **(details or {})})


@dataclass
class ViolationCollector:
    """Accumulates rule violations so every failing rule is reported at once."""

    violations: list[RuleViolation] = field(default_factory=list)

    def add(self, field_name: str, code: str, message: str) -> None:
        self.violations.append(RuleViolation(field=field_name, code=code, message=message))

    def __bool__(self) -> bool:
        return bool(self.violations)

    def raise_if_any(self) -> None:
        if self.violations:
            raise LoanValidationError(self.violations)
