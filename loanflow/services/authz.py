from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum

from loanflow.core.exceptions import AuthorizationError
from loanflow.core.permissions import Permission, Role
from loanflow.core.settings import settings
from loanflow.schemas.actor import Actor
from loanflow.schemas.loan import Loan, LoanListFilter, WorkflowStage, stages_for_statuses
from loanflow.services.loan_store import LoanQuery


class LoanAction(str, Enum):
    CREATE_APPLICATION = "create_application"
    VIEW = "view"
    VIEW_AUDIT = "view_audit"
    AGENT_REVIEW = "agent_review"
    REGIONAL_APPROVE = "regional_approve"
    REGIONAL_REJECT = "regional_reject"
    GENERATE_AGREEMENT = "generate_agreement"
    DISBURSE = "disburse"
    ACTIVATE = "activate"
    COMPLETE = "complete"
    MARK_DEFAULT = "mark_default"
    REINSTATE = "reinstate"
    POST_PAYMENT = "post_payment"


ACTION_PERMISSIONS: dict[LoanAction, Permission] = {
    LoanAction.CREATE_APPLICATION: Permission.LOAN_CREATE,
    LoanAction.VIEW_AUDIT: Permission.AUDIT_LOG_VIEW,
    LoanAction.AGENT_REVIEW: Permission.LOAN_REVIEW_AGENT,
    LoanAction.REGIONAL_APPROVE: Permission.LOAN_APPROVE,
    LoanAction.REGIONAL_REJECT: Permission.LOAN_REJECT,
    LoanAction.GENERATE_AGREEMENT: Permission.LOAN_AGREEMENT_GENERATE,
    LoanAction.DISBURSE: Permission.LOAN_DISBURSE,
    LoanAction.ACTIVATE: Permission.LOAN_DISBURSE,
    LoanAction.COMPLETE: Permission.LOAN_STATUS_OVERRIDE,
    LoanAction.MARK_DEFAULT: Permission.LOAN_STATUS_OVERRIDE,
    LoanAction.REINSTATE: Permission.LOAN_STATUS_OVERRIDE,
    LoanAction.POST_PAYMENT: Permission.LOAN_PAYMENT_RECORD,
}

VIEW_PERMISSIONS = (Permission.LOAN_VIEW_OWN, Permission.LOAN_VIEW_REGIONAL, Permission.LOAN_VIEW_ALL)

_TRANSITION_ACTIONS: dict[WorkflowStage, LoanAction] = {
    WorkflowStage.AGENT_APPROVED: LoanAction.AGENT_REVIEW,
    WorkflowStage.AGENT_REJECTED: LoanAction.AGENT_REVIEW,
    WorkflowStage.REGIONAL_APPROVED: LoanAction.REGIONAL_APPROVE,
    WorkflowStage.REGIONAL_REJECTED: LoanAction.REGIONAL_REJECT,
    WorkflowStage.AGREEMENT_GENERATED: LoanAction.GENERATE_AGREEMENT,
    WorkflowStage.FUNDS_DISBURSED: LoanAction.DISBURSE,
    WorkflowStage.LOAN_COMPLETED: LoanAction.COMPLETE,
    WorkflowStage.DEFAULTED: LoanAction.MARK_DEFAULT,
}


def action_for_transition(current: WorkflowStage, target: WorkflowStage) -> LoanAction:
    target = WorkflowStage(target)
    if target == WorkflowStage.LOAN_ACTIVE:
        if WorkflowStage(current) == WorkflowStage.DEFAULTED:
            return LoanAction.REINSTATE
        return LoanAction.ACTIVATE
    try:
        return _TRANSITION_ACTIONS[target]
    except KeyError:
        raise ValueError(f"No action leads into stage {target.value}") from None


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = AuthorizationDecision(True)


def _deny(reason: str) -> AuthorizationDecision:
    return AuthorizationDecision(False, reason)


def is_high_value(loan: Loan, threshold: Decimal | None = None) -> bool:
    limit = settings.high_value_threshold if threshold is None else threshold
    return loan.principal > limit


def assignment_matches(actor: Actor, loan: Loan) -> bool:
    """Whether a region-scoped actor is the assigned party for ``loan``."""
    if actor.role == Role.AGENT:
        return loan.assigned_agent_id == actor.id
    if actor.role == Role.REGIONAL_MANAGER:
        if loan.assigned_regional_manager_id == actor.id:
            return True
        return bool(actor.region_id) and loan.region_id == actor.region_id
    return True


def _check_permissions(
    actor: Actor, loan: Loan | None, action: LoanAction, threshold: Decimal | None
) -> AuthorizationDecision:
    if action == LoanAction.VIEW:
        if any(actor.has_permission(code) for code in VIEW_PERMISSIONS):
            return ALLOW
        return _deny("Missing permission to view loans")

    high_value = loan is not None and is_high_value(loan, threshold)
    if action == LoanAction.REGIONAL_APPROVE and high_value:
        if not actor.role.at_least(Role.CEO) or not actor.has_permission(Permission.LOAN_APPROVE_HIGH_VALUE):
            return _deny("High-value loans require CEO approval or above")
        return ALLOW
    if action == LoanAction.REGIONAL_REJECT and high_value:
        if actor.has_permission(Permission.LOAN_REJECT) or (
            actor.role.at_least(Role.CEO) and actor.has_permission(Permission.LOAN_APPROVE_HIGH_VALUE)
        ):
            return ALLOW
        return _deny(f"Missing permission: {Permission.LOAN_REJECT.value}")

    required = ACTION_PERMISSIONS[action]
    if not actor.has_permission(required):
        return _deny(f"Missing permission: {required.value}")
    return ALLOW


def evaluate(
    actor: Actor,
    loan: Loan | None,
    action: LoanAction,
    *,
    high_value_threshold: Decimal | None = None,
) -> AuthorizationDecision:
    action = LoanAction(action)
    if actor.role == Role.SUPER_ADMIN:
        return ALLOW

    decision = _check_permissions(actor, loan, action, high_value_threshold)
    if not decision:
        return decision

    # Assignment only binds the region-scoped roles; CEO and admins act organisation-wide.
    if loan is not None and actor.role.is_region_scoped and not assignment_matches(actor, loan):
        if actor.role == Role.AGENT:
            return _deny("Only the assigned agent may act on this loan")
        return _deny("Loan is outside the regional manager's assignment")
    return ALLOW


def authorize(actor: Actor, loan: Loan | None, action: LoanAction, **kwargs) -> bool:
    return evaluate(actor, loan, action, **kwargs).allowed


def require(actor: Actor, loan: Loan | None, action: LoanAction, **kwargs) -> None:
    decision = evaluate(actor, loan, action, **kwargs)
    if not decision:
        raise AuthorizationError(
            decision.reason or "Not permitted",
            details={"action": LoanAction(action).value, "role": actor.role.value},
        )


def scope_query(actor: Actor, requested: LoanListFilter) -> LoanQuery | None:
    """Intersect a list request with what ``actor`` may see.

    Returns ``None`` when the request asks for something outside that scope,
    which callers treat as an empty result rather than an error.
    """
    stages: frozenset[WorkflowStage] | None = None
    if requested.status is not None:
        stages = frozenset(stages_for_statuses([requested.status]))
    if requested.stage is not None:
        wanted = frozenset({requested.stage})
        stages = wanted if stages is None else stages & wanted

    query = LoanQuery(
        stages=stages,
        client_id=requested.client_id,
        assigned_agent_id=requested.assigned_agent_id,
        region_id=requested.region_id,
        limit=requested.limit,
        offset=requested.offset,
    )

    if actor.has_permission(Permission.LOAN_VIEW_ALL):
        return query
    if actor.has_permission(Permission.LOAN_VIEW_REGIONAL):
        if actor.region_id:
            if requested.region_id not in (None, actor.region_id):
                return None
            return replace(query, region_id=actor.region_id)
        return replace(query, assigned_regional_manager_id=actor.id)
    if actor.has_permission(Permission.LOAN_VIEW_OWN):
        if requested.assigned_agent_id not in (None, actor.id):
            return None
        return replace(query, assigned_agent_id=actor.id)
    raise AuthorizationError(
        "Missing permission to view loans",
        details={"action": LoanAction.VIEW.value, "role": actor.role.value},
    )
