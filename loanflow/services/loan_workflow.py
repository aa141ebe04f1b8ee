from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from loanflow.core.exceptions import InvalidStateError, RuleViolation, LoanValidationError
from loanflow.core.settings import settings
from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.schemas.loan import (
    AgentReview,
    AgreementReference,
    Loan,
    RegionalApproval,
    ReviewStatus,
    StageHistoryEntry,
    WorkflowStage,
    utcnow,
)
from loanflow.services import audit, financial

S = WorkflowStage

ADJACENCY: dict[WorkflowStage, frozenset[WorkflowStage]] = {
    S.APPLICATION_SUBMITTED: frozenset({S.AGENT_APPROVED, S.AGENT_REJECTED}),
    S.AGENT_APPROVED: frozenset({S.REGIONAL_APPROVED, S.REGIONAL_REJECTED}),
    S.AGENT_REJECTED: frozenset(),
    S.REGIONAL_APPROVED: frozenset({S.AGREEMENT_GENERATED}),
    S.REGIONAL_REJECTED: frozenset(),
    S.AGREEMENT_GENERATED: frozenset({S.FUNDS_DISBURSED}),
    S.FUNDS_DISBURSED: frozenset({S.LOAN_ACTIVE}),
    S.LOAN_ACTIVE: frozenset({S.LOAN_COMPLETED, S.DEFAULTED}),
    S.LOAN_COMPLETED: frozenset(),
    S.DEFAULTED: frozenset({S.LOAN_ACTIVE}),
}

TERMINAL_STAGES = frozenset(stage for stage, targets in ADJACENCY.items() if not targets)
AGENT_DECISION_STAGES = frozenset({S.AGENT_APPROVED, S.AGENT_REJECTED})
REGIONAL_DECISION_STAGES = frozenset({S.REGIONAL_APPROVED, S.REGIONAL_REJECTED})


@dataclass(frozen=True)
class WorkflowPolicy:
    first_payment_offset_days: int = 30
    commission_rate_percent: Decimal = Decimal("2")

    @classmethod
    def from_settings(cls) -> "WorkflowPolicy":
        return cls(
            first_payment_offset_days=settings.first_payment_offset_days,
            commission_rate_percent=settings.commission_rate_percent,
        )


@dataclass(frozen=True)
class TransitionPayload:
    comments: str | None = None
    rating: int | None = None
    conditions: tuple[str, ...] = field(default_factory=tuple)
    agreement: AgreementReference | None = None


def allowed_targets(stage: WorkflowStage) -> frozenset[WorkflowStage]:
    return ADJACENCY[WorkflowStage(stage)]


def is_reachable(current: WorkflowStage, target: WorkflowStage) -> bool:
    return WorkflowStage(target) in allowed_targets(current)


def ensure_reachable(loan: Loan, target: WorkflowStage) -> None:
    if not is_reachable(loan.current_stage, target):
        raise InvalidStateError(loan.current_stage.value, WorkflowStage(target).value)


def is_terminal(stage: WorkflowStage) -> bool:
    return WorkflowStage(stage) in TERMINAL_STAGES


def _decision_status(target: WorkflowStage) -> ReviewStatus:
    if target in (S.AGENT_APPROVED, S.REGIONAL_APPROVED):
        return ReviewStatus.APPROVED
    return ReviewStatus.REJECTED


def _apply_entry_effects(
    loan: Loan,
    target: WorkflowStage,
    actor: Actor,
    payload: TransitionPayload,
    *,
    now: datetime,
    today: date,
    policy: WorkflowPolicy,
) -> None:
    if target in AGENT_DECISION_STAGES:
        loan.agent_review = AgentReview(
            status=_decision_status(target),
            reviewer_id=actor.id,
            reviewed_at=now,
            comments=payload.comments,
            rating=payload.rating,
        )
    elif target in REGIONAL_DECISION_STAGES:
        loan.regional_approval = RegionalApproval(
            status=_decision_status(target),
            approver_id=actor.id,
            approved_at=now,
            comments=payload.comments,
            conditions=list(payload.conditions),
        )

    if target == S.REGIONAL_APPROVED:
        loan.next_payment_date = financial.next_payment_date(today, policy.first_payment_offset_days)
        loan.commission = financial.money(
            financial.commission(loan.principal, policy.commission_rate_percent)
        )
    elif target == S.AGREEMENT_GENERATED:
        if payload.agreement is None:
            raise LoanValidationError(
                [RuleViolation("agreement", "AGREEMENT_REQUIRED", "An agreement reference is required")]
            )
        loan.agreement = payload.agreement
    elif target == S.LOAN_ACTIVE:
        if loan.disbursement_date is None:
            loan.disbursement_date = today
        loan.defaulted_on = None
    elif target == S.LOAN_COMPLETED:
        loan.remaining_balance = financial.money(0)
        loan.completion_date = today
        loan.next_payment_date = None
    elif target == S.DEFAULTED:
        loan.defaulted_on = today

    loan.days_overdue = financial.days_overdue(loan.next_payment_date, today, loan.remaining_balance)


def attempt_transition(
    loan: Loan,
    target_stage: WorkflowStage,
    actor: Actor,
    payload: TransitionPayload | None = None,
    *,
    provenance: RequestProvenance | None = None,
    policy: WorkflowPolicy | None = None,
    now: datetime | None = None,
) -> Loan:
    """Apply one transition and return the updated copy; ``loan`` itself is never touched.

    The stage change, decision record, derived fields and the audit entry are
    produced together on the copy, so a failure at any step leaves nothing
    half-applied.
    """
    target = WorkflowStage(target_stage)
    ensure_reachable(loan, target)
    payload = payload or TransitionPayload()
    policy = policy or WorkflowPolicy.from_settings()
    now = now or utcnow()
    today = now.date()

    updated = loan.model_copy(deep=True)
    before = audit.loan_snapshot(updated)
    _apply_entry_effects(updated, target, actor, payload, now=now, today=today, policy=policy)
    updated.current_stage = target
    updated.stage_history.append(StageHistoryEntry(stage=target, entered_at=now, actor_id=actor.id))
    updated.updated_at = now

    audit.record(
        updated,
        action=f"loan.{target.value}",
        actor=actor,
        old_value=before,
        new_value=audit.loan_snapshot(updated),
        comment=payload.comments,
        provenance=provenance,
    )
    return updated
