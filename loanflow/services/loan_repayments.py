from __future__ import annotations

from datetime import datetime

from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.schemas.loan import Loan, PaymentCreate, PaymentRecord, PaymentStatus, WorkflowStage
from loanflow.services import audit, financial, loan_workflow
from loanflow.services.loan_rules import RulePolicy, validate_payment


def apply_payment(
    loan: Loan,
    payment: PaymentCreate,
    actor: Actor,
    *,
    now: datetime,
    provenance: RequestProvenance | None = None,
    rule_policy: RulePolicy | None = None,
    workflow_policy: loan_workflow.WorkflowPolicy | None = None,
) -> Loan:
    """Post one payment to a copy of ``loan`` and return it.

    A payment that settles the balance also moves the loan to
    ``loan_completed`` on the same copy.
    """
    amount = financial.money(payment.amount)
    validate_payment(loan, amount, policy=rule_policy)

    updated = loan.model_copy(deep=True)
    before = audit.loan_snapshot(updated)
    record = PaymentRecord(
        amount=amount,
        method=payment.method,
        status=PaymentStatus.COMPLETED,
        reference=payment.reference,
        recorded_by=actor.id,
        paid_at=now,
    )
    updated.payment_history.append(record)
    updated.remaining_balance = financial.money(updated.remaining_balance - amount)
    if amount >= updated.monthly_installment and updated.next_payment_date is not None:
        updated.next_payment_date = financial.next_payment_date(updated.next_payment_date)
    updated.days_overdue = financial.days_overdue(updated.next_payment_date, now.date(), updated.remaining_balance)
    updated.updated_at = now

    audit.record(
        updated,
        action="loan.payment_posted",
        actor=actor,
        old_value=before,
        new_value=audit.loan_snapshot(updated),
        comment=payment.reference,
        provenance=provenance,
        extra_changes={"payment": {"from": None, "to": record}},
    )

    if updated.remaining_balance <= 0:
        updated = loan_workflow.attempt_transition(
            updated,
            WorkflowStage.LOAN_COMPLETED,
            actor,
            loan_workflow.TransitionPayload(comments="Balance settled"),
            provenance=provenance,
            policy=workflow_policy,
            now=now,
        )
    return updated
