from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from uuid import UUID

from loanflow.core.exceptions import (
    ConcurrencyConflictError,
    DuplicateLoanError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
)
from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.schemas.loan import (
    AgentReviewRequest,
    AgreementReference,
    Loan,
    LoanApplicationCreate,
    LoanListFilter,
    PaymentCreate,
    RegionalReviewRequest,
    ReviewDecision,
    StageHistoryEntry,
    WorkflowStage,
    utcnow,
)
from loanflow.services import audit, authz, financial, loan_identifiers, loan_repayments, loan_rules, loan_workflow
from loanflow.services.agreements import AgreementService
from loanflow.services.authz import LoanAction
from loanflow.services.directory import DirectoryService
from loanflow.services.loan_store import LoanStore
from loanflow.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

LoanBuilder = Callable[[Loan], Awaitable[Loan]]

CLIENT_MESSAGES: dict[WorkflowStage, tuple[str, str]] = {
    WorkflowStage.APPLICATION_SUBMITTED: (
        "Loan application received",
        "Your loan application {ref} has been received and is awaiting review.",
    ),
    WorkflowStage.AGENT_APPROVED: (
        "Loan application reviewed",
        "Your loan application {ref} passed agent review and is with the regional office.",
    ),
    WorkflowStage.AGENT_REJECTED: (
        "Loan application declined",
        "Your loan application {ref} was declined at agent review.",
    ),
    WorkflowStage.REGIONAL_APPROVED: (
        "Loan application approved",
        "Your loan application {ref} has been approved. Your agreement is being prepared.",
    ),
    WorkflowStage.REGIONAL_REJECTED: (
        "Loan application declined",
        "Your loan application {ref} was declined by the regional office.",
    ),
    WorkflowStage.FUNDS_DISBURSED: (
        "Loan funds disbursed",
        "Funds for loan {ref} have been disbursed.",
    ),
    WorkflowStage.LOAN_COMPLETED: (
        "Loan completed",
        "Loan {ref} has been repaid in full. Thank you.",
    ),
    WorkflowStage.DEFAULTED: (
        "Loan in default",
        "Loan {ref} has been marked as defaulted. Please contact your agent.",
    ),
}


class LoanLifecycleEngine:
    """Runs every loan action: gate, rules, transition, versioned write, then side effects.

    Nothing is written unless the gate, the rules and the state machine all
    accept the action. Notifications and agreement generation run only after
    the write and cannot undo it.
    """

    def __init__(
        self,
        *,
        store: LoanStore,
        directory: DirectoryService,
        notifier: NotificationDispatcher,
        agreements: AgreementService,
        rule_policy: loan_rules.RulePolicy | None = None,
        workflow_policy: loan_workflow.WorkflowPolicy | None = None,
        side_effect_timeout: float = 5.0,
        max_attempts: int = 3,
        auto_generate_agreement: bool = True,
    ) -> None:
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.agreements = agreements
        self.rule_policy = rule_policy or loan_rules.RulePolicy.from_settings()
        self.workflow_policy = workflow_policy or loan_workflow.WorkflowPolicy.from_settings()
        self.side_effect_timeout = side_effect_timeout
        self.max_attempts = max(1, max_attempts)
        self.auto_generate_agreement = auto_generate_agreement

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _resolve(self, loan_ref: UUID | str) -> Loan:
        key = loan_ref if isinstance(loan_ref, UUID) else loan_identifiers.parse_loan_ref(loan_ref)
        if isinstance(key, UUID):
            loan = await self.store.get(key)
        else:
            loan = await self.store.get_by_application_id(key)
        if loan is None:
            raise NotFoundError("Loan", loan_ref)
        return loan

    async def get_loan(self, actor: Actor, loan_ref: UUID | str) -> Loan:
        loan = await self._resolve(loan_ref)
        self._require(actor, loan, LoanAction.VIEW)
        return loan

    async def get_audit_trail(self, actor: Actor, loan_ref: UUID | str) -> Loan:
        loan = await self._resolve(loan_ref)
        self._require(actor, loan, LoanAction.VIEW_AUDIT)
        return loan

    async def list_loans(self, actor: Actor, requested: LoanListFilter) -> tuple[list[Loan], int]:
        query = authz.scope_query(actor, requested)
        if query is None:
            return [], 0
        items = await self.store.list_loans(query)
        total = await self.store.count_loans(query)
        return items, total

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _require(self, actor: Actor, loan: Loan | None, action: LoanAction) -> None:
        authz.require(actor, loan, action, high_value_threshold=self.rule_policy.high_value_threshold)

    async def _commit(self, loan_ref: UUID | str, build: LoanBuilder) -> tuple[Loan, Loan]:
        """Re-read, rebuild and write until the versioned update lands.

        ``build`` runs against the freshly loaded loan on every attempt, so a
        request that lost a race is judged again against the winner's state.
        """
        for attempt in range(1, self.max_attempts + 1):
            current = await self._resolve(loan_ref)
            updated = await build(current)
            try:
                stored = await self.store.update(updated, expected_version=current.version)
            except ConcurrencyConflictError:
                logger.info(
                    "Version conflict on loan %s (attempt %s/%s)",
                    current.loan_application_id,
                    attempt,
                    self.max_attempts,
                )
                continue
            audit.publish(stored, stored.audit_trail[len(current.audit_trail) :])
            return current, stored
        raise ConcurrencyConflictError(
            "Loan was modified concurrently; retry the request",
            details={"loan_ref": str(loan_ref), "attempts": self.max_attempts},
        )

    async def _transition(
        self,
        loan: Loan,
        target: WorkflowStage,
        actor: Actor,
        payload: loan_workflow.TransitionPayload,
        provenance: RequestProvenance | None,
        *,
        action: LoanAction | None = None,
        enforce_gate: bool = True,
    ) -> Loan:
        if action is None:
            try:
                action = authz.action_for_transition(loan.current_stage, target)
            except ValueError:
                raise InvalidStateError(loan.current_stage.value, WorkflowStage(target).value) from None
        if enforce_gate:
            self._require(actor, loan, action)
        await loan_rules.validate_transition(
            self.store, loan, target, actor, rating=payload.rating, policy=self.rule_policy
        )
        return loan_workflow.attempt_transition(
            loan,
            target,
            actor,
            payload,
            provenance=provenance,
            policy=self.workflow_policy,
            now=utcnow(),
        )

    async def create_application(
        self,
        actor: Actor,
        request: LoanApplicationCreate,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        self._require(actor, None, LoanAction.CREATE_APPLICATION)
        ctx = await loan_rules.validate_application(
            self.directory, self.store, actor, request, policy=self.rule_policy
        )
        terms = ctx.terms.rounded()

        for attempt in range(1, self.max_attempts + 1):
            now = utcnow()
            loan = Loan(
                loan_application_id=await loan_identifiers.next_application_id(self.store, now),
                client_id=ctx.client.id,
                assigned_agent_id=ctx.agent_id,
                assigned_regional_manager_id=ctx.regional_manager_id,
                region_id=ctx.loan_region_id,
                primary_guarantor_id=request.primary_guarantor_id,
                secondary_guarantor_id=request.secondary_guarantor_id,
                product=request.product,
                purpose=request.purpose,
                principal=financial.money(request.principal),
                annual_interest_rate=request.annual_interest_rate,
                term_months=request.term_months,
                monthly_installment=terms.monthly_installment,
                total_payable_amount=terms.total_payable,
                total_interest=terms.total_interest,
                remaining_balance=terms.total_payable,
                stage_history=[
                    StageHistoryEntry(
                        stage=WorkflowStage.APPLICATION_SUBMITTED, entered_at=now, actor_id=actor.id
                    )
                ],
                created_at=now,
                updated_at=now,
            )
            audit.record(
                loan,
                action="loan.created",
                actor=actor,
                old_value=None,
                new_value=audit.loan_snapshot(loan),
                provenance=provenance,
            )
            try:
                stored = await self.store.insert(loan)
            except DuplicateLoanError:
                logger.info(
                    "Application id %s taken, retrying (attempt %s/%s)",
                    loan.loan_application_id,
                    attempt,
                    self.max_attempts,
                )
                continue
            audit.publish(stored, stored.audit_trail)
            logger.info("Loan application %s created by %s", stored.loan_application_id, actor.id)
            await self._notify_client(stored)
            return stored
        raise ConcurrencyConflictError(
            "Could not allocate a loan application id; retry the request",
            details={"attempts": self.max_attempts},
        )

    async def agent_review(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        review: AgentReviewRequest,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        target = (
            WorkflowStage.AGENT_APPROVED
            if review.decision == ReviewDecision.APPROVED
            else WorkflowStage.AGENT_REJECTED
        )
        payload = loan_workflow.TransitionPayload(comments=review.comments, rating=review.rating)

        async def build(loan: Loan) -> Loan:
            return await self._transition(
                loan, target, actor, payload, provenance, action=LoanAction.AGENT_REVIEW
            )

        _, stored = await self._commit(loan_ref, build)
        await self._after_transition(actor, stored, provenance)
        return stored

    async def regional_review(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        review: RegionalReviewRequest,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        approved = review.decision == ReviewDecision.APPROVED
        target = WorkflowStage.REGIONAL_APPROVED if approved else WorkflowStage.REGIONAL_REJECTED
        action = LoanAction.REGIONAL_APPROVE if approved else LoanAction.REGIONAL_REJECT
        payload = loan_workflow.TransitionPayload(
            comments=review.comments, conditions=tuple(review.conditions)
        )

        async def build(loan: Loan) -> Loan:
            return await self._transition(loan, target, actor, payload, provenance, action=action)

        _, stored = await self._commit(loan_ref, build)
        await self._after_transition(actor, stored, provenance)
        return stored

    async def generate_agreement(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        return await self._apply_agreement(actor, loan_ref, provenance, enforce_gate=True)

    async def _generate_reference(self, loan: Loan) -> AgreementReference:
        try:
            return await asyncio.wait_for(self.agreements.generate(loan), timeout=self.side_effect_timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalServiceError(
                "agreements", "Agreement generation timed out", details={"loan_id": str(loan.id)}
            ) from exc

    async def _apply_agreement(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        provenance: RequestProvenance | None,
        *,
        enforce_gate: bool,
    ) -> Loan:
        target = WorkflowStage.AGREEMENT_GENERATED
        loan = await self._resolve(loan_ref)
        if enforce_gate:
            self._require(actor, loan, LoanAction.GENERATE_AGREEMENT)
        loan_rules.validate_status_update(loan, target, actor, policy=self.rule_policy)
        # One document per request; retries only re-check the fresh loan.
        payload = loan_workflow.TransitionPayload(agreement=await self._generate_reference(loan))

        async def build(current: Loan) -> Loan:
            return await self._transition(
                current,
                target,
                actor,
                payload,
                provenance,
                action=LoanAction.GENERATE_AGREEMENT,
                enforce_gate=enforce_gate,
            )

        _, stored = await self._commit(loan_ref, build)
        logger.info(
            "Agreement %s attached to loan %s",
            stored.agreement.agreement_id if stored.agreement else None,
            stored.loan_application_id,
        )
        return stored

    async def update_status(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        target_stage: WorkflowStage,
        comment: str | None = None,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        target = WorkflowStage(target_stage)
        if target == WorkflowStage.AGREEMENT_GENERATED:
            return await self.generate_agreement(actor, loan_ref, provenance)
        payload = loan_workflow.TransitionPayload(comments=comment)

        async def build(loan: Loan) -> Loan:
            return await self._transition(loan, target, actor, payload, provenance)

        _, stored = await self._commit(loan_ref, build)
        await self._after_transition(actor, stored, provenance)
        return stored

    async def post_payment(
        self,
        actor: Actor,
        loan_ref: UUID | str,
        payment: PaymentCreate,
        provenance: RequestProvenance | None = None,
    ) -> Loan:
        async def build(loan: Loan) -> Loan:
            self._require(actor, loan, LoanAction.POST_PAYMENT)
            return loan_repayments.apply_payment(
                loan,
                payment,
                actor,
                now=utcnow(),
                provenance=provenance,
                rule_policy=self.rule_policy,
                workflow_policy=self.workflow_policy,
            )

        _, stored = await self._commit(loan_ref, build)
        last_payment = stored.payment_history[-1]
        await self._notify_client(
            stored,
            subject="Payment received",
            body=(
                f"We received {last_payment.amount} for loan {stored.loan_application_id}. "
                f"Remaining balance: {stored.remaining_balance}."
            ),
        )
        if stored.current_stage == WorkflowStage.LOAN_COMPLETED:
            await self._notify_client(stored)
        return stored

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _after_transition(
        self, actor: Actor, stored: Loan, provenance: RequestProvenance | None
    ) -> None:
        """Post-commit effects keyed by the stage the loan landed in, whichever action moved it."""
        await self._notify_client(stored)
        if stored.current_stage == WorkflowStage.AGENT_APPROVED:
            await self._notify_staff(
                stored,
                stored.assigned_regional_manager_id,
                "Loan awaiting regional review",
                f"Loan {stored.loan_application_id} was approved by the agent and awaits your decision.",
            )
        elif stored.current_stage == WorkflowStage.REGIONAL_APPROVED and self.auto_generate_agreement:
            await self._run_side_effect(
                "agreement",
                stored,
                self._apply_agreement(actor, stored.id, provenance, enforce_gate=False),
            )

    async def _run_side_effect(self, name: str, loan: Loan, effect: Awaitable[object]) -> None:
        try:
            await asyncio.wait_for(effect, timeout=self.side_effect_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Side effect %s timed out after %ss for loan %s",
                name,
                self.side_effect_timeout,
                loan.loan_application_id,
            )
        except ExternalServiceError as exc:
            logger.warning(
                "Side effect %s failed for loan %s: %s",
                name,
                loan.loan_application_id,
                exc,
                exc_info=True,
            )
        except Exception:
            logger.exception("Side effect %s raised for loan %s", name, loan.loan_application_id)

    async def _notify_client(
        self,
        loan: Loan,
        *,
        subject: str | None = None,
        body: str | None = None,
    ) -> None:
        if subject is None:
            message = CLIENT_MESSAGES.get(loan.current_stage)
            if message is None:
                return
            subject, template = message
            body = template.format(ref=loan.loan_application_id)

        async def send() -> None:
            client = await self.directory.get_client(loan.client_id)
            if client is None or not client.email:
                logger.info("No email on file for client %s, skipping notification", loan.client_id)
                return
            await self.notifier.notify(client.email, subject, body or "")

        await self._run_side_effect("notify_client", loan, send())

    async def _notify_staff(self, loan: Loan, staff_id: str | None, subject: str, body: str) -> None:
        if not staff_id:
            return

        async def send() -> None:
            staff = await self.directory.get_staff(staff_id)
            if staff is None or not staff.email:
                logger.info("No email on file for staff %s, skipping notification", staff_id)
                return
            await self.notifier.notify(staff.email, subject, body)

        await self._run_side_effect("notify_staff", loan, send())
