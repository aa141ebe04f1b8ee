import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import (
    CLIENT_ID,
    GUARANTOR_ID,
    OTHER_AGENT_ID,
    OTHER_REGION_ID,
    PROVENANCE,
    FailingAgreementService,
    RecordingNotifier,
    advance_to_active,
    agent_a,
    agent_b,
    build_directory,
    build_engine,
    ceo,
    make_application,
    make_client,
    make_loan,
    manager_m,
    moderator,
    super_admin,
)
from loanflow.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflictError,
    ExternalServiceError,
    InvalidStateError,
    LoanValidationError,
    NotFoundError,
)
from loanflow.schemas.loan import (
    AgentReviewRequest,
    AgreementReference,
    LoanListFilter,
    LoanStatus,
    PaymentCreate,
    RegionalReviewRequest,
    ReviewDecision,
    ReviewStatus,
    WorkflowStage,
    utcnow,
)
from loanflow.services.agreements import AgreementService, LocalAgreementIssuer
from loanflow.services.loan_store import InMemoryLoanStore, LoanQuery

APPROVE = AgentReviewRequest(decision=ReviewDecision.APPROVED, rating=4, comments="Verified business")
REGIONAL_APPROVE = RegionalReviewRequest(decision=ReviewDecision.APPROVED, conditions=["Monthly site visit"])


class RacingStore(InMemoryLoanStore):
    """Runs ``before_update`` once, just before the next versioned write."""

    def __init__(self) -> None:
        super().__init__()
        self.before_update = None

    async def update(self, loan, expected_version):
        hook, self.before_update = self.before_update, None
        if hook is not None:
            await hook()
        return await super().update(loan, expected_version)


class AlwaysConflictingStore(InMemoryLoanStore):
    def __init__(self) -> None:
        super().__init__()
        self.update_calls = 0

    async def update(self, loan, expected_version):
        self.update_calls += 1
        raise ConcurrencyConflictError("Loan was modified by another request")


class ConflictOnceStore(InMemoryLoanStore):
    """Loses the first versioned write to an imaginary competitor."""

    def __init__(self) -> None:
        super().__init__()
        self.conflicts_left = 0

    async def update(self, loan, expected_version):
        if self.conflicts_left:
            self.conflicts_left -= 1
            raise ConcurrencyConflictError("Loan was modified by another request")
        return await super().update(loan, expected_version)


class SlowCountStore(InMemoryLoanStore):
    async def count_loans(self, query):
        await asyncio.sleep(0.01)
        return await super().count_loans(query)


class CountingAgreementIssuer(LocalAgreementIssuer):
    def __init__(self) -> None:
        super().__init__("/agreements")
        self.calls = 0

    async def generate(self, loan):
        self.calls += 1
        return await super().generate(loan)


class SlowAgreementService(AgreementService):
    async def generate(self, loan):
        await asyncio.sleep(1)
        return AgreementReference(agreement_id="late", locator="/late")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_application_assigns_parties_and_terms(engine, notifier):
    loan = await engine.create_application(agent_a(), make_application(), PROVENANCE)

    now = utcnow()
    assert loan.loan_application_id == f"LA{now:%Y%m}0001"
    assert loan.assigned_agent_id == agent_a().id
    assert loan.assigned_regional_manager_id == manager_m().id
    assert loan.region_id == agent_a().region_id
    assert loan.current_stage == WorkflowStage.APPLICATION_SUBMITTED
    assert loan.loan_status == LoanStatus.PENDING
    assert loan.monthly_installment == Decimal("4442.44")
    assert loan.remaining_balance == loan.total_payable_amount
    assert [entry.action for entry in loan.audit_trail] == ["loan.created"]
    assert loan.audit_trail[0].provenance.request_id == "req-test"
    assert notifier.subjects_for("grace@example.com") == ["Loan application received"]


@pytest.mark.asyncio
async def test_application_ids_are_sequential_within_a_month(engine, directory):
    directory.add(make_client(id="client-2", national_id="CM2"))
    first = await engine.create_application(agent_a(), make_application())
    second = await engine.create_application(agent_a(), make_application(client_id="client-2"))
    assert int(second.loan_application_id[-4:]) == int(first.loan_application_id[-4:]) + 1


@pytest.mark.asyncio
async def test_high_debt_to_income_creates_no_record(store, notifier):
    directory = build_directory()
    directory.add(make_client(monthly_income=Decimal("10000")))
    engine = build_engine(store, directory, notifier)

    with pytest.raises(LoanValidationError) as exc_info:
        await engine.create_application(agent_a(), make_application())

    assert exc_info.value.codes == ["HIGH_DEBT_TO_INCOME_RATIO"]
    assert await store.count_loans(LoanQuery()) == 0
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_fourth_guaranteed_loan_is_rejected(engine, store):
    for _ in range(3):
        await store.insert(make_loan(current_stage=WorkflowStage.LOAN_ACTIVE, primary_guarantor_id=GUARANTOR_ID))

    with pytest.raises(LoanValidationError) as exc_info:
        await engine.create_application(agent_a(), make_application(primary_guarantor_id=GUARANTOR_ID))
    assert exc_info.value.codes == ["GUARANTOR_LIMIT_EXCEEDED"]


@pytest.mark.asyncio
async def test_concurrent_applications_for_one_client_store_one_loan(directory, notifier):
    store = SlowCountStore()
    engine = build_engine(store, directory, notifier)

    results = await asyncio.gather(
        engine.create_application(agent_a(), make_application()),
        engine.create_application(agent_a(), make_application()),
        return_exceptions=True,
    )

    errors = [result for result in results if isinstance(result, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], LoanValidationError)
    assert errors[0].codes == ["EXISTING_ACTIVE_LOAN"]
    assert await store.count_loans(LoanQuery(client_id=CLIENT_ID)) == 1


@pytest.mark.asyncio
async def test_ceo_cannot_create_applications(engine):
    with pytest.raises(AuthorizationError):
        await engine.create_application(ceo(), make_application(assigned_agent_id=agent_a().id))


@pytest.mark.asyncio
async def test_manager_creates_for_named_agent(engine):
    loan = await engine.create_application(manager_m(), make_application(assigned_agent_id=OTHER_AGENT_ID))
    assert loan.assigned_agent_id == OTHER_AGENT_ID
    assert loan.assigned_regional_manager_id == manager_m().id


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_review_scenario(engine, notifier):
    loan = await engine.create_application(agent_a(), make_application(assigned_agent_id=agent_a().id))

    reviewed = await engine.agent_review(agent_a(), loan.id, APPROVE, PROVENANCE)
    assert reviewed.current_stage == WorkflowStage.AGENT_APPROVED
    assert reviewed.loan_status == LoanStatus.UNDER_REVIEW
    assert reviewed.agent_review.status == ReviewStatus.APPROVED
    assert reviewed.agent_review.rating == 4
    assert len(reviewed.audit_trail) == len(loan.audit_trail) + 1

    approved = await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE, PROVENANCE)
    assert approved.current_stage == WorkflowStage.REGIONAL_APPROVED
    assert approved.loan_status == LoanStatus.APPROVED
    assert approved.next_payment_date == utcnow().date() + timedelta(days=30)
    assert approved.regional_approval.conditions == ["Monthly site visit"]
    assert approved.commission == Decimal("1000.00")
    assert len(approved.audit_trail) == len(reviewed.audit_trail) + 1

    with pytest.raises(AuthorizationError):
        await engine.agent_review(agent_b(), loan.id, APPROVE)

    assert "Loan awaiting regional review" in notifier.subjects_for("m@loanflow.test")
    assert "Loan application approved" in notifier.subjects_for("grace@example.com")


@pytest.mark.asyncio
async def test_regional_approval_generates_agreement(engine, store):
    loan = await engine.create_application(agent_a(), make_application())
    await engine.agent_review(agent_a(), loan.id, APPROVE)
    await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)

    stored = await store.get(loan.id)
    assert stored.current_stage == WorkflowStage.AGREEMENT_GENERATED
    assert stored.loan_status == LoanStatus.APPROVED
    assert stored.agreement.agreement_id == f"AGR-{loan.loan_application_id}"
    assert stored.audit_trail[-1].actor_id == manager_m().id


@pytest.mark.asyncio
async def test_regional_approval_rechecks_guarantor_cap(engine, store):
    for _ in range(3):
        await store.insert(make_loan(current_stage=WorkflowStage.LOAN_ACTIVE, primary_guarantor_id=GUARANTOR_ID))
    pending = await store.insert(
        make_loan(current_stage=WorkflowStage.AGENT_APPROVED, secondary_guarantor_id=GUARANTOR_ID)
    )

    with pytest.raises(LoanValidationError) as exc_info:
        await engine.regional_review(manager_m(), pending.id, REGIONAL_APPROVE)
    assert exc_info.value.codes == ["GUARANTOR_LIMIT_EXCEEDED"]
    assert exc_info.value.violations[0].field == "secondary_guarantor_id"
    assert (await store.get(pending.id)).version == pending.version


@pytest.mark.asyncio
async def test_guarantor_cap_does_not_count_the_loan_under_review(engine, store):
    for _ in range(2):
        await store.insert(make_loan(current_stage=WorkflowStage.LOAN_ACTIVE, primary_guarantor_id=GUARANTOR_ID))
    pending = await store.insert(
        make_loan(current_stage=WorkflowStage.AGENT_APPROVED, primary_guarantor_id=GUARANTOR_ID)
    )

    await engine.regional_review(manager_m(), pending.id, REGIONAL_APPROVE)
    assert (await store.get(pending.id)).loan_status == LoanStatus.APPROVED


@pytest.mark.asyncio
async def test_update_status_runs_review_side_effects(engine, store, notifier):
    loan = await engine.create_application(agent_a(), make_application())

    await engine.update_status(agent_a(), loan.id, WorkflowStage.AGENT_APPROVED)
    assert notifier.subjects_for("m@loanflow.test") == ["Loan awaiting regional review"]

    await engine.update_status(manager_m(), loan.loan_application_id, WorkflowStage.REGIONAL_APPROVED)
    stored = await store.get(loan.id)
    assert stored.current_stage == WorkflowStage.AGREEMENT_GENERATED
    assert stored.agreement.agreement_id == f"AGR-{loan.loan_application_id}"


@pytest.mark.asyncio
async def test_rejection_is_terminal(engine):
    loan = await engine.create_application(agent_a(), make_application())
    rejected = await engine.agent_review(
        agent_a(), loan.id, AgentReviewRequest(decision=ReviewDecision.REJECTED, comments="Unverifiable income")
    )
    assert rejected.loan_status == LoanStatus.REJECTED
    assert rejected.agent_review.comments == "Unverifiable income"

    with pytest.raises(InvalidStateError):
        await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)


@pytest.mark.asyncio
async def test_invalid_transition_leaves_loan_untouched(engine, store):
    loan = await engine.create_application(agent_a(), make_application())
    with pytest.raises(InvalidStateError):
        await engine.update_status(super_admin(), loan.id, WorkflowStage.LOAN_ACTIVE)
    with pytest.raises(InvalidStateError):
        await engine.update_status(super_admin(), loan.id, WorkflowStage.APPLICATION_SUBMITTED)

    stored = await store.get(loan.id)
    assert stored.version == loan.version
    assert stored.audit_trail == loan.audit_trail


@pytest.mark.asyncio
async def test_manager_cannot_approve_high_value_loan(engine, store):
    seeded = await store.insert(make_loan(principal="1500000", current_stage=WorkflowStage.AGENT_APPROVED))

    with pytest.raises(AuthorizationError):
        await engine.regional_review(manager_m(), seeded.id, REGIONAL_APPROVE)

    approved = await engine.regional_review(ceo(), seeded.id, REGIONAL_APPROVE)
    assert approved.regional_approval.approver_id == ceo().id


@pytest.mark.asyncio
async def test_out_of_range_rating_is_rejected(engine):
    loan = await engine.create_application(agent_a(), make_application())
    with pytest.raises(LoanValidationError) as exc_info:
        await engine.agent_review(agent_a(), loan.id, AgentReviewRequest(decision=ReviewDecision.APPROVED, rating=9))
    assert exc_info.value.codes == ["INVALID_RATING"]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_losing_writer_is_rejudged_against_the_winner(directory, notifier):
    store = RacingStore()
    engine = build_engine(store, directory, notifier)
    loan = await engine.create_application(agent_a(), make_application())

    async def competing_approval():
        await engine.agent_review(agent_a(), loan.id, APPROVE)

    store.before_update = competing_approval
    with pytest.raises(InvalidStateError):
        await engine.agent_review(agent_a(), loan.id, AgentReviewRequest(decision=ReviewDecision.REJECTED))

    stored = await store.get(loan.id)
    assert stored.current_stage == WorkflowStage.AGENT_APPROVED
    assert stored.version == 2
    assert [entry.action for entry in stored.audit_trail] == ["loan.created", "loan.agent_approved"]


@pytest.mark.asyncio
async def test_persistent_conflict_gives_up(directory, notifier):
    store = AlwaysConflictingStore()
    engine = build_engine(store, directory, notifier, max_attempts=2)
    loan = await engine.create_application(agent_a(), make_application())

    with pytest.raises(ConcurrencyConflictError):
        await engine.agent_review(agent_a(), loan.id, APPROVE)
    assert store.update_calls == 2


@pytest.mark.asyncio
async def test_agreement_is_generated_once_across_retries(directory, notifier):
    store = ConflictOnceStore()
    agreements = CountingAgreementIssuer()
    engine = build_engine(store, directory, notifier, agreements=agreements, auto_generate_agreement=False)
    loan = await engine.create_application(agent_a(), make_application())
    await engine.agent_review(agent_a(), loan.id, APPROVE)
    approved = await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)

    store.conflicts_left = 1
    generated = await engine.generate_agreement(manager_m(), loan.id)

    assert generated.current_stage == WorkflowStage.AGREEMENT_GENERATED
    assert generated.version == approved.version + 1
    assert agreements.calls == 1


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_the_action(store, directory):
    engine = build_engine(store, directory, RecordingNotifier(fail=True))
    loan = await engine.create_application(agent_a(), make_application())
    reviewed = await engine.agent_review(agent_a(), loan.id, APPROVE)
    assert reviewed.current_stage == WorkflowStage.AGENT_APPROVED


@pytest.mark.asyncio
async def test_slow_notification_times_out(store, directory):
    notifier = RecordingNotifier(delay=0.5)
    engine = build_engine(store, directory, notifier, side_effect_timeout=0.05)
    loan = await engine.create_application(agent_a(), make_application())
    assert loan.current_stage == WorkflowStage.APPLICATION_SUBMITTED
    assert notifier.messages == []
    assert await store.get(loan.id) is not None


@pytest.mark.asyncio
async def test_failed_agreement_is_retried_explicitly(store, directory, notifier):
    agreements = FailingAgreementService()
    engine = build_engine(store, directory, notifier, agreements=agreements)
    loan = await engine.create_application(agent_a(), make_application())
    await engine.agent_review(agent_a(), loan.id, APPROVE)

    approved = await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)
    assert approved.current_stage == WorkflowStage.REGIONAL_APPROVED
    assert agreements.calls == 1
    assert (await store.get(loan.id)).current_stage == WorkflowStage.REGIONAL_APPROVED

    with pytest.raises(ExternalServiceError):
        await engine.generate_agreement(manager_m(), loan.id)
    assert (await store.get(loan.id)).version == approved.version

    engine.agreements = LocalAgreementIssuer("/agreements")
    generated = await engine.update_status(manager_m(), loan.loan_application_id, WorkflowStage.AGREEMENT_GENERATED)
    assert generated.current_stage == WorkflowStage.AGREEMENT_GENERATED
    assert generated.agreement.locator == f"/agreements/AGR-{loan.loan_application_id}"


@pytest.mark.asyncio
async def test_agreement_timeout_surfaces_on_explicit_request(store, directory, notifier):
    engine = build_engine(
        store,
        directory,
        notifier,
        agreements=SlowAgreementService(),
        side_effect_timeout=0.05,
        auto_generate_agreement=False,
    )
    loan = await engine.create_application(agent_a(), make_application())
    await engine.agent_review(agent_a(), loan.id, APPROVE)
    await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)

    with pytest.raises(ExternalServiceError) as exc_info:
        await engine.generate_agreement(manager_m(), loan.id)
    assert exc_info.value.service == "agreements"


@pytest.mark.asyncio
async def test_agent_b_cannot_generate_agreement(store, directory, notifier):
    engine = build_engine(store, directory, notifier, auto_generate_agreement=False)
    loan = await engine.create_application(agent_a(), make_application())
    await engine.agent_review(agent_a(), loan.id, APPROVE)
    await engine.regional_review(manager_m(), loan.id, REGIONAL_APPROVE)

    with pytest.raises(AuthorizationError):
        await engine.generate_agreement(agent_b(), loan.id)
    generated = await engine.generate_agreement(agent_a(), loan.id)
    assert generated.agreement is not None


# ---------------------------------------------------------------------------
# Disbursement, default and reinstatement
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_activation_sets_disbursement_date(engine):
    loan = await advance_to_active(engine)
    assert loan.current_stage == WorkflowStage.LOAN_ACTIVE
    assert loan.loan_status == LoanStatus.ACTIVE
    assert loan.disbursement_date == utcnow().date()


@pytest.mark.asyncio
async def test_default_and_reinstate_need_override_permission(engine):
    loan = await advance_to_active(engine)

    with pytest.raises(AuthorizationError):
        await engine.update_status(manager_m(), loan.id, WorkflowStage.DEFAULTED)

    defaulted = await engine.update_status(moderator(), loan.id, WorkflowStage.DEFAULTED, comment="90 days late")
    assert defaulted.loan_status == LoanStatus.DEFAULTED
    assert defaulted.defaulted_on == utcnow().date()
    assert defaulted.audit_trail[-1].comment == "90 days late"

    reinstated = await engine.update_status(moderator(), loan.id, WorkflowStage.LOAN_ACTIVE)
    assert reinstated.loan_status == LoanStatus.ACTIVE
    assert reinstated.defaulted_on is None


@pytest.mark.asyncio
async def test_reinstatement_rechecks_guarantor_cap(engine, store):
    defaulted = await store.insert(
        make_loan(current_stage=WorkflowStage.DEFAULTED, primary_guarantor_id=GUARANTOR_ID)
    )
    for _ in range(3):
        await store.insert(make_loan(current_stage=WorkflowStage.LOAN_ACTIVE, primary_guarantor_id=GUARANTOR_ID))

    with pytest.raises(LoanValidationError) as exc_info:
        await engine.update_status(moderator(), defaulted.id, WorkflowStage.LOAN_ACTIVE)
    assert exc_info.value.codes == ["GUARANTOR_LIMIT_EXCEEDED"]
    assert (await store.get(defaulted.id)).current_stage == WorkflowStage.DEFAULTED


@pytest.mark.asyncio
async def test_reinstatement_blocked_while_client_has_another_open_loan(engine, store):
    defaulted = await store.insert(make_loan(client_id="client-9", current_stage=WorkflowStage.DEFAULTED))
    await store.insert(make_loan(client_id="client-9"))

    with pytest.raises(LoanValidationError) as exc_info:
        await engine.update_status(moderator(), defaulted.id, WorkflowStage.LOAN_ACTIVE)
    assert exc_info.value.codes == ["EXISTING_ACTIVE_LOAN"]



# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_installment_payment_advances_schedule(engine, notifier):
    loan = await advance_to_active(engine)

    paid = await engine.post_payment(
        agent_a(), loan.id, PaymentCreate(amount=Decimal("4442.44"), reference="MM-001"), PROVENANCE
    )
    assert paid.remaining_balance == loan.remaining_balance - Decimal("4442.44")
    assert paid.next_payment_date == loan.next_payment_date + timedelta(days=30)
    assert paid.payment_history[-1].recorded_by == agent_a().id
    assert paid.total_paid == Decimal("4442.44")
    assert paid.audit_trail[-1].action == "loan.payment_posted"
    assert paid.audit_trail[-1].changes["payment"]["to"]["amount"] == "4442.44"
    assert "Payment received" in notifier.subjects_for("grace@example.com")


@pytest.mark.asyncio
async def test_partial_payment_keeps_due_date(engine):
    loan = await advance_to_active(engine)
    paid = await engine.post_payment(agent_a(), loan.id, PaymentCreate(amount=Decimal("1000")))
    assert paid.next_payment_date == loan.next_payment_date


@pytest.mark.asyncio
async def test_settling_payment_completes_the_loan(engine, notifier):
    loan = await advance_to_active(engine)

    settled = await engine.post_payment(agent_a(), loan.id, PaymentCreate(amount=loan.remaining_balance))
    assert settled.current_stage == WorkflowStage.LOAN_COMPLETED
    assert settled.loan_status == LoanStatus.COMPLETED
    assert settled.remaining_balance == Decimal("0.00")
    assert settled.completion_date == utcnow().date()
    assert settled.next_payment_date is None
    assert [entry.action for entry in settled.audit_trail[-2:]] == ["loan.payment_posted", "loan.loan_completed"]
    assert notifier.subjects_for("grace@example.com")[-2:] == ["Payment received", "Loan completed"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount, code",
    [
        (Decimal("0"), "INVALID_PAYMENT_AMOUNT"),
        (Decimal("100"), "PAYMENT_BELOW_MINIMUM"),
        (Decimal("99999999"), "PAYMENT_EXCEEDS_BALANCE"),
    ],
)
async def test_rejected_payments_leave_balance_untouched(engine, store, amount, code):
    loan = await advance_to_active(engine)
    with pytest.raises(LoanValidationError) as exc_info:
        await engine.post_payment(agent_a(), loan.id, PaymentCreate(amount=amount))
    assert exc_info.value.codes == [code]
    assert (await store.get(loan.id)).remaining_balance == loan.remaining_balance


@pytest.mark.asyncio
async def test_payment_requires_active_loan(engine):
    loan = await engine.create_application(agent_a(), make_application())
    with pytest.raises(LoanValidationError) as exc_info:
        await engine.post_payment(agent_a(), loan.id, PaymentCreate(amount=Decimal("5000")))
    assert exc_info.value.codes == ["INVALID_LOAN_STATUS"]


@pytest.mark.asyncio
async def test_unassigned_agent_cannot_post_payment(engine):
    loan = await advance_to_active(engine)
    with pytest.raises(AuthorizationError):
        await engine.post_payment(agent_b(), loan.id, PaymentCreate(amount=Decimal("5000")))


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_by_application_id_and_missing_loan(engine):
    loan = await engine.create_application(agent_a(), make_application())
    fetched = await engine.get_loan(agent_a(), loan.loan_application_id)
    assert fetched.id == loan.id
    assert (await engine.get_loan(agent_a(), str(loan.id))).loan_application_id == loan.loan_application_id

    with pytest.raises(NotFoundError):
        await engine.get_loan(agent_a(), "LA209912 9999")


@pytest.mark.asyncio
async def test_audit_trail_requires_audit_permission(engine):
    loan = await engine.create_application(agent_a(), make_application())
    with pytest.raises(AuthorizationError):
        await engine.get_audit_trail(agent_a(), loan.id)
    trail = await engine.get_audit_trail(manager_m(), loan.id)
    assert trail.audit_trail[0].action == "loan.created"


@pytest.mark.asyncio
async def test_list_is_scoped_to_the_actor(engine, store):
    own = await engine.create_application(agent_a(), make_application())
    await store.insert(make_loan(assigned_agent_id=OTHER_AGENT_ID))
    await store.insert(make_loan(assigned_agent_id="agent-east", region_id=OTHER_REGION_ID,
                                 assigned_regional_manager_id="rm-east"))

    items, total = await engine.list_loans(agent_a(), LoanListFilter())
    assert total == 1
    assert [loan.id for loan in items] == [own.id]

    assert await engine.list_loans(agent_a(), LoanListFilter(assigned_agent_id=OTHER_AGENT_ID)) == ([], 0)

    _, regional_total = await engine.list_loans(manager_m(), LoanListFilter())
    assert regional_total == 2
    assert await engine.list_loans(manager_m(), LoanListFilter(region_id=OTHER_REGION_ID)) == ([], 0)

    _, everything = await engine.list_loans(ceo(), LoanListFilter())
    assert everything == 3

    pending, pending_total = await engine.list_loans(ceo(), LoanListFilter(status=LoanStatus.PENDING, limit=2))
    assert pending_total == 3
    assert len(pending) == 2
