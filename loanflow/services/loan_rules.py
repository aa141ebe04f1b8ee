from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from loanflow.core.exceptions import NotFoundError, RuleViolation, ViolationCollector
from loanflow.core.permissions import Role
from loanflow.core.settings import settings
from loanflow.schemas.actor import Actor
from loanflow.schemas.directory import Client, Guarantor, OnboardingStatus, Region, Staff
from loanflow.schemas.loan import (
    GUARANTEED_LOAN_STATUSES,
    GUARANTEED_LOAN_STAGES,
    OPEN_LOAN_STAGES,
    OPEN_LOAN_STATUSES,
    Loan,
    LoanApplicationCreate,
    WorkflowStage,
    project_status,
)
from loanflow.services import financial, loan_workflow
from loanflow.services.directory import DirectoryService
from loanflow.services.loan_store import LoanQuery, LoanStore

MIN_RATING = 1
MAX_RATING = 5


@dataclass(frozen=True)
class RulePolicy:
    max_debt_to_income_percent: Decimal = Decimal("40")
    absolute_max_loan_amount: Decimal = Decimal("5000000")
    default_max_loan_amount: Decimal = Decimal("50000")
    guarantor_active_loan_limit: int = 3
    high_value_threshold: Decimal = Decimal("1000000")
    min_payment_percent: Decimal = Decimal("1")

    @classmethod
    def from_settings(cls) -> "RulePolicy":
        return cls(
            max_debt_to_income_percent=settings.max_debt_to_income_percent,
            absolute_max_loan_amount=settings.absolute_max_loan_amount,
            default_max_loan_amount=settings.default_max_loan_amount,
            guarantor_active_loan_limit=settings.guarantor_active_loan_limit,
            high_value_threshold=settings.high_value_threshold,
            min_payment_percent=settings.min_payment_percent,
        )


@dataclass(frozen=True)
class ApplicationContext:
    """Everything the application rules look at, fetched up front."""

    actor: Actor
    request: LoanApplicationCreate
    client: Client
    agent: Staff | None
    agent_id: str | None
    actor_region: Region | None
    loan_region_id: str | None
    regional_manager_id: str | None
    guarantors: tuple[Guarantor, ...]
    open_loan_count: int
    guarantor_loan_counts: dict[str, int]
    terms: financial.RepaymentTerms


def _normalize_district(value: str | None) -> str:
    return (value or "").strip().casefold()


async def _region(directory: DirectoryService, region_id: str | None) -> Region | None:
    if not region_id:
        return None
    return await directory.get_region(region_id)


async def _open_loan_count(store: LoanStore, client_id: str, *, exclude_id: UUID | None = None) -> int:
    return await store.count_loans(
        LoanQuery(client_id=client_id, stages=OPEN_LOAN_STAGES, exclude_id=exclude_id)
    )


async def _guarantor_loan_count(
    store: LoanStore, guarantor_id: str, *, exclude_id: UUID | None = None
) -> int:
    return await store.count_loans(
        LoanQuery(guarantor_id=guarantor_id, stages=GUARANTEED_LOAN_STAGES, exclude_id=exclude_id)
    )


async def gather_application_context(
    directory: DirectoryService,
    store: LoanStore,
    actor: Actor,
    request: LoanApplicationCreate,
) -> ApplicationContext:
    client = await directory.get_client(request.client_id)
    if client is None:
        raise NotFoundError("Client", request.client_id)

    if actor.role == Role.AGENT:
        agent_id = actor.id
    else:
        agent_id = request.assigned_agent_id or client.assigned_agent_id
    agent = None
    if agent_id:
        agent = await directory.get_staff(agent_id)
        if agent is None:
            raise NotFoundError("Staff", agent_id)

    actor_region = await _region(directory, actor.region_id)
    loan_region_id = (agent.region_id if agent else None) or actor.region_id
    loan_region = actor_region if loan_region_id == actor.region_id else await _region(directory, loan_region_id)

    regional_manager_id = (
        request.assigned_regional_manager_id
        or (agent.managed_by_id if agent else None)
        or (loan_region.manager_id if loan_region else None)
    )
    if regional_manager_id is None and actor.role == Role.REGIONAL_MANAGER:
        regional_manager_id = actor.id

    guarantors: list[Guarantor] = []
    for guarantor_id in (request.primary_guarantor_id, request.secondary_guarantor_id):
        if not guarantor_id:
            continue
        guarantor = await directory.get_guarantor(guarantor_id)
        if guarantor is None:
            raise NotFoundError("Guarantor", guarantor_id)
        guarantors.append(guarantor)

    open_loan_count = await _open_loan_count(store, client.id)
    guarantor_loan_counts = {
        guarantor.id: await _guarantor_loan_count(store, guarantor.id) for guarantor in guarantors
    }

    return ApplicationContext(
        actor=actor,
        request=request,
        client=client,
        agent=agent,
        agent_id=agent_id,
        actor_region=actor_region,
        loan_region_id=loan_region_id,
        regional_manager_id=regional_manager_id,
        guarantors=tuple(guarantors),
        open_loan_count=open_loan_count,
        guarantor_loan_counts=guarantor_loan_counts,
        terms=financial.calculate_terms(request.principal, request.annual_interest_rate, request.term_months),
    )


def evaluate_application(ctx: ApplicationContext, policy: RulePolicy) -> list[RuleViolation]:
    errors = ViolationCollector()
    client = ctx.client
    request = ctx.request

    if client.onboarding_status != OnboardingStatus.APPROVED:
        errors.add("client_id", "CLIENT_NOT_APPROVED", "Client onboarding has not been approved")
    if ctx.actor.role == Role.AGENT and client.assigned_agent_id and client.assigned_agent_id != ctx.actor.id:
        errors.add("client_id", "CLIENT_NOT_ASSIGNED", "Client is assigned to another agent")
    if ctx.open_loan_count > 0:
        errors.add("client_id", "EXISTING_ACTIVE_LOAN", "Client already has an open loan")

    if client.monthly_income is not None and client.monthly_income > 0:
        dti = financial.debt_to_income_percent(ctx.terms.monthly_installment, client.monthly_income)
        if dti > policy.max_debt_to_income_percent:
            errors.add(
                "principal",
                "HIGH_DEBT_TO_INCOME_RATIO",
                f"Debt-to-income ratio {financial.money(dti)}% exceeds {policy.max_debt_to_income_percent}%",
            )

    ceiling = financial.max_eligible_amount(
        client,
        absolute_cap=policy.absolute_max_loan_amount,
        default_amount=policy.default_max_loan_amount,
    )
    if request.principal > ceiling:
        errors.add(
            "principal",
            "EXCEEDS_MAX_LOAN_AMOUNT",
            f"Requested amount exceeds the maximum eligible amount of {financial.money(ceiling)}",
        )

    for slot, guarantor in zip(_guarantor_fields(request), ctx.guarantors):
        same_person = guarantor.id == client.id or (
            guarantor.national_id is not None and guarantor.national_id == client.national_id
        )
        if same_person:
            errors.add(slot, "GUARANTOR_SAME_AS_CLIENT", "Guarantor cannot be the applicant")
        if ctx.guarantor_loan_counts.get(guarantor.id, 0) >= policy.guarantor_active_loan_limit:
            errors.add(slot, "GUARANTOR_LIMIT_EXCEEDED", _guarantor_limit_message(policy))

    if ctx.actor.role.is_region_scoped:
        districts = {_normalize_district(d) for d in (ctx.actor_region.districts if ctx.actor_region else [])}
        if _normalize_district(client.district) not in districts:
            errors.add("client_id", "CLIENT_OUTSIDE_REGION", "Client district is outside the assigned region")

    if not ctx.agent_id:
        errors.add("assigned_agent_id", "AGENT_UNASSIGNED", "No agent could be assigned to the loan")
    if not ctx.regional_manager_id:
        errors.add(
            "assigned_regional_manager_id",
            "REGIONAL_MANAGER_UNASSIGNED",
            "No regional manager could be assigned to the loan",
        )
    return errors.violations


def _guarantor_limit_message(policy: RulePolicy) -> str:
    return f"Guarantor already backs {policy.guarantor_active_loan_limit} approved or active loans"


def _guarantor_fields(request: LoanApplicationCreate) -> list[str]:
    return [
        name
        for name in ("primary_guarantor_id", "secondary_guarantor_id")
        if getattr(request, name)
    ]


async def validate_application(
    directory: DirectoryService,
    store: LoanStore,
    actor: Actor,
    request: LoanApplicationCreate,
    *,
    policy: RulePolicy | None = None,
) -> ApplicationContext:
    ctx = await gather_application_context(directory, store, actor, request)
    errors = ViolationCollector(evaluate_application(ctx, policy or RulePolicy.from_settings()))
    errors.raise_if_any()
    return ctx


def evaluate_status_update(
    loan: Loan,
    target: WorkflowStage,
    actor: Actor,
    policy: RulePolicy,
    *,
    rating: int | None = None,
) -> list[RuleViolation]:
    errors = ViolationCollector()
    target = WorkflowStage(target)
    if (
        target == WorkflowStage.REGIONAL_APPROVED
        and loan.principal > policy.high_value_threshold
        and not actor.role.at_least(Role.CEO)
    ):
        errors.add(
            "target_stage",
            "CEO_APPROVAL_REQUIRED",
            f"Loans above {policy.high_value_threshold} require CEO approval or above",
        )
    if target in loan_workflow.AGENT_DECISION_STAGES and rating is not None:
        if not MIN_RATING <= rating <= MAX_RATING:
            errors.add("rating", "INVALID_RATING", f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    return errors.violations


def validate_status_update(
    loan: Loan,
    target: WorkflowStage,
    actor: Actor,
    *,
    rating: int | None = None,
    policy: RulePolicy | None = None,
) -> None:
    loan_workflow.ensure_reachable(loan, target)
    policy = policy or RulePolicy.from_settings()
    ViolationCollector(evaluate_status_update(loan, target, actor, policy, rating=rating)).raise_if_any()


def evaluate_payment(loan: Loan, amount: Decimal, policy: RulePolicy) -> list[RuleViolation]:
    errors = ViolationCollector()
    if loan.current_stage != WorkflowStage.LOAN_ACTIVE:
        errors.add("status", "INVALID_LOAN_STATUS", "Payments can only be posted to active loans")
        return errors.violations
    if amount <= 0:
        errors.add("amount", "INVALID_PAYMENT_AMOUNT", "Payment amount must be greater than zero")
        return errors.violations
    if amount > loan.remaining_balance:
        errors.add(
            "amount",
            "PAYMENT_EXCEEDS_BALANCE",
            f"Payment exceeds the remaining balance of {loan.remaining_balance}",
        )
        return errors.violations
    minimum = financial.money(loan.principal * policy.min_payment_percent / financial.HUNDRED)
    if amount < minimum and amount != loan.remaining_balance:
        errors.add("amount", "PAYMENT_BELOW_MINIMUM", f"Minimum payment is {minimum}")
    return errors.violations


def validate_payment(loan: Loan, amount: Decimal, *, policy: RulePolicy | None = None) -> None:
    policy = policy or RulePolicy.from_settings()
    ViolationCollector(evaluate_payment(loan, amount, policy)).raise_if_any()


async def evaluate_transition_capacity(
    store: LoanStore,
    loan: Loan,
    target: WorkflowStage,
    policy: RulePolicy,
) -> list[RuleViolation]:
    """Recount the client and guarantor caps when a transition re-enters a capped status.

    Counts skip ``loan`` itself, so a loan never competes with its own earlier state.
    """
    errors = ViolationCollector()
    target_status = project_status(target)
    current_status = loan.loan_status

    if target_status in OPEN_LOAN_STATUSES and current_status not in OPEN_LOAN_STATUSES:
        if await _open_loan_count(store, loan.client_id, exclude_id=loan.id) > 0:
            errors.add("client_id", "EXISTING_ACTIVE_LOAN", "Client already has an open loan")

    if target_status in GUARANTEED_LOAN_STATUSES and current_status not in GUARANTEED_LOAN_STATUSES:
        for slot in ("primary_guarantor_id", "secondary_guarantor_id"):
            guarantor_id = getattr(loan, slot)
            if not guarantor_id:
                continue
            count = await _guarantor_loan_count(store, guarantor_id, exclude_id=loan.id)
            if count >= policy.guarantor_active_loan_limit:
                errors.add(slot, "GUARANTOR_LIMIT_EXCEEDED", _guarantor_limit_message(policy))
    return errors.violations


async def validate_transition(
    store: LoanStore,
    loan: Loan,
    target: WorkflowStage,
    actor: Actor,
    *,
    rating: int | None = None,
    policy: RulePolicy | None = None,
) -> None:
    """Status-update rules plus the store-backed caps, reported together."""
    loan_workflow.ensure_reachable(loan, target)
    policy = policy or RulePolicy.from_settings()
    errors = ViolationCollector(evaluate_status_update(loan, target, actor, policy, rating=rating))
    errors.violations.extend(await evaluate_transition_capacity(store, loan, WorkflowStage(target), policy))
    errors.raise_if_any()
