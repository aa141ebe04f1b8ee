from fastapi import APIRouter, Depends, status

from loanflow.api import deps
from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.schemas.loan import (
    AgentReviewRequest,
    AuditTrailResponse,
    Loan,
    LoanApplicationCreate,
    LoanListFilter,
    LoanListResponse,
    LoanQuoteRequest,
    LoanQuoteResponse,
    LoanStatusUpdateRequest,
    PaymentCreate,
    RegionalReviewRequest,
)
from loanflow.services import financial
from loanflow.services.loan_lifecycle import LoanLifecycleEngine

router = APIRouter(prefix="/loans", tags=["loans"])


@router.post("/quote", response_model=LoanQuoteResponse, summary="Quote repayment terms")
async def quote_loan(
    payload: LoanQuoteRequest,
    actor: Actor = Depends(deps.get_current_actor),
) -> LoanQuoteResponse:
    terms = financial.calculate_terms(payload.principal, payload.annual_interest_rate, payload.term_months)
    dti = None
    if payload.monthly_income is not None:
        dti = financial.money(financial.debt_to_income_percent(terms.monthly_installment, payload.monthly_income))
    rounded = terms.rounded()
    return LoanQuoteResponse(
        principal=financial.money(payload.principal),
        annual_interest_rate=payload.annual_interest_rate,
        term_months=payload.term_months,
        monthly_installment=rounded.monthly_installment,
        total_payable_amount=rounded.total_payable,
        total_interest=rounded.total_interest,
        debt_to_income_percent=dti,
    )


@router.post(
    "",
    response_model=Loan,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a loan application",
)
async def create_loan_application(
    payload: LoanApplicationCreate,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.create_application(actor, payload, provenance)


@router.get("", response_model=LoanListResponse, summary="List loans visible to the caller")
async def list_loans(
    filters: LoanListFilter = Depends(),
    actor: Actor = Depends(deps.get_current_actor),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> LoanListResponse:
    items, total = await engine.list_loans(actor, filters)
    return LoanListResponse(items=items, total=total)


@router.get("/{loan_ref}", response_model=Loan, summary="Get a loan by id or application id")
async def get_loan(
    loan_ref: str,
    actor: Actor = Depends(deps.get_current_actor),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.get_loan(actor, loan_ref)


@router.get("/{loan_ref}/audit", response_model=AuditTrailResponse, summary="Audit trail of a loan")
async def get_loan_audit_trail(
    loan_ref: str,
    actor: Actor = Depends(deps.get_current_actor),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> AuditTrailResponse:
    loan = await engine.get_audit_trail(actor, loan_ref)
    return AuditTrailResponse(
        loan_id=loan.id,
        loan_application_id=loan.loan_application_id,
        entries=loan.audit_trail,
    )


@router.post("/{loan_ref}/agent-review", response_model=Loan, summary="Record the agent decision")
async def agent_review(
    loan_ref: str,
    payload: AgentReviewRequest,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.agent_review(actor, loan_ref, payload, provenance)


@router.post("/{loan_ref}/regional-review", response_model=Loan, summary="Record the regional decision")
async def regional_review(
    loan_ref: str,
    payload: RegionalReviewRequest,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.regional_review(actor, loan_ref, payload, provenance)


@router.post("/{loan_ref}/agreement", response_model=Loan, summary="Generate the loan agreement")
async def generate_agreement(
    loan_ref: str,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.generate_agreement(actor, loan_ref, provenance)


@router.patch("/{loan_ref}/status", response_model=Loan, summary="Move a loan to another stage")
async def update_loan_status(
    loan_ref: str,
    payload: LoanStatusUpdateRequest,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.update_status(actor, loan_ref, payload.target_stage, payload.comment, provenance)


@router.post(
    "/{loan_ref}/payments",
    response_model=Loan,
    status_code=status.HTTP_201_CREATED,
    summary="Post a repayment",
)
async def post_payment(
    loan_ref: str,
    payload: PaymentCreate,
    actor: Actor = Depends(deps.get_current_actor),
    provenance: RequestProvenance = Depends(deps.get_provenance),
    engine: LoanLifecycleEngine = Depends(deps.get_lifecycle_engine),
) -> Loan:
    return await engine.post_payment(actor, loan_ref, payload, provenance)
