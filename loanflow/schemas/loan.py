from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from loanflow.schemas.actor import RequestProvenance


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStage(str, Enum):
    APPLICATION_SUBMITTED = "application_submitted"
    AGENT_APPROVED = "agent_approved"
    AGENT_REJECTED = "agent_rejected"
    REGIONAL_APPROVED = "regional_approved"
    REGIONAL_REJECTED = "regional_rejected"
    AGREEMENT_GENERATED = "agreement_generated"
    FUNDS_DISBURSED = "funds_disbursed"
    LOAN_ACTIVE = "loan_active"
    LOAN_COMPLETED = "loan_completed"
    DEFAULTED = "defaulted"


class LoanStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


STAGE_STATUS: dict[WorkflowStage, LoanStatus] = {
    WorkflowStage.APPLICATION_SUBMITTED: LoanStatus.PENDING,
    WorkflowStage.AGENT_APPROVED: LoanStatus.UNDER_REVIEW,
    WorkflowStage.AGENT_REJECTED: LoanStatus.REJECTED,
    WorkflowStage.REGIONAL_APPROVED: LoanStatus.APPROVED,
    WorkflowStage.REGIONAL_REJECTED: LoanStatus.REJECTED,
    WorkflowStage.AGREEMENT_GENERATED: LoanStatus.APPROVED,
    WorkflowStage.FUNDS_DISBURSED: LoanStatus.ACTIVE,
    WorkflowStage.LOAN_ACTIVE: LoanStatus.ACTIVE,
    WorkflowStage.LOAN_COMPLETED: LoanStatus.COMPLETED,
    WorkflowStage.DEFAULTED: LoanStatus.DEFAULTED,
}


def project_status(stage: WorkflowStage) -> LoanStatus:
    return STAGE_STATUS[WorkflowStage(stage)]


def stages_for_statuses(statuses) -> set[WorkflowStage]:
    """Inverse of the projection: every stage whose status is in ``statuses``."""
    wanted = {LoanStatus(status) for status in statuses}
    return {stage for stage, status in STAGE_STATUS.items() if status in wanted}


OPEN_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, LoanStatus.ACTIVE)
OPEN_LOAN_STAGES = frozenset(stages_for_statuses(OPEN_LOAN_STATUSES))
GUARANTEED_LOAN_STATUSES = (LoanStatus.APPROVED, LoanStatus.ACTIVE)
GUARANTEED_LOAN_STAGES = frozenset(stages_for_statuses(GUARANTEED_LOAN_STATUSES))


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHEQUE = "cheque"
    MOBILE_MONEY = "mobile_money"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class StageHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: WorkflowStage
    entered_at: datetime
    actor_id: str


class AgentReview(BaseModel):
    status: ReviewStatus = ReviewStatus.PENDING
    reviewer_id: str | None = None
    reviewed_at: datetime | None = None
    comments: str | None = None
    rating: int | None = None


class RegionalApproval(BaseModel):
    status: ReviewStatus = ReviewStatus.PENDING
    approver_id: str | None = None
    approved_at: datetime | None = None
    comments: str | None = None
    conditions: list[str] = Field(default_factory=list)


class AgreementReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    agreement_id: str
    locator: str
    generated_at: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    action: str
    actor_id: str
    actor_role: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    changes: dict[str, Any] = Field(default_factory=dict)
    comment: str | None = None
    provenance: RequestProvenance = Field(default_factory=RequestProvenance)


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    amount: Decimal
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference: str | None = None
    recorded_by: str
    paid_at: datetime = Field(default_factory=utcnow)


class Loan(BaseModel):
    """Aggregate root for a loan application and everything it owns."""

    id: UUID = Field(default_factory=uuid4)
    loan_application_id: str
    version: int = 1

    client_id: str
    assigned_agent_id: str
    assigned_regional_manager_id: str
    region_id: str | None = None
    primary_guarantor_id: str | None = None
    secondary_guarantor_id: str | None = None
    product: str | None = None
    purpose: str | None = None

    principal: Decimal
    annual_interest_rate: Decimal
    term_months: int
    monthly_installment: Decimal
    total_payable_amount: Decimal
    total_interest: Decimal
    remaining_balance: Decimal
    commission: Decimal | None = None

    current_stage: WorkflowStage = WorkflowStage.APPLICATION_SUBMITTED
    stage_history: list[StageHistoryEntry] = Field(default_factory=list)
    agent_review: AgentReview = Field(default_factory=AgentReview)
    regional_approval: RegionalApproval = Field(default_factory=RegionalApproval)
    agreement: AgreementReference | None = None

    next_payment_date: date | None = None
    disbursement_date: date | None = None
    completion_date: date | None = None
    defaulted_on: date | None = None
    days_overdue: int = 0

    audit_trail: list[AuditEntry] = Field(default_factory=list)
    payment_history: list[PaymentRecord] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def loan_status(self) -> LoanStatus:
        return project_status(self.current_stage)

    @property
    def guarantor_ids(self) -> list[str]:
        return [gid for gid in (self.primary_guarantor_id, self.secondary_guarantor_id) if gid]

    @property
    def total_paid(self) -> Decimal:
        return sum(
            (p.amount for p in self.payment_history if p.status == PaymentStatus.COMPLETED),
            Decimal("0"),
        )


# ---------------------------------------------------------------------------
# Request / response payloads
# ---------------------------------------------------------------------------


class LoanApplicationCreate(BaseModel):
    client_id: str
    principal: Decimal = Field(gt=0)
    annual_interest_rate: Decimal = Field(ge=0, le=100)
    term_months: int = Field(ge=1, le=360)
    product: str | None = None
    purpose: str | None = None
    primary_guarantor_id: str | None = None
    secondary_guarantor_id: str | None = None
    assigned_agent_id: str | None = None
    assigned_regional_manager_id: str | None = None


class AgentReviewRequest(BaseModel):
    decision: ReviewDecision
    comments: str | None = Field(default=None, max_length=2000)
    rating: int | None = None


class RegionalReviewRequest(BaseModel):
    decision: ReviewDecision
    comments: str | None = Field(default=None, max_length=2000)
    conditions: list[str] = Field(default_factory=list)


class LoanStatusUpdateRequest(BaseModel):
    target_stage: WorkflowStage
    comment: str | None = Field(default=None, max_length=2000)


class PaymentCreate(BaseModel):
    amount: Decimal
    method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    reference: str | None = Field(default=None, max_length=100)


class LoanQuoteRequest(BaseModel):
    principal: Decimal = Field(gt=0)
    annual_interest_rate: Decimal = Field(ge=0, le=100)
    term_months: int = Field(ge=1, le=360)
    monthly_income: Decimal | None = Field(default=None, gt=0)


class LoanQuoteResponse(BaseModel):
    principal: Decimal
    annual_interest_rate: Decimal
    term_months: int
    monthly_installment: Decimal
    total_payable_amount: Decimal
    total_interest: Decimal
    debt_to_income_percent: Decimal | None = None


class LoanListFilter(BaseModel):
    status: LoanStatus | None = None
    stage: WorkflowStage | None = None
    client_id: str | None = None
    assigned_agent_id: str | None = None
    region_id: str | None = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class LoanListResponse(BaseModel):
    items: list[Loan]
    total: int


class AuditTrailResponse(BaseModel):
    loan_id: UUID
    loan_application_id: str
    entries: list[AuditEntry]
