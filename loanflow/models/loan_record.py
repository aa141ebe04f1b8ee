import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, Numeric, String, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.types import JSON

from loanflow.db.base import Base
from loanflow.schemas.loan import OPEN_LOAN_STAGES

OPEN_STAGE_PREDICATE = "current_stage IN ({})".format(
    ", ".join(f"'{stage.value}'" for stage in sorted(OPEN_LOAN_STAGES, key=lambda stage: stage.value))
)


class LoanRecord(Base):
    """One row per loan; the aggregate lives in ``document``, the rest are lookup columns."""

    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_loans_version_positive"),
        CheckConstraint("principal > 0", name="ck_loans_principal_positive"),
        # At most one open loan per client.
        Index(
            "uq_loans_client_open",
            "client_id",
            unique=True,
            postgresql_where=text(OPEN_STAGE_PREDICATE),
            sqlite_where=text(OPEN_STAGE_PREDICATE),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(String(16), nullable=False, unique=True)
    client_id = Column(String(64), nullable=False, index=True)
    assigned_agent_id = Column(String(64), nullable=False, index=True)
    assigned_regional_manager_id = Column(String(64), nullable=False, index=True)
    region_id = Column(String(64), nullable=True, index=True)
    primary_guarantor_id = Column(String(64), nullable=True, index=True)
    secondary_guarantor_id = Column(String(64), nullable=True, index=True)
    current_stage = Column(String(32), nullable=False, index=True)
    principal = Column(Numeric(18, 2), nullable=False)
    document = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
