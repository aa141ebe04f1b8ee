from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from loanflow.core.permissions import Role


class OnboardingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class EmploymentType(str, Enum):
    EMPLOYED = "employed"
    SELF_EMPLOYED = "self_employed"
    UNEMPLOYED = "unemployed"
    RETIRED = "retired"


class Client(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    email: str | None = None
    national_id: str | None = None
    onboarding_status: OnboardingStatus = OnboardingStatus.PENDING
    district: str | None = None
    monthly_income: Decimal | None = None
    employment_type: EmploymentType | None = None
    work_experience_years: Decimal = Decimal("0")
    assigned_agent_id: str | None = None


class Staff(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    role: Role
    email: str | None = None
    region_id: str | None = None
    managed_by_id: str | None = None
    is_active: bool = True


class Region(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    districts: list[str] = Field(default_factory=list)
    manager_id: str | None = None
    is_active: bool = True


class Guarantor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    national_id: str | None = None
    email: str | None = None
