from __future__ import annotations

import re
from datetime import datetime
from uuid import UUID

from loanflow.core.exceptions import ApplicationSequenceExhaustedError
from loanflow.services.loan_store import LoanStore, application_prefix

APPLICATION_ID_PATTERN = re.compile(r"^LA\d{4}(0[1-9]|1[0-2])\d{4}$")
MAX_SEQUENCE = 9999


def format_application_id(year: int, month: int, sequence: int) -> str:
    if not 1 <= sequence <= MAX_SEQUENCE:
        raise ValueError(f"Sequence {sequence} out of range for {year}-{month:02d}")
    return f"{application_prefix(year, month)}{sequence:04d}"


def is_application_id(value: str) -> bool:
    return bool(APPLICATION_ID_PATTERN.match(value or ""))


async def next_application_id(store: LoanStore, now: datetime) -> str:
    """Next id for the month of ``now``; uniqueness is enforced again by the store on insert."""
    highest = await store.max_application_sequence(now.year, now.month)
    if highest >= MAX_SEQUENCE:
        raise ApplicationSequenceExhaustedError(now.year, now.month, MAX_SEQUENCE)
    return format_application_id(now.year, now.month, highest + 1)


def parse_loan_ref(loan_ref: str) -> UUID | str:
    """Internal UUID or external ``loanApplicationId``."""
    try:
        return UUID(str(loan_ref))
    except ValueError:
        return str(loan_ref).strip()
