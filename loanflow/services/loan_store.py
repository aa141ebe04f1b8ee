from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loanflow.core.exceptions import ConcurrencyConflictError, DuplicateLoanError, OpenLoanExistsError
from loanflow.models.loan_record import LoanRecord
from loanflow.schemas.loan import OPEN_LOAN_STAGES, Loan, WorkflowStage


@dataclass(frozen=True)
class LoanQuery:
    """Store-level filter. Every set field narrows the result."""

    stages: frozenset[WorkflowStage] | None = None
    client_id: str | None = None
    assigned_agent_id: str | None = None
    assigned_regional_manager_id: str | None = None
    region_id: str | None = None
    guarantor_id: str | None = None
    exclude_id: UUID | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, loan: Loan) -> bool:
        if self.stages is not None and loan.current_stage not in self.stages:
            return False
        if self.client_id is not None and loan.client_id != self.client_id:
            return False
        if self.assigned_agent_id is not None and loan.assigned_agent_id != self.assigned_agent_id:
            return False
        if (
            self.assigned_regional_manager_id is not None
            and loan.assigned_regional_manager_id != self.assigned_regional_manager_id
        ):
            return False
        if self.region_id is not None and loan.region_id != self.region_id:
            return False
        if self.guarantor_id is not None and self.guarantor_id not in loan.guarantor_ids:
            return False
        if self.exclude_id is not None and loan.id == self.exclude_id:
            return False
        return True


def application_prefix(year: int, month: int) -> str:
    return f"LA{year:04d}{month:02d}"


class LoanStore(ABC):
    """Keyed loan documents with compare-and-swap updates on ``version``."""

    @abstractmethod
    async def get(self, loan_id: UUID) -> Loan | None: ...

    @abstractmethod
    async def get_by_application_id(self, loan_application_id: str) -> Loan | None: ...

    @abstractmethod
    async def insert(self, loan: Loan) -> Loan:
        """Store a new loan.

        Raises ``DuplicateLoanError`` on a taken id and ``OpenLoanExistsError``
        when the client already holds another loan in an open stage.
        """

    @abstractmethod
    async def update(self, loan: Loan, expected_version: int) -> Loan:
        """Persist ``loan`` only if the stored version still equals ``expected_version``.

        Returns the stored copy with its version bumped by one; raises
        ``ConcurrencyConflictError`` when another writer got there first.
        Moving a loan into an open stage is refused with ``OpenLoanExistsError``
        while the client holds another open loan.
        """

    @abstractmethod
    async def list_loans(self, query: LoanQuery) -> list[Loan]: ...

    @abstractmethod
    async def count_loans(self, query: LoanQuery) -> int: ...

    @abstractmethod
    async def max_application_sequence(self, year: int, month: int) -> int: ...


class InMemoryLoanStore(LoanStore):
    def __init__(self) -> None:
        self._loans: dict[UUID, Loan] = {}
        self._lock = asyncio.Lock()

    async def get(self, loan_id: UUID) -> Loan | None:
        loan = self._loans.get(loan_id)
        return loan.model_copy(deep=True) if loan else None

    async def get_by_application_id(self, loan_application_id: str) -> Loan | None:
        for loan in self._loans.values():
            if loan.loan_application_id == loan_application_id:
                return loan.model_copy(deep=True)
        return None

    async def insert(self, loan: Loan) -> Loan:
        async with self._lock:
            if loan.id in self._loans:
                raise DuplicateLoanError(f"Loan {loan.id} already exists")
            if any(x.loan_application_id == loan.loan_application_id for x in self._loans.values()):
                raise DuplicateLoanError(
                    f"Loan application id {loan.loan_application_id} already exists",
                    details={"loan_application_id": loan.loan_application_id},
                )
            self._ensure_single_open_loan(loan)
            stored = loan.model_copy(deep=True)
            self._loans[stored.id] = stored
            return stored.model_copy(deep=True)

    async def update(self, loan: Loan, expected_version: int) -> Loan:
        async with self._lock:
            current = self._loans.get(loan.id)
            if current is None or current.version != expected_version:
                raise ConcurrencyConflictError(
                    "Loan was modified by another request",
                    details={"loan_id": str(loan.id), "expected_version": expected_version},
                )
            self._ensure_single_open_loan(loan)
            stored = loan.model_copy(deep=True, update={"version": expected_version + 1})
            self._loans[stored.id] = stored
            return stored.model_copy(deep=True)

    def _ensure_single_open_loan(self, loan: Loan) -> None:
        if loan.current_stage not in OPEN_LOAN_STAGES:
            return
        query = LoanQuery(client_id=loan.client_id, stages=OPEN_LOAN_STAGES, exclude_id=loan.id)
        if any(query.matches(other) for other in self._loans.values()):
            raise OpenLoanExistsError(loan.client_id)

    def _select(self, query: LoanQuery) -> list[Loan]:
        rows = [loan for loan in self._loans.values() if query.matches(loan)]
        rows.sort(key=lambda loan: loan.created_at, reverse=True)
        return rows

    async def list_loans(self, query: LoanQuery) -> list[Loan]:
        rows = self._select(query)[query.offset :]
        if query.limit is not None:
            rows = rows[: query.limit]
        return [loan.model_copy(deep=True) for loan in rows]

    async def count_loans(self, query: LoanQuery) -> int:
        return len(self._select(query))

    async def max_application_sequence(self, year: int, month: int) -> int:
        prefix = application_prefix(year, month)
        sequences = [
            int(loan.loan_application_id[len(prefix) :])
            for loan in self._loans.values()
            if loan.loan_application_id.startswith(prefix)
        ]
        return max(sequences, default=0)


def _dump(loan: Loan) -> dict:
    return loan.model_dump(mode="json", exclude={"loan_status"})


def _record_values(loan: Loan) -> dict:
    return {
        "loan_application_id": loan.loan_application_id,
        "client_id": loan.client_id,
        "assigned_agent_id": loan.assigned_agent_id,
        "assigned_regional_manager_id": loan.assigned_regional_manager_id,
        "region_id": loan.region_id,
        "primary_guarantor_id": loan.primary_guarantor_id,
        "secondary_guarantor_id": loan.secondary_guarantor_id,
        "current_stage": loan.current_stage.value,
        "principal": loan.principal,
        "document": _dump(loan),
        "updated_at": loan.updated_at,
    }


def _to_loan(record: LoanRecord) -> Loan:
    loan = Loan.model_validate(record.document)
    # The column is authoritative for the revision counter.
    return loan.model_copy(update={"version": record.version})


class SqlLoanStore(LoanStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _apply_query(self, stmt, query: LoanQuery):
        if query.stages is not None:
            stmt = stmt.where(LoanRecord.current_stage.in_([stage.value for stage in query.stages]))
        if query.client_id is not None:
            stmt = stmt.where(LoanRecord.client_id == query.client_id)
        if query.assigned_agent_id is not None:
            stmt = stmt.where(LoanRecord.assigned_agent_id == query.assigned_agent_id)
        if query.assigned_regional_manager_id is not None:
            stmt = stmt.where(LoanRecord.assigned_regional_manager_id == query.assigned_regional_manager_id)
        if query.region_id is not None:
            stmt = stmt.where(LoanRecord.region_id == query.region_id)
        if query.guarantor_id is not None:
            stmt = stmt.where(
                or_(
                    LoanRecord.primary_guarantor_id == query.guarantor_id,
                    LoanRecord.secondary_guarantor_id == query.guarantor_id,
                )
            )
        if query.exclude_id is not None:
            stmt = stmt.where(LoanRecord.id != query.exclude_id)
        return stmt

    async def get(self, loan_id: UUID) -> Loan | None:
        async with self._session_factory() as session:
            record = await session.get(LoanRecord, loan_id)
            return _to_loan(record) if record else None

    async def get_by_application_id(self, loan_application_id: str) -> Loan | None:
        async with self._session_factory() as session:
            stmt = select(LoanRecord).where(LoanRecord.loan_application_id == loan_application_id)
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _to_loan(record) if record else None

    async def _has_other_open_loan(self, loan: Loan) -> bool:
        if loan.current_stage not in OPEN_LOAN_STAGES:
            return False
        query = LoanQuery(client_id=loan.client_id, stages=OPEN_LOAN_STAGES, exclude_id=loan.id)
        return await self.count_loans(query) > 0

    async def insert(self, loan: Loan) -> Loan:
        async with self._session_factory() as session:
            record = LoanRecord(
                id=loan.id,
                version=loan.version,
                created_at=loan.created_at,
                **_record_values(loan),
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if await self._has_other_open_loan(loan):
                    raise OpenLoanExistsError(loan.client_id) from exc
                raise DuplicateLoanError(
                    f"Loan application id {loan.loan_application_id} already exists",
                    details={"loan_application_id": loan.loan_application_id},
                ) from exc
        return loan

    async def update(self, loan: Loan, expected_version: int) -> Loan:
        stored = loan.model_copy(update={"version": expected_version + 1})
        stmt = (
            update(LoanRecord)
            .where(LoanRecord.id == loan.id, LoanRecord.version == expected_version)
            .values(version=expected_version + 1, **_record_values(stored))
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
            except IntegrityError as exc:
                # uq_loans_client_open is the only constraint an update can trip.
                await session.rollback()
                raise OpenLoanExistsError(loan.client_id) from exc
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrencyConflictError(
                    "Loan was modified by another request",
                    details={"loan_id": str(loan.id), "expected_version": expected_version},
                )
            await session.commit()
        return stored

    async def list_loans(self, query: LoanQuery) -> list[Loan]:
        stmt = self._apply_query(select(LoanRecord), query)
        stmt = stmt.order_by(LoanRecord.created_at.desc()).offset(query.offset)
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        async with self._session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()
        return [_to_loan(record) for record in records]

    async def count_loans(self, query: LoanQuery) -> int:
        stmt = self._apply_query(select(func.count()).select_from(LoanRecord), query)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def max_application_sequence(self, year: int, month: int) -> int:
        prefix = application_prefix(year, month)
        stmt = (
            select(LoanRecord.loan_application_id)
            .where(LoanRecord.loan_application_id.like(f"{prefix}%"))
            .order_by(LoanRecord.loan_application_id.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            latest = (await session.execute(stmt)).scalar_one_or_none()
        return int(latest[len(prefix) :]) if latest else 0
