from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from loanflow.core.exceptions import ExternalServiceError
from loanflow.schemas.loan import AgreementReference, Loan


class AgreementService(ABC):
    @abstractmethod
    async def generate(self, loan: Loan) -> AgreementReference:
        """Produce the agreement for a regionally approved loan."""


class LocalAgreementIssuer(AgreementService):
    """Issues deterministic references; rendering happens elsewhere."""

    def __init__(self, base_url: str = "/agreements") -> None:
        self.base_url = base_url.rstrip("/")

    async def generate(self, loan: Loan) -> AgreementReference:
        agreement_id = f"AGR-{loan.loan_application_id}"
        return AgreementReference(agreement_id=agreement_id, locator=f"{self.base_url}/{agreement_id}")


class HttpAgreementService(AgreementService):
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def generate(self, loan: Loan) -> AgreementReference:
        payload = {
            "loan_id": str(loan.id),
            "loan_application_id": loan.loan_application_id,
            "client_id": loan.client_id,
            "principal": str(loan.principal),
            "annual_interest_rate": str(loan.annual_interest_rate),
            "term_months": loan.term_months,
            "monthly_installment": str(loan.monthly_installment),
            "conditions": list(loan.regional_approval.conditions),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
            return AgreementReference.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                "agreements", str(exc) or type(exc).__name__, details={"loan_id": str(loan.id)}
            ) from exc
        except (ValueError, ValidationError) as exc:
            raise ExternalServiceError(
                "agreements", "Malformed agreement response", details={"loan_id": str(loan.id)}
            ) from exc
