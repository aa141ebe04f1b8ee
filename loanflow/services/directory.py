from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from loanflow.core.exceptions import ExternalServiceError
from loanflow.schemas.directory import Client, Guarantor, Region, Staff

ModelT = TypeVar("ModelT", bound=BaseModel)


class DirectoryService(ABC):
    """Read-only lookups. ``None`` means "no such record"; errors are raised."""

    @abstractmethod
    async def get_client(self, client_id: str) -> Client | None: ...

    @abstractmethod
    async def get_staff(self, staff_id: str) -> Staff | None: ...

    @abstractmethod
    async def get_region(self, region_id: str) -> Region | None: ...

    @abstractmethod
    async def get_guarantor(self, guarantor_id: str) -> Guarantor | None: ...


class InMemoryDirectory(DirectoryService):
    def __init__(
        self,
        *,
        clients: list[Client] | None = None,
        staff: list[Staff] | None = None,
        regions: list[Region] | None = None,
        guarantors: list[Guarantor] | None = None,
    ) -> None:
        self.clients = {item.id: item for item in clients or []}
        self.staff = {item.id: item for item in staff or []}
        self.regions = {item.id: item for item in regions or []}
        self.guarantors = {item.id: item for item in guarantors or []}

    def add(self, *items: BaseModel) -> None:
        for item in items:
            if isinstance(item, Client):
                self.clients[item.id] = item
            elif isinstance(item, Staff):
                self.staff[item.id] = item
            elif isinstance(item, Region):
                self.regions[item.id] = item
            elif isinstance(item, Guarantor):
                self.guarantors[item.id] = item
            else:
                raise TypeError(f"Unsupported directory record: {type(item).__name__}")

    async def get_client(self, client_id: str) -> Client | None:
        return self.clients.get(client_id)

    async def get_staff(self, staff_id: str) -> Staff | None:
        return self.staff.get(staff_id)

    async def get_region(self, region_id: str) -> Region | None:
        return self.regions.get(region_id)

    async def get_guarantor(self, guarantor_id: str) -> Guarantor | None:
        return self.guarantors.get(guarantor_id)


class HttpDirectory(DirectoryService):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _fetch(self, path: str, model: type[ModelT]) -> ModelT | None:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return model.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise ExternalServiceError("directory", str(exc) or type(exc).__name__, details={"path": path}) from exc
        except (ValueError, ValidationError) as exc:
            raise ExternalServiceError("directory", "Malformed directory response", details={"path": path}) from exc

    async def get_client(self, client_id: str) -> Client | None:
        return await self._fetch(f"/clients/{client_id}", Client)

    async def get_staff(self, staff_id: str) -> Staff | None:
        return await self._fetch(f"/staff/{staff_id}", Staff)

    async def get_region(self, region_id: str) -> Region | None:
        return await self._fetch(f"/regions/{region_id}", Region)

    async def get_guarantor(self, guarantor_id: str) -> Guarantor | None:
        return await self._fetch(f"/guarantors/{guarantor_id}", Guarantor)
