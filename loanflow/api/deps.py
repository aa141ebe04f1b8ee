from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from loanflow.core import context
from loanflow.core.permissions import Role
from loanflow.core.security import decode_actor_token
from loanflow.core.settings import settings
from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.services.agreements import AgreementService, HttpAgreementService, LocalAgreementIssuer
from loanflow.services.directory import DirectoryService, HttpDirectory, InMemoryDirectory
from loanflow.services.loan_lifecycle import LoanLifecycleEngine
from loanflow.services.loan_store import InMemoryLoanStore, LoanStore, SqlLoanStore
from loanflow.services.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Not authenticated")
    try:
        claims = decode_actor_token(credentials.credentials)
        role = Role.parse(claims["role"])
    except ValueError as exc:
        raise _unauthorized("Could not validate credentials") from exc

    actor = Actor(
        id=str(claims["sub"]),
        role=role,
        region_id=claims.get("region"),
        manager_id=claims.get("manager"),
    )
    context.set_actor_id(actor.id)
    return actor


def get_provenance(request: Request) -> RequestProvenance:
    return RequestProvenance(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_id=getattr(request.state, "request_id", None) or context.get_request_id(),
    )


def _build_store() -> LoanStore:
    if settings.loan_store_backend == "sql":
        from loanflow.db.session import AsyncSessionLocal

        return SqlLoanStore(AsyncSessionLocal)
    return InMemoryLoanStore()


def _build_directory() -> DirectoryService:
    if settings.directory_backend == "http":
        if not settings.directory_base_url:
            raise RuntimeError("DIRECTORY_BASE_URL is required when DIRECTORY_BACKEND=http")
        return HttpDirectory(settings.directory_base_url, timeout=settings.side_effect_timeout_seconds)
    return InMemoryDirectory()


def _build_notifier() -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url, timeout=settings.side_effect_timeout_seconds
        )
    return LoggingNotificationDispatcher()


def _build_agreements() -> AgreementService:
    if settings.agreement_service_url:
        return HttpAgreementService(settings.agreement_service_url, timeout=settings.side_effect_timeout_seconds)
    return LocalAgreementIssuer(settings.agreement_base_url)


@lru_cache(maxsize=1)
def get_lifecycle_engine() -> LoanLifecycleEngine:
    return LoanLifecycleEngine(
        store=_build_store(),
        directory=_build_directory(),
        notifier=_build_notifier(),
        agreements=_build_agreements(),
        side_effect_timeout=settings.side_effect_timeout_seconds,
        max_attempts=settings.transition_max_attempts,
    )
