from __future__ import annotations

import copy
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from fastapi.encoders import jsonable_encoder

from loanflow.core.logging import get_audit_logger
from loanflow.schemas.actor import Actor, RequestProvenance
from loanflow.schemas.loan import AuditEntry, Loan

# Fields that, replayed in order, rebuild the workflow-relevant state of a loan.
TRACKED_FIELDS = (
    "current_stage",
    "loan_status",
    "agent_review",
    "regional_approval",
    "agreement",
    "remaining_balance",
    "next_payment_date",
    "disbursement_date",
    "completion_date",
    "defaulted_on",
    "days_overdue",
    "commission",
)

audit_logger = get_audit_logger()


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
        },
    )


def loan_snapshot(loan: Loan | None, *, fields: Iterable[str] = TRACKED_FIELDS) -> dict[str, Any]:
    if loan is None:
        return {}
    data = {name: getattr(loan, name) for name in fields}
    return serialize_for_audit(data)


def _diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    if isinstance(old, dict) and isinstance(new, dict):
        keys = list(old.keys()) + [key for key in new.keys() if key not in old]
        for key in keys:
            path = f"{prefix}.{key}" if prefix else str(key)
            changes.update(_diff_values(old.get(key), new.get(key), path))
        return changes
    if old != new:
        changes[prefix or "value"] = {"from": old, "to": new}
    return changes


def diff_snapshots(old: dict[str, Any], new: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return _diff_values(old or {}, new or {})


def _build_summary(action: str, changes: dict[str, dict[str, Any]] | None) -> str:
    if not changes:
        return action
    keys = list(changes.keys())
    snippet = ", ".join(keys[:3])
    suffix = "..." if len(keys) > 3 else ""
    return f"{action}: {snippet}{suffix}"


def append(loan: Loan, entry: AuditEntry) -> AuditEntry:
    """The only way an entry reaches a loan's trail."""
    loan.audit_trail.append(entry)
    return entry


def publish(loan: Loan, entries: Iterable[AuditEntry]) -> None:
    """Mirror committed entries to the audit log stream."""
    for entry in entries:
        _publish_entry(loan, entry)


def _publish_entry(loan: Loan, entry: AuditEntry) -> None:
    audit_logger.info(
        _build_summary(entry.action, entry.changes),
        extra={
            "audit": {
                "loan_id": str(loan.id),
                "loan_application_id": loan.loan_application_id,
                **serialize_for_audit(entry.model_dump(exclude={"changes"})),
            }
        },
    )


def record(
    loan: Loan,
    *,
    action: str,
    actor: Actor,
    old_value: dict[str, Any] | None,
    new_value: dict[str, Any] | None,
    comment: str | None = None,
    provenance: RequestProvenance | None = None,
    extra_changes: dict[str, Any] | None = None,
) -> AuditEntry:
    changes = diff_snapshots(old_value or {}, new_value or {})
    if extra_changes:
        changes.update(serialize_for_audit(extra_changes))
    entry = AuditEntry(
        action=action,
        actor_id=actor.id,
        actor_role=actor.role.value,
        changes=changes,
        comment=comment,
        provenance=provenance or RequestProvenance(),
    )
    return append(loan, entry)


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cursor = target
    for part in parts[:-1]:
        nested = cursor.get(part)
        if not isinstance(nested, dict):
            nested = {}
            cursor[part] = nested
        cursor = nested
    cursor[parts[-1]] = copy.deepcopy(value)


def replay_trail(entries: Iterable[AuditEntry], *, until: datetime | None = None) -> dict[str, Any]:
    """Rebuild the tracked loan state by applying each entry's changes in order.

    With ``until`` the replay stops after the last entry at or before that
    instant, giving the state as it was at that point in time.
    """
    state: dict[str, Any] = {name: None for name in TRACKED_FIELDS}
    for entry in entries:
        if until is not None and entry.timestamp > until:
            break
        for path, change in entry.changes.items():
            if path.split(".")[0] not in TRACKED_FIELDS:
                continue
            if isinstance(change, dict) and "to" in change:
                _set_path(state, path, change["to"])
    return state
