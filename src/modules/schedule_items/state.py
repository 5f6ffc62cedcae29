"""
Payment schedule item lifecycle.

ACTIVE is the only non-terminal state. Each operation validates the item and
returns an ItemTransition (column changes plus the audit entry to write); the
service applies it with a compare-and-swap on `status == active`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.core.exceptions import InvalidTransition, ValidationError
from src.modules.schedule_items.models import ReplacementReason, ScheduleItemStatus

ENTITY = "payment schedule item"


@dataclass(frozen=True)
class ItemTransition:
    item_id: int
    previous_status: str
    new_status: str
    action: str
    changes: dict[str, Any] = field(default_factory=dict)
    comment: str | None = None


def _require_active(item, target: ScheduleItemStatus) -> None:
    if item.status != ScheduleItemStatus.ACTIVE.value:
        raise InvalidTransition(ENTITY, item.id, item.status, target.value)


def _require_reason(reason: str | None, operation: str) -> str:
    if not reason or not reason.strip():
        raise ValidationError(f"A reason is required to {operation} a schedule item", field="reason")
    if len(reason) > 500:
        raise ValidationError("Reason cannot exceed 500 characters", field="reason")
    return reason.strip()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def retire(item, actor_id: int, reason: str) -> ItemTransition:
    _require_active(item, ScheduleItemStatus.RETIRED)
    reason = _require_reason(reason, "retire")
    return ItemTransition(
        item_id=item.id,
        previous_status=item.status,
        new_status=ScheduleItemStatus.RETIRED.value,
        action="schedule_item.retire",
        changes={
            "status": ScheduleItemStatus.RETIRED.value,
            "is_active": False,
            "retired_at": _now(),
            "retired_by_id": actor_id,
            "retirement_reason": reason,
            "updated_by_id": actor_id,
        },
        comment=reason,
    )


def ensure_replaceable(item, reason: ReplacementReason | str) -> str:
    """Checks shared by both replace flows; returns the normalized reason."""
    _require_active(item, ScheduleItemStatus.REPLACED)
    try:
        return ReplacementReason(reason).value
    except ValueError:
        raise ValidationError(f"Invalid replacement reason: {reason}", field="reason")


def replace(item, new_item_id: int, reason: ReplacementReason | str, actor_id: int) -> ItemTransition:
    reason_value = ensure_replaceable(item, reason)
    if new_item_id == item.id:
        raise ValidationError("A schedule item cannot replace itself", field="new_item_id")
    return ItemTransition(
        item_id=item.id,
        previous_status=item.status,
        new_status=ScheduleItemStatus.REPLACED.value,
        action="schedule_item.replace",
        changes={
            "status": ScheduleItemStatus.REPLACED.value,
            "is_active": False,
            "replaced_by_id": new_item_id,
            "replacement_reason": reason_value,
            "updated_by_id": actor_id,
        },
        comment=reason_value,
    )


def complete(item, actor_id: int) -> ItemTransition:
    _require_active(item, ScheduleItemStatus.COMPLETED)
    return ItemTransition(
        item_id=item.id,
        previous_status=item.status,
        new_status=ScheduleItemStatus.COMPLETED.value,
        action="schedule_item.complete",
        changes={
            "status": ScheduleItemStatus.COMPLETED.value,
            "is_active": False,
            "completed_at": _now(),
            "completed_by_id": actor_id,
            "updated_by_id": actor_id,
        },
    )


def cancel(item, actor_id: int, reason: str) -> ItemTransition:
    _require_active(item, ScheduleItemStatus.CANCELLED)
    reason = _require_reason(reason, "cancel")
    return ItemTransition(
        item_id=item.id,
        previous_status=item.status,
        new_status=ScheduleItemStatus.CANCELLED.value,
        action="schedule_item.cancel",
        changes={
            "status": ScheduleItemStatus.CANCELLED.value,
            "is_active": False,
            "retired_at": _now(),
            "retired_by_id": actor_id,
            "retirement_reason": reason,
            "updated_by_id": actor_id,
        },
        comment=reason,
    )
