"""Pydantic schemas for payment schedule items."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import Field, field_validator, model_validator

from src.shared.schemas.base import (
    ActorStampMixin,
    BaseSchema,
    PageParams,
    TenantScopedMixin,
    TimestampMixin,
)
from src.shared.utils.money import normalize_currency
from src.modules.schedule_items.models import (
    ItemType,
    MilestoneType,
    Priority,
    RecurringFrequency,
    ReplacementReason,
    ScheduleItemStatus,
)


class _CurrencyMixin(BaseSchema):
    @field_validator("currency", check_fields=False)
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return normalize_currency(v) if v is not None else v


class ScheduleItemCreate(_CurrencyMixin):
    """Schema for creating a payment schedule item."""

    agency_id: int | None = Field(
        None, description="Defaults to the caller's agency"
    )
    offer_letter_id: int
    item_type: ItemType
    milestone_type: MilestoneType
    scheduled_amount: Decimal = Field(gt=0, description="Must be positive")
    currency: str | None = Field(None, description="Defaults to the configured currency")
    scheduled_due_date: date
    description: str | None = Field(None, max_length=500)
    priority: Priority = Priority.MEDIUM

    is_recurring: bool = False
    recurring_frequency: RecurringFrequency | None = None
    recurring_end_date: date | None = None
    recurring_occurrences: int | None = Field(None, ge=1)

    notes: str | None = None
    internal_notes: str | None = None

    @model_validator(mode="after")
    def validate_recurring_rule(self):
        if not self.is_recurring:
            return self
        if self.recurring_frequency is None:
            raise ValueError("Recurring items require a frequency")
        has_end = self.recurring_end_date is not None
        has_count = self.recurring_occurrences is not None
        if has_end == has_count:
            raise ValueError(
                "Recurring items require exactly one of recurring_end_date or recurring_occurrences"
            )
        if has_end and self.recurring_end_date < self.scheduled_due_date:
            raise ValueError("recurring_end_date cannot be before scheduled_due_date")
        return self


class ScheduleItemUpdate(_CurrencyMixin):
    """Partial update. Amount, type and offer letter freeze once the item is billed."""

    offer_letter_id: int | None = None
    item_type: ItemType | None = None
    milestone_type: MilestoneType | None = None
    scheduled_amount: Decimal | None = Field(None, gt=0)
    currency: str | None = None
    scheduled_due_date: date | None = None
    description: str | None = Field(None, max_length=500)
    priority: Priority | None = None
    is_recurring: bool | None = None
    recurring_frequency: RecurringFrequency | None = None
    recurring_end_date: date | None = None
    recurring_occurrences: int | None = Field(None, ge=1)
    notes: str | None = None
    internal_notes: str | None = None


class ScheduleItemResponse(TenantScopedMixin, ActorStampMixin, TimestampMixin):
    id: int
    offer_letter_id: int
    item_type: str
    milestone_type: str
    scheduled_amount: Decimal
    currency: str
    scheduled_due_date: date
    description: str | None
    priority: str
    is_recurring: bool
    recurring_frequency: str | None
    recurring_end_date: date | None
    recurring_occurrences: int | None
    status: str
    is_active: bool
    parent_item_id: int | None
    replaced_by_id: int | None
    replacement_reason: str | None
    recurrence_index: int | None
    retired_at: datetime | None
    retired_by_id: int | None
    retirement_reason: str | None
    completed_at: datetime | None
    completed_by_id: int | None
    approved_at: datetime | None
    approved_by_id: int | None
    notes: str | None


class ScheduleItemFilters(PageParams):
    """Filters for listing schedule items."""

    agency_id: int | None = None
    offer_letter_id: int | None = None
    item_type: ItemType | None = None
    milestone_type: MilestoneType | None = None
    status: ScheduleItemStatus | None = None
    is_active: bool | None = None
    parent_item_id: int | None = None
    due_from: date | None = None
    due_to: date | None = None


class RetireRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class CancelRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class ReplaceRequest(BaseSchema):
    new_item_id: int
    reason: ReplacementReason


class ReplacementItemData(_CurrencyMixin):
    """Overrides for the replacement; unset fields are copied from the original."""

    offer_letter_id: int | None = None
    item_type: ItemType | None = None
    milestone_type: MilestoneType | None = None
    scheduled_amount: Decimal | None = Field(None, gt=0)
    currency: str | None = None
    scheduled_due_date: date | None = None
    description: str | None = Field(None, max_length=500)
    priority: Priority | None = None
    notes: str | None = None


class ReplaceWithNewRequest(BaseSchema):
    reason: ReplacementReason
    new_item: ReplacementItemData


class ReplaceWithNewResult(BaseSchema):
    original: ScheduleItemResponse
    replacement: ScheduleItemResponse


class GenerateRecurringRequest(BaseSchema):
    generate_until: date | None = None


class RecurringGenerationResult(BaseSchema):
    parent_item_id: int
    created_count: int
    items: list[ScheduleItemResponse]


class ScheduleItemHistoryEntry(BaseSchema):
    id: int
    action: str
    actor_id: int | None
    old_values: dict | None
    new_values: dict | None
    comment: str | None
    created_at: datetime
