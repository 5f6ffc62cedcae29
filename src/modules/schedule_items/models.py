"""Payment schedule item model: an expected future charge or commission."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import ActorStamped, BaseModel, BigIntPK, TenantScoped


class ItemType(StrEnum):
    TUITION = "tuition"
    COMMISSION = "commission"
    FEE = "fee"
    DEPOSIT = "deposit"
    PENALTY = "penalty"
    REFUND = "refund"


class MilestoneType(StrEnum):
    ENROLLMENT = "enrollment"
    VISA_APPROVAL = "visa_approval"
    COURSE_START = "course_start"
    SEMESTER_END = "semester_end"
    GRADUATION = "graduation"
    CUSTOM = "custom"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecurringFrequency(StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class ScheduleItemStatus(StrEnum):
    """Lifecycle: created ACTIVE, every other state is terminal."""

    ACTIVE = "active"
    RETIRED = "retired"
    REPLACED = "replaced"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReplacementReason(StrEnum):
    AMOUNT_CHANGE = "amount_change"
    DATE_CHANGE = "date_change"
    MILESTONE_CHANGE = "milestone_change"
    CORRECTION = "correction"
    CANCELLATION = "cancellation"
    OTHER = "other"


class PaymentScheduleItem(TenantScoped, ActorStamped, BaseModel):
    """
    Expected future charge on an offer letter.

    Items are never edited in place once billed; a changed expectation is a
    new item that replaces the old one (replaced_by_id / parent_item_id).
    """

    __tablename__ = "payment_schedule_items"
    __table_args__ = (
        Index("ix_psi_scope_due", "account_id", "agency_id", "scheduled_due_date"),
        Index("ix_psi_scope_offer", "account_id", "agency_id", "offer_letter_id"),
        Index("ix_psi_due_status", "scheduled_due_date", "status"),
    )

    offer_letter_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("offer_letters.id"), nullable=False, index=True
    )

    item_type: Mapped[str] = mapped_column(String(20), nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(30), nullable=False)
    scheduled_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    scheduled_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=Priority.MEDIUM.value
    )

    # Recurrence rule (parent items only)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    recurring_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    recurring_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduleItemStatus.ACTIVE.value, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    parent_item_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("payment_schedule_items.id"), nullable=True, index=True
    )
    replaced_by_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("payment_schedule_items.id"), nullable=True
    )
    replacement_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    # Set only on children expanded from a recurring parent
    recurrence_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Retirement metadata (also used by cancel)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retired_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    retirement_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    offer_letter: Mapped["OfferLetter"] = relationship("OfferLetter")
    parent_item: Mapped["PaymentScheduleItem | None"] = relationship(
        "PaymentScheduleItem",
        remote_side="PaymentScheduleItem.id",
        foreign_keys=[parent_item_id],
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != ScheduleItemStatus.ACTIVE.value

    def is_overdue(self, as_of: date) -> bool:
        return self.is_active and self.scheduled_due_date < as_of

    def days_until_due(self, as_of: date) -> int:
        return (self.scheduled_due_date - as_of).days
