"""Billing transaction and approval models."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import ActorStamped, Base, BaseModel, BigIntPK, TenantScoped
from src.shared.utils.money import round_money


class TransactionStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(StrEnum):
    INVOICE = "invoice"
    PAYMENT = "payment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    PENALTY = "penalty"


class DebtorType(StrEnum):
    STUDENT = "student"
    INSTITUTION = "institution"
    AGENCY = "agency"
    GOVERNMENT = "government"


class PaymentMethod(StrEnum):
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    CHECK = "check"
    CASH = "cash"
    OTHER = "other"


class TransactionSource(StrEnum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    IMPORT = "import"
    API = "api"


class ApprovalLevel(StrEnum):
    MANAGER = "manager"
    ADMIN = "admin"
    FINANCE = "finance"


# A schedule item may be billed again only after its previous transaction
# was cancelled or refunded.
DEAD_STATUSES = (TransactionStatus.CANCELLED.value, TransactionStatus.REFUNDED.value)
SETTLED_STATUSES = (
    TransactionStatus.PAID.value,
    TransactionStatus.CANCELLED.value,
    TransactionStatus.REFUNDED.value,
)
_LIVE_PREDICATE = text("status NOT IN ('cancelled', 'refunded')")


class BillingTransaction(TenantScoped, ActorStamped, BaseModel):
    """
    Ledger-like entry generated from a payment schedule item.

    Status only moves along the transition table in
    src.modules.billing_transactions.state; every move appends a billing event.
    """

    __tablename__ = "billing_transactions"
    __table_args__ = (
        Index("ix_bt_scope_status", "account_id", "agency_id", "status"),
        Index("ix_bt_scope_debtor", "account_id", "agency_id", "debtor_type", "debtor_id"),
        Index("ix_bt_due_status", "due_date", "status"),
        Index(
            "uq_bt_live_item",
            "payment_schedule_item_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
    )

    payment_schedule_item_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("payment_schedule_items.id"), nullable=False, index=True
    )

    debtor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    debtor_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)

    signed_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    claimed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # References
    invoice_ref: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    credit_note_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    receipt_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Fees, same currency as signed_amount
    processing_fee: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    late_fee: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    conversion_fee: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)

    # Reconciliation (one-way, only once paid)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    bank_statement_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Dispute metadata
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispute_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    dispute_resolved_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    dispute_resolved_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)

    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionSource.MANUAL.value
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    schedule_item: Mapped["PaymentScheduleItem"] = relationship("PaymentScheduleItem")
    approvals: Mapped[list["TransactionApproval"]] = relationship(
        "TransactionApproval",
        back_populates="transaction",
        order_by="TransactionApproval.id",
    )

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    @property
    def total_fees(self) -> Decimal:
        fees = (self.processing_fee, self.late_fee, self.conversion_fee)
        return round_money(sum((f for f in fees if f), Decimal("0")))

    @property
    def net_amount(self) -> Decimal:
        return round_money(self.signed_amount - self.total_fees)

    def is_overdue(self, as_of: date) -> bool:
        return (
            self.due_date is not None
            and self.due_date < as_of
            and self.status not in SETTLED_STATUSES
        )

    def days_overdue(self, as_of: date) -> int:
        if self.due_date is None or self.status == TransactionStatus.PAID.value:
            return 0
        return max(0, (as_of - self.due_date).days)


class TransactionApproval(Base):
    """One approval stamp; the same actor may approve once per level."""

    __tablename__ = "billing_transaction_approvals"
    __table_args__ = (
        UniqueConstraint(
            "billing_transaction_id",
            "approved_by_id",
            "level",
            name="uq_bt_approval_actor_level",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    billing_transaction_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("billing_transactions.id"), nullable=False, index=True
    )
    approved_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    transaction: Mapped["BillingTransaction"] = relationship(
        "BillingTransaction", back_populates="approvals"
    )
