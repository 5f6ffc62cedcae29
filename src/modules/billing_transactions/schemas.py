"""Pydantic schemas for billing transactions."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import Field, field_validator

from src.shared.schemas.base import (
    ActorStampMixin,
    BaseSchema,
    PageParams,
    TenantScopedMixin,
    TimestampMixin,
)
from src.shared.utils.money import normalize_currency
from src.modules.billing_transactions.models import (
    ApprovalLevel,
    DebtorType,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)


class TransactionCreate(BaseSchema):
    """Manual transaction for a schedule item that has no live transaction."""

    agency_id: int | None = Field(None, description="Defaults to the caller's agency")
    payment_schedule_item_id: int
    debtor_type: DebtorType
    debtor_id: int
    signed_amount: Decimal = Field(description="Non-zero; negative for credits")
    currency: str | None = None
    transaction_type: TransactionType
    due_date: date | None = Field(None, description="Defaults to the item's due date")
    payment_method: PaymentMethod | None = None
    invoice_ref: str | None = Field(None, max_length=100)
    credit_note_ref: str | None = Field(None, max_length=100)
    receipt_ref: str | None = Field(None, max_length=100)
    external_ref: str | None = Field(None, max_length=100)
    processing_fee: Decimal | None = Field(None, ge=0)
    late_fee: Decimal | None = Field(None, ge=0)
    conversion_fee: Decimal | None = Field(None, ge=0)
    notes: str | None = None
    internal_notes: str | None = None

    @field_validator("signed_amount")
    @classmethod
    def non_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("signed_amount cannot be zero")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return normalize_currency(v) if v is not None else v


class TransactionUpdate(BaseSchema):
    """Field edits. Settled and reconciled transactions freeze their financial fields."""

    debtor_type: DebtorType | None = None
    debtor_id: int | None = None
    signed_amount: Decimal | None = None
    transaction_type: TransactionType | None = None
    due_date: date | None = None
    payment_method: PaymentMethod | None = None
    invoice_ref: str | None = Field(None, max_length=100)
    credit_note_ref: str | None = Field(None, max_length=100)
    receipt_ref: str | None = Field(None, max_length=100)
    external_ref: str | None = Field(None, max_length=100)
    processing_fee: Decimal | None = Field(None, ge=0)
    late_fee: Decimal | None = Field(None, ge=0)
    conversion_fee: Decimal | None = Field(None, ge=0)
    notes: str | None = None
    internal_notes: str | None = None

    @field_validator("signed_amount")
    @classmethod
    def non_zero(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v == 0:
            raise ValueError("signed_amount cannot be zero")
        return v


class ApprovalResponse(BaseSchema):
    id: int
    approved_by_id: int
    level: str
    comments: str | None
    approved_at: datetime


class TransactionResponse(TenantScopedMixin, ActorStampMixin, TimestampMixin):
    id: int
    payment_schedule_item_id: int
    debtor_type: str
    debtor_id: int
    signed_amount: Decimal
    currency: str
    net_amount: Decimal
    status: str
    transaction_type: str
    due_date: date | None
    claimed_date: date | None
    paid_date: date | None
    payment_method: str | None
    invoice_ref: str | None
    credit_note_ref: str | None
    receipt_ref: str | None
    external_ref: str | None
    processing_fee: Decimal | None
    late_fee: Decimal | None
    conversion_fee: Decimal | None
    is_reconciled: bool
    reconciled_at: datetime | None
    reconciled_by_id: int | None
    bank_statement_ref: str | None
    dispute_reason: str | None
    dispute_date: date | None
    dispute_resolved_date: date | None
    dispute_resolved_by_id: int | None
    source: str
    notes: str | None
    approvals: list[ApprovalResponse] = []


class TransactionFilters(PageParams):
    """Filters for listing transactions."""

    agency_id: int | None = None
    payment_schedule_item_id: int | None = None
    status: TransactionStatus | None = None
    transaction_type: TransactionType | None = None
    debtor_type: DebtorType | None = None
    debtor_id: int | None = None
    is_reconciled: bool | None = None
    due_from: date | None = None
    due_to: date | None = None


# --- Operation payloads ---


class ClaimRequest(BaseSchema):
    claim_date: date | None = None


class PaymentRequest(BaseSchema):
    paid_date: date | None = None
    payment_method: PaymentMethod | None = None
    partial: bool = Field(False, description="Record a partial payment instead")


class DisputeRequest(BaseSchema):
    reason: str = Field(..., min_length=1)
    dispute_date: date | None = None


class ResolveDisputeRequest(BaseSchema):
    new_status: TransactionStatus
    resolved_date: date | None = None


class ReasonRequest(BaseSchema):
    reason: str | None = None


class StatusUpdateRequest(BaseSchema):
    status: TransactionStatus
    paid_date: date | None = None
    claimed_date: date | None = None
    payment_method: PaymentMethod | None = None
    invoice_ref: str | None = Field(None, max_length=100)
    credit_note_ref: str | None = Field(None, max_length=100)
    receipt_ref: str | None = Field(None, max_length=100)
    external_ref: str | None = Field(None, max_length=100)


class ApprovalRequest(BaseSchema):
    level: ApprovalLevel
    comments: str | None = None


class ReconcileRequest(BaseSchema):
    bank_statement_ref: str = Field(..., min_length=1, max_length=100)


class GenerateTransactionsRequest(BaseSchema):
    agency_id: int | None = None
    item_ids: list[int] | None = Field(None, max_length=1000)
    due_date: date | None = Field(None, description="Defaults to today")


class GenerationResult(BaseSchema):
    created: list[TransactionResponse]
    created_count: int
    skipped_inactive: int
    skipped_already_billed: int


class RevenueSummaryFilters(BaseSchema):
    agency_id: int | None = None
    paid_from: date | None = None
    paid_to: date | None = None


class RevenueSummaryEntry(BaseSchema):
    currency: str
    total_amount: Decimal
    transaction_count: int
    average_amount: Decimal
