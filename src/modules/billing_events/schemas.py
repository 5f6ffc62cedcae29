"""Pydantic schemas for the billing event history."""

from datetime import datetime
from typing import Any

from pydantic import Field

from src.shared.schemas.base import BaseSchema, PageParams, TenantScopedMixin
from src.modules.billing_events.models import (
    BillingEventType,
    EventSource,
    NotificationChannel,
)


class BillingEventCreate(BaseSchema):
    """Internal append payload; there is no public create endpoint."""

    account_id: int
    agency_id: int
    billing_transaction_id: int
    event_type: BillingEventType
    triggered_by_id: int
    event_data: dict[str, Any] = Field(default_factory=dict)
    source: EventSource = EventSource.WEB


class BillingEventResponse(TenantScopedMixin):
    id: int
    billing_transaction_id: int
    event_type: str
    summary: str
    event_date: datetime
    event_data: dict[str, Any]
    triggered_by_id: int
    source: str
    is_visible: bool
    hidden_at: datetime | None = None
    hidden_by_id: int | None = None
    email_sent: bool
    sms_sent: bool
    push_sent: bool
    notification_sent_at: datetime | None = None
    notification_recipients: list[str] | None = None


class BillingEventFilters(PageParams):
    """Filters for listing events."""

    billing_transaction_id: int | None = None
    event_type: BillingEventType | None = None
    triggered_by_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_hidden: bool = False


class ActivitySummaryEntry(BaseSchema):
    event_type: str
    summary: str
    count: int
    latest_date: datetime


class NotificationSent(BaseSchema):
    channel: NotificationChannel
    recipients: list[str] = Field(default_factory=list)
