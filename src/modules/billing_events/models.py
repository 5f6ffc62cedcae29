"""Billing event history: the append-only trail of billing transaction changes."""

import logging
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    String,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import Mapped, ORMExecuteState, Session, mapped_column

from src.core.database.base import Base, BigIntPK, TenantScoped
from src.core.exceptions import DeleteForbidden, ImmutableRecordViolation

logger = logging.getLogger(__name__)


class BillingEventType(StrEnum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    STATUS_CHANGED = "status_changed"
    TRANSACTION_CLAIMED = "transaction_claimed"
    TRANSACTION_PAID = "transaction_paid"
    TRANSACTION_PARTIALLY_PAID = "transaction_partially_paid"
    TRANSACTION_OVERDUE = "transaction_overdue"
    TRANSACTION_DISPUTED = "transaction_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    TRANSACTION_CANCELLED = "transaction_cancelled"
    TRANSACTION_REFUNDED = "transaction_refunded"
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_RECONCILED = "transaction_reconciled"


EVENT_SUMMARIES: dict[str, str] = {
    BillingEventType.TRANSACTION_CREATED: "Transaction created",
    BillingEventType.TRANSACTION_UPDATED: "Transaction updated",
    BillingEventType.STATUS_CHANGED: "Status changed",
    BillingEventType.TRANSACTION_CLAIMED: "Transaction claimed",
    BillingEventType.TRANSACTION_PAID: "Transaction marked as paid",
    BillingEventType.TRANSACTION_PARTIALLY_PAID: "Transaction partially paid",
    BillingEventType.TRANSACTION_OVERDUE: "Transaction overdue",
    BillingEventType.TRANSACTION_DISPUTED: "Transaction disputed",
    BillingEventType.DISPUTE_RESOLVED: "Dispute resolved",
    BillingEventType.TRANSACTION_CANCELLED: "Transaction cancelled",
    BillingEventType.TRANSACTION_REFUNDED: "Transaction refunded",
    BillingEventType.TRANSACTION_APPROVED: "Transaction approved",
    BillingEventType.TRANSACTION_RECONCILED: "Transaction reconciled",
}


class EventSource(StrEnum):
    WEB = "web"
    API = "api"
    BATCH = "batch"
    SYSTEM = "system"


class NotificationChannel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingEvent(TenantScoped, Base):
    """
    One entry in a billing transaction's history.

    Insert-only. After creation only the visibility and notification tracking
    columns may change; anything else, and any delete, is rejected at flush.
    """

    __tablename__ = "billing_event_histories"
    __table_args__ = (
        Index("ix_beh_scope_type", "account_id", "agency_id", "event_type"),
        Index("ix_beh_txn_date", "billing_transaction_id", "event_date"),
        Index("ix_beh_scope_date", "account_id", "agency_id", "event_date"),
        Index("ix_beh_actor_date", "triggered_by_id", "event_date"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    billing_transaction_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("billing_transactions.id"), nullable=False, index=True
    )

    event_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    # Set in Python so events appended in one transaction keep their order
    event_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    triggered_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventSource.WEB.value
    )

    # Soft hide
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    hidden_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hidden_by_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)

    # Notification tracking
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sms_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    push_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notification_recipients: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def summary(self) -> str:
        return EVENT_SUMMARIES.get(self.event_type, "Unknown event")


MUTABLE_EVENT_FIELDS = frozenset(
    {
        "is_visible",
        "hidden_at",
        "hidden_by_id",
        "email_sent",
        "sms_sent",
        "push_sent",
        "notification_sent_at",
        "notification_recipients",
    }
)


def _block_event_update(mapper, connection, target: BillingEvent) -> None:
    state = inspect(target)
    changed = [
        attr.key
        for attr in state.attrs
        if attr.key not in MUTABLE_EVENT_FIELDS and attr.history.has_changes()
    ]
    if not changed:
        return

    logger.error(
        "Blocked update of billing event %s (fields: %s)",
        target.id,
        ", ".join(sorted(changed)),
    )
    raise ImmutableRecordViolation("Billing event", target.id, changed)


def _block_event_delete(mapper, connection, target: BillingEvent) -> None:
    logger.error("Blocked delete of billing event %s", target.id)
    raise DeleteForbidden("Billing event", target.id)


def _block_bulk_statements(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return

    table = getattr(orm_execute_state.statement, "table", None)
    if getattr(table, "name", None) != BillingEvent.__tablename__:
        return

    if orm_execute_state.is_delete:
        logger.error("Blocked bulk DELETE against %s", BillingEvent.__tablename__)
        raise DeleteForbidden("Billing event")

    logger.error("Blocked bulk UPDATE against %s", BillingEvent.__tablename__)
    raise ImmutableRecordViolation("Billing event", "(bulk)", ["*"])


event.listen(BillingEvent, "before_update", _block_event_update)
event.listen(BillingEvent, "before_delete", _block_event_delete)
event.listen(Session, "do_orm_execute", _block_bulk_statements)
