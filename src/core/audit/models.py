from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Index, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK


class AuditEntity(StrEnum):
    """Entities audited here. Billing transactions keep their own event history."""

    SCHEDULE_ITEM = "PaymentScheduleItem"


class AuditLog(Base):
    """
    Append-only change record for payment schedule items.

    `action` is "<entity>.<verb>" (e.g. "schedule_item.retire"); old_values /
    new_values hold only the columns the action touched, already JSON-safe.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_entity_created", "entity_type", "entity_id", "created_at"),
        Index("ix_audit_scope_created", "account_id", "agency_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    # Nullable: account-level actions carry no agency
    account_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    agency_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    actor_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
