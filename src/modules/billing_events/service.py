"""Append-only store for billing events."""

import logging
from datetime import datetime, timedelta, timezone

from pydantic_core import to_jsonable_python
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import Actor
from src.core.config import settings
from src.core.exceptions import AuthorizationError, NotFoundError
from src.modules.billing_events.models import (
    EVENT_SUMMARIES,
    BillingEvent,
    NotificationChannel,
)
from src.modules.billing_events.schemas import (
    ActivitySummaryEntry,
    BillingEventCreate,
    BillingEventFilters,
)

logger = logging.getLogger(__name__)


class BillingEventStore:
    """
    The only writer of billing events.

    `append` flushes but never commits: the caller's state transition and its
    event land in the same database transaction. `hide` and
    `mark_notification_sent` touch only the columns the immutability guard
    leaves open. It has no update or delete method.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, data: BillingEventCreate) -> BillingEvent:
        billing_event = BillingEvent(
            account_id=data.account_id,
            agency_id=data.agency_id,
            billing_transaction_id=data.billing_transaction_id,
            event_type=data.event_type.value,
            event_date=datetime.now(timezone.utc),
            event_data=to_jsonable_python(data.event_data),
            triggered_by_id=data.triggered_by_id,
            source=data.source.value,
        )
        self.db.add(billing_event)
        await self.db.flush()
        logger.debug(
            "Appended %s to billing transaction %s",
            billing_event.event_type,
            billing_event.billing_transaction_id,
        )
        return billing_event

    # --- Reads ---

    def _scoped(self, query, account_id: int, agency_id: int | None):
        query = query.where(BillingEvent.account_id == account_id)
        if agency_id is not None:
            query = query.where(BillingEvent.agency_id == agency_id)
        return query

    async def get_event(
        self, event_id: int, account_id: int, agency_id: int | None = None
    ) -> BillingEvent:
        query = self._scoped(
            select(BillingEvent).where(BillingEvent.id == event_id), account_id, agency_id
        )
        billing_event = (await self.db.execute(query)).scalar_one_or_none()
        if not billing_event:
            raise NotFoundError("Billing event", event_id)
        return billing_event

    async def list_events(
        self,
        filters: BillingEventFilters,
        account_id: int,
        agency_id: int | None = None,
    ) -> tuple[list[BillingEvent], int]:
        """List events with filters, newest first."""
        query = self._scoped(select(BillingEvent), account_id, agency_id)

        if not filters.include_hidden:
            query = query.where(BillingEvent.is_visible.is_(True))
        if filters.billing_transaction_id:
            query = query.where(
                BillingEvent.billing_transaction_id == filters.billing_transaction_id
            )
        if filters.event_type:
            query = query.where(BillingEvent.event_type == filters.event_type.value)
        if filters.triggered_by_id:
            query = query.where(BillingEvent.triggered_by_id == filters.triggered_by_id)
        if filters.date_from:
            query = query.where(BillingEvent.event_date >= filters.date_from)
        if filters.date_to:
            query = query.where(BillingEvent.event_date <= filters.date_to)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(BillingEvent.event_date.desc(), BillingEvent.id.desc())
        query = query.offset(filters.offset).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def timeline(
        self,
        transaction_id: int,
        account_id: int,
        agency_id: int | None = None,
        include_hidden: bool = False,
    ) -> list[BillingEvent]:
        """Events of one transaction in the order they happened."""
        query = self._scoped(
            select(BillingEvent).where(BillingEvent.billing_transaction_id == transaction_id),
            account_id,
            agency_id,
        )
        if not include_hidden:
            query = query.where(BillingEvent.is_visible.is_(True))
        query = query.order_by(BillingEvent.event_date.asc(), BillingEvent.id.asc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def activity_summary(
        self,
        account_id: int,
        agency_id: int | None = None,
        days: int | None = None,
    ) -> list[ActivitySummaryEntry]:
        """Count of visible events per type over the last `days` days, busiest first."""
        days = days if days is not None else settings.activity_window_days
        since = datetime.now(timezone.utc) - timedelta(days=days)

        event_count = func.count(BillingEvent.id).label("event_count")
        latest_date = func.max(BillingEvent.event_date).label("latest_date")
        query = self._scoped(
            select(BillingEvent.event_type, event_count, latest_date),
            account_id,
            agency_id,
        ).where(
            BillingEvent.event_date >= since,
            BillingEvent.is_visible.is_(True),
        )
        query = query.group_by(BillingEvent.event_type).order_by(
            event_count.desc(), BillingEvent.event_type.asc()
        )

        rows = (await self.db.execute(query)).all()
        return [
            ActivitySummaryEntry(
                event_type=row.event_type,
                summary=EVENT_SUMMARIES.get(row.event_type, "Unknown event"),
                count=row.event_count,
                latest_date=row.latest_date,
            )
            for row in rows
        ]

    async def user_activity(
        self,
        user_id: int,
        account_id: int,
        agency_id: int | None = None,
        days: int | None = None,
        limit: int | None = None,
    ) -> list[BillingEvent]:
        """Visible events triggered by one actor, newest first."""
        days = days if days is not None else settings.activity_window_days
        limit = limit if limit is not None else settings.user_activity_limit
        since = datetime.now(timezone.utc) - timedelta(days=days)

        query = self._scoped(
            select(BillingEvent).where(
                BillingEvent.triggered_by_id == user_id,
                BillingEvent.event_date >= since,
                BillingEvent.is_visible.is_(True),
            ),
            account_id,
            agency_id,
        )
        query = query.order_by(BillingEvent.event_date.desc(), BillingEvent.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # --- Permitted mutations ---

    async def hide(self, event_id: int, actor: Actor) -> BillingEvent:
        """Soft-hide an event from default reads. Admins only."""
        if not actor.is_admin:
            raise AuthorizationError("Only administrators can hide billing events")

        billing_event = await self.get_event(event_id, actor.account_id, actor.agency_id)
        if billing_event.is_visible:
            billing_event.is_visible = False
            billing_event.hidden_at = datetime.now(timezone.utc)
            billing_event.hidden_by_id = actor.id
            await self.db.commit()
            logger.info("Billing event %s hidden by actor %s", event_id, actor.id)
        return billing_event

    async def mark_notification_sent(
        self,
        event_id: int,
        channel: NotificationChannel,
        recipients: list[str],
        account_id: int,
        agency_id: int | None = None,
    ) -> BillingEvent:
        billing_event = await self.get_event(event_id, account_id, agency_id)

        if channel == NotificationChannel.EMAIL:
            billing_event.email_sent = True
        elif channel == NotificationChannel.SMS:
            billing_event.sms_sent = True
        else:
            billing_event.push_sent = True

        known = list(billing_event.notification_recipients or [])
        billing_event.notification_recipients = known + [r for r in recipients if r not in known]
        billing_event.notification_sent_at = datetime.now(timezone.utc)

        await self.db.commit()
        return billing_event
