from datetime import date
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import ActorRole
from src.core.exceptions import (
    AuthorizationError,
    DeleteForbidden,
    ImmutableRecordViolation,
    NotFoundError,
)
from src.modules.billing_events.models import BillingEvent, NotificationChannel
from src.modules.billing_events.schemas import BillingEventFilters
from src.modules.billing_events.service import BillingEventStore
from src.modules.billing_transactions.generation import TransactionGenerator
from src.modules.billing_transactions.service import BillingTransactionService
from src.modules.schedule_items.schemas import ScheduleItemCreate
from src.modules.schedule_items.service import ScheduleItemService


async def _transaction(db_session, tenancy):
    item = await ScheduleItemService(db_session).create_item(
        ScheduleItemCreate(
            offer_letter_id=tenancy.offer_letter_id,
            item_type="tuition",
            milestone_type="enrollment",
            scheduled_amount=Decimal("1200.00"),
            scheduled_due_date=date(2024, 1, 15),
        ),
        tenancy.actor(),
    )
    run = await TransactionGenerator(db_session).generate(tenancy.actor(), item_ids=[item.id])
    return run.created[0]


class TestEventImmutability:
    """The event trail rejects every change outside the tracking columns."""

    async def test_changing_payload_is_rejected(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        billing_event.event_type = "transaction_paid"
        with pytest.raises(ImmutableRecordViolation) as exc_info:
            await db_session.flush()
        await db_session.rollback()
        assert "event_type" in exc_info.value.details["fields"]

    async def test_changing_event_data_is_rejected(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        billing_event.event_data = {"new_status": "paid"}
        with pytest.raises(ImmutableRecordViolation):
            await db_session.flush()
        await db_session.rollback()

    async def test_delete_is_rejected(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        await db_session.delete(billing_event)
        with pytest.raises(DeleteForbidden):
            await db_session.flush()
        await db_session.rollback()

    async def test_bulk_statements_are_rejected(self, db_session: AsyncSession, tenancy):
        await _transaction(db_session, tenancy)

        with pytest.raises(ImmutableRecordViolation):
            await db_session.execute(update(BillingEvent).values(event_type="status_changed"))
        await db_session.rollback()

        with pytest.raises(DeleteForbidden):
            await db_session.execute(delete(BillingEvent))
        await db_session.rollback()

        remaining = await BillingEventStore(db_session).list_events(
            BillingEventFilters(), tenancy.account_id
        )
        assert remaining[1] == 1


class TestBillingEventStore:
    """Tests for reads and the permitted mutations."""

    async def test_hide_requires_admin(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        for role in (ActorRole.USER, ActorRole.AGENCY_ADMIN):
            with pytest.raises(AuthorizationError):
                await store.hide(billing_event.id, tenancy.actor(role=role))

        admin = tenancy.account_actor()
        hidden = await store.hide(billing_event.id, admin)
        assert hidden.is_visible is False
        assert hidden.hidden_by_id == admin.id
        assert hidden.hidden_at is not None

    async def test_hidden_events_leave_default_reads(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        await BillingTransactionService(db_session).claim(transaction.id, tenancy.actor())
        store = BillingEventStore(db_session)
        created_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        await store.hide(created_event.id, tenancy.account_actor())

        visible = await store.timeline(transaction.id, tenancy.account_id)
        assert [e.event_type for e in visible] == ["transaction_claimed"]
        everything = await store.timeline(transaction.id, tenancy.account_id, include_hidden=True)
        assert len(everything) == 2

        summary = await store.activity_summary(tenancy.account_id)
        assert [(s.event_type, s.count) for s in summary] == [("transaction_claimed", 1)]

        _, total = await store.list_events(BillingEventFilters(), tenancy.account_id)
        assert total == 1
        _, total = await store.list_events(
            BillingEventFilters(include_hidden=True), tenancy.account_id
        )
        assert total == 2

    async def test_activity_summary_counts(self, db_session: AsyncSession, tenancy):
        first = await _transaction(db_session, tenancy)
        await _transaction(db_session, tenancy)
        await BillingTransactionService(db_session).claim(first.id, tenancy.actor())

        summary = await BillingEventStore(db_session).activity_summary(
            tenancy.account_id, tenancy.agency_id
        )

        assert [(s.event_type, s.count) for s in summary] == [
            ("transaction_created", 2),
            ("transaction_claimed", 1),
        ]
        assert summary[1].summary == "Transaction claimed"

    async def test_summary_respects_agency_scope(self, db_session: AsyncSession, tenancy):
        await _transaction(db_session, tenancy)
        summary = await BillingEventStore(db_session).activity_summary(
            tenancy.account_id, tenancy.other_agency_id
        )
        assert summary == []

    async def test_user_activity(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        service = BillingTransactionService(db_session)
        clerk = tenancy.actor(actor_id=42)
        await service.claim(transaction.id, clerk)
        await service.mark_as_paid(transaction.id, clerk)

        store = BillingEventStore(db_session)
        events = await store.user_activity(42, tenancy.account_id)
        assert [e.event_type for e in events] == ["transaction_paid", "transaction_claimed"]

        limited = await store.user_activity(42, tenancy.account_id, limit=1)
        assert [e.event_type for e in limited] == ["transaction_paid"]

    async def test_mark_notification_sent(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        await store.mark_notification_sent(
            billing_event.id, NotificationChannel.EMAIL, ["ops@gsp.test"], tenancy.account_id
        )
        updated = await store.mark_notification_sent(
            billing_event.id,
            NotificationChannel.SMS,
            ["ops@gsp.test", "+2348000000000"],
            tenancy.account_id,
        )

        assert updated.email_sent is True
        assert updated.sms_sent is True
        assert updated.push_sent is False
        assert updated.notification_recipients == ["ops@gsp.test", "+2348000000000"]
        assert updated.notification_sent_at is not None

    async def test_get_event_outside_scope(self, db_session: AsyncSession, tenancy):
        transaction = await _transaction(db_session, tenancy)
        store = BillingEventStore(db_session)
        billing_event = (await store.timeline(transaction.id, tenancy.account_id))[0]

        with pytest.raises(NotFoundError):
            await store.get_event(billing_event.id, tenancy.account_id, tenancy.other_agency_id)


class TestBillingEventEndpoints:
    """API tests for the billing event history."""

    async def test_timeline_and_hide(self, client: AsyncClient, db_session, tenancy):
        transaction = await _transaction(db_session, tenancy)

        response = await client.get(
            f"/api/v1/billing-event-histories/transactions/{transaction.id}/timeline",
            headers=tenancy.headers(),
        )
        assert response.status_code == 200
        events = response.json()["data"]
        assert len(events) == 1
        assert events[0]["summary"] == "Transaction created"
        assert events[0]["source"] == "batch"
        event_id = events[0]["id"]

        response = await client.post(
            f"/api/v1/billing-event-histories/{event_id}/hide",
            headers=tenancy.headers(),
        )
        assert response.status_code == 403

        response = await client.post(
            f"/api/v1/billing-event-histories/{event_id}/hide",
            headers=tenancy.headers(role=ActorRole.ACCOUNT_ADMIN, actor_id=2),
        )
        assert response.status_code == 200
        assert response.json()["data"]["is_visible"] is False

        response = await client.get(
            f"/api/v1/billing-event-histories/transactions/{transaction.id}/timeline",
            headers=tenancy.headers(),
        )
        assert response.json()["data"] == []

    async def test_timeline_of_foreign_transaction(self, client: AsyncClient, db_session, tenancy):
        transaction = await _transaction(db_session, tenancy)
        headers = tenancy.headers()
        headers["X-Agency-Id"] = str(tenancy.other_agency_id)

        response = await client.get(
            f"/api/v1/billing-event-histories/transactions/{transaction.id}/timeline",
            headers=headers,
        )
        assert response.status_code == 403

    async def test_activity_summary_endpoint(self, client: AsyncClient, db_session, tenancy):
        await _transaction(db_session, tenancy)

        response = await client.get(
            "/api/v1/billing-event-histories/activity-summary",
            headers=tenancy.headers(),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data[0]["event_type"] == "transaction_created"
        assert data[0]["count"] == 1
