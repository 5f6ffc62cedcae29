from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError, ScopeViolation
from src.modules.billing_events.models import BillingEvent
from src.modules.billing_transactions.generation import TransactionGenerator
from src.modules.billing_transactions.models import BillingTransaction
from src.modules.billing_transactions.service import BillingTransactionService
from src.modules.schedule_items.schemas import ScheduleItemCreate
from src.modules.schedule_items.service import ScheduleItemService


async def _create_item(db_session, tenancy, actor=None, **overrides):
    values = {
        "offer_letter_id": tenancy.offer_letter_id,
        "item_type": "tuition",
        "milestone_type": "enrollment",
        "scheduled_amount": Decimal("1500.00"),
        "scheduled_due_date": date(2024, 1, 15),
    }
    values.update(overrides)
    return await ScheduleItemService(db_session).create_item(
        ScheduleItemCreate(**values), actor or tenancy.actor()
    )


class TestTransactionGenerator:
    """Tests for the transaction generation pipeline."""

    async def test_generates_pending_transactions(self, db_session: AsyncSession, tenancy):
        item = await _create_item(db_session, tenancy)
        generator = TransactionGenerator(db_session)

        run = await generator.generate(tenancy.actor(), due_date=date(2024, 1, 31))

        assert run.created_count == 1
        assert run.skipped_inactive == 0
        assert run.skipped_already_billed == 0
        transaction = run.created[0]
        assert transaction.payment_schedule_item_id == item.id
        assert transaction.status == "pending"
        assert transaction.source == "automated"
        assert transaction.transaction_type == "invoice"
        assert transaction.debtor_type == "student"
        assert transaction.debtor_id == tenancy.student_id
        assert transaction.signed_amount == Decimal("1500.00")
        assert transaction.due_date == date(2024, 1, 15)

        events = (
            await db_session.execute(
                select(BillingEvent).where(
                    BillingEvent.billing_transaction_id == transaction.id
                )
            )
        ).scalars().all()
        assert [e.event_type for e in events] == ["transaction_created"]
        assert events[0].source == "batch"

    async def test_is_idempotent(self, db_session: AsyncSession, tenancy):
        await _create_item(db_session, tenancy)
        await _create_item(db_session, tenancy, scheduled_due_date=date(2024, 1, 20))
        generator = TransactionGenerator(db_session)

        first = await generator.generate(tenancy.actor(), due_date=date(2024, 1, 31))
        second = await generator.generate(tenancy.actor(), due_date=date(2024, 1, 31))

        assert first.created_count == 2
        assert second.created_count == 0
        assert second.skipped_already_billed == 2

        count = len((await db_session.execute(select(BillingTransaction))).scalars().all())
        assert count == 2

    async def test_skips_items_not_yet_due(self, db_session: AsyncSession, tenancy):
        await _create_item(db_session, tenancy, scheduled_due_date=date(2024, 6, 1))
        run = await TransactionGenerator(db_session).generate(
            tenancy.actor(), due_date=date(2024, 1, 31)
        )
        assert run.created_count == 0

    async def test_explicit_ids_count_inactive_items(self, db_session: AsyncSession, tenancy):
        active = await _create_item(db_session, tenancy)
        retired = await _create_item(db_session, tenancy)
        await ScheduleItemService(db_session).retire_item(
            retired.id, "Waived", tenancy.actor()
        )

        run = await TransactionGenerator(db_session).generate(
            tenancy.actor(), item_ids=[active.id, retired.id]
        )

        assert run.created_count == 1
        assert run.skipped_inactive == 1
        assert run.created[0].payment_schedule_item_id == active.id

    async def test_cancelled_transaction_allows_rebilling(
        self, db_session: AsyncSession, tenancy
    ):
        item = await _create_item(db_session, tenancy)
        generator = TransactionGenerator(db_session)
        run = await generator.generate(tenancy.actor(), item_ids=[item.id])

        await BillingTransactionService(db_session).cancel(
            run.created[0].id, tenancy.actor(), "Issued in error"
        )

        again = await generator.generate(tenancy.actor(), item_ids=[item.id])
        assert again.created_count == 1
        assert again.created[0].id != run.created[0].id

    async def test_commission_bills_agency(self, db_session: AsyncSession, tenancy):
        await _create_item(db_session, tenancy, item_type="commission")
        await _create_item(db_session, tenancy, item_type="refund")
        await _create_item(db_session, tenancy, item_type="penalty")

        run = await TransactionGenerator(db_session).generate(
            tenancy.actor(), due_date=date(2024, 1, 31)
        )

        by_type = {t.transaction_type: t for t in run.created}
        assert set(by_type) == {"invoice", "refund", "penalty"}
        commission = by_type["invoice"]
        assert commission.debtor_type == "agency"
        assert commission.debtor_id == tenancy.agency_id
        assert by_type["refund"].signed_amount == Decimal("-1500.00")
        assert by_type["penalty"].debtor_type == "student"

    async def test_foreign_item_ids_rejected_before_writes(
        self, db_session: AsyncSession, tenancy
    ):
        own = await _create_item(db_session, tenancy)
        foreign = await _create_item(
            db_session,
            tenancy,
            actor=tenancy.account_actor(),
            agency_id=tenancy.other_agency_id,
            offer_letter_id=tenancy.other_offer_letter_id,
        )

        with pytest.raises(ScopeViolation):
            await TransactionGenerator(db_session).generate(
                tenancy.actor(), item_ids=[own.id, foreign.id]
            )

        count = len((await db_session.execute(select(BillingTransaction))).scalars().all())
        assert count == 0

    async def test_unknown_item_id(self, db_session: AsyncSession, tenancy):
        with pytest.raises(NotFoundError):
            await TransactionGenerator(db_session).generate(tenancy.actor(), item_ids=[404])

    async def test_agency_filter_outside_scope(self, db_session: AsyncSession, tenancy):
        with pytest.raises(ScopeViolation):
            await TransactionGenerator(db_session).generate(
                tenancy.actor(), agency_id=tenancy.other_agency_id
            )

    async def test_account_wide_run_covers_all_agencies(
        self, db_session: AsyncSession, tenancy
    ):
        await _create_item(db_session, tenancy)
        await _create_item(
            db_session,
            tenancy,
            actor=tenancy.account_actor(),
            agency_id=tenancy.other_agency_id,
            offer_letter_id=tenancy.other_offer_letter_id,
        )

        run = await TransactionGenerator(db_session).generate(
            tenancy.account_actor(), due_date=date(2024, 1, 31)
        )
        assert run.created_count == 2
        assert {t.agency_id for t in run.created} == {tenancy.agency_id, tenancy.other_agency_id}
