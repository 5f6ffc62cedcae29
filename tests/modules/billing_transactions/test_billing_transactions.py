from datetime import date
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import Actor, ActorRole
from src.core.exceptions import (
    DuplicateApproval,
    DuplicateError,
    FieldImmutable,
    InvalidTransition,
    ScopeViolation,
)
from src.modules.billing_events.service import BillingEventStore
from src.modules.billing_transactions.generation import TransactionGenerator
from src.modules.billing_transactions.schemas import (
    RevenueSummaryFilters,
    TransactionCreate,
    TransactionUpdate,
)
from src.modules.billing_transactions.service import BillingTransactionService
from src.modules.schedule_items.schemas import ScheduleItemCreate
from src.modules.schedule_items.service import ScheduleItemService


async def _create_item(db_session, tenancy, **overrides):
    values = {
        "offer_letter_id": tenancy.offer_letter_id,
        "item_type": "tuition",
        "milestone_type": "enrollment",
        "scheduled_amount": Decimal("1500.00"),
        "scheduled_due_date": date(2024, 1, 15),
    }
    values.update(overrides)
    return await ScheduleItemService(db_session).create_item(
        ScheduleItemCreate(**values), tenancy.actor()
    )


async def _pending_transaction(db_session, tenancy, **item_overrides):
    item = await _create_item(db_session, tenancy, **item_overrides)
    run = await TransactionGenerator(db_session).generate(tenancy.actor(), item_ids=[item.id])
    return run.created[0]


class TestBillingTransactionService:
    """Tests for BillingTransactionService."""

    async def test_full_lifecycle(self, db_session: AsyncSession, tenancy):
        """Generate, claim, pay and reconcile, checking the timeline as it grows."""
        service = BillingTransactionService(db_session)
        store = BillingEventStore(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)

        claimed = await service.claim(transaction.id, actor, claim_date=date(2024, 1, 16))
        assert claimed.status == "claimed"
        assert claimed.claimed_date == date(2024, 1, 16)

        timeline = await store.timeline(transaction.id, tenancy.account_id, tenancy.agency_id)
        assert [e.event_type for e in timeline] == ["transaction_created", "transaction_claimed"]
        assert timeline[1].event_data["previous_status"] == "pending"
        assert timeline[1].event_data["new_status"] == "claimed"
        assert timeline[1].triggered_by_id == actor.id

        paid = await service.mark_as_paid(
            transaction.id, actor, paid_date=date(2024, 2, 1), payment_method="bank_transfer"
        )
        assert paid.status == "paid"
        assert paid.paid_date == date(2024, 2, 1)
        assert paid.payment_method == "bank_transfer"

        reconciled = await service.reconcile(transaction.id, actor, "BS-2024-02")
        assert reconciled.is_reconciled is True
        assert reconciled.reconciled_by_id == actor.id
        assert reconciled.bank_statement_ref == "BS-2024-02"

        with pytest.raises(InvalidTransition):
            await service.reconcile(transaction.id, actor, "BS-2024-03")
        with pytest.raises(FieldImmutable):
            await service.refund(transaction.id, actor, "Overpaid")

        timeline = await store.timeline(transaction.id, tenancy.account_id, tenancy.agency_id)
        assert [e.event_type for e in timeline] == [
            "transaction_created",
            "transaction_claimed",
            "transaction_paid",
            "transaction_reconciled",
        ]

    async def test_pending_cannot_be_paid(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        transaction = await _pending_transaction(db_session, tenancy)

        with pytest.raises(InvalidTransition) as exc_info:
            await service.mark_as_paid(transaction.id, tenancy.actor())
        assert exc_info.value.current == "pending"

        unchanged = await service.get_transaction_by_id(transaction.id)
        assert unchanged.status == "pending"
        timeline = await BillingEventStore(db_session).timeline(
            transaction.id, tenancy.account_id
        )
        assert len(timeline) == 1

    async def test_dispute_and_resolve(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)
        await service.claim(transaction.id, actor)

        disputed = await service.dispute(transaction.id, actor, "Amount does not match offer")
        assert disputed.status == "disputed"
        assert disputed.dispute_reason == "Amount does not match offer"
        assert [t.id for t in await service.get_disputed_transactions(actor)] == [transaction.id]

        resolved = await service.resolve_dispute(
            transaction.id, actor, "paid", resolved_date=date(2024, 3, 1)
        )
        assert resolved.status == "paid"
        assert resolved.paid_date == date(2024, 3, 1)
        assert resolved.dispute_resolved_by_id == actor.id

        refunded = await service.refund(transaction.id, actor, "Course cancelled")
        assert refunded.status == "refunded"
        with pytest.raises(InvalidTransition):
            await service.cancel(transaction.id, actor)

    async def test_partial_payment_then_paid(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)
        await service.claim(transaction.id, actor)

        partial = await service.mark_as_partially_paid(
            transaction.id, actor, paid_date=date(2024, 2, 1)
        )
        assert partial.status == "partially_paid"

        overdue = await service.mark_overdue(transaction.id, actor)
        assert overdue.status == "overdue"

        paid = await service.mark_as_paid(transaction.id, actor)
        assert paid.status == "paid"
        assert paid.paid_date == date(2024, 2, 1)

    async def test_update_status(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)

        claimed = await service.update_status(
            transaction.id, actor, "claimed", references={"invoice_ref": "INV-0042"}
        )
        assert claimed.status == "claimed"
        assert claimed.invoice_ref == "INV-0042"
        assert claimed.claimed_date is not None

        with pytest.raises(InvalidTransition):
            await service.update_status(transaction.id, actor, "pending")

    async def test_approvals(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)

        approved = await service.add_approval(transaction.id, actor, "manager", "Looks right")
        assert [(a.approved_by_id, a.level) for a in approved.approvals] == [(actor.id, "manager")]
        assert approved.status == "pending"

        with pytest.raises(DuplicateApproval):
            await service.add_approval(transaction.id, actor, "manager")

        # Same actor at another level, or another actor at the same level, is fine
        await service.add_approval(transaction.id, actor, "finance")
        other = tenancy.actor(actor_id=42)
        result = await service.add_approval(transaction.id, other, "manager")
        assert len(result.approvals) == 3

        timeline = await BillingEventStore(db_session).timeline(
            transaction.id, tenancy.account_id
        )
        assert [e.event_type for e in timeline].count("transaction_approved") == 3

    async def test_update_transaction(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)

        updated = await service.update_transaction(
            transaction.id,
            TransactionUpdate(signed_amount=Decimal("1450.00"), processing_fee=Decimal("25.50")),
            actor,
        )
        assert updated.signed_amount == Decimal("1450.00")
        assert updated.net_amount == Decimal("1424.50")

        timeline = await BillingEventStore(db_session).timeline(
            transaction.id, tenancy.account_id
        )
        assert timeline[-1].event_type == "transaction_updated"
        assert timeline[-1].event_data["changes"]["signed_amount"] == {
            "from": "1500.00",
            "to": "1450.00",
        }

    async def test_settled_transaction_freezes_amount(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        transaction = await _pending_transaction(db_session, tenancy)
        await service.cancel(transaction.id, actor, "Duplicate")

        with pytest.raises(FieldImmutable) as exc_info:
            await service.update_transaction(
                transaction.id, TransactionUpdate(signed_amount=Decimal("1.00")), actor
            )
        assert exc_info.value.field == "signed_amount"

        noted = await service.update_transaction(
            transaction.id, TransactionUpdate(notes="Replaced by manual invoice"), actor
        )
        assert noted.notes == "Replaced by manual invoice"

    async def test_manual_create(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        item = await _create_item(db_session, tenancy)

        transaction = await service.create_transaction(
            TransactionCreate(
                payment_schedule_item_id=item.id,
                debtor_type="institution",
                debtor_id=88,
                signed_amount=Decimal("1500.00"),
                transaction_type="invoice",
                invoice_ref="INV-0001",
            ),
            actor,
        )
        assert transaction.source == "manual"
        assert transaction.status == "pending"
        assert transaction.due_date == item.scheduled_due_date
        assert transaction.currency == "USD"

        with pytest.raises(DuplicateError):
            await service.create_transaction(
                TransactionCreate(
                    payment_schedule_item_id=item.id,
                    debtor_type="student",
                    debtor_id=501,
                    signed_amount=Decimal("1500.00"),
                    transaction_type="invoice",
                ),
                actor,
            )

    async def test_manual_create_rejects_foreign_item(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        foreign = await ScheduleItemService(db_session).create_item(
            ScheduleItemCreate(
                agency_id=tenancy.other_agency_id,
                offer_letter_id=tenancy.other_offer_letter_id,
                item_type="tuition",
                milestone_type="enrollment",
                scheduled_amount=Decimal("900.00"),
                scheduled_due_date=date(2024, 1, 15),
            ),
            tenancy.account_actor(),
        )

        with pytest.raises(ScopeViolation):
            await service.create_transaction(
                TransactionCreate(
                    payment_schedule_item_id=foreign.id,
                    debtor_type="student",
                    debtor_id=777,
                    signed_amount=Decimal("900.00"),
                    transaction_type="invoice",
                ),
                tenancy.actor(),
            )

    async def test_other_agency_cannot_touch_transaction(
        self, db_session: AsyncSession, tenancy
    ):
        service = BillingTransactionService(db_session)
        transaction = await _pending_transaction(db_session, tenancy)
        outsider = Actor(
            id=9,
            role=ActorRole.AGENCY_ADMIN,
            account_id=tenancy.account_id,
            agency_id=tenancy.other_agency_id,
        )

        with pytest.raises(ScopeViolation):
            await service.claim(transaction.id, outsider)
        with pytest.raises(ScopeViolation):
            await service.get_transaction(transaction.id, outsider)

    async def test_overdue_query(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        late = await _pending_transaction(db_session, tenancy)
        settled = await _pending_transaction(db_session, tenancy)
        await service.cancel(settled.id, actor)
        await _pending_transaction(db_session, tenancy, scheduled_due_date=date(2024, 12, 1))

        overdue = await service.get_overdue_transactions(actor, as_of=date(2024, 6, 1))
        assert [t.id for t in overdue] == [late.id]

    async def test_revenue_summary_groups_by_currency(self, db_session: AsyncSession, tenancy):
        service = BillingTransactionService(db_session)
        actor = tenancy.actor()
        for currency, amount in (("USD", "1000.00"), ("USD", "500.00"), ("EUR", "800.00")):
            transaction = await _pending_transaction(
                db_session, tenancy, currency=currency, scheduled_amount=Decimal(amount)
            )
            await service.claim(transaction.id, actor)
            await service.mark_as_paid(transaction.id, actor, paid_date=date(2024, 2, 1))
        await _pending_transaction(db_session, tenancy)

        summary = await service.get_revenue_summary(RevenueSummaryFilters(), actor)

        assert [(s.currency, s.total_amount, s.transaction_count) for s in summary] == [
            ("EUR", Decimal("800.00"), 1),
            ("USD", Decimal("1500.00"), 2),
        ]
        assert summary[1].average_amount == Decimal("750.00")


class TestBillingTransactionEndpoints:
    """API tests for billing transactions."""

    async def test_generate_and_claim(self, client: AsyncClient, db_session, tenancy):
        await _create_item(db_session, tenancy)

        response = await client.post(
            "/api/v1/billing-transactions/generate",
            headers=tenancy.headers(),
            json={"due_date": "2024-01-31"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["created_count"] == 1
        transaction_id = data["created"][0]["id"]

        response = await client.post(
            "/api/v1/billing-transactions/generate",
            headers=tenancy.headers(),
            json={"due_date": "2024-01-31"},
        )
        assert response.json()["data"]["skipped_already_billed"] == 1

        response = await client.post(
            f"/api/v1/billing-transactions/{transaction_id}/claim",
            headers=tenancy.headers(),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "claimed"

        response = await client.get(
            f"/api/v1/billing-event-histories/transactions/{transaction_id}/timeline",
            headers=tenancy.headers(),
        )
        assert response.status_code == 200
        assert len(response.json()["data"]) == 2

    async def test_generate_requires_admin(self, client: AsyncClient, tenancy):
        response = await client.post(
            "/api/v1/billing-transactions/generate",
            headers=tenancy.headers(role=ActorRole.USER),
            json={},
        )
        assert response.status_code == 403

    async def test_invalid_transition_is_conflict(self, client: AsyncClient, db_session, tenancy):
        transaction = await _pending_transaction(db_session, tenancy)

        response = await client.post(
            f"/api/v1/billing-transactions/{transaction.id}/pay",
            headers=tenancy.headers(),
            json={},
        )
        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert f"billing transaction {transaction.id} from pending to paid" in body["message"]
        assert body["errors"][0]["code"] == "InvalidTransition"

    async def test_duplicate_approval_is_conflict(self, client: AsyncClient, db_session, tenancy):
        transaction = await _pending_transaction(db_session, tenancy)
        url = f"/api/v1/billing-transactions/{transaction.id}/approve"

        response = await client.post(url, headers=tenancy.headers(), json={"level": "admin"})
        assert response.status_code == 200
        assert len(response.json()["data"]["approvals"]) == 1

        response = await client.post(url, headers=tenancy.headers(), json={"level": "admin"})
        assert response.status_code == 409

    async def test_workflow_actions_require_admin(
        self, client: AsyncClient, db_session, tenancy
    ):
        transaction = await _pending_transaction(db_session, tenancy)
        base = f"/api/v1/billing-transactions/{transaction.id}"
        user = tenancy.headers(role=ActorRole.USER, actor_id=7)

        response = await client.post(f"{base}/approve", headers=user, json={"level": "admin"})
        assert response.status_code == 403
        response = await client.post(f"{base}/claim", headers=user)
        assert response.status_code == 403
        response = await client.post(f"{base}/dispute", headers=user, json={"reason": "Amount"})
        assert response.status_code == 403

        response = await client.get(base, headers=tenancy.headers())
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["approvals"] == []

    async def test_list_filters_by_status(self, client: AsyncClient, db_session, tenancy):
        service = BillingTransactionService(db_session)
        first = await _pending_transaction(db_session, tenancy)
        await _pending_transaction(db_session, tenancy)
        await service.claim(first.id, tenancy.actor())

        response = await client.get(
            "/api/v1/billing-transactions",
            headers=tenancy.headers(),
            params={"status": "claimed"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["items"][0]["id"] == first.id
