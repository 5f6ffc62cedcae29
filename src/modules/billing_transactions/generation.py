"""Turns due payment schedule items into pending billing transactions."""

import logging
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.core.auth.models import Actor
from src.modules.billing_events.models import BillingEventType, EventSource
from src.modules.billing_events.schemas import BillingEventCreate
from src.modules.billing_events.service import BillingEventStore
from src.modules.billing_transactions.models import (
    DEAD_STATUSES,
    BillingTransaction,
    DebtorType,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from src.modules.schedule_items.models import (
    ItemType,
    PaymentScheduleItem,
    ScheduleItemStatus,
)
from src.modules.tenants.guard import TenantScopeGuard
from src.modules.tenants.models import OfferLetter
from src.shared.utils.money import money_str

logger = logging.getLogger(__name__)

ITEM_TRANSACTION_TYPES = {
    ItemType.REFUND.value: TransactionType.REFUND,
    ItemType.PENALTY.value: TransactionType.PENALTY,
}

CREATED = "created"
SKIPPED_INACTIVE = "skipped_inactive"
SKIPPED_ALREADY_BILLED = "skipped_already_billed"


@dataclass
class GenerationRun:
    created: list[BillingTransaction] = field(default_factory=list)
    skipped_inactive: int = 0
    skipped_already_billed: int = 0

    @property
    def created_count(self) -> int:
        return len(self.created)


def transaction_type_for(item_type: str) -> TransactionType:
    return ITEM_TRANSACTION_TYPES.get(item_type, TransactionType.INVOICE)


class TransactionGenerator:
    """
    Idempotent generation pipeline.

    Each item is handled in its own database transaction: the item row is
    locked, the live-transaction check runs under the lock, and the new
    transaction commits together with its `transaction_created` event. The
    partial unique index on live transactions per item catches whatever the
    lock does not (SQLite has no FOR UPDATE); such a race counts as a skip.
    Running the pipeline twice over the same items creates nothing new.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.guard = TenantScopeGuard(db)
        self.events = BillingEventStore(db)

    async def generate(
        self,
        actor: Actor,
        agency_id: int | None = None,
        item_ids: list[int] | None = None,
        due_date: date | None = None,
    ) -> GenerationRun:
        await self.guard.require_account(actor.account_id)
        scope_agency_id = self.guard.narrow_agency_scope(agency_id, actor.agency_id)
        if scope_agency_id is not None:
            await self.guard.require_agency(scope_agency_id, actor.account_id)

        if item_ids:
            candidate_ids = list(dict.fromkeys(item_ids))
            await self.guard.require_schedule_items(
                candidate_ids, actor.account_id, scope_agency_id
            )
        else:
            candidate_ids = await self._due_item_ids(
                actor.account_id, scope_agency_id, due_date or date.today()
            )
        # Release the read transaction before per-item locking starts
        await self.db.commit()

        run = GenerationRun()
        created_ids: list[int] = []
        for item_id in candidate_ids:
            try:
                outcome, transaction_id = await self._bill_item(item_id, actor.id)
            except IntegrityError:
                await self.db.rollback()
                logger.info(
                    "Payment schedule item %s was billed concurrently, skipping", item_id
                )
                run.skipped_already_billed += 1
                continue
            except Exception:
                await self.db.rollback()
                logger.exception(
                    "Transaction generation failed for payment schedule item %s", item_id
                )
                raise

            if outcome == CREATED:
                created_ids.append(transaction_id)
            elif outcome == SKIPPED_INACTIVE:
                run.skipped_inactive += 1
            else:
                run.skipped_already_billed += 1

        run.created = await self._load(created_ids)
        logger.info(
            "Generated %d billing transactions for account %s "
            "(skipped: %d inactive, %d already billed)",
            run.created_count,
            actor.account_id,
            run.skipped_inactive,
            run.skipped_already_billed,
        )
        return run

    async def _due_item_ids(
        self, account_id: int, agency_id: int | None, due_date: date
    ) -> list[int]:
        query = select(PaymentScheduleItem.id).where(
            PaymentScheduleItem.account_id == account_id,
            PaymentScheduleItem.status == ScheduleItemStatus.ACTIVE.value,
            PaymentScheduleItem.is_active.is_(True),
            PaymentScheduleItem.scheduled_due_date <= due_date,
        )
        if agency_id is not None:
            query = query.where(PaymentScheduleItem.agency_id == agency_id)
        query = query.order_by(
            PaymentScheduleItem.scheduled_due_date.asc(), PaymentScheduleItem.id.asc()
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _has_live_transaction(self, item_id: int) -> bool:
        count = await self.db.scalar(
            select(func.count(BillingTransaction.id)).where(
                BillingTransaction.payment_schedule_item_id == item_id,
                BillingTransaction.status.notin_(DEAD_STATUSES),
            )
        )
        return bool(count)

    async def _bill_item(self, item_id: int, actor_id: int) -> tuple[str, int | None]:
        result = await self.db.execute(
            select(PaymentScheduleItem)
            .where(PaymentScheduleItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one()

        if not item.is_active or item.status != ScheduleItemStatus.ACTIVE.value:
            await self.db.commit()
            return SKIPPED_INACTIVE, None
        if await self._has_live_transaction(item_id):
            await self.db.commit()
            return SKIPPED_ALREADY_BILLED, None

        if item.item_type == ItemType.COMMISSION.value:
            debtor_type, debtor_id = DebtorType.AGENCY, item.agency_id
        else:
            offer_letter = await self.db.get(OfferLetter, item.offer_letter_id)
            debtor_type, debtor_id = DebtorType.STUDENT, offer_letter.student_id

        transaction_type = transaction_type_for(item.item_type)
        amount = item.scheduled_amount
        if transaction_type == TransactionType.REFUND:
            amount = -amount

        transaction = BillingTransaction(
            account_id=item.account_id,
            agency_id=item.agency_id,
            payment_schedule_item_id=item.id,
            debtor_type=debtor_type.value,
            debtor_id=debtor_id,
            signed_amount=amount,
            currency=item.currency,
            status=TransactionStatus.PENDING.value,
            transaction_type=transaction_type.value,
            due_date=item.scheduled_due_date,
            source=TransactionSource.AUTOMATED.value,
            created_by_id=actor_id,
            updated_by_id=actor_id,
        )
        self.db.add(transaction)
        await self.db.flush()

        await self.events.append(
            BillingEventCreate(
                account_id=transaction.account_id,
                agency_id=transaction.agency_id,
                billing_transaction_id=transaction.id,
                event_type=BillingEventType.TRANSACTION_CREATED,
                triggered_by_id=actor_id,
                source=EventSource.BATCH,
                event_data={
                    "new_status": transaction.status,
                    "transaction_type": transaction.transaction_type,
                    "amount": {"value": money_str(amount), "currency": transaction.currency},
                    "due_date": transaction.due_date,
                    "payment_schedule_item_id": item.id,
                },
            )
        )
        await self.db.commit()
        return CREATED, transaction.id

    async def _load(self, transaction_ids: list[int]) -> list[BillingTransaction]:
        if not transaction_ids:
            return []
        result = await self.db.execute(
            select(BillingTransaction)
            .where(BillingTransaction.id.in_(transaction_ids))
            .options(selectinload(BillingTransaction.approvals))
            .order_by(BillingTransaction.id.asc())
        )
        return list(result.scalars().all())
