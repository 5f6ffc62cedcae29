"""Service for billing transactions."""

import logging
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.core.auth.models import Actor
from src.core.exceptions import (
    AppException,
    DuplicateApproval,
    DuplicateError,
    FieldImmutable,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from src.modules.billing_events.models import BillingEventType
from src.modules.billing_events.schemas import BillingEventCreate
from src.modules.billing_events.service import BillingEventStore
from src.modules.billing_transactions import state
from src.modules.billing_transactions.models import (
    DEAD_STATUSES,
    SETTLED_STATUSES,
    ApprovalLevel,
    BillingTransaction,
    PaymentMethod,
    TransactionApproval,
    TransactionSource,
    TransactionStatus,
)
from src.modules.billing_transactions.schemas import (
    RevenueSummaryEntry,
    RevenueSummaryFilters,
    TransactionCreate,
    TransactionFilters,
    TransactionUpdate,
)
from src.modules.schedule_items.models import ScheduleItemStatus
from src.modules.tenants.guard import TenantScopeGuard
from src.shared.utils.money import money_str, round_money

logger = logging.getLogger(__name__)

MONEY_FIELDS = ("signed_amount", "processing_fee", "late_fee", "conversion_fee")


class BillingTransactionService:
    """Service for billing transactions and their state machine."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.guard = TenantScopeGuard(db)
        self.events = BillingEventStore(db)

    # --- Reads ---

    async def get_transaction_by_id(self, transaction_id: int) -> BillingTransaction:
        result = await self.db.execute(
            select(BillingTransaction)
            .where(BillingTransaction.id == transaction_id)
            .options(selectinload(BillingTransaction.approvals))
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise NotFoundError("Billing transaction", transaction_id)
        return transaction

    async def get_transaction(self, transaction_id: int, actor: Actor) -> BillingTransaction:
        await self.guard.require_transaction(transaction_id, actor.account_id, actor.agency_id)
        return await self.get_transaction_by_id(transaction_id)

    def _scoped(self, query, actor: Actor):
        query = query.where(BillingTransaction.account_id == actor.account_id)
        if actor.agency_id is not None:
            query = query.where(BillingTransaction.agency_id == actor.agency_id)
        return query

    async def list_transactions(
        self, filters: TransactionFilters, actor: Actor
    ) -> tuple[list[BillingTransaction], int]:
        """List transactions with filters."""
        query = self._scoped(select(BillingTransaction), actor)

        if filters.agency_id:
            query = query.where(BillingTransaction.agency_id == filters.agency_id)
        if filters.payment_schedule_item_id:
            query = query.where(
                BillingTransaction.payment_schedule_item_id == filters.payment_schedule_item_id
            )
        if filters.status:
            query = query.where(BillingTransaction.status == filters.status.value)
        if filters.transaction_type:
            query = query.where(
                BillingTransaction.transaction_type == filters.transaction_type.value
            )
        if filters.debtor_type:
            query = query.where(BillingTransaction.debtor_type == filters.debtor_type.value)
        if filters.debtor_id:
            query = query.where(BillingTransaction.debtor_id == filters.debtor_id)
        if filters.is_reconciled is not None:
            query = query.where(BillingTransaction.is_reconciled.is_(filters.is_reconciled))
        if filters.due_from:
            query = query.where(BillingTransaction.due_date >= filters.due_from)
        if filters.due_to:
            query = query.where(BillingTransaction.due_date <= filters.due_to)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.options(selectinload(BillingTransaction.approvals))
        query = query.order_by(BillingTransaction.created_at.desc(), BillingTransaction.id.desc())
        query = query.offset(filters.offset).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_overdue_transactions(
        self, actor: Actor, as_of: date | None = None
    ) -> list[BillingTransaction]:
        """Unsettled transactions whose due date has passed."""
        as_of = as_of or date.today()
        query = self._scoped(select(BillingTransaction), actor).where(
            BillingTransaction.due_date < as_of,
            BillingTransaction.status.notin_(SETTLED_STATUSES),
        )
        result = await self.db.execute(
            query.options(selectinload(BillingTransaction.approvals)).order_by(
                BillingTransaction.due_date.asc(), BillingTransaction.id.asc()
            )
        )
        return list(result.scalars().all())

    async def get_disputed_transactions(self, actor: Actor) -> list[BillingTransaction]:
        query = self._scoped(select(BillingTransaction), actor).where(
            BillingTransaction.status == TransactionStatus.DISPUTED.value
        )
        result = await self.db.execute(
            query.options(selectinload(BillingTransaction.approvals)).order_by(
                BillingTransaction.dispute_date.desc(), BillingTransaction.id.desc()
            )
        )
        return list(result.scalars().all())

    async def get_revenue_summary(
        self, filters: RevenueSummaryFilters, actor: Actor
    ) -> list[RevenueSummaryEntry]:
        """Paid totals grouped by currency. Amounts are never summed across currencies."""
        total = func.sum(BillingTransaction.signed_amount).label("total_amount")
        count = func.count(BillingTransaction.id).label("transaction_count")
        query = self._scoped(
            select(BillingTransaction.currency, total, count), actor
        ).where(BillingTransaction.status == TransactionStatus.PAID.value)

        if filters.agency_id:
            query = query.where(BillingTransaction.agency_id == filters.agency_id)
        if filters.paid_from:
            query = query.where(BillingTransaction.paid_date >= filters.paid_from)
        if filters.paid_to:
            query = query.where(BillingTransaction.paid_date <= filters.paid_to)

        query = query.group_by(BillingTransaction.currency).order_by(
            BillingTransaction.currency.asc()
        )
        rows = (await self.db.execute(query)).all()

        summary = []
        for row in rows:
            amount = round_money(Decimal(str(row.total_amount or 0)))
            summary.append(
                RevenueSummaryEntry(
                    currency=row.currency,
                    total_amount=amount,
                    transaction_count=row.transaction_count,
                    average_amount=round_money(amount / row.transaction_count),
                )
            )
        return summary

    async def _has_live_transaction(self, item_id: int) -> bool:
        count = await self.db.scalar(
            select(func.count(BillingTransaction.id)).where(
                BillingTransaction.payment_schedule_item_id == item_id,
                BillingTransaction.status.notin_(DEAD_STATUSES),
            )
        )
        return bool(count)

    # --- Create / update ---

    async def create_transaction(
        self, data: TransactionCreate, actor: Actor
    ) -> BillingTransaction:
        """Create a manual transaction for an item that has no live transaction."""
        agency_id = self.guard.resolve_agency_id(data.agency_id, actor.account_id, actor.agency_id)
        await self.guard.require_account(actor.account_id)
        await self.guard.require_agency(agency_id, actor.account_id)
        item = await self.guard.check_transaction_item(
            data.payment_schedule_item_id, actor.account_id, agency_id
        )

        if item.status != ScheduleItemStatus.ACTIVE.value:
            raise ValidationError(
                f"Cannot bill a {item.status} payment schedule item",
                field="payment_schedule_item_id",
            )
        if await self._has_live_transaction(item.id):
            raise DuplicateError("Billing transaction", "payment_schedule_item_id", item.id)

        transaction = BillingTransaction(
            account_id=item.account_id,
            agency_id=item.agency_id,
            payment_schedule_item_id=item.id,
            debtor_type=data.debtor_type.value,
            debtor_id=data.debtor_id,
            signed_amount=round_money(data.signed_amount),
            currency=data.currency or item.currency,
            status=TransactionStatus.PENDING.value,
            transaction_type=data.transaction_type.value,
            due_date=data.due_date or item.scheduled_due_date,
            payment_method=data.payment_method.value if data.payment_method else None,
            invoice_ref=data.invoice_ref,
            credit_note_ref=data.credit_note_ref,
            receipt_ref=data.receipt_ref,
            external_ref=data.external_ref,
            processing_fee=data.processing_fee,
            late_fee=data.late_fee,
            conversion_fee=data.conversion_fee,
            source=TransactionSource.MANUAL.value,
            notes=data.notes,
            internal_notes=data.internal_notes,
            created_by_id=actor.id,
            updated_by_id=actor.id,
        )
        self.db.add(transaction)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateError("Billing transaction", "payment_schedule_item_id", item.id)

        await self.events.append(
            BillingEventCreate(
                account_id=transaction.account_id,
                agency_id=transaction.agency_id,
                billing_transaction_id=transaction.id,
                event_type=BillingEventType.TRANSACTION_CREATED,
                triggered_by_id=actor.id,
                event_data={
                    "new_status": transaction.status,
                    "transaction_type": transaction.transaction_type,
                    "amount": {
                        "value": money_str(transaction.signed_amount),
                        "currency": transaction.currency,
                    },
                    "due_date": transaction.due_date,
                    "payment_schedule_item_id": item.id,
                },
            )
        )

        await self.db.commit()
        return await self.get_transaction_by_id(transaction.id)

    async def update_transaction(
        self, transaction_id: int, data: TransactionUpdate, actor: Actor
    ) -> BillingTransaction:
        """Edit fields. Frozen fields raise FieldImmutable; status changes go through the operations."""
        transaction = await self._lock(transaction_id, actor)
        updates = {
            k: v.value if isinstance(v, Enum) else v
            for k, v in data.model_dump(exclude_unset=True).items()
        }
        for key in MONEY_FIELDS:
            if updates.get(key) is not None:
                updates[key] = round_money(updates[key])

        changed = {k: v for k, v in updates.items() if getattr(transaction, k) != v}
        if not changed:
            await self.db.commit()
            return await self.get_transaction_by_id(transaction_id)

        try:
            for key in ("debtor_type", "debtor_id", "signed_amount", "transaction_type"):
                if key in changed and changed[key] is None:
                    raise ValidationError(f"{key} cannot be cleared", field=key)
            for key, value in changed.items():
                state.check_field_update(transaction, key, value)

            old_values = {k: getattr(transaction, k) for k in changed}
            for key, value in changed.items():
                setattr(transaction, key, value)
            transaction.updated_by_id = actor.id

            await self.events.append(
                BillingEventCreate(
                    account_id=transaction.account_id,
                    agency_id=transaction.agency_id,
                    billing_transaction_id=transaction.id,
                    event_type=BillingEventType.TRANSACTION_UPDATED,
                    triggered_by_id=actor.id,
                    event_data={
                        "status": transaction.status,
                        "changes": {
                            k: {"from": old_values[k], "to": v} for k, v in changed.items()
                        },
                    },
                )
            )
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to update billing transaction %s", transaction_id)
            raise

        return await self.get_transaction_by_id(transaction_id)

    # --- State machine ---

    async def _lock(self, transaction_id: int, actor: Actor) -> BillingTransaction:
        await self.guard.require_transaction(transaction_id, actor.account_id, actor.agency_id)
        result = await self.db.execute(
            select(BillingTransaction)
            .where(BillingTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _write(
        self, transaction: BillingTransaction, transition: state.Transition, actor: Actor
    ) -> None:
        """Compare-and-swap on the status read under lock, then append the event."""
        query = update(BillingTransaction).where(
            BillingTransaction.id == transition.transaction_id,
            BillingTransaction.status == transition.previous_status,
        )
        if transition.changes_status or "is_reconciled" in transition.changes:
            query = query.where(BillingTransaction.is_reconciled.is_(False))
        result = await self.db.execute(
            query.values(**transition.changes).execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            row = (
                await self.db.execute(
                    select(BillingTransaction.status, BillingTransaction.is_reconciled).where(
                        BillingTransaction.id == transition.transaction_id
                    )
                )
            ).one()
            if row.is_reconciled and transition.changes_status:
                raise FieldImmutable(
                    state.ENTITY, transition.transaction_id, "status", "transaction is reconciled"
                )
            if row.is_reconciled:
                raise InvalidTransition(
                    state.ENTITY, transition.transaction_id, "reconciled", "reconciled",
                    "already reconciled",
                )
            raise InvalidTransition(
                state.ENTITY, transition.transaction_id, row.status, transition.new_status
            )

        await self.events.append(
            BillingEventCreate(
                account_id=transaction.account_id,
                agency_id=transaction.agency_id,
                billing_transaction_id=transaction.id,
                event_type=transition.event_type,
                triggered_by_id=actor.id,
                event_data=transition.event_data,
            )
        )

    async def _run(
        self,
        transaction_id: int,
        actor: Actor,
        operation: Callable[..., state.Transition],
        *args: Any,
        **kwargs: Any,
    ) -> BillingTransaction:
        transaction = await self._lock(transaction_id, actor)
        try:
            transition = operation(transaction, actor.id, *args, **kwargs)
            await self._write(transaction, transition, actor)
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception:
            await self.db.rollback()
            logger.exception(
                "Failed to record %s for billing transaction %s",
                operation.__name__,
                transaction_id,
            )
            raise

        if transition.changes_status:
            logger.info(
                "Billing transaction %s: %s -> %s",
                transaction_id,
                transition.previous_status,
                transition.new_status,
            )
        return await self.get_transaction_by_id(transaction_id)

    async def claim(
        self, transaction_id: int, actor: Actor, claim_date: date | None = None
    ) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.claim, claim_date)

    async def mark_as_paid(
        self,
        transaction_id: int,
        actor: Actor,
        paid_date: date | None = None,
        payment_method: PaymentMethod | None = None,
    ) -> BillingTransaction:
        return await self._run(
            transaction_id, actor, state.mark_as_paid, paid_date, payment_method
        )

    async def mark_as_partially_paid(
        self,
        transaction_id: int,
        actor: Actor,
        paid_date: date | None = None,
        payment_method: PaymentMethod | None = None,
    ) -> BillingTransaction:
        return await self._run(
            transaction_id, actor, state.mark_as_partially_paid, paid_date, payment_method
        )

    async def mark_overdue(self, transaction_id: int, actor: Actor) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.mark_overdue)

    async def dispute(
        self,
        transaction_id: int,
        actor: Actor,
        reason: str,
        dispute_date: date | None = None,
    ) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.dispute, reason, dispute_date)

    async def resolve_dispute(
        self,
        transaction_id: int,
        actor: Actor,
        new_status: TransactionStatus,
        resolved_date: date | None = None,
    ) -> BillingTransaction:
        return await self._run(
            transaction_id, actor, state.resolve_dispute, new_status, resolved_date
        )

    async def cancel(
        self, transaction_id: int, actor: Actor, reason: str | None = None
    ) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.cancel, reason)

    async def refund(
        self, transaction_id: int, actor: Actor, reason: str | None = None
    ) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.refund, reason)

    async def update_status(
        self,
        transaction_id: int,
        actor: Actor,
        new_status: TransactionStatus,
        paid_date: date | None = None,
        claimed_date: date | None = None,
        payment_method: PaymentMethod | None = None,
        references: dict[str, str] | None = None,
    ) -> BillingTransaction:
        return await self._run(
            transaction_id,
            actor,
            state.update_status,
            new_status,
            paid_date=paid_date,
            claimed_date=claimed_date,
            payment_method=payment_method,
            references=references,
        )

    async def reconcile(
        self, transaction_id: int, actor: Actor, bank_statement_ref: str
    ) -> BillingTransaction:
        return await self._run(transaction_id, actor, state.reconcile, bank_statement_ref)

    async def add_approval(
        self,
        transaction_id: int,
        actor: Actor,
        level: ApprovalLevel,
        comments: str | None = None,
    ) -> BillingTransaction:
        """Record one approval stamp; the same actor approves a level at most once."""
        transaction = await self._lock(transaction_id, actor)
        level_value = ApprovalLevel(level).value
        try:
            transition = state.add_approval(transaction, actor.id, level_value, comments)

            existing = await self.db.scalar(
                select(func.count(TransactionApproval.id)).where(
                    TransactionApproval.billing_transaction_id == transaction_id,
                    TransactionApproval.approved_by_id == actor.id,
                    TransactionApproval.level == level_value,
                )
            )
            if existing:
                raise DuplicateApproval(transaction_id, actor.id, level_value)

            self.db.add(
                TransactionApproval(
                    billing_transaction_id=transaction_id,
                    approved_by_id=actor.id,
                    level=level_value,
                    comments=comments,
                    approved_at=datetime.now(timezone.utc),
                )
            )
            try:
                await self.db.flush()
            except IntegrityError:
                raise DuplicateApproval(transaction_id, actor.id, level_value)

            await self._write(transaction, transition, actor)
            await self.db.commit()
        except AppException:
            await self.db.rollback()
            raise
        except Exception:
            await self.db.rollback()
            logger.exception("Failed to record approval for billing transaction %s", transaction_id)
            raise

        return await self.get_transaction_by_id(transaction_id)
