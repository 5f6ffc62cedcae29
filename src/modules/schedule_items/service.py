"""Service for payment schedule items."""

import logging
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditEntity
from src.core.audit.service import AuditService
from src.core.auth.models import Actor
from src.core.config import settings
from src.core.exceptions import (
    DuplicateError,
    FieldImmutable,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from src.modules.billing_transactions.models import BillingTransaction
from src.modules.schedule_items import recurrence, state
from src.modules.schedule_items.models import (
    PaymentScheduleItem,
    ReplacementReason,
    ScheduleItemStatus,
)
from src.modules.schedule_items.schemas import (
    ReplacementItemData,
    ScheduleItemCreate,
    ScheduleItemFilters,
    ScheduleItemUpdate,
)
from src.modules.tenants.guard import TenantScopeGuard
from src.shared.utils.money import money_str, round_money

logger = logging.getLogger(__name__)

# Frozen once any billing transaction references the item
FROZEN_WHEN_BILLED = ("scheduled_amount", "item_type", "offer_letter_id")
RECURRING_FIELDS = (
    "is_recurring",
    "recurring_frequency",
    "recurring_end_date",
    "recurring_occurrences",
)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _audit_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value) if not isinstance(value, (bool, int, str)) else value


class ScheduleItemService:
    """Service for the payment schedule item lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.guard = TenantScopeGuard(db)

    # --- Reads ---

    async def get_item_by_id(self, item_id: int) -> PaymentScheduleItem:
        result = await self.db.execute(
            select(PaymentScheduleItem)
            .where(PaymentScheduleItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if not item:
            raise NotFoundError("Payment schedule item", item_id)
        return item

    async def get_item(self, item_id: int, actor: Actor) -> PaymentScheduleItem:
        await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        return await self.get_item_by_id(item_id)

    def _scoped(self, query, actor: Actor):
        query = query.where(PaymentScheduleItem.account_id == actor.account_id)
        if actor.agency_id is not None:
            query = query.where(PaymentScheduleItem.agency_id == actor.agency_id)
        return query

    async def list_items(
        self, filters: ScheduleItemFilters, actor: Actor
    ) -> tuple[list[PaymentScheduleItem], int]:
        """List schedule items with filters."""
        query = self._scoped(select(PaymentScheduleItem), actor)

        if filters.agency_id:
            query = query.where(PaymentScheduleItem.agency_id == filters.agency_id)
        if filters.offer_letter_id:
            query = query.where(PaymentScheduleItem.offer_letter_id == filters.offer_letter_id)
        if filters.item_type:
            query = query.where(PaymentScheduleItem.item_type == filters.item_type.value)
        if filters.milestone_type:
            query = query.where(PaymentScheduleItem.milestone_type == filters.milestone_type.value)
        if filters.status:
            query = query.where(PaymentScheduleItem.status == filters.status.value)
        if filters.is_active is not None:
            query = query.where(PaymentScheduleItem.is_active.is_(filters.is_active))
        if filters.parent_item_id:
            query = query.where(PaymentScheduleItem.parent_item_id == filters.parent_item_id)
        if filters.due_from:
            query = query.where(PaymentScheduleItem.scheduled_due_date >= filters.due_from)
        if filters.due_to:
            query = query.where(PaymentScheduleItem.scheduled_due_date <= filters.due_to)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(
            PaymentScheduleItem.scheduled_due_date.asc(), PaymentScheduleItem.id.asc()
        )
        query = query.offset(filters.offset).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_overdue_items(
        self, actor: Actor, as_of: date | None = None
    ) -> list[PaymentScheduleItem]:
        """Active items whose due date has passed."""
        as_of = as_of or date.today()
        query = self._scoped(select(PaymentScheduleItem), actor).where(
            PaymentScheduleItem.status == ScheduleItemStatus.ACTIVE.value,
            PaymentScheduleItem.is_active.is_(True),
            PaymentScheduleItem.scheduled_due_date < as_of,
        )
        result = await self.db.execute(
            query.order_by(PaymentScheduleItem.scheduled_due_date.asc())
        )
        return list(result.scalars().all())

    async def get_upcoming_items(
        self, actor: Actor, days: int | None = None, as_of: date | None = None
    ) -> list[PaymentScheduleItem]:
        """Active items due within the next `days` days (inclusive)."""
        as_of = as_of or date.today()
        days = days if days is not None else settings.upcoming_window_days
        query = self._scoped(select(PaymentScheduleItem), actor).where(
            PaymentScheduleItem.status == ScheduleItemStatus.ACTIVE.value,
            PaymentScheduleItem.is_active.is_(True),
            PaymentScheduleItem.scheduled_due_date >= as_of,
            PaymentScheduleItem.scheduled_due_date <= as_of + timedelta(days=days),
        )
        result = await self.db.execute(
            query.order_by(PaymentScheduleItem.scheduled_due_date.asc())
        )
        return list(result.scalars().all())

    async def count_transactions_for_item(self, item_id: int) -> int:
        result = await self.db.execute(
            select(func.count(BillingTransaction.id)).where(
                BillingTransaction.payment_schedule_item_id == item_id
            )
        )
        return result.scalar() or 0

    async def count_child_items(self, item_id: int) -> int:
        result = await self.db.execute(
            select(func.count(PaymentScheduleItem.id)).where(
                PaymentScheduleItem.parent_item_id == item_id
            )
        )
        return result.scalar() or 0

    async def count_recurring_children(self, item_id: int) -> int:
        result = await self.db.execute(
            select(func.count(PaymentScheduleItem.id)).where(
                PaymentScheduleItem.parent_item_id == item_id,
                PaymentScheduleItem.recurrence_index.is_not(None),
            )
        )
        return result.scalar() or 0

    async def get_history(self, item_id: int, actor: Actor):
        await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        entries, _ = await self.audit.list_for_entity(
            AuditEntity.SCHEDULE_ITEM, item_id, account_id=actor.account_id, limit=500
        )
        return entries

    # --- Writes ---

    def _new_item(
        self,
        account_id: int,
        agency_id: int,
        values: dict[str, Any],
        actor_id: int,
    ) -> PaymentScheduleItem:
        return PaymentScheduleItem(
            account_id=account_id,
            agency_id=agency_id,
            offer_letter_id=values["offer_letter_id"],
            item_type=_plain(values["item_type"]),
            milestone_type=_plain(values["milestone_type"]),
            scheduled_amount=round_money(values["scheduled_amount"]),
            currency=values.get("currency") or settings.default_currency,
            scheduled_due_date=values["scheduled_due_date"],
            description=values.get("description"),
            priority=_plain(values.get("priority")) or "medium",
            is_recurring=bool(values.get("is_recurring")),
            recurring_frequency=_plain(values.get("recurring_frequency")),
            recurring_end_date=values.get("recurring_end_date"),
            recurring_occurrences=values.get("recurring_occurrences"),
            parent_item_id=values.get("parent_item_id"),
            notes=values.get("notes"),
            internal_notes=values.get("internal_notes"),
            status=ScheduleItemStatus.ACTIVE.value,
            is_active=True,
            created_by_id=actor_id,
            updated_by_id=actor_id,
        )

    async def create_item(self, data: ScheduleItemCreate, actor: Actor) -> PaymentScheduleItem:
        """Create a new active schedule item after the full tenant check."""
        agency_id = self.guard.resolve_agency_id(data.agency_id, actor.account_id, actor.agency_id)
        await self.guard.check_item_placement(actor.account_id, agency_id, data.offer_letter_id)

        item = self._new_item(actor.account_id, agency_id, data.model_dump(), actor.id)
        self.db.add(item)
        await self.db.flush()

        await self.audit.log(
            action="schedule_item.create",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=item.id,
            actor_id=actor.id,
            account_id=item.account_id,
            agency_id=item.agency_id,
            new_values={
                "item_type": item.item_type,
                "scheduled_amount": money_str(item.scheduled_amount),
                "currency": item.currency,
                "scheduled_due_date": item.scheduled_due_date.isoformat(),
                "is_recurring": item.is_recurring,
            },
        )

        await self.db.commit()
        return await self.get_item_by_id(item.id)

    async def update_item(
        self, item_id: int, data: ScheduleItemUpdate, actor: Actor
    ) -> PaymentScheduleItem:
        """Update an item. Financial fields are frozen once it has transactions."""
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        updates = {k: _plain(v) for k, v in data.model_dump(exclude_unset=True).items()}
        if "scheduled_amount" in updates and updates["scheduled_amount"] is not None:
            updates["scheduled_amount"] = round_money(updates["scheduled_amount"])

        changed = {k: v for k, v in updates.items() if getattr(item, k) != v}
        if not changed:
            return await self.get_item_by_id(item_id)

        frozen = [f for f in FROZEN_WHEN_BILLED if f in changed]
        if frozen and await self.count_transactions_for_item(item_id) > 0:
            raise FieldImmutable(
                state.ENTITY, item_id, frozen[0], "item already has billing transactions"
            )

        if changed.get("offer_letter_id") is not None:
            await self.guard.require_offer_letter(
                changed["offer_letter_id"], item.account_id, item.agency_id
            )

        for required in ("item_type", "milestone_type", "scheduled_amount",
                         "scheduled_due_date", "offer_letter_id", "currency", "priority"):
            if required in changed and changed[required] is None:
                raise ValidationError(f"{required} cannot be cleared", field=required)

        if any(f in changed for f in RECURRING_FIELDS):
            self._check_recurring_rule(item, changed)

        old_values = {k: _audit_value(getattr(item, k)) for k in changed}
        for key, value in changed.items():
            setattr(item, key, value)
        item.updated_by_id = actor.id

        await self.audit.log(
            action="schedule_item.update",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=item_id,
            actor_id=actor.id,
            account_id=item.account_id,
            agency_id=item.agency_id,
            old_values=old_values,
            new_values={k: _audit_value(v) for k, v in changed.items()},
        )

        await self.db.commit()
        return await self.get_item_by_id(item_id)

    def _check_recurring_rule(self, item: PaymentScheduleItem, changed: dict[str, Any]) -> None:
        def value(name: str):
            return changed[name] if name in changed else getattr(item, name)

        if not value("is_recurring"):
            return
        if value("recurring_frequency") is None:
            raise ValidationError(
                "Recurring items require a frequency", field="recurring_frequency"
            )
        if (value("recurring_end_date") is None) == (value("recurring_occurrences") is None):
            raise ValidationError(
                "Recurring items require exactly one of recurring_end_date or recurring_occurrences",
                field="recurring_end_date",
            )

    async def delete_item(self, item_id: int, actor: Actor) -> None:
        """Delete an item that was never billed and has no children."""
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)

        if await self.count_transactions_for_item(item_id) > 0:
            raise ValidationError(
                "Cannot delete a schedule item that has billing transactions"
            )
        if await self.count_child_items(item_id) > 0:
            raise ValidationError("Cannot delete a schedule item that has child items")

        await self.audit.log(
            action="schedule_item.delete",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=item_id,
            actor_id=actor.id,
            account_id=item.account_id,
            agency_id=item.agency_id,
            old_values={
                "status": item.status,
                "scheduled_amount": money_str(item.scheduled_amount),
                "scheduled_due_date": item.scheduled_due_date.isoformat(),
            },
        )
        await self.db.delete(item)
        await self.db.commit()

    async def approve_item(self, item_id: int, actor: Actor) -> PaymentScheduleItem:
        """Stamp the item as approved. Only once."""
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        if item.approved_at is not None:
            raise ValidationError(f"Payment schedule item {item_id} is already approved")

        item.approved_at = datetime.now(timezone.utc)
        item.approved_by_id = actor.id
        item.updated_by_id = actor.id

        await self.audit.log(
            action="schedule_item.approve",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=item_id,
            actor_id=actor.id,
            account_id=item.account_id,
            agency_id=item.agency_id,
            new_values={"approved_by_id": actor.id},
        )

        await self.db.commit()
        return await self.get_item_by_id(item_id)

    # --- State machine ---

    async def _apply(
        self, item: PaymentScheduleItem, transition: state.ItemTransition, actor: Actor
    ) -> None:
        """Compare-and-swap on `status == active`, then audit. Does not commit."""
        result = await self.db.execute(
            update(PaymentScheduleItem)
            .where(
                PaymentScheduleItem.id == item.id,
                PaymentScheduleItem.status == ScheduleItemStatus.ACTIVE.value,
            )
            .values(**transition.changes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.db.scalar(
                select(PaymentScheduleItem.status).where(PaymentScheduleItem.id == item.id)
            )
            raise InvalidTransition(state.ENTITY, item.id, current, transition.new_status)

        await self.audit.log(
            action=transition.action,
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=item.id,
            actor_id=actor.id,
            account_id=item.account_id,
            agency_id=item.agency_id,
            old_values={"status": transition.previous_status},
            new_values={k: _audit_value(v) for k, v in transition.changes.items()},
            comment=transition.comment,
        )

    async def _commit_transition(
        self, item: PaymentScheduleItem, transition: state.ItemTransition, actor: Actor
    ) -> PaymentScheduleItem:
        try:
            await self._apply(item, transition, actor)
            await self.db.commit()
        except InvalidTransition:
            await self.db.rollback()
            raise
        except Exception:
            await self.db.rollback()
            logger.exception(
                "Failed to record %s for payment schedule item %s", transition.action, item.id
            )
            raise
        return await self.get_item_by_id(item.id)

    async def retire_item(self, item_id: int, reason: str, actor: Actor) -> PaymentScheduleItem:
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        transition = state.retire(item, actor.id, reason)
        return await self._commit_transition(item, transition, actor)

    async def complete_item(self, item_id: int, actor: Actor) -> PaymentScheduleItem:
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        transition = state.complete(item, actor.id)
        return await self._commit_transition(item, transition, actor)

    async def cancel_item(self, item_id: int, reason: str, actor: Actor) -> PaymentScheduleItem:
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        transition = state.cancel(item, actor.id, reason)
        return await self._commit_transition(item, transition, actor)

    async def replace_item(
        self,
        item_id: int,
        new_item_id: int,
        reason: ReplacementReason | str,
        actor: Actor,
    ) -> PaymentScheduleItem:
        """Mark an item replaced by an already existing item."""
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        transition = state.replace(item, new_item_id, reason, actor.id)
        new_item = await self.guard.require_schedule_item(
            new_item_id, item.account_id, item.agency_id
        )
        if new_item.status != ScheduleItemStatus.ACTIVE.value:
            raise ValidationError(
                f"Replacement payment schedule item {new_item_id} is {new_item.status}, "
                "not active",
                field="new_item_id",
            )
        if new_item.replaced_by_id == item.id:
            raise ValidationError(
                f"Payment schedule item {new_item_id} is already replaced by item {item.id}",
                field="new_item_id",
            )
        return await self._commit_transition(item, transition, actor)

    async def replace_with_new_item(
        self,
        item_id: int,
        data: ReplacementItemData,
        reason: ReplacementReason | str,
        actor: Actor,
    ) -> tuple[PaymentScheduleItem, PaymentScheduleItem]:
        """Create the replacement (child of the original) and replace in one commit."""
        item = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)
        state.ensure_replaceable(item, reason)

        overrides = data.model_dump(exclude_unset=True, exclude_none=True)
        values = {
            "offer_letter_id": item.offer_letter_id,
            "item_type": item.item_type,
            "milestone_type": item.milestone_type,
            "scheduled_amount": item.scheduled_amount,
            "currency": item.currency,
            "scheduled_due_date": item.scheduled_due_date,
            "description": item.description,
            "priority": item.priority,
            "notes": item.notes,
        }
        values.update(overrides)
        values["parent_item_id"] = item.id

        if values["offer_letter_id"] != item.offer_letter_id:
            await self.guard.require_offer_letter(
                values["offer_letter_id"], item.account_id, item.agency_id
            )

        replacement = self._new_item(item.account_id, item.agency_id, values, actor.id)
        self.db.add(replacement)
        await self.db.flush()

        await self.audit.log(
            action="schedule_item.create",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=replacement.id,
            actor_id=actor.id,
            account_id=replacement.account_id,
            agency_id=replacement.agency_id,
            new_values={
                "parent_item_id": item.id,
                "scheduled_amount": money_str(replacement.scheduled_amount),
                "scheduled_due_date": replacement.scheduled_due_date.isoformat(),
            },
            comment=f"Replacement for item {item.id}",
        )

        transition = state.replace(item, replacement.id, reason, actor.id)
        original = await self._commit_transition(item, transition, actor)
        return original, await self.get_item_by_id(replacement.id)

    # --- Recurrence ---

    async def generate_recurring(
        self, item_id: int, actor: Actor, generate_until: date | None = None
    ) -> list[PaymentScheduleItem]:
        """Expand a recurring parent into dated children. Refuses to run twice."""
        parent = await self.guard.require_schedule_item(item_id, actor.account_id, actor.agency_id)

        if not parent.is_recurring:
            raise ValidationError(f"Payment schedule item {item_id} is not recurring")
        if parent.status != ScheduleItemStatus.ACTIVE.value:
            raise ValidationError(
                f"Cannot generate recurring items from a {parent.status} schedule item"
            )
        # Any earlier expansion counts, whatever state its children reached since
        if await self.count_recurring_children(item_id) > 0:
            raise DuplicateError("Recurring children", "parent_item_id", item_id)

        occurrences = recurrence.occurrence_dates(
            parent.scheduled_due_date,
            parent.recurring_frequency,
            end_date=parent.recurring_end_date,
            occurrences=parent.recurring_occurrences,
            generate_until=generate_until,
            max_occurrences=settings.recurring_max_occurrences,
        )

        children = []
        for occurrence in occurrences:
            label = f"(Recurring {occurrence.index})"
            child = PaymentScheduleItem(
                account_id=parent.account_id,
                agency_id=parent.agency_id,
                offer_letter_id=parent.offer_letter_id,
                item_type=parent.item_type,
                milestone_type=parent.milestone_type,
                scheduled_amount=parent.scheduled_amount,
                currency=parent.currency,
                scheduled_due_date=occurrence.due_date,
                description=f"{parent.description} {label}" if parent.description else label,
                priority=parent.priority,
                is_recurring=False,
                parent_item_id=parent.id,
                recurrence_index=occurrence.index,
                status=ScheduleItemStatus.ACTIVE.value,
                is_active=True,
                created_by_id=actor.id,
                updated_by_id=actor.id,
            )
            self.db.add(child)
            children.append(child)
        await self.db.flush()

        await self.audit.log(
            action="schedule_item.generate_recurring",
            entity_type=AuditEntity.SCHEDULE_ITEM,
            entity_id=parent.id,
            actor_id=actor.id,
            account_id=parent.account_id,
            agency_id=parent.agency_id,
            new_values={
                "created_count": len(children),
                "child_ids": [c.id for c in children],
            },
        )

        await self.db.commit()
        logger.info(
            "Generated %d recurring items from payment schedule item %s", len(children), item_id
        )

        result = await self.db.execute(
            select(PaymentScheduleItem)
            .where(PaymentScheduleItem.id.in_([c.id for c in children]))
            .order_by(PaymentScheduleItem.scheduled_due_date.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
