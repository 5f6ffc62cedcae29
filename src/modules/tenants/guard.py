"""Tenant scope checks run on every write path before anything is persisted."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError, ScopeViolation, ValidationError
from src.modules.billing_transactions.models import BillingTransaction
from src.modules.schedule_items.models import PaymentScheduleItem
from src.modules.tenants.models import Account, Agency, OfferLetter

logger = logging.getLogger(__name__)


class TenantScopeGuard:
    """
    Verifies that every entity a write touches belongs to the caller's tenant.

    Each `require_*` method loads the entity, checks it against
    (account_id, agency_id) and returns it, or raises ScopeViolation. An
    agency_id of None means the caller works account-wide.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def _violation(self, entity: str, entity_id, rule: str, expected, actual) -> ScopeViolation:
        logger.warning("Scope violation: %s %s %s", entity, entity_id, rule)
        return ScopeViolation(entity, entity_id, rule, expected=expected, actual=actual)

    async def require_account(self, account_id: int) -> Account:
        account = await self.db.get(Account, account_id)
        if not account:
            raise NotFoundError("Account", account_id)
        if not account.is_active:
            raise ValidationError(f"Account {account_id} is not active", field="account_id")
        return account

    async def require_agency(self, agency_id: int, account_id: int) -> Agency:
        agency = await self.db.get(Agency, agency_id)
        if not agency:
            raise NotFoundError("Agency", agency_id)
        if agency.account_id != account_id:
            raise self._violation(
                "Agency", agency_id, "must belong to the same account",
                expected=account_id, actual=agency.account_id,
            )
        if not agency.is_active:
            raise ValidationError(f"Agency {agency_id} is not active", field="agency_id")
        return agency

    async def check_parent_agency(self, parent_agency_id: int, account_id: int) -> Agency:
        parent = await self.db.get(Agency, parent_agency_id)
        if not parent:
            raise NotFoundError("Agency", parent_agency_id)
        if parent.account_id != account_id:
            raise self._violation(
                "Parent agency", parent_agency_id, "must belong to the same account",
                expected=account_id, actual=parent.account_id,
            )
        return parent

    async def require_offer_letter(
        self, offer_letter_id: int, account_id: int, agency_id: int
    ) -> OfferLetter:
        offer_letter = await self.db.get(OfferLetter, offer_letter_id)
        if not offer_letter:
            raise NotFoundError("Offer letter", offer_letter_id)
        if offer_letter.account_id != account_id:
            raise self._violation(
                "Offer letter", offer_letter_id, "must belong to the same account",
                expected=account_id, actual=offer_letter.account_id,
            )
        if offer_letter.agency_id != agency_id:
            raise self._violation(
                "Offer letter", offer_letter_id, "must belong to the same agency",
                expected=agency_id, actual=offer_letter.agency_id,
            )
        return offer_letter

    async def check_item_placement(
        self, account_id: int, agency_id: int, offer_letter_id: int
    ) -> OfferLetter:
        """Full transitive check for a new or re-homed schedule item."""
        await self.require_account(account_id)
        await self.require_agency(agency_id, account_id)
        return await self.require_offer_letter(offer_letter_id, account_id, agency_id)

    def _check_entity_scope(
        self, entity: str, entity_id: int, obj, account_id: int, agency_id: int | None
    ) -> None:
        if obj.account_id != account_id:
            raise self._violation(
                entity, entity_id, "belongs to another account",
                expected=account_id, actual=obj.account_id,
            )
        if agency_id is not None and obj.agency_id != agency_id:
            raise self._violation(
                entity, entity_id, "belongs to another agency",
                expected=agency_id, actual=obj.agency_id,
            )

    async def require_schedule_item(
        self, item_id: int, account_id: int, agency_id: int | None = None
    ) -> PaymentScheduleItem:
        item = await self.db.get(PaymentScheduleItem, item_id)
        if not item:
            raise NotFoundError("Payment schedule item", item_id)
        self._check_entity_scope("Payment schedule item", item_id, item, account_id, agency_id)
        return item

    async def require_schedule_items(
        self, item_ids: list[int], account_id: int, agency_id: int | None = None
    ) -> None:
        """Batch form used by generation: every id must exist and be in scope."""
        if not item_ids:
            return
        result = await self.db.execute(
            select(
                PaymentScheduleItem.id,
                PaymentScheduleItem.account_id,
                PaymentScheduleItem.agency_id,
            ).where(PaymentScheduleItem.id.in_(item_ids))
        )
        found = {row.id: row for row in result.all()}
        for item_id in item_ids:
            row = found.get(item_id)
            if row is None:
                raise NotFoundError("Payment schedule item", item_id)
            self._check_entity_scope("Payment schedule item", item_id, row, account_id, agency_id)

    async def require_transaction(
        self, transaction_id: int, account_id: int, agency_id: int | None = None
    ) -> BillingTransaction:
        transaction = await self.db.get(BillingTransaction, transaction_id)
        if not transaction:
            raise NotFoundError("Billing transaction", transaction_id)
        self._check_entity_scope(
            "Billing transaction", transaction_id, transaction, account_id, agency_id
        )
        return transaction

    async def check_transaction_item(
        self, item_id: int, account_id: int, agency_id: int
    ) -> PaymentScheduleItem:
        """A transaction's schedule item must sit in the transaction's account and agency."""
        item = await self.db.get(PaymentScheduleItem, item_id)
        if not item:
            raise NotFoundError("Payment schedule item", item_id)
        if item.account_id != account_id:
            raise self._violation(
                "Payment schedule item", item_id, "must belong to the same account",
                expected=account_id, actual=item.account_id,
            )
        if item.agency_id != agency_id:
            raise self._violation(
                "Payment schedule item", item_id, "must belong to the same agency",
                expected=agency_id, actual=item.agency_id,
            )
        return item

    def narrow_agency_scope(
        self, requested_agency_id: int | None, agency_id: int | None
    ) -> int | None:
        """Like resolve_agency_id, but None (account-wide) is allowed for account-wide callers."""
        if requested_agency_id is None:
            return agency_id
        if agency_id is not None and requested_agency_id != agency_id:
            raise self._violation(
                "Agency", requested_agency_id, "is outside the caller's agency",
                expected=agency_id, actual=requested_agency_id,
            )
        return requested_agency_id

    def resolve_agency_id(
        self, requested_agency_id: int | None, account_id: int, agency_id: int | None
    ) -> int:
        """Agency a write lands in: the caller's own, or the one they named if allowed."""
        if requested_agency_id is None:
            if agency_id is None:
                raise ValidationError("agency_id is required", field="agency_id")
            return agency_id
        if agency_id is not None and requested_agency_id != agency_id:
            raise self._violation(
                "Agency", requested_agency_id, "is outside the caller's agency",
                expected=agency_id, actual=requested_agency_id,
            )
        return requested_agency_id
