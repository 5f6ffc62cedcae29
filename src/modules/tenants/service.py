"""Service for the tenant hierarchy (accounts, agencies, offer letters)."""

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import ValidationError
from src.modules.tenants.guard import TenantScopeGuard
from src.modules.tenants.models import (
    Account,
    Agency,
    AgencyType,
    OfferLetter,
    OfferLetterStatus,
)


class TenantService:
    """Creates tenant entities after the scope guard approves them."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.guard = TenantScopeGuard(db)

    async def create_account(
        self, name: str, email: str | None = None, currency: str | None = None
    ) -> Account:
        if not name or not name.strip():
            raise ValidationError("Account name is required", field="name")
        account = Account(
            name=name.strip(),
            email=email,
            currency=(currency or settings.default_currency).upper(),
            is_active=True,
        )
        self.db.add(account)
        await self.db.commit()
        return account

    async def create_agency(
        self,
        account_id: int,
        name: str,
        parent_agency_id: int | None = None,
        agency_type: AgencyType = AgencyType.MAIN,
        commission_split_percent: Decimal | None = None,
    ) -> Agency:
        await self.guard.require_account(account_id)
        if parent_agency_id is not None:
            await self.guard.check_parent_agency(parent_agency_id, account_id)
        if commission_split_percent is not None and not (
            Decimal("0") <= commission_split_percent <= Decimal("100")
        ):
            raise ValidationError(
                "Commission split must be between 0 and 100", field="commission_split_percent"
            )

        agency = Agency(
            account_id=account_id,
            parent_agency_id=parent_agency_id,
            name=name,
            agency_type=agency_type.value,
            commission_split_percent=commission_split_percent,
            is_active=True,
        )
        self.db.add(agency)
        await self.db.commit()
        return agency

    async def create_offer_letter(
        self,
        account_id: int,
        agency_id: int,
        student_id: int,
        reference: str | None = None,
        status: OfferLetterStatus = OfferLetterStatus.ISSUED,
    ) -> OfferLetter:
        await self.guard.require_account(account_id)
        await self.guard.require_agency(agency_id, account_id)

        offer_letter = OfferLetter(
            account_id=account_id,
            agency_id=agency_id,
            student_id=student_id,
            reference=reference,
            status=status.value,
        )
        self.db.add(offer_letter)
        await self.db.commit()
        return offer_letter

    async def count_agencies_for_account(self, account_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Agency.id)).where(Agency.account_id == account_id)
        )
        return result.scalar() or 0

    async def count_child_agencies(self, agency_id: int) -> int:
        result = await self.db.execute(
            select(func.count(Agency.id)).where(Agency.parent_agency_id == agency_id)
        )
        return result.scalar() or 0
