from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError, ScopeViolation, ValidationError
from src.modules.tenants.guard import TenantScopeGuard
from src.modules.tenants.models import AgencyType
from src.modules.tenants.service import TenantService


class TestTenantService:
    """Tests for the tenant hierarchy."""

    async def test_create_account_defaults_currency(self, db_session: AsyncSession):
        account = await TenantService(db_session).create_account("Northbridge Education")
        assert account.currency == "USD"
        assert account.is_active is True

    async def test_account_requires_name(self, db_session: AsyncSession):
        with pytest.raises(ValidationError):
            await TenantService(db_session).create_account("  ")

    async def test_child_agency(self, db_session: AsyncSession, tenancy):
        service = TenantService(db_session)
        child = await service.create_agency(
            tenancy.account_id,
            "Ibadan Desk",
            parent_agency_id=tenancy.agency_id,
            agency_type=AgencyType.SUBAGENT,
            commission_split_percent=Decimal("35.00"),
        )
        assert child.parent_agency_id == tenancy.agency_id
        assert child.agency_type == "subagent"
        assert await service.count_child_agencies(tenancy.agency_id) == 1
        assert await service.count_agencies_for_account(tenancy.account_id) == 3

    async def test_parent_agency_from_another_account(self, db_session: AsyncSession, tenancy):
        service = TenantService(db_session)
        other_account = await service.create_account("Southgate Advisors")

        with pytest.raises(ScopeViolation):
            await service.create_agency(
                other_account.id, "Accra Desk", parent_agency_id=tenancy.agency_id
            )

    async def test_commission_split_range(self, db_session: AsyncSession, tenancy):
        with pytest.raises(ValidationError):
            await TenantService(db_session).create_agency(
                tenancy.account_id, "Kumasi Desk", commission_split_percent=Decimal("120")
            )

    async def test_inactive_account_rejects_writes(self, db_session: AsyncSession, tenancy):
        service = TenantService(db_session)
        account = await TenantScopeGuard(db_session).require_account(tenancy.account_id)
        account.is_active = False
        await db_session.commit()

        with pytest.raises(ValidationError):
            await service.create_agency(tenancy.account_id, "Abuja Desk")

    async def test_offer_letter_agency_must_share_account(
        self, db_session: AsyncSession, tenancy
    ):
        service = TenantService(db_session)
        other_account = await service.create_account("Southgate Advisors")

        with pytest.raises(ScopeViolation):
            await service.create_offer_letter(other_account.id, tenancy.agency_id, student_id=9)


class TestTenantScopeGuard:
    async def test_offer_letter_in_another_agency(self, db_session: AsyncSession, tenancy):
        guard = TenantScopeGuard(db_session)
        with pytest.raises(ScopeViolation) as exc_info:
            await guard.check_item_placement(
                tenancy.account_id, tenancy.agency_id, tenancy.other_offer_letter_id
            )
        assert exc_info.value.status_code == 403

    async def test_missing_entities(self, db_session: AsyncSession, tenancy):
        guard = TenantScopeGuard(db_session)
        with pytest.raises(NotFoundError):
            await guard.require_account(999)
        with pytest.raises(NotFoundError):
            await guard.require_agency(999, tenancy.account_id)
        with pytest.raises(NotFoundError):
            await guard.require_transaction(999, tenancy.account_id)

    async def test_resolve_agency_id(self, db_session: AsyncSession):
        guard = TenantScopeGuard(db_session)
        assert guard.resolve_agency_id(None, 1, 5) == 5
        assert guard.resolve_agency_id(5, 1, 5) == 5
        assert guard.resolve_agency_id(6, 1, None) == 6
        with pytest.raises(ValidationError):
            guard.resolve_agency_id(None, 1, None)
        with pytest.raises(ScopeViolation):
            guard.resolve_agency_id(6, 1, 5)

    async def test_narrow_agency_scope(self, db_session: AsyncSession):
        guard = TenantScopeGuard(db_session)
        assert guard.narrow_agency_scope(None, None) is None
        assert guard.narrow_agency_scope(None, 5) == 5
        assert guard.narrow_agency_scope(6, None) == 6
        with pytest.raises(ScopeViolation):
            guard.narrow_agency_scope(6, 5)
