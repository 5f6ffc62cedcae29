"""Tenant hierarchy: Account -> Agency -> OfferLetter."""

from decimal import Decimal
from enum import StrEnum

from sqlalchemy import Boolean, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import BaseModel, BigIntPK, TenantScoped


class AgencyType(StrEnum):
    MAIN = "main"
    BRANCH = "branch"
    PARTNER = "partner"
    SUBAGENT = "subagent"


class OfferLetterStatus(StrEnum):
    DRAFT = "draft"
    ISSUED = "issued"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Account(BaseModel):
    """Tenant root. Everything billed belongs to exactly one account."""

    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    agencies: Mapped[list["Agency"]] = relationship(
        "Agency", back_populates="account", lazy="raise"
    )


class Agency(BaseModel):
    """Agency inside an account; may hang under a parent agency of the same account."""

    __tablename__ = "agencies"

    account_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("accounts.id"), nullable=False, index=True
    )
    parent_agency_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("agencies.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    agency_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgencyType.MAIN.value
    )
    # Carried for collaborators; commissions are not computed here
    commission_split_percent: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="agencies", lazy="raise"
    )
    parent_agency: Mapped["Agency | None"] = relationship(
        "Agency", remote_side="Agency.id", lazy="raise"
    )


class OfferLetter(TenantScoped, BaseModel):
    """Minimal offer letter: the billing core only needs its tenant and student."""

    __tablename__ = "offer_letters"

    student_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OfferLetterStatus.ISSUED.value
    )
