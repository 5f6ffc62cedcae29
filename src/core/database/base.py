"""Declarative base and the column mixins shared by the billing tables."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class BaseModel(Base):
    """Surrogate id plus server-side created_at / updated_at."""

    __abstract__ = True

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class TenantScoped:
    """
    account_id / agency_id pair carried by every row that lives inside an agency.

    Both columns are required and indexed; TenantScopeGuard checks them before
    any write, the foreign keys only catch dangling ids.
    """

    @declared_attr
    def account_id(cls) -> Mapped[int]:
        return mapped_column(BigIntPK, ForeignKey("accounts.id"), nullable=False, index=True)

    @declared_attr
    def agency_id(cls) -> Mapped[int]:
        return mapped_column(BigIntPK, ForeignKey("agencies.id"), nullable=False, index=True)


class ActorStamped:
    """Ids of the actors who created and last changed the row (no FK, actors live upstream)."""

    created_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    updated_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
