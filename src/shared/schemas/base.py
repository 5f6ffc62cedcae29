"""Envelopes and mixins shared by every billing API schema."""

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class BaseSchema(BaseModel):
    """Reads straight from ORM rows; enum columns come back as their string values."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class ErrorDetail(BaseSchema):
    field: str | None = None
    message: str
    # AppException class name, e.g. "InvalidTransition"; None for framework errors
    code: str | None = None


class ApiResponse(BaseSchema, Generic[T]):
    """`{success, data, message}` envelope returned by every endpoint."""

    success: bool = True
    data: T
    message: str | None = None


class ErrorResponse(BaseSchema):
    success: bool = False
    data: None = None
    message: str
    errors: list[ErrorDetail] = []


class PageParams(BaseSchema):
    """Page window carried by the list filters."""

    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class PaginatedResponse(BaseSchema, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def create(cls, items: list[T], total: int, page: int, limit: int) -> "PaginatedResponse[T]":
        pages = -(-total // limit) if limit > 0 else 0
        return cls(items=items, total=total, page=page, limit=limit, pages=pages)


class TimestampMixin(BaseSchema):
    created_at: datetime
    updated_at: datetime


class TenantScopedMixin(BaseSchema):
    """Tenant identity carried by every billing resource."""

    account_id: int
    agency_id: int


class ActorStampMixin(BaseSchema):
    created_by_id: int
    updated_by_id: int
