from src.shared.schemas.base import (
    ActorStampMixin,
    ApiResponse,
    BaseSchema,
    ErrorDetail,
    ErrorResponse,
    PageParams,
    PaginatedResponse,
    TenantScopedMixin,
    TimestampMixin,
)

__all__ = [
    "ActorStampMixin",
    "ApiResponse",
    "BaseSchema",
    "ErrorDetail",
    "ErrorResponse",
    "PageParams",
    "PaginatedResponse",
    "TenantScopedMixin",
    "TimestampMixin",
]
