from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    InvalidFrequency,
    AuthorizationError,
    DuplicateError,
    ScopeViolation,
    InvalidTransition,
    FieldImmutable,
    DuplicateApproval,
    ImmutableRecordViolation,
    DeleteForbidden,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "InvalidFrequency",
    "AuthorizationError",
    "DuplicateError",
    "ScopeViolation",
    "InvalidTransition",
    "FieldImmutable",
    "DuplicateApproval",
    "ImmutableRecordViolation",
    "DeleteForbidden",
]
