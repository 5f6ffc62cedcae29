from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Malformed input: missing field, non-positive amount, bad recurring rule."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class InvalidFrequency(ValidationError):
    """Recurring rule names a frequency the generator does not know."""

    def __init__(self, frequency: Any):
        super().__init__(
            f"Invalid recurring frequency: {frequency!r}",
            field="recurring_frequency",
        )
        self.details["frequency"] = frequency


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class DuplicateError(AppException):
    """Duplicate resource."""

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, status_code=409, details={"field": field, "value": value})


class ScopeViolation(AppException):
    """Entity reference belongs to another account or agency."""

    def __init__(
        self,
        entity: str,
        entity_id: Any,
        rule: str,
        *,
        expected: Any = None,
        actual: Any = None,
    ):
        message = f"{entity} {entity_id} {rule}"
        super().__init__(
            message=message,
            status_code=403,
            details={
                "entity": entity,
                "entity_id": entity_id,
                "expected": expected,
                "actual": actual,
            },
        )


class InvalidTransition(AppException):
    """State machine operation attempted from a state that does not permit it."""

    def __init__(
        self,
        entity: str,
        entity_id: Any,
        current: str,
        target: str,
        reason: str | None = None,
    ):
        message = f"Cannot transition {entity} {entity_id} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            status_code=409,
            details={
                "entity": entity,
                "entity_id": entity_id,
                "current": current,
                "target": target,
            },
        )
        self.current = current
        self.target = target


class FieldImmutable(AppException):
    """Attempt to change a financially frozen field."""

    def __init__(self, entity: str, entity_id: Any, field: str, reason: str):
        message = f"Cannot change {field} on {entity} {entity_id}: {reason}"
        super().__init__(
            message=message,
            status_code=409,
            details={"field": field, "entity": entity, "entity_id": entity_id},
        )
        self.field = field


class DuplicateApproval(AppException):
    """Same approver approving the same transaction at the same level twice."""

    def __init__(self, transaction_id: Any, approver_id: Any, level: str):
        message = (
            f"Billing transaction {transaction_id} already approved by "
            f"actor {approver_id} at level {level}"
        )
        super().__init__(
            message=message,
            status_code=409,
            details={"field": "level", "approved_by_id": approver_id, "level": level},
        )


class ImmutableRecordViolation(AppException):
    """Attempt to alter a frozen field of an audit record."""

    def __init__(self, entity: str, entity_id: Any, fields: list[str]):
        joined = ", ".join(sorted(fields))
        message = f"{entity} {entity_id} is insert-only; cannot modify: {joined}"
        super().__init__(
            message=message,
            status_code=409,
            details={"field": fields[0] if fields else None, "fields": fields},
        )


class DeleteForbidden(AppException):
    """Attempt to physically delete an audit record."""

    def __init__(self, entity: str, entity_id: Any = None):
        target = f"{entity} {entity_id}" if entity_id is not None else f"{entity} records"
        super().__init__(message=f"{target} cannot be deleted", status_code=403)
