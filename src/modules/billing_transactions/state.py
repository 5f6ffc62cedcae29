"""
Billing transaction state machine.

Every operation here is a pure function: it reads a transaction (or anything
with the same attributes), validates the move against the transition table
and the operation's own precondition, and returns a Transition describing
the column changes and the billing event to append. Nothing is written; the
service applies the Transition with a compare-and-swap on the status column.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from src.core.exceptions import FieldImmutable, InvalidTransition, ValidationError
from src.modules.billing_events.models import BillingEventType
from src.modules.billing_transactions.models import (
    ApprovalLevel,
    PaymentMethod,
    TransactionStatus,
)
from src.shared.utils.money import money_str

S = TransactionStatus

TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING: frozenset({S.CLAIMED, S.CANCELLED, S.DISPUTED}),
    S.CLAIMED: frozenset({S.PARTIALLY_PAID, S.PAID, S.OVERDUE, S.CANCELLED, S.DISPUTED}),
    S.PARTIALLY_PAID: frozenset({S.PAID, S.OVERDUE, S.CANCELLED, S.DISPUTED}),
    S.OVERDUE: frozenset({S.PAID, S.CANCELLED, S.DISPUTED}),
    S.DISPUTED: frozenset({S.PAID, S.CANCELLED, S.REFUNDED}),
    S.PAID: frozenset({S.REFUNDED, S.DISPUTED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

PAYABLE_FROM = frozenset({S.CLAIMED, S.PARTIALLY_PAID, S.OVERDUE})
PARTIALLY_PAYABLE_FROM = frozenset({S.CLAIMED})
OVERDUE_FROM = frozenset({S.CLAIMED, S.PARTIALLY_PAID})
DISPUTE_RESOLUTIONS = frozenset({S.PAID, S.CANCELLED, S.REFUNDED})

# Columns frozen once the transaction is settled / reconciled
SETTLED_FROZEN_FIELDS = ("signed_amount", "debtor_type", "debtor_id", "transaction_type")
RECONCILED_FROZEN_FIELDS = ("signed_amount", "status", "paid_date")

ENTITY = "billing transaction"


@dataclass(frozen=True)
class Transition:
    """Outcome of a state machine operation, ready to be applied."""

    transaction_id: int
    previous_status: str
    new_status: str
    event_type: BillingEventType
    changes: dict[str, Any] = field(default_factory=dict)
    event_data: dict[str, Any] = field(default_factory=dict)

    @property
    def changes_status(self) -> bool:
        return self.previous_status != self.new_status


def can_transition(current: str, target: str) -> bool:
    """True when `target` is listed for `current` in the transition table."""
    try:
        return S(target) in TRANSITIONS[S(current)]
    except ValueError:
        return False


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _status(value: str) -> TransactionStatus:
    try:
        return S(value)
    except ValueError:
        raise ValidationError(f"Unknown transaction status: {value}", field="status")


def _check_reconciled(txn, target: TransactionStatus) -> None:
    if txn.is_reconciled and txn.status != target.value:
        raise FieldImmutable(ENTITY, txn.id, "status", "transaction is reconciled")


def _check_table(txn, target: TransactionStatus, reason: str | None = None) -> None:
    _check_reconciled(txn, target)
    if not can_transition(txn.status, target.value):
        raise InvalidTransition(ENTITY, txn.id, txn.status, target.value, reason)


def _require_from(txn, allowed: frozenset, target: TransactionStatus, operation: str) -> None:
    _check_reconciled(txn, target)
    if S(txn.status) not in allowed:
        allowed_text = ", ".join(sorted(s.value for s in allowed))
        raise InvalidTransition(
            ENTITY, txn.id, txn.status, target.value, f"{operation} requires status in {{{allowed_text}}}"
        )
    _check_table(txn, target)


def _event_data(txn, new_status: str, **extra: Any) -> dict[str, Any]:
    data = {
        "previous_status": txn.status,
        "new_status": new_status,
        "amount": {"value": money_str(txn.signed_amount), "currency": txn.currency},
    }
    data.update({k: v for k, v in extra.items() if v is not None})
    return data


def _payment_method(value: PaymentMethod | str | None) -> str | None:
    if value is None:
        return None
    try:
        return PaymentMethod(value).value
    except ValueError:
        raise ValidationError(f"Unknown payment method: {value}", field="payment_method")


# --- Operations ---


def claim(txn, actor_id: int, claim_date: date | None = None) -> Transition:
    _require_from(txn, frozenset({S.PENDING}), S.CLAIMED, "claim")
    claimed = claim_date or _today()
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=S.CLAIMED.value,
        event_type=BillingEventType.TRANSACTION_CLAIMED,
        changes={"status": S.CLAIMED.value, "claimed_date": claimed, "updated_by_id": actor_id},
        event_data=_event_data(txn, S.CLAIMED.value, claim_date=claimed),
    )


def _pay(
    txn,
    target: TransactionStatus,
    allowed: frozenset,
    operation: str,
    event_type: BillingEventType,
    actor_id: int,
    paid_date: date | None,
    payment_method: PaymentMethod | str | None,
) -> Transition:
    _require_from(txn, allowed, target, operation)
    paid = paid_date or txn.paid_date or _today()
    method = _payment_method(payment_method)

    changes: dict[str, Any] = {"status": target.value, "paid_date": paid, "updated_by_id": actor_id}
    if method:
        changes["payment_method"] = method

    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=target.value,
        event_type=event_type,
        changes=changes,
        event_data=_event_data(
            txn, target.value, paid_date=paid, payment_method=method or txn.payment_method
        ),
    )


def mark_as_paid(
    txn,
    actor_id: int,
    paid_date: date | None = None,
    payment_method: PaymentMethod | str | None = None,
) -> Transition:
    return _pay(
        txn, S.PAID, PAYABLE_FROM, "mark as paid",
        BillingEventType.TRANSACTION_PAID, actor_id, paid_date, payment_method,
    )


def mark_as_partially_paid(
    txn,
    actor_id: int,
    paid_date: date | None = None,
    payment_method: PaymentMethod | str | None = None,
) -> Transition:
    return _pay(
        txn, S.PARTIALLY_PAID, PARTIALLY_PAYABLE_FROM, "mark as partially paid",
        BillingEventType.TRANSACTION_PARTIALLY_PAID, actor_id, paid_date, payment_method,
    )


def mark_overdue(txn, actor_id: int) -> Transition:
    _require_from(txn, OVERDUE_FROM, S.OVERDUE, "mark overdue")
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=S.OVERDUE.value,
        event_type=BillingEventType.TRANSACTION_OVERDUE,
        changes={"status": S.OVERDUE.value, "updated_by_id": actor_id},
        event_data=_event_data(txn, S.OVERDUE.value, due_date=txn.due_date),
    )


def dispute(txn, actor_id: int, reason: str, dispute_date: date | None = None) -> Transition:
    if not reason or not reason.strip():
        raise ValidationError("Dispute reason is required", field="reason")
    _check_table(txn, S.DISPUTED)
    disputed = dispute_date or _today()
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=S.DISPUTED.value,
        event_type=BillingEventType.TRANSACTION_DISPUTED,
        changes={
            "status": S.DISPUTED.value,
            "dispute_reason": reason.strip(),
            "dispute_date": disputed,
            "dispute_resolved_date": None,
            "dispute_resolved_by_id": None,
            "updated_by_id": actor_id,
        },
        event_data=_event_data(
            txn, S.DISPUTED.value, dispute_reason=reason.strip(), dispute_date=disputed
        ),
    )


def resolve_dispute(
    txn,
    actor_id: int,
    new_status: TransactionStatus | str,
    resolved_date: date | None = None,
) -> Transition:
    target = _status(new_status)
    if target not in DISPUTE_RESOLUTIONS:
        raise ValidationError(
            f"Invalid dispute resolution status: {target.value}", field="new_status"
        )
    _require_from(txn, frozenset({S.DISPUTED}), target, "resolve dispute")
    resolved = resolved_date or _today()

    changes: dict[str, Any] = {
        "status": target.value,
        "dispute_resolved_date": resolved,
        "dispute_resolved_by_id": actor_id,
        "updated_by_id": actor_id,
    }
    if target == S.PAID and txn.paid_date is None:
        changes["paid_date"] = resolved

    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=target.value,
        event_type=BillingEventType.DISPUTE_RESOLVED,
        changes=changes,
        event_data=_event_data(
            txn,
            target.value,
            resolved_date=resolved,
            resolved_by_id=actor_id,
            paid_date=changes.get("paid_date"),
        ),
    )


def cancel(txn, actor_id: int, reason: str | None = None) -> Transition:
    _check_table(txn, S.CANCELLED)
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=S.CANCELLED.value,
        event_type=BillingEventType.TRANSACTION_CANCELLED,
        changes={"status": S.CANCELLED.value, "updated_by_id": actor_id},
        event_data=_event_data(txn, S.CANCELLED.value, reason=reason),
    )


def refund(txn, actor_id: int, reason: str | None = None) -> Transition:
    _require_from(txn, frozenset({S.PAID}), S.REFUNDED, "refund")
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=S.REFUNDED.value,
        event_type=BillingEventType.TRANSACTION_REFUNDED,
        changes={"status": S.REFUNDED.value, "updated_by_id": actor_id},
        event_data=_event_data(txn, S.REFUNDED.value, reason=reason),
    )


def update_status(
    txn,
    actor_id: int,
    new_status: TransactionStatus | str,
    paid_date: date | None = None,
    claimed_date: date | None = None,
    payment_method: PaymentMethod | str | None = None,
    references: dict[str, str] | None = None,
) -> Transition:
    """Generic table-driven move; date fields default the way the named operations do."""
    target = _status(new_status)
    if target.value == txn.status:
        raise InvalidTransition(ENTITY, txn.id, txn.status, target.value, "already in this status")
    _check_table(txn, target)

    changes: dict[str, Any] = {"status": target.value, "updated_by_id": actor_id}
    if target == S.PAID:
        changes["paid_date"] = paid_date or txn.paid_date or _today()
    elif paid_date:
        changes["paid_date"] = paid_date
    if target == S.CLAIMED:
        changes["claimed_date"] = claimed_date or txn.claimed_date or _today()
    elif claimed_date:
        changes["claimed_date"] = claimed_date
    method = _payment_method(payment_method)
    if method:
        changes["payment_method"] = method
    for key in ("invoice_ref", "credit_note_ref", "receipt_ref", "external_ref"):
        if references and references.get(key):
            changes[key] = references[key]

    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=target.value,
        event_type=BillingEventType.STATUS_CHANGED,
        changes=changes,
        event_data=_event_data(
            txn,
            target.value,
            paid_date=changes.get("paid_date"),
            claimed_date=changes.get("claimed_date"),
            payment_method=method,
        ),
    )


def reconcile(txn, actor_id: int, bank_statement_ref: str) -> Transition:
    if not bank_statement_ref or not bank_statement_ref.strip():
        raise ValidationError("Bank statement reference is required", field="bank_statement_ref")
    if txn.status != S.PAID.value:
        raise InvalidTransition(
            ENTITY, txn.id, txn.status, "reconciled", "only paid transactions can be reconciled"
        )
    if txn.is_reconciled:
        raise InvalidTransition(ENTITY, txn.id, "reconciled", "reconciled", "already reconciled")

    reconciled_at = datetime.now(timezone.utc)
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=txn.status,
        event_type=BillingEventType.TRANSACTION_RECONCILED,
        changes={
            "is_reconciled": True,
            "reconciled_at": reconciled_at,
            "reconciled_by_id": actor_id,
            "bank_statement_ref": bank_statement_ref.strip(),
            "updated_by_id": actor_id,
        },
        event_data=_event_data(
            txn,
            txn.status,
            bank_statement_ref=bank_statement_ref.strip(),
            reconciled_at=reconciled_at,
        ),
    )


def add_approval(
    txn, actor_id: int, level: ApprovalLevel | str, comments: str | None = None
) -> Transition:
    """Approval stamps never move the status; duplicates are checked by the caller."""
    try:
        level_value = ApprovalLevel(level).value
    except ValueError:
        raise ValidationError(f"Unknown approval level: {level}", field="level")
    return Transition(
        transaction_id=txn.id,
        previous_status=txn.status,
        new_status=txn.status,
        event_type=BillingEventType.TRANSACTION_APPROVED,
        changes={"updated_by_id": actor_id},
        event_data=_event_data(
            txn, txn.status, approved_by_id=actor_id, level=level_value, comments=comments
        ),
    )


def check_field_update(txn, field_name: str, new_value: Any) -> None:
    """Raise FieldImmutable if `field_name` is frozen on `txn` and would change."""
    if getattr(txn, field_name) == new_value:
        return
    if txn.is_reconciled and field_name in RECONCILED_FROZEN_FIELDS:
        raise FieldImmutable(ENTITY, txn.id, field_name, "transaction is reconciled")
    if txn.status in (S.PAID.value, S.CANCELLED.value, S.REFUNDED.value) and (
        field_name in SETTLED_FROZEN_FIELDS
    ):
        raise FieldImmutable(ENTITY, txn.id, field_name, f"transaction is {txn.status}")
