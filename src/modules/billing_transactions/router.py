"""API endpoints for billing transactions."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import BillingAdmin, CurrentActor
from src.core.database import get_db
from src.modules.billing_transactions.generation import TransactionGenerator
from src.modules.billing_transactions.models import (
    DebtorType,
    TransactionStatus,
    TransactionType,
)
from src.modules.billing_transactions.schemas import (
    ApprovalRequest,
    ClaimRequest,
    DisputeRequest,
    GenerateTransactionsRequest,
    GenerationResult,
    PaymentRequest,
    ReasonRequest,
    ReconcileRequest,
    ResolveDisputeRequest,
    RevenueSummaryEntry,
    RevenueSummaryFilters,
    StatusUpdateRequest,
    TransactionCreate,
    TransactionFilters,
    TransactionResponse,
    TransactionUpdate,
)
from src.modules.billing_transactions.service import BillingTransactionService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/billing-transactions", tags=["Billing Transactions"])

REFERENCE_FIELDS = ("invoice_ref", "credit_note_ref", "receipt_ref", "external_ref")


@router.post("", response_model=ApiResponse[TransactionResponse], status_code=201)
async def create_transaction(
    data: TransactionCreate,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Create a manual transaction for a schedule item without a live transaction."""
    service = BillingTransactionService(db)
    transaction = await service.create_transaction(data, actor)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction created",
    )


@router.post("/generate", response_model=ApiResponse[GenerationResult])
async def generate_transactions(
    data: GenerateTransactionsRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """
    Generate pending transactions from due schedule items.

    Idempotent: items that already have a live transaction are skipped.
    """
    generator = TransactionGenerator(db)
    run = await generator.generate(
        actor,
        agency_id=data.agency_id,
        item_ids=data.item_ids,
        due_date=data.due_date,
    )
    return ApiResponse(
        data=GenerationResult(
            created=[TransactionResponse.model_validate(t) for t in run.created],
            created_count=run.created_count,
            skipped_inactive=run.skipped_inactive,
            skipped_already_billed=run.skipped_already_billed,
        ),
        message=f"Generated {run.created_count} billing transactions",
    )


@router.get("", response_model=ApiResponse[PaginatedResponse[TransactionResponse]])
async def list_transactions(
    actor: CurrentActor,
    agency_id: int | None = Query(None),
    payment_schedule_item_id: int | None = Query(None),
    status: TransactionStatus | None = Query(None),
    transaction_type: TransactionType | None = Query(None),
    debtor_type: DebtorType | None = Query(None),
    debtor_id: int | None = Query(None),
    is_reconciled: bool | None = Query(None),
    due_from: date | None = Query(None),
    due_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    filters = TransactionFilters(
        agency_id=agency_id,
        payment_schedule_item_id=payment_schedule_item_id,
        status=status,
        transaction_type=transaction_type,
        debtor_type=debtor_type,
        debtor_id=debtor_id,
        is_reconciled=is_reconciled,
        due_from=due_from,
        due_to=due_to,
        page=page,
        limit=limit,
    )
    service = BillingTransactionService(db)
    transactions, total = await service.list_transactions(filters, actor)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[TransactionResponse.model_validate(t) for t in transactions],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get("/overdue", response_model=ApiResponse[list[TransactionResponse]])
async def get_overdue_transactions(
    actor: CurrentActor,
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Unsettled transactions past their due date."""
    service = BillingTransactionService(db)
    transactions = await service.get_overdue_transactions(actor, as_of)
    return ApiResponse(data=[TransactionResponse.model_validate(t) for t in transactions])


@router.get("/disputed", response_model=ApiResponse[list[TransactionResponse]])
async def get_disputed_transactions(
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transactions = await service.get_disputed_transactions(actor)
    return ApiResponse(data=[TransactionResponse.model_validate(t) for t in transactions])


@router.get("/revenue-summary", response_model=ApiResponse[list[RevenueSummaryEntry]])
async def get_revenue_summary(
    actor: CurrentActor,
    agency_id: int | None = Query(None),
    paid_from: date | None = Query(None),
    paid_to: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Paid totals per currency."""
    service = BillingTransactionService(db)
    summary = await service.get_revenue_summary(
        RevenueSummaryFilters(agency_id=agency_id, paid_from=paid_from, paid_to=paid_to),
        actor,
    )
    return ApiResponse(data=summary)


@router.get("/{transaction_id}", response_model=ApiResponse[TransactionResponse])
async def get_transaction(
    transaction_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.get_transaction(transaction_id, actor)
    return ApiResponse(data=TransactionResponse.model_validate(transaction))


@router.patch("/{transaction_id}", response_model=ApiResponse[TransactionResponse])
async def update_transaction(
    transaction_id: int,
    data: TransactionUpdate,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """
    Edit transaction fields.

    Amount, debtor and type freeze once the transaction is paid, cancelled
    or refunded; amount and paid date freeze once it is reconciled.
    """
    service = BillingTransactionService(db)
    transaction = await service.update_transaction(transaction_id, data, actor)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction updated",
    )


# --- Status operations ---


@router.post("/{transaction_id}/status", response_model=ApiResponse[TransactionResponse])
async def update_status(
    transaction_id: int,
    data: StatusUpdateRequest,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """Move to any status the transition table allows."""
    service = BillingTransactionService(db)
    references = {k: getattr(data, k) for k in REFERENCE_FIELDS if getattr(data, k)}
    transaction = await service.update_status(
        transaction_id,
        actor,
        data.status,
        paid_date=data.paid_date,
        claimed_date=data.claimed_date,
        payment_method=data.payment_method,
        references=references or None,
    )
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message=f"Billing transaction status changed to {transaction.status}",
    )


@router.post("/{transaction_id}/claim", response_model=ApiResponse[TransactionResponse])
async def claim_transaction(
    transaction_id: int,
    actor: BillingAdmin,
    data: ClaimRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.claim(
        transaction_id, actor, claim_date=data.claim_date if data else None
    )
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction claimed",
    )


@router.post("/{transaction_id}/pay", response_model=ApiResponse[TransactionResponse])
async def pay_transaction(
    transaction_id: int,
    actor: CurrentActor,
    data: PaymentRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Record a full payment, or a partial one with `partial=true`."""
    data = data or PaymentRequest()
    service = BillingTransactionService(db)
    if data.partial:
        transaction = await service.mark_as_partially_paid(
            transaction_id, actor, data.paid_date, data.payment_method
        )
        message = "Billing transaction partially paid"
    else:
        transaction = await service.mark_as_paid(
            transaction_id, actor, data.paid_date, data.payment_method
        )
        message = "Billing transaction paid"
    return ApiResponse(data=TransactionResponse.model_validate(transaction), message=message)


@router.post(
    "/{transaction_id}/mark-overdue", response_model=ApiResponse[TransactionResponse]
)
async def mark_transaction_overdue(
    transaction_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.mark_overdue(transaction_id, actor)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction marked overdue",
    )


@router.post("/{transaction_id}/dispute", response_model=ApiResponse[TransactionResponse])
async def dispute_transaction(
    transaction_id: int,
    data: DisputeRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.dispute(transaction_id, actor, data.reason, data.dispute_date)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction disputed",
    )


@router.post(
    "/{transaction_id}/resolve-dispute", response_model=ApiResponse[TransactionResponse]
)
async def resolve_dispute(
    transaction_id: int,
    data: ResolveDisputeRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Close a dispute as paid, cancelled or refunded."""
    service = BillingTransactionService(db)
    transaction = await service.resolve_dispute(
        transaction_id, actor, data.new_status, data.resolved_date
    )
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Dispute resolved",
    )


@router.post("/{transaction_id}/cancel", response_model=ApiResponse[TransactionResponse])
async def cancel_transaction(
    transaction_id: int,
    actor: BillingAdmin,
    data: ReasonRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.cancel(transaction_id, actor, data.reason if data else None)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction cancelled",
    )


@router.post("/{transaction_id}/refund", response_model=ApiResponse[TransactionResponse])
async def refund_transaction(
    transaction_id: int,
    actor: BillingAdmin,
    data: ReasonRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.refund(transaction_id, actor, data.reason if data else None)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction refunded",
    )


@router.post("/{transaction_id}/approve", response_model=ApiResponse[TransactionResponse])
async def approve_transaction(
    transaction_id: int,
    data: ApprovalRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Add an approval stamp. An actor approves each level once."""
    service = BillingTransactionService(db)
    transaction = await service.add_approval(transaction_id, actor, data.level, data.comments)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Approval recorded",
    )


@router.post("/{transaction_id}/reconcile", response_model=ApiResponse[TransactionResponse])
async def reconcile_transaction(
    transaction_id: int,
    data: ReconcileRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = BillingTransactionService(db)
    transaction = await service.reconcile(transaction_id, actor, data.bank_statement_ref)
    return ApiResponse(
        data=TransactionResponse.model_validate(transaction),
        message="Billing transaction reconciled",
    )
