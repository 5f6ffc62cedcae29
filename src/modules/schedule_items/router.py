"""API endpoints for payment schedule items."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import BillingAdmin, CurrentActor
from src.core.database import get_db
from src.modules.schedule_items.models import (
    ItemType,
    MilestoneType,
    ScheduleItemStatus,
)
from src.modules.schedule_items.schemas import (
    CancelRequest,
    GenerateRecurringRequest,
    RecurringGenerationResult,
    ReplaceRequest,
    ReplaceWithNewRequest,
    ReplaceWithNewResult,
    RetireRequest,
    ScheduleItemCreate,
    ScheduleItemFilters,
    ScheduleItemHistoryEntry,
    ScheduleItemResponse,
    ScheduleItemUpdate,
)
from src.modules.schedule_items.service import ScheduleItemService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payment-schedule-items", tags=["Payment Schedule Items"])


@router.post("", response_model=ApiResponse[ScheduleItemResponse], status_code=201)
async def create_item(
    data: ScheduleItemCreate,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """Create a payment schedule item on an offer letter."""
    service = ScheduleItemService(db)
    item = await service.create_item(data, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item created",
    )


@router.get("", response_model=ApiResponse[PaginatedResponse[ScheduleItemResponse]])
async def list_items(
    actor: CurrentActor,
    agency_id: int | None = Query(None),
    offer_letter_id: int | None = Query(None),
    item_type: ItemType | None = Query(None),
    milestone_type: MilestoneType | None = Query(None),
    status: ScheduleItemStatus | None = Query(None),
    is_active: bool | None = Query(None),
    parent_item_id: int | None = Query(None),
    due_from: date | None = Query(None),
    due_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List schedule items in the caller's scope."""
    filters = ScheduleItemFilters(
        agency_id=agency_id,
        offer_letter_id=offer_letter_id,
        item_type=item_type,
        milestone_type=milestone_type,
        status=status,
        is_active=is_active,
        parent_item_id=parent_item_id,
        due_from=due_from,
        due_to=due_to,
        page=page,
        limit=limit,
    )
    service = ScheduleItemService(db)
    items, total = await service.list_items(filters, actor)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[ScheduleItemResponse.model_validate(i) for i in items],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get("/overdue", response_model=ApiResponse[list[ScheduleItemResponse]])
async def get_overdue_items(
    actor: CurrentActor,
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Active items past their due date."""
    service = ScheduleItemService(db)
    items = await service.get_overdue_items(actor, as_of)
    return ApiResponse(data=[ScheduleItemResponse.model_validate(i) for i in items])


@router.get("/upcoming", response_model=ApiResponse[list[ScheduleItemResponse]])
async def get_upcoming_items(
    actor: CurrentActor,
    days: int | None = Query(None, ge=0, le=366),
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Active items due within the next `days` days."""
    service = ScheduleItemService(db)
    items = await service.get_upcoming_items(actor, days, as_of)
    return ApiResponse(data=[ScheduleItemResponse.model_validate(i) for i in items])


@router.get("/{item_id}", response_model=ApiResponse[ScheduleItemResponse])
async def get_item(
    item_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    service = ScheduleItemService(db)
    item = await service.get_item(item_id, actor)
    return ApiResponse(data=ScheduleItemResponse.model_validate(item))


@router.get(
    "/{item_id}/history", response_model=ApiResponse[list[ScheduleItemHistoryEntry]]
)
async def get_item_history(
    item_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """Audit trail of an item, oldest first."""
    service = ScheduleItemService(db)
    entries = await service.get_history(item_id, actor)
    return ApiResponse(data=[ScheduleItemHistoryEntry.model_validate(e) for e in entries])


@router.patch("/{item_id}", response_model=ApiResponse[ScheduleItemResponse])
async def update_item(
    item_id: int,
    data: ScheduleItemUpdate,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """
    Update an item.

    Amount, item type and offer letter are frozen once the item has
    billing transactions.
    """
    service = ScheduleItemService(db)
    item = await service.update_item(item_id, data, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item updated",
    )


@router.delete("/{item_id}", response_model=ApiResponse[None])
async def delete_item(
    item_id: int,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Delete an item that was never billed."""
    service = ScheduleItemService(db)
    await service.delete_item(item_id, actor)
    return ApiResponse(data=None, message="Payment schedule item deleted")


@router.post("/{item_id}/approve", response_model=ApiResponse[ScheduleItemResponse])
async def approve_item(
    item_id: int,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = ScheduleItemService(db)
    item = await service.approve_item(item_id, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item approved",
    )


# --- Lifecycle ---


@router.post("/{item_id}/retire", response_model=ApiResponse[ScheduleItemResponse])
async def retire_item(
    item_id: int,
    data: RetireRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = ScheduleItemService(db)
    item = await service.retire_item(item_id, data.reason, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item retired",
    )


@router.post("/{item_id}/replace", response_model=ApiResponse[ScheduleItemResponse])
async def replace_item(
    item_id: int,
    data: ReplaceRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Mark an item replaced by another existing item."""
    service = ScheduleItemService(db)
    item = await service.replace_item(item_id, data.new_item_id, data.reason, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item replaced",
    )


@router.post(
    "/{item_id}/replace-with-new",
    response_model=ApiResponse[ReplaceWithNewResult],
    status_code=201,
)
async def replace_with_new_item(
    item_id: int,
    data: ReplaceWithNewRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    """Create a replacement item from the original plus overrides."""
    service = ScheduleItemService(db)
    original, replacement = await service.replace_with_new_item(
        item_id, data.new_item, data.reason, actor
    )
    return ApiResponse(
        data=ReplaceWithNewResult(
            original=ScheduleItemResponse.model_validate(original),
            replacement=ScheduleItemResponse.model_validate(replacement),
        ),
        message="Payment schedule item replaced with a new item",
    )


@router.post("/{item_id}/complete", response_model=ApiResponse[ScheduleItemResponse])
async def complete_item(
    item_id: int,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = ScheduleItemService(db)
    item = await service.complete_item(item_id, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item completed",
    )


@router.post("/{item_id}/cancel", response_model=ApiResponse[ScheduleItemResponse])
async def cancel_item(
    item_id: int,
    data: CancelRequest,
    actor: BillingAdmin,
    db: AsyncSession = Depends(get_db),
):
    service = ScheduleItemService(db)
    item = await service.cancel_item(item_id, data.reason, actor)
    return ApiResponse(
        data=ScheduleItemResponse.model_validate(item),
        message="Payment schedule item cancelled",
    )


@router.post(
    "/{item_id}/generate-recurring",
    response_model=ApiResponse[RecurringGenerationResult],
    status_code=201,
)
async def generate_recurring(
    item_id: int,
    actor: BillingAdmin,
    data: GenerateRecurringRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Expand a recurring item into dated child items.

    Fails if the item already has active children.
    """
    service = ScheduleItemService(db)
    children = await service.generate_recurring(
        item_id, actor, generate_until=data.generate_until if data else None
    )
    return ApiResponse(
        data=RecurringGenerationResult(
            parent_item_id=item_id,
            created_count=len(children),
            items=[ScheduleItemResponse.model_validate(c) for c in children],
        ),
        message=f"Generated {len(children)} recurring items",
    )
