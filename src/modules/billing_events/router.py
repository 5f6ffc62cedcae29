"""API endpoints for the billing event history.

Read-only apart from hiding and notification bookkeeping; events are only
ever written by the billing transaction operations.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import CurrentActor
from src.core.database import get_db
from src.modules.billing_events.models import BillingEventType
from src.modules.billing_events.schemas import (
    ActivitySummaryEntry,
    BillingEventFilters,
    BillingEventResponse,
    NotificationSent,
)
from src.modules.billing_events.service import BillingEventStore
from src.modules.tenants.guard import TenantScopeGuard
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/billing-event-histories", tags=["Billing Event History"])


@router.get("", response_model=ApiResponse[PaginatedResponse[BillingEventResponse]])
async def list_events(
    actor: CurrentActor,
    billing_transaction_id: int | None = Query(None),
    event_type: BillingEventType | None = Query(None),
    triggered_by_id: int | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    include_hidden: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    filters = BillingEventFilters(
        billing_transaction_id=billing_transaction_id,
        event_type=event_type,
        triggered_by_id=triggered_by_id,
        date_from=date_from,
        date_to=date_to,
        include_hidden=include_hidden,
        page=page,
        limit=limit,
    )
    store = BillingEventStore(db)
    events, total = await store.list_events(filters, actor.account_id, actor.agency_id)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[BillingEventResponse.model_validate(e) for e in events],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get("/activity-summary", response_model=ApiResponse[list[ActivitySummaryEntry]])
async def get_activity_summary(
    actor: CurrentActor,
    days: int | None = Query(None, ge=1, le=366),
    db: AsyncSession = Depends(get_db),
):
    """Visible events per type over the window, busiest first."""
    store = BillingEventStore(db)
    summary = await store.activity_summary(actor.account_id, actor.agency_id, days)
    return ApiResponse(data=summary)


@router.get("/users/{user_id}", response_model=ApiResponse[list[BillingEventResponse]])
async def get_user_activity(
    user_id: int,
    actor: CurrentActor,
    days: int | None = Query(None, ge=1, le=366),
    limit: int | None = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Events triggered by one user, newest first."""
    store = BillingEventStore(db)
    events = await store.user_activity(
        user_id, actor.account_id, actor.agency_id, days=days, limit=limit
    )
    return ApiResponse(data=[BillingEventResponse.model_validate(e) for e in events])


@router.get(
    "/transactions/{transaction_id}/timeline",
    response_model=ApiResponse[list[BillingEventResponse]],
)
async def get_transaction_timeline(
    transaction_id: int,
    actor: CurrentActor,
    include_hidden: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    """Events of one transaction in the order they happened."""
    await TenantScopeGuard(db).require_transaction(
        transaction_id, actor.account_id, actor.agency_id
    )
    store = BillingEventStore(db)
    events = await store.timeline(
        transaction_id, actor.account_id, actor.agency_id, include_hidden=include_hidden
    )
    return ApiResponse(data=[BillingEventResponse.model_validate(e) for e in events])


@router.get("/{event_id}", response_model=ApiResponse[BillingEventResponse])
async def get_event(
    event_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    store = BillingEventStore(db)
    billing_event = await store.get_event(event_id, actor.account_id, actor.agency_id)
    return ApiResponse(data=BillingEventResponse.model_validate(billing_event))


@router.post("/{event_id}/hide", response_model=ApiResponse[BillingEventResponse])
async def hide_event(
    event_id: int,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """Hide an event from default reads. Administrators only."""
    store = BillingEventStore(db)
    billing_event = await store.hide(event_id, actor)
    return ApiResponse(
        data=BillingEventResponse.model_validate(billing_event),
        message="Billing event hidden",
    )


@router.post("/{event_id}/notifications", response_model=ApiResponse[BillingEventResponse])
async def record_notification(
    event_id: int,
    data: NotificationSent,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
):
    """Record that a notification about this event went out."""
    store = BillingEventStore(db)
    billing_event = await store.mark_notification_sent(
        event_id, data.channel, data.recipients, actor.account_id, actor.agency_id
    )
    return ApiResponse(
        data=BillingEventResponse.model_validate(billing_event),
        message="Notification recorded",
    )
