"""Agency billing FastAPI application."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Models must be registered before the mappers configure
from src.core.audit.models import AuditLog  # noqa: F401
from src.modules.tenants.models import Account, Agency, OfferLetter  # noqa: F401
from src.modules.schedule_items.models import PaymentScheduleItem  # noqa: F401
from src.modules.billing_transactions.models import (  # noqa: F401
    BillingTransaction,
    TransactionApproval,
)
from src.modules.billing_events.models import BillingEvent  # noqa: F401

from src.modules.schedule_items.router import router as schedule_items_router
from src.modules.billing_transactions.router import router as billing_transactions_router
from src.modules.billing_events.router import router as billing_events_router
from src.core.config import settings
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_error_handler,
    validation_exception_handler,
)
from src.core.logging_config import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    yield
    # Shutdown


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Agency Billing",
        description="Payment schedules, billing transactions and billing event history",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(schedule_items_router, prefix="/api/v1")
    app.include_router(billing_transactions_router, prefix="/api/v1")
    app.include_router(billing_events_router, prefix="/api/v1")

    return app


app = create_app()
