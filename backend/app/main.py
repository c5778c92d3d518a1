"""
Billing Engine - FastAPI Application

Main entry point for the backend API.
Provides endpoints for payments, Cardcom webhooks, contracts,
subscriptions and admin recovery.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    AccessDenied,
    BillingEngineError,
    ProviderError,
    ValidationError,
    NotFoundError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Billing Engine starting in {settings.environment} mode...")

    if settings.database_url:
        from app.infrastructure.db.database import init_db
        await init_db()
        logger.info("SQLModel database connection pool initialized")
    else:
        logger.warning("DATABASE_URL not set; database-backed endpoints will fail")

    yield

    if settings.database_url:
        from app.infrastructure.db.database import close_db
        await close_db()
        logger.info("SQLModel database connection pool closed")

    logger.info("Billing Engine shutting down...")


app = FastAPI(
    title="Billing Engine",
    description="Subscription and payment lifecycle on Cardcom hosted payment pages",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    """Contract or payment gate; the body carries ``redirect_to``."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning(f"[CARDCOM] {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(BillingEngineError)
async def general_error_handler(request: Request, exc: BillingEngineError):
    """Handle all other application errors."""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing-engine"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Billing Engine API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, contracts, payments, subscriptions, webhooks

app.include_router(payments.router, prefix="/api", tags=["Payments"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(contracts.router, prefix="/api", tags=["Contracts"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(admin.router, prefix="/api", tags=["Admin"])
