from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import Database
from errors import BillingError
from routes import billing, webhooks
from services.billing_context import build_billing_context

import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

import config
from job_runner import run_subscription_reconciliation

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _log_billing_config():
    """Log Stripe mode and which prices are configured (never the keys themselves)."""
    stripe_key = config.get_stripe_secret_key()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout, sync and cancel will return 503.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
        for plan in ("pro", "enterprise"):
            for interval in ("monthly", "yearly"):
                logger.info(
                    "Stripe price plan=%s interval=%s price_id=%s",
                    plan, interval, config.get_price_id(plan, interval) or "(missing)",
                )

    if not config.get_webhook_secret():
        if config.is_production():
            logger.error("STRIPE_WEBHOOK_SECRET is not set in production - webhooks will be rejected")
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET is not set - webhook signature verification disabled")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        # Tests inject app.state.billing themselves
        yield
        return

    # Startup
    logger.info("Starting Subscription Entitlements API")
    database = Database()
    await database.connect()
    _log_billing_config()

    app.state.billing = build_billing_context(database.get_db())

    scheduler = AsyncIOScheduler()
    if config.reconciliation_enabled() and config.billing_enabled():
        # Re-sync paying subscriptions whose webhooks may have been lost
        scheduler.add_job(
            run_subscription_reconciliation,
            IntervalTrigger(minutes=config.get_reconciliation_interval_minutes()),
            args=[app.state.billing],
            id="subscription_reconciliation",
            name="Subscription Reconciliation Sweep",
            replace_existing=True
        )
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Subscription Entitlements API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Subscription Entitlements API",
    description="Checkout, Stripe webhook ingestion and entitlement resolution",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)
app.include_router(webhooks.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": config.get_environment(),
        "billing_enabled": config.billing_enabled(),
        "webhook_verification": bool(config.get_webhook_secret()),
    }


# Billing errors: one structured shape, message only (no Stripe internals)
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code, "retryable": exc.retryable},
    )


# Validation error handler: log request_id + error locations
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors], "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=config.get_environment() == "development"
    )
