import logging
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from config.dunning_config import (
    DUNNING_SCHEDULER_ENABLED,
    DUNNING_SWEEP_INTERVAL_SECONDS,
    GRACE_PERIOD_DAYS,
    DEFAULT_RETRY_CONFIG,
)
from routes.billing import router as billing_router
from routes.recovery import router as recovery_router
from services.exceptions import DunningError
from services.recovery_services import get_recovery_services


# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('recovery.log')
    ]
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Payment Recovery Backend",
    description="Payment failure recovery, dunning and account state management",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing_router)
app.include_router(recovery_router)


@app.exception_handler(DunningError)
async def dunning_error_handler(request: Request, exc: DunningError):
    logger.error(f"Unhandled {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Start the in-process dunning loop when enabled."""
    try:
        if DUNNING_SCHEDULER_ENABLED:
            get_recovery_services().scheduler.start(DUNNING_SWEEP_INTERVAL_SECONDS)
            logger.info(f"✅ Dunning scheduler running every {DUNNING_SWEEP_INTERVAL_SECONDS}s")
        else:
            logger.info("Dunning scheduler disabled, expecting external cron on /recovery/jobs/run")
        logger.info("✅ Payment Recovery Backend started successfully")
    except Exception as e:
        logger.error(f"❌ Failed to start Payment Recovery Backend: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    if DUNNING_SCHEDULER_ENABLED:
        await get_recovery_services().scheduler.stop()
        logger.info("Dunning scheduler stopped")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "scheduler_enabled": DUNNING_SCHEDULER_ENABLED,
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Payment Recovery Backend API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "webhook": "/billing/webhook",
            "invoices": "/billing/invoices",
            "tax": "/billing/tax?amount=",
            "refunds": "/billing/refunds (admin)",
            "account_status": "/recovery/account-status",
            "feature_access": "/recovery/feature-access?feature=",
            "jobs": "/recovery/jobs/run (cron)",
            "analytics": "/recovery/analytics (admin)",
        },
        "dunning_policy": {
            "grace_period_days": GRACE_PERIOD_DAYS,
            "max_retries": DEFAULT_RETRY_CONFIG.max_retries,
            "retry_intervals_hours": DEFAULT_RETRY_CONFIG.retry_intervals_hours,
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("index:app", host="0.0.0.0", port=8000, reload=True)
