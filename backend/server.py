from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from database import database
from routes import subscriptions, webhooks, clients, projects, measurements, patterns
from utils.errors import ApiError, api_error_envelope, error_envelope

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'stitchmate')

jobstores = {}
try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores['default'] = MongoDBJobStore(
        database=db_name,
        collection='scheduled_jobs',
        client=mongo_client
    )
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores, timezone="UTC")

from job_runner import run_subscription_sweep, run_monthly_usage_reset

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting StitchMate API")
    await database.connect()

    from services.subscription_service import get_billing_service
    billing = get_billing_service()
    logger.info(
        "Billing configured provider=%s currency=%s plans=%s",
        billing.config.provider.value,
        billing.config.currency,
        ",".join(plan.value for plan in billing.config.catalog),
    )

    scheduler_enabled = not os.getenv("PYTEST_RUNNING")
    if scheduler_enabled:
        # Trial expiry and overdue sweep daily at 2:00 AM UTC
        scheduler.add_job(
            run_subscription_sweep,
            CronTrigger(hour=2, minute=0),
            id="subscription_sweep",
            name="Subscription Expiry Sweep",
            replace_existing=True
        )

        # AI generation counters reset on the 1st of each month at 00:05 UTC
        scheduler.add_job(
            run_monthly_usage_reset,
            CronTrigger(day=1, hour=0, minute=5),
            id="monthly_usage_reset",
            name="Monthly Usage Reset",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")
    
    yield
    
    # Shutdown
    logger.info("Shutting down StitchMate API")
    if scheduler_enabled:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="StitchMate API",
    description="Client, project and subscription management for independent fashion designers",
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
app.include_router(subscriptions.router)
app.include_router(webhooks.router)
app.include_router(clients.router)
app.include_router(projects.router)
app.include_router(measurements.router)
app.include_router(patterns.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error("API error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=api_error_envelope(request, exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(request, exc.status_code, str(exc.detail)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    logger.warning("Validation failed path=%s errors=%s", request.url.path, errors)
    return JSONResponse(
        status_code=422,
        content=error_envelope(request, 422, "Validation failed", code="VALIDATION_ERROR", errors=errors),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_envelope(request, 500, "Internal server error", code="INTERNAL_ERROR"),
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
