from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from pymongo.errors import DuplicateKeyError, PyMongoError
from contextlib import asynccontextmanager
from database import database
from dependencies import build_services
from routes import auth, trials, quotes
from services.errors import IntakeError

import os
import logging
from datetime import datetime, timezone
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

SERVICE_NAME = "Wastewater Approval Platform API"
SERVICE_VERSION = "1.0.0"

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'wastewater_approval')

try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Job runners shared with the maintenance script and the admin run-now endpoints
from job_runner import run_trial_expiry_sweep, run_trial_expiry_reminders


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {SERVICE_NAME}")
    await database.connect()
    app.state.services = build_services(database.get_db())

    # Trial expiry sweep - daily at 00:05 UTC
    scheduler.add_job(
        run_trial_expiry_sweep,
        CronTrigger(hour=0, minute=5),
        id="trial_expiry_sweep",
        name="Trial Expiry Sweep",
        replace_existing=True
    )

    # Trial expiry reminders - daily at 09:00 UTC
    scheduler.add_job(
        run_trial_expiry_reminders,
        CronTrigger(hour=9, minute=0),
        id="trial_expiry_reminders",
        name="Trial Expiry Reminders",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Trial and quote intake for the wastewater discharge approval platform",
    version=SERVICE_VERSION,
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
app.include_router(auth.router)
app.include_router(trials.router)
app.include_router(quotes.router)


# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.get("/api/health/detailed")
async def detailed_health_check():
    """Database reachability plus record counts."""
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "services": {},
    }
    try:
        if not database.is_connected:
            raise RuntimeError("Database not initialised")
        db = database.get_db()
        await db.command("ping")
        health["services"]["database"] = {
            "status": "connected",
            "collections": {
                "trials": await db.trials.count_documents({}),
                "quotes": await db.quotes.count_documents({}),
            },
        }
    except Exception as e:
        logger.error(f"Detailed health check failed: {e}")
        health["status"] = "unhealthy"
        health["services"]["database"] = {"status": "disconnected", "error": str(e)}
        return JSONResponse(status_code=503, content=health)

    health["services"]["scheduler"] = {
        "status": "running" if scheduler.running else "stopped",
        "jobs": [job.id for job in scheduler.get_jobs()] if scheduler.running else [],
    }
    return health


# Domain errors carry their own status code
@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}", exc_info=True)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# Validation errors are reported as 400 with per-field details
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in e.get("loc", ()) if part != "body"),
            "message": e.get("msg"),
        }
        for e in exc.errors()
    ]
    logger.info(f"Validation failed path={request.url.path} fields={[d['field'] for d in details]}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "details": details},
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning(f"Duplicate key on {request.url.path}: {exc.details}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Record already exists"}
    )


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Database error"}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
