from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import contracts, public_contracts
from services.contract_errors import ContractError, NotReadyError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from pymongo.errors import PyMongoError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
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
db_name = os.environ.get('DB_NAME', 'contract_signing')

RECEIVABLE_WORKER_INTERVAL_SECONDS = int(os.environ.get('RECEIVABLE_WORKER_INTERVAL_SECONDS', '30'))

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

scheduler = AsyncIOScheduler(jobstores=jobstores)

from job_runner import (
    run_receivable_schedule_worker,
    run_stuck_receivable_job_recovery,
)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        # Tests patch database.get_db; no Mongo, no scheduler
        yield
        return

    # Startup
    logger.info("Starting Contract Signing API")
    await database.connect()

    # Receivable outbox worker
    scheduler.add_job(
        run_receivable_schedule_worker,
        IntervalTrigger(seconds=RECEIVABLE_WORKER_INTERVAL_SECONDS),
        id="receivable_schedule_worker",
        name="Receivable Schedule Worker",
        replace_existing=True
    )

    # Requeue jobs orphaned in RUNNING by a crashed worker
    scheduler.add_job(
        run_stuck_receivable_job_recovery,
        IntervalTrigger(minutes=5),
        id="stuck_receivable_job_recovery",
        name="Stuck Receivable Job Recovery",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Contract Signing API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Contract Signing API",
    description="Contract generation, public e-signature and receivable scheduling",
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
app.include_router(contracts.router)
app.include_router(public_contracts.public_router)  # Public token-addressed signing

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Contract Signing API",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(ContractError)
async def contract_error_handler(request: Request, exc: ContractError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} contract_id={exc.contract_id}: {exc.message}")
    else:
        logger.info(f"{exc.code} contract_id={exc.contract_id} path={request.url.path}: {exc.message}")
    content = {"detail": exc.message, "error": exc.code}
    headers = None
    if isinstance(exc, NotReadyError):
        content["retry_after_seconds"] = exc.retry_after_seconds
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# Storage unavailable: the operation did not complete, the client may retry
@app.exception_handler(PyMongoError)
async def storage_exception_handler(request: Request, exc: PyMongoError):
    logger.error(f"Storage error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable", "error": "storage_unavailable", "retry": True},
    )


# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    path = getattr(request, "url", None) and getattr(request.url, "path", "") or ""
    if "/sign" in path:
        logger.warning(
            "Sign request validation failed request_id=%s path=%s errors=%s",
            request_id,
            path,
            [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
        )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
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
        reload=os.getenv("ENVIRONMENT") == "development"
    )
