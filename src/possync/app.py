"""FastAPI application for POS sync.

Producers (the dashboard, the login flow) call POST /pos/sync and poll
/sync-status. Jobs are processed by worker.py, not by this process.

Run:
    uvicorn src.possync.app:app --host 0.0.0.0 --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.database import check_database_health
from .api.error_sanitizer import sanitize_error_message
from .api.exceptions import StorageError
from .sync.api import dependencies
from .sync.api.router import router

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    - Startup: load the credential vault, open the database pool
    - Shutdown: close the database pool
    """
    logger.info("Starting POS Sync API...")

    dependencies.init_vault()

    try:
        await dependencies.init_db_pool()
        logger.info("Database pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database pool: {e}")
        raise

    yield

    logger.info("Shutting down POS Sync API...")
    await dependencies.close_db_pool()
    logger.info("Database pool closed")


app = FastAPI(
    title="POS Sync API",
    description="""
    Background synchronization of restaurant POS transactions.

    ## Workflow

    1. POST /pos/sync to enqueue a sync for a restaurant
    2. Poll GET /sync-status/{restaurant_id} for progress
    3. GET /sync-jobs/{job_id} for the full job record
    """,
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Accept"],
)

app.include_router(router)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    """Storage outages answer 503 instead of a bare 500."""
    logger.error(f"Storage error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "status": "unavailable",
            "detail": "Storage backend unavailable",
            "error": {"message": sanitize_error_message(exc.message), "code": exc.code},
        },
    )


@app.get("/health")
async def health():
    """Database health. 503 when the pool is down."""
    db = await check_database_health(dependencies._db_pool)
    if not db.get("healthy"):
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": {"healthy": False, "error": sanitize_error_message(db.get("error"))}},
        )
    return {"status": "healthy", "database": db}
