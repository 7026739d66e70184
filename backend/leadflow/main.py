import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadflow.api.automations import router as automations_router
from leadflow.api.events import router as events_router
from leadflow.api.executions import router as executions_router
from leadflow.api.tracking import router as tracking_router
from leadflow.config import config
from leadflow.db.init import get_database, init_db
from leadflow.errors import AutomationError, PersistenceError

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    logger.info("Celery worker should be running in a separate process.")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")


app = FastAPI(title="LeadFlow Automation Engine", lifespan=lifespan)

# For production, restrict this to the frontend's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AutomationError)
async def automation_error_handler(request: Request, exc: AutomationError):
    status_code = 503 if isinstance(exc, PersistenceError) else 400
    logger.warning(f"[API] {request.method} {request.url.path} -> {status_code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/health")
async def health_check():
    try:
        await get_database().command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(automations_router, prefix="/api", tags=["automations"])
app.include_router(events_router, prefix="/api", tags=["events"])
app.include_router(executions_router, prefix="/api", tags=["executions"])
app.include_router(tracking_router, prefix="/api", tags=["tracking"])
