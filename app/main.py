"""
FastAPI application main module.
Composition root: builds the task store, mail sender, reconciler, dispatcher and
scheduler once in the lifespan and shares them through ``app.state``.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
from app.api.v1 import api_router
from app.config import DISPATCH_SETTINGS, MAIL_SETTINGS, LOG_LEVEL, LOG_FILE
from app.database import engine, Base, SessionLocal
from app.errors import TaskStoreError
from app.jobs.dispatcher import Dispatcher
from app.jobs.scheduler import DispatchScheduler
from app.services.mail_sender import build_mail_sender
from app.services.status_reconciler import StatusReconciler
from app.services.task_store import TaskStore
from app.utils import setup_logging, get_logger

# Setup logging before creating the app
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "campaign-dispatch-backend"
SERVICE_VERSION = "1.0.0"


def build_dispatch_services(session_factory=SessionLocal, *, mail_settings=None) -> dict:
    """Wire the dispatch engine from explicit collaborators (no module-level singletons)."""
    store = TaskStore(session_factory)
    sender = build_mail_sender(MAIL_SETTINGS if mail_settings is None else mail_settings)
    reconciler = StatusReconciler(store)
    dispatcher = Dispatcher(store, sender, reconciler, batch_limit=int(DISPATCH_SETTINGS["batch_limit"]))
    scheduler = DispatchScheduler(dispatcher, interval_seconds=float(DISPATCH_SETTINGS["interval_seconds"]))
    return {
        "task_store": store,
        "mail_sender": sender,
        "status_reconciler": reconciler,
        "dispatcher": dispatcher,
        "dispatch_scheduler": scheduler,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")

    scheduler: DispatchScheduler | None = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        services = build_dispatch_services()
        for name, service in services.items():
            setattr(app.state, name, service)
        scheduler = services["dispatch_scheduler"]

        if DISPATCH_SETTINGS.get("enabled", True):
            scheduler.start()
        else:
            logger.info("Dispatch timer disabled; manual ticks only")

        logger.info("Application startup completed successfully", mail_backend=MAIL_SETTINGS.get("backend"))
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler is not None:
            # lets an in-flight tick finish its batch
            scheduler.stop()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Campaign Dispatch Backend",
    description="""
    Periodic dispatch engine for scheduled campaign emails.

    ## Features
    * **Atomic claims** - each due task is claimed by exactly one dispatcher
    * **Bounded ticks** - at most `DISPATCH_BATCH_LIMIT` sends per tick
    * **Self-healing aggregates** - campaign counts recomputed from task rows every tick
    * **Manual trigger & recalculation** - administrative endpoints under `/api/v1/dispatch`

    ## Authentication
    Dispatch administration endpoints require the admin bearer token:
    ```
    Authorization: Bearer <ADMIN_API_TOKEN>
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(TaskStoreError)
async def task_store_exception_handler(request: Request, exc: TaskStoreError):
    """Task store unavailable: the request can be retried later."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Task store failure",
        operation=exc.operation,
        error=str(exc),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "message": "Task store unavailable",
            "operation": exc.operation,
            "request_id": request_id
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "mail_backend": MAIL_SETTINGS.get("backend"),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
def detailed_health_check(request: Request):
    """Detailed health check with database status and a scheduler snapshot."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    scheduler = getattr(request.app.state, "dispatch_scheduler", None)
    if scheduler is not None:
        snap = scheduler.snapshot()
        health_status["checks"]["scheduler"] = {
            k: v for k, v in snap.items() if k in {"running", "ticks_run", "skipped_fires", "tick_in_progress"}
        }
        if DISPATCH_SETTINGS.get("enabled", True) and not snap["running"]:
            health_status["status"] = "degraded"

    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Campaign Dispatch Backend API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["app"],
        log_level="info",
        access_log=True
    )
