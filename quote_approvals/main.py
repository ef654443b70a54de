import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from quote_approvals.config import settings
from quote_approvals.database import init_db, close_db
from quote_approvals.engine import build_engine
from quote_approvals.errors import ApprovalEngineError
from quote_approvals.logging_config import setup_logging
from quote_approvals.middleware.correlation import CorrelationIdMiddleware

# Import models so they are registered with Base.metadata
import quote_approvals.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_quote_approvals", env=settings.ENVIRONMENT, store=settings.STORE_BACKEND)
    if settings.STORE_BACKEND == "sql":
        await init_db()
    app.state.engine = build_engine()

    scheduler_task = None
    if settings.SCHEDULER_ENABLED:
        from quote_approvals.jobs.scheduled import run_scheduler

        scheduler_task = asyncio.create_task(
            run_scheduler(app.state.engine, settings.SCHEDULER_INTERVAL_SECONDS)
        )
    yield
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("scheduler_stopped")
    if settings.STORE_BACKEND == "sql":
        await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers: every error renders as
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(ApprovalEngineError)
async def engine_error_handler(request: Request, exc: ApprovalEngineError) -> JSONResponse:
    logger.info(
        "request_rejected",
        code=exc.code,
        subject_id=exc.subject_id,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold exception instances that JSONResponse cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Actor-Id", "X-Actor-Role"],
)


@app.get("/health", tags=["System"])
async def health(request: Request, response: Response):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    engine = getattr(request.app.state, "engine", None)
    try:
        await engine.store.get("health/probe")
        health_status["checks"]["store"] = "ok"
    except Exception as e:
        logger.error("health_check_store_failed", error=str(e))
        health_status["checks"]["store"] = "error"
        health_status["status"] = "unhealthy"

    if engine is not None:
        health_status["checks"]["deferred_notifications"] = await engine.dispatcher.deferred_count()

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from quote_approvals.routes.workflows import router as workflows_router  # noqa: E402
from quote_approvals.routes.quotes import router as quotes_router  # noqa: E402
from quote_approvals.routes.approvals import router as approvals_router  # noqa: E402
from quote_approvals.routes.audit_logs import router as audit_logs_router  # noqa: E402
from quote_approvals.routes.notification_rules import router as rules_router  # noqa: E402
from quote_approvals.routes.notifications import router as notifications_router  # noqa: E402
from quote_approvals.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(workflows_router, prefix="/api/v1/workflows", tags=["Workflows"])
app.include_router(quotes_router, prefix="/api/v1/quotes", tags=["Quotes"])
app.include_router(approvals_router, prefix="/api/v1/approvals", tags=["Approvals"])
app.include_router(audit_logs_router, prefix="/api/v1/audit-logs", tags=["Audit Logs"])
app.include_router(rules_router, prefix="/api/v1/notification-rules", tags=["Notification Rules"])
app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["Notifications"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
