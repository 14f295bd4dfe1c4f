import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from invoice_pipeline.api.v1.runs import router as runs_router
from invoice_pipeline.core.config import get_pipeline_config, get_settings
from invoice_pipeline.services.recurring_jobs import start_notification_outbox_worker

settings = get_settings()
_notification_outbox_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Pipeline API",
    version="0.4.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _notification_outbox_task
    # Fail fast on a broken pipeline configuration file.
    config = get_pipeline_config()
    logger.info("Pipeline engines enabled: %s", [e.name for e in config.enabled_engines()])
    if _notification_outbox_task is None and settings.enable_recurring_jobs and settings.enable_notification_outbox:
        _notification_outbox_task = start_notification_outbox_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _notification_outbox_task
    if _notification_outbox_task is not None:
        _notification_outbox_task.cancel()
        _notification_outbox_task = None


app.include_router(runs_router, prefix="/api/v1", tags=["runs"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


@app.get("/health")
async def health_check():
    return {"status": "ok"}
