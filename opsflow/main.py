from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from opsflow.core.errors import CorruptInstanceError, InvalidStateError, PersistenceError, WorkflowError
from opsflow.core.logging import configure_logging
from opsflow.services.outbox_worker import start_outbox_worker_task
from opsflow.models import EventOutbox, WorkflowHistoryEntry, WorkflowInstance, WorkflowTemplate  # noqa: F401
from opsflow.routers.auth import router as auth_router
from opsflow.routers.outbox import router as outbox_router
from opsflow.routers.workflows import router as workflows_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_outbox_worker_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # worker crash during shutdown; already logged.
                pass


app = FastAPI(
    title="Opsflow Workflow Engine",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if isinstance(exc, (CorruptInstanceError, PersistenceError)):
        logger.error(
            "Workflow request failed",
            extra={"path": request.url.path, "error": type(exc).__name__},
            exc_info=exc,
        )
        detail = "Service temporarily unavailable" if isinstance(exc, PersistenceError) else "Internal Server Error"
        return JSONResponse(status_code=exc.status_code, content={"detail": detail})

    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, InvalidStateError):
        content["current_status"] = exc.current_status
        content["expected_status"] = exc.expected_status
    if exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(auth_router)
app.include_router(workflows_router)
app.include_router(outbox_router)


@app.get("/")
def root():
    return {"status": "Opsflow workflow engine running"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
