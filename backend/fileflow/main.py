"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fileflow.config import settings
from fileflow.database import check_connection, create_schema, engine
from fileflow.exceptions import (
    FileFlowError, NotFound, QuotaExceededError, SessionExpired, StorageFault, ValidationFault,
)
from fileflow.schemas.common import ErrorResponse

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, resolve storage and search, recover state, start sweeps."""
    await create_schema()

    from fileflow.services.background import (
        recover_on_startup, start_background_tasks, stop_background_tasks,
    )
    from fileflow.services.container import default_services

    services = default_services()
    await services.storage.initialize()
    await services.search.probe()
    await recover_on_startup(services)
    app.state.services = services

    tasks = start_background_tasks(services)

    yield

    # Cleanup
    await stop_background_tasks(tasks)
    await services.files.wait_for_background()
    await services.search.close()
    await engine.dispose()


app = FastAPI(
    title="FileFlow API",
    version="1.0.0",
    description="File storage backend with quota accounting and live change notifications.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Most specific first: SessionExpired is a NotFound, InvalidChunk a ValidationFault
_ERROR_STATUS: list[tuple[type[FileFlowError], int]] = [
    (SessionExpired, 410),
    (NotFound, 404),
    (ValidationFault, 400),
    (QuotaExceededError, 507),
    (StorageFault, 502),
]


@app.exception_handler(FileFlowError)
async def fileflow_error_handler(request: Request, exc: FileFlowError):
    status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(detail=str(exc), error=type(exc).__name__).model_dump(),
    )


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        await check_connection()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from fileflow.routes.files import router as files_router
from fileflow.routes.folders import router as folders_router
from fileflow.routes.quota import router as quota_router
from fileflow.routes.search import router as search_router
from fileflow.routes.notifications import router as notifications_router, ws_router
app.include_router(files_router)
app.include_router(folders_router)
app.include_router(quota_router)
app.include_router(search_router)
app.include_router(notifications_router)
app.include_router(ws_router)
