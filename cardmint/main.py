import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib.metadata import version as pkg_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cardmint.api import allocation_router, events_router, health_router
from cardmint.config import settings
from cardmint.db import load_receipts
from cardmint.db.database import get_session_factory, init_db
from cardmint.models.failure import KnownError, create_unknown_failure
from cardmint.services.allocation_engine import get_allocation_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    await init_db()

    # Engine state lives in memory; the event log is the durable record
    async with get_session_factory()() as session:
        receipts = await load_receipts(session)
    get_allocation_engine().restore(receipts)
    yield


app = FastAPI(
    title=settings.app_name,
    version=pkg_version("cardmint"),
    lifespan=lifespan,
)

app.include_router(allocation_router)
app.include_router(events_router)
app.include_router(health_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KnownError)
async def known_error_handler(_request: Request, exc: KnownError) -> JSONResponse:
    """Render a rejected request as a known-failure envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def unknown_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Never let a raw 500 through without an envelope."""
    logger.exception("Unhandled error: %s", type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content=create_unknown_failure(exc).model_dump(mode="json"),
    )
