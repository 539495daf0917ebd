import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from consensus.core.config import get_settings
from consensus.core.errors import EngineError
from consensus.api import api_router

# Every mapped class must be imported before the first query configures the mappers.
from consensus.models import cell, comment, deliberation, event, participant  # noqa: F401


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Consensus Cells API", version="0.1.0")

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_payload(), status_code=exc.http_status)


@app.get("/")
def root() -> dict:
    """Discovery: clients can start here to find registration and health."""
    return {
        "name": "Consensus Cells",
        "status": "online",
        "registration_endpoint": "/v1/participants/register",
        "health": "/health",
        "timers_health": "/v1/timers/health",
    }


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(api_router)
