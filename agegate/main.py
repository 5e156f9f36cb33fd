from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agegate.api.dependencies import CronAuthorizationError, get_http_client, get_session_store
from agegate.api.router import api_router
from agegate.core.config import settings
from agegate.core.logger import configure_logging, get_logger
from agegate.models.status import InvalidTransitionError
from agegate.services.pos_service import PosApiError
from agegate.services.session_store import SessionNotFoundError

configure_logging()
logger = get_logger(component="FastAPI")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the session sweeper for the lifetime of the process."""
    session_store = get_session_store()
    session_store.start_sweeper()

    yield

    logger.info("Shutting down verification service")
    try:
        await session_store.stop_sweeper()
    except Exception as exc:
        logger.exception("Error stopping session sweeper", error=str(exc))
    if get_http_client.cache_info().currsize:
        await get_http_client().aclose()
        get_http_client.cache_clear()


def create_app() -> FastAPI:
    app = FastAPI(title=settings.project_name, version="1.0.0", lifespan=lifespan)

    @app.exception_handler(SessionNotFoundError)
    async def handle_session_not_found(_: Request, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "error_code": "SESSION_NOT_FOUND"})

    @app.exception_handler(CronAuthorizationError)
    async def handle_cron_unauthorized(_: Request, exc: CronAuthorizationError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc), "error_code": "CRON_UNAUTHORIZED"})

    @app.exception_handler(InvalidTransitionError)
    async def handle_invalid_transition(_: Request, exc: InvalidTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "error_code": "INVALID_TRANSITION"})

    @app.exception_handler(PosApiError)
    async def handle_pos_error(_: Request, exc: PosApiError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc), "error_code": "POS_UNAVAILABLE", "upstream_status": exc.status},
        )

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/healthz", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
