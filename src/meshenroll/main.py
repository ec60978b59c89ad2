"""Meshenroll application entrypoint."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware

import meshenroll.database as db
from meshenroll.config import Settings, load_config, settings
from meshenroll.database import init_db
from meshenroll.enrollment.reconcile import sync_all
from meshenroll.enrollment.tokens import expire_stale_pending
from meshenroll.errors import EnrollmentError, UpstreamError
from meshenroll.mesh.base import MeshDirectory

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _create_directory(mode: str, cfg: Settings) -> MeshDirectory | None:
    """Factory: instantiate the configured mesh directory backend."""
    if mode == "tailscale":
        from meshenroll.mesh.tailscale import TailscaleDirectory

        if not cfg.has_tailscale_credentials():
            logger.warning("Tailscale backend selected but OAuth credentials not configured")
            return None
        return TailscaleDirectory(
            client_id=cfg.tailscale_client_id,
            client_secret=cfg.tailscale_client_secret,
            api_url=cfg.tailscale_api_url,
            provisioned_key=cfg.tailscale_auth_key,
            timeout=cfg.tailscale_timeout,
        )
    if mode == "mock":
        from meshenroll.mesh.mock import MockDirectory

        return MockDirectory(provisioned_key=cfg.tailscale_auth_key)
    if mode == "none":
        return None
    logger.warning("Unknown mesh backend '%s', skipping", mode)
    return None


async def run_maintenance(directory: MeshDirectory | None) -> None:
    """One pass of stale-enrollment expiry and mesh presence sync."""
    with Session(db.engine) as session:
        expire_stale_pending(session)
        if directory is None:
            return
        try:
            await sync_all(session, directory)
        except UpstreamError as e:
            logger.warning("Mesh sync failed: %s", e.detail)


async def _sync_loop(app: FastAPI, interval: int) -> None:
    while True:
        try:
            await run_maintenance(app.state.directory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background maintenance failed")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import meshenroll.audit.models  # noqa: F401
    import meshenroll.identity.models  # noqa: F401
    import meshenroll.registry.models  # noqa: F401

    init_db()
    logger.info("Database initialized")

    cfg = load_config()
    # Tests may install a directory before startup
    if getattr(app.state, "directory", None) is None:
        app.state.directory = _create_directory(cfg.mesh_backend, cfg)
    if app.state.directory is None:
        logger.info("No mesh directory configured")
    else:
        logger.info("Mesh directory: %s", type(app.state.directory).__name__)

    sync_task = None
    if cfg.sync_interval > 0:
        sync_task = asyncio.create_task(_sync_loop(app, cfg.sync_interval))
        logger.info("Background sync every %ds", cfg.sync_interval)

    yield

    if sync_task is not None:
        sync_task.cancel()
        try:
            await sync_task
        except asyncio.CancelledError:
            pass
    if app.state.directory is not None:
        await app.state.directory.aclose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Meshenroll",
    description="Device enrollment and mesh network reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response


app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(EnrollmentError)
async def enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.public_message},
    )


# Register routers
from meshenroll.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Meshenroll on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
