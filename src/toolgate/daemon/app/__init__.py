"""toolgate HTTP daemon.

Builds the FastAPI app, mounts the agent-facing and admin routers and hooks
runtime startup/shutdown. Import the app with:
    from toolgate.daemon.app import app
"""

import os
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from toolgate import __version__
from ..control.errors import internal_error, validation_failed
from ..gateway import error_envelope
from ..stores import StoreUnavailableError
from ..utils.logging_config import StructuredLogger, setup_logging

load_dotenv()
setup_logging(os.getenv("TOOLGATE_LOG_LEVEL", "INFO"))
logger = StructuredLogger(__name__)

app = FastAPI(title="toolgate", version=__version__)

allowed_hosts = [h.strip() for h in (os.getenv("TOOLGATE_ALLOWED_HOSTS") or "").split(",") if h.strip()]
if allowed_hosts:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    # Agents read the envelope, not FastAPI's default 422 body.
    if not request.url.path.startswith("/v1/"):
        return JSONResponse(status_code=422, content={"detail": exc.errors()})
    fields = [".".join(str(p) for p in err.get("loc", ())[1:]) or "body" for err in exc.errors()]
    error = validation_failed("Malformed tool call request.", fields=fields)
    return JSONResponse(status_code=error.http_status, content=error_envelope(error))


@app.exception_handler(StoreUnavailableError)
async def _store_unavailable(request: Request, exc: StoreUnavailableError):
    logger.error("Store unavailable", path=request.url.path, error=str(exc))
    error = internal_error("Quota service is unavailable. Please retry later.")
    return JSONResponse(status_code=error.http_status, content=error_envelope(error))


# --- Lifecycle ---
from .lifecycle import startup_event, shutdown_event


@app.on_event("startup")
async def _startup():
    await startup_event(app)


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_event()


# --- Routers ---
from .admin import router as admin_router
from .tools import router as tools_router

app.include_router(admin_router)
app.include_router(tools_router)

__all__ = ["app"]
