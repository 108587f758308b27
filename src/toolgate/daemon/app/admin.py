"""toolgate admin endpoints: health/readiness, rate-limit resets, session audit, config reload."""

import os

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ... import __version__
from ..stores import StoreUnavailableError
from ..utils.config_loader import config_loader
from ..utils.logging_config import StructuredLogger
from .lifecycle import get_runtime

logger = StructuredLogger(__name__)
router = APIRouter()


class ResetIdentityRequest(BaseModel):
    token_ids: list[str] = Field(default_factory=list, max_length=100)
    reason: str = Field(default="operator request", min_length=3, max_length=240)


class ResetAllRequest(BaseModel):
    reason: str = Field(default="operator request", min_length=3, max_length=240)


def _require_control_key(request: Request) -> None:
    expected = (os.getenv("TOOLGATE_ADMIN_KEY") or "").strip()
    if not expected:
        return
    provided = (request.headers.get("x-toolgate-admin-key") or "").strip()
    if not provided or provided != expected:
        raise HTTPException(status_code=403, detail="Admin control key is required")


@router.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@router.get("/ready")
async def ready():
    runtime = get_runtime()

    def _ping():
        runtime.stores.counters.get(runtime.stores.keys.global_counter())

    try:
        await run_in_threadpool(_ping)
    except StoreUnavailableError as exc:
        logger.error("Readiness check failed", error=str(exc))
        return JSONResponse(status_code=503, content={"status": "unavailable", "store": runtime.stores.backend})
    return {"status": "ready", "store": runtime.stores.backend}


@router.post("/admin/rate_limits/reset/{identity_id}")
async def reset_identity_limits(identity_id: str, request: Request, body: ResetIdentityRequest | None = None):
    _require_control_key(request)
    body = body or ResetIdentityRequest()
    admission = get_runtime().admission
    try:
        deleted = await run_in_threadpool(admission.reset_identity, identity_id, body.token_ids)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    logger.warning("Operator reset identity limits", identity=identity_id, reason=body.reason)
    return {"status": "ok", "identity_id": identity_id, "keys_deleted": deleted}


@router.post("/admin/rate_limits/reset_all")
async def reset_all_limits(request: Request, body: ResetAllRequest | None = None):
    _require_control_key(request)
    body = body or ResetAllRequest()
    admission = get_runtime().admission
    try:
        deleted = await run_in_threadpool(admission.reset_all)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    logger.warning("Operator reset all limits", reason=body.reason)
    return {"status": "ok", "keys_deleted": deleted}


@router.get("/admin/sessions")
async def list_sessions(request: Request, owner: str = Query(default="", max_length=200)):
    _require_control_key(request)
    sessions = get_runtime().sessions
    try:
        items = await run_in_threadpool(lambda: sessions.list_sessions(owner_identity_id=owner or None))
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"count": len(items), "sessions": items}


@router.post("/admin/reload_config")
async def reload_config_endpoint(request: Request):
    _require_control_key(request)
    try:
        config_loader.load_config()
        return {"status": "ok", "message": "Configuration reloaded"}
    except Exception as e:
        logger.error("Config reload failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
