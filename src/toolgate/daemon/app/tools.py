"""Agent-facing endpoints: tool calls, usage and plan limits."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..auth import get_identity_from_token
from ..control.errors import ToolError
from ..control.types import Identity
from ..gateway import error_envelope
from .lifecycle import get_runtime

router = APIRouter(prefix="/v1", tags=["tools"])


class ToolCallRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    arguments: dict[str, Any] = Field(default_factory=dict)


def _error_response(error: ToolError) -> JSONResponse:
    return JSONResponse(status_code=error.http_status, content=error_envelope(error))


@router.post("/tools/call")
async def call_tool(body: ToolCallRequest, identity: Identity = Depends(get_identity_from_token)):
    gateway = get_runtime().gateway
    response = await run_in_threadpool(gateway.call_tool, identity, body.name, body.arguments)

    headers = {}
    retry_after = (response.body.get("error") or {}).get("retry_after")
    if response.status_code == 429 and retry_after:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=response.status_code, content=response.body, headers=headers)


@router.get("/tools")
async def list_tools(identity: Identity = Depends(get_identity_from_token)):
    return {"tools": get_runtime().gateway.tools()}


@router.get("/usage")
async def usage(identity: Identity = Depends(get_identity_from_token)):
    result = await run_in_threadpool(get_runtime().admission.get_usage, identity)
    if isinstance(result, ToolError):
        return _error_response(result)
    return result


@router.get("/limits")
async def limits(identity: Identity = Depends(get_identity_from_token)):
    return get_runtime().admission.get_plan_limits(identity)
