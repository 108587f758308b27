"""Gateway entry point: routes agent tool calls through admission and action sessions.

Every call returns a ``ToolResponse`` whose body is the public envelope:

    {"success": true,  "request_id": ..., "timestamp": ..., "data": {...}}
    {"success": false, "request_id": ..., "timestamp": ..., "error": {...}}
"""

from __future__ import annotations

import difflib
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .control.admission import AdmissionController
from .control.classify import STAGE_COMMIT, STAGE_PREPARE, classify
from .control.collaborators import EffectExecutor
from .control.errors import (
    EffectError,
    ErrorCode,
    ToolError,
    admission_error,
    internal_error,
    validation_failed,
)
from .control.sessions import ActionSessionManager, ActionSpec, ContextLoader, PreviewBuilder
from .control.types import CommitResult, Identity, OperationClass, PrepareResult, TargetDescriptor
from .utils.config_loader import GatewayConfig
from .utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)
audit_logger = StructuredLogger("tool.audit")

STAGE_DISCARD = "discard"
SESSION_ARG = "session_id"
ITEMS_ARG = "items"
_RESERVED_ARGS = frozenset({"stage", SESSION_ARG})

ToolHandler = Callable[[Identity, dict], Any]
TargetBuilder = Callable[[Identity, Mapping[str, Any]], TargetDescriptor]


def new_request_id() -> str:
    return f"req_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}_{secrets.token_hex(4)}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def success_envelope(data: Any, request_id: str | None = None) -> dict[str, Any]:
    return {"success": True, "request_id": request_id or new_request_id(), "timestamp": _timestamp(), "data": data}


def error_envelope(error: ToolError, request_id: str | None = None) -> dict[str, Any]:
    return {
        "success": False,
        "request_id": request_id or new_request_id(),
        "timestamp": _timestamp(),
        "error": error.to_dict(),
    }


@dataclass
class ToolResponse:
    status_code: int
    body: dict[str, Any]

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


@dataclass(frozen=True)
class _DirectTool:
    name: str
    handler: ToolHandler
    description: str = ""


@dataclass(frozen=True)
class _StagedTool:
    name: str
    target: TargetBuilder
    description: str = ""
    commit_hint: str | None = None
    commit_args: Mapping[str, Any] = field(default_factory=dict)


def default_target(name: str) -> TargetBuilder:
    """Target built from ``resource_type``/``resource_id`` arguments."""

    def build(identity: Identity, arguments: Mapping[str, Any]) -> TargetDescriptor:
        resource_id = arguments.get("resource_id")
        return TargetDescriptor(
            action=name,
            resource_type=str(arguments.get("resource_type") or name),
            resource_id=str(resource_id) if resource_id is not None else None,
        )

    return build


class Gateway:
    """Tool registry plus the call pipeline.

    Direct tools are classified from the configured catalog and admitted here.
    Two-phase tools delegate to the session manager, which runs its own
    admission check for each stage.
    """

    def __init__(
        self,
        admission: AdmissionController,
        sessions: ActionSessionManager,
        *,
        config: Callable[[], GatewayConfig],
    ):
        self.admission = admission
        self.sessions = sessions
        self._config = config
        self._direct: dict[str, _DirectTool] = {}
        self._staged: dict[str, _StagedTool] = {}
        self._register_builtins()

    # ── Registry ────────────────────────────────────────────────────────────

    def register_tool(self, name: str, handler: ToolHandler, *, description: str = "") -> None:
        self._ensure_free(name)
        self._direct[name] = _DirectTool(name=name, handler=handler, description=description)

    def register_action(
        self,
        name: str,
        executor: EffectExecutor | Callable[..., Any],
        *,
        target: TargetBuilder | None = None,
        preview: PreviewBuilder | None = None,
        context: ContextLoader | None = None,
        description: str = "",
        commit_hint: str | None = None,
        commit_args: Mapping[str, Any] | None = None,
    ) -> None:
        self._ensure_free(name)
        self.sessions.register(ActionSpec(name=name, executor=executor, preview=preview, context=context))
        self._staged[name] = _StagedTool(
            name=name,
            target=target or default_target(name),
            description=description,
            commit_hint=commit_hint,
            commit_args=dict(commit_args or {}),
        )

    def tools(self) -> list[dict[str, Any]]:
        out = [
            {"name": t.name, "two_phase": False, "description": t.description}
            for t in self._direct.values()
        ]
        out.extend(
            {"name": t.name, "two_phase": True, "description": t.description}
            for t in self._staged.values()
        )
        return sorted(out, key=lambda item: item["name"])

    # ── Call pipeline ───────────────────────────────────────────────────────

    def call_tool(self, identity: Identity, name: str, arguments: Mapping[str, Any] | None = None) -> ToolResponse:
        request_id = new_request_id()
        args = dict(arguments or {})
        started = time.monotonic()

        try:
            if name in self._staged:
                result = self._call_staged(identity, self._staged[name], args)
            elif name in self._direct:
                result = self._call_direct(identity, self._direct[name], args)
            else:
                result = self._unknown_tool(name)
        except Exception as exc:
            logger.exception("Unhandled error in tool call", tool=name, identity=identity.id, error=str(exc))
            result = internal_error()

        if isinstance(result, ToolError):
            response = ToolResponse(result.http_status, error_envelope(result, request_id))
            outcome = _audit_result(result)
        else:
            response = ToolResponse(200, success_envelope(result, request_id))
            outcome = "success"

        audit_logger.info(
            "Tool call",
            request_id=request_id,
            tool=name,
            stage=args.get("stage"),
            identity=identity.id,
            result=outcome,
            error_code=response.body.get("error", {}).get("code"),
            latency_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return response

    def _call_direct(self, identity: Identity, tool: _DirectTool, args: dict) -> Any:
        op = classify(tool.name, self._config().tools)
        item_count = 1
        if op == OperationClass.BULK:
            items = args.get(ITEMS_ARG)
            if not isinstance(items, list) or not items:
                return validation_failed(f"'{ITEMS_ARG}' must be a non-empty list for bulk tools")
            item_count = len(items)

        admitted = self.admission.check(identity, op, item_count)
        if not admitted.allowed:
            return admission_error(admitted)

        try:
            data = tool.handler(identity, args)
        except EffectError as exc:
            return ToolError(code=exc.code, message=str(exc))
        except (TypeError, ValueError) as exc:
            return validation_failed(str(exc))

        if isinstance(data, ToolError):
            return data
        if op == OperationClass.BULK and isinstance(data, dict):
            data.setdefault("item_delay_ms", admitted.snapshot.get("delay_ms", 0))
        return data

    def _call_staged(self, identity: Identity, tool: _StagedTool, args: dict) -> Any:
        stage = args.get("stage") or STAGE_PREPARE
        params = {k: v for k, v in args.items() if k not in _RESERVED_ARGS}

        if stage == STAGE_PREPARE:
            try:
                target = tool.target(identity, params)
            except (EffectError, KeyError, TypeError, ValueError) as exc:
                return validation_failed(f"Invalid target: {exc}")
            if target.action != tool.name:
                target = replace(target, action=tool.name)
            # Per call: the tool catalog can be hot-reloaded.
            op = classify(tool.name, self._config().tools, STAGE_PREPARE)
            result = self.sessions.prepare(identity, target, params, operation_class=op)
            if isinstance(result, ToolError):
                return result
            return self._prepared(tool, result)

        if stage == STAGE_COMMIT:
            token = str(args.get(SESSION_ARG) or "")
            result = self.sessions.commit(identity, token, params)
            if isinstance(result, ToolError):
                return result
            return _committed(result)

        if stage == STAGE_DISCARD:
            result = self.sessions.discard(identity, str(args.get(SESSION_ARG) or ""))
            if isinstance(result, ToolError):
                return result
            return {"discarded": True}

        return validation_failed(
            f"Invalid stage '{stage}'. Use \"{STAGE_PREPARE}\" or \"{STAGE_COMMIT}\".",
            stage=stage,
        )

    def _prepared(self, tool: _StagedTool, result: PrepareResult) -> dict[str, Any]:
        next_args = {"stage": STAGE_COMMIT, SESSION_ARG: result.token, **tool.commit_args}
        return {
            SESSION_ARG: result.token,
            "expires_in": result.expires_in_seconds,
            "preview": result.preview,
            "next_action": {
                "tool": tool.name,
                "args": next_args,
                "hint": tool.commit_hint or "Review the preview, then call commit before the session expires.",
            },
        }

    def _unknown_tool(self, name: str) -> ToolError:
        available = sorted([*self._direct, *self._staged])
        similar = difflib.get_close_matches(name, available, n=3, cutoff=0.6)
        suggestion = (
            f"Similar tools: {', '.join(similar)}" if similar else "Call 'ping' to list available tools."
        )
        return ToolError(
            code=ErrorCode.UNKNOWN_TOOL,
            message=f"Unknown tool: {name}",
            suggestion=suggestion,
            details={"requested_tool": name},
        )

    # ── Built-ins ───────────────────────────────────────────────────────────

    def _register_builtins(self) -> None:
        self.register_tool("ping", lambda identity, args: {"status": "ok", "tools": self.tools()},
                           description="Liveness check and tool listing.")
        self.register_tool("get_usage", lambda identity, args: self.admission.get_usage(identity),
                           description="Current quota usage for the caller.")
        self.register_tool("get_plan_limits", lambda identity, args: self.admission.get_plan_limits(identity),
                           description="Plan limits for the caller.")

    def _ensure_free(self, name: str) -> None:
        if name in self._direct or name in self._staged:
            raise ValueError(f"Tool '{name}' is already registered")


def _committed(result: CommitResult) -> dict[str, Any]:
    return {"committed": True, "resource": result.resource_ref.to_dict()}


def _audit_result(error: ToolError) -> str:
    if error.code == ErrorCode.ADMISSION_DENIED:
        return "rate_limited"
    if error.code == ErrorCode.INTERNAL_ERROR:
        return "error"
    return "denied"
