"""Prepare/commit action sessions bound to single-use, time-boxed tokens.

State machine: NONE -> PENDING (prepare) -> CONSUMED (commit) | EXPIRED (TTL).
EXPIRED and CONSUMED both read as "not found".

Commit deletes the session before the effect executor runs, which makes the
protocol at-most-once: if ``apply`` fails after the delete, the caller must
prepare again. Executors that need exactly-once must deduplicate on the
session token themselves.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from ..stores.base import KeySpace, SessionStore, StoreUnavailableError
from ..utils.config_loader import GatewayConfig
from ..utils.deterministic import fingerprint, normalize, payload_digest
from ..utils.logging_config import StructuredLogger
from .admission import AdmissionController
from .collaborators import EffectExecutor, PermissionOracle
from .errors import (
    EffectError,
    ErrorCode,
    ToolError,
    admission_error,
    internal_error,
    session_gone,
    validation_failed,
)
from .types import (
    AccessMode,
    ActionSession,
    CommitResult,
    Identity,
    OperationClass,
    PrepareResult,
    ResourceRef,
    TargetDescriptor,
)

logger = StructuredLogger(__name__)

TOKEN_PREFIX = "as_"
_TOKEN_BYTES = 16
_CREATE_ATTEMPTS = 3

PreviewBuilder = Callable[[TargetDescriptor, Mapping[str, Any], Mapping[str, Any]], Mapping[str, Any]]
ContextLoader = Callable[[Identity, TargetDescriptor], Mapping[str, Any]]


@dataclass(frozen=True)
class ActionSpec:
    """One two-phase action type: how to preview it and how to apply it."""

    name: str
    executor: EffectExecutor | Callable[..., ResourceRef]
    preview: PreviewBuilder | None = None
    context: ContextLoader | None = None
    prepare_class: OperationClass = OperationClass.READ


def default_preview(target: TargetDescriptor, inputs: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    preview: dict[str, Any] = {"action": target.action, "target": target.public(), "inputs": dict(inputs)}
    if context:
        preview["context"] = dict(context)
    return preview


def new_session_token() -> str:
    return TOKEN_PREFIX + secrets.token_hex(_TOKEN_BYTES)


def token_fingerprint(token: str) -> str:
    """Short, non-reversible token id for logs."""
    return fingerprint("session.token", token)


class ActionSessionManager:
    def __init__(
        self,
        sessions: SessionStore,
        admission: AdmissionController,
        permissions: PermissionOracle,
        *,
        config: Callable[[], GatewayConfig],
        keys: KeySpace | None = None,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = new_session_token,
    ) -> None:
        self._store = sessions
        self._admission = admission
        self._permissions = permissions
        self._config = config
        self._keys = keys or KeySpace()
        self._clock = clock
        self._new_token = token_factory
        self._actions: dict[str, ActionSpec] = {}

    # ── Registry ────────────────────────────────────────────────────────────

    def register(self, spec: ActionSpec) -> None:
        if spec.name in self._actions:
            raise ValueError(f"Action '{spec.name}' is already registered")
        self._actions[spec.name] = spec

    def action(self, name: str) -> ActionSpec | None:
        return self._actions.get(name)

    @property
    def actions(self) -> list[str]:
        return sorted(self._actions)

    # ── Prepare ─────────────────────────────────────────────────────────────

    def prepare(
        self,
        identity: Identity,
        target: TargetDescriptor,
        inputs: Mapping[str, Any] | None = None,
        *,
        operation_class: OperationClass | None = None,
    ) -> PrepareResult | ToolError:
        """Stage an action. ``operation_class`` overrides the spec's prepare class."""
        spec = self._actions.get(target.action)
        if spec is None:
            return validation_failed(f"Unknown action '{target.action}'", action=target.action)

        if not self._permissions.can_access(identity, target, AccessMode.WRITE):
            logger.warning("Prepare denied by permissions", identity=identity.id, action=target.action)
            return validation_failed("You do not have permission to modify this target.")

        admitted = self._admission.check(identity, operation_class or spec.prepare_class)
        if not admitted.allowed:
            return admission_error(admitted)

        try:
            # Stored inputs, preview and digest all see the normalized values.
            normalized = normalize(dict(inputs or {}))
            context = dict(spec.context(identity, target)) if spec.context else {}
            build = spec.preview or default_preview
            preview = dict(build(target, normalized, context))
        except EffectError as exc:
            return ToolError(code=exc.code, message=str(exc))
        except (TypeError, ValueError) as exc:
            return validation_failed(f"Invalid inputs: {exc}")
        except Exception as exc:
            logger.exception(
                "Preview assembly crashed",
                identity=identity.id,
                action=target.action,
                error=str(exc),
            )
            return internal_error("Could not prepare the action. Please retry later.")

        digest = payload_digest({"target": target.to_dict(), "inputs": normalized, "context": context})
        ttl = self._config().sessions.ttl_seconds
        created_at = self._clock()

        for _ in range(_CREATE_ATTEMPTS):
            token = self._new_token()
            session = ActionSession(
                token=token,
                owner_identity_id=identity.id,
                target=target,
                inputs_digest=digest,
                created_at=created_at,
                ttl_seconds=ttl,
                inputs=normalized,
                preview=preview,
            )
            try:
                created = self._store.create_if_absent(self._keys.session(token), session.to_json(), ttl)
            except StoreUnavailableError as exc:
                logger.error("Session store unavailable on prepare", identity=identity.id, error=str(exc))
                return internal_error("Session service is unavailable. Please retry later.")
            if created:
                logger.info(
                    "Action session prepared",
                    identity=identity.id,
                    action=target.action,
                    session=token_fingerprint(token),
                    inputs_digest=digest[:16],
                    ttl_seconds=ttl,
                )
                return PrepareResult(token=token, preview=preview, expires_in_seconds=ttl)
            logger.warning("Session token collision; regenerating", session=token_fingerprint(token))

        return internal_error("Could not allocate a session token.")

    # ── Commit ──────────────────────────────────────────────────────────────

    def commit(
        self,
        identity: Identity,
        token: str,
        final_params: Mapping[str, Any] | None = None,
    ) -> CommitResult | ToolError:
        if not token:
            return session_gone()

        loaded = self._load(token)
        if isinstance(loaded, ToolError):
            return loaded
        raw, session = loaded
        fingerprint = token_fingerprint(token)

        if session.owner_identity_id != identity.id:
            logger.warning("Commit rejected: session owner mismatch", identity=identity.id, session=fingerprint)
            return session_gone(ErrorCode.SESSION_OWNER_MISMATCH)

        if not self._permissions.can_access(identity, session.target, AccessMode.WRITE):
            logger.warning("Commit denied by permissions", identity=identity.id, session=fingerprint)
            return validation_failed("You no longer have permission to modify this target.")

        spec = self._actions.get(session.target.action)
        if spec is None:
            return validation_failed(f"Action '{session.target.action}' is no longer available")

        admitted = self._admission.check(identity, OperationClass.WRITE)
        if not admitted.allowed:
            return admission_error(admitted)

        # Sole gate: only the caller whose delete succeeds may run the effect.
        try:
            consumed = self._store.compare_and_delete(self._keys.session(token), raw)
        except StoreUnavailableError as exc:
            logger.error("Session store unavailable on commit", identity=identity.id, error=str(exc))
            return internal_error("Session service is unavailable. Please retry later.")
        if not consumed:
            logger.info("Commit lost race or session expired", identity=identity.id, session=fingerprint)
            return session_gone()

        params = dict(final_params or {})
        try:
            result = self._apply(spec, session, params)
        except EffectError as exc:
            logger.error(
                "Effect executor failed after session consumed",
                identity=identity.id,
                action=session.target.action,
                session=fingerprint,
                error=str(exc),
            )
            return ToolError(
                code=exc.code,
                message=str(exc),
                suggestion="The session was consumed; run prepare again before retrying.",
            )
        except Exception as exc:
            logger.exception(
                "Effect executor crashed after session consumed",
                identity=identity.id,
                action=session.target.action,
                session=fingerprint,
                error=str(exc),
            )
            return internal_error("Action failed after the session was consumed; run prepare again.")

        if isinstance(result, ToolError):
            return result

        logger.info(
            "Action session committed",
            identity=identity.id,
            action=session.target.action,
            session=fingerprint,
            resource_type=result.resource_type,
            resource_id=result.resource_id,
        )
        return CommitResult(token=token, resource_ref=result)

    # ── Discard / audit ─────────────────────────────────────────────────────

    def discard(self, identity: Identity, token: str) -> bool | ToolError:
        """Abandon a pending session; owner rules match commit."""
        if not token:
            return session_gone()
        loaded = self._load(token)
        if isinstance(loaded, ToolError):
            return loaded
        raw, session = loaded
        if session.owner_identity_id != identity.id:
            return session_gone(ErrorCode.SESSION_OWNER_MISMATCH)
        try:
            removed = self._store.compare_and_delete(self._keys.session(token), raw)
        except StoreUnavailableError as exc:
            logger.error("Session store unavailable on discard", identity=identity.id, error=str(exc))
            return internal_error("Session service is unavailable. Please retry later.")
        if not removed:
            return session_gone()
        logger.info("Action session discarded", identity=identity.id, session=token_fingerprint(token))
        return True

    def list_sessions(self, *, owner_identity_id: str | None = None) -> list[dict[str, Any]]:
        """Pending sessions for audit. Raises StoreUnavailableError."""
        now = self._clock()
        out = []
        for key, raw in self._store.scan(self._keys.sessions_prefix):
            try:
                session = ActionSession.from_json(raw)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable session record", key=key)
                continue
            if owner_identity_id and session.owner_identity_id != owner_identity_id:
                continue
            out.append(
                {
                    "session": token_fingerprint(session.token),
                    "owner_identity_id": session.owner_identity_id,
                    "target": session.target.public(),
                    "inputs_digest": session.inputs_digest,
                    "created_at": session.created_at,
                    "expires_in_seconds": max(0, int(session.expires_at - now)),
                }
            )
        out.sort(key=lambda item: item["created_at"])
        return out

    # ── Internals ───────────────────────────────────────────────────────────

    def _load(self, token: str) -> tuple[str, ActionSession] | ToolError:
        try:
            raw = self._store.get(self._keys.session(token))
        except StoreUnavailableError as exc:
            # Fail loud: an unreachable store is not the same as "not found".
            logger.error("Session store unavailable on lookup", error=str(exc))
            return internal_error("Session service is unavailable. Please retry later.")
        if raw is None:
            return session_gone()
        try:
            session = ActionSession.from_json(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Unreadable session record", session=token_fingerprint(token), error=str(exc))
            return internal_error()
        if self._clock() >= session.expires_at:
            return session_gone()
        return raw, session

    def _apply(self, spec: ActionSpec, session: ActionSession, params: dict[str, Any]) -> ResourceRef | ToolError:
        executor = spec.executor
        if hasattr(executor, "apply"):
            return executor.apply(session.target, params, session=session)
        return executor(session.target, params, session=session)
