"""HTTP client for the content platform: permission checks and effect execution."""

from __future__ import annotations

import os
from typing import Any, Mapping

import httpx

from .control.errors import EffectError, ErrorCode
from .control.types import AccessMode, ActionSession, Identity, ResourceRef, TargetDescriptor
from .utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)

_DEFAULT_TIMEOUT = 10.0


class HttpPlatformClient:
    """Implements both ``PermissionOracle`` and ``EffectExecutor`` over HTTP.

    Permission checks fail closed: any transport or protocol error denies.
    ``apply`` sends the session token as ``Idempotency-Key`` so the platform
    can deduplicate a retried commit.
    """

    def __init__(
        self,
        base_url: str,
        *,
        service_token: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"
        self._client = client or httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )

    @classmethod
    def from_env(cls) -> "HttpPlatformClient | None":
        base_url = (os.getenv("TOOLGATE_PLATFORM_URL") or "").strip()
        if not base_url:
            return None
        timeout = float(os.getenv("TOOLGATE_PLATFORM_TIMEOUT_SECONDS", str(_DEFAULT_TIMEOUT)))
        return cls(base_url, service_token=os.getenv("TOOLGATE_PLATFORM_TOKEN") or None, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def can_access(self, identity: Identity, target: TargetDescriptor, mode: AccessMode) -> bool:
        body = {
            "identity_id": identity.id,
            "mode": str(mode),
            "target": target.to_dict(),
        }
        try:
            r = self._client.post("/permissions/check", json=body)
            r.raise_for_status()
            return bool(r.json().get("allowed", False))
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Permission check failed; denying",
                identity=identity.id,
                action=target.action,
                mode=str(mode),
                error=str(exc),
            )
            return False

    def call_tool(self, identity: Identity, name: str, arguments: Mapping[str, Any]) -> Any:
        """Forward an admitted single-phase tool call to the platform."""
        try:
            r = self._client.post(
                f"/tools/{name}",
                json={"identity_id": identity.id, "arguments": dict(arguments)},
            )
        except httpx.HTTPError as exc:
            raise EffectError(f"Platform unreachable: {exc}") from exc
        if 400 <= r.status_code < 500:
            raise EffectError(_error_detail(r), code=ErrorCode.VALIDATION_FAILED)
        if r.status_code >= 500:
            raise EffectError(f"Platform error: HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as exc:
            raise EffectError(f"Malformed platform response: {exc}") from exc

    def apply(
        self,
        target: TargetDescriptor,
        final_params: Mapping[str, Any],
        *,
        session: ActionSession,
    ) -> ResourceRef:
        body = {
            "owner_identity_id": session.owner_identity_id,
            "target": target.to_dict(),
            "inputs": dict(session.inputs),
            "inputs_digest": session.inputs_digest,
            "params": dict(final_params),
        }
        try:
            r = self._client.post(
                f"/actions/{target.action}",
                json=body,
                headers={"Idempotency-Key": session.token},
            )
        except httpx.HTTPError as exc:
            raise EffectError(f"Platform unreachable: {exc}") from exc

        if 400 <= r.status_code < 500:
            raise EffectError(_error_detail(r), code=ErrorCode.VALIDATION_FAILED)
        if r.status_code >= 500:
            raise EffectError(f"Platform error: HTTP {r.status_code}")

        try:
            data = r.json()
            return ResourceRef(
                resource_type=str(data["resource_type"]),
                resource_id=str(data["resource_id"]),
                url=data.get("url"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise EffectError(f"Malformed platform response: {exc}") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("detail") or data)
    return str(data)
