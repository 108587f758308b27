"""Value types shared by admission control and action sessions."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Mapping


class OperationClass(StrEnum):
    READ = "read"
    WRITE = "write"
    BULK = "bulk"


class AccessMode(StrEnum):
    READ = "read"
    WRITE = "write"


class CounterScope(StrEnum):
    BURST = "burst"
    SUSTAINED = "sustained"
    GLOBAL = "global"
    BULK = "bulk"


class AdmissionReason(StrEnum):
    GLOBAL_LIMIT_EXCEEDED = "global_limit_exceeded"
    BULK_NOT_ALLOWED_FOR_PLAN = "bulk_not_allowed_for_plan"
    BULK_ITEM_LIMIT_EXCEEDED = "bulk_item_limit_exceeded"
    BURST_LIMIT_EXCEEDED = "burst_limit_exceeded"
    SUSTAINED_LIMIT_EXCEEDED = "sustained_limit_exceeded"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"
    INVALID_REQUEST = "invalid_request"

    @classmethod
    def parse(cls, value: str) -> "AdmissionReason":
        if value == "user_limit_exceeded":
            return cls.SUSTAINED_LIMIT_EXCEEDED
        return cls(value)


@dataclass(frozen=True)
class Identity:
    """The calling principal. ``token_id`` is set only for scoped credentials."""

    id: str
    plan: str | None = None
    token_id: str | None = None
    is_admin: bool = False
    mission_token: bool = False

    def __post_init__(self):
        if not self.id:
            raise ValueError("identity id must be a non-empty string")


@dataclass(frozen=True)
class TargetDescriptor:
    """Opaque description of what a prepared action will mutate.

    ``internal`` carries fields the executor needs but the caller must never see.
    """

    action: str
    resource_type: str
    resource_id: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    internal: Mapping[str, Any] = field(default_factory=dict)

    def public(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.action, "resource_type": self.resource_type}
        if self.resource_id is not None:
            out["resource_id"] = self.resource_id
        if self.attributes:
            out["attributes"] = dict(self.attributes)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "attributes": dict(self.attributes),
            "internal": dict(self.internal),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TargetDescriptor":
        return cls(
            action=str(data["action"]),
            resource_type=str(data["resource_type"]),
            resource_id=data.get("resource_id"),
            attributes=dict(data.get("attributes") or {}),
            internal=dict(data.get("internal") or {}),
        )


@dataclass(frozen=True)
class ResourceRef:
    resource_type: str
    resource_id: str
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = {"resource_type": self.resource_type, "resource_id": self.resource_id}
        if self.url:
            out["url"] = self.url
        return out


@dataclass
class AdmissionResult:
    allowed: bool
    reason: AdmissionReason | None = None
    retry_after_seconds: int | None = None
    snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionSession:
    token: str
    owner_identity_id: str
    target: TargetDescriptor
    inputs_digest: str
    created_at: float
    ttl_seconds: int
    inputs: Mapping[str, Any] = field(default_factory=dict)
    preview: Mapping[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def to_json(self) -> str:
        return json.dumps(
            {
                "token": self.token,
                "owner_identity_id": self.owner_identity_id,
                "target": self.target.to_dict(),
                "inputs_digest": self.inputs_digest,
                "created_at": self.created_at,
                "ttl_seconds": self.ttl_seconds,
                "inputs": dict(self.inputs),
                "preview": dict(self.preview),
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> "ActionSession":
        data = json.loads(raw)
        return cls(
            token=data["token"],
            owner_identity_id=data["owner_identity_id"],
            target=TargetDescriptor.from_dict(data["target"]),
            inputs_digest=data["inputs_digest"],
            created_at=float(data["created_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
            inputs=data.get("inputs") or {},
            preview=data.get("preview") or {},
        )


@dataclass(frozen=True)
class PrepareResult:
    token: str
    preview: dict[str, Any]
    expires_in_seconds: int


@dataclass(frozen=True)
class CommitResult:
    token: str
    resource_ref: ResourceRef
