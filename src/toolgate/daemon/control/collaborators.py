"""Collaborator interfaces the core calls into, plus in-process defaults."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Protocol

from ..utils.config_loader import (
    PLAN_CABINET,
    PLAN_ENTERPRISE,
    GatewayConfig,
)
from .types import AccessMode, ActionSession, Identity, ResourceRef, TargetDescriptor


class PlanResolver(Protocol):
    def resolve(self, identity: Identity) -> str: ...


class PermissionOracle(Protocol):
    def can_access(self, identity: Identity, target: TargetDescriptor, mode: AccessMode) -> bool: ...


class EffectExecutor(Protocol):
    def apply(
        self,
        target: TargetDescriptor,
        final_params: Mapping[str, Any],
        *,
        session: ActionSession,
    ) -> ResourceRef: ...


class DefaultPlanResolver:
    """Plan precedence: mission credential, explicit plan, admin, configured default."""

    def __init__(self, config: Callable[[], GatewayConfig]):
        self._config = config

    def resolve(self, identity: Identity) -> str:
        cfg = self._config()
        if identity.mission_token and PLAN_CABINET in cfg.plans:
            return PLAN_CABINET
        if identity.plan and identity.plan in cfg.plans:
            return identity.plan
        if identity.is_admin and PLAN_ENTERPRISE in cfg.plans:
            return PLAN_ENTERPRISE
        return cfg.default_plan


class StaticPermissionOracle:
    """Grants reads to everyone and writes to everyone not listed as read-only."""

    def __init__(self, *, read_only_identities: Iterable[str] = ()):
        self._read_only = frozenset(read_only_identities)

    def can_access(self, identity: Identity, target: TargetDescriptor, mode: AccessMode) -> bool:
        if mode == AccessMode.WRITE:
            return identity.id not in self._read_only
        return True
