"""Shared fixtures for the toolgate test suite: a manual clock and in-memory wiring."""

import copy
from types import SimpleNamespace

from toolgate.daemon.control import (
    ActionSessionManager,
    AdmissionController,
    ResourceRef,
    StaticPermissionOracle,
)
from toolgate.daemon.stores import InMemoryCounterStore, InMemorySessionStore, KeySpace
from toolgate.daemon.utils.config_loader import DEFAULT_CONFIG, GatewayConfig

T0 = 1_700_000_000.0


class ManualClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> GatewayConfig:
    data = copy.deepcopy(DEFAULT_CONFIG)
    data.update(overrides)
    return GatewayConfig(**data)


def window(sustained: int, burst: int, sustained_window: int = 60, burst_window: int = 5) -> dict:
    return {
        "sustained_limit": sustained,
        "sustained_window_seconds": sustained_window,
        "burst_limit": burst,
        "burst_window_seconds": burst_window,
    }


class MutablePermissions(StaticPermissionOracle):
    """Permission oracle whose read-only set can change mid-test."""

    def __init__(self):
        super().__init__()
        self.revoked: set[str] = set()

    def can_access(self, identity, target, mode):
        if identity.id in self.revoked:
            return False
        return super().can_access(identity, target, mode)


class RecordingExecutor:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def apply(self, target, final_params, *, session):
        self.calls.append((target, dict(final_params), session))
        if self.error is not None:
            raise self.error
        return ResourceRef(resource_type=target.resource_type, resource_id=f"res-{len(self.calls)}")


def build_core(config: GatewayConfig | None = None, permissions=None, clock: ManualClock | None = None):
    clock = clock or ManualClock()
    cfg = config or make_config()
    keys = KeySpace()
    counters = InMemoryCounterStore(clock=clock)
    sessions = InMemorySessionStore(clock=clock)
    permissions = permissions or MutablePermissions()
    config_fn = lambda: cfg  # noqa: E731
    admission = AdmissionController(counters, config=config_fn, keys=keys)
    manager = ActionSessionManager(
        sessions,
        admission,
        permissions,
        config=config_fn,
        keys=keys,
        clock=clock,
    )
    return SimpleNamespace(
        clock=clock,
        config=cfg,
        keys=keys,
        counters=counters,
        sessions=sessions,
        permissions=permissions,
        admission=admission,
        manager=manager,
    )
