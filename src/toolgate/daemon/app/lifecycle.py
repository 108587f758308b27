"""toolgate daemon lifecycle: runtime wiring, startup, shutdown."""

import os
from dataclasses import dataclass
from functools import partial

from ..control import (
    ActionSessionManager,
    AdmissionController,
    DefaultPlanResolver,
    PermissionOracle,
    StaticPermissionOracle,
)
from ..gateway import Gateway
from ..platform import HttpPlatformClient
from ..stores import StoreBundle, build_stores
from ..utils.config_loader import ConfigLoader, config_loader
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


@dataclass
class Runtime:
    loader: ConfigLoader
    stores: StoreBundle
    admission: AdmissionController
    sessions: ActionSessionManager
    gateway: Gateway
    platform: HttpPlatformClient | None = None


_runtime: Runtime | None = None


def build_runtime(
    loader: ConfigLoader | None = None,
    stores: StoreBundle | None = None,
    platform: HttpPlatformClient | None = None,
    permissions: PermissionOracle | None = None,
) -> Runtime:
    """Wire stores, admission, sessions and the gateway.

    With a platform client, every catalog tool is forwarded to it: staged tools
    as prepare/commit actions, the rest as direct calls.
    """
    loader = loader or config_loader
    stores = stores or build_stores()
    config = loader.get

    admission = AdmissionController(
        stores.counters,
        config=config,
        plans=DefaultPlanResolver(config),
        keys=stores.keys,
    )
    oracle = permissions or platform or StaticPermissionOracle()
    sessions = ActionSessionManager(stores.sessions, admission, oracle, config=config, keys=stores.keys)
    gateway = Gateway(admission, sessions, config=config)

    if platform is not None:
        catalog = config().tools
        for name in catalog.staged_tools:
            gateway.register_action(name, platform, description="Two-phase platform action.")
        for name in [*catalog.write_tools, *catalog.bulk_tools]:
            gateway.register_tool(name, partial(_forward, platform, name), description="Platform tool.")

    logger.info(
        "Runtime ready",
        store=stores.backend,
        platform=platform.base_url if platform else None,
        tools=len(gateway.tools()),
    )
    return Runtime(
        loader=loader,
        stores=stores,
        admission=admission,
        sessions=sessions,
        gateway=gateway,
        platform=platform,
    )


def _forward(platform: HttpPlatformClient, name: str, identity, arguments: dict):
    return platform.call_tool(identity, name, arguments)


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(platform=HttpPlatformClient.from_env())
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


async def startup_event(app):
    """Called on FastAPI startup."""
    strict_startup = (os.getenv("TOOLGATE_STARTUP_STRICT", "0").strip() == "1")

    try:
        config_loader.load_config()
    except Exception as exc:
        logger.error("Config load failed on startup", error=str(exc), strict=strict_startup)
        if strict_startup:
            raise

    # A misconfigured store fails here rather than on the first call.
    runtime = get_runtime()
    app.state.runtime = runtime


async def shutdown_event():
    """Called on FastAPI shutdown."""
    global _runtime
    if _runtime is not None and _runtime.platform is not None:
        _runtime.platform.close()
    _runtime = None
