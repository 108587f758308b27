"""toolgate daemon utilities: logging, config, deterministic hashing.

Individual modules are imported directly by consumers, e.g.:
    from ..utils.logging_config import StructuredLogger
    from ..utils.config_loader import config_loader
"""

from .logging_config import setup_logging, StructuredLogger, JSONFormatter
from .config_loader import (
    config_loader,
    build_default_config,
    ConfigLoader,
    GatewayConfig,
    PlanPolicy,
    WindowPolicy,
)
from .deterministic import canonical_json, fingerprint, normalize, payload_digest

__all__ = [
    "setup_logging", "StructuredLogger", "JSONFormatter",
    "config_loader", "build_default_config", "ConfigLoader", "GatewayConfig", "PlanPolicy", "WindowPolicy",
    "canonical_json", "fingerprint", "normalize", "payload_digest",
]
