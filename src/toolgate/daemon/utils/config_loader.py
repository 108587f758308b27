import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_CABINET = "cabinet"
PLAN_ENTERPRISE = "enterprise"

# --- Schema Models ---


class WindowPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    sustained_limit: int = Field(..., ge=0)
    sustained_window_seconds: int = Field(60, ge=1)
    burst_limit: int = Field(..., ge=0)
    burst_window_seconds: int = Field(5, ge=1)


class PlanPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    read: WindowPolicy
    write: WindowPolicy
    bulk_calls_per_hour: int = Field(0, ge=0)
    bulk_max_items_per_call: int = Field(0, ge=0)
    chain_depth_limit: int = Field(5, ge=0)
    export_per_day: int = Field(0, ge=0)

    def window_for(self, operation_class: str) -> WindowPolicy:
        if operation_class == "write":
            return self.write
        return self.read


class GlobalPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int = Field(2000, ge=1)
    window_seconds: int = Field(300, ge=1)


class SessionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    ttl_seconds: int = Field(300, ge=1, le=86_400)


class ToolCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    write_tools: List[str] = Field(default_factory=list)
    bulk_tools: List[str] = Field(default_factory=list)
    # Tools whose prepare leg is a read and whose commit leg is a write.
    staged_tools: List[str] = Field(default_factory=list)


class CredentialConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity_id: str = Field(..., min_length=1)
    plan: Optional[str] = None
    is_admin: bool = False
    mission_token: bool = False
    scoped: bool = True


class GatewayConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: int = Field(1, ge=1, le=1)
    default_plan: str = PLAN_PRO
    plans: Dict[str, PlanPolicy]
    global_limit: GlobalPolicy = Field(default_factory=GlobalPolicy)
    bulk_item_delay_ms: int = Field(500, ge=0)
    sessions: SessionPolicy = Field(default_factory=SessionPolicy)
    tools: ToolCatalog = Field(default_factory=ToolCatalog)
    # Keyed by SHA-256 hex of the raw bearer token.
    credentials: Dict[str, CredentialConfig] = Field(default_factory=dict)
    fail_open: bool = False

    @model_validator(mode="after")
    def validate_default_plan(self):
        if self.default_plan not in self.plans:
            raise ValueError(f"Default plan '{self.default_plan}' not found in plans")
        for digest, cred in self.credentials.items():
            if cred.plan and cred.plan not in self.plans:
                raise ValueError(f"Credential for '{cred.identity_id}' references unknown plan '{cred.plan}'")
            if len(digest) != 64:
                raise ValueError("Credential keys must be SHA-256 hex digests")
        return self

    def plan_policy(self, plan: str) -> PlanPolicy:
        return self.plans.get(plan) or self.plans.get(PLAN_PRO) or self.plans[self.default_plan]


def _window(sustained: int, burst: int) -> dict:
    return {
        "sustained_limit": sustained,
        "sustained_window_seconds": 60,
        "burst_limit": burst,
        "burst_window_seconds": 5,
    }


DEFAULT_CONFIG: dict = {
    "version": 1,
    "default_plan": PLAN_PRO,
    "plans": {
        PLAN_FREE: {
            "read": _window(60, 10),
            "write": _window(10, 3),
            "bulk_calls_per_hour": 0,
            "bulk_max_items_per_call": 0,
            "chain_depth_limit": 3,
            "export_per_day": 0,
        },
        PLAN_PRO: {
            "read": _window(120, 15),
            "write": _window(30, 5),
            "bulk_calls_per_hour": 5,
            "bulk_max_items_per_call": 10,
            "chain_depth_limit": 5,
            "export_per_day": 5,
        },
        PLAN_CABINET: {
            "read": _window(300, 30),
            "write": _window(60, 10),
            "bulk_calls_per_hour": 20,
            "bulk_max_items_per_call": 50,
            "chain_depth_limit": 10,
            "export_per_day": 20,
        },
        PLAN_ENTERPRISE: {
            "read": _window(600, 50),
            "write": _window(120, 20),
            "bulk_calls_per_hour": 100,
            "bulk_max_items_per_call": 200,
            "chain_depth_limit": 20,
            "export_per_day": 100,
        },
    },
    "global_limit": {"limit": 2000, "window_seconds": 300},
    "bulk_item_delay_ms": 500,
    "sessions": {"ttl_seconds": 300},
    "tools": {
        "write_tools": [
            "create_publication",
            "edit_publication",
            "append_to_publication",
            "add_comment",
            "create_review",
            "move_to_step",
            "rate_publication",
            "subscribe_space",
            "duplicate_publication",
            "manage_team",
        ],
        "bulk_tools": [
            "bulk_apply_tool",
            "bulk_move_step",
            "bulk_tag",
            "export_bundle",
        ],
        "staged_tools": [
            "apply_tool",
            "activity_post",
            "activity_comment",
        ],
    },
}


def build_default_config() -> GatewayConfig:
    return GatewayConfig(**DEFAULT_CONFIG)


# --- Config Loader (Atomic Reload) ---


class ConfigLoader:
    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or Path(os.getenv("TOOLGATE_CONFIG_DIR", "/etc/toolgate/config"))
        self.config_file = self.config_dir / "gateway.yaml"
        self.config: Optional[GatewayConfig] = None

    def load_config(self) -> GatewayConfig:
        """
        Loads and validates configuration from gateway.yaml.
        ATOMIC: On failure, previous config is preserved.
        A missing file on first load falls back to the built-in plan matrix.
        Raises ValueError if invalid and no previous config exists.
        """
        if not self.config_file.exists():
            if self.config is None:
                logger.warning("Config file not found; using built-in plan matrix", path=str(self.config_file))
                self.config = build_default_config()
                return self.config
            logger.critical("Config file not found", path=str(self.config_file))
            raise FileNotFoundError(f"Config file not found at {self.config_file}")

        try:
            with open(self.config_file, "r") as f:
                raw_data = yaml.safe_load(f) or {}

            logger.info("Loading configuration", path=str(self.config_file))

            # self.config is only replaced once validation passes
            new_config = GatewayConfig(**raw_data)

            self.config = new_config

            logger.info(
                "Configuration loaded successfully",
                version=self.config.version,
                plans=sorted(self.config.plans.keys()),
                credentials=len(self.config.credentials),
            )
            return self.config

        except Exception as e:
            logger.error("Configuration validation failed", error=str(e))
            if self.config is not None:
                logger.warning("Keeping previous valid configuration")
                raise ValueError(f"Invalid configuration (previous config retained): {e}")
            else:
                logger.critical("No previous configuration to fall back to")
                raise ValueError(f"Invalid configuration (no fallback): {e}")

    def get(self) -> GatewayConfig:
        if not self.config:
            self.load_config()
        return self.config

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "ConfigLoader":
        loader = cls()
        loader.config = config
        return loader


config_loader = ConfigLoader()
