"""Control-plane: admission control and prepare/commit action sessions."""

from .admission import AdmissionController
from .classify import STAGE_COMMIT, STAGE_PREPARE, classify
from .collaborators import (
    DefaultPlanResolver,
    EffectExecutor,
    PermissionOracle,
    PlanResolver,
    StaticPermissionOracle,
)
from .errors import EffectError, ErrorCode, ToolError, admission_error, error_message
from .sessions import ActionSessionManager, ActionSpec, default_preview
from .types import (
    AccessMode,
    ActionSession,
    AdmissionReason,
    AdmissionResult,
    CommitResult,
    Identity,
    OperationClass,
    PrepareResult,
    ResourceRef,
    TargetDescriptor,
)

__all__ = [
    "AdmissionController",
    "classify",
    "STAGE_PREPARE",
    "STAGE_COMMIT",
    "PlanResolver",
    "PermissionOracle",
    "EffectExecutor",
    "DefaultPlanResolver",
    "StaticPermissionOracle",
    "EffectError",
    "ErrorCode",
    "ToolError",
    "admission_error",
    "error_message",
    "ActionSessionManager",
    "ActionSpec",
    "default_preview",
    "AccessMode",
    "ActionSession",
    "AdmissionReason",
    "AdmissionResult",
    "CommitResult",
    "Identity",
    "OperationClass",
    "PrepareResult",
    "ResourceRef",
    "TargetDescriptor",
]
