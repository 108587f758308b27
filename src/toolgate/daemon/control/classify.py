"""Tool name and stage to operation class."""

from __future__ import annotations

from ..utils.config_loader import ToolCatalog
from .types import OperationClass

STAGE_PREPARE = "prepare"
STAGE_COMMIT = "commit"


def classify(tool_name: str, catalog: ToolCatalog, stage: str | None = None) -> OperationClass:
    """Operation class for a tool call.

    Staged tools are reads on prepare and writes on commit, since only commit
    produces the durable effect. Unknown tools are reads.
    """
    if tool_name in catalog.bulk_tools:
        return OperationClass.BULK
    if tool_name in catalog.staged_tools:
        return OperationClass.WRITE if stage == STAGE_COMMIT else OperationClass.READ
    if tool_name in catalog.write_tools:
        return OperationClass.WRITE
    return OperationClass.READ
