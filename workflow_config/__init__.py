"""
workflow_config -- Workflow definition loading and validation.

Responsibility:
    Turns YAML workflow documents into validated WorkflowDefinition
    objects plus engine-wide EngineSettings.  ``load_workflow_config`` is
    the single public entry point for file-based configuration; code-built
    definitions go through ``validate_definition`` / ``ensure_valid``.

Architecture position:
    Config layer.  Imports workflow_engines (guard syntax, strategy
    registry) and workflow_kernel.  MUST NOT import workflow_services.

Invariants enforced:
    - No definition leaves this package without passing validation.
    - Deterministic parsing: the same document always yields the same
      definitions and checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``ValueError`` / ``KeyError`` -- malformed document.
    - ``InvalidDefinitionError`` -- structurally invalid definition.

Audit relevance:
    Every successful load emits a ``workflow_config_loaded`` log entry
    with the path, checksum and definition ids.
"""

from __future__ import annotations

from pathlib import Path

from workflow_config.loader import (
    WorkflowConfig,
    compute_checksum,
    load_yaml_file,
    parse_definition,
    parse_duration,
    parse_workflow_config,
)
from workflow_config.validator import (
    DefinitionValidationResult,
    ensure_valid,
    validate_definition,
)
from workflow_engines.approval import ApprovalEngine
from workflow_kernel.logging_config import get_logger

_logger = get_logger("config")

# Bundled workflow definitions
DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def load_workflow_config(
    path: str | Path,
    approval_engine: ApprovalEngine | None = None,
) -> WorkflowConfig:
    """Load, parse and validate one YAML workflow document."""
    path = Path(path)
    config = parse_workflow_config(load_yaml_file(path), approval_engine)
    _logger.info(
        "workflow_config_loaded",
        extra={
            "path": str(path),
            "checksum": config.checksum,
            "definition_ids": [d.id for d in config.definitions],
        },
    )
    return config


def load_default_config(name: str = "purchase_order") -> WorkflowConfig:
    """Load a bundled document from ``workflow_config/sets``."""
    return load_workflow_config(DEFAULT_CONFIG_DIR / f"{name}.yaml")


__all__ = [
    "DEFAULT_CONFIG_DIR",
    "DefinitionValidationResult",
    "WorkflowConfig",
    "compute_checksum",
    "ensure_valid",
    "load_default_config",
    "load_workflow_config",
    "load_yaml_file",
    "parse_definition",
    "parse_duration",
    "parse_workflow_config",
    "validate_definition",
]
