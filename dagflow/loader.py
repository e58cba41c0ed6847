"""Load workflow definitions from YAML or JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from .config import EngineConfig, get_engine_config
from .engine.errors import GraphValidationError
from .engine.graph import StepGraph

logger = logging.getLogger(__name__)

YAML_SUFFIXES = {".yaml", ".yml"}
_POLICY_KEYS = ("failure_policy", "failurePolicy", "errorHandling")


def load_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a definition file into a dict.

    Raises:
        GraphValidationError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise GraphValidationError(f"Cannot read workflow definition {path}: {e}") from e

    try:
        if path.suffix.lower() in YAML_SUFFIXES:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise GraphValidationError(f"Cannot parse workflow definition {path}: {e}") from e

    if not isinstance(data, dict):
        raise GraphValidationError(f"Workflow definition {path} must be a mapping")
    return data


def load_definition(
    path: Union[str, Path], config: Optional[EngineConfig] = None
) -> StepGraph:
    """Load and validate a StepGraph from a YAML or JSON file.

    Definitions without a failure policy get the configured default.

    Args:
        path: Definition file (``.yaml``, ``.yml`` or ``.json``)
        config: Engine configuration (default: the global instance)

    Returns:
        The validated graph

    Raises:
        GraphValidationError: If the file is unreadable or the graph invalid
    """
    config = config or get_engine_config()
    data = load_document(path)
    if not any(key in data for key in _POLICY_KEYS):
        data["failure_policy"] = config.default_failure_policy

    try:
        graph = StepGraph.from_dict(data)
    except ValidationError as e:
        raise GraphValidationError(f"Invalid workflow definition {path}: {e}") from e

    logger.debug(f"Loaded workflow {graph.id} ({len(graph.steps)} steps) from {path}")
    return graph
