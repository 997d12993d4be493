"""Load workflow templates from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import List

import yaml

from ..contracts import WorkflowDefinition


def load_definitions(path: str | Path) -> List[WorkflowDefinition]:
    """Parse a YAML document holding a ``workflows`` list (or a bare list).

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        pydantic.ValidationError: If a template is structurally invalid.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("workflows", [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of workflows in {path}")
    return [WorkflowDefinition.model_validate(item) for item in data]
