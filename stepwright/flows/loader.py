"""Load raw flow specifications from disk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

import yaml


def load_flow(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a flow specification from a YAML or JSON file.

    The returned mapping is unvalidated; pass it to ``validate``.
    """
    flow_path = Path(path)
    text = flow_path.read_text()
    if flow_path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"Flow file {flow_path} must contain a mapping at the top level")
    return data
