from __future__ import annotations

import json
from typing import Any, Dict

from .errors import OutputParseError


def flatten_outputs(raw: str) -> Dict[str, Any]:
    """
    Turn ``terraform output -json`` into a plain key -> value map.

      {"bucket": {"value": "b-1", "type": "string", "sensitive": false}}
        -> {"bucket": "b-1"}

    The result depends only on ``raw``.
    """
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise OutputParseError(f"Failed to parse Terraform outputs: {exc}") from exc

    if not isinstance(parsed, dict):
        raise OutputParseError(
            f"Failed to parse Terraform outputs: expected an object, got {type(parsed).__name__}"
        )

    flat: Dict[str, Any] = {}
    for key in sorted(parsed):
        entry = parsed[key]
        if isinstance(entry, dict) and "value" in entry:
            flat[str(key)] = entry["value"]
        else:
            flat[str(key)] = entry
    return flat
