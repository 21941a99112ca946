"""
Utility functions for gqlgate.

Includes:
- Upload size limit parsing ("20mb" -> bytes)
- Compact JSON encoding used by every response framing
"""

from __future__ import annotations

import json
import math
from typing import Any

from .errors import ConfigurationError


# =============================================================================
# Size limits
# =============================================================================

_UNIT_EXPONENTS = {
    "kb": 1,
    "mb": 2,
    "gb": 3,
}


def parse_size_limit(value: str) -> int:
    """
    Convert a human readable size into a byte count.

    Examples:
        "20mb" -> 20971520
        "1gb"  -> 1073741824
        "5KB"  -> 5120

    Raises:
        ConfigurationError: If the unit is not kb/mb/gb or the number is invalid
    """
    text = value.strip()
    unit = text[-2:].lower()
    number = text[:-2].strip()

    exponent = _UNIT_EXPONENTS.get(unit)
    if exponent is None:
        raise ConfigurationError(
            f"Invalid size '{value}': unit must be one of {', '.join(_UNIT_EXPONENTS)}"
        )

    try:
        amount = float(number)
    except ValueError:
        raise ConfigurationError(f"Invalid size '{value}': '{number}' is not a number")

    if not math.isfinite(amount) or amount < 0:
        raise ConfigurationError(f"Invalid size '{value}': must be a non-negative number")

    return int(amount * 1024 ** exponent)


# =============================================================================
# JSON
# =============================================================================

def dump_json(payload: Any) -> str:
    """Serialize a payload without whitespace, keeping non-ASCII characters."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def dump_json_bytes(payload: Any) -> bytes:
    """Serialize a payload to UTF-8 bytes (see dump_json)."""
    return dump_json(payload).encode("utf-8")
