"""Value coercions matching the block runtime's loose typing."""

from __future__ import annotations

import math
from typing import Any


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return 0
        return value
    if value is None:
        return 0
    text = str(value).strip()
    if text == "":
        return 0
    try:
        if text.lower().startswith(("0x", "-0x", "+0x")):
            return int(text, 16)
        n = float(text)
    except ValueError:
        return 0
    if math.isnan(n):
        return 0
    if n.is_integer() and "." not in text and "e" not in text.lower() and not math.isinf(n):
        return int(n)
    return n


def format_number(n: float) -> str:
    if isinstance(n, bool):
        return "true" if n else "false"
    if isinstance(n, int):
        return str(n)
    if math.isnan(n):
        return "NaN"
    if math.isinf(n):
        return "Infinity" if n > 0 else "-Infinity"
    if n.is_integer() and abs(n) < 1e21:
        return str(int(n))
    return repr(n)


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)


def to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() not in ("", "0", "false")
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    return bool(value)
