"""blockvm extension: boxed array values.

Arrays travel between blocks as a single ``ArrayType`` value instead of being
flattened to text, so they survive procedure arguments and variables intact.
"""

from __future__ import annotations

import json
import math
from typing import Any, List, Optional

from cast import to_string
from extensions import BlockShape, BlockType, ExtensionAPI


BLOCKVM_EXTENSION_NAME = "jwArray"
BLOCKVM_EXTENSION_API_VERSION = 1

PREVIEW_ITEMS = 50


def format_number(x: float) -> str:
    if x >= 1e6:
        mantissa, exponent = f"{x:.4e}".split("e")
        exp = int(exponent)
        return f"{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp)}"
    x = math.floor(x * 1000) / 1000
    decimals = to_string(x).split(".")
    places = min(3, len(decimals[1]) if len(decimals) > 1 else 0)
    return f"{x:.{places}f}"


class ArrayType:
    custom_id = "jwArray"

    def __init__(self, array: Optional[List[Any]] = None) -> None:
        self.array: List[Any] = [] if array is None else array

    @staticmethod
    def display(x: Any) -> str:
        try:
            if isinstance(x, (bool, str)):
                return to_string(x)
            if isinstance(x, (int, float)):
                return format_number(x)
            if x is None:
                return "Unknown"
            handler = getattr(x, "jw_array_handler", None)
            if callable(handler):
                return handler()
            return "Object"
        except (TypeError, ValueError, OverflowError):
            return "Unknown"

    def jw_array_handler(self) -> str:
        return f"Array[{len(self.array)}]"

    def __len__(self) -> int:
        return len(self.array)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ArrayType) and other.array == self.array

    def __repr__(self) -> str:
        return f"ArrayType({self.array!r})"

    def __str__(self) -> str:
        return json.dumps(self.array, default=_json_default)

    def to_reporter_content(self) -> str:
        preview = ", ".join(ArrayType.display(v) for v in self.array[:PREVIEW_ITEMS])
        return f"[{preview}]\nLength: {len(self.array)}"


def _json_default(value: Any) -> Any:
    if isinstance(value, ArrayType):
        return value.array
    return str(value)


ARRAY_BLOCK = {
    "block_type": BlockType.REPORTER,
    "block_shape": BlockShape.SQUARE,
    "force_output_type": "Array",
    "disable_monitor": True,
}

ARRAY_ARGUMENT = {
    "shape": BlockShape.SQUARE,
    "check": ["Array"],
}


def _blank(args, util) -> ArrayType:
    return ArrayType()


def _test(args, util) -> ArrayType:
    return ArrayType(list(range(1, 21)))


def blockvm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="Arrays", version="0.1.0", color1="#ff513d")
    ext.register_type("Array", ArrayType, to_str=ArrayType.to_reporter_content, block=ARRAY_BLOCK, argument=ARRAY_ARGUMENT)
    ext.register_block("blank", _blank, text="blank array", **ARRAY_BLOCK)
    ext.register_block("test", _test, text="test array", **ARRAY_BLOCK)
