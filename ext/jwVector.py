"""blockvm extension: 2-D vector values (used by the physics extension)."""

from __future__ import annotations

from typing import Any

import numpy as np

from cast import to_number
from extensions import BlockShape, BlockType, ExtensionAPI


BLOCKVM_EXTENSION_NAME = "jwVector"
BLOCKVM_EXTENSION_API_VERSION = 1


class VectorType:
    custom_id = "jwVector"

    def __init__(self, x: float = 0.0, y: float = 0.0) -> None:
        self.x = float(x)
        self.y = float(y)

    @staticmethod
    def to_vector(value: Any) -> "VectorType":
        if isinstance(value, VectorType):
            return value
        if isinstance(value, str):
            parts = value.split(",")
            if len(parts) == 2:
                return VectorType(to_number(parts[0]), to_number(parts[1]))
            return VectorType()
        if isinstance(value, (list, tuple, np.ndarray)) and len(value) == 2:
            return VectorType(to_number(value[0]), to_number(value[1]))
        return VectorType()

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=float)

    @classmethod
    def from_array(cls, arr: Any) -> "VectorType":
        return cls(float(arr[0]), float(arr[1]))

    def jw_array_handler(self) -> str:
        return f"Vector<{_short(self.x)}, {_short(self.y)}>"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, VectorType) and other.x == self.x and other.y == self.y

    def __repr__(self) -> str:
        return f"VectorType({self.x!r}, {self.y!r})"

    def __str__(self) -> str:
        return f"{_short(self.x)},{_short(self.y)}"


def _short(n: float) -> str:
    return str(int(n)) if float(n).is_integer() else f"{n:.3f}".rstrip("0").rstrip(".")


VECTOR_BLOCK = {
    "block_type": BlockType.REPORTER,
    "block_shape": BlockShape.SQUARE,
    "force_output_type": "Vector",
    "disable_monitor": True,
}

VECTOR_ARGUMENT = {
    "shape": BlockShape.SQUARE,
    "check": ["Vector"],
}


def _new_vector(args, util) -> VectorType:
    return VectorType(to_number(args.get("X")), to_number(args.get("Y")))


def _vector_x(args, util) -> float:
    return VectorType.to_vector(args.get("VECTOR")).x


def _vector_y(args, util) -> float:
    return VectorType.to_vector(args.get("VECTOR")).y


def blockvm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="Vectors", version="0.1.0", color1="#5b8bff")
    ext.register_type("Vector", VectorType, to_str=VectorType.jw_array_handler, block=VECTOR_BLOCK, argument=VECTOR_ARGUMENT)
    ext.register_block(
        "newVector",
        _new_vector,
        text="vector [X] [Y]",
        arguments={"X": {"type": "number", "default_value": 0}, "Y": {"type": "number", "default_value": 0}},
        **VECTOR_BLOCK,
    )
    ext.register_block("vectorX", _vector_x, text="x of [VECTOR]", block_type=BlockType.REPORTER, arguments={"VECTOR": VECTOR_ARGUMENT})
    ext.register_block("vectorY", _vector_y, text="y of [VECTOR]", block_type=BlockType.REPORTER, arguments={"VECTOR": VECTOR_ARGUMENT})
