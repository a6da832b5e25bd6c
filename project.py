from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union


class VMError(Exception):
    """Base class for block VM errors."""


class ProjectError(VMError):
    """Raised when a project document cannot be loaded."""


# Scratch 3 serialized input shadow kinds.
INPUT_SAME_BLOCK_SHADOW = 1
INPUT_BLOCK_NO_SHADOW = 2
INPUT_DIFF_BLOCK_SHADOW = 3

# Scratch 3 compressed primitive codes ([code, value, ...]).
MATH_NUM_PRIMITIVE = 4
POSITIVE_NUM_PRIMITIVE = 5
WHOLE_NUM_PRIMITIVE = 6
INTEGER_NUM_PRIMITIVE = 7
ANGLE_NUM_PRIMITIVE = 8
COLOR_PICKER_PRIMITIVE = 9
TEXT_PRIMITIVE = 10
BROADCAST_PRIMITIVE = 11
VAR_PRIMITIVE = 12
LIST_PRIMITIVE = 13

NUMERIC_PRIMITIVES = {
    MATH_NUM_PRIMITIVE,
    POSITIVE_NUM_PRIMITIVE,
    WHOLE_NUM_PRIMITIVE,
    INTEGER_NUM_PRIMITIVE,
    ANGLE_NUM_PRIMITIVE,
}

# Shadow opcodes whose value is carried by a single field.
LITERAL_OPCODES: Dict[str, str] = {
    "math_number": "NUM",
    "math_positive_number": "NUM",
    "math_whole_number": "NUM",
    "math_integer": "NUM",
    "math_angle": "NUM",
    "text": "TEXT",
    "colour_picker": "COLOUR",
}

_ARG_PLACEHOLDER = re.compile(r"(?<!\\)%([snbc])")


@dataclass
class BlockField:
    name: str
    value: Any
    id: Optional[str] = None


@dataclass
class BlockInput:
    name: str
    block: Optional[str] = None
    shadow: Optional[str] = None
    # Literal carried inline by a compressed primitive; used when ``block`` is None.
    value: Any = None


@dataclass
class Block:
    id: str
    opcode: str
    next: Optional[str] = None
    parent: Optional[str] = None
    inputs: Dict[str, BlockInput] = field(default_factory=dict)
    fields: Dict[str, BlockField] = field(default_factory=dict)
    shadow: bool = False
    top_level: bool = False
    mutation: Optional[Dict[str, Any]] = None

    def field_value(self, name: str, default: Any = None) -> Any:
        f = self.fields.get(name)
        return default if f is None else f.value

    def input_block(self, name: str) -> Optional[str]:
        inp = self.inputs.get(name)
        return None if inp is None else inp.block


@dataclass(frozen=True)
class ProcedureSignature:
    proccode: str
    names: Tuple[str, ...]
    ids: Tuple[str, ...]
    defaults: Tuple[Any, ...]
    warp: bool = False

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        # Unpacks like the (names, ids, defaults) triple hosts hand around.
        yield self.names
        yield self.ids
        yield self.defaults


@dataclass(frozen=True)
class BranchDescriptor:
    entry: Optional[Union[str, int]]
    caller_id: Optional[str]


def argument_kinds(proccode: str) -> List[str]:
    """Placeholder letters of a procedure code, in parameter order.

    ``%s``/``%n``/``%b`` are value parameters, ``%c`` a command (branch) parameter.
    """
    return _ARG_PLACEHOLDER.findall(proccode or "")


def _json_list(raw: Any) -> Optional[List[Any]]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return None
        return decoded if isinstance(decoded, list) else None
    return None


def _is_true(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).lower() == "true"


class BlockContainer:
    def __init__(self, blocks: Optional[Dict[str, Block]] = None) -> None:
        self._blocks: Dict[str, Block] = dict(blocks or {})
        # Cache both hits and misses; keys are procedure codes.
        self._signature_cache: Dict[str, Optional[ProcedureSignature]] = {}
        self._definition_cache: Dict[str, Optional[str]] = {}

    def __contains__(self, block_id: object) -> bool:
        return block_id in self._blocks

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks.values())

    def _reset_cache(self) -> None:
        self._signature_cache.clear()
        self._definition_cache.clear()

    def create_block(self, block: Block) -> None:
        if block.id in self._blocks:
            raise ProjectError(f"Duplicate block id '{block.id}'")
        self._blocks[block.id] = block
        self._reset_cache()

    def delete_block(self, block_id: str) -> None:
        if self._blocks.pop(block_id, None) is not None:
            self._reset_cache()

    def get_block(self, block_id: Optional[str]) -> Optional[Block]:
        if block_id is None:
            return None
        return self._blocks.get(block_id)

    def get_next_block(self, block_id: Optional[str]) -> Optional[str]:
        block = self.get_block(block_id)
        return None if block is None else block.next

    def get_branch(self, block_id: Optional[str], entry: Union[str, int, None]) -> Optional[str]:
        block = self.get_block(block_id)
        if block is None or entry is None:
            return None
        if isinstance(entry, int) and not isinstance(entry, bool):
            name = "SUBSTACK" if entry <= 1 else f"SUBSTACK{entry}"
        else:
            name = str(entry)
        return block.input_block(name)

    def get_scripts(self) -> List[str]:
        return [b.id for b in self._blocks.values() if b.top_level and not b.shadow]

    def get_prototype(self, proccode: str) -> Optional[Block]:
        for block in self._blocks.values():
            if block.opcode != "procedures_prototype" or not block.mutation:
                continue
            if block.mutation.get("proccode") == proccode:
                return block
        return None

    def get_procedure_definition(self, proccode: str) -> Optional[str]:
        if proccode in self._definition_cache:
            return self._definition_cache[proccode]
        found: Optional[str] = None
        for block in self._blocks.values():
            if block.opcode != "procedures_definition":
                continue
            prototype = self.get_block(block.input_block("custom_block"))
            if prototype is not None and prototype.mutation and prototype.mutation.get("proccode") == proccode:
                found = block.id
                break
        self._definition_cache[proccode] = found
        return found

    def get_procedure_param_names_ids_and_defaults(self, proccode: str) -> Optional[ProcedureSignature]:
        if proccode in self._signature_cache:
            return self._signature_cache[proccode]
        signature: Optional[ProcedureSignature] = None
        prototype = self.get_prototype(proccode)
        if prototype is not None:
            mutation = prototype.mutation or {}
            names = _json_list(mutation.get("argumentnames"))
            ids = _json_list(mutation.get("argumentids"))
            defaults = _json_list(mutation.get("argumentdefaults"))
            # Malformed mutations resolve like a missing procedure.
            if names is not None and ids is not None and defaults is not None and len(names) == len(ids):
                if len(defaults) < len(ids):
                    defaults = list(defaults) + [""] * (len(ids) - len(defaults))
                signature = ProcedureSignature(
                    proccode=proccode,
                    names=tuple(str(n) for n in names),
                    ids=tuple(str(i) for i in ids),
                    defaults=tuple(defaults[: len(ids)]),
                    warp=_is_true(mutation.get("warp", False)),
                )
        self._signature_cache[proccode] = signature
        return signature

    def call_argument_ids(self, block: Block) -> List[str]:
        ids = _json_list((block.mutation or {}).get("argumentids"))
        return [str(i) for i in ids or []]


@dataclass
class Costume:
    name: str
    size: Tuple[float, float] = (0.0, 0.0)


@dataclass
class Target:
    id: str
    name: str
    blocks: BlockContainer = field(default_factory=BlockContainer)
    is_stage: bool = False
    x: float = 0.0
    y: float = 0.0
    direction: float = 90.0
    size: float = 100.0
    stretch: Tuple[float, float] = (100.0, 100.0)
    costumes: List[Costume] = field(default_factory=list)
    current_costume: int = 0

    def get_costumes(self) -> List[Costume]:
        return self.costumes

    def set_xy(self, x: float, y: float) -> None:
        if self.is_stage:
            return
        self.x = float(x)
        self.y = float(y)

    def set_direction(self, direction: float) -> None:
        if self.is_stage:
            return
        # Wrap into (-180, 180].
        d = float(direction) % 360.0
        if d > 180.0:
            d -= 360.0
        if d == -180.0:
            d = 180.0
        self.direction = d


@dataclass
class Project:
    targets: List[Target] = field(default_factory=list)

    def get_target_by_id(self, target_id: str) -> Optional[Target]:
        for target in self.targets:
            if target.id == target_id:
                return target
        return None


# ---- Loading ----


def _parse_input(name: str, raw: Any, block_id: str) -> BlockInput:
    if not isinstance(raw, list) or not raw:
        raise ProjectError(f"Block '{block_id}' input '{name}' must be a non-empty array")
    inp = BlockInput(name=name)
    value = raw[1] if len(raw) > 1 else None
    obscured = raw[2] if len(raw) > 2 else None
    if isinstance(value, list):
        inp.value = _primitive_value(value, block_id, name)
    else:
        inp.block = value
    if isinstance(obscured, list):
        inp.value = _primitive_value(obscured, block_id, name)
    elif isinstance(obscured, str):
        inp.shadow = obscured
    if raw[0] == INPUT_SAME_BLOCK_SHADOW and isinstance(value, str):
        inp.shadow = value
    return inp


def _primitive_value(raw: List[Any], block_id: str, input_name: str) -> Any:
    if len(raw) < 2:
        raise ProjectError(f"Block '{block_id}' input '{input_name}' has a truncated primitive")
    code, value = raw[0], raw[1]
    if code in NUMERIC_PRIMITIVES or code in (COLOR_PICKER_PRIMITIVE, TEXT_PRIMITIVE):
        return value
    if code in (BROADCAST_PRIMITIVE, VAR_PRIMITIVE, LIST_PRIMITIVE):
        return value
    raise ProjectError(f"Block '{block_id}' input '{input_name}' has unknown primitive code {code!r}")


def parse_block(block_id: str, data: Dict[str, Any]) -> Block:
    if not isinstance(data, dict):
        raise ProjectError(f"Block '{block_id}' must be an object")
    opcode = data.get("opcode")
    if not opcode or not isinstance(opcode, str):
        raise ProjectError(f"Block '{block_id}' is missing an opcode")
    inputs = {name: _parse_input(name, raw, block_id) for name, raw in (data.get("inputs") or {}).items()}
    fields: Dict[str, BlockField] = {}
    for name, raw in (data.get("fields") or {}).items():
        if isinstance(raw, list):
            fields[name] = BlockField(name=name, value=raw[0] if raw else None, id=raw[1] if len(raw) > 1 else None)
        else:
            fields[name] = BlockField(name=name, value=raw)
    mutation = data.get("mutation")
    if mutation is not None and not isinstance(mutation, dict):
        raise ProjectError(f"Block '{block_id}' mutation must be an object")
    return Block(
        id=block_id,
        opcode=opcode,
        next=data.get("next"),
        parent=data.get("parent"),
        inputs=inputs,
        fields=fields,
        shadow=bool(data.get("shadow", False)),
        top_level=bool(data.get("topLevel", data.get("parent") is None)),
        mutation=dict(mutation) if mutation is not None else None,
    )


def _pair(raw: Any, default: Tuple[float, float]) -> Tuple[float, float]:
    if isinstance(raw, (list, tuple)) and len(raw) >= 2:
        return (float(raw[0]), float(raw[1]))
    return default


def parse_target(data: Dict[str, Any]) -> Target:
    if not isinstance(data, dict):
        raise ProjectError("Target entries must be objects")
    name = data.get("name")
    if not name:
        raise ProjectError("Target is missing a name")
    blocks = BlockContainer()
    for block_id, raw in (data.get("blocks") or {}).items():
        # Top-level variable reporters are serialized as bare arrays; they carry no behavior here.
        if isinstance(raw, list):
            continue
        blocks.create_block(parse_block(block_id, raw))
    costumes = [
        Costume(name=str(c.get("name", "")), size=_pair(c.get("size"), (0.0, 0.0)))
        for c in (data.get("costumes") or [])
    ]
    return Target(
        id=str(data.get("id") or name),
        name=str(name),
        blocks=blocks,
        is_stage=bool(data.get("isStage", False)),
        x=float(data.get("x", 0)),
        y=float(data.get("y", 0)),
        direction=float(data.get("direction", 90)),
        size=float(data.get("size", 100)),
        stretch=_pair(data.get("stretch"), (100.0, 100.0)),
        costumes=costumes,
        current_costume=int(data.get("currentCostume", 0)),
    )


def parse_project(data: Any) -> Project:
    if not isinstance(data, dict):
        raise ProjectError("Project document must be an object")
    raw_targets = data.get("targets")
    if not isinstance(raw_targets, list):
        raise ProjectError("Project document must contain a 'targets' array")
    project = Project(targets=[parse_target(t) for t in raw_targets])
    seen: set = set()
    for target in project.targets:
        if target.id in seen:
            raise ProjectError(f"Duplicate target id '{target.id}'")
        seen.add(target.id)
    return project


def loads_project(text: str) -> Project:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ProjectError(f"Invalid project JSON: {exc}") from exc
    return parse_project(data)


def load_project(path: str) -> Project:
    with open(path, "r", encoding="utf-8") as handle:
        return loads_project(handle.read())
