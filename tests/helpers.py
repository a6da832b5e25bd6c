"""Builders for project documents and a few probe primitives used by the tests."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cast import to_boolean, to_number
from project import parse_project
from runtime import Runtime, RuntimeConfig, ThreadStatus


def block(
    opcode: str,
    *,
    next: Optional[str] = None,
    parent: Optional[str] = None,
    inputs: Optional[Dict[str, Any]] = None,
    fields: Optional[Dict[str, Any]] = None,
    top: bool = False,
    shadow: bool = False,
    mutation: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "opcode": opcode,
        "next": next,
        "parent": parent,
        "inputs": inputs or {},
        "fields": fields or {},
        "shadow": shadow,
        "topLevel": top,
    }
    if mutation is not None:
        data["mutation"] = mutation
    return data


def num(value: Any) -> List[Any]:
    return [1, [4, str(value)]]


def text(value: Any) -> List[Any]:
    return [1, [10, str(value)]]


def ref(block_id: str) -> List[Any]:
    return [2, block_id]


def reporter(name: str, *, parent: Optional[str] = None, boolean: bool = False) -> Dict[str, Any]:
    opcode = "argument_reporter_boolean" if boolean else "argument_reporter_string_number"
    return block(opcode, parent=parent, fields={"VALUE": [name, None]})


def define(
    blocks: Dict[str, Any],
    proccode: str,
    names: Sequence[str] = (),
    ids: Sequence[str] = (),
    defaults: Sequence[Any] = (),
    *,
    body: Optional[str] = None,
    warp: bool = False,
) -> str:
    """Add a definition hat and its prototype to ``blocks``; returns the hat id."""
    key = re.sub(r"\W+", "_", proccode).strip("_")
    def_id = f"def_{key}"
    proto_id = f"proto_{key}"
    blocks[def_id] = block("procedures_definition", next=body, inputs={"custom_block": [1, proto_id]}, top=True)
    blocks[proto_id] = block(
        "procedures_prototype",
        parent=def_id,
        shadow=True,
        mutation={
            "tagName": "mutation",
            "children": [],
            "proccode": proccode,
            "argumentids": json.dumps(list(ids)),
            "argumentnames": json.dumps(list(names)),
            "argumentdefaults": json.dumps(list(defaults)),
            "warp": "true" if warp else "false",
        },
    )
    return def_id


def call(
    proccode: str,
    ids: Sequence[str] = (),
    inputs: Optional[Dict[str, Any]] = None,
    *,
    next: Optional[str] = None,
    parent: Optional[str] = None,
    top: bool = False,
) -> Dict[str, Any]:
    return block(
        "procedures_call",
        next=next,
        parent=parent,
        inputs=inputs,
        top=top,
        mutation={
            "tagName": "mutation",
            "children": [],
            "proccode": proccode,
            "argumentids": json.dumps(list(ids)),
            "warp": "false",
        },
    )


def record(value: List[Any], *, next: Optional[str] = None, parent: Optional[str] = None, top: bool = False) -> Dict[str, Any]:
    return block("test_record", next=next, parent=parent, inputs={"VALUE": value}, top=top)


def sprite(blocks: Dict[str, Any], *, name: str = "Sprite1", **extra: Any) -> Dict[str, Any]:
    data = {"isStage": False, "name": name, "id": name, "blocks": blocks}
    data.update(extra)
    return data


def stage(blocks: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"isStage": True, "name": "Stage", "id": "Stage", "blocks": blocks or {}}


def document(*targets: Dict[str, Any]) -> Dict[str, Any]:
    return {"targets": [stage(), *targets], "meta": {"semver": "3.0.0"}}


class Probe:
    """Test-only primitives: a recorder plus the branch and operator blocks scripts need."""

    def __init__(self) -> None:
        self.records: List[Any] = []

    def get_primitives(self) -> Dict[str, Any]:
        return {
            "test_record": self.record,
            "test_yield": self.yield_once,
            "control_if": self.control_if,
            "operator_gt": self.operator_gt,
            "operator_subtract": self.operator_subtract,
        }

    def record(self, args: Dict[str, Any], util: Any) -> None:
        self.records.append(args.get("VALUE"))

    def yield_once(self, args: Dict[str, Any], util: Any) -> None:
        frame = util.stack_frame
        if frame.executed:
            return
        frame.executed = True
        util.thread.status = ThreadStatus.YIELD

    def control_if(self, args: Dict[str, Any], util: Any) -> None:
        if not to_boolean(args.get("CONDITION")):
            return
        thread = util.thread
        branch = thread.block_container.get_branch(thread.peek_stack(), "SUBSTACK")
        if branch is not None:
            thread.push_stack(branch)

    def operator_gt(self, args: Dict[str, Any], util: Any) -> bool:
        return to_number(args.get("OPERAND1")) > to_number(args.get("OPERAND2"))

    def operator_subtract(self, args: Dict[str, Any], util: Any) -> Any:
        return to_number(args.get("OPERAND1")) - to_number(args.get("OPERAND2"))


def make_runtime(doc: Dict[str, Any], *, services: Any = None, **config: Any) -> Tuple[Runtime, Probe]:
    runtime = Runtime(parse_project(doc), config=RuntimeConfig(**config), services=services)
    probe = Probe()
    runtime.add_primitives(probe.get_primitives())
    return runtime, probe
