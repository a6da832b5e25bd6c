from __future__ import annotations

import itertools
import json
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from extensions import RuntimeServices, build_default_services, ExtensionError
from project import (
    LITERAL_OPCODES,
    Block,
    BlockContainer,
    BranchDescriptor,
    ProcedureSignature,
    Project,
    Target,
    VMError,
    argument_kinds,
)


PROJECT_START = "PROJECT_START"
PROJECT_STOP = "PROJECT_STOP"

# Input names that hold a statement stack rather than a reporter.
BRANCH_INPUT = re.compile(r"SUBSTACK\d*")
# Opcodes that transfer control and so never produce a value.
STATEMENT_ONLY_OPCODES = frozenset({"procedures_call", "procedures_definition", "procedures_prototype"})


class VMRuntimeError(VMError):
    """Raised for faults while stepping threads."""

    def __init__(
        self,
        message: str,
        *,
        block_id: Optional[str] = None,
        opcode: Optional[str] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.block_id = block_id
        self.opcode = opcode
        self.rule = rule
        self.step_index: Optional[int] = None
        self.thread: Optional["Thread"] = None


class ThreadStatus(IntEnum):
    RUNNING = 0
    PROMISE_WAIT = 1
    YIELD = 2
    DONE = 3


class ExecutionMode(Enum):
    DIRECT = "direct"
    COMPILED = "compiled"


@dataclass
class StackFrame:
    frame_id: str
    executed: bool = False
    params: Optional[Dict[str, Any]] = None
    op: Optional[Block] = None
    warp_mode: bool = False
    target: Optional[Target] = None
    # Set on the frame of a procedure definition; used to detect recursion.
    procedure: Optional[str] = None

    def reuse(self) -> None:
        self.executed = False
        self.params = None
        self.op = None


# ---- Active-block lookup ----


class StackPeek:
    def current_block_id(self, thread: "Thread") -> Optional[str]:
        raise NotImplementedError


class DirectStackPeek(StackPeek):
    """Interpreted threads record the running block on the top stack frame."""

    def current_block_id(self, thread: "Thread") -> Optional[str]:
        frame = thread.peek_stack_frame()
        if frame is None or frame.op is None:
            return None
        return frame.op.id


class CompiledStackPeek(StackPeek):
    """Compiled threads only keep block ids on the stack."""

    def current_block_id(self, thread: "Thread") -> Optional[str]:
        return thread.peek_stack()


PEEK_STRATEGIES: Dict[ExecutionMode, StackPeek] = {
    ExecutionMode.DIRECT: DirectStackPeek(),
    ExecutionMode.COMPILED: CompiledStackPeek(),
}


class Thread:
    def __init__(
        self,
        top_block: Optional[str],
        target: Target,
        *,
        execution_mode: ExecutionMode = ExecutionMode.DIRECT,
        frame_ids: Optional[Iterator[int]] = None,
    ) -> None:
        self.top_block = top_block
        self.target = target
        self.execution_mode = execution_mode
        self.status = ThreadStatus.RUNNING
        self.stack: List[Optional[str]] = []
        self.stack_frames: List[StackFrame] = []
        self._frame_ids = frame_ids if frame_ids is not None else itertools.count()
        if top_block is not None:
            self.push_stack(top_block)

    @property
    def is_compiled(self) -> bool:
        return self.execution_mode is ExecutionMode.COMPILED

    @property
    def block_container(self) -> BlockContainer:
        return self.current_target.blocks

    @property
    def current_target(self) -> Target:
        for frame in reversed(self.stack_frames):
            if frame.target is not None:
                return frame.target
        return self.target

    def _new_frame(self, target: Optional[Target]) -> StackFrame:
        frame_id = f"f_{next(self._frame_ids):04d}"
        warp = bool(self.stack_frames and self.stack_frames[-1].warp_mode)
        return StackFrame(frame_id=frame_id, warp_mode=warp, target=target)

    def push_stack(self, block_id: Optional[str], target: Optional[Target] = None) -> None:
        self.stack.append(block_id)
        self.stack_frames.append(self._new_frame(target))

    def pop_stack(self) -> Optional[str]:
        if not self.stack:
            return None
        self.stack_frames.pop()
        return self.stack.pop()

    def peek_stack(self) -> Optional[str]:
        return self.stack[-1] if self.stack else None

    def peek_stack_frame(self) -> Optional[StackFrame]:
        return self.stack_frames[-1] if self.stack_frames else None

    def reuse_stack_for_next_block(self, block_id: Optional[str]) -> None:
        self.stack[-1] = block_id
        self.stack_frames[-1].reuse()

    def go_to_next_block(self) -> None:
        self.reuse_stack_for_next_block(self.block_container.get_next_block(self.peek_stack()))

    def current_block_id(self) -> Optional[str]:
        return PEEK_STRATEGIES[self.execution_mode].current_block_id(self)

    # ---- Parameters ----

    def init_params(self) -> None:
        frame = self.peek_stack_frame()
        if frame is not None:
            frame.params = {}

    def push_param(self, name: str, value: Any) -> None:
        frame = self.peek_stack_frame()
        if frame is None:
            return
        if frame.params is None:
            frame.params = {}
        frame.params[name] = value

    def get_param(self, name: str) -> Optional[Any]:
        # Only the nearest frame that owns a mapping is consulted.
        for frame in reversed(self.stack_frames):
            if frame.params is None:
                continue
            return frame.params.get(name)
        return None

    def get_all_params(self) -> Dict[str, Any]:
        frame = self.peek_stack_frame()
        if frame is None or frame.params is None:
            return {}
        return frame.params

    def is_recursive_call(self, proccode: str) -> bool:
        # The caller's own frame is on top; definitions further down mean recursion.
        return any(frame.procedure == proccode for frame in self.stack_frames[:-1])


@dataclass
class AddonBlock:
    proccode: str
    callback: Callable[[Dict[str, Any], "BlockUtility"], Any]
    arguments: Tuple[str, ...] = ()


# ---- Logging ----


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    block_id: Optional[str]
    opcode: Optional[str]
    params_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


def _render(value: Any, to_text: Callable[[Any], str] = str) -> str:
    if isinstance(value, BranchDescriptor):
        return f"branch:{value.caller_id}/{value.entry}"
    try:
        rendered = to_text(value)
    except Exception:
        rendered = repr(value)
    rendered = rendered.replace("\n", " ")
    if len(rendered) > 80:
        rendered = rendered[:77] + "..."
    return rendered


class StateLogger:
    def __init__(self, verbose: bool, render: Callable[[Any], str] = str) -> None:
        self.verbose = verbose
        self.render = render
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[StackFrame],
        block: Optional[Block],
        rewrite_record: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        snapshot = None
        if self.verbose and params is not None:
            snapshot = {k: _render(v, self.render) for k, v in params.items()}
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            block_id=block.id if block else None,
            opcode=block.opcode if block else None,
            params_snapshot=snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def rules(self) -> List[str]:
        return [e.rewrite_record.get("rule", "") for e in self.entries if e.rewrite_record]

    def format_text(self) -> str:
        lines: List[str] = []
        for entry in self.entries:
            rule = (entry.rewrite_record or {}).get("rule", "")
            line = f"{entry.state_id} {entry.frame_id or '-'} {rule:<12} {entry.opcode or '-'} ({entry.block_id or '-'})"
            if entry.params_snapshot:
                line += " " + ", ".join(f"{k}={v}" for k, v in entry.params_snapshot.items())
            lines.append(line)
        return "\n".join(lines)


# ---- Block utility ----


class BlockUtility:
    """Context handle passed to every primitive as ``util``."""

    def __init__(self, sequencer: "Sequencer", thread: Optional[Thread] = None) -> None:
        self.sequencer = sequencer
        self.thread = thread

    @property
    def runtime(self) -> "Runtime":
        return self.sequencer.runtime

    @property
    def target(self) -> Optional[Target]:
        return None if self.thread is None else self.thread.current_target

    @property
    def stack_frame(self) -> StackFrame:
        frame = None if self.thread is None else self.thread.peek_stack_frame()
        if frame is None:
            raise VMRuntimeError("No active stack frame", rule="internal")
        return frame

    def get_procedure_param_names_ids_and_defaults(self, proccode: str) -> Optional[ProcedureSignature]:
        if self.thread is None:
            return None
        return self.thread.block_container.get_procedure_param_names_ids_and_defaults(proccode)

    def init_params(self) -> None:
        if self.thread is not None:
            self.thread.init_params()

    def push_param(self, name: str, value: Any) -> None:
        if self.thread is not None:
            self.thread.push_param(name, value)

    def get_param(self, name: str) -> Optional[Any]:
        if self.thread is None:
            return None
        return self.thread.get_param(name)

    def start_procedure(self, proccode: str) -> None:
        if self.thread is not None:
            self.sequencer.step_to_procedure(self.thread, proccode)

    def get_branch_and_target(
        self, caller_id: Optional[str], entry: Union[str, int, None]
    ) -> Optional[Tuple[str, Target]]:
        if self.thread is None:
            return None
        branch = self.thread.block_container.get_branch(caller_id, entry)
        if branch is not None:
            return branch, self.thread.current_target
        # The caller may live in another sprite, e.g. a block dragged across targets.
        for target in self.runtime.targets:
            if caller_id is not None and caller_id in target.blocks:
                branch = target.blocks.get_branch(caller_id, entry)
                return (branch, target) if branch is not None else None
        return None

    def log_step(self, rule: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if self.thread is not None:
            self.runtime.log_step(self.thread, rule=rule, extra=extra)


# ---- Configuration ----


@dataclass
class RuntimeConfig:
    framerate: int = 30
    stage_width: int = 480
    stage_height: int = 360
    compiled: bool = False
    max_stack_depth: int = 1024
    verbose: bool = False

    @property
    def execution_mode(self) -> ExecutionMode:
        return ExecutionMode.COMPILED if self.compiled else ExecutionMode.DIRECT


Primitive = Callable[[Dict[str, Any], BlockUtility], Any]


class Sequencer:
    def __init__(self, runtime: "Runtime") -> None:
        self.runtime = runtime

    def step_threads(self) -> int:
        """Run one tick over every live thread; returns how many were stepped."""
        stepped = 0
        for thread in list(self.runtime.threads):
            if thread.status in (ThreadStatus.DONE, ThreadStatus.PROMISE_WAIT):
                continue
            try:
                self.step_thread(thread)
            except VMRuntimeError as error:
                if error.thread is None:
                    error.thread = thread
                raise
            stepped += 1
        self.runtime.threads = [t for t in self.runtime.threads if t.status != ThreadStatus.DONE]
        return stepped

    def step_thread(self, thread: Thread) -> None:
        if thread.peek_stack() is None:
            thread.pop_stack()
            if not thread.stack:
                thread.status = ThreadStatus.DONE
                return
        while thread.peek_stack() is not None:
            current = thread.peek_stack()
            depth = len(thread.stack)
            self.execute(thread)
            self.check_stack_depth(thread)
            if thread.status == ThreadStatus.YIELD:
                thread.status = ThreadStatus.RUNNING
                return
            if thread.status == ThreadStatus.PROMISE_WAIT:
                return
            if len(thread.stack) == depth and thread.peek_stack() == current:
                thread.go_to_next_block()
            while thread.peek_stack() is None:
                thread.pop_stack()
                if not thread.stack:
                    thread.status = ThreadStatus.DONE
                    return
                thread.go_to_next_block()

    def check_stack_depth(self, thread: Thread) -> None:
        limit = self.runtime.config.max_stack_depth
        if len(thread.stack) <= limit:
            return
        block = thread.block_container.get_block(thread.peek_stack())
        frame = thread.peek_stack_frame()
        where = f" entering '{frame.procedure}'" if frame is not None and frame.procedure else ""
        raise VMRuntimeError(
            f"Maximum stack depth {limit} exceeded{where}",
            block_id=thread.peek_stack(),
            opcode=block.opcode if block else None,
            rule="STACK",
        )

    def execute(self, thread: Thread) -> None:
        container = thread.block_container
        block_id = thread.peek_stack()
        block = container.get_block(block_id)
        frame = thread.peek_stack_frame()
        if block is None:
            # Deleted mid-run; behave like the end of the script.
            thread.reuse_stack_for_next_block(None)
            return
        if frame is not None:
            frame.op = block
        primitive = self.runtime.get_opcode_function(block.opcode)
        if primitive is None:
            self.runtime.log_step(thread, rule="SKIP", block=block)
            return
        self.runtime.log_step(thread, rule="EXEC", block=block)
        util = BlockUtility(self, thread)
        args = self.evaluate_arguments(block, thread, util)
        self._call(primitive, block, args, util)

    def _call(self, primitive: Primitive, block: Block, args: Dict[str, Any], util: BlockUtility) -> Any:
        try:
            return primitive(args, util)
        except VMError:
            raise
        except Exception as exc:
            rule = "EXT" if self.runtime.is_extension_opcode(block.opcode) else "internal"
            raise VMRuntimeError(
                f"Block '{block.opcode}' failed: {exc}",
                block_id=block.id,
                opcode=block.opcode,
                rule=rule,
            ) from exc

    def evaluate_arguments(self, block: Block, thread: Thread, util: BlockUtility) -> Dict[str, Any]:
        args: Dict[str, Any] = {name: f.value for name, f in block.fields.items()}
        command_inputs = set()
        if block.opcode == "procedures_call" and block.mutation is not None:
            args["mutation"] = block.mutation
            kinds = argument_kinds(str(block.mutation.get("proccode", "")))
            ids = thread.block_container.call_argument_ids(block)
            command_inputs = {arg_id for arg_id, kind in zip(ids, kinds) if kind == "c"}
        for name, inp in block.inputs.items():
            if name in command_inputs:
                entry = name if inp.block is not None else None
                args[name] = BranchDescriptor(entry=entry, caller_id=block.id)
                continue
            if BRANCH_INPUT.fullmatch(name):
                # Statement slots are pushed by the block itself via get_branch.
                continue
            if inp.block is None:
                args[name] = inp.value
                continue
            args[name] = self.evaluate_reporter(inp.block, thread, util, default=inp.value)
        for name in command_inputs - set(block.inputs):
            args[name] = BranchDescriptor(entry=None, caller_id=block.id)
        return args

    def evaluate_reporter(self, block_id: str, thread: Thread, util: BlockUtility, default: Any = None) -> Any:
        block = thread.block_container.get_block(block_id)
        if block is None or block.opcode in STATEMENT_ONLY_OPCODES:
            return default
        literal_field = LITERAL_OPCODES.get(block.opcode)
        if literal_field is not None:
            return block.field_value(literal_field, default)
        primitive = self.runtime.get_opcode_function(block.opcode)
        if primitive is None:
            return default
        args = self.evaluate_arguments(block, thread, util)
        return self._call(primitive, block, args, util)

    def step_to_procedure(self, thread: Thread, proccode: str) -> None:
        container = thread.block_container
        definition = container.get_procedure_definition(proccode)
        if definition is None:
            return
        is_recursive = thread.is_recursive_call(proccode)
        thread.push_stack(definition)
        frame = thread.peek_stack_frame()
        frame.procedure = proccode
        signature = container.get_procedure_param_names_ids_and_defaults(proccode)
        if signature is not None and signature.warp:
            frame.warp_mode = True
        if is_recursive and not frame.warp_mode:
            thread.status = ThreadStatus.YIELD


class Runtime:
    def __init__(
        self,
        project: Optional[Project] = None,
        *,
        config: Optional[RuntimeConfig] = None,
        services: Optional[RuntimeServices] = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.project = project or Project()
        self.services = services or build_default_services()
        self.logger = StateLogger(verbose=self.config.verbose, render=self.render_value)
        self.logger.record(frame=None, block=None, rewrite_record={"rule": "SEED"})
        self.threads: List[Thread] = []
        self.sequencer = Sequencer(self)
        self._frame_ids = itertools.count()
        self._primitives: Dict[str, Primitive] = {}
        self._extension_opcodes: set = set()
        self._addon_blocks: Dict[str, AddonBlock] = {}
        self._register_block_packages()
        self._attach_extensions()

    def _register_block_packages(self) -> None:
        # Imported here; the block package itself depends on this module.
        from procedures import ProcedureBlocks

        self.add_primitives(ProcedureBlocks(self).get_primitives())

    def _attach_extensions(self) -> None:
        for ext_id, info in self.services.blocks():
            opcode = f"{ext_id}_{info.opcode}"
            if opcode in self._primitives:
                raise ExtensionError(f"Cannot override existing opcode '{opcode}'")
            self._primitives[opcode] = info.impl
            self._extension_opcodes.add(opcode)

    # ---- Registry ----

    def add_primitives(self, primitives: Dict[str, Primitive]) -> None:
        self._primitives.update(primitives)

    def get_opcode_function(self, opcode: str) -> Optional[Primitive]:
        return self._primitives.get(opcode)

    def is_extension_opcode(self, opcode: str) -> bool:
        return opcode in self._extension_opcodes

    def add_addon_block(
        self,
        proccode: str,
        callback: Callable[[Dict[str, Any], BlockUtility], Any],
        arguments: Tuple[str, ...] = (),
    ) -> None:
        self._addon_blocks[proccode] = AddonBlock(proccode=proccode, callback=callback, arguments=tuple(arguments))

    def get_addon_block(self, proccode: str) -> Optional[AddonBlock]:
        return self._addon_blocks.get(proccode)

    # ---- Targets ----

    @property
    def targets(self) -> List[Target]:
        return self.project.targets

    def get_target_by_id(self, target_id: str) -> Optional[Target]:
        return self.project.get_target_by_id(target_id)

    @property
    def framerate(self) -> int:
        return self.config.framerate

    @property
    def stage_width(self) -> int:
        return self.config.stage_width

    @property
    def stage_height(self) -> int:
        return self.config.stage_height

    # ---- Threads ----

    def push_thread(self, top_block: str, target: Target) -> Thread:
        thread = Thread(
            top_block,
            target,
            execution_mode=self.config.execution_mode,
            frame_ids=self._frame_ids,
        )
        self.threads.append(thread)
        return thread

    def green_flag(self) -> List[Thread]:
        self.stop_all()
        self.emit(PROJECT_START, self)
        started: List[Thread] = []
        for target in self.targets:
            for block_id in target.blocks.get_scripts():
                block = target.blocks.get_block(block_id)
                if block is None or block.opcode in ("procedures_definition", "procedures_prototype"):
                    continue
                started.append(self.push_thread(block_id, target))
        return started

    def stop_all(self) -> None:
        if self.threads:
            self.emit(PROJECT_STOP, self)
        self.threads = []

    def step(self) -> int:
        return self.sequencer.step_threads()

    def run_until_done(self, max_ticks: Optional[int] = None) -> int:
        ticks = 0
        while self.threads and (max_ticks is None or ticks < max_ticks):
            try:
                self.step()
            except VMRuntimeError as error:
                if self.logger.entries:
                    error.step_index = self.logger.entries[-1].step_index
                raise
            ticks += 1
            if all(t.status == ThreadStatus.PROMISE_WAIT for t in self.threads):
                break
        return ticks

    # ---- Hooks and logging ----

    def render_value(self, value: Any) -> str:
        spec = self.services.type_registry.spec_for_value(value)
        if spec is not None:
            return spec.to_str(value)
        return str(value)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.services.hook_registry.emit(event, *args, **kwargs)
        except VMError:
            raise
        except Exception as exc:
            raise VMRuntimeError(f"Extension hook '{event}' failed: {exc}", rule="EXT") from exc

    def log_step(
        self,
        thread: Thread,
        *,
        rule: str,
        block: Optional[Block] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        frame = thread.peek_stack_frame()
        if block is None and frame is not None:
            block = frame.op
        rewrite = {"rule": rule}
        if extra:
            rewrite.update(extra)
        params = None
        if self.logger.verbose:
            params = next((f.params for f in reversed(thread.stack_frames) if f.params is not None), None)
        return self.logger.record(frame=frame, block=block, rewrite_record=rewrite, params=params)


@dataclass
class TracebackFrame:
    frame_id: str
    block_id: Optional[str]
    opcode: Optional[str]
    procedure: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, runtime: Runtime, thread: Optional[Thread] = None) -> None:
        self.runtime = runtime
        self.thread = thread

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        if self.thread is None:
            return frames
        for block_id, frame in zip(self.thread.stack, self.thread.stack_frames):
            block = self.thread.block_container.get_block(block_id)
            frames.append(
                TracebackFrame(
                    frame_id=frame.frame_id,
                    block_id=block_id,
                    opcode=block.opcode if block else None,
                    procedure=frame.procedure,
                    state_entry=self.runtime.logger.last_entry_for_frame(frame.frame_id),
                )
            )
        return frames

    def format_text(self, error: VMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            where = f" in {frame.procedure}" if frame.procedure else ""
            lines.append(f"  Frame {frame.frame_id}, block {frame.block_id or '<none>'} ({frame.opcode or '?'}){where}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.params_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.params_snapshot.items())
                    lines.append(f"    Params snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: VMRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {
                "frame_index": index,
                "frame_id": frame.frame_id,
                "block_id": frame.block_id,
                "opcode": frame.opcode,
            }
            if frame.procedure:
                entry["procedure"] = frame.procedure
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.params_snapshot is not None:
                    entry["params_snapshot"] = frame.state_entry.params_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "block_id": error.block_id,
                "opcode": error.opcode,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
