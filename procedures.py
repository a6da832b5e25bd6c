"""Custom block (procedure) primitives.

Calls bind their arguments into a fresh parameter mapping on the caller's own
stack frame and then jump into the definition body. Argument reporters read
from the nearest frame that owns a mapping, so recursive and concurrent calls
never see each other's bindings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from project import BranchDescriptor
from runtime import ThreadStatus

if TYPE_CHECKING:
    from runtime import BlockUtility, Primitive, Runtime


def _as_branch(value: Any) -> Optional[BranchDescriptor]:
    if isinstance(value, BranchDescriptor):
        return value
    # Addon callbacks may hand back plain {"entry", "callerId"} records.
    if isinstance(value, dict) and "entry" in value:
        return BranchDescriptor(entry=value.get("entry"), caller_id=value.get("callerId", value.get("caller_id")))
    return None


class ProcedureBlocks:
    def __init__(self, runtime: Optional["Runtime"] = None) -> None:
        self.runtime = runtime

    def get_primitives(self) -> Dict[str, "Primitive"]:
        return {
            "procedures_definition": self.definition,
            "procedures_call": self.call,
            "procedures_set": self.set,
            "argument_reporter_string_number": self.argument_reporter_string_number,
            "argument_reporter_boolean": self.argument_reporter_boolean,
            "argument_reporter_command": self.argument_reporter_command,
        }

    def definition(self, args: Dict[str, Any], util: "BlockUtility") -> None:
        # The body runs because the call pushes this block; nothing to do here.
        return None

    def call(self, args: Dict[str, Any], util: "BlockUtility") -> Any:
        frame = util.stack_frame
        if frame.executed:
            return None

        proccode = str((args.get("mutation") or {}).get("proccode", ""))
        signature = util.get_procedure_param_names_ids_and_defaults(proccode)

        # A call whose definition is missing (e.g. dragged to another sprite) is a no-op.
        if signature is None:
            util.log_step("PROC_NOOP", {"proccode": proccode})
            return None

        # Always start a fresh mapping so lookups never fall through to an outer call.
        util.init_params()
        for name, param_id, default in zip(signature.names, signature.ids, signature.defaults):
            util.push_param(name, args[param_id] if param_id in args else default)

        addon = util.runtime.get_addon_block(proccode)
        if addon is not None:
            util.log_step("PROC_ADDON", {"proccode": proccode})
            result = addon.callback(util.thread.get_all_params(), util)
            if util.thread.status == ThreadStatus.PROMISE_WAIT:
                # The thread re-runs this block on resume; don't dispatch twice.
                frame.executed = True
            return result

        frame.executed = True
        util.log_step("PROC_CALL", {"proccode": proccode})
        util.start_procedure(proccode)
        return None

    def set(self, args: Dict[str, Any], util: "BlockUtility") -> None:
        thread = util.thread
        if thread is None or not thread.stack_frames:
            return
        container = thread.block_container
        block = container.get_block(thread.current_block_id())
        param = None if block is None else container.get_block(block.input_block("PARAM"))
        name = None if param is None else param.field_value("VALUE")
        if name is None:
            util.log_step("PARAM_SKIP")
            return
        # Writes land on the outermost frame, not the frame that bound the name.
        outermost = thread.stack_frames[0]
        if outermost.params is None:
            outermost.params = {}
        outermost.params[str(name)] = args.get("VALUE")
        util.log_step("PARAM_SET", {"param": str(name)})

    def argument_reporter_string_number(self, args: Dict[str, Any], util: "BlockUtility") -> Any:
        value = util.get_param(args.get("VALUE"))
        if value is None:
            # Unbound in the most recent call, or read outside any call.
            return 0
        return value

    def argument_reporter_boolean(self, args: Dict[str, Any], util: "BlockUtility") -> Any:
        value = util.get_param(args.get("VALUE"))
        if value is None:
            return 0
        return value

    def argument_reporter_command(self, args: Dict[str, Any], util: "BlockUtility") -> None:
        branch_info = _as_branch(util.get_param(args.get("VALUE")))
        if branch_info is None or branch_info.entry is None:
            return None
        resolved = util.get_branch_and_target(branch_info.caller_id, branch_info.entry)
        if resolved is not None:
            branch_id, target = resolved
            util.log_step("BRANCH_PUSH", {"branch": branch_id})
            util.thread.push_stack(branch_id, target)
        else:
            util.log_step("BRANCH_NULL")
            util.thread.push_stack(None)
        return None
