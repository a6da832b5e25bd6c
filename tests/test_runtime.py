import json

import pytest

from extensions import ExtensionAPI, build_default_services
from helpers import block, call, define, document, num, record, ref, sprite, text
from project import Target
from runtime import (
    PROJECT_START,
    PROJECT_STOP,
    ExecutionMode,
    Runtime,
    StateLogger,
    Thread,
    TracebackFormatter,
    VMRuntimeError,
)


def _looping_blocks():
    blocks = {"main": call("loop", top=True), "again": call("loop", parent="def_loop")}
    define(blocks, "loop", body="again", warp=True)
    return blocks


def test_runaway_recursion_hits_stack_limit(runtime_for):
    runtime, _ = runtime_for(document(sprite(_looping_blocks())), max_stack_depth=16)
    runtime.green_flag()
    with pytest.raises(VMRuntimeError) as info:
        runtime.run_until_done(max_ticks=5)
    error = info.value
    assert error.rule == "STACK"
    assert error.thread is not None
    assert error.step_index == runtime.logger.entries[-1].step_index

    formatter = TracebackFormatter(runtime, error.thread)
    frames = formatter.build_frames()
    # The frame that crossed the limit is kept for the traceback.
    assert len(frames) == 17
    assert frames[-1].procedure == "loop"
    assert "rule: STACK" in formatter.format_text(error, verbose=False)
    data = json.loads(formatter.to_json(error))
    assert data["error"]["failing_step_index"] == error.step_index
    assert data["traceback"][0]["frame_index"] == 0


def test_stack_limit_is_checked_by_the_step_loop(runtime_for):
    runtime, _ = runtime_for(document(sprite(_looping_blocks())), max_stack_depth=2)
    thread = Thread("main", runtime.get_target_by_id("Sprite1"))
    # Entering procedures outside the step loop never raises.
    for _ in range(4):
        runtime.sequencer.step_to_procedure(thread, "loop")
    assert len(thread.stack) == 5
    with pytest.raises(VMRuntimeError) as info:
        runtime.sequencer.check_stack_depth(thread)
    assert info.value.rule == "STACK"
    assert info.value.block_id == "def_loop"
    assert "entering 'loop'" in info.value.message


def test_unknown_opcodes_are_skipped(runtime_for):
    blocks = {"main": block("pen_clear", next="after", top=True), "after": record(text("ok"), parent="main")}
    runtime, probe = runtime_for(document(sprite(blocks)))
    runtime.green_flag()
    runtime.run_until_done()
    assert probe.records == ["ok"]
    assert runtime.logger.rules().count("SKIP") == 1


def test_logger_chains_state_ids_and_snapshots_params(runtime_for):
    blocks = {"main": call("show %s", ["arg"], {"arg": text("v")}, top=True),
              "body": record(text("x"), parent="def_show_s")}
    define(blocks, "show %s", ["word"], ["arg"], [""], body="body")
    runtime, _ = runtime_for(document(sprite(blocks)), verbose=True)
    runtime.green_flag()
    runtime.run_until_done()
    entries = runtime.logger.entries
    assert entries[0].state_id == "s_000000"
    assert entries[0].rewrite_record["rule"] == "SEED"
    for previous, entry in zip(entries, entries[1:]):
        assert entry.rewrite_record["from_state_id"] == previous.state_id
    call_entry = next(e for e in entries if e.rewrite_record.get("rule") == "PROC_CALL")
    assert call_entry.params_snapshot == {"word": "v"}
    assert call_entry.rewrite_record["proccode"] == "show %s"
    assert "PROC_CALL" in runtime.logger.format_text()


def test_quiet_logger_skips_snapshots():
    logger = StateLogger(verbose=False)
    entry = logger.record(frame=None, block=None, params={"a": 1})
    assert entry.params_snapshot is None


def test_compiled_threads_peek_the_block_stack():
    target = Target(id="t", name="t")
    direct = Thread("a", target)
    compiled = Thread("a", target, execution_mode=ExecutionMode.COMPILED)
    assert direct.current_block_id() is None
    assert compiled.current_block_id() == "a"


def test_failing_extension_block_is_wrapped(runtime_for):
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_id="boom")

    def explode(args, util):
        raise ValueError("kaput")

    ext.register_block("explode", explode, text="explode")
    blocks = {"main": block("boom_explode", top=True)}
    runtime, _ = runtime_for(document(sprite(blocks)), services=services)
    runtime.green_flag()
    with pytest.raises(VMRuntimeError) as info:
        runtime.run_until_done()
    assert info.value.rule == "EXT"
    assert info.value.opcode == "boom_explode"
    assert isinstance(info.value.__cause__, ValueError)


def test_project_events_reach_hooks():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_id="watch")
    events = []
    ext.on_event(PROJECT_START, lambda runtime: events.append("start"))
    ext.on_event(PROJECT_STOP, lambda runtime: events.append("stop"))
    runtime = Runtime(services=services)
    runtime.green_flag()
    assert events == ["start"]
    target = Target(id="t", name="t")
    runtime.push_thread("x", target)
    runtime.green_flag()
    assert events == ["start", "stop", "start"]


def test_hook_failure_is_reported_as_runtime_error():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_id="bad")

    def broken(runtime):
        raise RuntimeError("nope")

    ext.on_event(PROJECT_START, broken)
    with pytest.raises(VMRuntimeError):
        Runtime(services=services).green_flag()


def test_extension_opcodes_are_namespaced():
    services = build_default_services()
    ext = ExtensionAPI(services=services, ext_id="demo")
    ext.register_block("ping", lambda args, util: "pong", text="ping", block_type="reporter")
    runtime = Runtime(services=services)
    assert runtime.get_opcode_function("demo_ping") is not None
    assert runtime.is_extension_opcode("demo_ping")
    assert not runtime.is_extension_opcode("procedures_call")


def test_snapshots_render_custom_values_through_their_type(runtime_for, bundled_services):
    blocks = {
        "main": call("show %s %s", ["a", "b"], {"a": ref("arr"), "b": ref("vec")}, top=True),
        "arr": block("jwArray_blank", parent="main"),
        "vec": block("jwVector_newVector", parent="main", inputs={"X": num(3), "Y": num(4.5)}),
        "body": record(text("x"), parent="def_show_s_s"),
    }
    define(blocks, "show %s %s", ["items", "point"], ["a", "b"], ["", ""], body="body")
    runtime, _ = runtime_for(document(sprite(blocks)), services=bundled_services, verbose=True)
    runtime.green_flag()
    runtime.run_until_done()
    snapshots = [e.params_snapshot for e in runtime.logger.entries if e.params_snapshot]
    assert {"items": "[] Length: 0", "point": "Vector<3, 4.5>"} in snapshots
    assert runtime.render_value("plain") == "plain"
