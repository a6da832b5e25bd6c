"""blockvm entry point: load a project, run it from the green flag, report sprites."""

from __future__ import annotations
import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from extensions import ExtensionError, load_runtime_services
from project import ProjectError, load_project
from runtime import Runtime, RuntimeConfig, TracebackFormatter, VMRuntimeError


def summarize(runtime: Runtime) -> Dict[str, Any]:
    sprites: Dict[str, Any] = {}
    for target in runtime.targets:
        if target.is_stage:
            continue
        sprites[target.name] = {"x": target.x, "y": target.y, "direction": target.direction}
    return {"sprites": sprites, "threads": len(runtime.threads)}


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="blockvm project runner")
    parser.add_argument("project", help="Path to a project.json document")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], help="Extension .py file or .bvx pointer file (repeatable)")
    parser.add_argument("--compiled", action="store_true", help="Run threads in compiled stack mode")
    parser.add_argument("--fps", type=int, default=30, help="Frames per second reported to extensions")
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record parameter snapshots in the state log")
    parser.add_argument("--trace", action="store_true", help="Print the state log to stderr")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    try:
        project = load_project(args.project)
    except OSError as exc:
        print(f"Failed to read {args.project}: {exc}", file=sys.stderr)
        return 1
    except ProjectError as error:
        print(f"ProjectError: {error}", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.extensions)
        config = RuntimeConfig(framerate=args.fps, compiled=args.compiled, verbose=args.verbose)
        runtime = Runtime(project, config=config, services=services)
    except ExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    try:
        runtime.green_flag()
        runtime.run_until_done(max_ticks=args.max_ticks)
    except VMRuntimeError as error:
        if args.trace:
            print(runtime.logger.format_text(), file=sys.stderr)
        formatter = TracebackFormatter(runtime, error.thread)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1

    if args.trace:
        print(runtime.logger.format_text(), file=sys.stderr)
    print(json.dumps(summarize(runtime), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
