"""CLI entrypoint for `python -m stepwise` / `stepwise` command."""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import os
import re
import sys
from typing import Any

# ---------------------------------------------------------------------------
# ANSI colors
# ---------------------------------------------------------------------------

class _C:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    GRAY = "\033[90m"

    @staticmethod
    def supports_color() -> bool:
        """Check whether the terminal supports ANSI colors."""
        if os.getenv("NO_COLOR"):
            return False
        return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _color(text: str, color: str) -> str:
    """Wrap *text* with an ANSI color code if the terminal supports it."""
    if not _C.supports_color():
        return text
    return f"{color}{text}{_C.RESET}"


def _status_color(status: str) -> str:
    """Return a colorized status string."""
    s = status.lower()
    if s == "completed":
        return _color(status, _C.GREEN)
    if s in ("failed", "timed_out"):
        return _color(status, _C.RED)
    if s == "skipped":
        return _color(status, _C.YELLOW)
    if s == "not_run":
        return _color(status, _C.GRAY)
    return status


# ---------------------------------------------------------------------------
# Simple table formatter
# ---------------------------------------------------------------------------

_ANSI = re.compile(r"\033\[[0-9;]*m")


def _visible(text: str) -> str:
    """Strip ANSI color codes."""
    return _ANSI.sub("", text)


def _table(headers: list[str], rows: list[list[str]], *, max_col: int = 40) -> str:
    """Render rows as aligned columns of at most *max_col* visible characters.

    Cells may already be colorized; widths are measured on the visible text
    and an over-long cell loses its color when it is cut.
    """
    if not rows:
        return "(no data)"

    def _fit(cell: str) -> str:
        plain = _visible(cell)
        return plain[: max_col - 1] + "…" if len(plain) > max_col else cell

    cells = [[_fit(cell) for cell in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(_visible(cell)))

    def _line(row: list[str]) -> str:
        return "  ".join(
            cell + " " * (widths[i] - len(_visible(cell))) for i, cell in enumerate(row)
        ).rstrip()

    return "\n".join([
        _color(_line(headers), _C.BOLD),
        "  ".join("-" * w for w in widths),
        *(_line(row) for row in cells),
    ])


# ---------------------------------------------------------------------------
# Input parsing helpers
# ---------------------------------------------------------------------------

def _parse_input_pairs(pairs: list[str] | None) -> dict[str, Any]:
    """Parse KEY=VALUE pairs into a dict.

    Values that look like JSON are parsed as JSON; everything else stays a
    string.
    """
    if not pairs:
        return {}
    result: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            print(f"Error: invalid input format '{pair}' - expected KEY=VALUE", file=sys.stderr)
            sys.exit(1)
        key, _, value = pair.partition("=")
        try:
            result[key] = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            result[key] = value
    return result


def _load_input_file(path: str) -> dict[str, Any]:
    """Load workflow input data from a JSON file."""
    try:
        with open(path) as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            print(f"Error: input file must contain a JSON object, got {type(data).__name__}",
                  file=sys.stderr)
            sys.exit(1)
        return data
    except FileNotFoundError:
        print(f"Error: input file not found: {path}", file=sys.stderr)
        sys.exit(1)
    except json.JSONDecodeError as exc:
        print(f"Error: invalid JSON in input file: {exc}", file=sys.stderr)
        sys.exit(1)


def _load_handlers(spec: str) -> dict[str, Any]:
    """Import a handler mapping given as ``module:attribute``."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        print(f"Error: --handlers must look like 'module:attribute', got '{spec}'",
              file=sys.stderr)
        sys.exit(1)
    try:
        module = importlib.import_module(module_name)
        handlers = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        print(f"Error: cannot load handlers from '{spec}': {exc}", file=sys.stderr)
        sys.exit(1)
    if not isinstance(handlers, dict):
        print(f"Error: '{spec}' is not a dict of handlers", file=sys.stderr)
        sys.exit(1)
    return handlers


def _load_workflow(path: str, handlers: dict[str, Any] | None = None) -> Any:
    from stepwise.engine.dag import parse
    from stepwise.engine.errors import DefinitionError

    try:
        return parse(path, handlers)
    except FileNotFoundError:
        print(f"Error: workflow file not found: {path}", file=sys.stderr)
        sys.exit(1)
    except DefinitionError as exc:
        for err in exc.errors:
            print(f"Error: {err}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def _cmd_validate(args: argparse.Namespace) -> None:
    """Validate a workflow file and print any definition errors."""
    from stepwise.engine.dag import validate

    workflow = _load_workflow(args.workflow)
    errors = validate(workflow, require_handlers=False)
    if errors:
        for err in errors:
            print(f"  {_color('x', _C.RED)} {err}")
        sys.exit(1)
    print(f"  {_color('ok', _C.GREEN)} {workflow.name} v{workflow.version}: "
          f"{len(workflow.steps)} steps")


def _cmd_plan(args: argparse.Namespace) -> None:
    """Print the execution layers of a workflow."""
    from stepwise.engine.conditions import describe
    from stepwise.engine.dag import build_plan
    from stepwise.engine.errors import DefinitionError

    workflow = _load_workflow(args.workflow)
    try:
        plan = build_plan(workflow, require_handlers=False)
    except DefinitionError as exc:
        for err in exc.errors:
            print(f"Error: {err}", file=sys.stderr)
        sys.exit(1)

    rows = []
    for index, layer in enumerate(plan.layers):
        for name in layer:
            step = workflow.get_step(name)
            rows.append([
                str(index),
                name,
                step.kind.value,
                ", ".join(step.inputs) or "-",
                describe(step.condition),
            ])
    print(_table(["LAYER", "STEP", "KIND", "INPUTS", "CONDITION"], rows))


def _cmd_run(args: argparse.Namespace) -> None:
    """Run a workflow locally and print the outcome of each step."""
    from stepwise.config import Settings
    from stepwise.engine.errors import DefinitionError
    from stepwise.engine.executor import RunStatus, WorkflowEngine

    handlers = _load_handlers(args.handlers)
    workflow = _load_workflow(args.workflow, handlers)

    input_data: dict[str, Any] = {}
    if args.input_file:
        input_data = _load_input_file(args.input_file)
    input_data.update(_parse_input_pairs(args.input))

    engine = WorkflowEngine(settings=Settings())
    try:
        result = engine.run_sync(workflow, input_data, deadline=args.deadline)
    except DefinitionError as exc:
        for err in exc.errors:
            print(f"Error: {err}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        rows = []
        for name, outcome in result.outcomes.items():
            detail = outcome.reason or (str(outcome.error) if outcome.error else "")
            if outcome.is_completed:
                detail = json.dumps(outcome.to_dict().get("value"), default=str)
            rows.append([
                name,
                _status_color(outcome.status.value),
                str(outcome.attempts or "-"),
                f"{outcome.duration_seconds:.2f}s",
                detail,
            ])
        print(_table(["STEP", "STATUS", "ATTEMPTS", "TIME", "DETAIL"], rows, max_col=60))
        print()
        print(f"Run {result.run_id}: {_status_color(result.status.value)} "
              f"in {result.duration_seconds:.2f}s")
        if result.failed_step:
            print(f"First failure: {result.failed_step}: {result.error}")

    if result.status is not RunStatus.COMPLETED:
        sys.exit(2)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build the full CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stepwise",
        description="Stepwise - step orchestration engine CLI",
    )
    parser.add_argument("--log-level", default=None,
                        help="Logging level (default: $STEPWISE_LOG_LEVEL or info)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- validate ---
    p_validate = subparsers.add_parser("validate", help="Validate a workflow file")
    p_validate.add_argument("workflow", help="Path to a workflow .yaml file")

    # --- plan ---
    p_plan = subparsers.add_parser("plan", help="Show the execution layers of a workflow")
    p_plan.add_argument("workflow", help="Path to a workflow .yaml file")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run a workflow locally")
    p_run.add_argument("workflow", help="Path to a workflow .yaml file")
    p_run.add_argument("--handlers", required=True, metavar="MODULE:ATTR",
                       help="Importable dict mapping handler names to callables")
    p_run.add_argument("--input", "-i", action="append", metavar="KEY=VALUE",
                       help="Input key=value pair (repeatable)")
    p_run.add_argument("--input-file", "-f", metavar="FILE",
                       help="JSON file with input data")
    p_run.add_argument("--deadline", type=float, default=None, metavar="SECONDS",
                       help="Whole-run deadline in seconds")
    p_run.add_argument("--json", action="store_true",
                       help="Print the result as JSON")

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def _configure_logging(level: str | None) -> None:
    from stepwise.config import Settings

    level = level or Settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    """Route CLI commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    _configure_logging(args.log_level)

    dispatch: dict[str, Any] = {
        "validate": _cmd_validate,
        "plan": _cmd_plan,
        "run": _cmd_run,
    }
    dispatch[args.command](args)


if __name__ == "__main__":
    main()
