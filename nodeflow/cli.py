"""
Command-line interface for nodeflow.

Usage:
    nodeflow validate workflows/scraper.json
    nodeflow run workflows/scraper.json --input '"https://example.com"'
    nodeflow run workflows/scraper.json --mode parallel --max-concurrency 3 --json

``run`` uses the built-in processors (data input / data output) and the
passthrough processor for every other node type, so a workflow can be
dry-run end to end without any external service.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nodeflow.config import get_default_execution_config, get_log_format, get_log_level
from nodeflow.graph import ExecutionEngine, ExecutionMode, ExecutionStatus, GraphValidator, summary
from nodeflow.observability import configure_logging
from nodeflow.processors import register_builtin_processors
from nodeflow.runtime import EventBus, NodeTypeRegistry


def _load_document(path: str) -> dict[str, Any]:
    """Read a workflow JSON document. Raises ValueError with a printable message."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ValueError(f"Cannot read {path}: {e.strerror or e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object with 'nodes' and 'edges'")
    return data


def _parse_input(raw: str | None) -> Any:
    """--input accepts JSON; anything that does not parse is taken as a plain string."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a workflow document."""
    try:
        document = _load_document(args.workflow)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = GraphValidator(NodeTypeRegistry()).validate(
        document.get("nodes", []), document.get("edges", [])
    )
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(summary(result))
    return 0 if result.is_valid else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run a workflow document against a test input."""
    configure_logging(level=args.log_level or get_log_level(), format=get_log_format())

    try:
        document = _load_document(args.workflow)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        config = get_default_execution_config(
            mode=args.mode,
            max_concurrency=args.max_concurrency,
            timeout=args.timeout,
            retry_policy={"max_retries": args.max_retries},
        )
    except ValidationError as e:
        print(f"Invalid execution options: {e}", file=sys.stderr)
        return 1

    registry = register_builtin_processors(NodeTypeRegistry(), passthrough_default=True)
    engine = ExecutionEngine(registry=registry, event_bus=EventBus())

    plan = asyncio.run(
        engine.execute_workflow(
            document.get("nodes", []),
            document.get("edges", []),
            config=config,
            input_data=_parse_input(args.input),
            workflow_id=document.get("id") or Path(args.workflow).stem,
            name=document.get("name", ""),
        )
    )

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2, default=str))
    else:
        _print_plan(plan)
    return 0 if plan.status == ExecutionStatus.COMPLETED else 1


def _print_plan(plan) -> None:
    print(f"Execution {plan.id}: {plan.status} ({plan.mode})")
    for state in plan.node_states:
        line = f"  [{state.status}] {state.label} ({state.node_type})"
        if state.error:
            line += f" - {state.error}"
        elif state.skip_reason:
            line += f" - {state.skip_reason}"
        print(line)
    for key in ("validation", "timeout", "cancelled", "engine"):
        if key in plan.errors:
            print(f"  {key}: {plan.errors[key]}")
    outputs = [s for s in plan.node_states if s.outputs]
    if outputs:
        final = outputs[-1]
        print(f"Output ({final.label}): {json.dumps(final.outputs.get('output'), default=str)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodeflow",
        description="nodeflow - validate and run workflow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow document")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON file")
    validate_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a workflow against a test input")
    run_parser.add_argument("workflow", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", help="Test input (JSON, or a plain string)")
    run_parser.add_argument(
        "--mode",
        choices=[m.value for m in ExecutionMode],
        help="Scheduling mode (default: chosen from the graph)",
    )
    run_parser.add_argument("--max-concurrency", type=int, help="Nodes running at once")
    run_parser.add_argument("--timeout", type=float, help="Run deadline in milliseconds")
    run_parser.add_argument("--max-retries", type=int, help="Retries per failed node")
    run_parser.add_argument("--log-level", help="Log level (default from configuration)")
    run_parser.add_argument("--json", action="store_true", help="Print the finished plan as JSON")
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
