"""
DAG Flow — Command Line

Validate, run and resume workflows defined in Python modules. A workflow
is addressed as "module:attribute", where the attribute is a Workflow or
a zero-argument callable returning one.

Usage:
    # Check a definition and print its execution order
    dagflow validate examples.approval_pipeline:workflow

    # Run it; a pending run leaves <run_id>.json in the checkpoint dir
    dagflow run examples.approval_pipeline:workflow \\
        --input '{"prepare": {"amount": 1200}}'

    # Answer the human gate
    dagflow resume examples.approval_pipeline:workflow <run_id> --approve

Exit codes: 0 completed, 2 pending, 1 failed.

Engine settings (retry policies, step and gate timeouts, log level) come
from --config (default dagflow.yaml) plus DAGFLOW_* env overrides, and
apply to every workflow that was built without its own EngineSettings.

Checkpoint files are this tool's own persistence between processes; the
engine itself keeps suspended runs in memory only.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel

from dagflow.config import DEFAULT_CONFIG_PATH, EngineSettings, load_settings
from dagflow.errors import WorkflowError
from dagflow.human import Checkpoint, HumanInputResponse
from dagflow.logging import configure_logging
from dagflow.workflow import Workflow

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_PENDING = 2

DEFAULT_CHECKPOINT_DIR = ".dagflow"


class CLIError(Exception):
    """Bad arguments or unloadable inputs; reported without a traceback."""


# ─── Helpers ────────────────────────────────────────────────────────

def load_workflow(target: str) -> Workflow:
    """Import "package.module:attr" and return the Workflow it names."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise CLIError(f"Expected module:attribute, got {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CLIError(f"Cannot import {module_name!r}: {e}") from e
    try:
        obj = getattr(module, attr)
    except AttributeError as e:
        raise CLIError(f"{module_name!r} has no attribute {attr!r}") from e
    if not isinstance(obj, Workflow) and callable(obj):
        obj = obj()
    if not isinstance(obj, Workflow):
        raise CLIError(f"{target!r} is not a Workflow (got {type(obj).__name__})")
    return obj


def _apply_settings(workflow: Workflow, settings: EngineSettings) -> Workflow:
    """
    Hand the loaded config to a workflow built without explicit settings.
    Settings passed to Workflow() in code are left alone.
    """
    if workflow.settings == EngineSettings():
        workflow.settings = settings
    return workflow


def _load_input(args) -> dict[str, Any]:
    if args.input_file:
        p = Path(args.input_file)
        if not p.exists():
            raise CLIError(f"Input file not found: {args.input_file}")
        with open(p) as f:
            data = json.load(f) if p.suffix == ".json" else yaml.safe_load(f)
    elif args.input:
        try:
            data = json.loads(args.input)
        except json.JSONDecodeError as e:
            raise CLIError(f"--input is not valid JSON: {e}") from e
    else:
        return {}
    if not isinstance(data, dict):
        raise CLIError("Input must be a JSON/YAML object mapping keys to values")
    return data


def _parse_value(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return str(obj)


def _checkpoint_path(checkpoint_dir: str, run_id: str) -> Path:
    return Path(checkpoint_dir) / f"{run_id}.json"


def _save_checkpoint(checkpoint: Checkpoint, checkpoint_dir: str) -> Path:
    path = _checkpoint_path(checkpoint_dir, checkpoint.run_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(checkpoint.to_dict(), f, indent=2, default=str)
    return path


def _banner(title: str):
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  {title}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)


def _report(result, args, workflow: Workflow) -> int:
    """Print the summary, persist a pending checkpoint, return the exit code."""
    print(f"{'─' * 70}", file=sys.stderr)
    print(f"  run:      {result.run_id}", file=sys.stderr)
    print(f"  status:   {result.status.value}", file=sys.stderr)
    print(f"  elapsed:  {result.elapsed_s:.2f}s", file=sys.stderr)

    if result.failed:
        print(f"\n  ✗ FAILED: {type(result.error).__name__}: {result.error}", file=sys.stderr)
    elif result.is_pending:
        path = _save_checkpoint(result.checkpoint, args.checkpoint_dir)
        pending = result.pending
        print(f"\n  ⏸ Waiting on human step '{pending.step_name}'", file=sys.stderr)
        print(f"    prompt:  {pending.prompt}", file=sys.stderr)
        if pending.request and pending.request.options:
            print(f"    options: {', '.join(pending.request.options)}", file=sys.stderr)
        print(f"    saved:   {path}", file=sys.stderr)
        print(f"\n  Approve: dagflow resume <target> {result.run_id} --approve", file=sys.stderr)
        print(f"  Reject:  dagflow resume <target> {result.run_id} --reject", file=sys.stderr)

    payload = result.to_dict()
    payload["workflow"] = workflow.name
    print(json.dumps(payload, indent=2, default=_json_default))

    if args.output:
        with open(args.output, "w") as f:
            json.dump(payload, f, indent=2, default=_json_default)
        print(f"  Output saved: {args.output}", file=sys.stderr)

    if result.completed:
        return EXIT_COMPLETED
    if result.is_pending:
        return EXIT_PENDING
    return EXIT_FAILED


# ─── Commands ───────────────────────────────────────────────────────

def cmd_validate(args) -> int:
    """Check the workflow definition and print its topological order."""
    workflow = load_workflow(args.target)
    try:
        order = workflow.validate()
    except WorkflowError as e:
        print(f"✗ {workflow.name}: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_FAILED
    print(f"✓ {workflow.name}: {len(order)} step(s)", file=sys.stderr)
    for i, name in enumerate(order, 1):
        edge = workflow.get_edge(name)
        deps = ", ".join(edge.dependencies) or "—"
        kind = " [human]" if edge.is_human else ""
        feeds = workflow.graph.get_dependents(name)
        line = f"  {i:3d}. {name}{kind}  (after: {deps})"
        if feeds:
            line += f"  → {', '.join(feeds)}"
        print(line)
    return EXIT_COMPLETED


def cmd_run(args) -> int:
    """Run a workflow from the start."""
    workflow = _apply_settings(load_workflow(args.target), args.settings)
    initial_state = _load_input(args)
    _banner(f"RUN: {workflow.name}")
    result = asyncio.run(workflow.execute(initial_state))
    return _report(result, args, workflow)


def cmd_resume(args) -> int:
    """Answer a pending human gate and continue the run."""
    workflow = _apply_settings(load_workflow(args.target), args.settings)
    path = _checkpoint_path(args.checkpoint_dir, args.run_id)
    if not path.exists():
        raise CLIError(f"No checkpoint for run {args.run_id!r} in {args.checkpoint_dir}")
    with open(path) as f:
        checkpoint = Checkpoint.from_dict(json.load(f))

    response = HumanInputResponse(
        request_id=checkpoint.request.id,
        approved=not args.reject,
        value=_parse_value(args.value),
        selected_option=args.option,
    )
    decision = "REJECTING" if args.reject else "APPROVING"
    _banner(f"{decision}: {args.run_id} at '{checkpoint.step_name}'")

    result = asyncio.run(workflow.resume(checkpoint, response))

    # A resume refused before the run re-entered leaves the checkpoint usable
    if result.failed and result.checkpoint is checkpoint and not checkpoint.is_expired:
        print(f"  Checkpoint kept: {path}", file=sys.stderr)
    elif not result.is_pending:
        path.unlink(missing_ok=True)
    return _report(result, args, workflow)


def cmd_pending(args) -> int:
    """List checkpoint files awaiting an answer."""
    directory = Path(args.checkpoint_dir)
    files = sorted(directory.glob("*.json")) if directory.exists() else []
    if not files:
        print("No runs pending.")
        return EXIT_COMPLETED

    print(f"\nPending Runs ({len(files)})")
    print(f"{'─' * 70}")
    for p in files:
        with open(p) as f:
            cp = Checkpoint.from_dict(json.load(f))
        print(f"  {cp.run_id}")
        print(f"    workflow:  {cp.workflow}")
        print(f"    step:      {cp.step_name}")
        print(f"    request:   {cp.request.type.value} ({cp.request.id})")
        print(f"    prompt:    {cp.request.prompt}")
        if cp.deadline is not None:
            state = "expired" if cp.is_expired else f"{cp.remaining_seconds:.0f}s left"
            print(f"    deadline:  {state}")
        print()
    return EXIT_COMPLETED


# ─── Entry Point ────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dagflow",
        description="DAG Flow — workflow runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH,
        help="Engine config YAML (default: dagflow.yaml)",
    )

    subs = parser.add_subparsers(dest="command", help="Command")

    validate_p = subs.add_parser("validate", help="Validate a workflow definition")
    validate_p.add_argument("target", help="module:attribute")

    run_p = subs.add_parser("run", help="Run a workflow")
    run_p.add_argument("target", help="module:attribute")
    run_p.add_argument("--input", "-i", help="JSON object used as initial state")
    run_p.add_argument("--input-file", "-f", help="JSON or YAML file used as initial state")
    run_p.add_argument("--checkpoint-dir", default=DEFAULT_CHECKPOINT_DIR)
    run_p.add_argument("--output", "-o", help="Save result JSON")
    run_p.add_argument("--verbose", "-v", action="store_true")

    resume_p = subs.add_parser("resume", help="Resume a run paused at a human step")
    resume_p.add_argument("target", help="module:attribute")
    resume_p.add_argument("run_id")
    decision = resume_p.add_mutually_exclusive_group(required=True)
    decision.add_argument("--approve", action="store_true")
    decision.add_argument("--reject", action="store_true")
    resume_p.add_argument("--value", help="Answer for an input gate (JSON or plain text)")
    resume_p.add_argument("--option", help="Choice for a selection gate")
    resume_p.add_argument("--checkpoint-dir", default=DEFAULT_CHECKPOINT_DIR)
    resume_p.add_argument("--output", "-o", help="Save result JSON")
    resume_p.add_argument("--verbose", "-v", action="store_true")

    pending_p = subs.add_parser("pending", help="List runs waiting on a human step")
    pending_p.add_argument("--checkpoint-dir", default=DEFAULT_CHECKPOINT_DIR)

    return parser


COMMANDS = {
    "validate": cmd_validate,
    "run": cmd_run,
    "resume": cmd_resume,
    "pending": cmd_pending,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    settings = load_settings(args.config)
    args.settings = settings
    level = "DEBUG" if getattr(args, "verbose", False) else settings.log_level
    configure_logging(level=level)

    try:
        return COMMANDS[args.command](args)
    except CLIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
