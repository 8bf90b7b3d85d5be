# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from .engine import Engine
from .errors import ConfigError, DefinitionError, GateError, ValidationError, WorkflowNotFoundError
from .gates import GateState
from .git_facts import checkout_facts
from .loader import build
from .model import EventKind, RunStatus, WorkflowDefinition
from .runners import parse_runner_specs
from .settings import Settings
from .triggers import TriggerEvent, parse_event_kind
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "relayci_workflow.yml"
WORKFLOW_GLOBS = ("*_workflow.yml", "*_workflow.yaml", "*_workflow.py")


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    """
    Find all workflow files in a directory.

    The default relayci_workflow.yml wins on its own; otherwise every
    *_workflow.yml|yaml|py file is a candidate.
    """
    default_workflow = root / DEFAULT_WORKFLOW
    if default_workflow.exists():
        return [default_workflow]
    found = {p for pattern in WORKFLOW_GLOBS for p in root.glob(pattern)}
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow ci_workflow.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", *(f"  {g}" for g in WORKFLOW_GLOBS)],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\n"
                       "Or specify a workflow explicitly:\n  relayci run --workflow ci_workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  relayci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def load_or_exit(workflow_arg: str | None) -> WorkflowDefinition:
    console = get_console()
    path = discover_workflow(workflow_arg)
    try:
        return build(path)
    except DefinitionError as e:
        console.print_error("Invalid workflow", f"{path}: {e}")
        sys.exit(1)


def _pairs(values: Tuple[str, ...], option: str) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {raw!r}", param_hint=option)
        out.append((key.strip(), value))
    return out


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: declarative pipeline orchestration."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
def validate(workflow):
    """Parse a workflow and check its job graph."""
    console = get_console()
    definition = load_or_exit(workflow)
    console.print_info(
        f"Workflow OK: {definition.name} ({len(definition.jobs)} job(s), version {definition.version[:12]})"
    )


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def plan(workflow):
    """Print the topological stages of a workflow."""
    console = get_console()
    definition = load_or_exit(workflow)
    console.print_header(f"PLAN: {definition.name}")
    for index, level in enumerate(definition.graph.levels, start=1):
        console.print_plan_stage(index, level)
    gated = [j for j in definition.jobs.values() if j.environment]
    for job in gated:
        env = definition.environments.get(job.environment)
        if env is not None and env.is_protected:
            console.print_info(
                f"  gate: {job.name} -> {env.name} "
                f"({env.required_approvals} approval(s), {env.wait_seconds / 60:g} min wait)"
            )


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--event", "event_kind", default="push", show_default=True,
              help="Event kind: push, pull_request, workflow_dispatch, schedule")
@click.option("--ref", default=None, help="Git ref (defaults to the current checkout)")
@click.option("--actor", default=None, help="Event actor (defaults to git user.name)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Manual dispatch input")
@click.option("--runner", "runner_specs", multiple=True, metavar="NAME=LABELS", help="Declare a runner (repeatable)")
@click.option("--approve", "approvals", multiple=True, metavar="ENV=REVIEWER",
              help="Approve an environment gate as REVIEWER when it is reached (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel job threads")
@click.option("--database-url", default=None, help="Persist run snapshots to this SQLAlchemy URL")
@click.pass_context
def run(ctx, workflow, event_kind, ref, actor, inputs, runner_specs, approvals, workers, database_url):
    """Run a workflow locally for a synthesized event."""
    console = get_console()
    definition = load_or_exit(workflow)

    try:
        kind = parse_event_kind(event_kind)
        settings = Settings.from_env().with_overrides(
            max_workers=workers,
            database_url=database_url,
            runners=parse_runner_specs(";".join(runner_specs)) if runner_specs else None,
        )
    except (ValueError, ConfigError) as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(1)

    # a local run has a fixed pool; a job nobody can host would queue forever
    unroutable = [
        job for job in definition.jobs.values()
        if not any(r.satisfies(frozenset(job.runs_on)) for r in settings.runners)
    ]
    if unroutable:
        console.print_error(
            "No matching runner",
            "These jobs need labels no declared runner advertises:",
            details=[f"{job.name}: {', '.join(sorted(job.runs_on))}" for job in unroutable],
            suggestion="Declare one:\n  relayci run --runner NAME=label,label",
        )
        sys.exit(1)

    pending_approvals: Dict[str, List[str]] = {}
    for env_name, reviewer in _pairs(approvals, "--approve"):
        pending_approvals.setdefault(env_name, []).append(reviewer)

    if ref is None or actor is None:
        facts = checkout_facts()
        ref = ref if ref is not None else facts.ref
        actor = actor if actor is not None else facts.actor
        sha = facts.sha
    else:
        sha = None

    event = TriggerEvent(
        kind=kind,
        ref=ref,
        actor=actor,
        inputs=dict(_pairs(inputs, "--input")),
        workflow=definition.name if kind == EventKind.MANUAL else None,
        sha=sha,
    )

    engine = Engine.from_settings(settings, console=console)
    run_id: Optional[str] = None
    try:
        engine.register(definition)
        runs = engine.submit(event)
        if not runs:
            console.print_error(
                "Workflow not triggered",
                f"'{definition.name}' does not trigger on {kind.value} for ref '{ref}'.",
                suggestion="Pick a matching event, e.g.:\n  relayci run --event workflow_dispatch",
            )
            sys.exit(1)
        run_id = runs[0].id
        report = _drive(engine, run_id, pending_approvals, console)
        if report.status is not RunStatus.SUCCEEDED:
            sys.exit(1)

    except ValidationError as e:
        console.print_error("Invalid inputs", f"Workflow '{e.workflow}' rejected the dispatch.", details=e.errors)
        sys.exit(1)
    except WorkflowNotFoundError as e:
        console.print_error("Workflow not found", str(e))
        sys.exit(1)
    except GateError as e:
        console.print_error("Approval failed", str(e))
        if run_id is not None:
            engine.cancel(run_id)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        if run_id is not None:
            engine.cancel(run_id)
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        engine.shutdown(wait=False)


def _drive(engine: Engine, run_id: str, approvals: Dict[str, List[str]], console: Console):
    """
    Wait for the run, approving gates from --approve as they are reached.
    A gate that still needs approvals nobody supplied cancels the run.
    """
    run = engine.get_run(run_id)
    while not run.done.wait(0.2):
        engine.tick()
        for gate in engine.gates.gates_for(run_id):
            if gate.state is not GateState.PENDING:
                continue
            env = gate.environment.name
            for reviewer in approvals.pop(env, []):
                engine.approve(run_id, env, reviewer)
            if gate.state is GateState.PENDING and gate.approvals_missing() > 0 and env not in approvals:
                console.print_error(
                    "Approval required",
                    f"Environment '{env}' needs {gate.approvals_missing()} more approval(s).",
                    details=[f"Reviewers: {', '.join(sorted(gate.environment.reviewers)) or '<none>'}"],
                    suggestion=f"Approve it when running locally:\n  relayci run --approve {env}=<reviewer>",
                )
                engine.cancel(run_id)
    return engine.report(run_id)


if __name__ == "__main__":
    cli()
