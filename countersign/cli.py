"""Command line interface for managing approval workflows."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from countersign import DefinitionStore, HistoryLog, Inbox, build_service, get_repository
from countersign.definitions import load_definitions
from countersign.errors import CountersignError
from countersign.models import InstanceState

app = typer.Typer(help="CLI for countersign approval workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")
inbox_app = typer.Typer(help="Commands for approver inboxes")
sweeper_app = typer.Typer(help="Commands for the expiry sweeper")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(inbox_app, name="inbox")
app.add_typer(sweeper_app, name="sweeper")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for countersign"),
) -> None:
    """countersign CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_definitions(path: Path):
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return load_definitions(path)
    except ValidationError as exc:
        typer.secho(f"Malformed definition file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Validate workflow definitions from a YAML file without storing them.

    Reports structural errors (cycles, unreachable steps, missing fallback
    transitions, impossible quorums) and warnings for each definition.

    Example:
        countersign definition validate ./workflows/purchase_order.yaml
        # Output: purchase_order v1: valid (3 steps, 5 transitions)
    """
    store = DefinitionStore(get_repository())
    failed = False
    for definition in _read_definitions(path):
        result = store.validate(definition)
        label = f"{definition.code} v{definition.version}"
        if result.valid:
            typer.echo(
                f"{label}: valid ({result.stats.get('steps', 0)} steps, "
                f"{result.stats.get('transitions', 0)} transitions)"
            )
        else:
            failed = True
            typer.secho(f"{label}: invalid", fg=typer.colors.RED)
            for error in result.errors:
                typer.echo(f"  error: {error}")
        for warning in result.warnings:
            typer.echo(f"  warning: {warning}")
    if failed:
        raise typer.Exit(code=1)


@definition_app.command("load")
def definition_load(path: Path) -> None:
    """Validate and register workflow definitions from a YAML file."""
    store = DefinitionStore(get_repository())
    for definition in _read_definitions(path):
        try:
            store.register(definition)
        except (CountersignError, ValueError) as exc:
            typer.secho(f"{definition.code}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"Loaded {definition.code} v{definition.version} ({definition.id})")


@definition_app.command("list")
def definition_list(entity_type: Optional[str] = None) -> None:
    """List stored workflow definitions."""
    definitions = DefinitionStore(get_repository()).list(entity_type)
    if not definitions:
        typer.echo("No definitions found")
        return
    for d in definitions:
        status = "active" if d.active else "inactive"
        typer.echo(f"{d.id}\t{d.code}\tv{d.version}\t{d.entity_type}\t{status}")


@definition_app.command("activate")
def definition_activate(definition_id: str) -> None:
    """Publish a stored definition after re-validating it."""
    try:
        definition = DefinitionStore(get_repository()).activate(definition_id)
    except CountersignError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Activated {definition.code} v{definition.version}")


@definition_app.command("deactivate")
def definition_deactivate(definition_id: str) -> None:
    """Stop new instances from using a definition."""
    try:
        definition = DefinitionStore(get_repository()).deactivate(definition_id)
    except CountersignError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Deactivated {definition.code} v{definition.version}")


@instance_app.command("list")
def instance_list(state: Optional[InstanceState] = None) -> None:
    """
    List workflow instances with their state.

    Example:
        countersign instance list --state in_progress
        # Output: 3f1c...    purchase_order:42    in_progress    manager_review
    """
    instances = get_repository().list_instances(state)
    if not instances:
        typer.echo("No instances found")
        return
    for inst in instances:
        typer.echo(
            f"{inst.id}\t{inst.entity_type}:{inst.entity_id}\t{inst.state.value}"
            f"\t{inst.current_step_id or '-'}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show one instance, its audit history and whether the history replays to it.

    Example:
        countersign instance show 3f1c...
        # Output: Instance 3f1c...: in_progress (purchase_order:42)
        #         Step: manager_review  approvers: alice, bob
        #         #1 start by dave -> in_progress/manager_review
    """
    repo = get_repository()
    inst = repo.get_instance(instance_id)
    if inst is None:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {inst.id}: {inst.state.value} ({inst.entity_type}:{inst.entity_id})")
    if inst.current_step_id:
        typer.echo(
            f"Step: {inst.current_step_id}  approvers: {', '.join(inst.resolved_approvers)}"
        )
    if inst.expires_at:
        typer.echo(f"Expires: {inst.expires_at.isoformat()}")

    history = HistoryLog(repo)
    for event in history.replay(inst.id):
        target = event.resulting_state.value
        if event.resulting_step:
            target += f"/{event.resulting_step}"
        line = f"#{event.sequence} {event.action.value} by {event.actor} -> {target}"
        if event.comment:
            line += f" ({event.comment})"
        typer.echo(line)

    problems = history.verify(inst)
    if problems:
        typer.secho("History does not match instance:", fg=typer.colors.RED)
        for problem in problems:
            typer.echo(f"  {problem}")
        raise typer.Exit(code=1)
    typer.echo("History verified")


@inbox_app.command("pending")
def inbox_pending(
    identity: str,
    entity_type: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> None:
    """List instances waiting on IDENTITY."""
    pending = Inbox(get_repository()).pending_for(
        identity, entity_type, limit=limit, offset=offset
    )
    if not pending:
        typer.echo(f"Nothing pending for {identity}")
        return
    for inst in pending:
        typer.echo(
            f"{inst.id}\t{inst.entity_type}:{inst.entity_id}\t{inst.current_step_id}"
            f"\tsince {inst.step_entered_at.isoformat() if inst.step_entered_at else '-'}"
        )


@sweeper_app.command("run")
def sweeper_run(
    lifespan: Optional[float] = None,
    interval: Optional[float] = None,
    once: bool = typer.Option(False, help="Sweep a single time and exit"),
) -> None:
    """
    Expire in-progress instances that are past their deadline.

    Example:
        countersign sweeper run --once
        countersign sweeper run --interval 30 --lifespan 600
    """
    service = build_service(repository=get_repository())
    sweeper = service.sweeper
    if interval is not None:
        sweeper.interval = interval
    try:
        if once:
            expired = sweeper.sweep_once()
            typer.echo(f"Expired {len(expired)} instance(s)")
        else:
            typer.echo(f"Starting sweeper (every {sweeper.interval}s)")
            sweeper.run(lifespan=lifespan)
    finally:
        service.close()


if __name__ == "__main__":
    app()
