"""Command line interface for authoring workflows and running the scheduler."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from rentflow.config import RentflowConfig, load_config
from rentflow.contracts import DomainEvent, Execution, WorkflowStatus
from rentflow.entities import InMemoryEntitySource
from rentflow.errors import RentflowError, ValidationError
from rentflow.persistence import get_repository
from rentflow.service import AutomationService
from rentflow.transports import get_transport

app = typer.Typer(help="CLI for rentflow workflow automation")

# Command groups
workflow_app = typer.Typer(help="Commands for authoring and running workflows")
scheduler_app = typer.Typer(help="Commands for the trigger evaluator")
events_app = typer.Typer(help="Commands for domain events")

app.add_typer(workflow_app, name="workflow")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(events_app, name="events")

_state: dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.yaml"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
) -> None:
    """rentflow CLI entry point."""
    _state["config_path"] = str(config) if config else None
    level = (log_level or _config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> RentflowConfig:
    return load_config(_state["config_path"])


def _service(entities: Optional[InMemoryEntitySource] = None) -> AutomationService:
    config = _config()
    return AutomationService(config, repository=get_repository(config=config), entities=entities)


def _load_document(path: Path) -> Any:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    # YAML is a superset of JSON
    return yaml.safe_load(path.read_text())


def _parse_json(value: Optional[str], option: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for {option}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(parsed, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return parsed


def _run(coro: Any) -> Any:
    """Run ``coro``, turning engine errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except ValidationError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        for error in exc.errors:
            typer.echo(f"  {error.get('field')}: {error.get('message')}")
        raise typer.Exit(code=1)
    except RentflowError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_execution(execution: Execution) -> None:
    line = f"Execution {execution.id}: {execution.status.value}"
    if execution.duration_ms is not None:
        line += f" ({execution.duration_ms}ms)"
    if execution.error:
        line += f" - {execution.error}"
    typer.echo(line)
    for result in execution.per_action:
        detail = f" [{result.error_kind.value}] {result.last_error}" if result.error_kind else ""
        typer.echo(
            f"  {result.index}. {result.action_type}: {result.status.value} "
            f"(attempts: {result.attempts}){detail}"
        )


@workflow_app.command("create")
def workflow_create(
    definition: Path,
    owner: str = typer.Option("cli", help="Owner recorded on the workflow"),
) -> None:
    """
    Create a workflow from a YAML or JSON definition file.

    Example:
        rentflow workflow create rent_reminder.yaml --owner manager-1
    """
    spec = _load_document(definition)
    if not isinstance(spec, dict):
        typer.secho("Workflow definition must be a mapping", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    workflow = _run(_service().create_workflow(spec, owner))
    typer.echo(f"Created workflow {workflow.id} ({workflow.status.value})")


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Filter by status"),
    include_archived: bool = typer.Option(False, help="Include archived workflows"),
    template: Optional[bool] = typer.Option(
        None, "--template/--no-template", help="Only templates, or only regular workflows"
    ),
    category: Optional[str] = typer.Option(None, help="Filter templates by category"),
) -> None:
    """
    List workflows with their status and trigger type.

    Example:
        rentflow workflow list --status active
        # Output: 3f1c...    active    dateBased    Rent Reminder
    """
    workflows = _run(
        _service().list_workflows(
            status=status,
            include_archived=include_archived,
            is_template=template,
            template_category=category,
        )
    )
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.trigger_kind}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow definition and its run statistics."""
    wf = _run(_service().get_workflow(workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.name} ({wf.status.value})")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    if wf.is_archived:
        typer.echo(f"Archived at: {wf.archived_at.isoformat()}")
    if wf.is_template:
        typer.echo(f"Template: {wf.template_category or 'uncategorized'}")
    typer.echo(f"Trigger: {json.dumps(wf.trigger.to_dict())}")
    for condition in wf.conditions:
        typer.echo(f"Condition: {json.dumps(condition.to_dict())}")
    for index, action in enumerate(wf.actions):
        flags = [name for name in ("critical", "parallel") if getattr(action, name)]
        suffix = f" ({', '.join(flags)})" if flags else ""
        typer.echo(f"- {index}. {action.type}{suffix}")
    stats = wf.stats
    typer.echo(
        f"Runs: {stats.total_runs} (succeeded {stats.succeeded}, failed {stats.failed}, "
        f"partial {stats.partial}), avg {stats.avg_duration_ms:.0f}ms"
    )


def _set_status(workflow_id: str, status: WorkflowStatus) -> None:
    wf = _run(_service().set_status(workflow_id, status))
    typer.echo(f"Workflow {wf.id} is now {wf.status.value}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Activate a workflow so its trigger starts firing."""
    _set_status(workflow_id, WorkflowStatus.ACTIVE)


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Deactivate a workflow."""
    _set_status(workflow_id, WorkflowStatus.INACTIVE)


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    """Archive (soft delete) a workflow. Its execution history is kept."""
    wf = _run(_service().archive(workflow_id))
    typer.echo(f"Archived workflow {wf.id}")


@workflow_app.command("execute")
def workflow_execute(
    workflow_id: str,
    context: Optional[str] = typer.Option(None, help="Entity snapshot as a JSON object"),
    user: str = typer.Option("cli", help="User recorded as triggeredBy"),
) -> None:
    """
    Run a workflow manually and wait for it to finish.

    Example:
        rentflow workflow execute 3f1c... --context '{"id": "lease-1", "rent": 1200}'
    """
    snapshot = _parse_json(context, "--context")

    async def _execute() -> Execution:
        service = _service()
        started = await service.execute_workflow(workflow_id, snapshot, user)
        typer.echo(f"Started execution {started.id}")
        await service.drain()
        return await service.repository.get_execution(started.id)

    _echo_execution(_run(_execute()))


@workflow_app.command("executions")
def workflow_executions(
    workflow_id: str,
    limit: int = typer.Option(20, help="Maximum number of executions to show"),
) -> None:
    """List the executions of a workflow, newest first."""
    executions = _run(_service().list_executions(workflow_id, limit))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.status.value}\t{execution.trigger_kind}\t"
            f"{execution.triggered_by}\t{execution.started_at.isoformat()}"
        )


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    entities: Optional[Path] = typer.Option(
        None, help="YAML/JSON file mapping entity types to lists of entities"
    ),
) -> None:
    """
    Run the trigger evaluator for schedule and date-based workflows.

    Example:
        rentflow scheduler run --entities leases.yaml --lifespan 300
    """
    source = InMemoryEntitySource(_load_document(entities) or {}) if entities else None
    service = _service(source)
    typer.echo("Starting trigger evaluator")
    _run(service.evaluator.run(lifespan=lifespan))


@events_app.command("consume")
def events_consume(
    topic: Optional[str] = typer.Option(None, help="Transport topic"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Route domain events from the configured transport to matching workflows."""
    config = _config()
    transport = get_transport(config=config)
    service = _service()

    async def _consume() -> int:
        async with transport:
            handled = await service.dispatcher.consume(
                transport, topic or config.transport.topic, lifespan=lifespan
            )
        await service.drain()
        return handled

    handled = _run(_consume())
    typer.echo(f"Handled {handled} event(s)")


@events_app.command("publish")
def events_publish(
    event_name: str,
    snapshot: Optional[str] = typer.Option(None, help="Entity snapshot as a JSON object"),
    topic: Optional[str] = typer.Option(None, help="Transport topic"),
) -> None:
    """Publish a domain event onto the configured transport."""
    config = _config()
    transport = get_transport(config=config)
    event = DomainEvent(event_name=event_name, snapshot=_parse_json(snapshot, "--snapshot"))

    async def _publish() -> None:
        async with transport:
            await transport.publish(topic or config.transport.topic, event)

    _run(_publish())
    typer.echo(f"Published event {event.event_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
