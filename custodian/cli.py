"""Command line interface for operating the custodian engine."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from custodian.config import load_config
from custodian.engine import WorkflowEngine, create_engine
from custodian.errors import CustodianError
from custodian.models import RequestFilter, RequestStatus
from custodian.persistence import get_repository
from custodian.registry import DefinitionRegistry, builtin_definitions, load_definitions
from custodian.scheduler import Scheduler

app = typer.Typer(help="CLI for custodian workflows")

# Command groups
definitions_app = typer.Typer(help="Commands for managing workflow definitions")
requests_app = typer.Typer(help="Commands for inspecting and operating requests")
scheduler_app = typer.Typer(help="Commands for running the scheduler")

app.add_typer(definitions_app, name="definitions")
app.add_typer(requests_app, name="requests")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """Custodian CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return create_engine(load_config(), repository=get_repository())


async def _started(engine: WorkflowEngine) -> WorkflowEngine:
    await engine.start()
    return engine


@definitions_app.command("list")
def definitions_list(path: Optional[Path] = None) -> None:
    """
    List workflow templates.

    Without ``--path`` the built-in templates are listed together with any
    stored in the configured repository.

    Example:
        custodian definitions list
        custodian definitions list --path ./workflows.yaml
    """
    if path is not None:
        try:
            definitions = load_definitions(path)
        except FileNotFoundError:
            typer.secho("Specified path does not exist", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        registry = DefinitionRegistry(definitions)
    else:
        registry = DefinitionRegistry(builtin_definitions())
        asyncio.run(registry.load(get_repository()))

    for key in registry.keys():
        definition = registry.get(key)
        typer.echo(
            f"{key}\t{definition.name} v{definition.version}\t{len(definition.steps)} steps"
        )


@definitions_app.command("import")
def definitions_import(path: Path) -> None:
    """
    Store templates from a YAML file in the configured repository.

    Example:
        custodian definitions import ./workflows.yaml
    """
    try:
        definitions = load_definitions(path)
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.secho(f"Invalid definitions file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    asyncio.run(DefinitionRegistry(definitions).save(get_repository()))
    for definition in definitions:
        typer.echo(f"Imported {definition.key}")


@requests_app.command("list")
def requests_list(
    subject: Optional[str] = None,
    tenant: Optional[str] = None,
    status: Optional[RequestStatus] = None,
) -> None:
    """
    List requests, newest first.

    Example:
        custodian requests list --status in_progress
        # Output: 3f0c...    subject-1    account_closure    in_progress    37%
    """
    request_filter = RequestFilter(
        subject_id=subject,
        tenant_id=tenant,
        statuses=[status] if status is not None else None,
    )
    requests = asyncio.run(get_repository().list(request_filter))
    if not requests:
        typer.echo("No requests found")
        return
    for request in requests:
        typer.echo(
            f"{request.request_id}\t{request.subject_id}\t{request.process_type}\t"
            f"{request.status.value}\t{request.progress}%"
        )


@requests_app.command("show")
def requests_show(request_id: str) -> None:
    """
    Show a request's status, steps and audit trail.

    Example:
        custodian requests show 3f0c...
    """
    request = asyncio.run(get_repository().get(request_id))
    if request is None:
        typer.echo("Request not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Request {request.request_id}: {request.status.value} "
        f"(priority {request.priority.value}, {request.progress}%)"
    )
    typer.echo(f"Subject: {request.subject_id} Tenant: {request.tenant_id}")
    for step in request.workflow.steps:
        marker = "*" if step.id == request.current_step_id else "-"
        typer.echo(f"{marker} {step.id}: {step.status.value}")
    typer.echo("Audit trail:")
    for entry in request.audit_trail:
        typer.echo(
            f"  {entry.sequence:>3} {entry.timestamp.isoformat()} {entry.action.value} "
            f"by {entry.actor} {entry.details}".rstrip()
        )


@requests_app.command("submit")
def requests_submit(
    subject: str,
    tenant: str,
    process_type: str = typer.Option("account_closure", help="Workflow process type"),
    reason: str = typer.Option("user_request", help="Request reason"),
    urgency: str = typer.Option("routine", help="routine, expedited, urgent or emergency"),
    custom_reason: Optional[str] = None,
) -> None:
    """
    Submit a new request.

    Example:
        custodian requests submit subject-1 tenant-a --reason fraud_detected
    """

    async def _submit():
        engine = await _started(_engine())
        try:
            return await engine.submit(
                subject, tenant, process_type, reason, urgency, custom_reason
            )
        finally:
            await engine.close()

    try:
        request = asyncio.run(_submit())
    except CustodianError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Submitted {request.request_id}: {request.status.value}")


@requests_app.command("cancel")
def requests_cancel(request_id: str, actor: str, reason: str = "") -> None:
    """
    Cancel a request before its point of no return.

    Example:
        custodian requests cancel 3f0c... ops-1 --reason "customer withdrew"
    """

    async def _cancel():
        engine = await _started(_engine())
        try:
            return await engine.cancel(request_id, actor, reason)
        finally:
            await engine.close()

    try:
        request = asyncio.run(_cancel())
    except CustodianError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Request {request.request_id}: {request.status.value}")


@scheduler_app.command("run")
def scheduler_run(
    ticks: Optional[int] = typer.Option(None, help="Stop after this many ticks"),
) -> None:
    """
    Run the scheduler loop against the configured repository.

    Example:
        custodian scheduler run
        custodian scheduler run --ticks 1
    """

    async def _run() -> int:
        engine = await _started(_engine())
        try:
            return await Scheduler(engine).run(max_ticks=ticks)
        finally:
            await engine.close()

    try:
        completed = asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Scheduler interrupted")
        return
    typer.echo(f"Scheduler finished after {completed} tick(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
