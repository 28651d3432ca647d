"""Command line interface for running inkflow workflows and workers."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from typing import Optional

import typer

from inkflow.engine import Engine, build_engine
from inkflow.errors import InkflowError
from inkflow.persistence import get_repository

app = typer.Typer(help="CLI for inkflow workflows")

workflow_app = typer.Typer(help="Commands for managing workflows")
worker_app = typer.Typer(help="Commands for running background workers")
events_app = typer.Typer(help="Commands for the automation event outbox")

app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")
app.add_typer(events_app, name="events")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """Inkflow CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine(work_module: Optional[str] = None) -> Engine:
    """Build an engine, loading step work from ``work_module`` when given.

    The module may define ``STEP_WORK`` (step name to async callable),
    ``research_section`` and ``write_section``.
    """
    if not work_module:
        return build_engine()
    module = importlib.import_module(work_module)
    return build_engine(
        work=getattr(module, "STEP_WORK", None),
        researcher=getattr(module, "research_section", None),
        writer=getattr(module, "write_section", None),
    )


@workflow_app.command("create")
def workflow_create(organization_id: str) -> None:
    """
    Create a workflow for an organization in its initial state.

    Example:
        inkflow workflow create org-123
        # Output: 6f1c...    step_1_icp
    """
    engine = _engine()
    workflow = asyncio.run(engine.create_workflow(organization_id))
    typer.echo(f"{workflow.id}\t{workflow.state.value}")


@workflow_app.command("list")
def workflow_list(
    organization: Optional[str] = typer.Option(None, help="Only this organization")
) -> None:
    """
    List workflows with their current state.

    Example:
        inkflow workflow list --organization org-123
    """
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows(organization))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.organization_id}\t{wf.state.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show state, artifacts, approvals and documents for one workflow."""
    from inkflow.approvals import approval_summary

    repo = get_repository()
    try:
        summary = asyncio.run(approval_summary(repo, workflow_id))
    except InkflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id}: {summary['state']}")
    typer.echo(json.dumps(summary, indent=2))


@workflow_app.command("trigger")
def workflow_trigger(
    workflow_id: str,
    step_name: str,
    work_module: Optional[str] = typer.Option(
        None, help="Module providing STEP_WORK for inline steps"
    ),
) -> None:
    """
    Trigger a step the same way the HTTP endpoint does.

    Example:
        inkflow workflow trigger 6f1c... icp --work-module myapp.steps
    """
    engine = _engine(work_module)
    try:
        result = asyncio.run(engine.steps.trigger(step_name, workflow_id))
    except InkflowError as e:
        typer.secho(f"{e.status_code}: {json.dumps(e.to_response())}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result, indent=2))


@worker_app.command("run")
def worker_run(
    work_module: Optional[str] = typer.Option(
        None, help="Module providing STEP_WORK, research_section and write_section"
    ),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that executes background steps and generates documents.

    Example:
        inkflow worker run --work-module myapp.steps --lifespan 300
    """
    engine = _engine(work_module)
    worker = engine.worker()
    typer.echo(f"Starting worker on: {', '.join(worker.topics)}")
    asyncio.run(worker.start(lifespan=lifespan))


@events_app.command("relay")
def events_relay(limit: int = typer.Option(100, help="Maximum events to relay")) -> None:
    """Publish outbox events whose dispatch did not complete."""
    engine = _engine()
    relayed = asyncio.run(engine.executor.relay_pending_events(limit=limit))
    typer.echo(f"Relayed {relayed} events")


@app.command("serve")
def serve(
    host: str = "127.0.0.1",
    port: int = 8000,
    work_module: Optional[str] = typer.Option(
        None, help="Module providing STEP_WORK for inline steps"
    ),
) -> None:
    """Serve the HTTP step-trigger API with uvicorn."""
    import uvicorn

    from inkflow.api import create_app

    uvicorn.run(create_app(_engine(work_module)), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
