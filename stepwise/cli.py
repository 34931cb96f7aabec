"""Command line interface for inspecting and running Stepwise workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import typer

from stepwise.catalogue import register_builtin_workflows
from stepwise.cli_utils.loader import load_definitions, load_registry, parse_json_object
from stepwise.config import StepwiseConfig, load_config
from stepwise.engine import WorkflowEngine
from stepwise.errors import InvalidDefinition, StepwiseError
from stepwise.manager import WorkflowManager
from stepwise.models import AgentStep, ConditionStep, DelayStep, ParallelStep, Step

app = typer.Typer(help="CLI for Stepwise workflows")

workflow_app = typer.Typer(help="Commands for inspecting and running workflows")

app.add_typer(workflow_app, name="workflow")

_state: Dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to a stepwise.yaml configuration file"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """Stepwise CLI entry point."""
    _state["config_path"] = config
    settings = load_config(config)
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> StepwiseConfig:
    return load_config(_state["config_path"])


def _describe_step(step: Step) -> str:
    if isinstance(step, AgentStep):
        text = f"agent {step.agent_name}.{step.action}"
        if step.condition is not None:
            text += f" if {step.condition.source}"
        return text
    if isinstance(step, ConditionStep):
        return (
            f"condition {step.condition.source} "
            f"(true -> {step.on_true or 'next'}, false -> {step.on_false or 'next'})"
        )
    if isinstance(step, ParallelStep):
        return f"parallel [{', '.join(child.name for child in step.steps)}]"
    if isinstance(step, DelayStep):
        return f"delay {step.delay_ms}ms"
    return "transform"


def _engine_with_definitions(definitions: Optional[str]) -> WorkflowEngine:
    engine = WorkflowEngine(config=_config().engine)
    register_builtin_workflows(engine)
    if definitions:
        try:
            for workflow_id, definition in load_definitions(definitions).items():
                engine.register_workflow(workflow_id, definition)
        except (ValueError, TypeError, ImportError, AttributeError) as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1)
    return engine


@workflow_app.command("list")
def workflow_list(
    definitions: Optional[str] = typer.Option(
        None, help="module:attribute of extra workflow definitions to register"
    ),
) -> None:
    """
    List registered workflow definitions.

    Example:
        stepwise workflow list
        # Output: content-creation    Content creation    4 steps
    """
    engine = _engine_with_definitions(definitions)
    workflows = engine.get_workflows()
    if not workflows:
        typer.echo("No workflows found")
        return
    for workflow in workflows:
        typer.echo(f"{workflow.id}\t{workflow.name}\t{len(workflow.steps)} steps")


@workflow_app.command("show")
def workflow_show(
    workflow_id: str,
    definitions: Optional[str] = typer.Option(
        None, help="module:attribute of extra workflow definitions to register"
    ),
) -> None:
    """
    Show the steps of a workflow definition.

    Example:
        stepwise workflow show content-publishing
    """
    engine = _engine_with_definitions(definitions)
    workflow = engine.get_workflow(workflow_id)
    if workflow is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow.id}: {workflow.name} (v{workflow.version})")
    if workflow.description:
        typer.echo(workflow.description)
    for step in workflow.steps:
        typer.echo(f"- {step.name}: {_describe_step(step)}")
        if isinstance(step, ParallelStep):
            for child in step.steps:
                typer.echo(f"  - {child.name}: {_describe_step(child)}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    data: Optional[str] = typer.Option(None, help="Initial data as a JSON object"),
    registry: Optional[str] = typer.Option(
        None, help="module:attribute of the agent registry serving agent steps"
    ),
    definitions: Optional[str] = typer.Option(
        None, help="module:attribute of extra workflow definitions to register"
    ),
) -> None:
    """
    Run a workflow to completion and print its final data.

    Example:
        stepwise workflow run trending-content --data '{"user_id": "u1"}' \\
            --registry myapp.agents:registry
    """
    try:
        initial_data = parse_json_object(data)
        agent_registry = load_registry(registry) if registry else None
        extra = load_definitions(definitions) if definitions else {}
    except (ValueError, TypeError, ImportError, AttributeError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run() -> int:
        async with WorkflowManager(agent_registry, _config()) as manager:
            try:
                for extra_id, definition in extra.items():
                    manager.register_workflow(extra_id, definition)
            except InvalidDefinition as exc:
                typer.secho(str(exc), fg=typer.colors.RED)
                return 1
            try:
                instance_id = await manager.start_workflow(workflow_id, initial_data)
            except StepwiseError as exc:
                typer.secho(f"Workflow failed: {exc}", fg=typer.colors.RED)
                if exc.instance_id:
                    _echo_instance(manager, exc.instance_id)
                return 1
            _echo_instance(manager, instance_id)
            return 0

    code = asyncio.run(_run())
    if code:
        raise typer.Exit(code=code)


def _echo_instance(manager: WorkflowManager, instance_id: str) -> None:
    instance = manager.get_workflow_status(instance_id)
    if instance is None:
        return
    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    for entry in instance.history:
        typer.echo(f"- {entry.step_name}: completed")
    for error in instance.errors:
        typer.echo(f"! {error.step_name}: {error.error_type}: {error.error}")
    typer.echo(json.dumps(instance.data, indent=2, default=str))


@app.command("health")
def health() -> None:
    """Start a workflow manager and print its health report."""

    async def _check() -> Dict[str, Any]:
        async with WorkflowManager(config=_config()) as manager:
            return manager.health_check()

    report = asyncio.run(_check())
    typer.echo(json.dumps(report, indent=2, default=str))
    if report["status"] != "healthy":
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
