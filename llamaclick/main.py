"""LlamaClick entry point: wires config, backends and the session together."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any

import click

from llamaclick.browser import create_browser
from llamaclick.config import Settings, load_settings
from llamaclick.core.llm import create_provider
from llamaclick.core.registry import SessionRegistry
from llamaclick.core.session import Session, SessionResources, SessionResult
from llamaclick.errors import ConfigError, PlanningError
from llamaclick.history.store import HistoryStore
from llamaclick.models import Objective
from llamaclick.planner.engine import ObjectivePlanner
from llamaclick.planner.models import Plan
from llamaclick.utils.logging import get_logger, setup_logging
from llamaclick.workflow import load_workflow

log = get_logger(__name__)

# Outcomes use 0-3; see Outcome.exit_code
EXIT_USAGE_ERROR = 4


def build_session(settings: Settings, objective: Objective | None = None, plan: Plan | None = None) -> Session:
    """Create a session with the configured browser and, for objectives, an LLM planner."""
    agent = settings.agent
    if agent.capture_failures and not agent.artifacts_dir:
        agent = agent.model_copy(update={"artifacts_dir": str(settings.get_data_dir() / "artifacts")})
    browser = create_browser(settings.browser)
    if plan is not None:
        return Session(SessionResources(browser), agent, plan=plan)

    llm = create_provider(settings.llm)
    planner = ObjectivePlanner(
        llm,
        max_steps=agent.max_steps,
        snapshot_token_budget=agent.snapshot_token_budget,
    )
    return Session(
        SessionResources(browser, llm), agent, objective=objective, planner=planner
    )


async def run_session(settings: Settings, session: Session, save: bool = True) -> SessionResult:
    registry = SessionRegistry()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        log.info("shutdown_signal", session=session.id)
        registry.cancel(session.id, "interrupted")

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

    registry.launch(session)
    try:
        result = await registry.wait(session.id)
    finally:
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        registry.remove(session.id)

    if save:
        store = HistoryStore(settings.get_data_dir() / "history.db")
        await store.start()
        try:
            await store.save_session(result)
        finally:
            await store.stop()
    return result


def _report(result: SessionResult) -> None:
    click.echo(f"Session {result.session_id}: {result.outcome.value}")
    if result.plan is not None:
        for step in result.plan.steps:
            attempts = len(result.history.attempts_for(step.id))
            click.echo(
                f"  {step.id:>2}. [{step.status.value:<9}] {step.action.value:<8} "
                f"{step.description} ({attempts} attempt{'s' if attempts != 1 else ''})"
            )
    if result.extracted:
        click.echo("Extracted:")
        click.echo(json.dumps({str(k): v for k, v in result.extracted.items()}, indent=2, default=str))
    if result.error is not None:
        click.echo(f"Reason: {result.error}", err=True)


def _settings(ctx: click.Context, overrides: dict[str, Any] | None = None) -> Settings:
    try:
        settings = load_settings(ctx.obj["config_path"], overrides=overrides)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_USAGE_ERROR)
    if ctx.obj["log_level"]:
        settings.log_level = ctx.obj["log_level"]
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    return settings


def _browser_overrides(headless: bool | None) -> dict[str, Any]:
    if headless is None:
        return {}
    return {"browser": {"headless": headless}}


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """LlamaClick: plan and run web automation objectives."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--url", required=True, help="Page to start from")
@click.option("--objective", required=True, help="What to accomplish, in plain language")
@click.option("--timeout", type=float, default=None, help="Session time limit in seconds")
@click.option("--max-steps", type=int, default=None, help="Cap on planned steps")
@click.option("--headless/--no-headless", default=None, help="Override browser.headless")
@click.option("--save/--no-save", default=True, help="Store the session history")
@click.pass_context
def run(
    ctx: click.Context,
    url: str,
    objective: str,
    timeout: float | None,
    max_steps: int | None,
    headless: bool | None,
    save: bool,
) -> None:
    """Plan OBJECTIVE against URL and carry it out."""
    settings = _settings(ctx, _browser_overrides(headless))
    goal = Objective(text=objective, start_url=url, timeout_seconds=timeout, max_steps=max_steps)
    session = build_session(settings, objective=goal)
    result = asyncio.run(run_session(settings, session, save=save))
    _report(result)
    ctx.exit(result.exit_code)


@cli.command()
@click.option("--file", "path", required=True, type=click.Path(dir_okay=False), help="Workflow YAML")
@click.option("--headless/--no-headless", default=None, help="Override browser.headless")
@click.option("--save/--no-save", default=True, help="Store the session history")
@click.pass_context
def workflow(ctx: click.Context, path: str, headless: bool | None, save: bool) -> None:
    """Run the steps listed in a workflow file."""
    settings = _settings(ctx, _browser_overrides(headless))
    try:
        plan = load_workflow(path)
    except (ConfigError, PlanningError) as e:
        click.echo(f"Invalid workflow: {e}", err=True)
        ctx.exit(EXIT_USAGE_ERROR)
    session = build_session(settings, plan=plan)
    result = asyncio.run(run_session(settings, session, save=save))
    _report(result)
    ctx.exit(result.exit_code)


@cli.command()
@click.argument("session_id", required=False)
@click.option("--limit", default=20, help="How many sessions to list")
@click.option("--json", "as_json", is_flag=True, help="Print raw records as JSON")
@click.pass_context
def history(ctx: click.Context, session_id: str | None, limit: int, as_json: bool) -> None:
    """Show a stored session, or list recent sessions."""
    settings = _settings(ctx)

    async def _load() -> Any:
        store = HistoryStore(settings.get_data_dir() / "history.db")
        await store.start()
        try:
            if session_id:
                return await store.load_session(session_id)
            return await store.list_sessions(limit=limit)
        finally:
            await store.stop()

    data = asyncio.run(_load())
    if session_id and data is None:
        click.echo(f"No session {session_id}", err=True)
        ctx.exit(EXIT_USAGE_ERROR)
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    if not session_id:
        for row in data:
            click.echo(f"{row['id']}  {row['outcome']:<9}  {row['saved_at']}  {row['objective'][:60]}")
        return

    click.echo(f"Session {data['id']}: {data['outcome']}")
    click.echo(f"Objective: {data['objective']}")
    for rec in data["records"]:
        if rec["record"] == "attempt":
            status = "ok" if rec["failure"] is None else rec["failure"]
            click.echo(f"  step {rec['step_id']} attempt {rec['attempt']}: {status} (target={rec['target']})")
            for path in rec.get("artifacts") or ():
                click.echo(f"      saved {path}")
        elif rec["record"] == "recovery":
            click.echo(f"    -> {rec['decision']}: {rec['rationale']}")
        else:
            click.echo(f"  {rec['outcome']} after {rec['elapsed_seconds']}s, replans={rec['replans_used']}")


if __name__ == "__main__":
    cli()
