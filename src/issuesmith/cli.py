"""CLI entry points for issuesmith."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

import click
import structlog

from issuesmith.assistant import create_assistant
from issuesmith.config import IssuesmithConfig, load_config
from issuesmith.dispatch import IssueDispatcher
from issuesmith.github import GitHubClient
from issuesmith.scheduler import Scheduler
from issuesmith.state import StateStore
from issuesmith.workflow import IssueAgent

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
)


def _get_config(ctx: click.Context) -> IssuesmithConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e)) from e


def _parse_issue_ref(ref: str) -> tuple[str, str, int]:
    """Parse 'owner/repo#number' into (owner, repo, number)."""
    match = re.match(r"^([^/]+)/([^#]+)#(\d+)$", ref)
    if not match:
        raise click.BadParameter(
            f"Invalid issue reference: {ref}. Expected format: owner/repo#number"
        )
    return match.group(1), match.group(2), int(match.group(3))


@dataclass
class Runtime:
    github: GitHubClient
    store: StateStore
    identity: str
    agent: IssueAgent


async def _bootstrap(config: IssuesmithConfig) -> Runtime:
    github = GitHubClient(config.github_token)
    identity = await github.get_authenticated_user()
    store = StateStore(config.resolved_db_path())
    await store.init_db()
    agent = IssueAgent(config, github, create_assistant(config), store, identity)
    structlog.get_logger().info("agent_identity", identity=identity)
    return Runtime(github=github, store=store, identity=identity, agent=agent)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML config file (default: ./config.yaml if present).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """issuesmith: assigned GitHub issues in, pull requests out."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the polling agent."""
    config = _get_config(ctx)
    if not config.repositories:
        raise click.ClickException("No repositories configured")
    click.echo(config.display())

    async def _run() -> None:
        rt = await _bootstrap(config)
        scheduler = Scheduler(config, rt.github, rt.store, rt.agent, rt.identity)
        await scheduler.start()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Shutting down...")


@main.command()
@click.option("--host", default=None, help="Bind address (overrides server_host).")
@click.option("--port", type=int, default=None, help="Port (overrides server_port).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the webhook server instead of polling."""
    import uvicorn

    from issuesmith.webhook import create_app

    config = _get_config(ctx)
    if not config.webhook_secret:
        click.echo("Warning: webhook_secret is not set; deliveries will not be verified.")

    rt = asyncio.run(_bootstrap(config))
    dispatcher = IssueDispatcher(config.max_concurrent_issues)
    app = create_app(config, rt.agent, dispatcher, rt.identity)
    uvicorn.run(app, host=host or config.server_host, port=port or config.server_port)


@main.command()
@click.argument("issue_ref")
@click.pass_context
def process(ctx: click.Context, issue_ref: str) -> None:
    """Run one workflow step for a single issue.

    ISSUE_REF should be in the format owner/repo#number (e.g. octo/widgets#42).
    """
    owner, repo, number = _parse_issue_ref(issue_ref)
    config = _get_config(ctx)

    async def _process() -> None:
        rt = await _bootstrap(config)
        scheduler = Scheduler(config, rt.github, rt.store, rt.agent, rt.identity)
        await scheduler.process_single(owner, repo, number)

    asyncio.run(_process())
    click.echo("Done.")


@main.command()
@click.option("--export", "-e", "export", is_flag=True, help="Export statistics to CSV.")
@click.option("--file", "-f", "csv_file", default="usage_stats.csv", show_default=True)
@click.pass_context
def stats(ctx: click.Context, export: bool, csv_file: str) -> None:
    """Show token usage and cost per issue."""
    from issuesmith.stats import export_csv, render_table

    config = _get_config(ctx)
    store = StateStore(config.resolved_db_path())

    async def _load():
        await store.init_db()
        return await store.list_all()

    records = asyncio.run(_load())
    if not records:
        click.echo("No issues found in database.")
        return

    click.echo(render_table(records))
    if export:
        path = export_csv(records, csv_file)
        click.echo(f"Statistics exported to: {path}")


@main.command()
@click.argument("issue_ref")
@click.pass_context
def forget(ctx: click.Context, issue_ref: str) -> None:
    """Delete the stored record for ISSUE_REF (owner/repo#number)."""
    owner, repo, number = _parse_issue_ref(issue_ref)
    config = _get_config(ctx)
    store = StateStore(config.resolved_db_path())

    async def _forget() -> bool:
        await store.init_db()
        return await store.delete(owner, repo, number)

    if asyncio.run(_forget()):
        click.echo(f"Forgot {owner}/{repo}#{number}")
    else:
        click.echo(f"No record for {owner}/{repo}#{number}")


@main.command("show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration with secrets masked."""
    click.echo(_get_config(ctx).display())
