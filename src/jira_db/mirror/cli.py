"""CLI commands for syncing and querying the Jira mirror."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from dotenv import load_dotenv

from jira_db.mirror.config import MirrorConfig
from jira_db.mirror.context import AppState
from jira_db.mirror.sync import SyncResult
from jira_db.utils.dates import parse_timestamp
from jira_db.utils.env import is_env_truthy
from jira_db.utils.logging import setup_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run(ctx: click.Context, func: Callable[[AppState], Awaitable[T]]) -> T:
    """Run ``func`` on the command's state, closing resources afterwards."""
    state: AppState = ctx.obj["state"]

    async def runner() -> T:
        try:
            return await func(state)
        finally:
            await state.aclose()

    return asyncio.run(runner())


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [p.strip().upper() for p in value.split(",") if p.strip()]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_sync_result(result: SyncResult) -> None:
    if not result.success:
        click.secho(f"{result.project_key}: FAILED - {result.error_message}", fg="red")
        return
    color = "yellow" if result.partial else "green"
    click.secho(
        f"{result.project_key}: {result.issues_synced} issues, "
        f"{result.history_items_synced} history items, "
        f"{result.snapshots_generated} snapshots ({result.sync_type}, "
        f"{result.duration_seconds:.1f}s)",
        fg=color,
    )
    if result.issues_deleted:
        click.echo(f"  Marked deleted: {result.issues_deleted}")
    for message in result.metadata_errors + result.warnings:
        click.echo(f"  - {message}")


@click.group()
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (can be used multiple times)",
)
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to .env file",
)
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False),
    help="SQLite database path (overrides JIRA_DB_PATH)",
)
@click.pass_context
def mirror_cli(
    ctx: click.Context, verbose: int, env_file: str | None, db_path: str | None
) -> None:
    """Mirror Jira projects into a local SQL database.

    Sync issues with their change history, rebuild point-in-time snapshots
    and query the mirror with read-only SQL.
    """
    ctx.ensure_object(dict)

    if verbose == 1:
        logging_level = logging.INFO
    elif verbose >= 2:
        logging_level = logging.DEBUG
    else:
        if is_env_truthy("JIRA_DB_VERY_VERBOSE", "false"):
            logging_level = logging.DEBUG
        elif is_env_truthy("JIRA_DB_VERBOSE", "false"):
            logging_level = logging.INFO
        else:
            logging_level = logging.WARNING

    logging_stream = sys.stdout if is_env_truthy("JIRA_DB_LOGGING_STDOUT") else sys.stderr
    setup_logging(logging_level, logging_stream)

    if env_file:
        load_dotenv(env_file, override=True)
    else:
        load_dotenv(override=True)

    try:
        config = MirrorConfig.from_env()
    except ValueError as e:
        click.secho(f"Error: invalid configuration: {e}", fg="red", err=True)
        raise SystemExit(1) from e
    if db_path:
        config.db_path = Path(db_path)

    ctx.obj["verbose"] = verbose
    ctx.obj["state"] = AppState(config)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@mirror_cli.command("sync")
@click.option(
    "--full",
    is_flag=True,
    help="Perform full sync (default is incremental)",
)
@click.option(
    "--projects",
    type=str,
    help="Comma-separated project keys to sync (e.g., 'PROJ,ENG')",
)
@click.pass_context
def sync_command(ctx: click.Context, full: bool, projects: str | None) -> None:
    """Sync Jira issues, change history and metadata.

    By default each project continues from its last watermark, resuming an
    interrupted run if there is one. Use --full to re-read everything.
    """
    project_list = _split(projects)
    click.echo(f"Starting {'full' if full else 'incremental'} sync...")
    if project_list:
        click.echo(f"Projects: {', '.join(project_list)}")

    try:
        results = _run(
            ctx, lambda state: state.sync_engine().sync_projects(project_list, full=full)
        )
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if not results:
        click.secho(
            "No projects selected. Pass --projects, set JIRA_DB_SYNC_PROJECTS "
            "or enable a project with 'jira-db project enable KEY'.",
            fg="yellow",
        )
        return

    click.echo("")
    for result in results:
        _echo_sync_result(result)
    if any(not r.success for r in results):
        raise SystemExit(1)


@mirror_cli.command("projects")
@click.option("--refresh", is_flag=True, help="Fetch the project list from Jira first")
@click.pass_context
def projects_command(ctx: click.Context, refresh: bool) -> None:
    """List projects known to the mirror."""

    async def run(state: AppState):
        if refresh:
            return await state.sync_engine().sync_project_list()
        return state.projects.find_all()

    try:
        projects = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if not projects:
        click.echo("No projects. Run 'jira-db projects --refresh'.")
        return
    for project in projects:
        flag = "*" if project.sync_enabled else " "
        synced = project.last_synced_at.isoformat() if project.last_synced_at else "never"
        click.echo(f"[{flag}] {project.key:<12} {project.name}  (last sync: {synced})")


@mirror_cli.group("project")
def project_group() -> None:
    """Enable or disable projects for scheduled sync."""


def _set_enabled(ctx: click.Context, key: str, enabled: bool) -> None:
    async def run(state: AppState) -> None:
        await state.sync_engine().resolve_project(key)
        state.projects.set_sync_enabled(key, enabled)

    try:
        _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e
    click.echo(f"{key}: sync {'enabled' if enabled else 'disabled'}")


@project_group.command("enable")
@click.argument("key")
@click.pass_context
def enable_command(ctx: click.Context, key: str) -> None:
    """Flag a project for sync."""
    _set_enabled(ctx, key.upper(), True)


@project_group.command("disable")
@click.argument("key")
@click.pass_context
def disable_command(ctx: click.Context, key: str) -> None:
    """Stop syncing a project."""
    _set_enabled(ctx, key.upper(), False)


@mirror_cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show sync status per project."""

    async def run(state: AppState) -> dict[str, Any]:
        return state.sync_engine().get_sync_status()

    try:
        status = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    click.echo("Mirror Status")
    click.echo("=" * 40)
    click.echo(f"Database path: {status['db_path']}")
    for project in status["projects"]:
        click.echo("")
        click.echo(f"{project['project_key']} ({project['issues']} issues)")
        click.echo(f"  Sync enabled:   {project['sync_enabled']}")
        click.echo(f"  Watermark:      {project['watermark'] or 'none'}")
        click.echo(f"  Last completed: {project['last_completed_at'] or 'never'}")
        latest = project["latest_run"]
        if latest:
            click.echo(
                f"  Latest run:     {latest['status']} ({latest['sync_type']}, "
                f"{latest['items_synced']} items)"
            )
            if latest.get("error_message"):
                click.echo(f"  Error:          {latest['error_message']}")
        if project["pending_checkpoint"]:
            checkpoint = project["pending_checkpoint"]
            click.secho(
                f"  Resumable from {checkpoint['last_issue_key']} "
                f"({checkpoint['items_processed']} issues done)",
                fg="yellow",
            )


@mirror_cli.command("verify")
@click.argument("project")
@click.pass_context
def verify_command(ctx: click.Context, project: str) -> None:
    """Compare remote and local issue counts for PROJECT."""
    try:
        report = _run(ctx, lambda state: state.sync_engine().verify_project(project.upper()))
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    click.echo(f"Remote: {report['remote_total']}  Local: {report['local_total']}")
    for row in report["by_status"]:
        marker = "" if row["remote"] == row["local"] else "  <-- mismatch"
        click.echo(f"  {row['status']:<24} {row['remote']:>6} {row['local']:>6}{marker}")
    if report["matches"]:
        click.secho("Counts match.", fg="green")
    else:
        click.secho("Counts differ. Run 'jira-db sync --full' to reconcile.", fg="yellow")
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# Derived data
# ---------------------------------------------------------------------------


@mirror_cli.command("fields")
@click.option("--project", type=str, help="Only expand issues of this project")
@click.pass_context
def fields_command(ctx: click.Context, project: str | None) -> None:
    """Sync field definitions and refresh the flattened issue view."""

    async def run(state: AppState):
        project_id = None
        if project:
            project_id = (await state.sync_engine().resolve_project(project.upper())).id
        return await state.field_evolver().execute(project_id)

    try:
        result = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    click.echo(f"Fields synced:   {result.fields_synced}")
    click.echo(f"Columns added:   {result.columns_added}")
    click.echo(f"Issues expanded: {result.issues_expanded}")
    for error in result.errors:
        click.secho(f"  - {error}", fg="yellow")


@mirror_cli.command("snapshots")
@click.argument("project")
@click.option("--restart", is_flag=True, help="Ignore any saved checkpoint")
@click.pass_context
def snapshots_command(ctx: click.Context, project: str, restart: bool) -> None:
    """Regenerate point-in-time snapshots for every issue of PROJECT."""

    async def run(state: AppState):
        return state.sync_engine().generate_snapshots(project.upper(), resume=not restart)

    try:
        result = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e
    click.echo(
        f"Generated {result.snapshots_generated} snapshots for "
        f"{result.issues_processed} issues in {result.project_key}"
    )


@mirror_cli.command("history")
@click.argument("issue_key")
@click.option("--field", type=str, help="Only changes of this field")
@click.option("--limit", type=int, default=50, help="Maximum changes to show")
@click.pass_context
def history_command(
    ctx: click.Context, issue_key: str, field: str | None, limit: int
) -> None:
    """Show the change history of ISSUE_KEY, newest first."""

    async def run(state: AppState):
        return state.change_history.find_by_issue_key(issue_key.upper(), field=field, limit=limit)

    try:
        items = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if not items:
        click.echo(f"No change history for {issue_key}.")
        return
    for item in items:
        click.echo(
            f"{item.changed_at.isoformat()}  {item.author_display_name or 'Unknown':<20} "
            f"{item.field}: {item.from_string or '-'} -> {item.to_string or '-'}"
        )


@mirror_cli.command("snapshot")
@click.argument("issue_key")
@click.option("--at", "at", type=str, help="Timestamp (ISO-8601); defaults to all versions")
@click.pass_context
def snapshot_command(ctx: click.Context, issue_key: str, at: str | None) -> None:
    """Show ISSUE_KEY as it was at a point in time."""
    when = parse_timestamp(at) if at else None
    if at and when is None:
        click.secho(f"Error: cannot parse timestamp {at!r}", fg="red", err=True)
        raise SystemExit(1)

    async def run(state: AppState):
        if when is not None:
            found = state.snapshots.find_at(issue_key.upper(), when)
            return [found] if found else []
        return state.snapshots.find_by_issue_key(issue_key.upper())

    try:
        snapshots = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if not snapshots:
        click.echo(f"No snapshots for {issue_key}.")
        return
    _echo_json([s.model_dump(mode="json", exclude={"raw_data"}) for s in snapshots])


@mirror_cli.command("sql")
@click.argument("query")
@click.option("--limit", type=int, help="Row limit when the query has no LIMIT")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def sql_command(ctx: click.Context, query: str, limit: int | None, as_json: bool) -> None:
    """Run a read-only SELECT against the mirror."""

    async def run(state: AppState):
        return state.sql_gateway().execute(query, limit)

    try:
        result = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if as_json:
        _echo_json(result)
        return
    click.echo(" | ".join(result["columns"]))
    click.echo("-" * 60)
    for row in result["rows"]:
        click.echo(" | ".join("" if v is None else str(v) for v in row))
    click.echo(f"({result['row_count']} rows)")


@mirror_cli.command("report")
@click.argument("output_path", type=click.Path(dir_okay=False))
@click.option("--projects", type=str, help="Comma-separated project keys")
@click.pass_context
def report_command(ctx: click.Context, output_path: str, projects: str | None) -> None:
    """Write report data (breakdowns and change history) as JSON."""

    async def run(state: AppState):
        return state.report_builder().build(_split(projects))

    try:
        report = _run(ctx, run)
        Path(output_path).write_text(report.model_dump_json(indent=2))
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e
    click.secho(
        f"Wrote report for {len(report.projects)} projects "
        f"({report.total_issues} issues) to {output_path}",
        fg="green",
    )


@mirror_cli.command("embeddings")
@click.option("--project", type=str, help="Only this project")
@click.option("--force", is_flag=True, help="Re-embed issues whose text is unchanged")
@click.pass_context
def embeddings_command(ctx: click.Context, project: str | None, force: bool) -> None:
    """Generate embeddings for semantic search."""
    try:
        result = _run(
            ctx,
            lambda state: state.embedder().generate(
                project.upper() if project else None, force=force
            ),
        )
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    click.echo(f"Issues:    {result.total_issues}")
    click.echo(f"Generated: {result.embeddings_generated}")
    click.echo(f"Skipped:   {result.embeddings_skipped}")
    click.echo(f"Duration:  {result.duration_seconds:.1f}s")
    if result.errors:
        click.secho(f"Errors:    {result.errors}", fg="yellow")


@mirror_cli.command("search")
@click.argument("query")
@click.option("--project", type=str, help="Filter by project key (e.g., 'PROJ')")
@click.option("--limit", type=int, default=10, help="Maximum results to return (default: 10)")
@click.pass_context
def search_command(ctx: click.Context, query: str, project: str | None, limit: int) -> None:
    """Semantic search over embedded issues.

    Example: jira-db search "authentication bugs"
    """
    try:
        results = _run(
            ctx,
            lambda state: state.embedder().semantic_search(
                query, project.upper() if project else None, limit
            ),
        )
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if not results:
        click.secho("No embeddings found. Run 'jira-db embeddings' first.", fg="yellow")
        return
    click.echo(f"Found {len(results)} matching issues:")
    click.echo("-" * 60)
    for r in results:
        click.echo(f"[{r['score']}] {r['key']} - {r['summary'][:60]}")
        click.echo(f"    Type: {r['issue_type']} | Status: {r['status']}")


# ---------------------------------------------------------------------------
# Daemon and write-through commands
# ---------------------------------------------------------------------------


@mirror_cli.command("daemon")
@click.option("--interval", type=int, help="Sync interval in minutes")
@click.option(
    "--projects",
    type=str,
    help="Comma-separated project keys to sync (e.g., 'PROJ,ENG')",
)
@click.pass_context
def daemon_command(ctx: click.Context, interval: int | None, projects: str | None) -> None:
    """Run background sync daemon.

    Continuously syncs Jira at regular intervals. Press Ctrl+C to stop.
    """
    from jira_db.mirror.scheduler import run_daemon

    state: AppState = ctx.obj["state"]
    if projects:
        state.config.sync_projects = _split(projects) or []
    click.echo(
        f"Starting sync daemon (interval: {interval or state.config.sync_interval_minutes} minutes)..."
    )

    try:
        _run(ctx, lambda s: run_daemon(s.sync_engine(), interval_minutes=interval))
    except KeyboardInterrupt:
        click.echo("\nDaemon stopped.")
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e


@mirror_cli.command("create-issue")
@click.argument("project")
@click.argument("summary")
@click.option("--description", type=str, help="Plain-text description")
@click.option("--type", "issue_type", default="Task", help="Issue type name (default: Task)")
@click.pass_context
def create_issue_command(
    ctx: click.Context,
    project: str,
    summary: str,
    description: str | None,
    issue_type: str,
) -> None:
    """Create an issue in Jira. The mirror picks it up on the next sync."""
    try:
        created = _run(
            ctx,
            lambda state: state.jira.create_issue(
                project.upper(), summary, description=description, issue_type=issue_type
            ),
        )
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e
    click.secho(f"Created {created.key}", fg="green")


@mirror_cli.command("transition")
@click.argument("issue_key")
@click.argument("transition", required=False)
@click.pass_context
def transition_command(ctx: click.Context, issue_key: str, transition: str | None) -> None:
    """List transitions of ISSUE_KEY, or apply TRANSITION (id or name)."""

    async def run(state: AppState):
        available = await state.jira.get_issue_transitions(issue_key.upper())
        if transition is None:
            return available, None
        wanted = transition.lower()
        match = next(
            (t for t in available if t.id == transition or t.name.lower() == wanted),
            None,
        )
        if match is not None:
            await state.jira.transition_issue(issue_key.upper(), match.id)
        return available, match

    try:
        available, applied = _run(ctx, run)
    except Exception as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1) from e

    if transition is None:
        for t in available:
            click.echo(f"{t.id:>6}  {t.name}" + (f" -> {t.to_status}" if t.to_status else ""))
        return
    if applied is None:
        click.secho(f"Error: no transition {transition!r} for {issue_key}", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"{issue_key}: applied '{applied.name}'", fg="green")


def main() -> None:
    """Entry point for the mirror CLI."""
    mirror_cli()


if __name__ == "__main__":
    main()
