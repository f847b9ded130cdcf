"""Main CLI for teammate agent coordination."""

import asyncio
import json
import logging
from contextlib import contextmanager
from pathlib import Path

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..core.config import is_teammate_mode_enabled, load_config
from ..core.manager import RESTORE_STRATEGIES, SYNC_DIRECTIONS, TeammateManager
from ..core.models import EpicState, Priority
from ..errors import ErrorTranslator, TeammateError


console = Console()
translator = ErrorTranslator()

STATE_CHOICES = [s.value for s in EpicState]
PRIORITY_CHOICES = [p.value for p in Priority]
STATE_COLORS = {
    "active": "green",
    "paused": "yellow",
    "blocked": "red",
    "review": "cyan",
    "completed": "blue",
    "archived": "dim",
}


@click.group()
@click.option("--workspace", "-w", default=".", help="Workspace directory")
@click.option("--config", "config_path", default=None, help="Config file (default: <workspace>/config/teammate.yaml)")
@click.option("--teammate-mode/--no-teammate-mode", default=None, help="Force teammate mode on or off")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, workspace, config_path, teammate_mode, verbose):
    """Teammate Agents - coordinate AI agents working through epics."""
    ctx.ensure_object(dict)
    workspace = Path(workspace)
    ctx.obj["workspace"] = workspace
    ctx.obj["config_path"] = Path(config_path) if config_path else workspace / "config" / "teammate.yaml"
    ctx.obj["teammate_mode"] = teammate_mode
    ctx.obj["verbose"] = verbose

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _get_manager(ctx, command: str):
    """Build the manager, or print guidance and return None when teammate mode is off."""
    if "manager" in ctx.obj:
        return ctx.obj["manager"]

    with _handle_errors(ctx):
        config = load_config(ctx.obj["config_path"])
        if not is_teammate_mode_enabled(ctx.obj["teammate_mode"], config):
            _show_disabled(command)
            return None

        # load_config hands out a cached instance
        config = config.model_copy(update={"workspace": ctx.obj["workspace"]})
        tracker = None
        if config.github.configured:
            from ..integrations.github.client import GitHubIssueTracker
            tracker = GitHubIssueTracker(config.github)

        manager = TeammateManager(config=config, tracker=tracker)
    ctx.obj["manager"] = manager
    ctx.obj["enabled"] = True
    return manager


def _show_disabled(command: str) -> None:
    console.print("\n[yellow]Teammate mode is currently disabled[/]\n")
    console.print("[dim]To enable teammate mode, you can:[/]")
    console.print("[dim]  1. Set in config:[/] [cyan]enabled: true[/] [dim]in config/teammate.yaml[/]")
    console.print(f"[dim]  2. Use flag:[/] [cyan]teammate --teammate-mode {command}[/]")
    console.print("[dim]  3. Set environment:[/] [cyan]TEAMMATE_MODE=true[/]\n")


@contextmanager
def _handle_errors(ctx):
    """Render failures through the error translator and exit non-zero."""
    try:
        yield
    except (TeammateError, ValidationError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(translator.format_for_cli(translator.translate(e)))
        if ctx.obj.get("verbose"):
            console.print_exception()
        ctx.exit(1)


def _state_text(state: EpicState) -> str:
    color = STATE_COLORS.get(state.value, "white")
    return f"[{color}]{state.value}[/]"


# ---------------------------------------------------------------------------
# epic
# ---------------------------------------------------------------------------

@cli.group()
def epic():
    """Manage epics."""
    pass


@epic.command("create")
@click.argument("title", nargs=-1, required=True)
@click.option("--description", "-d", default="", help="Epic description")
@click.option("--repo", "-r", default=None, help="Repository: owner/repo")
@click.option("--objective", "objectives", multiple=True, help="Objective (repeatable)")
@click.option("--constraint", "constraints", multiple=True, help="Constraint (repeatable)")
@click.option("--label", "labels", multiple=True, help="Label (repeatable)")
@click.option("--external/--no-external", default=False, help="Also open a tracker issue for the epic")
@click.pass_context
def epic_create(ctx, title, description, repo, objectives, constraints, labels, external):
    """Create a new epic."""
    manager = _get_manager(ctx, "epic create")
    if manager is None:
        return

    with _handle_errors(ctx):
        created = manager.create_epic(
            title=" ".join(title),
            description=description,
            objectives=list(objectives),
            constraints=list(constraints),
            repository=repo,
            labels=list(labels),
            create_external=external,
        )
        console.print("[green]✓ Epic created[/]")
        console.print(f"\n[bold cyan]Epic: {created.title}[/]")
        console.print(f"[dim]ID:[/] {created.id}")
        console.print(f"[dim]State:[/] {_state_text(created.state)}")
        if created.external_issue:
            console.print(f"[dim]Tracker issue:[/] #{created.external_issue}")


@epic.command("list")
@click.option("--status", "-s", "state", type=click.Choice(STATE_CHOICES), default=None, help="Filter by state")
@click.pass_context
def epic_list(ctx, state):
    """List epics."""
    manager = _get_manager(ctx, "epic list")
    if manager is None:
        return

    with _handle_errors(ctx):
        epics = manager.list_epics(EpicState(state) if state else None)
        if not epics:
            console.print("[dim]No epics found[/]")
            return

        table = Table(title="Epics")
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("State")
        table.add_column("Phase")
        table.add_column("Version", justify="right")

        for item in epics:
            table.add_row(
                item.id,
                item.title,
                _state_text(item.state),
                item.current_phase or "-",
                str(item.version),
            )
        console.print(table)


@epic.command("show")
@click.argument("epic_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def epic_show(ctx, epic_id, as_json):
    """Show epic details, progress and issues."""
    manager = _get_manager(ctx, "epic show")
    if manager is None:
        return

    with _handle_errors(ctx):
        details = manager.get_epic(epic_id)
        report = manager.progress_report(epic_id)
        issues = manager.coordinator.issues_for_epic(epic_id)

        if as_json:
            click.echo(json.dumps({
                "epic": details.model_dump(mode="json"),
                "progress": report.model_dump(mode="json"),
                "issues": [i.model_dump(mode="json") for i in issues],
            }, indent=2))
            return

        console.print(f"\n[bold cyan]Epic: {details.title}[/]")
        console.print(f"[dim]ID:[/] {details.id}")
        console.print(f"[dim]State:[/] {_state_text(details.state)}  [dim]Version:[/] {details.version}")
        if details.current_phase:
            console.print(f"[dim]Phase:[/] {details.current_phase}")
        if details.repository:
            console.print(f"[dim]Repository:[/] {details.repository}")
        if details.description:
            console.print(f"\n{details.description}")

        console.print(
            f"\n[bold]Progress:[/] {report.completion_percent:.0f}% complete, "
            f"{report.velocity_per_day:.2f} issues/day"
            + (f", ETA {report.eta_days:.1f} days" if report.eta_days is not None else "")
        )
        if report.risks:
            console.print(f"[yellow]Risks:[/] {', '.join(report.risks)}")

        if issues:
            table = Table()
            table.add_column("Issue")
            table.add_column("#", justify="right")
            table.add_column("Title")
            table.add_column("Priority")
            table.add_column("Status")
            table.add_column("Assignee")
            for issue in sorted(issues, key=lambda i: (i.priority.rank, i.created_at)):
                flag = " [red]needs human[/]" if issue.needs_human else ""
                table.add_row(
                    issue.id,
                    str(issue.number) if issue.number is not None else "-",
                    issue.title,
                    issue.priority.value,
                    issue.status.value + flag,
                    issue.assignee or "-",
                )
            console.print(table)


@epic.command("update")
@click.argument("epic_id")
@click.option("--state", type=click.Choice(STATE_CHOICES), default=None, help="Target state")
@click.option("--phase", default=None, help="Current phase")
@click.option("--title", default=None, help="New title")
@click.option("--description", default=None, help="New description")
@click.option("--reason", default="", help="Reason recorded with a state change")
@click.option("--expected-version", type=int, default=None, help="Fail if the epic changed since this version")
@click.pass_context
def epic_update(ctx, epic_id, state, phase, title, description, reason, expected_version):
    """Update epic properties or move it to another state."""
    manager = _get_manager(ctx, "epic update")
    if manager is None:
        return

    if not any(v is not None for v in (state, phase, title, description)):
        console.print("[yellow]Nothing to update. Use --state, --phase, --title or --description[/]")
        return

    with _handle_errors(ctx):
        updated = manager.update_epic(
            epic_id,
            state=EpicState(state) if state else None,
            reason=reason,
            expected_version=expected_version,
            current_phase=phase,
            title=title,
            description=description,
        )
        console.print(f"[green]✓ Epic {updated.id} updated[/] (state {_state_text(updated.state)}, v{updated.version})")


@epic.command("sync")
@click.argument("epic_id")
@click.option("--direction", type=click.Choice(list(SYNC_DIRECTIONS)), default="bidirectional", help="Sync direction")
@click.option("--force", is_flag=True, help="Apply tracker state even if it looks stale")
@click.pass_context
def epic_sync(ctx, epic_id, direction, force):
    """Sync an epic with the issue tracker."""
    manager = _get_manager(ctx, "epic sync")
    if manager is None:
        return

    with _handle_errors(ctx):
        console.print("[bold]Syncing epic with the issue tracker...[/]")
        result = manager.sync_epic(epic_id, direction=direction, force=force)
        if result.failures:
            for failure in result.failures:
                console.print(f"[yellow]⚠ {failure}[/]")
            console.print(
                f"[yellow]Sync finished with {len(result.failures)} failure(s); "
                f"pending changes retry on the next sync[/]"
            )
        else:
            console.print(f"[green]✓ Synced[/] (pulled {result.pulled}, pushed {result.pushed})")


@epic.command("assign")
@click.argument("epic_id")
@click.option("--auto-assign", is_flag=True, help="Assign every ready issue through the balancer")
@click.option("--agent", "-a", "agent_id", default=None, help="Agent to assign")
@click.option("--issue", "-i", "issue_ref", default=None, help="Issue id or tracker number")
@click.pass_context
def epic_assign(ctx, epic_id, auto_assign, agent_id, issue_ref):
    """Assign agents to issues."""
    manager = _get_manager(ctx, "epic assign")
    if manager is None:
        return

    if not auto_assign and not (agent_id and issue_ref):
        console.print("[red]Use --auto-assign or provide --agent and --issue[/]")
        ctx.exit(2)

    with _handle_errors(ctx):
        if auto_assign:
            assignments = manager.auto_assign(epic_id)
            console.print(f"[green]✓ Auto-assigned {len(assignments)} issue(s)[/]")
            for a in assignments:
                console.print(f"  - {a.issue_id} -> {a.agent_id} ({a.score:.0f}% match)")
        else:
            assignment = manager.assign(epic_id, issue_ref, agent_id)
            console.print(f"[green]✓ Assigned {assignment.agent_id} to {assignment.issue_id}[/]")


@epic.command("add-issue")
@click.argument("epic_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Issue description")
@click.option("--label", "labels", multiple=True, help="Label, e.g. lang:python (repeatable)")
@click.option("--priority", "-p", type=click.Choice(PRIORITY_CHOICES), default=None, help="Priority")
@click.option("--depends-on", "dependencies", multiple=True, help="Issue id this depends on (repeatable)")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--number", type=int, default=None, help="Existing tracker issue number")
@click.option("--external/--no-external", default=False, help="Also open a tracker issue")
@click.pass_context
def epic_add_issue(ctx, epic_id, title, description, labels, priority, dependencies, criteria, number, external):
    """Add an issue to an epic."""
    manager = _get_manager(ctx, "epic add-issue")
    if manager is None:
        return

    with _handle_errors(ctx):
        issue = manager.add_issue(
            epic_id,
            title=title,
            description=description,
            labels=list(labels),
            priority=Priority(priority) if priority else None,
            dependencies=dependencies,
            acceptance_criteria=list(criteria),
            number=number,
            create_external=external,
        )
        console.print(f"[green]✓ Added {issue.id}[/] ({issue.priority.value}, {issue.status.value})")


# ---------------------------------------------------------------------------
# teammate
# ---------------------------------------------------------------------------

@cli.group()
def teammate():
    """Manage teammate mode and context restoration."""
    pass


@teammate.command("context-restore")
@click.option("--epic", "epic_id", required=True, help="Epic to restore")
@click.option("--strategy", type=click.Choice(list(RESTORE_STRATEGIES)), default="summary", help="Restoration strategy")
@click.option("--agent", "agent_id", default=None, help="Target agent (selective strategy)")
@click.option("--max-tokens", type=int, default=4000, help="Token budget")
@click.option("--json", "as_json", is_flag=True, help="Print the full payload as JSON")
@click.pass_context
def context_restore(ctx, epic_id, strategy, agent_id, max_tokens, as_json):
    """Restore epic context for an agent."""
    manager = _get_manager(ctx, "teammate context-restore")
    if manager is None:
        return

    with _handle_errors(ctx):
        restored = manager.restore_context(epic_id, strategy=strategy, agent_id=agent_id, max_tokens=max_tokens)
        if as_json:
            click.echo(json.dumps(restored.payload, indent=2, default=str))
            return
        console.print("[green]✓ Context restored[/]")
        console.print(f"[dim]Epic:[/] {restored.epic_id}")
        console.print(f"[dim]Strategy:[/] {restored.strategy}")
        console.print(f"[dim]Token Count:[/] {restored.token_count}" + (" (truncated)" if restored.truncated else ""))
        console.print("\n[bold]Summary:[/]")
        console.print(restored.summary)


@teammate.command("context-save")
@click.option("--epic", "epic_id", required=True, help="Epic to save into")
@click.option("--data", default=None, help="JSON object")
@click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON file")
@click.pass_context
def context_save(ctx, epic_id, data, file_path):
    """Save context to epic memory."""
    manager = _get_manager(ctx, "teammate context-save")
    if manager is None:
        return

    if data is None and file_path is None:
        console.print("[red]Provide context data via --data or --file[/]")
        ctx.exit(2)

    with _handle_errors(ctx):
        raw = Path(file_path).read_text() if file_path else data
        merged = manager.save_context(epic_id, json.loads(raw))
        console.print(f"[green]✓ Context saved[/] ({len(merged)} key(s))")


@teammate.command("context-clear")
@click.option("--epic", "epic_id", required=True, help="Epic to clear")
@click.option("--all", "include_state", is_flag=True, help="Also remove issues, assignments, reviews and stall records")
@click.option("--confirm", is_flag=True, help="Confirm the deletion")
@click.pass_context
def context_clear(ctx, epic_id, include_state, confirm):
    """Clear epic context from memory."""
    manager = _get_manager(ctx, "teammate context-clear")
    if manager is None:
        return

    if not confirm:
        scope = "all stored state" if include_state else "saved context"
        console.print(f"[yellow]This will clear {scope} for epic {epic_id}[/]")
        console.print("[dim]Use --confirm to proceed[/]")
        return

    with _handle_errors(ctx):
        removed = manager.clear_context(epic_id, include_state=include_state)
        console.print(f"[green]✓ Context cleared[/] ({removed} entr{'y' if removed == 1 else 'ies'})")


@teammate.command("status")
@click.pass_context
def teammate_status(ctx):
    """Show teammate mode status."""
    manager = _get_manager(ctx, "teammate status")
    if manager is None:
        return

    with _handle_errors(ctx):
        info = manager.status(enabled=True)
        console.print("\n[bold cyan]Teammate Mode Status[/]\n")
        console.print(f"[dim]Enabled:[/] {'[green]Yes[/]' if info['enabled'] else '[red]No[/]'}")
        console.print(f"[dim]Tracker:[/] {info['tracker']}")
        console.print(f"[dim]Epics:[/] {info['total_epics']} ({info['active_epics']} active, {info['blocked_epics']} blocked)")
        console.print(f"[dim]Total Agents:[/] {info['total_agents']}")

        agents = manager.registry.snapshot()
        if agents:
            table = Table()
            table.add_column("Agent")
            table.add_column("Type")
            table.add_column("Tasks", justify="right")
            table.add_column("Workload", justify="right")
            table.add_column("Success", justify="right")
            for agent in agents:
                table.add_row(
                    agent.id,
                    agent.agent_type,
                    f"{agent.active_task_count}/{agent.max_concurrent_tasks}",
                    f"{agent.workload:.0%}",
                    f"{agent.performance.success_rate:.0%}",
                )
            console.print(table)


@teammate.command("monitor")
@click.pass_context
def teammate_monitor(ctx):
    """Run the stall detector, rebalancer and tracker sync until interrupted."""
    manager = _get_manager(ctx, "teammate monitor")
    if manager is None:
        return

    from ..run_monitor import run_monitor
    from ..utils.rich_logging import setup_rich_logging

    log = setup_rich_logging("monitor", workspace=ctx.obj["workspace"], log_level="DEBUG" if ctx.obj["verbose"] else "INFO")

    console.print("[bold cyan]Teammate monitor running[/]")
    console.print("[dim]Press Ctrl+C to exit[/]\n")
    try:
        asyncio.run(run_monitor(manager, log))
    except KeyboardInterrupt:
        console.print("\n[yellow]Monitor stopped[/]")


if __name__ == "__main__":
    cli()
