"""CLI interface for Point Guard."""

from __future__ import annotations

import json
import shlex
import sys
import time
from functools import cached_property
from pathlib import Path
from typing import Any, Callable

import click
from pydantic import ValidationError
from rich.table import Table

from point_guard import __version__
from point_guard.core.agents import AgentSupervisor
from point_guard.core.aggregate import aggregate as aggregate_results
from point_guard.core.aggregate import render_markdown
from point_guard.core.console import console, setup_logging, stderr_console
from point_guard.core.errors import InvalidArgsError, PpgError
from point_guard.core.manifest import ManifestStore
from point_guard.core.pr import create_pr
from point_guard.core.project import (
    find_project_root,
    init_project,
    load_config,
    require_initialized,
)
from point_guard.core.schedule import (
    ScheduleDaemon,
    add_schedule,
    daemon_pid,
    load_schedules,
    next_run,
    read_log,
    remove_schedule,
    schedule_trigger,
    stop_daemon,
)
from point_guard.core.swarm import list_swarms, run_swarm
from point_guard.core.templates import list_prompts, list_templates, parse_vars
from point_guard.schemas.config import Config, variant_info
from point_guard.schemas.manifest import AgentStatus, WorktreeStatus
from point_guard.schemas.schedule import ScheduleEntry
from point_guard.utils.tmux import SessionController, TmuxController
from point_guard.worktree.manager import WorktreeManager

JSON_KEY = "point_guard.json"
CRON_WINDOW = "ppg-cron"


class App:
    """Lazily built collaborators for one CLI invocation."""

    def __init__(
        self,
        directory: str | Path | None = None,
        session: SessionController | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.directory = Path(directory) if directory else Path.cwd()
        self._session = session
        self.sleep = sleep

    @cached_property
    def project_root(self) -> Path:
        return find_project_root(self.directory)

    @cached_property
    def session(self) -> SessionController:
        return self._session or TmuxController()

    @cached_property
    def config(self) -> Config:
        return load_config(self.project_root)

    @cached_property
    def store(self) -> ManifestStore:
        require_initialized(self.project_root)
        return ManifestStore(self.project_root)

    @cached_property
    def worktrees(self) -> WorktreeManager:
        return WorktreeManager(self.project_root, self.store, self.session, self.config)

    @cached_property
    def supervisor(self) -> AgentSupervisor:
        return AgentSupervisor(
            self.project_root,
            self.store,
            self.session,
            self.config,
            worktrees=self.worktrees,
            sleep=self.sleep,
        )


class PpgGroup(click.Group):
    """Group that reports PpgError once, as text or JSON."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except PpgError as e:
            report_error(e, ctx.meta.get(JSON_KEY, False))
            ctx.exit(e.exit_code)


def report_error(error: PpgError, as_json: bool) -> None:
    if as_json:
        payload: dict[str, Any] = {"success": False, "error": error.to_dict()}
        result = getattr(error, "result", None)
        if result is not None:
            payload.update({k: v for k, v in result.to_dict().items() if k != "success"})
        click.echo(json.dumps(payload, indent=2))
        return
    stderr_console.print(f"[red bold]Error [{error.code}]:[/red bold] {error.message}", highlight=False)
    if error.hint:
        stderr_console.print(f"[dim]Hint: {error.hint}[/dim]", highlight=False)


def _remember_json(ctx: click.Context, _param: click.Parameter, value: bool) -> bool:
    if value:
        ctx.meta[JSON_KEY] = True
    return value


json_option = click.option(
    "--json",
    "as_json",
    is_flag=True,
    callback=_remember_json,
    is_eager=True,
    help="Output as JSON",
)


def emit(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group(cls=PpgGroup)
@click.version_option(version=__version__)
@click.option("--directory", "-C", type=click.Path(file_okay=False), help="Run as if started in this directory")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, directory: str | None, verbose: bool) -> None:
    """Point Guard: run coding agents in parallel git worktrees.

    Each task gets its own worktree and branch; agents run in tmux panes
    and their state is tracked in .ppg/manifest.json.
    """
    setup_logging(verbose)
    if ctx.obj is None:
        ctx.obj = App(directory)
    elif directory:
        ctx.obj.directory = Path(directory)


pass_app = click.make_pass_decorator(App)


# ----------------------------------------------------------------------
# Setup
# ----------------------------------------------------------------------


@main.command()
@json_option
@pass_app
def init(app: App, as_json: bool) -> None:
    """Initialize Point Guard in the current git repository."""
    result = init_project(app.directory, session=app.session)
    if as_json:
        emit(result.to_dict())
        return
    for path in result.written:
        console.print(f"[dim]wrote[/dim] {path}")
    console.print(f"[green]Point Guard initialized in {result.project_root}[/green]")
    console.print(f"tmux session: [cyan]{result.session_name}[/cyan]")


# ----------------------------------------------------------------------
# Agents
# ----------------------------------------------------------------------


@main.command()
@click.option("--name", "-n", help="Name for the new worktree")
@click.option("--agent", "-a", "agent_type", help="Agent type from config")
@click.option("--prompt", "-p", help="Prompt text")
@click.option("--prompt-file", type=click.Path(dir_okay=False), help="Read the prompt from a file")
@click.option("--template", "-t", help="Template name in .ppg/templates")
@click.option("--var", "var", multiple=True, help="Template variable KEY=value (repeatable)")
@click.option("--base", "-b", help="Base branch for the new worktree")
@click.option("--worktree", "-w", help="Add agents to an existing worktree")
@click.option("--count", "-c", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--split", is_flag=True, help="Put extra agents in split panes")
@click.option("--root", "in_root", is_flag=True, help="Run in the project root without a worktree")
@json_option
@pass_app
def spawn(
    app: App,
    name: str | None,
    agent_type: str | None,
    prompt: str | None,
    prompt_file: str | None,
    template: str | None,
    var: tuple[str, ...],
    base: str | None,
    worktree: str | None,
    count: int,
    split: bool,
    in_root: bool,
    as_json: bool,
) -> None:
    """Spawn agents in a new (or existing) worktree."""
    result = app.supervisor.spawn(
        worktree=worktree,
        name=name,
        agent_type=agent_type,
        prompt=prompt,
        prompt_file=prompt_file,
        template=template,
        vars=parse_vars(var),
        base=base,
        count=count,
        split=split,
        in_root=in_root,
    )
    if as_json:
        emit(result.to_dict())
        return

    if result.worktree is not None:
        wt = result.worktree
        console.print(f"[bold]Worktree[/bold] {wt.id} [cyan]{wt.name}[/cyan] on {wt.branch}")
    for agent in result.agents:
        style = _agent_style(agent.status)
        console.print(
            f"  {agent.id} [{style}]{agent.status.value}[/{style}] in {agent.tmux_target}"
            + (f" [red]{agent.error}[/red]" if agent.error else "")
        )


@main.command()
@click.argument("worktree", required=False)
@json_option
@pass_app
def status(app: App, worktree: str | None, as_json: bool) -> None:
    """Show worktrees and agents, refreshed against tmux."""
    snapshot = app.supervisor.status(worktree)
    if as_json:
        emit(snapshot)
        return

    if not snapshot["worktrees"] and not snapshot["agents"]:
        console.print("[yellow]No worktrees or agents.[/yellow]")
        return

    console.print(f"Session: [cyan]{snapshot['session']}[/cyan]")
    for wt in snapshot["worktrees"].values():
        wt_style = _worktree_style(WorktreeStatus(wt["status"]))
        title = f"{wt['id']} {wt['name']} ({wt['branch']}) [{wt_style}]{wt['status']}[/{wt_style}]"
        if wt.get("prUrl"):
            title += f"  {wt['prUrl']}"
        _print_agents(title, list(wt["agents"].values()))
    if snapshot["agents"]:
        _print_agents("Project root", list(snapshot["agents"].values()))


def _print_agents(title: str, agents: list[dict[str, Any]]) -> None:
    table = Table(title=title, title_justify="left")
    table.add_column("Agent", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Target", style="dim")
    table.add_column("Started", style="dim")

    for agent in agents:
        info = variant_info(agent["agentType"])
        agent_status = AgentStatus(agent["status"])
        style = _agent_style(agent_status)
        table.add_row(
            agent["id"],
            f"[{info.color}]{info.label}[/{info.color}]",
            f"[{style}]{agent_status.value}[/{style}]",
            agent["tmuxTarget"],
            agent.get("startedAt", "-"),
        )
    console.print(table)


def _agent_style(status: AgentStatus) -> str:
    """Get Rich style for an agent status."""
    styles = {
        AgentStatus.SPAWNING: "dim",
        AgentStatus.RUNNING: "blue",
        AgentStatus.WAITING: "yellow",
        AgentStatus.COMPLETED: "green",
        AgentStatus.FAILED: "red bold",
        AgentStatus.KILLED: "magenta",
        AgentStatus.LOST: "red",
    }
    return styles.get(status, "white")


def _worktree_style(status: WorktreeStatus) -> str:
    styles = {
        WorktreeStatus.ACTIVE: "blue",
        WorktreeStatus.MERGING: "magenta",
        WorktreeStatus.MERGED: "green bold",
        WorktreeStatus.FAILED: "red bold",
        WorktreeStatus.CLEANED: "dim",
    }
    return styles.get(status, "white")


@main.command()
@click.argument("agent_id")
@click.option("--lines", "-l", type=int, help="Number of lines (default: whole scrollback)")
@pass_app
def logs(app: App, agent_id: str, lines: int | None) -> None:
    """Print an agent's pane output."""
    click.echo(app.supervisor.logs(agent_id, lines=lines))


@main.command()
@click.option("--agent", "agent_id", help="Kill one agent")
@click.option("--worktree", "-w", help="Kill every agent in a worktree")
@click.option("--all", "kill_all", is_flag=True, help="Kill every agent")
@click.option("--remove", is_flag=True, help="Also remove the worktree(s)")
@click.option("--delete", is_flag=True, help="Also remove the manifest entries")
@json_option
@pass_app
def kill(
    app: App,
    agent_id: str | None,
    worktree: str | None,
    kill_all: bool,
    remove: bool,
    delete: bool,
    as_json: bool,
) -> None:
    """Stop agents (Ctrl-C, then kill the pane)."""
    result = app.supervisor.kill(
        agent=agent_id,
        worktree=worktree,
        all=kill_all,
        remove=remove,
        delete=delete,
    )
    if as_json:
        emit(result.to_dict())
        return
    if result.killed:
        console.print(f"[green]Killed:[/green] {', '.join(result.killed)}")
    else:
        console.print("[yellow]No running agents to kill.[/yellow]")
    if result.skipped:
        console.print(f"[yellow]Skipped (hosts this command):[/yellow] {', '.join(result.skipped)}")
    if result.removed:
        console.print(f"Removed worktrees: {', '.join(result.worktrees)}")


@main.command()
@click.argument("agent_id")
@click.option("--prompt", "-p", help="New prompt (defaults to the previous one)")
@click.option("--agent", "-a", "agent_type", help="Agent type for the replacement")
@json_option
@pass_app
def restart(app: App, agent_id: str, prompt: str | None, agent_type: str | None, as_json: bool) -> None:
    """Start a replacement for a finished agent."""
    result = app.supervisor.restart(agent_id, prompt=prompt, agent_type=agent_type)
    if as_json:
        emit(result.to_dict())
        return
    console.print(f"Restarted {result.old_agent_id} as [cyan]{result.agent.id}[/cyan] in {result.agent.tmux_target}")


@main.command()
@click.argument("agent_id")
@click.argument("text")
@click.option("--keys", is_flag=True, help="Interpret TEXT as tmux key names (e.g. C-c)")
@click.option("--no-enter", is_flag=True, help="Do not press Enter afterwards")
@json_option
@pass_app
def send(app: App, agent_id: str, text: str, keys: bool, no_enter: bool, as_json: bool) -> None:
    """Type text into an agent's pane."""
    result = app.supervisor.send(agent_id, text, keys=keys, append_enter=not no_enter)
    if as_json:
        emit(result)
        return
    console.print(f"Sent to {agent_id}")


@main.command()
@click.argument("worktree", required=False)
@click.option("--all", "wait_all", is_flag=True, help="Wait for every agent")
@click.option("--timeout", type=float, help="Give up after this many seconds (exit code 2)")
@click.option("--interval", type=float, default=5.0, show_default=True, help="Seconds between polls")
@json_option
@pass_app
def wait(
    app: App,
    worktree: str | None,
    wait_all: bool,
    timeout: float | None,
    interval: float,
    as_json: bool,
) -> None:
    """Block until agents finish."""
    if not as_json:
        console.print("[dim]Waiting for agents to complete...[/dim]")
    result = app.supervisor.wait(worktree=worktree, all=wait_all, timeout=timeout, interval=interval)
    if as_json:
        emit(result.to_dict())
        return
    for agent in result.agents:
        style = _agent_style(agent.status)
        console.print(f"  {agent.agent_id}: [{style}]{agent.status.value}[/{style}]")


# ----------------------------------------------------------------------
# Worktrees
# ----------------------------------------------------------------------


@main.command()
@click.argument("worktree")
@click.option("--strategy", "-s", type=click.Choice(["squash", "no-ff"]), default="squash", show_default=True)
@click.option("--no-cleanup", is_flag=True, help="Keep the worktree and branch after merging")
@click.option("--force", "-f", is_flag=True, help="Merge even if agents are still running")
@click.option("--dry-run", is_flag=True, help="Show what would happen")
@json_option
@pass_app
def merge(
    app: App,
    worktree: str,
    strategy: str,
    no_cleanup: bool,
    force: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Merge a worktree branch into its base branch."""
    result = app.worktrees.merge(
        worktree,
        strategy=strategy,
        cleanup=not no_cleanup,
        force=force,
        dry_run=dry_run,
    )
    if as_json:
        emit(result.to_dict())
        return
    if result.dry_run:
        console.print("[yellow]Dry run - nothing merged[/yellow]")
        console.print(f"Would {strategy}-merge {result.branch} into {result.base_branch}")
        return
    console.print(f"[green]Merged[/green] {result.branch} into {result.base_branch} ({strategy})")
    if result.cleaned:
        console.print("[dim]Worktree and branch removed[/dim]")
    if result.self_protected:
        console.print("[yellow]Left the tmux pane running this command open[/yellow]")


@main.command()
@click.argument("worktree")
@click.option("--title", help="PR title (defaults to the worktree name)")
@click.option("--body", help="PR body (defaults to the agents' result files)")
@click.option("--draft", is_flag=True, help="Open the PR as a draft")
@json_option
@pass_app
def pr(app: App, worktree: str, title: str | None, body: str | None, draft: bool, as_json: bool) -> None:
    """Push a worktree branch and open a GitHub pull request."""
    result = create_pr(app.worktrees, worktree, title=title, body=body, draft=draft)
    if as_json:
        emit(result.to_dict())
        return
    console.print(f"[green]PR created:[/green] {result.pr_url}")


@main.command()
@click.argument("worktree")
@click.option("--stat", is_flag=True, help="Show a diffstat")
@click.option("--name-only", is_flag=True, help="Show changed file names only")
@json_option
@pass_app
def diff(app: App, worktree: str, stat: bool, name_only: bool, as_json: bool) -> None:
    """Show changes on a worktree branch since it left its base."""
    result = app.worktrees.diff(worktree, stat=stat, name_only=name_only)
    if as_json:
        emit(result.to_dict())
        return
    click.echo(result.diff, nl=False)


@main.command()
@click.option("--all", "include_failed", is_flag=True, help="Also remove failed worktrees")
@click.option("--dry-run", is_flag=True, help="Only list what would be removed")
@json_option
@pass_app
def clean(app: App, include_failed: bool, dry_run: bool, as_json: bool) -> None:
    """Remove merged and cleaned worktrees."""
    removed = app.worktrees.clean(include_failed=include_failed, dry_run=dry_run)
    if as_json:
        emit({"success": True, "dryRun": dry_run, "removed": removed})
        return
    if not removed:
        console.print("Nothing to clean.")
        return
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb}: {', '.join(removed)}")


@main.command()
@click.option("--force", "-f", is_flag=True, help="Reset even if completed work is unmerged")
@click.option("--prune", is_flag=True, help="Also run git worktree prune")
@json_option
@pass_app
def reset(app: App, force: bool, prune: bool, as_json: bool) -> None:
    """Kill every agent and remove every worktree."""
    result = app.worktrees.reset(force=force, prune=prune)
    if as_json:
        emit(result.to_dict())
        return
    if result.warned:
        console.print(f"[yellow]Discarded unmerged work in: {', '.join(result.warned)}[/yellow]")
    console.print(f"Killed {len(result.killed)} agent(s), removed {len(result.removed)} worktree(s)")
    if result.still_alive:
        console.print(f"[red]Still alive:[/red] {', '.join(result.still_alive)}")
    if result.skipped:
        console.print(f"[yellow]Kept (hosts this command):[/yellow] {', '.join(result.skipped)}")


# ----------------------------------------------------------------------
# Results, swarms, listings
# ----------------------------------------------------------------------


@main.command()
@click.argument("worktree", required=False)
@click.option("--all", "include_all", is_flag=True, help="Include every worktree")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the combined document to a file")
@json_option
@pass_app
def aggregate(
    app: App,
    worktree: str | None,
    include_all: bool,
    output: str | None,
    as_json: bool,
) -> None:
    """Collect results of finished agents."""
    results = aggregate_results(app.store, app.session, app.config, worktree=worktree, all=include_all)
    if as_json:
        emit({"success": True, "results": [r.to_dict() for r in results]})
        return
    if not results:
        console.print("No completed agent results to aggregate.")
        return
    document = render_markdown(results)
    if output:
        Path(output).write_text(document, encoding="utf-8")
        console.print(f"[green]Wrote {len(results)} result(s) to {output}[/green]")
    else:
        click.echo(document)


@main.command()
@click.argument("name")
@click.option("--worktree", "-w", help="Existing worktree for a shared swarm")
@click.option("--var", "var", multiple=True, help="Template variable KEY=value (repeatable)")
@click.option("--name", "-n", "name_override", help="Worktree name (or prefix for isolated swarms)")
@click.option("--base", "-b", help="Base branch for new worktrees")
@json_option
@pass_app
def swarm(
    app: App,
    name: str,
    worktree: str | None,
    var: tuple[str, ...],
    name_override: str | None,
    base: str | None,
    as_json: bool,
) -> None:
    """Launch a swarm template from .ppg/swarms."""
    result = run_swarm(
        app.supervisor,
        name,
        worktree=worktree,
        vars=parse_vars(var),
        name_override=name_override,
        base=base,
    )
    if as_json:
        emit(result.to_dict())
        return
    console.print(
        f"Swarm [cyan]{result.swarm}[/cyan] ({result.strategy.value}): "
        f"{len(result.agent_ids)} agent(s) in {len(result.worktree_ids)} worktree(s)"
    )
    for agent_id in result.agent_ids:
        console.print(f"  {agent_id}")


@main.group(name="list", cls=PpgGroup)
def list_group() -> None:
    """List templates, prompts or swarms."""


@list_group.command(name="templates")
@json_option
@pass_app
def list_templates_cmd(app: App, as_json: bool) -> None:
    """List templates in .ppg/templates and ~/.ppg/templates."""
    templates = list_templates(app.project_root)
    if as_json:
        emit({"templates": [t.to_dict() for t in templates]})
        return
    table = Table(title="Templates")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Variables", style="dim")
    table.add_column("Source", style="dim")
    for t in templates:
        table.add_row(t.name, t.description, ", ".join(t.variables), t.source)
    console.print(table)


@list_group.command(name="prompts")
@json_option
@pass_app
def list_prompts_cmd(app: App, as_json: bool) -> None:
    """List prompts in .ppg/prompts and ~/.ppg/prompts."""
    prompts = list_prompts(app.project_root)
    if as_json:
        emit({"prompts": [p.to_dict() for p in prompts]})
        return
    table = Table(title="Prompts")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    table.add_column("Source", style="dim")
    for p in prompts:
        table.add_row(p.name, p.description, p.source)
    console.print(table)


@list_group.command(name="swarms")
@json_option
@pass_app
def list_swarms_cmd(app: App, as_json: bool) -> None:
    """List swarm templates in .ppg/swarms and ~/.ppg/swarms."""
    swarms = list_swarms(app.project_root)
    if as_json:
        emit({"swarms": [s.to_dict() for s in swarms]})
        return
    table = Table(title="Swarms")
    table.add_column("Name", style="cyan")
    table.add_column("Strategy")
    table.add_column("Agents", justify="right")
    table.add_column("Description")
    table.add_column("Source", style="dim")
    for s in swarms:
        t = s.template
        table.add_row(t.name, t.strategy.value, str(len(t.agents)), t.description, s.source)
    console.print(table)


# ----------------------------------------------------------------------
# Schedules
# ----------------------------------------------------------------------


@main.group(cls=PpgGroup)
def cron() -> None:
    """Run swarms and templates on cron schedules."""


@cron.command(name="start")
@click.option("--foreground", is_flag=True, help="Run the daemon in this process")
@json_option
@pass_app
def cron_start(app: App, foreground: bool, as_json: bool) -> None:
    """Start the schedule daemon in a tmux window."""
    require_initialized(app.project_root)
    pid = daemon_pid(app.project_root)
    if pid is not None:
        raise InvalidArgsError(f"Cron daemon is already running (PID: {pid})")

    schedules = load_schedules(app.project_root)
    if not schedules:
        raise InvalidArgsError("No schedules defined in .ppg/schedules.yaml")

    if foreground:
        _run_daemon(app)
        return

    manifest = app.store.load()
    app.session.check()
    app.session.ensure_session(manifest.session_name)
    window = app.session.create_window(manifest.session_name, CRON_WINDOW, app.project_root)
    app.session.send_keys(window, f"ppg -C {shlex.quote(str(app.project_root))} cron daemon")
    if as_json:
        emit({"success": True, "tmuxWindow": window, "scheduleCount": len(schedules)})
        return
    console.print(f"[green]Cron daemon started in tmux window {window}[/green]")
    console.print(f"{len(schedules)} schedule(s) loaded")


@cron.command(name="daemon", hidden=True)
@pass_app
def cron_daemon(app: App) -> None:
    """Run the schedule daemon (used by cron start)."""
    require_initialized(app.project_root)
    _run_daemon(app)


def _run_daemon(app: App) -> None:
    daemon = ScheduleDaemon(app.project_root, schedule_trigger(app.supervisor))
    daemon.run()


@cron.command(name="stop")
@json_option
@pass_app
def cron_stop(app: App, as_json: bool) -> None:
    """Stop the schedule daemon."""
    pid = stop_daemon(app.project_root)
    if as_json:
        emit({"success": pid is not None, "pid": pid})
        return
    if pid is None:
        console.print("[yellow]Cron daemon is not running[/yellow]")
    else:
        console.print(f"[green]Cron daemon stopped (PID: {pid})[/green]")


@cron.command(name="status")
@click.option("--lines", "-l", default=20, show_default=True, help="Recent log lines to show")
@json_option
@pass_app
def cron_status(app: App, lines: int, as_json: bool) -> None:
    """Show whether the daemon is running and its recent log."""
    pid = daemon_pid(app.project_root)
    recent = read_log(app.project_root, lines)
    if as_json:
        emit({"running": pid is not None, "pid": pid, "recentLog": recent})
        return
    if pid is None:
        console.print("[yellow]Cron daemon is not running[/yellow]")
    else:
        console.print(f"[green]Cron daemon is running (PID: {pid})[/green]")
    for line in recent:
        console.print(f"  {line}", highlight=False)


@cron.command(name="log")
@click.option("--lines", "-l", default=50, show_default=True)
@pass_app
def cron_log(app: App, lines: int) -> None:
    """Print the daemon log."""
    for line in read_log(app.project_root, lines):
        click.echo(line)


@cron.command(name="list")
@json_option
@pass_app
def cron_list(app: App, as_json: bool) -> None:
    """List schedules with their next run time."""
    schedules = load_schedules(app.project_root)
    rows = [
        {
            "name": s.name,
            "type": "swarm" if s.swarm else "prompt",
            "target": s.swarm or s.prompt,
            "cron": s.cron,
            "nextRun": next_run(s.cron).isoformat(),
            "vars": s.vars,
        }
        for s in schedules
    ]
    if as_json:
        emit({"schedules": rows})
        return
    table = Table(title="Schedules")
    for column in ("Name", "Type", "Target", "Cron", "Next run"):
        table.add_column(column)
    for row in rows:
        table.add_row(row["name"], row["type"], row["target"], row["cron"], row["nextRun"])
    console.print(table)


@cron.command(name="add")
@click.argument("name")
@click.option("--cron", "cron_expr", required=True, help='Cron expression, e.g. "0 2 * * *"')
@click.option("--swarm", help="Swarm template to run")
@click.option("--prompt", help="Template to spawn")
@click.option("--var", "var", multiple=True, help="Template variable KEY=value (repeatable)")
@json_option
@pass_app
def cron_add(
    app: App,
    name: str,
    cron_expr: str,
    swarm: str | None,
    prompt: str | None,
    var: tuple[str, ...],
    as_json: bool,
) -> None:
    """Add a schedule to .ppg/schedules.yaml."""
    require_initialized(app.project_root)
    try:
        entry = ScheduleEntry(name=name, cron=cron_expr, swarm=swarm, prompt=prompt, vars=parse_vars(var))
    except ValidationError as e:
        raise InvalidArgsError("; ".join(err["msg"] for err in e.errors())) from e
    entries = add_schedule(app.project_root, entry)
    if as_json:
        emit({"success": True, "name": name, "count": len(entries)})
        return
    console.print(f"[green]Added schedule {name}[/green] (next run {next_run(entry.cron).isoformat()})")


@cron.command(name="remove")
@click.argument("name")
@json_option
@pass_app
def cron_remove(app: App, name: str, as_json: bool) -> None:
    """Remove a schedule."""
    entries = remove_schedule(app.project_root, name)
    if as_json:
        emit({"success": True, "name": name, "count": len(entries)})
        return
    console.print(f"Removed schedule {name}")


if __name__ == "__main__":
    sys.exit(main())
