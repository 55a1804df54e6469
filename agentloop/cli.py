"""CLI for agentloop.

Provides commands to run and resume a session and to inspect what sessions
left behind: status, usage statistics, iteration logs, session memory,
technical debt and the task dependency graph. The guardrails group edits the
rules added to every prompt.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from agentloop.config import LoopConfig
from agentloop.errors import AgentLoopError, ErrorCode
from agentloop.events import (
    AGENT_ERROR,
    AGENT_OUTPUT,
    AGENT_RETRY,
    AGENT_START,
    BRANCH_CREATED,
    BRANCH_PR_CREATED,
    BRANCH_PR_FAILED,
    ITERATION_COMPLETE,
    ITERATION_DELAY,
    ITERATION_START,
    PARALLEL_GROUP_COMPLETE,
    PARALLEL_GROUP_START,
    PARALLEL_TASK_COMPLETE,
    SESSION_COMPLETE,
    SESSION_STOP,
    AgentErrorEvent,
    AgentOutputEvent,
    AgentRetryEvent,
    AgentStartEvent,
    BranchEvent,
    EventBus,
    IterationCompleteEvent,
    IterationDelayEvent,
    IterationStartEvent,
    ParallelGroupEvent,
    ParallelTaskEvent,
    SessionEvent,
)
from agentloop.failure_patterns import FailureHistoryStore
from agentloop.guardrails import GuardrailStore
from agentloop.iteration_logs import IterationLogStore
from agentloop.learning import SessionMemoryStore
from agentloop.lock import SessionLock
from agentloop.models import TaskList
from agentloop.orchestrator import Orchestrator, SessionResult
from agentloop.scheduler import get_blocked_tasks, get_execution_groups, validate_dependencies
from agentloop.session import Session, SessionStatistics, SessionStore
from agentloop.task_list import TaskListStore, count_completed
from agentloop.tech_debt import analyze_technical_debt, format_report
from agentloop.telemetry import create_metrics, setup_telemetry
from agentloop.usage_stats import UsageStatisticsStore, format_duration

console = Console()

STATE_COLORS = {
    "complete": "green",
    "max_iterations": "yellow",
    "max_runtime": "yellow",
    "stopped": "yellow",
    "error": "red",
}


@click.group()
@click.version_option(package_name="agentloop")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON config file (default: <state dir>/config.json)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_file: Path | None) -> None:
    """agentloop - Run an AI coding agent against a task list until it is done."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.obj = {"config_file": config_file}


def _load_config(ctx: click.Context) -> LoopConfig:
    try:
        return LoopConfig.from_env(ctx.obj.get("config_file"))
    except AgentLoopError as e:
        _fail(e)


def _load_task_list(config: LoopConfig) -> TaskList:
    store = TaskListStore(config.task_list_path)
    try:
        task_list = store.load()
    except AgentLoopError as e:
        _fail(e)
    if task_list is None:
        _fail(
            AgentLoopError(f"Task list not found: {config.task_list_path}", ErrorCode.PRD_NOT_FOUND)
        )
    if not task_list.tasks:
        _fail(AgentLoopError("The task list has no tasks", ErrorCode.PRD_NO_TASKS))
    return task_list


def _fail(error: AgentLoopError) -> NoReturn:
    console.print(f"[red]{escape(error.format())}[/red]")
    sys.exit(1)


@cli.command()
@click.option("--iterations", "-n", type=int, default=None, help="Number of iterations")
@click.option("--full", is_flag=True, help="Keep going until every task is done")
@click.option("--parallel", is_flag=True, help="Run independent tasks concurrently")
@click.option(
    "--max-concurrent", type=int, default=None, help="Agents run at once in parallel mode"
)
@click.option("--fresh", is_flag=True, help="Discard a resumable session and start over")
@click.pass_context
def run(
    ctx: click.Context,
    iterations: int | None,
    full: bool,
    parallel: bool,
    max_concurrent: int | None,
    fresh: bool,
) -> None:
    """Start a new session."""
    config = _load_config(ctx)
    if full:
        config.full_mode = True
    if parallel:
        config.parallel = True
    if max_concurrent is not None:
        config.max_concurrent_tasks = max_concurrent

    session_store = SessionStore(config.state_dir)
    try:
        existing = session_store.load()
    except AgentLoopError as e:
        _fail(e)
    if session_store.is_resumable(existing) and not fresh:
        console.print(
            f"[yellow]A resumable session exists (iteration {existing.current_iteration}/"
            f"{existing.total_iterations}).[/yellow]"
        )
        console.print("Use 'agentloop resume' to continue it, or pass --fresh to start over.")
        sys.exit(1)

    task_list = _load_task_list(config)
    total = iterations if iterations is not None else config.iterations
    asyncio.run(_run_session(config, task_list, total_iterations=total))


@cli.command()
@click.pass_context
def resume(ctx: click.Context) -> None:
    """Resume an interrupted session."""
    config = _load_config(ctx)
    session_store = SessionStore(config.state_dir)
    try:
        session = session_store.load()
    except AgentLoopError as e:
        _fail(e)

    if not session_store.is_resumable(session):
        console.print("[red]No resumable session found[/red]")
        console.print("Use 'agentloop run' to start a new session.")
        sys.exit(1)

    task_list = _load_task_list(config)
    console.print(
        f"Found session: iteration {session.current_iteration}/{session.total_iterations}, "
        f"status {session.status}"
    )
    asyncio.run(_run_session(config, task_list, session=session))


async def _run_session(
    config: LoopConfig,
    task_list: TaskList,
    total_iterations: int = 0,
    session: Session | None = None,
) -> None:
    """Internal async implementation of run and resume."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    events = EventBus()
    _subscribe_console(events)
    orchestrator = Orchestrator(config, events=events, tracer=tracer, cwd=Path.cwd())

    try:
        with SessionLock(config.state_dir):
            if session is None:
                console.print(f"[bold]Starting session:[/bold] {task_list.project}")
                orchestrator.start_session(task_list, total_iterations)
            else:
                console.print(f"[bold]Resuming session:[/bold] {task_list.project}")
                orchestrator.resume_session(session, task_list)
            result = await orchestrator.run()
    except AgentLoopError as e:
        _fail(e)
    except RuntimeError as e:
        # Lock held by another process
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_session_summary(result)
    if result.state == "error":
        sys.exit(1)


def _subscribe_console(events: EventBus) -> None:
    """Print orchestrator events as they happen."""

    def on_iteration_start(event: IterationStartEvent) -> None:
        console.rule(f"Iteration {event.iteration}/{event.total_iterations}")

    def on_iteration_complete(event: IterationCompleteEvent) -> None:
        if event.is_project_complete:
            console.print("[green]All tasks complete[/green]")

    def on_iteration_delay(event: IterationDelayEvent) -> None:
        console.print(f"[dim]Next iteration in {event.delay_ms / 1000:.0f}s[/dim]")

    def on_agent_start(event: AgentStartEvent) -> None:
        task = event.task_title or "next task"
        console.print(f"[bold]Agent started[/bold] on {task}")

    def on_agent_output(event: AgentOutputEvent) -> None:
        prefix = ""
        if event.process_id != "default":
            prefix = f"[cyan]{escape(event.process_id)}[/cyan] "
        console.print(f"{prefix}{escape(event.text)}", end="", highlight=False)

    def on_agent_retry(event: AgentRetryEvent) -> None:
        console.print(
            f"[yellow]Retry {event.attempt}/{event.max_retries} in "
            f"{event.delay_ms / 1000:.0f}s:[/yellow] {escape(event.error)}"
        )

    def on_agent_error(event: AgentErrorEvent) -> None:
        label = "Fatal error" if event.is_fatal else "Agent failed"
        console.print(f"[red]{label}:[/red] {escape(event.error)}")

    def on_group_start(event: ParallelGroupEvent) -> None:
        console.print(
            f"[bold]Parallel group {event.group_index + 1}:[/bold] {', '.join(event.task_titles)}"
        )

    def on_group_complete(event: ParallelGroupEvent) -> None:
        console.print(
            f"Group {event.group_index + 1} finished: "
            f"{event.completed} completed, {event.failed} failed"
        )

    def on_task_complete(event: ParallelTaskEvent) -> None:
        if event.success:
            console.print(f"[green]Task finished:[/green] {event.task_title}")
        else:
            error = escape(event.error or "unknown error")
            console.print(f"[red]Task failed:[/red] {event.task_title}: {error}")

    def on_branch(event: BranchEvent) -> None:
        if event.error:
            console.print(f"[yellow]PR not created for {event.branch_name}:[/yellow] {event.error}")
        elif event.pr_url:
            console.print(f"[green]Pull request:[/green] {event.pr_url}")
        else:
            console.print(f"Switched to branch [bold]{event.branch_name}[/bold]")

    def on_session_end(event: SessionEvent) -> None:
        if event.reason:
            console.print(f"[yellow]Session stopped:[/yellow] {escape(event.reason)}")

    events.on(ITERATION_START, on_iteration_start)
    events.on(ITERATION_COMPLETE, on_iteration_complete)
    events.on(ITERATION_DELAY, on_iteration_delay)
    events.on(AGENT_START, on_agent_start)
    events.on(AGENT_OUTPUT, on_agent_output)
    events.on(AGENT_RETRY, on_agent_retry)
    events.on(AGENT_ERROR, on_agent_error)
    events.on(PARALLEL_GROUP_START, on_group_start)
    events.on(PARALLEL_GROUP_COMPLETE, on_group_complete)
    events.on(PARALLEL_TASK_COMPLETE, on_task_complete)
    events.on(BRANCH_CREATED, on_branch)
    events.on(BRANCH_PR_CREATED, on_branch)
    events.on(BRANCH_PR_FAILED, on_branch)
    events.on(SESSION_STOP, on_session_end)
    events.on(SESSION_COMPLETE, on_session_end)


def _print_session_summary(result: SessionResult) -> None:
    """Print session summary."""
    color = STATE_COLORS.get(result.state, "white")
    lines = [
        f"Tasks: {result.tasks_completed}/{result.total_tasks} completed",
        f"Iterations: {result.iterations_run}",
    ]
    if result.error:
        lines.append(f"[red]Error: {result.error}[/red]")
    console.print(
        Panel(
            "\n".join(lines),
            title=f"[bold {color}]Session {result.state.replace('_', ' ').upper()}[/bold {color}]",
        )
    )


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the current session and task list."""
    config = _load_config(ctx)
    session = SessionStore(config.state_dir).load()
    task_list = TaskListStore(config.task_list_path).load()

    if session is None:
        console.print("[yellow]No active session[/yellow]")
    else:
        stats = session.stats
        console.print(
            Panel(
                f"Status: {session.status}\n"
                f"Iteration: {session.current_iteration}/{session.total_iterations}\n"
                f"Elapsed: {format_duration(session.elapsed_time_seconds * 1000)}\n"
                f"Successful: {stats.successful_iterations}, Failed: {stats.failed_iterations}\n"
                f"Success rate: {stats.success_rate:.1f}%",
                title="Session",
            )
        )

    if task_list is None:
        console.print(f"[yellow]No task list at {config.task_list_path}[/yellow]")
        return

    table = Table(title=f"{task_list.project}: {count_completed(task_list)}/{len(task_list.tasks)}")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Depends on")
    table.add_column("Done")
    for index, task in enumerate(task_list.tasks, start=1):
        table.add_row(
            str(index),
            task.title,
            ", ".join(task.depends_on or []) or "-",
            "[green]yes[/green]" if task.done else "no",
        )
    console.print(table)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show lifetime usage statistics."""
    config = _load_config(ctx)
    store = UsageStatisticsStore(config.state_dir)
    if not store.exists():
        console.print("[yellow]No usage statistics recorded yet[/yellow]")
        return
    console.print(store.format_for_display(), markup=False, highlight=False)


@cli.command()
@click.option("--iteration", "-i", type=int, default=None, help="Show one iteration in full")
@click.pass_context
def logs(ctx: click.Context, iteration: int | None) -> None:
    """Show iteration logs of the last session."""
    config = _load_config(ctx)
    store = IterationLogStore(config.state_dir)

    if iteration is not None:
        log = store.load(iteration)
        if log is None:
            console.print(f"[red]No log for iteration {iteration}[/red]")
            sys.exit(1)
        click.echo(json.dumps(log.to_json_dict(), indent=2))
        return

    index = store.load_index()
    if index is None or not index.iterations:
        console.print("[yellow]No iteration logs found[/yellow]")
        return

    table = Table(title=f"Session {index.session_id} ({index.project_name})")
    table.add_column("Iteration", justify="right")
    table.add_column("Status")
    table.add_column("Task")
    table.add_column("Duration", justify="right")
    table.add_column("Retries", justify="right")
    for log in store.iter_logs():
        table.add_row(
            str(log.iteration),
            log.status,
            log.task.title if log.task else "-",
            format_duration(log.duration_ms) if log.duration_ms is not None else "-",
            str(log.agent.retry_count),
        )
    console.print(table)


@cli.command()
@click.option("--clear", is_flag=True, help="Forget everything learned so far")
@click.pass_context
def memory(ctx: click.Context, clear: bool) -> None:
    """Show or clear the session memory."""
    config = _load_config(ctx)
    task_list = TaskListStore(config.task_list_path).load()
    store = SessionMemoryStore(
        config.state_dir, task_list.project if task_list else "Unknown Project"
    )

    if clear:
        store.clear()
        console.print("Session memory cleared")
        return

    if not store.exists():
        console.print("[yellow]No session memory yet[/yellow]")
        return
    console.print(store.export_markdown(), markup=False, highlight=False)


@cli.command()
@click.pass_context
def debt(ctx: click.Context) -> None:
    """Review the last session's iteration logs for technical debt."""
    config = _load_config(ctx)
    log_store = IterationLogStore(config.state_dir)
    index = log_store.load_index()
    if index is None:
        console.print("[yellow]No iteration logs found[/yellow]")
        return

    iteration_logs = log_store.list_logs()
    session = SessionStore(config.state_dir).load()
    if session is not None:
        statistics = session.stats
    else:
        failed = sum(1 for log in iteration_logs if log.status == "failed")
        statistics = SessionStatistics(
            total_iterations=len(iteration_logs),
            completed_iterations=len(iteration_logs),
            failed_iterations=failed,
            successful_iterations=len(iteration_logs) - failed,
        )

    report = analyze_technical_debt(index.session_id, iteration_logs, statistics)
    console.print(format_report(report), markup=False, highlight=False)


@cli.group(invoke_without_command=True)
@click.pass_context
def guardrails(ctx: click.Context) -> None:
    """List and edit the guardrails added to every prompt."""
    if ctx.invoked_subcommand is not None:
        return

    store = GuardrailStore(_load_config(ctx).state_dir)
    entries = store.get()
    if not entries:
        console.print("[yellow]No guardrails configured[/yellow]")
        return

    enabled = sum(1 for guardrail in entries if guardrail.enabled)
    table = Table(title=f"Guardrails ({enabled}/{len(entries)} enabled)")
    table.add_column("Id")
    table.add_column("On")
    table.add_column("Trigger")
    table.add_column("Category")
    table.add_column("Instruction")
    for guardrail in entries:
        table.add_row(
            escape(guardrail.id),
            "[green]yes[/green]" if guardrail.enabled else "no",
            guardrail.trigger,
            guardrail.category,
            escape(guardrail.instruction),
        )
    console.print(table)


@guardrails.command("add")
@click.argument("instruction")
@click.option(
    "--trigger",
    type=click.Choice(["always", "on-error", "on-task-type"]),
    default="always",
    help="When the guardrail applies",
)
@click.option(
    "--category",
    type=click.Choice(["safety", "quality", "style", "process"]),
    default="quality",
)
@click.pass_context
def guardrails_add(ctx: click.Context, instruction: str, trigger: str, category: str) -> None:
    """Add a guardrail."""
    if not instruction.strip():
        console.print("[red]Instruction cannot be empty[/red]")
        sys.exit(1)
    store = GuardrailStore(_load_config(ctx).state_dir)
    guardrail = store.add(instruction.strip(), trigger=trigger, category=category)
    console.print(f"[green]Added guardrail[/green] {escape(guardrail.id)}")


@guardrails.command("remove")
@click.argument("guardrail_id")
@click.pass_context
def guardrails_remove(ctx: click.Context, guardrail_id: str) -> None:
    """Remove a guardrail."""
    store = GuardrailStore(_load_config(ctx).state_dir)
    if not store.remove(guardrail_id):
        console.print(f"[red]Guardrail not found:[/red] {escape(guardrail_id)}")
        sys.exit(1)
    console.print(f"Removed guardrail {escape(guardrail_id)}")


@guardrails.command("toggle")
@click.argument("guardrail_id")
@click.pass_context
def guardrails_toggle(ctx: click.Context, guardrail_id: str) -> None:
    """Enable or disable a guardrail."""
    store = GuardrailStore(_load_config(ctx).state_dir)
    guardrail = store.toggle(guardrail_id)
    if guardrail is None:
        console.print(f"[red]Guardrail not found:[/red] {escape(guardrail_id)}")
        sys.exit(1)
    state = "enabled" if guardrail.enabled else "disabled"
    console.print(f"Guardrail {state}: {escape(guardrail.instruction)}")


@guardrails.command("suggest")
@click.option("--apply", is_flag=True, help="Add the suggestions as enabled guardrails")
@click.pass_context
def guardrails_suggest(ctx: click.Context, apply: bool) -> None:
    """Suggest guardrails for recurring failure patterns."""
    config = _load_config(ctx)
    try:
        suggestions = FailureHistoryStore(config.state_dir).get_suggested_guardrails()
    except AgentLoopError as e:
        _fail(e)

    if not suggestions:
        console.print("[yellow]No recurring failure patterns yet[/yellow]")
        return

    store = GuardrailStore(config.state_dir)
    existing = {guardrail.instruction for guardrail in store.get()}
    for suggestion in suggestions:
        console.print(
            f"- {escape(suggestion.instruction)} "
            f"[dim]({escape(suggestion.added_after_failure or '')})[/dim]"
        )
        if apply and suggestion.instruction not in existing:
            store.add(
                suggestion.instruction,
                category=suggestion.category,
                added_after_failure=suggestion.added_after_failure,
            )
            existing.add(suggestion.instruction)
    if apply:
        console.print("[green]Suggestions added[/green]")


@cli.command()
@click.pass_context
def deps(ctx: click.Context) -> None:
    """Validate task dependencies and show the execution groups."""
    config = _load_config(ctx)
    task_list = _load_task_list(config)

    validation = validate_dependencies(task_list)
    if not validation.is_valid:
        console.print("[red]Invalid dependencies:[/red]")
        for error in validation.errors:
            console.print(escape(f"  - [{error.type}] {error.task_title}: {error.details}"))
        sys.exit(1)

    table = Table(title="Execution Groups")
    table.add_column("Group", justify="right")
    table.add_column("Tasks")
    for index, group in enumerate(get_execution_groups(task_list), start=1):
        titles = [f"[green]{t.title}[/green]" if t.done else t.title for t in group]
        table.add_row(str(index), ", ".join(titles))
    console.print(table)

    blocked = get_blocked_tasks(task_list)
    if blocked:
        console.print("\n[bold]Blocked:[/bold]")
        for task, blockers in blocked:
            console.print(f"  {task.title} (waiting on {', '.join(blockers)})")


def main() -> None:
    """Main entry point for the agentloop CLI."""
    cli()


if __name__ == "__main__":
    main()
