"""CLI interface for Flotilla."""

from __future__ import annotations

import asyncio
import json
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Coroutine, TypeVar

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from flotilla import __version__
from flotilla.config import FlotillaConfig, configure_logging
from flotilla.context import ContextExtractor
from flotilla.dispatcher import DispatchResult, ExecutionMode, TaskDispatcher
from flotilla.exceptions import ArtifactNotFoundError, FlotillaError
from flotilla.models import Deployment, Status
from flotilla.render import FORMATS, render_event
from flotilla.store import DeploymentStore
from flotilla.stream import StreamBus, WatchOptions
from flotilla.ui import Icons, Theme, print_error, print_success, print_warning, status_text

T = TypeVar("T")

app = typer.Typer(
    name="flotilla",
    help="Flotilla - run fleets of agent tasks as resumable deployments.",
    no_args_is_help=True,
)
console = Console()


@dataclass
class _State:
    config: FlotillaConfig
    config_file: Path | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"flotilla version {__version__}")
        raise typer.Exit()


def format_callback(value: str) -> str:
    if value not in FORMATS:
        raise typer.BadParameter(f"Invalid format. Valid: {', '.join(FORMATS)}")
    return value


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    root: Annotated[
        Path | None, typer.Option("--root", help="Directory holding fleets/ and deployed/")
    ] = None,
    config_file: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.toml")
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Log level (debug, info, warning, error)")
    ] = None,
) -> None:
    """Flotilla - run fleets of agent tasks as resumable deployments."""
    try:
        config = FlotillaConfig.load(
            config_file,
            root=str(root) if root is not None else None,
            log_level=log_level,
        )
    except FlotillaError as e:
        print_error(console, str(e))
        raise typer.Exit(1) from None
    configure_logging(config)
    ctx.obj = _State(config=config, config_file=config_file)


def _state(ctx: typer.Context) -> _State:
    return ctx.obj


def _dispatcher(ctx: typer.Context, detached_child: bool = False) -> TaskDispatcher:
    state = _state(ctx)
    return TaskDispatcher.from_config(
        state.config, config_file=state.config_file, detached_child=detached_child
    )


def _store(ctx: typer.Context) -> DeploymentStore:
    return DeploymentStore(_state(ctx).config.root_path)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning engine errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except FlotillaError as e:
        print_error(console, str(e))
        raise typer.Exit(1) from None


def _call(func: Any, *args: Any, **kwargs: Any) -> Any:
    try:
        return func(*args, **kwargs)
    except FlotillaError as e:
        print_error(console, str(e))
        raise typer.Exit(1) from None


def _mode(detach: bool) -> ExecutionMode:
    return ExecutionMode.DETACHED if detach else ExecutionMode.FOREGROUND


def _report(result: DispatchResult) -> None:
    if result.detached:
        console.print(
            f"[{Theme.INFO}]{Icons.ROBOT} {result.message}[/{Theme.INFO}]\n"
            f"[{Theme.MUTED}]Follow progress with: flotilla watch {result.deployment_id}[/{Theme.MUTED}]"
        )
        return
    if len(result.tasks_run) > 1:
        console.print(f"[{Theme.MUTED}]Ran: {' → '.join(result.tasks_run)}[/{Theme.MUTED}]")
    if result.success:
        print_success(console, result.message or f"Task {result.task_id} complete")
        if result.status == Status.AWAITING_APPROVAL:
            console.print(f"Approve with: flotilla approve {result.deployment_id}")
        return
    if result.status == Status.CANCELLED:
        print_warning(console, result.message)
        return
    print_error(console, result.error or result.message)
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Fleets and deployments
# ---------------------------------------------------------------------------


@app.command("fleets")
def fleets_cmd(ctx: typer.Context) -> None:
    """List the fleet definitions available under the root."""
    fleets = _store(ctx).list_fleets()
    if not fleets:
        console.print("[yellow]No fleets found.[/yellow]")
        console.print(f"Add definitions as {_state(ctx).config.root}/fleets/<id>/<id>.json")
        return
    table = Table(title="Fleets", expand=True)
    table.add_column("Fleet", style=Theme.ACCENT)
    table.add_column("Tasks")
    table.add_column("Description", style=Theme.MUTED)
    for fleet in fleets:
        table.add_row(fleet.id, " → ".join(fleet.task_ids), fleet.description)
    console.print(table)


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    fleet_id: Annotated[str, typer.Argument(help="Fleet to deploy")],
    request: Annotated[str, typer.Argument(help="What the fleet should do")],
    detach: Annotated[
        bool, typer.Option("--detach", "-d", help="Run in the background and return at once")
    ] = False,
) -> None:
    """Create a deployment of a fleet and run its first task."""
    dispatcher = _dispatcher(ctx)

    async def _deploy() -> DispatchResult:
        deployment = dispatcher.store.create(fleet_id, request)
        console.print(
            f"[bold]Deployment {deployment.id}[/bold] [{Theme.MUTED}]({deployment.unique_id})[/{Theme.MUTED}]"
        )
        return await dispatcher.execute_task(deployment.id, mode=_mode(detach))

    _report(_run(_deploy()))


@app.command("execute")
def execute(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    task_id: Annotated[
        str | None, typer.Argument(help="Task to run (default: the current task)")
    ] = None,
    agent: Annotated[str | None, typer.Option("--agent", "-a", help="Override the agent type")] = None,
    request: Annotated[
        str | None, typer.Option("--request", "-r", help="Override the deployment request")
    ] = None,
    detach: Annotated[bool, typer.Option("--detach", "-d", help="Run in the background")] = False,
) -> None:
    """Run one task of a deployment."""
    dispatcher = _dispatcher(ctx)
    _report(_run(dispatcher.execute_task(deployment_id, task_id, agent, request, _mode(detach))))


@app.command("run-task", hidden=True)
def run_task(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument()],
    task_id: Annotated[str, typer.Argument()],
    agent: Annotated[str, typer.Option("--agent")],
    prompt_file: Annotated[Path, typer.Option("--prompt-file")],
    timeout: Annotated[float | None, typer.Option("--timeout")] = None,
) -> None:
    """Foreground runner started by detached executions."""
    state = _state(ctx)
    if timeout is not None:
        state.config = state.config.model_copy(update={"task_timeout": timeout})
    try:
        prompt = prompt_file.read_text(encoding="utf-8")
    except OSError as e:
        print_error(console, f"Cannot read prompt file: {e}")
        raise typer.Exit(1) from None
    dispatcher = _dispatcher(ctx, detached_child=True)
    result = _run(dispatcher.execute_task(deployment_id, task_id, agent, prompt=prompt))
    if not result.success and result.status != Status.CANCELLED:
        raise typer.Exit(1)


@app.command("status")
def status(
    ctx: typer.Context,
    deployment_id: Annotated[
        str | None, typer.Argument(help="Deployment to show (default: list all)")
    ] = None,
    filter_status: Annotated[
        str | None, typer.Option("--status", "-s", help="Only list deployments with this status")
    ] = None,
) -> None:
    """Show deployments, or one deployment's tasks."""
    store = _store(ctx)
    if deployment_id is None:
        if filter_status is not None and filter_status not in {s.value for s in Status}:
            valid = ", ".join(s.value for s in Status)
            print_error(console, f"Invalid status: {filter_status}. Valid: {valid}")
            raise typer.Exit(1)
        deployments = _call(store.list_deployments, filter_status)
        if not deployments:
            console.print("[yellow]No deployments.[/yellow]")
            return
        console.print(_deployments_table(deployments))
        return

    deployment = _call(store.require, deployment_id)
    console.print(
        Panel(
            f"[bold]Fleet:[/bold] {deployment.fleet_id}\n"
            f"[bold]Status:[/bold] {deployment.status.value}\n"
            f"[bold]Current task:[/bold] {deployment.current_task} ({deployment.current_agent})\n"
            f"[bold]Deployed:[/bold] {deployment.deployed_at}\n"
            f"[bold]Request:[/bold] {deployment.request}",
            title=f"Deployment {deployment.id} ({deployment.unique_id})",
            border_style=Theme.PRIMARY,
        )
    )
    table = Table(title="Tasks", expand=True)
    table.add_column("Task", style=Theme.ACCENT)
    table.add_column("Status")
    table.add_column("Started", style=Theme.MUTED)
    table.add_column("Completed", style=Theme.MUTED)
    table.add_column("PID", justify="right")
    for task in deployment.tasks:
        table.add_row(
            task.task_id,
            status_text(task.status.value),
            task.deployed_at or "-",
            task.completed_at or "-",
            str(task.pid) if task.pid else "-",
        )
    console.print(table)
    if store.stop_requested(deployment.id):
        print_warning(console, "Stop requested")


def _deployments_table(deployments: list[Deployment]) -> Table:
    table = Table(title="Deployments", expand=True)
    table.add_column("ID", justify="right")
    table.add_column("Unique ID", style=Theme.MUTED)
    table.add_column("Fleet", style=Theme.ACCENT)
    table.add_column("Status")
    table.add_column("Current task")
    table.add_column("Deployed", style=Theme.MUTED)
    for deployment in deployments:
        table.add_row(
            str(deployment.id),
            deployment.unique_id,
            deployment.fleet_id,
            status_text(deployment.status.value),
            deployment.current_task,
            deployment.deployed_at,
        )
    return table


@app.command("summary")
def summary(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    raw: Annotated[bool, typer.Option("--raw", help="Print markdown source")] = False,
) -> None:
    """Summarize a deployment and its task outputs."""
    text = _call(_store(ctx).summary, deployment_id)
    if raw:
        console.print(text, markup=False, highlight=False)
    else:
        console.print(Markdown(text))


# ---------------------------------------------------------------------------
# Approval gates
# ---------------------------------------------------------------------------


@app.command("approve")
def approve(
    ctx: typer.Context,
    deployment_id: Annotated[
        str | None, typer.Argument(help="Deployment to approve (default: list waiting ones)")
    ] = None,
    run_next: Annotated[
        bool, typer.Option("--continue", help="Run the next task right away")
    ] = False,
    detach: Annotated[bool, typer.Option("--detach", "-d", help="Run the next task in the background")] = False,
) -> None:
    """Approve a task that is awaiting approval."""
    if deployment_id is None:
        waiting = _call(_store(ctx).list_deployments, Status.AWAITING_APPROVAL)
        if not waiting:
            console.print("[yellow]No deployments are awaiting approval.[/yellow]")
            return
        console.print(_deployments_table(waiting))
        return

    dispatcher = _dispatcher(ctx)
    approval, dispatch = _run(dispatcher.approve(deployment_id, run_next, _mode(detach)))
    print_success(console, f"Approved {approval.decided_task}")
    if approval.completed:
        print_success(console, "Deployment complete")
    elif approval.next_task and dispatch is None:
        console.print(f"Next task: {approval.next_task}. Run it with: flotilla execute {approval.deployment.id}")
    if dispatch is not None:
        _report(dispatch)


@app.command("reject")
def reject(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment to reject")],
    run_next: Annotated[
        bool, typer.Option("--continue", help="Run the rejection route's task right away")
    ] = False,
    detach: Annotated[bool, typer.Option("--detach", "-d", help="Run the next task in the background")] = False,
) -> None:
    """Reject a task that is awaiting approval."""
    dispatcher = _dispatcher(ctx)
    approval, dispatch = _run(dispatcher.reject(deployment_id, run_next, _mode(detach)))
    print_warning(console, f"Rejected {approval.decided_task}")
    if approval.deployment.status == Status.FAILED:
        print_error(console, "No rejection route; deployment failed")
        raise typer.Exit(1)
    if approval.completed:
        print_success(console, "Deployment complete")
    elif approval.next_task and dispatch is None:
        console.print(f"Next task: {approval.next_task}. Run it with: flotilla execute {approval.deployment.id}")
    if dispatch is not None:
        _report(dispatch)


# ---------------------------------------------------------------------------
# Observation and control
# ---------------------------------------------------------------------------


@app.command("watch")
def watch(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    tail: Annotated[int, typer.Option("--tail", "-n", help="Replay this many records per task")] = 20,
    follow: Annotated[bool, typer.Option("--follow/--no-follow", "-f", help="Keep following new events")] = True,
    filter_pattern: Annotated[
        str | None, typer.Option("--filter", help="Only show events matching this regex")
    ] = None,
    output_format: Annotated[
        str, typer.Option("--format", callback=format_callback, help="pretty, json or raw")
    ] = "pretty",
) -> None:
    """Stream a deployment's task events."""
    state = _state(ctx)
    deployment = _call(_store(ctx).require, deployment_id)
    try:
        options = WatchOptions(follow=follow, tail=tail, filter=filter_pattern, format=output_format)
    except ValueError as e:
        print_error(console, str(e))
        raise typer.Exit(1) from None
    bus = StreamBus(state.config.root_path, poll_interval=state.config.watch_poll_interval)

    try:
        _run(_follow_events(bus, deployment.id, options, console, output_format))
    except KeyboardInterrupt:
        pass
    if follow:
        console.print(f"\n[{Theme.MUTED}]Stopped watching[/{Theme.MUTED}]")


async def _follow_events(
    bus: StreamBus,
    deployment_id: int | str,
    options: WatchOptions,
    out: Console,
    output_format: str,
) -> None:
    """Render a deployment's events until the watch ends. Ctrl-C detaches via ``bus.stop``."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, bus.stop, deployment_id)
        interrupt_handled = True
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers (Windows or a worker thread): Ctrl-C raises KeyboardInterrupt.
        interrupt_handled = False
    try:
        async for event in bus.watch(deployment_id, options):
            render_event(event, out, output_format)
    finally:
        if interrupt_handled:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("stop")
def stop(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment to stop")],
    force: Annotated[bool, typer.Option("--force", help="Send SIGKILL instead of SIGTERM")] = False,
) -> None:
    """Stop a running deployment."""
    result = _run(_dispatcher(ctx).stop(deployment_id, force=force))
    print_warning(console, f"Deployment {result.deployment_id} stopped at {result.cancelled_task}")
    for pid in result.signalled:
        console.print(f"[{Theme.MUTED}]Signalled pid {pid}[/{Theme.MUTED}]")
    for pid in result.killed:
        console.print(f"[{Theme.MUTED}]Killed pid {pid}[/{Theme.MUTED}]")


@app.command("resume")
def resume(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment to resume")],
    from_start: Annotated[
        bool, typer.Option("--from-start", help="Reset every task and start over")
    ] = False,
    detach: Annotated[bool, typer.Option("--detach", "-d", help="Run in the background")] = False,
) -> None:
    """Resume a stopped or failed deployment."""
    _report(_run(_dispatcher(ctx).resume(deployment_id, from_start=from_start, mode=_mode(detach))))


@app.command("clean")
def clean(
    ctx: typer.Context,
    deployment_id: Annotated[
        str | None, typer.Argument(help="Deployment to remove (default: every completed one)")
    ] = None,
    keep_outputs: Annotated[
        bool, typer.Option("--keep-outputs", help="Keep the outputs/ directory")
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Remove deployments and their files."""
    store = _store(ctx)
    if deployment_id is not None:
        deployment = _call(store.require, deployment_id)
        if not yes and not typer.confirm(f"Remove deployment {deployment.id} ({deployment.unique_id})?"):
            raise typer.Exit()
        _call(store.cleanup, deployment.id, keep_outputs=keep_outputs)
        print_success(console, f"Removed deployment {deployment.id}")
        return

    preview = _call(store.cleanup_all_completed)
    if not preview.candidates:
        console.print("[yellow]No completed deployments to remove.[/yellow]")
        return
    if not yes and not typer.confirm(f"Remove {len(preview.candidates)} completed deployment(s)?"):
        raise typer.Exit()
    report = _call(store.cleanup_all_completed, force=True)
    print_success(console, f"Removed {len(report.removed)} deployment(s); {report.remaining} remaining")
    for failed_id, reason in report.failures.items():
        print_warning(console, f"Could not remove {failed_id}: {reason}")
    if report.failures:
        raise typer.Exit(1)


@app.command("context")
def context_cmd(
    ctx: typer.Context,
    deployment_id: Annotated[str, typer.Argument(help="Deployment id or unique id")],
    as_json: Annotated[bool, typer.Option("--json", help="Print the extracted context as JSON")] = False,
    compact: Annotated[
        bool, typer.Option("--compact", help="Compact every task's context artifact")
    ] = False,
    cache: Annotated[bool, typer.Option("--cache", help="Refresh the context cache")] = False,
    cached: Annotated[
        bool, typer.Option("--cached", help="Show the cached context instead of extracting it")
    ] = False,
) -> None:
    """Show what a deployment has done so far, as used for resumption."""
    deployment = _call(_store(ctx).require, deployment_id)
    extractor = ContextExtractor(_state(ctx).config.root_path)

    if compact:
        for task in deployment.tasks:
            try:
                report = extractor.compact(deployment.id, task.task_id)
            except ArtifactNotFoundError:
                continue
            except FlotillaError as e:
                print_warning(console, f"{task.task_id}: {e}")
                continue
            console.print(
                f"{task.task_id}: {report.before_bytes} → {report.after_bytes} bytes "
                f"[{Theme.MUTED}](saved {report.saved_bytes})[/{Theme.MUTED}]"
            )

    extracted = extractor.load_cache(deployment.id) if cached else None
    if extracted is None:
        if cached:
            print_warning(console, "No usable context cache; extracting")
        extracted = _call(extractor.extract, deployment.id)
    if cache:
        path = _call(extractor.save_cache, deployment.id, extracted)
        console.print(f"[{Theme.MUTED}]Cached to {path}[/{Theme.MUTED}]")
    if as_json:
        console.print(json.dumps(extracted.to_dict(), indent=2), markup=False, highlight=False)
    elif not compact:
        console.print(Markdown(extractor.build_resumption_prompt(extracted)))


if __name__ == "__main__":
    app()
