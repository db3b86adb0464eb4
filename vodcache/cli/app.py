"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from vodcache import __version__
from vodcache.core.scheduler import (
    Scheduler,
    calculate_next_run,
    is_valid_expression,
    next_run_after,
)
from vodcache.core.supervisor import TaskSupervisor
from vodcache.exceptions import TaskNotFoundError
from vodcache.models.config import ServiceConfig
from vodcache.models.task import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_TOTAL_EPISODES,
    Task,
)
from vodcache.storage.cache_index import CacheIndex
from vodcache.storage.config_manager import ConfigManager
from vodcache.storage.markers import RunningMarkers
from vodcache.storage.task_store import TaskStore
from vodcache.utils.formatting import format_timestamp
from vodcache.utils.path import resolve_download_path

from .formatters import (
    print_cache_table,
    print_config,
    print_status_panel,
    print_tasks_table,
)

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("vodcache")

app = typer.Typer(
    name="vodcache",
    help=(
        "Scheduled, resumable downloads of episodic video into a local cache. Use"
        " 'vodcache <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "vodcache"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config() -> ServiceConfig:
    return ConfigManager(CONFIG_FILE).load_config()


def _stores(config: ServiceConfig) -> tuple[TaskStore, CacheIndex]:
    data_dir = Path(config.data_dir)
    return TaskStore(data_dir), CacheIndex(data_dir)


def _parse_sources(entries: list[str]) -> dict[str, str]:
    sources = {}
    for entry in entries:
        key, sep, url = entry.partition("=")
        if not sep or not key.strip() or not url.strip():
            console.print(f"[red]✗ Invalid source '{entry}', expected KEY=URL.[/red]")
            raise typer.Exit(code=1)
        sources[key.strip()] = url.strip()
    return sources


def _require_cron(expression: str) -> None:
    if not is_valid_expression(expression):
        console.print(
            f"[red]✗ Unsupported cron expression '{expression}'.[/red] Minute and"
            " hour accept '*', a number or '*/N'."
        )
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
):
    """vodcache: scheduled episode downloader"""
    if version:
        console.print(f"[bold]vodcache[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    logging.getLogger("vodcache").setLevel("DEBUG" if verbose else "INFO")

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    download_path: str = typer.Option(
        "/downloads", "--download-path", "-d", help="Base directory for downloads."
    ),
    data_dir: str = typer.Option(
        "data", "--data-dir", help="Directory for the task store and cache index."
    ),
    max_concurrent: int = typer.Option(
        2, "--max-concurrent", "-m", help="Tasks allowed to download at once."
    ),
    sources: list[str] = typer.Option(  # noqa: B008
        [], "--source", "-s", help="Content source as KEY=API_URL (repeatable)."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Create the configuration file."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm(f"'{CONFIG_FILE}' already exists. Overwrite it?")
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    ConfigManager(CONFIG_FILE).save_new_config(
        {
            "download_path": download_path,
            "data_dir": data_dir,
            "max_concurrent_downloads": max_concurrent,
        },
        sources=_parse_sources(sources),
    )
    console.print(f"[green]✓ Configuration saved to '{CONFIG_FILE}'.[/green]")


@app.command()
def serve():
    """Run the scheduler until interrupted, starting tasks as they become due."""
    config = _load_config()

    async def _serve():
        supervisor = TaskSupervisor(config)
        scheduler = Scheduler(supervisor, check_interval=config.check_interval)
        scheduler.start()
        try:
            await scheduler.wait()
        finally:
            await scheduler.stop()
            await supervisor.shutdown()

    console.print(
        f"[cyan]Serving tasks from '{config.data_dir}' into "
        f"'{config.download_path}'. Press Ctrl+C to stop.[/cyan]"
    )
    asyncio.run(_serve())


@app.command()
def add(
    title: str = typer.Argument(..., help="Display title, also used in file names."),
    source: str = typer.Argument(..., help="Content source key from [sources]."),
    source_id: str = typer.Argument(..., help="Content id at the source."),
    start: int = typer.Option(1, "--start", help="First episode to download."),
    total: int = typer.Option(
        DEFAULT_TOTAL_EPISODES, "--total", help="Last episode to download."
    ),
    path: str = typer.Option(
        "", "--path", "-p", help="Destination, absolute or under download_path."
    ),
    cron: str = typer.Option("0 2 * * *", "--cron", help="Schedule (minute hour * * *)."),
    timeout: int = typer.Option(
        DEFAULT_DOWNLOAD_TIMEOUT, "--timeout", help="Per-episode timeout in seconds."
    ),
    disabled: bool = typer.Option(False, "--disabled", help="Create it disabled."),
):
    """Create a download task."""
    _require_cron(cron)
    config = _load_config()
    if source not in config.sources:
        log.warning(f"[yellow]Source '{source}' is not configured yet.[/yellow]")
    task_store, _ = _stores(config)

    task = asyncio.run(
        task_store.create(
            title=title,
            source=source,
            source_id=source_id,
            start_episode=start,
            total_episodes=total,
            download_path=path,
            cron_expression=cron,
            download_timeout=timeout,
            enabled=not disabled,
            next_run=calculate_next_run(cron),
        )
    )
    destination = resolve_download_path(config.download_path, task.download_path)
    console.print(
        f"[green]✓ Created task [bold]{task.id}[/bold] '{task.title}' → "
        f"{destination} (next run {format_timestamp(task.next_run)}).[/green]"
    )


@app.command()
def update(
    task_id: str = typer.Argument(..., help="Task to change."),
    title: str | None = typer.Option(None, "--title"),
    start: int | None = typer.Option(None, "--start"),
    total: int | None = typer.Option(None, "--total"),
    path: str | None = typer.Option(None, "--path", "-p"),
    cron: str | None = typer.Option(None, "--cron"),
    timeout: int | None = typer.Option(None, "--timeout"),
):
    """Change fields of an existing task."""
    changes = {
        "title": title,
        "start_episode": start,
        "total_episodes": total,
        "download_path": path,
        "cron_expression": cron,
        "download_timeout": timeout,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if cron is not None:
        _require_cron(cron)
        changes["next_run"] = calculate_next_run(cron)

    task_store, _ = _stores(_load_config())

    async def _update() -> Task:
        task = await task_store.get(task_id)
        updated = Task.model_validate({**task.model_dump(), **changes})
        return await task_store.save(updated)

    task = asyncio.run(_update())
    note = "" if task.enabled else " [dim](disabled)[/dim]"
    console.print(f"[green]✓ Updated task {task.id} '{task.title}'.[/green]{note}")


@app.command(name="list")
def list_tasks():
    """List all download tasks."""
    config = _load_config()
    task_store, _ = _stores(config)
    running = RunningMarkers(Path(config.data_dir)).active_task_ids()
    print_tasks_table(asyncio.run(task_store.list_tasks()), running)


@app.command()
def remove(task_id: str = typer.Argument(..., help="Task to delete.")):
    """Delete a task. Cached episodes are kept."""
    config = _load_config()
    task_store, _ = _stores(config)
    if RunningMarkers(Path(config.data_dir)).exists(task_id):
        log.warning(
            f"[yellow]Task {task_id} is running; stop it with `vodcache stop`.[/yellow]"
        )
    if not asyncio.run(task_store.delete(task_id)):
        raise TaskNotFoundError(f"Task '{task_id}' does not exist.")
    console.print(f"[green]✓ Deleted task {task_id}.[/green]")


@app.command()
def enable(
    task_id: str = typer.Argument(..., help="Task to enable."),
    disable: bool = typer.Option(False, "--disable", help="Disable instead."),
):
    """Enable (or disable) a task."""
    task_store, _ = _stores(_load_config())

    async def _toggle() -> Task:
        task = await task_store.get(task_id)
        if not disable and task.is_exhausted:
            console.print(
                f"[red]✗ '{task.title}' has no episodes left "
                f"({task.start_episode} > {task.total_episodes}).[/red] "
                "Raise it with `vodcache update --total`."
            )
            raise typer.Exit(code=1)
        task.enabled = not disable
        if task.enabled and task.next_run is None:
            task.next_run = calculate_next_run(task.cron_expression)
        return await task_store.save(task)

    task = asyncio.run(_toggle())
    state = "enabled" if task.enabled else "disabled"
    console.print(f"[green]✓ Task {task.id} '{task.title}' {state}.[/green]")


@app.command(name="enable-all")
def enable_all():
    """Enable every task that still has episodes left."""
    task_store, _ = _stores(_load_config())

    async def _enable_all() -> int:
        count = 0
        for task in await task_store.list_tasks():
            if task.enabled or task.is_exhausted:
                continue
            task.enabled = True
            if task.next_run is None:
                task.next_run = calculate_next_run(task.cron_expression)
            await task_store.save(task)
            count += 1
        return count

    console.print(f"[green]✓ Enabled {asyncio.run(_enable_all())} task(s).[/green]")


async def _run_in_foreground(config: ServiceConfig, start) -> list[str]:
    supervisor = TaskSupervisor(config)
    try:
        started = await start(supervisor)
        await supervisor.wait_all()
        return started
    finally:
        await supervisor.shutdown()


@app.command()
def run(
    task_id: str | None = typer.Argument(None, help="Task to run now."),
    all_tasks: bool = typer.Option(
        False, "--all", "-a", help="Run every enabled task now."
    ),
):
    """Run a task (or all enabled tasks) now, ignoring the schedule."""
    if not task_id and not all_tasks:
        console.print("[red]✗ Give a task id or --all.[/red]")
        raise typer.Exit(code=1)
    config = _load_config()

    async def _start(supervisor: TaskSupervisor) -> list[str]:
        if all_tasks:
            return await supervisor.execute_all_enabled()
        return [task_id] if await supervisor.execute_task(task_id) else []

    started = asyncio.run(_run_in_foreground(config, _start))
    if not started:
        console.print("[yellow]Nothing was started.[/yellow]")
    else:
        console.print(f"[green]✓ Finished {len(started)} task(s).[/green]")


@app.command(name="run-due")
def run_due():
    """Run one scheduler pass: start every due task and wait for it."""
    config = _load_config()

    async def _start(supervisor: TaskSupervisor) -> list[str]:
        return await supervisor.execute_due_tasks()

    started = asyncio.run(_run_in_foreground(config, _start))
    console.print(f"[green]✓ {len(started)} due task(s) processed.[/green]")


@app.command()
def stop(task_id: str = typer.Argument(..., help="Task to stop.")):
    """Stop a running task, wherever its worker was started."""
    config = _load_config()

    async def _stop() -> bool:
        supervisor = TaskSupervisor(config)
        try:
            return await supervisor.stop_task(task_id)
        finally:
            await supervisor.shutdown()

    if asyncio.run(_stop()):
        console.print(f"[green]✓ Stop requested for task {task_id}.[/green]")
    else:
        console.print(f"[yellow]Task {task_id} is not running.[/yellow]")


@app.command()
def status():
    """Show running tasks."""
    config = _load_config()
    task_store, _ = _stores(config)
    markers = RunningMarkers(Path(config.data_dir))
    tasks = {t.id: t for t in asyncio.run(task_store.list_tasks())}

    running, started = {}, {}
    for task_id in sorted(markers.active_task_ids()):
        running[task_id] = tasks.get(task_id)
        record = markers.read(task_id)
        if record and record.acquired_at:
            started[task_id] = record.acquired_at
    print_status_panel(running, started)


@app.command()
def cache(
    task_id: str | None = typer.Option(None, "--task", "-t", help="Only this task."),
):
    """List cached episodes, grouped by task."""
    _, cache_index = _stores(_load_config())
    groups = asyncio.run(cache_index.grouped())
    if task_id:
        groups = {k: v for k, v in groups.items() if k == task_id}
    print_cache_table(groups)


@app.command(name="cache-delete")
def cache_delete(
    unique_id: str = typer.Argument(..., help="Cached episode id (video_<task>_<n>)."),
    delete_file: bool = typer.Option(
        False, "--delete-file", help="Also delete the episode file from disk."
    ),
):
    """Forget a cached episode so it is downloaded again."""
    config = _load_config()
    _, cache_index = _stores(config)

    async def _delete() -> bool:
        episodes = {e.unique_id: e for e in await cache_index.list_episodes()}
        episode = episodes.get(unique_id)
        if episode and delete_file:
            file_path = Path(config.download_path) / episode.episode_path
            if file_path.is_file():
                await asyncio.to_thread(file_path.unlink)
                log.info(f"Deleted '{file_path}'.")
        return await cache_index.delete(unique_id)

    if asyncio.run(_delete()):
        console.print(f"[green]✓ Removed {unique_id} from the cache index.[/green]")
    else:
        console.print(f"[yellow]No cached episode '{unique_id}'.[/yellow]")
        raise typer.Exit(code=1)


@app.command(name="next-run")
def next_run(
    expression: str = typer.Argument(..., help="Cron expression, e.g. '0 2 * * *'."),
    at: str | None = typer.Option(
        None, "--at", help="Reference time 'YYYY-MM-DD HH:MM' (default: now)."
    ),
):
    """Show when a cron expression fires next."""
    try:
        reference = datetime.fromisoformat(at) if at else datetime.now()
    except ValueError as e:
        console.print(f"[red]✗ Invalid reference time: {e}[/red]")
        raise typer.Exit(code=1) from e
    if not is_valid_expression(expression):
        log.warning("[yellow]Unsupported expression; the 24h fallback applies.[/yellow]")
    result = next_run_after(expression, reference)
    console.print(
        f"[bold]{expression}[/bold] after {reference:%Y-%m-%d %H:%M} → "
        f"[cyan]{result:%Y-%m-%d %H:%M}[/cyan]"
    )


@app.command(name="show-config")
def show_config():
    """Display the effective configuration."""
    print_config(CONFIG_FILE, _load_config())
