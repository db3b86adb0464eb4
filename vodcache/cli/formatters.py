"""
Rich renderables for the command-line interface.
"""

from pathlib import Path

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vodcache.models.config import ServiceConfig
from vodcache.models.task import DEFAULT_TOTAL_EPISODES, CachedEpisode, Task, now_ms
from vodcache.utils.formatting import format_duration, format_timestamp


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `vodcache init` to create a configuration file.",
            "• Check the values reported above in your config.ini.",
        ],
        "TaskNotFoundError": [
            "• List existing tasks with `vodcache list`.",
        ],
        "DetailFetchError": [
            "• Check that the task's source key is listed under [sources].",
            "• The content source API may be temporarily unavailable.",
        ],
        "ProcessLaunchError": [
            "• Make sure the Python interpreter running vodcache can be executed.",
            "• Check the process limits of the current user.",
        ],
        "CircuitBreakerError": [
            "• The source has failed repeatedly and is cooling down.",
            "• Check your internet connection and try again later.",
        ],
        "MergeError": [
            "• Install ffmpeg or set `ffmpeg_path` in config.ini.",
            "• The downloaded segments were kept and remain playable.",
        ],
        "DownloadTimeoutError": [
            "• Raise the task's download timeout with `vodcache add --timeout`.",
            "• Lower `segment_concurrency` if the source is throttling.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -v for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config: ServiceConfig):
    """Displays the effective configuration."""
    console = Console()
    lines = [f"{key} = {getattr(config, key)}" for key in sorted(config.get_ini_keys())]
    if config.sources:
        lines.append("")
        lines.append(f"[bold]{escape('[sources]')}[/bold]")
        lines.extend(f"{key} = {url}" for key, url in sorted(config.sources.items()))

    console.print(
        Panel(
            "\n".join(lines),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_tasks_table(tasks: list[Task], running: set[str]):
    console = Console()
    if not tasks:
        console.print("[dim]No tasks yet. Create one with `vodcache add`.[/dim]")
        return

    table = Table(box=box.ROUNDED, title="Download Tasks")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Source")
    table.add_column("Episodes", justify="right")
    table.add_column("Schedule")
    table.add_column("Next Run")
    table.add_column("State")

    for task in sorted(tasks, key=lambda t: t.created_at):
        if task.id in running:
            state = "[bold magenta]running[/bold magenta]"
        elif task.enabled:
            state = "[green]enabled[/green]"
        else:
            state = "[dim]disabled[/dim]"
        total = (
            "∞"
            if task.total_episodes >= DEFAULT_TOTAL_EPISODES
            else str(task.total_episodes)
        )
        table.add_row(
            task.id,
            task.title,
            f"{task.source}/{task.source_id}",
            f"{task.start_episode} → {total}",
            task.cron_expression,
            format_timestamp(task.next_run),
            state,
        )
    console.print(table)


def print_cache_table(groups: dict[str, list[CachedEpisode]]):
    console = Console()
    if not groups:
        console.print("[dim]Nothing cached yet.[/dim]")
        return

    table = Table(box=box.ROUNDED, title="Cached Episodes")
    table.add_column("Unique ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Ep.", justify="right")
    table.add_column("Path")
    table.add_column("Downloaded")

    for episodes in groups.values():
        table.add_section()
        for episode in episodes:
            table.add_row(
                episode.unique_id,
                episode.title,
                str(episode.episode_number),
                f"[dim]{episode.episode_path}[/dim]",
                format_timestamp(episode.download_time),
            )
    console.print(table)


def print_status_panel(tasks: dict[str, Task | None], started: dict[str, int]):
    """Shows which tasks currently have an active worker."""
    console = Console()
    if not tasks:
        console.print("[dim]No task is running.[/dim]")
        return

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_column(style="dim")
    for task_id, task in tasks.items():
        since = started.get(task_id)
        elapsed = format_duration(max(0, (now_ms() - since) / 1000)) if since else "?"
        table.add_row(task_id, task.title if task else "[dim]unknown[/dim]", elapsed)

    console.print(
        Panel(table, title="[bold magenta]Running Tasks[/bold magenta]", expand=False)
    )