"""Trend scan command."""

import asyncio
import signal
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from senior_trends.dependencies import get_scan_service
from senior_trends.services.cancellation import CancellationToken
from senior_trends.services.scan_pipeline import (
    ProgressCallback,
    ScanProgress,
    ScanRequest,
    ScanResult,
)
from senior_trends.services.scan_service import ScanService
from senior_trends.services.scoring import SORT_MODES

from ..tiers import KeywordTiers

console = Console()


@click.command()
@click.option("--keyword", "-k", "keywords", multiple=True, help="Keyword to scan (repeatable)")
@click.option(
    "--tiers",
    "tiers_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with primary/secondary keyword tiers",
)
@click.option("--count", "-n", default=20, show_default=True, help="Results to show")
@click.option("--time-range", "-t", default=None, help="1d, 3d, 7d, 14d, a day count or 'all'")
@click.option("--format", "format_filter", type=click.Choice(["shorts", "long"]), default=None)
@click.option(
    "--sort", "sort_by", type=click.Choice(SORT_MODES), default="score", show_default=True
)
@click.option(
    "--mode",
    type=click.Choice(["pipeline", "direct"]),
    default="pipeline",
    show_default=True,
    help="Channel pipeline or direct video search",
)
@click.option("--scoring", type=click.Choice(["velocity", "composite"]), default=None)
@click.option("--channel-cap", type=int, default=None, help="Channels per keyword (10000 = no cap)")
@click.option("--per-channel", type=int, default=None, help="Recent uploads per channel")
@click.option("--concurrency", type=click.IntRange(1, 16), default=None)
@click.option("--category", default="all", help="Category for simulated fallback results")
def scan(
    keywords: tuple[str, ...],
    tiers_path: Path | None,
    count: int,
    time_range: str | None,
    format_filter: str | None,
    sort_by: str,
    mode: str,
    scoring: str | None,
    channel_cap: int | None,
    per_channel: int | None,
    concurrency: int | None,
    category: str,
):
    """Scan YouTube for trending senior content and print a ranked table."""
    primary = list(keywords)
    secondary: list[list[str]] = []
    if tiers_path is not None:
        try:
            tiers = KeywordTiers.load(tiers_path)
        except ValueError as e:
            console.print(f"[red]Invalid tiers file:[/red] {e}")
            raise SystemExit(1)
        primary.extend(tiers.primary)
        secondary = tiers.secondary

    if not primary:
        console.print("[red]Give at least one --keyword or a --tiers file.[/red]")
        raise SystemExit(1)

    service = get_scan_service()
    try:
        request = service.build_request(
            primary,
            title_filters=secondary,
            result_count=count,
            time_range=time_range,
            format_filter=format_filter,
            sort_by=sort_by,
            scoring=scoring,
            category=category,
            channel_cap=channel_cap,
            max_items_per_channel=per_channel,
            concurrency=concurrency,
        )
    except ValueError as e:
        console.print(f"[red]Invalid scan options:[/red] {e}")
        raise SystemExit(1)

    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>5.1f}%"),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("starting", total=100)

        def on_progress(update: ScanProgress) -> None:
            progress.update(
                task_id,
                completed=update.percent,
                description=f"{update.state}: {update.current_action}",
            )

        result = asyncio.run(
            run_until_interrupted(service, request, mode=mode, progress=on_progress)
        )

    _print_result(result)


async def run_until_interrupted(
    service: ScanService,
    request: ScanRequest,
    *,
    mode: str,
    progress: ProgressCallback | None = None,
) -> ScanResult:
    """Run a scan where Ctrl-C stops it cooperatively and partial results are kept."""
    token = CancellationToken()
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        console.print("[yellow]Stopping scan, keeping partial results...[/yellow]")
        token.cancel("interrupted from keyboard")

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        # Windows loops and non-main threads: Ctrl-C keeps its default behaviour.
        handler_installed = False

    try:
        return await service.run_scan(request, mode=mode, progress=progress, cancellation=token)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_result(result: ScanResult):
    if result.message:
        style = "yellow" if result.used_simulated or result.state == "cancelled" else "cyan"
        console.print(f"[{style}]{result.message}[/{style}]")

    if not result.videos:
        console.print("No videos matched.")
        return

    table = Table(title=f"Scan {result.scan_id} ({result.state})")
    table.add_column("#", justify="right")
    table.add_column("Title", overflow="fold")
    table.add_column("Channel")
    table.add_column("Views", justify="right")
    table.add_column("Likes", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Format")

    for video in result.videos:
        title = video.title
        if video.is_simulated:
            title = f"[dim]{title} (simulated)[/dim]"
        table.add_row(
            str(video.rank or "-"),
            title,
            video.channel_title,
            f"{video.view_count:,}",
            f"{video.like_count:,}",
            f"{video.virality_score:,.1f}",
            video.format_tag,
        )
    console.print(table)
    console.print(
        f"{len(result.videos)} shown, {len(result.background_pool)} collected, "
        f"{result.units_spent} quota units spent"
    )
