"""Command line entry point for prime-feed."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from functools import partial

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from primefeed.dependencies import (
    build_cache_hierarchy,
    build_orchestrator,
    get_background_sync_service,
    get_feed_page_client,
    get_settings,
)
from primefeed.logging_config import configure_application_logging
from primefeed.models.page_context import cache_namespace, page_context_from_url
from primefeed.models.video_record import VideoRecord
from primefeed.repositories.common import epoch_ms_now
from primefeed.services.background_sync_service import fetch_feed_records
from primefeed.services.build_orchestrator import BuildStatus
from primefeed.services.continuation_fetcher import TransportFailureError
from primefeed.services.feed_session import FeedSession

console = Console()


class TableRenderer:
    """Keeps the latest rendered list so the command can print it once."""

    def __init__(self) -> None:
        self.records: list[VideoRecord] = []

    def render(
        self,
        records: Sequence[VideoRecord],
        *,
        reset_view: bool,
        from_cache: bool,
    ) -> None:
        _ = (reset_view, from_cache)
        self.records = list(records)


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """prime-feed - cached video feed aggregation."""
    configure_application_logging(get_settings())


@click.command()
@click.option("--loop", is_flag=True, help="Keep syncing on the configured interval.")
def sync(loop: bool) -> None:
    """Fetch the subscriptions feed into the background cache tier."""
    service = get_background_sync_service()
    if not loop:
        stored = service.sync_once()
        if stored:
            console.print(f"[green]Stored {stored} records[/green]")
        else:
            console.print("[yellow]Nothing stored; see the log for details[/yellow]")
        return

    stop_event = threading.Event()
    console.print(
        f"Syncing every {get_settings().background_sync_interval_seconds}s "
        "[dim](Ctrl+C to stop)[/dim]"
    )
    try:
        service.run_forever(stop_event)
    except KeyboardInterrupt:
        stop_event.set()
        console.print("\n[yellow]Stopped[/yellow]")


@click.command()
@click.option(
    "--path",
    "page_path",
    default="/feed/subscriptions",
    show_default=True,
    help="Feed page path, e.g. /results?search_query=x or /@channel/videos.",
)
@click.option("--refresh", is_flag=True, help="Fetch and rebuild instead of reading cache.")
@click.option("--limit", default=25, show_default=True, help="Rows to print.")
@click.option(
    "--prefetch",
    is_flag=True,
    help="With --refresh on another page, also warm the subscriptions cache.",
)
def show(page_path: str, refresh: bool, limit: int, prefetch: bool) -> None:
    """Print the cached (or freshly built) list for a feed page."""
    settings = get_settings()
    url = f"{settings.site_base_url}{page_path}"
    page = page_context_from_url(url)
    namespace = cache_namespace(page)
    if namespace is None:
        console.print(f"[red]Not a cacheable list page:[/red] {page_path}")
        raise SystemExit(1)

    if not refresh:
        session = FeedSession(page=page)
        hit = build_cache_hierarchy(session).read(namespace)
        if hit is None:
            console.print("[yellow]No cached list; try --refresh[/yellow]")
            return
        _print_records(hit.records, limit=limit, title=f"{namespace} ({hit.tier.name.lower()})")
        console.print(f"[dim]cached {(epoch_ms_now() - hit.written_at_ms) // 1000}s ago[/dim]")
        return

    try:
        page_state = get_feed_page_client().fetch_page(page_path)
    except TransportFailureError as exc:
        console.print(f"[red]Fetch failed:[/red] {exc}")
        raise SystemExit(1) from exc

    renderer = TableRenderer()
    orchestrator = build_orchestrator(page_state, renderer)
    loader = partial(
        fetch_feed_records,
        get_feed_page_client(),
        node_budget=settings.extraction_node_budget,
        result_cap=settings.extraction_result_cap,
    )

    async def _build() -> BuildStatus:
        outcome = await orchestrator.build(force=True)
        await orchestrator.wait_idle()
        if prefetch and await orchestrator.prefetch_subscriptions(loader):
            console.print("[dim]Subscriptions cache warmed[/dim]")
        final = orchestrator.last_outcome or outcome
        return final.status

    status = asyncio.run(_build())
    if status is not BuildStatus.COMMITTED:
        console.print(f"[yellow]No list built (status={status.value})[/yellow]")
        return
    _print_records(renderer.records, limit=limit, title=f"{namespace} (fresh)")


@click.command()
@click.option("--expired", is_flag=True, help="Only drop expired or outdated-format entries.")
def purge(expired: bool) -> None:
    """Remove cached lists for the configured profile."""
    cache = build_cache_hierarchy(FeedSession())
    removed = cache.sweep() if expired else cache.purge()
    console.print(f"[green]Removed {removed} cache entries[/green]")


def _print_records(records: Sequence[VideoRecord], *, limit: int, title: str) -> None:
    table = Table(title=title)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Title")
    table.add_column("Channel", style="cyan")
    table.add_column("Duration", justify="right")
    table.add_column("Published")
    table.add_column("Views", justify="right")
    for index, record in enumerate(records[:limit], start=1):
        title_text = escape(record.title)
        if record.watched:
            title_text = f"[dim]{title_text}[/dim]"
        table.add_row(
            str(index),
            title_text,
            escape(record.channel),
            record.duration,
            record.published_text,
            record.views_formatted,
        )
    console.print(table)
    if len(records) > limit:
        console.print(f"[dim]... {len(records) - limit} more[/dim]")


main.add_command(sync)
main.add_command(show)
main.add_command(purge)


if __name__ == "__main__":
    main()
