"""Command line interface for rpde_harvester.

    rpde-harvester seed                 register feeds from the dataset directory
    rpde-harvester select --sample 3    enable three more random feeds
    rpde-harvester sweep                read every enabled feed to its end
    rpde-harvester run                  sweep hourly, collate every six hours
    rpde-harvester status               show cursors and last errors
"""

import asyncio
import json
import random
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import click

from rpde_harvester.config import HarvesterConfig, load_config
from rpde_harvester.exceptions import HarvesterError
from rpde_harvester.harvest.collate import collate_snapshots
from rpde_harvester.harvest.scheduler import Scheduler
from rpde_harvester.logging_config import get_logger, setup_logging
from rpde_harvester.models.schemas import CollateResult
from rpde_harvester.services.feed_directory import seed_from_directory
from rpde_harvester.storage import database

T = TypeVar("T")


def _run(config: HarvesterConfig, action: Callable[[], Awaitable[T]]) -> T:
    """Open the database, run ``action`` and close the database again."""

    async def runner() -> T:
        database.configure_database(config.db_path)
        try:
            await database.get_database()
            return await action()
        finally:
            await database.close_database()

    try:
        return asyncio.run(runner())
    except HarvesterError as e:
        raise click.ClickException(str(e)) from e


def _write_collated(result: CollateResult, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    tmp = output.with_suffix(output.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump([item.to_dict() for item in result.items], f, ensure_ascii=False)
    tmp.replace(output)


@click.group()
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="SQLite database file (default: ~/.rpde_harvester/rpde_harvester.db)"
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level"
)
@click.pass_context
def main(ctx: click.Context, db_path: Optional[Path], log_level: Optional[str]) -> None:
    """Harvest RPDE open-data feeds into resumable per-feed snapshots."""
    try:
        config = load_config()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if db_path is not None:
        config.db_path = db_path
    if log_level is not None:
        config.log_level = log_level.upper()

    setup_logging(config)
    ctx.obj = config


@main.command()
@click.option("--directory-url", default=None, help="Dataset directory to read")
@click.pass_obj
def seed(config: HarvesterConfig, directory_url: Optional[str]) -> None:
    """Register every feed listed by the dataset directory (disabled)."""
    url = directory_url or config.directory_url

    async def action() -> Tuple[int, int]:
        return await seed_from_directory(url, timeout=config.request_timeout)

    listed, added = _run(config, action)
    if not listed:
        click.echo(f"No feeds could be read from {url}")
        return
    click.echo(f"Directory lists {listed} feeds, {added} newly registered")


@main.command()
@click.argument("url")
@click.option("--enable", is_flag=True, help="Enable the feed straight away")
@click.pass_obj
def add(config: HarvesterConfig, url: str, enable: bool) -> None:
    """Register a single feed by the URL of its first page."""
    if not url.startswith(("http://", "https://")):
        raise click.BadParameter("must be an http or https URL", param_hint="URL")

    async def action():
        feed = await database.register_feed(url)
        if enable:
            await database.set_enabled([feed.id], True)
        return feed

    feed = _run(config, action)
    click.echo(f"Feed {feed.id}: {feed.stem}")


@main.command()
@click.argument("feed_ids", nargs=-1, type=int)
@click.option("--all", "all_feeds", is_flag=True, help="Enable every registered feed")
@click.option("--none", "no_feeds", is_flag=True, help="Disable every feed")
@click.option("--sample", type=click.IntRange(min=1), default=None,
              help="Enable this many more feeds chosen at random")
@click.option("--random-seed", type=int, default=None, help="Seed for --sample")
@click.pass_obj
def select(
    config: HarvesterConfig,
    feed_ids: Tuple[int, ...],
    all_feeds: bool,
    no_feeds: bool,
    sample: Optional[int],
    random_seed: Optional[int],
) -> None:
    """Choose which feeds are harvested.

    With FEED_IDS exactly those feeds are enabled. --sample adds random feeds
    to the current selection, which is handy for scaling up gradually.
    """
    chosen = sum(bool(x) for x in (feed_ids, all_feeds, no_feeds, sample))
    if chosen != 1:
        raise click.UsageError("Give exactly one of FEED_IDS, --all, --none or --sample")

    async def action() -> int:
        feeds = await database.list_feeds()
        if all_feeds:
            return await database.enable_only([f.id for f in feeds])
        if no_feeds:
            return await database.enable_only([])
        if sample:
            candidates = [f.id for f in feeds if not f.enabled]
            picked = random.Random(random_seed).sample(candidates, min(sample, len(candidates)))
            await database.set_enabled(picked, True)
            return len([f for f in feeds if f.enabled]) + len(picked)
        return await database.enable_only(feed_ids)

    enabled = _run(config, action)
    click.echo(f"{enabled} feeds enabled")


@main.command()
@click.option("--feed", "feed_ids", multiple=True, type=int, help="Restrict to these enabled feeds")
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Concurrent feed workers")
@click.option("--min-interval", type=click.FloatRange(min=0), default=None,
              help="Seconds between requests to the same host")
@click.option("--json", "as_json", is_flag=True, help="Print the sweep report as JSON")
@click.pass_obj
def sweep(
    config: HarvesterConfig,
    feed_ids: Tuple[int, ...],
    max_workers: Optional[int],
    min_interval: Optional[float],
    as_json: bool,
) -> None:
    """Read every enabled feed up to its current end, once."""
    if max_workers is not None:
        config.max_workers = max_workers
    if min_interval is not None:
        config.min_interval = min_interval

    async def action():
        scheduler = Scheduler(config)
        try:
            return await scheduler.run_sweep(feed_ids or None)
        finally:
            await scheduler.aclose()

    report = _run(config, action)
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    for result in sorted(report.results, key=lambda r: r.feed_id):
        line = f"feed {result.feed_id}: {result.outcome.value}, {result.pages} pages, {result.items} items"
        if result.error:
            line += f" ({result.error_kind}: {result.error})"
        click.echo(line)
    click.echo(f"{len(report.results)} feeds, {report.pages} pages, {len(report.failures)} failures")


@main.command()
@click.option("--sweep-interval", type=click.FloatRange(min=1), default=None, help="Seconds between sweeps")
@click.option("--collate-interval", type=click.FloatRange(min=1), default=None,
              help="Seconds between collate passes")
@click.option("--collate-output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write each collate pass to this JSON file")
@click.pass_obj
def run(
    config: HarvesterConfig,
    sweep_interval: Optional[float],
    collate_interval: Optional[float],
    collate_output: Optional[Path],
) -> None:
    """Harvest continuously until interrupted (Ctrl+C stops after the current page)."""
    if sweep_interval is not None:
        config.sweep_interval = sweep_interval
    if collate_interval is not None:
        config.collate_interval = collate_interval

    logger = get_logger(__name__)

    async def on_collate(result: CollateResult) -> None:
        if collate_output is not None:
            await asyncio.to_thread(_write_collated, result, collate_output)
            logger.info(f"Wrote {len(result.items)} items to {collate_output}")

    async def action() -> None:
        scheduler = Scheduler(config)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, scheduler.stop)
            loop.add_signal_handler(signal.SIGTERM, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
        try:
            await scheduler.run_forever(on_collate=on_collate)
        finally:
            await scheduler.aclose()

    _run(config, action)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.option("--enabled-only", is_flag=True, help="Only show enabled feeds")
@click.pass_obj
def status(config: HarvesterConfig, as_json: bool, enabled_only: bool) -> None:
    """Show each feed's cursor, item count and last error."""
    statuses = _run(config, database.feed_statuses)
    rows = [s for s in statuses if s.feed.enabled or not enabled_only]

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in rows], indent=2))
        return

    for s in rows:
        flag = "on " if s.feed.enabled else "off"
        click.echo(f"[{flag}] {s.feed.id:>4} {s.item_count:>6} items  {s.feed.cursor}")
        if s.feed.last_error:
            click.echo(f"           last error ({s.feed.last_error_kind}): {s.feed.last_error}")


@main.command()
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write items to this JSON file instead of stdout")
@click.pass_obj
def collate(config: HarvesterConfig, output: Optional[Path]) -> None:
    """Combine the snapshots of all enabled feeds."""
    result = _run(config, collate_snapshots)

    if output is not None:
        _write_collated(result, output)
        click.echo(f"{len(result.items)} items from {result.feeds_read} feeds written to {output}")
    else:
        click.echo(json.dumps([item.to_dict() for item in result.items], indent=2, ensure_ascii=False))


@main.command()
@click.option("--port", default=3001, help="Port to listen on for SSE or Streamable HTTP transport")
@click.option("--host", default="127.0.0.1", help="Host to bind to (use 0.0.0.0 for Docker)")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="stdio",
    help="Transport type (stdio, sse, or streamable-http)"
)
@click.option("--harvest/--no-harvest", default=False, help="Also run the periodic harvest")
@click.pass_obj
def serve(config: HarvesterConfig, port: int, host: str, transport: str, harvest: bool) -> None:
    """Run the MCP tool server."""
    from rpde_harvester.server.app import serve as serve_mcp

    try:
        asyncio.run(serve_mcp(config, transport=transport, host=host, port=port, harvest=harvest))
    except HarvesterError as e:
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    main()
