"""Typer CLI entrypoint for media-downloader."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import typer
from pydantic import ValidationError
from redis.asyncio import Redis
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import AppConfig, ConfigRepository, RedisConfig
from .dispatcher import Dispatcher
from .engine.dedup import DedupCache
from .engine.fetcher import Fetcher
from .engine.jobs import FailedJob, Result
from .engine.processors import build_registry
from .engine.retention import RetentionEngine, RetentionReport
from .engine.retry import RetryPolicy
from .engine.site_validator import SiteValidator
from .engine.worker_pool import WorkerPool
from .errors import BrokerUnavailable, MediaDownloaderError, StorageError
from .infra.broker import RedisBroker, is_transient_redis_error
from .infra.redis_client import connect
from .infra.storage import ArtifactStore
from .logging_conf import component_logger, configure_logging, default_log_path, tail_log
from .scheduler import RetentionScheduler
from .telemetry import announce

app = typer.Typer(
    help="media-downloader command line",
    no_args_is_help=True,
    rich_markup_mode=None,
)
cleaner_app = typer.Typer(name="cleaner", help="Retention engine commands", no_args_is_help=True)
cache_app = typer.Typer(name="cache", help="Dedup cache commands", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Log viewing commands", no_args_is_help=True)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: AppConfig
    connect: Callable[[RedisConfig], Awaitable[Redis]] = connect


@dataclass
class Services:
    """Process-wide handles, created once and closed on shutdown."""

    config: AppConfig
    redis: Redis
    broker: RedisBroker
    cache: DedupCache
    store: ArtifactStore
    fetcher: Fetcher

    async def aclose(self) -> None:
        await self.fetcher.close()
        await self.redis.aclose()


class ConsoleDeliveryClient:
    """Delivery client printing to the terminal instead of a chat."""

    def __init__(self, output: Console | None = None) -> None:
        self.output = output or console

    async def deliver(self, requester_id: str, artifact_reference: str) -> None:
        self.output.print(escape(f"[{requester_id}] delivered: {artifact_reference}"), style="green")

    async def notify(self, requester_id: str, message: str) -> None:
        self.output.print(escape(f"[{requester_id}] {message}"), style="yellow")


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    repository.locator.ensure_directories()
    configure_logging(verbose=verbose, log_dir=repository.locator.logs_dir)
    try:
        config = repository.load()
    except (ValidationError, ValueError) as exc:
        console.print(escape(f"Invalid configuration: {exc}"), style="red")
        raise typer.Exit(code=1) from exc
    return AppState(repository=repository, config=config)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


async def open_services(state: AppState) -> Services:
    config = state.config
    redis = await state.connect(config.redis)
    publish_policy = RetryPolicy.from_config(
        config.retry,
        max_attempts=config.retry.publish_attempts,
        base_delay=min(config.retry.base_delay, 1.0),
        retryable=is_transient_redis_error,
    )
    store = ArtifactStore(config.storage_dir)
    try:
        store.ensure()
    except StorageError:
        await redis.aclose()
        raise
    return Services(
        config=config,
        redis=redis,
        broker=RedisBroker(redis, config.redis, publish_policy=publish_policy),
        cache=DedupCache(redis, prefix=config.redis.cache_prefix),
        store=store,
        fetcher=Fetcher(),
    )


def _run(state: AppState, command: Callable[[Services], Awaitable[int]]) -> int:
    """Open services, run ``command`` and translate startup failures into exit code 1."""

    async def _main() -> int:
        services = await open_services(state)
        try:
            return await command(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(_main())
    except (BrokerUnavailable, StorageError) as exc:
        console.print(escape(f"Startup failed: {exc.message}"), style="red")
        raise typer.Exit(code=1) from exc


def build_retention(services: Services) -> RetentionEngine:
    config = services.config
    return RetentionEngine(
        store=services.store,
        cache=services.cache,
        redis=services.redis,
        horizon=config.retention.horizon,
        lock_key=config.redis.lock_key,
        lock_ttl=config.retention.lock_ttl_seconds,
        healthcheck_url=config.retention.healthcheck_url,
        fetcher=services.fetcher,
        heartbeat_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0),
    )


def _render_report(report: RetentionReport) -> Table:
    table = Table(title="Retention pass", box=box.SIMPLE_HEAD, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in report.as_dict().items():
        table.add_row(key, str(value))
    return table


def _render_result(result: Result) -> str:
    if result.is_delivered:
        return f"delivered {result.artifact_reference}"
    kind = result.error_kind.value if result.error_kind else "unknown"
    return f"failed ({kind}): {result.message or ''}"


app.add_typer(cleaner_app, name="cleaner")
app.add_typer(cache_app, name="cache")
app.add_typer(log_app, name="log")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@app.command("worker", help="Consume jobs until terminated.")
def worker(
    ctx: typer.Context,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Override worker.concurrency"),
) -> None:
    state = _get_state(ctx)
    logger = component_logger("worker")
    announce(state.config.telemetry, "worker", logger)

    async def _command(services: Services) -> int:
        config = services.config
        pool = WorkerPool(
            broker=services.broker,
            cache=services.cache,
            registry=build_registry(config, services.fetcher),
            store=services.store,
            policy=RetryPolicy.from_config(config.retry, logger=logger),
            concurrency=concurrency or config.worker.concurrency,
            max_file_size=config.worker.max_file_size,
            logger=logger,
        )
        await pool.run()
        return 0

    _run(state, _command)


@app.command("dispatch", help="Submit one URL and wait for its result.")
def dispatch(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Source URL"),
    requester: str = typer.Option("cli", "--requester", help="Requester id"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Override dispatcher.delivery_timeout"),
) -> None:
    state = _get_state(ctx)
    logger = component_logger("dispatcher")

    async def _command(services: Services) -> int:
        config = services.config
        dispatcher = Dispatcher(
            broker=services.broker,
            validator=SiteValidator(config.supported_sites.sites),
            delivery=ConsoleDeliveryClient(),
            timeout=timeout or config.dispatcher.delivery_timeout,
            max_bulk=config.retry.max_bulk,
            logger=logger,
        )
        ready = asyncio.Event()
        listener = asyncio.create_task(dispatcher.listen(ready))
        try:
            await ready.wait()
            job_id = await dispatcher.handle_request(url, requester)
            if job_id is None:
                return 1
            console.print(f"Job {job_id} dispatched", style="cyan")
            result = await dispatcher.wait(job_id)
            console.print(_render_result(result))
            return 0 if result.is_delivered else 1
        finally:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
            await dispatcher.close()

    code = _run(state, _command)
    if code:
        raise typer.Exit(code=code)


@app.command("retry-failed", help="Re-enqueue failed jobs listed in a JSON-lines file.")
def retry_failed(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File of failed job records"),
    max_bulk: Optional[int] = typer.Option(None, "--max-bulk", help="Override retry.max_bulk"),
) -> None:
    state = _get_state(ctx)
    records: list[FailedJob] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(FailedJob.from_message(json.loads(line)))
        except ValueError as exc:
            console.print(escape(f"Line {line_no} skipped: {exc}"), style="yellow")

    async def _command(services: Services) -> int:
        config = services.config
        dispatcher = Dispatcher(
            broker=services.broker,
            validator=SiteValidator(config.supported_sites.sites),
            delivery=ConsoleDeliveryClient(),
            timeout=config.dispatcher.delivery_timeout,
            max_bulk=config.retry.max_bulk,
            logger=component_logger("dispatcher"),
        )
        try:
            report = await dispatcher.retry_failed(records, max_bulk=max_bulk)
        finally:
            await dispatcher.close()
        console.print(
            f"requeued={len(report.requeued)} deferred={len(report.deferred)} failed={len(report.failed)}",
            style="green" if not report.failed else "yellow",
        )
        return 0

    _run(state, _command)


@cleaner_app.command("run", help="Run a single retention pass.")
def cleaner_run(ctx: typer.Context) -> None:
    state = _get_state(ctx)

    async def _command(services: Services) -> int:
        report = await build_retention(services).run_pass()
        console.print(_render_report(report))
        return 0

    _run(state, _command)


@cleaner_app.command("serve", help="Run retention passes on a cron schedule.")
def cleaner_serve(
    ctx: typer.Context,
    cron: Optional[str] = typer.Option(None, "--cron", help="Crontab expression (defaults to retention.cron)"),
) -> None:
    state = _get_state(ctx)
    expression = cron or state.config.retention.cron
    if not expression:
        console.print("No cron expression given (use --cron or retention.cron).", style="red")
        raise typer.Exit(code=1)

    async def _command(services: Services) -> int:
        engine = build_retention(services)
        scheduler = RetentionScheduler()
        scheduler.schedule_retention(expression, engine.run_pass)
        scheduler.start()
        print_schedule(scheduler)
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown()
        return 0

    _run(state, _command)


def print_schedule(scheduler: RetentionScheduler) -> None:
    for job in scheduler.list_jobs():
        line = f"Scheduled {job['id']}: next run {job['next_run_time']} ({job['trigger']})"
        console.print(escape(line), style="cyan")


@cache_app.command("show", help="List dedup cache entries.")
def cache_show(ctx: typer.Context) -> None:
    state = _get_state(ctx)

    async def _command(services: Services) -> int:
        entries = [entry async for entry in services.cache.entries()]
        usage = await asyncio.to_thread(services.store.usage)
        if not entries:
            console.print("Cache is empty.", style="dim")
            console.print(f"Storage usage: {usage} bytes", style="dim")
            return 0
        table = Table(
            title=f"Dedup cache · {len(entries)} entries",
            caption=f"Storage usage: {usage} bytes",
            box=box.SIMPLE_HEAD,
        )
        table.add_column("Fingerprint", style="cyan", no_wrap=True)
        table.add_column("Artifact", style="green", overflow="fold")
        table.add_column("Last served", style="magenta")
        for entry in sorted(entries, key=lambda item: item.fingerprint):
            table.add_row(entry.fingerprint, entry.artifact_reference, entry.last_served_at.isoformat())
        console.print(table)
        return 0

    _run(state, _command)


@cache_app.command("flush", help="Delete every cache entry (artifacts stay until retention).")
def cache_flush(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if not yes and not typer.confirm("Flush the whole dedup cache?"):
        console.print("Cancelled.", style="yellow")
        raise typer.Exit(code=0)

    async def _command(services: Services) -> int:
        removed = await services.cache.flush()
        console.print(f"Removed {removed} cache entries.", style="green")
        return 0

    _run(state, _command)


@log_app.command("show", help="Show the last lines of the application log.")
def log_show(
    ctx: typer.Context,
    tail: int = typer.Option(100, "--tail", help="Number of lines"),
    errors: bool = typer.Option(False, "--errors", help="Show error.log instead", is_flag=True),
) -> None:
    state = _get_state(ctx)
    name = default_log_path(errors_only=errors).name
    lines = tail_log(state.repository.locator.logs_dir / name, tail)
    if not lines:
        console.print("No log lines yet.", style="dim")
        return
    console.print(f"{name} · last {len(lines)} lines", style="cyan")
    console.print(escape("".join(lines)))


def cli() -> None:
    try:
        app()
    except MediaDownloaderError as exc:  # pragma: no cover
        console.print(exc.message, style="red")
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    cli()
