"""NepseWatch entry point.

Bootstrap and orchestration only: all functional code lives in the
``nepsewatch`` package.

Usage:
    python main.py serve                       # run the periodic scheduler
    python main.py run price_update            # run one job now
    python main.py run company_details_update --incremental
    python main.py report                      # price workbook + health page
"""

import asyncio
import signal
import sys
from collections.abc import Coroutine
from typing import Any

import click
from loguru import logger

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession
from nepsewatch.exceptions import LoggingInitializationError, NepseWatchError, UnknownJobError
from nepsewatch.jobs import JobKey, JobOutcome
from nepsewatch.logger import configure_logging
from nepsewatch.reporter import ReportGenerator
from nepsewatch.scheduler import JobScheduler
from nepsewatch.sinks import JsonFileSink
from nepsewatch.stats_store import JsonStatusStore
from nepsewatch.tasks import MarketJobs
from nepsewatch.triggers import TriggerAdapter

EXIT_INTERRUPTED = 130


def _validate_startup_requirements(config: GlobalConfig) -> None:
    """Create the state and output directories or exit.

    Raises:
        SystemExit: If a directory cannot be created.
    """
    for directory in (config.state_dir, config.output_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.critical("Failed to create directory", directory=str(directory), error=str(exc))
            sys.exit(1)

    logger.debug(
        "Startup validation complete",
        state_dir=str(config.state_dir),
        output_dir=str(config.output_dir),
        base_url=config.base_url,
    )


def _new_scheduler(config: GlobalConfig) -> JobScheduler:
    return JobScheduler(JsonStatusStore(config=config), config)


async def _serve(config: GlobalConfig) -> int:
    """Run the periodic triggers until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    received: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        received.append(sig)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    scheduler = _new_scheduler(config)
    await scheduler.load_stats()

    # Launched lazily by the first scrape attempt
    session = BrowserSession(config)
    try:
        jobs = MarketJobs(session, JsonFileSink(config=config), scheduler, config)
        triggers = TriggerAdapter(jobs)
        triggers.start()

        await stop.wait()
        logger.warning("Shutdown signal received", signal=received[0].name)
        await triggers.shutdown()
    finally:
        await session.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    return EXIT_INTERRUPTED if received[0] is signal.SIGINT else 0


async def _run_once(config: GlobalConfig, job_key: JobKey, full: bool) -> int:
    """Run one job through the same lock/watchdog/stats path as the triggers."""
    scheduler = _new_scheduler(config)
    await scheduler.load_stats()

    async with BrowserSession.create(config) as session:
        jobs = MarketJobs(
            session,
            JsonFileSink(config=config),
            scheduler,
            config,
            full_company_refresh=full,
        )
        outcome = await jobs.run(job_key)

    await scheduler.flush()
    stat = scheduler.stats[job_key]
    logger.info("Manual run finished", job=job_key.value, outcome=outcome.value, message=stat.message)
    return 0 if outcome is JobOutcome.SUCCESS else 1


async def _report(config: GlobalConfig) -> int:
    scheduler = _new_scheduler(config)
    await scheduler.load_stats()
    reporter = ReportGenerator(config)

    dashboard = reporter.generate_health_dashboard(scheduler.health().stats)
    logger.info("Health dashboard written", path=str(dashboard))

    prices = JsonFileSink(config=config).load_prices()
    if not prices:
        logger.warning("No stored prices, skipping price workbook")
        return 0

    latest = max(record.business_date for record in prices)
    workbook = reporter.generate_price_excel([r for r in prices if r.business_date == latest])
    logger.info("Price workbook written", path=str(workbook), business_date=str(latest))
    return 0


def _handle_fatal_error(exc: Exception) -> int:
    if isinstance(exc, NepseWatchError):
        logger.critical(
            "Fatal application error",
            error_type=type(exc).__name__,
            message=exc.message,
            context=exc.context,
        )
        return 1

    logger.exception("Unexpected fatal error", error=str(exc))
    return 1


def _execute(coro: Coroutine[Any, Any, int]) -> int:
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        return EXIT_INTERRUPTED
    except Exception as exc:
        return _handle_fatal_error(exc)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """NepseWatch - NEPSE market data scraper and job scheduler."""
    ctx.ensure_object(dict)

    # Cannot log until configure_logging succeeds
    try:
        config = get_config()
    except Exception as exc:
        click.echo(f"FATAL: Configuration loading failed: {exc}", err=True)
        ctx.exit(1)

    try:
        configure_logging(config)
    except LoggingInitializationError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        ctx.exit(1)

    _validate_startup_requirements(config)
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run all periodic jobs until interrupted."""
    config: GlobalConfig = ctx.obj["config"]
    logger.info("Starting scheduler service", app_name=config.app_name, environment=config.environment)
    ctx.exit(_execute(_serve(config)))


@cli.command("run")
@click.argument("job_key")
@click.option(
    "--full/--incremental",
    default=True,
    show_default=True,
    help="company_details_update: every instrument, or only those without a profile",
)
@click.pass_context
def run_job(ctx: click.Context, job_key: str, full: bool) -> None:
    """Run JOB_KEY once, now."""
    try:
        key = JobKey.parse(job_key)
    except UnknownJobError as exc:
        click.echo(f"{exc.message}. Known jobs: {', '.join(k.value for k in JobKey)}", err=True)
        ctx.exit(1)

    ctx.exit(_execute(_run_once(ctx.obj["config"], key, full)))


@cli.command()
@click.pass_context
def report(ctx: click.Context) -> None:
    """Write the health dashboard and the latest price workbook."""
    ctx.exit(_execute(_report(ctx.obj["config"])))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
