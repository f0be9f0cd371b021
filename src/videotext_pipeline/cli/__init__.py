from __future__ import annotations

import asyncio
import importlib
import json
import signal
from contextlib import suppress

import click

from videotext_pipeline import __version__
from videotext_pipeline.config import get_safe_config_report
from videotext_pipeline.service import Ops, build
from videotext_pipeline.utils.log import logger, set_log_level


def _load_ops(target: str | None) -> Ops | None:
    """Resolve `package.module:callable` to the Ops it returns."""
    if not target:
        return None
    mod_name, _, attr = str(target).partition(":")
    if not mod_name or not attr:
        raise click.BadParameter("expected module:callable", param_hint="--ops")
    try:
        factory = getattr(importlib.import_module(mod_name), attr)
    except (ImportError, AttributeError) as ex:
        raise click.BadParameter(str(ex), param_hint="--ops") from ex
    ops = factory()
    if not isinstance(ops, Ops):
        raise click.BadParameter(f"{target} did not return Ops", param_hint="--ops")
    return ops


async def _serve(ops: Ops | None, *, drain_timeout_s: float) -> None:
    service = build(ops)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await service.start()
    logger.info("worker_ready", **service.queue.snapshot())
    await stop.wait()
    logger.info("worker_shutdown_requested")
    drained = await service.drain(timeout_s=drain_timeout_s)
    logger.info("worker_exit", drained=drained)


@click.group(name="videotext", help="videotext pipeline (workers + housekeeping)")
@click.version_option(__version__, prog_name="videotext")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override LOG_LEVEL for this run.",
)
def cli(log_level: str | None) -> None:
    if log_level:
        set_log_level(log_level)


@cli.command(name="worker")
@click.option(
    "--ops",
    "ops_spec",
    default=None,
    help="module:callable returning Ops (transcriber, translator, media).",
)
@click.option(
    "--drain-timeout",
    "drain_timeout_s",
    type=float,
    default=120.0,
    show_default=True,
    help="Seconds to wait for queued jobs on shutdown.",
)
def worker(ops_spec: str | None, drain_timeout_s: float) -> None:
    """Run the worker pool until SIGINT/SIGTERM."""
    asyncio.run(_serve(_load_ops(ops_spec), drain_timeout_s=drain_timeout_s))


@cli.command(name="sweep")
def sweep() -> None:
    """Remove expired upload sessions, batches and store entries."""
    click.echo(json.dumps(build().sweep(), sort_keys=True))


@cli.command(name="show-config")
def show_config() -> None:
    """Print the non-sensitive config report."""
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True))


@cli.command(name="status")
@click.argument("job_id")
def status(job_id: str) -> None:
    out = build().job_status(job_id)
    if out is None:
        raise click.ClickException(f"unknown job: {job_id}")
    click.echo(json.dumps(out, indent=2, sort_keys=True))


def main() -> None:
    cli()


__all__ = ["cli", "main"]
