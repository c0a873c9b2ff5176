"""
usage-collector CLI.

Commands:
    run         push NDJSON records through the usage output
    dlq-replay  print dead-letter records
    config      show effective settings
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import IO

import typer
import uvicorn
from loguru import logger
from pydantic import ValidationError

from .config import CollectorSettings, get_settings
from .errors import DeadLetterSinkUnavailable
from .metrics import PrometheusMetrics
from .output import FileDeadLetterSink, UsageOutput
from .service.app import create_app

app = typer.Typer(help="usage-collector operational CLI")


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Replace loguru's default handler; ``json_logs`` emits one JSON object per line."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=json_logs)


def _load_settings() -> CollectorSettings:
    try:
        return get_settings()
    except ValidationError as e:
        typer.echo(f"Invalid configuration:\n{e}", err=True)
        raise typer.Exit(code=2)


# ---------------------------
# Ingestion
# ---------------------------


async def _pump(stream: IO[str], output: UsageOutput, counts: dict) -> None:
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        counts["lines"] += 1
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            counts["malformed"] += 1
            logger.warning(f"Malformed JSON on line {counts['lines']}: {e}")
            record = {"raw": line}  # fails validation and is dead-lettered
        await output.add(record)


async def _run(settings: CollectorSettings, source: str, serve: bool) -> dict:
    metrics = PrometheusMetrics()
    output = UsageOutput(settings, metrics=metrics)
    counts = {"lines": 0, "malformed": 0}

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform

    server = None
    server_task = None
    if serve:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(output, metrics.registry),
                host=settings.http_host,
                port=settings.http_port,
                log_level="warning",
            )
        )
        server_task = asyncio.create_task(server.serve())
        logger.info(f"Serving /healthz and /metrics on {settings.http_host}:{settings.http_port}")

    stream = sys.stdin if source == "-" else open(source, "r", encoding="utf-8")
    try:
        await output.start()
        pump = asyncio.create_task(_pump(stream, output, counts))
        waiter = asyncio.create_task(stop.wait())
        done, _ = await asyncio.wait({pump, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if pump not in done:
            logger.info("Shutdown signal received, stopping intake")
            pump.cancel()
        waiter.cancel()
        await asyncio.gather(pump, waiter, return_exceptions=True)
        if not pump.cancelled() and pump.exception() is not None:
            raise pump.exception()
    finally:
        try:
            await output.close()
        finally:
            if stream is not sys.stdin:
                stream.close()
            if server is not None:
                server.should_exit = True
                await server_task

    health = output.health()
    return {**counts, "peak_in_flight": health.peak_in_flight}


@app.command("run")
def run(
    source: str = typer.Option("-", "--input", "-i", help="NDJSON file of records, '-' for stdin"),
    serve: bool = typer.Option(True, "--serve/--no-serve", help="Serve /healthz and /metrics"),
):
    """Push NDJSON records through the usage output until EOF or SIGTERM."""
    settings = _load_settings()
    configure_logging(settings.log_level, settings.log_json)
    try:
        stats = asyncio.run(_run(settings, source, serve))
    except DeadLetterSinkUnavailable as e:
        logger.critical(f"Fatal: {e}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(stats))


# ---------------------------
# Dead letters / config
# ---------------------------


@app.command("dlq-replay")
def dlq_replay(
    path: Path = typer.Argument(..., help="NDJSON dead-letter file"),
    limit: int = typer.Option(100, "--limit", help="Maximum records to print"),
):
    """Print dead-letter records as JSON lines."""
    sink = FileDeadLetterSink(path, mkdirs=False)
    for rec in asyncio.run(sink.replay(limit)):
        typer.echo(rec.to_json())


@app.command("config")
def show_config():
    """Print effective settings (API key masked)."""
    settings = _load_settings()
    typer.echo(json.dumps(settings.masked(), indent=2))


if __name__ == "__main__":
    app()
