"""relaycore CLI — watch hub events, run processing jobs, inspect backoff.

Usage:
    relaycore listen                                  # Print every pushed event as JSON
    relaycore listen --event NewAlert --duration 60   # One event, for a minute
    relaycore process aggregate rows.json --options '{"aggregations": {"amount": "sum"}}'
    relaycore backoff                                 # Reconnect delay schedule
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import sys
from typing import Optional

import click

from relaycore import __version__
from relaycore.config import settings
from relaycore.events import types as ev
from relaycore.log import configure_logging
from relaycore.processing.engine import DataProcessingEngine
from relaycore.realtime.backoff import ReconnectPolicy
from relaycore.service import RealtimeService

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


_STATUS_COLORS = {
    ev.STATUS_CONNECTED: "green",
    ev.STATUS_RECONNECTED: "green",
    ev.STATUS_DISCONNECTED: "yellow",
    ev.STATUS_ERROR: "red",
    ev.STATUS_FAILED: "red",
}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="relaycore")
@click.option("--log-level", default=None, help="Override RELAYCORE_LOG_LEVEL")
def main(log_level: Optional[str]):
    """relaycore — real-time hub client and data processing engine."""
    configure_logging(log_level or settings.log_level, settings.log_format)


# ---------------------------------------------------------------------------
# relaycore listen
# ---------------------------------------------------------------------------


@main.command()
@click.option("--url", help="Hub URL (default: RELAYCORE_HUB_URL)")
@click.option("--token", help="Bearer token (default: RELAYCORE_ACCESS_TOKEN)")
@click.option("--event", "events", multiple=True, help="Event to print (repeatable; default: all)")
@click.option("--duration", type=float, default=None, help="Stop after N seconds")
def listen(url: Optional[str], token: Optional[str], events: tuple[str, ...],
           duration: Optional[float]):
    """Connect to the hub and print pushed events as JSON lines."""
    try:
        _run(_listen_impl(url, token, events, duration))
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)


async def _listen_impl(url: Optional[str], token: Optional[str],
                       events: tuple[str, ...], duration: Optional[float]):
    overrides = {}
    if url:
        overrides["hub_url"] = url
    if token:
        overrides["access_token"] = token
    config = settings.model_copy(update=overrides)

    if not config.access_token:
        click.secho("Error: --token required (or set RELAYCORE_ACCESS_TOKEN)", fg="red", err=True)
        sys.exit(1)

    service = RealtimeService.from_settings(config)
    finished = asyncio.Event()

    def on_status(payload: dict):
        status = payload.get("status", "")
        click.secho(f"[{status}] {_pretty_json(payload)}", fg=_STATUS_COLORS.get(status), err=True)
        if status in (ev.STATUS_FAILED, ev.STATUS_ERROR):
            finished.set()

    def printer(name: str):
        return lambda payload: click.echo(json.dumps({"event": name, "data": payload}, default=str))

    service.connection.on_state_change(on_status)
    for name in events or (*ev.HUB_EVENTS, *ev.CHANNEL_EVENTS):
        service.dispatcher.subscribe(name, printer(name))

    try:
        try:
            await service.start()
        except Exception as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            sys.exit(1)
        try:
            await asyncio.wait_for(finished.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
    finally:
        await service.close()


# ---------------------------------------------------------------------------
# relaycore process
# ---------------------------------------------------------------------------


@main.command()
@click.argument("operation", type=click.Choice(["aggregate", "filter", "sort", "transform", "analyze"]))
@click.argument("data_file", type=click.File("r"))
@click.option("--options", "options_json", default="{}", help="Operation options as JSON")
@click.option("--workers", type=int, default=None, help="Worker processes (default: CPU count)")
def process(operation: str, data_file, options_json: str, workers: Optional[int]):
    """Run OPERATION over a JSON array of rows read from DATA_FILE ('-' for stdin)."""
    try:
        data = json.load(data_file)
        options = json.loads(options_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}")
    if not isinstance(data, list):
        raise click.BadParameter("DATA_FILE must contain a JSON array of objects")
    if not isinstance(options, dict):
        raise click.BadParameter("--options must be a JSON object")

    response = _run(_process_impl(operation, data, options, workers or settings.processing_workers or None))
    click.echo(_pretty_json(response.to_message()))
    if not response.success:
        sys.exit(1)


async def _process_impl(operation: str, data: list, options: dict, workers: Optional[int]):
    async with DataProcessingEngine(max_workers=workers) as engine:
        return await engine.submit(operation, data, options)


# ---------------------------------------------------------------------------
# relaycore backoff
# ---------------------------------------------------------------------------


@main.command()
@click.option("--attempts", type=int, default=None, help="Attempts to show (default: policy max)")
def backoff(attempts: Optional[int]):
    """Print the reconnect delay schedule (before jitter)."""
    policy = ReconnectPolicy.from_settings(settings)
    count = policy.max_attempts if attempts is None else attempts
    rows = []
    for attempt in range(1, count + 1):
        base = policy.base_delay(attempt)
        rows.append({
            "attempt": attempt,
            "delay_ms": f"{base:g}",
            "max_ms": f"{base + policy.jitter_max_ms:g}",
        })
    _print_table(rows, [("ATTEMPT", "attempt", 8), ("DELAY MS", "delay_ms", 10), ("WITH JITTER <", "max_ms", 14)])
    click.echo(f"\nmax attempts: {policy.max_attempts}, cap: {policy.cap_delay_ms} ms")


if __name__ == "__main__":
    main()
