"""knot-cloud CLI -- drive the gateway cloud transport from a shell.

Thin wrapper around :class:`knot.transport.HTTPTransport` using click.
Every command probes the endpoint, opens one connection, runs its
operation over it and tears everything down again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Iterator

import click

from knot.config import GatewayConfig
from knot.protocol import Credential, KnotError, RawPayload
from knot.transport import TransportBase, create_transport

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(msg: str) -> None:
    """Print an error message to stderr and exit 1."""
    click.echo(msg, err=True)
    raise SystemExit(1)


def _read_json_arg(value: str) -> str:
    """Return *value*, or stdin when *value* is ``-``."""
    if value == "-":
        return sys.stdin.read()
    return value


def _echo_payload(payload: RawPayload) -> None:
    click.echo(payload.text if payload.size else "(empty)")


@contextlib.contextmanager
def _session(ctx: click.Context) -> Iterator[tuple[TransportBase, object, GatewayConfig]]:
    """Probe, connect, yield ``(transport, sock, config)``, then tear down."""
    cfg: GatewayConfig = ctx.obj["config"]
    transport = create_transport(
        cfg.proto, timeout=cfg.timeout, poll_interval=cfg.poll_interval
    )
    transport.probe(cfg.host, cfg.port)
    try:
        sock = transport.connect()
        try:
            yield transport, sock, cfg
        finally:
            transport.close(sock)
    finally:
        transport.remove()


def _credential(cfg: GatewayConfig) -> Credential:
    try:
        return cfg.credential()
    except ValueError as exc:
        _error(f"Error: {exc}")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="knot-cloud")
@click.option(
    "--config", "-f", "config_file", type=click.Path(dir_okay=False), default=None,
    help="Gateway configuration file (JSON with a 'cloud' section).",
)
@click.option("--host", "-h", default=None, help="Cloud server host.")
@click.option("--port", "-p", type=int, default=None, help="Cloud server port.")
@click.option("--proto", "-P", default=None, help="Cloud protocol (eg: http).")
@click.option("--verbose", "-v", is_flag=True, help="Log requests and responses.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: str | None,
    host: str | None,
    port: int | None,
    proto: str | None,
    verbose: bool,
) -> None:
    """KNOT gateway cloud transport CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        cfg = GatewayConfig(
            config_file=config_file, host=host, port=port, proto=proto
        )
    except (OSError, ValueError) as exc:
        _error(f"Error: {exc}")
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def probe(ctx: click.Context) -> None:
    """Resolve the cloud endpoint and print its URLs."""
    cfg: GatewayConfig = ctx.obj["config"]
    transport = create_transport(cfg.proto, timeout=cfg.timeout)
    try:
        endpoint = transport.probe(cfg.host, cfg.port)
    except KnotError as exc:
        _error(f"Error: {exc}")
    try:
        click.echo(f"Address: {endpoint.address}")
        click.echo(f"Devices: {endpoint.devices_url}")
        click.echo(f"Data:    {endpoint.data_url}")
    finally:
        transport.remove()


# ---------------------------------------------------------------------------
# Device operations
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def signin(ctx: click.Context) -> None:
    """Sign in with the configured credential and print the device."""
    cred = _credential(ctx.obj["config"])
    try:
        with _session(ctx) as (transport, sock, _cfg):
            _echo_payload(transport.signin(cred.uuid, cred.token, sock=sock))
    except KnotError as exc:
        _error(f"Error: {exc}")


@cli.command()
@click.argument("device_json")
@click.option(
    "--signin/--no-signin", "do_signin", default=True,
    help="Sign in with the new credential after creating the device.",
)
@click.pass_context
def create(ctx: click.Context, device_json: str, do_signin: bool) -> None:
    """Register a new device (DEVICE_JSON, or - for stdin)."""
    body = _read_json_arg(device_json)
    try:
        with _session(ctx) as (transport, sock, _cfg):
            created = transport.create_device(body, sock=sock)
            _echo_payload(created)
            if do_signin:
                cred = Credential.from_device(created.json())
                transport.signin(cred.uuid, cred.token, sock=sock)
                click.echo(f"Signed in as {cred.uuid}")
    except KnotError as exc:
        _error(f"Error: {exc}")
    except ValueError as exc:
        _error(f"Error: unexpected create response: {exc}")


@cli.command()
@click.pass_context
def remove(ctx: click.Context) -> None:
    """Unregister the configured device."""
    cred = _credential(ctx.obj["config"])
    try:
        with _session(ctx) as (transport, sock, _cfg):
            transport.remove_device(cred.uuid, cred.token, sock=sock)
            click.echo(f"Removed {cred.uuid}")
    except KnotError as exc:
        _error(f"Error: {exc}")


@cli.command()
@click.argument("schema_json")
@click.pass_context
def schema(ctx: click.Context, schema_json: str) -> None:
    """Replace the device schema (SCHEMA_JSON, or - for stdin)."""
    cred = _credential(ctx.obj["config"])
    body = _read_json_arg(schema_json)
    try:
        with _session(ctx) as (transport, sock, _cfg):
            _echo_payload(transport.set_schema(cred.uuid, cred.token, body, sock=sock))
    except KnotError as exc:
        _error(f"Error: {exc}")


@cli.command()
@click.argument("data_json")
@click.pass_context
def setdata(ctx: click.Context, data_json: str) -> None:
    """Update device properties (DATA_JSON, or - for stdin)."""
    cred = _credential(ctx.obj["config"])
    body = _read_json_arg(data_json)
    try:
        with _session(ctx) as (transport, sock, _cfg):
            _echo_payload(transport.set_data(cred.uuid, cred.token, body, sock=sock))
    except KnotError as exc:
        _error(f"Error: {exc}")


@cli.command()
@click.argument("data_json")
@click.pass_context
def publish(ctx: click.Context, data_json: str) -> None:
    """Send a reading to the device data stream (DATA_JSON, or - for stdin)."""
    cred = _credential(ctx.obj["config"])
    body = _read_json_arg(data_json)
    try:
        with _session(ctx) as (transport, sock, _cfg):
            _echo_payload(
                transport.publish_data(cred.uuid, cred.token, body, sock=sock)
            )
    except KnotError as exc:
        _error(f"Error: {exc}")


@cli.command()
@click.pass_context
def fetch(ctx: click.Context) -> None:
    """Fetch and print the configured device."""
    cred = _credential(ctx.obj["config"])
    try:
        with _session(ctx) as (transport, sock, _cfg):
            _echo_payload(transport.fetch_data(cred.uuid, cred.token, sock=sock))
    except KnotError as exc:
        _error(f"Error: {exc}")


# ---------------------------------------------------------------------------
# knot-cloud watch
# ---------------------------------------------------------------------------


def _print_update(payload: str, context: object) -> None:
    click.echo(payload)


async def _watch(transport: TransportBase, sock: object, cred: Credential) -> None:
    """Run a watch until SIGINT/SIGTERM or until the socket hangs up."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    watch_id = transport.register_watch(sock, cred.uuid, cred.token, _print_update)
    watch = transport.get_watch(watch_id)

    stopper = asyncio.create_task(stop.wait())
    released = asyncio.create_task(watch.wait_released())
    done, pending = await asyncio.wait(
        {stopper, released}, return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()
    if released in done:
        click.echo("Connection closed by cloud.", err=True)
    await transport.aunregister_watch(watch_id)


@cli.command()
@click.option(
    "--interval", "-i", type=float, default=None,
    help="Seconds between polls (default: 10).",
)
@click.pass_context
def watch(ctx: click.Context, interval: float | None) -> None:
    """Poll the configured device and print every update."""
    cfg: GatewayConfig = ctx.obj["config"]
    if interval is not None:
        cfg.poll_interval = interval
    cred = _credential(cfg)
    try:
        with _session(ctx) as (transport, sock, _cfg):
            transport.signin(cred.uuid, cred.token, sock=sock)
            asyncio.run(_watch(transport, sock, cred))
    except KnotError as exc:
        _error(f"Error: {exc}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
