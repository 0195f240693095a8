"""peergate CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable, Coroutine
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_shutdown_requested = False

BANNER = """
██████╗ ███████╗███████╗██████╗  ██████╗  █████╗ ████████╗███████╗
██╔══██╗██╔════╝██╔════╝██╔══██╗██╔════╝ ██╔══██╗╚══██╔══╝██╔════╝
██████╔╝█████╗  █████╗  ██████╔╝██║  ███╗███████║   ██║   █████╗
██╔═══╝ ██╔══╝  ██╔══╝  ██╔══██╗██║   ██║██╔══██║   ██║   ██╔══╝
██║     ███████╗███████╗██║  ██║╚██████╔╝██║  ██║   ██║   ███████╗
╚═╝     ╚══════╝╚══════╝╚═╝  ╚═╝ ╚═════╝ ╚═╝  ╚═╝   ╚═╝   ╚══════╝
              HTTP over peer connections
"""


def configure_logging(level: str) -> None:
    import structlog

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )
    for noisy in ("aiortc", "aioice"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def parse_service(value: str) -> tuple[str, str]:
    """Parse ``TAG=HOST:PORT``."""
    tag, sep, address = value.partition("=")
    if not sep or not tag or ":" not in address:
        raise click.BadParameter(f"Expected TAG=HOST:PORT, got {value!r}")
    return tag, address


def parse_bind(bind: str) -> tuple[str, int]:
    if ":" in bind:
        host, port = bind.rsplit(":", 1)
        return host, int(port)
    return bind, 8080


def _given(**options: Any) -> dict[str, Any]:
    """Command-line options the user actually passed; unset ones leave file values alone."""
    return {key: value for key, value in options.items() if value is not None}


def _run_with_signal_handling(factory: Callable[[], Coroutine[Any, Any, None]]) -> None:
    """Run a long-lived coroutine, cancelling it cleanly on Ctrl+C."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    main_task = loop.create_task(factory())

    def signal_handler(sig: int, frame: object) -> None:
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except KeyboardInterrupt:
        pass
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info)",
)
@click.pass_context
def main(ctx: click.Context, config_file: str | None, verbose: bool, log_level: str):
    """peergate - HTTP over peer connections.

    Relays HTTP requests from a local gateway to a remote service host
    through a WebRTC data channel, using a signaling server only to
    set the connection up.

    \b
    Quick start:
        Terminal 1: peergate signaling
        Terminal 2: peergate host --service default=localhost:3000
        Terminal 3: peergate gateway
        Then:       curl http://127.0.0.1:8080/

    Use 'peergate COMMAND --help' for more info on specific commands.
    """
    file_config: dict[str, Any] = {}
    if config_file:
        from peergate.core.config import flatten_config, load_config_from_file

        try:
            file_config = flatten_config(load_config_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    ctx.ensure_object(dict)
    ctx.obj["file_config"] = file_config
    ctx.obj["log_level"] = "debug" if verbose else log_level.lower()

    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: peergate signaling", style="yellow")
        console.print("       peergate host --service default=localhost:3000", style="yellow")
        console.print("       peergate gateway --target host-node", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  peergate gateway      Start the request-relaying gateway", style="dim")
        console.print("  peergate host         Start the service host", style="dim")
        console.print("  peergate signaling    Start the signaling server", style="dim")
        console.print("  peergate status       Show signaling server status", style="dim")
        console.print("  peergate config show  Show effective configuration", style="dim")
        console.print("  peergate version      Show version information", style="dim")


@main.command()
@click.option("--signaling", "signaling_url", default=None, help="Signaling server WebSocket URL")
@click.option("--target", "target_peer_id", default=None, help="Peer id of the service host")
@click.option("--bind", default=None, help="Address to listen on (default: 127.0.0.1:8080)")
@click.option(
    "--topology",
    type=click.Choice(["per-request", "shared"]),
    default=None,
    help="Data channel per request, or one shared channel",
)
@click.option("--http-version", default=None, help="Version tag written on relayed requests")
@click.option("--negotiation-timeout", type=float, default=None, help="Seconds to wait for the peer session")
@click.option("--response-timeout", type=float, default=None, help="Seconds to wait for response headers")
@click.pass_context
def gateway(
    ctx: click.Context,
    signaling_url: str | None,
    target_peer_id: str | None,
    bind: str | None,
    topology: str | None,
    http_version: str | None,
    negotiation_timeout: float | None,
    response_timeout: float | None,
):
    """Start the gateway that relays local HTTP requests to the service host."""
    from peergate.core.config import get_config

    file_config = ctx.obj["file_config"]
    overrides = {
        key: file_config[key]
        for key in (
            "signaling_url",
            "target_peer_id",
            "http_version",
            "channel_topology",
            "negotiation_timeout",
            "response_timeout",
            "channel_open_timeout",
            "bootstrap_label",
            "ice_servers",
        )
        if key in file_config
    }
    overrides.update(
        _given(
            signaling_url=signaling_url,
            target_peer_id=target_peer_id,
            http_version=http_version,
            channel_topology=topology,
            negotiation_timeout=negotiation_timeout,
            response_timeout=response_timeout,
        )
    )
    try:
        config = get_config().gateway(**overrides)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)
    host, port = parse_bind(bind or file_config.get("bind", "127.0.0.1:8080"))

    configure_logging(ctx.obj["log_level"])
    console.print(BANNER, style="cyan")
    _run_with_signal_handling(lambda: _serve_gateway(config, host, port))


async def _serve_gateway(config: Any, host: str, port: int) -> None:
    from peergate.gateway.server import GatewayServer

    server = GatewayServer(config, host=host, port=port)
    await server.start()
    console.print(
        Panel.fit(
            f"[bold]Gateway:[/bold]   http://{host}:{port}\n"
            f"[bold]Target:[/bold]    {config.target_peer_id}\n"
            f"[bold]Signaling:[/bold] {config.signaling_url}\n"
            f"[bold]Topology:[/bold]  {config.channel_topology.value}",
            title="peergate gateway",
            border_style="green",
        )
    )
    console.print("\nPress Ctrl+C to stop.\n", style="dim")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        console.print("[green]Gateway closed.[/green]")


@main.command()
@click.option("--signaling", "signaling_url", default=None, help="Signaling server WebSocket URL")
@click.option("--peer-id", default=None, help="Identity to register under")
@click.option(
    "--service", "-s",
    "services",
    multiple=True,
    help="Backend for a routing tag, as TAG=HOST:PORT (repeatable)",
)
@click.pass_context
def host(ctx: click.Context, signaling_url: str | None, peer_id: str | None, services: tuple[str, ...]):
    """Start the service host that answers gateways and serves local backends."""
    from peergate.core.config import get_config

    file_config = ctx.obj["file_config"]
    service_map: dict[str, str] = dict(file_config.get("services") or {})
    try:
        service_map.update(parse_service(value) for value in services)
    except click.BadParameter as e:
        console.print(f"[red]{e.message}[/red]")
        sys.exit(2)
    if not service_map:
        console.print("[red]No services configured.[/red] Use --service TAG=HOST:PORT")
        sys.exit(2)

    overrides = {
        key: file_config[key]
        for key in ("signaling_url", "peer_id", "ice_servers", "shared_label", "read_chunk_size")
        if key in file_config
    }
    overrides.update(_given(signaling_url=signaling_url, peer_id=peer_id), services=service_map)
    try:
        config = get_config().host(**overrides)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)

    configure_logging(ctx.obj["log_level"])
    console.print(BANNER, style="cyan")

    table = Table(title="Services")
    table.add_column("Tag", style="cyan")
    table.add_column("Backend")
    for tag, address in sorted(config.services.items()):
        table.add_row(tag, address)
    console.print(table)

    _run_with_signal_handling(lambda: _serve_host(config))


async def _serve_host(config: Any) -> None:
    from peergate.core.exceptions import PeerGateError, format_error_for_user
    from peergate.host.responder import ServiceHost

    service_host = ServiceHost(config)
    try:
        await service_host.start()
    except PeerGateError as e:
        console.print(f"[red]Error:[/red] {format_error_for_user(e)}")
        return
    console.print(f"Registered as [bold]{config.peer_id}[/bold] on {config.signaling_url}", style="green")
    console.print("\nPress Ctrl+C to stop.\n", style="dim")
    try:
        await service_host.wait_closed()
    finally:
        await service_host.stop()
        console.print("[green]Service host stopped.[/green]")


@main.command()
@click.option("--host", "bind_host", default=None, help="Interface to bind (default: 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Port to listen on (default: 8000)")
@click.pass_context
def signaling(ctx: click.Context, bind_host: str | None, port: int | None):
    """Start the signaling rendezvous server."""
    from peergate.core.config import SignalingServerConfig

    file_config = ctx.obj["file_config"]
    values: dict[str, Any] = {}
    for key in ("host", "port", "path"):
        if f"signaling_{key}" in file_config:
            values[key] = file_config[f"signaling_{key}"]
    if bind_host is not None:
        values["host"] = bind_host
    if port is not None:
        values["port"] = port
    config = SignalingServerConfig(**values)

    configure_logging(ctx.obj["log_level"])
    console.print(BANNER, style="cyan")
    _run_with_signal_handling(lambda: _serve_signaling(config))


async def _serve_signaling(config: Any) -> None:
    from peergate.signaling.server import SignalingServer

    server = SignalingServer(config)
    await server.start()
    console.print(
        f"Signaling server listening on ws://{config.host}:{config.port}{config.path}",
        style="green",
    )
    console.print("\nPress Ctrl+C to stop.\n", style="dim")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


@main.command()
@click.option("--server", default="localhost:8000", help="Signaling server address")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, json_output: bool):
    """Show signaling server status.

    Queries the server's /health endpoint and reports registered peers.
    """
    import httpx

    try:
        base_url = server if server.startswith(("http://", "https://")) else f"http://{server}"
        with httpx.Client(timeout=5.0) as client:
            try:
                health = client.get(f"{base_url}/health").json()
            except Exception:
                health = {"status": "unknown", "peers": 0}

        if json_output:
            console.print(json.dumps({"health": health}, indent=2))
            return

        console.print(f"\n[bold]Server:[/bold] {server}")
        status = health.get("status", "unknown")
        color = "green" if status == "healthy" else "yellow"
        console.print(f"[bold]Status:[/bold] [{color}]{status}[/{color}]")
        console.print(f"[bold]Registered peers:[/bold] {health.get('peers', 0)}")

    except Exception as e:
        console.print(f"[red]Error connecting to server:[/red] {e}")
        sys.exit(1)


@main.group()
def config():
    """Inspect configuration."""


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool):
    """Show the effective configuration from environment variables."""
    from peergate.core.config import get_config

    data = get_config().to_display_dict()
    if json_output:
        console.print(json.dumps(data, indent=2))
        return

    for section, values in data.items():
        table = Table(title=section.capitalize())
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for key, value in values.items():
            table.add_row(key, "indefinite" if value is None else str(value))
        console.print(table)


@main.command()
def version():
    """Show version information."""
    from peergate import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
