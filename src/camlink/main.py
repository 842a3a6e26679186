#!/usr/bin/env python3
"""
camlink - command-line runner for ONVIF device connections
"""

import asyncio
import json
import logging
from typing import List, Optional

import typer

from camlink import __version__
from camlink.api.discovery import probe
from camlink.core.connection import DeviceConnection
from camlink.core.device_manager import DeviceManager
from camlink.core.errors import CamlinkError, ConfigurationError
from camlink.core.features import EventsFeature
from camlink.models.device import ConnectionState, DiscoveredDevice, EventRecord
from camlink.utils.config import Config

logger = logging.getLogger(__name__)

app = typer.Typer(help="Connect to ONVIF cameras: discovery, profiles and events")


def _setup_logging(level: str = "INFO", verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_dir: Optional[str], verbose: bool) -> Config:
    config = Config(config_dir)
    _setup_logging(config.get("logging.level", "INFO"), verbose)
    return config


def _select(manager: DeviceManager, device: Optional[str]) -> List[DeviceConnection]:
    if device is None:
        connections = manager.get_all_devices()
        if not connections:
            raise ConfigurationError("No devices configured")
        return connections

    connection = manager.find_device(device)
    if connection is None:
        raise ConfigurationError(f"Device '{device}' not found in configuration")
    return [connection]


def _print_device(device: DiscoveredDevice):
    xaddr = device.xaddrs[0] if device.xaddrs else ""
    typer.echo(f"{device.host}:{device.port} {device.name} ({device.vendor}) {xaddr}")


@app.command("discover")
def discover_devices(
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Probe timeout in seconds"),
    separate: bool = typer.Option(False, "--separate", help="Print each device as JSON on its own line"),
    config_dir: Optional[str] = typer.Option(None, "--config-dir", help="Configuration directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Probe the local network for ONVIF devices."""
    config = _load(config_dir, verbose)
    timeout = timeout if timeout is not None else config.get("discovery.timeout", 5.0)

    try:
        if separate:
            asyncio.run(probe(timeout, on_device=lambda d: typer.echo(json.dumps(d.to_dict()))))
            return

        devices = asyncio.run(probe(timeout))
    except OSError as e:
        typer.echo(f"Error: discovery failed: {e}", err=True)
        raise typer.Exit(code=1) from None

    if not devices:
        typer.echo("No ONVIF devices found")
        return
    for device in devices:
        _print_device(device)


async def _show_profiles(manager: DeviceManager, device: Optional[str]):
    connections = _select(manager, device)
    try:
        for connection in connections:
            state = await connection.initialize()
            if state is not ConnectionState.CONNECTED:
                typer.echo(f"{connection.config.label}: {state.value} ({connection.last_error})")
                continue

            typer.echo(f"{connection.config.label}:")
            for profile in connection.get_profiles():
                typer.echo(f"  {profile.token}: {profile.name}")
    finally:
        await manager.shutdown()


@app.command("profiles")
def list_profiles(
    config_dir: Optional[str] = typer.Option(None, "--config-dir", help="Configuration directory"),
    device: Optional[str] = typer.Option(None, "--device", help="Device id, address or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Connect to configured devices and list their media profiles."""
    config = _load(config_dir, verbose)
    try:
        asyncio.run(_show_profiles(DeviceManager.from_config(config), device))
    except CamlinkError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None


async def _watch(config: Config, manager: DeviceManager, device: str, mode: str, duration: Optional[float]):
    connection = _select(manager, device)[0]
    events = EventsFeature(
        connection,
        poll_interval=config.get("events.poll_interval", 1.0),
        message_limit=config.get("events.message_limit", 10),
        pull_timeout=config.get("events.pull_timeout", "PT5S"),
    )

    def on_event(record: EventRecord):
        typer.echo(json.dumps(record.to_dict(), default=str))

    try:
        state = await connection.initialize()
        if state is not ConnectionState.CONNECTED:
            raise CamlinkError(f"Could not connect: {connection.last_error}", address=connection.address)

        if mode == "push":
            events.start(on_event)
        else:
            await events.subscribe(on_event)

        typer.echo(f"Watching events on {connection.config.label} ({mode}); Ctrl-C to stop", err=True)
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await events.close()
        await manager.shutdown()


@app.command("watch")
def watch_events(
    device: str = typer.Option(..., "--device", help="Device id, address or name"),
    events: str = typer.Option("pull", "--events", help="Event mode: pull or push"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after this many seconds"),
    config_dir: Optional[str] = typer.Option(None, "--config-dir", help="Configuration directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Print events from one device as JSON lines."""
    if events not in ("pull", "push"):
        typer.echo("Error: --events must be 'pull' or 'push'", err=True)
        raise typer.Exit(code=2)

    config = _load(config_dir, verbose)
    try:
        asyncio.run(_watch(config, DeviceManager.from_config(config), device, events, duration))
    except CamlinkError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        pass


@app.command("version")
def version() -> None:
    """Print the camlink version."""
    typer.echo(__version__)


def main():
    """Main application entry point."""
    app()


if __name__ == "__main__":
    main()
