"""Jailhouse command line interface."""
import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console

from jailhouse.bundle import default_bundle
from jailhouse.config import JailhouseConfig, load_config
from jailhouse.core.exceptions import JailhouseError
from jailhouse.docker.driver import DockerDriver
from jailhouse.docker.teardown import reap_managed_containers
from jailhouse.guard import Guard
from jailhouse.logging import configure_logging


console = Console()
err_console = Console(stderr=True)

app = typer.Typer(help="Jailhouse: run Python methods in disposable Docker containers.")

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Settings file (default: $JAILHOUSE_SETTINGS or jailhouse.yaml)"),
]


@app.callback()
def main_callback(
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Minimum log level (default: from config/env)"),
    ] = None,
) -> None:
    """
    Jailhouse: run Python methods in disposable Docker containers.
    """
    configure_logging(log_level or JailhouseConfig().log_level)


def _safe_load_config(config_path: Path | None) -> JailhouseConfig:
    """Load configuration, exiting with a readable message on failure.

    Raises:
        typer.Exit: If the settings file is missing or invalid.
    """
    try:
        return load_config(config_path)
    except (JailhouseError, ValidationError) as e:
        err_console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(1) from None


def _parse_arg(raw: str) -> Any:
    """Decode a CLI argument as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@app.command(name="image-name")
def image_name(config_path: ConfigOption = None) -> None:
    """Print the sandbox image reference for the current settings."""
    config = _safe_load_config(config_path)
    if config.image_name:
        console.print(config.image_name)
        return
    if config.inmate_dir is None or not config.inmate:
        err_console.print("[red]Error:[/red] set 'image_name', or 'inmate_dir' and 'inmate'")
        raise typer.Exit(1)
    bundle = default_bundle(
        config.inmate_dir,
        config.inmate,
        base_name=config.image_base_name,
        python_version=config.python_version,
        dockerfile=config.dockerfile,
    )
    console.print(bundle.image_name)


@app.command(name="build-image")
def build_image(config_path: ConfigOption = None) -> None:
    """Build the sandbox image unless Docker already has it."""
    config = _safe_load_config(config_path)

    async def _build() -> str:
        async with Guard.from_config(config.model_copy(update={"no_proxy": False})) as guard:
            return await guard.ensure_image()

    try:
        image = asyncio.run(_build())
    except JailhouseError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    console.print(f"[green]✓[/green] Image ready: [bold]{image}[/bold]")


@app.command(name="call")
def call(
    method: Annotated[str, typer.Argument(help="Inmate method name")],
    args: Annotated[
        list[str] | None,
        typer.Argument(help="Arguments, each decoded as JSON when possible"),
    ] = None,
    config_path: ConfigOption = None,
    no_proxy: Annotated[
        bool,
        typer.Option("--no-proxy", help="Run the method in-process instead of in a container"),
    ] = False,
) -> None:
    """Call an inmate method and print its return value as JSON."""
    config = _safe_load_config(config_path)
    if no_proxy:
        config = config.model_copy(update={"no_proxy": True})
    values = [_parse_arg(raw) for raw in args or []]

    def _on_yield(*progress: Any) -> None:
        err_console.print(f"[dim]progress:[/dim] {json.dumps(progress, default=str)}")

    async def _call() -> Any:
        async with Guard.from_config(config) as guard:
            return await guard.call(method, *values, on_yield=_on_yield)

    try:
        result = asyncio.run(_call())
    except JailhouseError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    typer.echo(json.dumps(result, default=str))


@app.command(name="reap")
def reap(config_path: ConfigOption = None) -> None:
    """Remove leaked Jailhouse-managed containers."""
    config = _safe_load_config(config_path)

    async def _reap() -> int:
        driver = DockerDriver(endpoint=config.endpoint)
        try:
            return await reap_managed_containers(driver)
        finally:
            await driver.close()

    removed = asyncio.run(_reap())
    console.print(f"Removed {removed} container(s)")
