"""vizbox CLI: drive the sandbox pipeline from a terminal.

Runs on the local sandbox backend, so every sandbox is a child process on
this machine.

Usage::

    vizbox check
    vizbox generate request.json --output chart.html
    vizbox serve request.json
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from vizbox.config import SandboxConfig
from vizbox.logging import configure_logging
from vizbox.services import Vizbox
from vizbox.types import DeploymentLog, DeploymentStage, VizboxError

app = typer.Typer(
    name="vizbox",
    help="Preview AI-generated charts in ephemeral sandboxes.",
    no_args_is_help=True,
)

console = Console()

_LOCAL_TOKEN = "local"

_STAGE_COLORS: dict[DeploymentStage, str] = {
    DeploymentStage.GENERATION: "magenta",
    DeploymentStage.SANDBOX_CREATION: "blue",
    DeploymentStage.DEPLOYMENT: "cyan",
    DeploymentStage.VERIFICATION: "yellow",
    DeploymentStage.READY: "green",
    DeploymentStage.ERROR: "red",
}


class CLIError(Exception):
    """Raised for CLI-level input errors."""


def load_payload(path: str | Path) -> dict[str, Any]:
    """Read a generation request from a JSON file.

    Raises:
        CLIError: Missing file, invalid JSON, or not a JSON object.
    """
    p = Path(path)
    if not p.is_file():
        raise CLIError(f"Payload file not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CLIError(f"Invalid JSON in {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise CLIError(f"Payload must be a JSON object, got {type(data).__name__}")
    return data


def local_config() -> SandboxConfig:
    """Environment config; the local backend accepts any token, so one is filled in."""
    config = SandboxConfig.from_env()
    if not config.is_configured:
        config = config.model_copy(update={"deploy_token": _LOCAL_TOKEN})
    return config


def _print_event(log: DeploymentLog) -> None:
    event = log.events[-1]
    color = _STAGE_COLORS.get(event.stage, "white")
    line = f"[{color}]{event.stage.value:<16}[/{color}] {event.message}"
    if event.error:
        line += f" [red]({event.error})[/red]"
    console.print(line)


def _resolve_api_key(api_key: str | None) -> str:
    key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
    if not key:
        console.print("[red]Error: --api-key required or set ANTHROPIC_API_KEY.[/red]")
        raise typer.Exit(code=1)
    return key


def _load_or_exit(payload_file: str) -> dict[str, Any]:
    try:
        return load_payload(payload_file)
    except CLIError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging."),
    ] = False,
) -> None:
    """Run chart generators in ephemeral sandboxes."""
    config = SandboxConfig.from_env()
    configure_logging("DEBUG" if verbose else config.log_level, config.log_format)


@app.command()
def check() -> None:
    """Show whether sandboxing is configured and the effective settings."""
    config = SandboxConfig.from_env()
    state = "[green]enabled[/green]" if config.is_configured else "[yellow]disabled[/yellow]"
    console.print(f"Sandbox functionality: {state}")

    table = Table(title="Effective configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for key, value in config.describe().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def generate(
    payload_file: Annotated[str, typer.Argument(help="JSON file with the generation request.")],
    output: Annotated[
        str,
        typer.Option("--output", "-o", help="Where to write the generated HTML."),
    ] = "visualization.html",
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", help="Anthropic API key (default: ANTHROPIC_API_KEY)."),
    ] = None,
) -> None:
    """Generate a chart in a throwaway sandbox and save the resulting HTML."""
    payload = _load_or_exit(payload_file)
    key = _resolve_api_key(api_key)
    tracking_id = uuid.uuid4().hex

    async def _run() -> str:
        async with Vizbox(local_config()) as vb:
            vb.tracker.start(tracking_id)
            vb.tracker.subscribe(tracking_id, _print_event)
            result = await vb.poller.create_and_fetch_visualization(payload, key, tracking_id)
            return result.artifact

    try:
        artifact = asyncio.run(_run())
    except VizboxError as exc:
        console.print(f"[red]Generation failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    Path(output).write_text(artifact, encoding="utf-8")
    console.print(f"[green]Wrote {len(artifact)} bytes to {output}[/green]")


@app.command()
def serve(
    payload_file: Annotated[str, typer.Argument(help="JSON file with the generation request.")],
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", help="Anthropic API key (default: ANTHROPIC_API_KEY)."),
    ] = None,
) -> None:
    """Deploy a generator sandbox and keep it running until Ctrl+C."""
    payload = _load_or_exit(payload_file)
    key = _resolve_api_key(api_key)
    tracking_id = uuid.uuid4().hex

    async def _run() -> None:
        async with Vizbox(local_config()) as vb:
            vb.tracker.start(tracking_id)
            vb.tracker.subscribe(tracking_id, _print_event)
            viz = await vb.orchestrator.create_visualization(payload, key, tracking_id)
            console.print(f"[bold green]Preview:[/bold green] {viz.url}")
            console.print("[dim]Press Ctrl+C to stop.[/dim]")
            await asyncio.Event().wait()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[dim]Sandbox destroyed.[/dim]")
    except VizboxError as exc:
        console.print(f"[red]Deployment failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
