#!/usr/bin/env python3
"""
Demo Director - CLI

Runs declarative demo scenes against the Agent:
Load scene -> Stage setup -> Action sequence -> Recording -> Teardown
"""
import asyncio
import signal
import shutil
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import (
    AGENT_PORT, COMMAND_TIMEOUT, VIF_HOME,
    agent_url, targets_url
)

console = Console()

EXIT_INTERRUPTED = 130


async def run_with_signals(runner) -> None:
    """Run the scene; SIGINT/SIGTERM cancel it so teardown still happens."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # No loop signal handlers on Windows; KeyboardInterrupt still applies
            pass

    try:
        await runner.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


async def probe_agent(port: int, timeout: float = 2.0) -> bool:
    """True if the Agent accepts a WebSocket connection."""
    from director.errors import AgentConnectionError
    from director.protocol import ProtocolClient

    client = ProtocolClient(agent_url(port), timeout=timeout)
    try:
        await asyncio.wait_for(client.connect(), timeout)
    except (AgentConnectionError, asyncio.TimeoutError):
        return False
    await client.close()
    return True


async def probe_telemetry() -> bool:
    """True if the target app's telemetry endpoint answers."""
    from director.telemetry import TelemetryClient

    return await TelemetryClient().is_available()


@click.group()
@click.version_option(version="1.0.0")
def cli():
    """Demo Director - Record scripted app demos."""
    pass


@cli.command()
@click.argument("scene_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--dry-run", is_flag=True, help="Log commands without connecting or recording")
@click.option("--verbose", "-v", is_flag=True, help="Show every command and wait")
@click.option("--no-validate", is_flag=True, help="Skip telemetry validation of clicks")
@click.option("--port", default=AGENT_PORT, show_default=True, help="Agent WebSocket port")
@click.option("--timeout", default=COMMAND_TIMEOUT, show_default=True,
              help="Seconds to wait for each Agent reply")
def run(scene_file: str, dry_run: bool, verbose: bool, no_validate: bool, port: int, timeout: float):
    """Run a scene file."""
    from director.scenes import load_scene
    from director.scene_runner import SceneRunner

    try:
        scene = load_scene(scene_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[bold red]Invalid scene:[/bold red] {escape(str(e))}")
        sys.exit(1)

    console.print(Panel(
        f"[bold blue]Scene[/bold blue]: {escape(scene.scene.name)}\n"
        f"Mode: {scene.scene.mode}\n"
        f"Actions: {len(scene.sequence)}\n"
        f"Agent: {agent_url(port)}" + ("\n[yellow]Dry run[/yellow]" if dry_run else ""),
        title="Demo Director"
    ))

    runner = SceneRunner(
        scene,
        port=port,
        verbose=verbose,
        dry_run=dry_run,
        validate=not no_validate,
        timeout=timeout,
        console=console,
    )

    try:
        asyncio.run(run_with_signals(runner))
    except (asyncio.CancelledError, KeyboardInterrupt):
        console.print("[yellow]Interrupted, scene torn down[/yellow]")
        sys.exit(EXIT_INTERRUPTED)
    except Exception:
        # The runner has already reported the failure
        sys.exit(1)


@cli.command()
@click.option("--port", default=AGENT_PORT, show_default=True, help="Agent WebSocket port")
def check(port: int):
    """Check system requirements and the Agent connection."""
    from director.recorder import Recorder

    table = Table(title="System Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details", style="yellow")

    # Check FFmpeg
    ffmpeg = shutil.which("ffmpeg")
    table.add_row(
        "FFmpeg",
        "[green]OK[/green]" if ffmpeg else "[red]Missing[/red]",
        ffmpeg or "Install: brew install ffmpeg / apt install ffmpeg"
    )

    # Check FFprobe
    ffprobe = shutil.which("ffprobe")
    table.add_row(
        "FFprobe",
        "[green]OK[/green]" if ffprobe else "[red]Missing[/red]",
        ffprobe or "Included with FFmpeg"
    )

    # Check screen capture
    recorder = Recorder()
    available, message = recorder.is_available()
    table.add_row(
        f"Screen capture ({recorder.platform})",
        "[green]OK[/green]" if available else "[red]Unavailable[/red]",
        message
    )

    # Check Agent
    agent_ok = asyncio.run(probe_agent(port))
    table.add_row(
        "Agent",
        "[green]Connected[/green]" if agent_ok else "[red]Not running[/red]",
        agent_url(port)
    )

    # Check target app telemetry
    telemetry_ok = asyncio.run(probe_telemetry())
    table.add_row(
        "App telemetry",
        "[green]OK[/green]" if telemetry_ok else "[yellow]Optional[/yellow]",
        targets_url()
    )

    table.add_row("Output", "[green]OK[/green]" if VIF_HOME.exists() else "[yellow]Not created[/yellow]",
                  str(VIF_HOME))

    console.print(table)


@cli.command("scene-example")
def scene_example():
    """Show an example scene file."""
    from director.scenes import get_example_scene

    console.print(Panel(
        "[bold blue]Example Scene[/bold blue]\n"
        "Use this as a template for your own demo scenes",
        title="Scene Format"
    ))

    console.print(get_example_scene(), markup=False, highlight=False)

    console.print("\n[bold green]Save this to a .yaml file and run:[/bold green]")
    console.print("python main.py run your_scene.yaml")


if __name__ == "__main__":
    cli()
