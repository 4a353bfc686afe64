"""CLI commands for ocbridge."""

import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ocbridge import __logo__, __version__
from ocbridge.config.loader import load_config
from ocbridge.config.schema import Config

app = typer.Typer(
    name="ocbridge",
    help=f"{__logo__} ocbridge - relay Feishu chats to a local opencode agent",
    no_args_is_help=True,
)

console = Console()

_SECRET_FIELDS = {"app_secret", "verification_token", "encrypt_key", "token"}
_OUTBOUND_FLUSH_S = 3.0

EnvFileOption = typer.Option(None, "--env-file", "-e", help="Path to a .env file")


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} ocbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
) -> None:
    """ocbridge - relay Feishu chats to a local opencode agent."""


def _load(env_file: Path | None) -> Config:
    if env_file is not None and not env_file.exists():
        console.print(f"[red]Env file not found: {env_file}[/red]")
        raise typer.Exit(1)
    try:
        return load_config(env_file)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        raise typer.Exit(1)


def _mask(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("***" if k in _SECRET_FIELDS and v else _mask(v)) for k, v in data.items()
        }
    if isinstance(data, list):
        return [_mask(v) for v in data]
    return data


# ============================================================================
# Gateway / Server
# ============================================================================


@app.command()
def gateway(
    env_file: Path | None = EnvFileOption,
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Start the bridge gateway."""
    from ocbridge.utils.helpers import setup_logging

    config = _load(env_file)
    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    if not config.feishu.enabled:
        console.print("[red]No channels enabled.[/red] Set OCBRIDGE_FEISHU__ENABLED=true.")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting ocbridge gateway...")
    try:
        asyncio.run(_run_gateway(config))
    except (RuntimeError, ValueError, OSError) as e:
        console.print(f"[red]Gateway failed: {e}[/red]")
        raise typer.Exit(1)


async def _run_gateway(config: Config) -> None:
    from ocbridge.agent.executor import AgentExecutor
    from ocbridge.agent.formatter import ResponseFormatter
    from ocbridge.agent.interpreter import CommandInterpreter
    from ocbridge.agent.loop import BridgeLoop
    from ocbridge.bus.queue import MessageBus
    from ocbridge.channels.manager import ChannelManager
    from ocbridge.session.manager import SessionManager

    bus = MessageBus()
    executor = AgentExecutor(config.agent)
    sessions = SessionManager(config.session, config.response)
    channels = ChannelManager(config, bus)
    bridge = BridgeLoop(
        bus=bus,
        executor=executor,
        sessions=sessions,
        formatter=ResponseFormatter(config.response),
        interpreter=CommandInterpreter(
            require_mention=config.security.require_mention,
            bot_aliases=config.feishu.bot_aliases,
        ),
        config=config,
        channels=channels,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    console.print(f"[green]✓[/green] Channels enabled: {', '.join(channels.enabled_channels)}")
    console.print(f"[green]✓[/green] Agent: {config.agent.path} (max {config.agent.max_concurrent} concurrent)")

    await channels.start_all()
    bridge_task = asyncio.create_task(bridge.run())
    try:
        stop_task = asyncio.create_task(stop.wait())
        await asyncio.wait({bridge_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()
    finally:
        console.print("\nShutting down...")
        bridge.stop()
        await executor.shutdown()
        await bridge_task
        deadline = loop.time() + _OUTBOUND_FLUSH_S
        while bus.outbound_size and loop.time() < deadline:
            await asyncio.sleep(0.1)
        await channels.stop_all()


# ============================================================================
# Agent helpers
# ============================================================================


@app.command()
def models(env_file: Path | None = EnvFileOption):
    """List the models the agent reports."""
    from ocbridge.agent.executor import AgentExecutor

    config = _load(env_file)
    names = AgentExecutor(config.agent).list_models()
    if not names:
        console.print("[yellow]No models reported by the agent.[/yellow]")
        raise typer.Exit(1)
    for name in names:
        marker = " [green](configured)[/green]" if name == config.agent.model else ""
        console.print(f"{name}{marker}")


@app.command()
def classify(
    text: str = typer.Argument(..., help="Message to classify"),
    use_agent: bool = typer.Option(True, "--agent/--no-agent", help="Ask the agent when ambiguous"),
    env_file: Path | None = EnvFileOption,
):
    """Show how a chat message would be routed."""
    from ocbridge.agent.executor import AgentExecutor
    from ocbridge.agent.interpreter import HINT_AMBIGUOUS, CommandInterpreter, ExecuteIntent

    config = _load(env_file)
    interpreter = CommandInterpreter(
        require_mention=False, bot_aliases=config.feishu.bot_aliases
    )
    intent = interpreter.interpret(text)
    if intent is None:
        console.print("intent: (ignored)")
        return
    console.print(f"intent: {type(intent).__name__}")
    if not isinstance(intent, ExecuteIntent):
        return

    console.print(f"hint: {intent.hint}")
    if use_agent and intent.hint == HINT_AMBIGUOUS:
        result = asyncio.run(AgentExecutor(config.agent).classify_intent(intent.command))
        console.print(f"agent: {result.label} ({result.confidence:.2f})")


@app.command("config")
def show_config(env_file: Path | None = EnvFileOption):
    """Show the effective configuration (secrets masked)."""
    config = _load(env_file)
    data = _mask(config.model_dump(mode="json"))

    table = Table(title="ocbridge configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for section, values in data.items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", escape(str(value)))
    console.print(table)


@app.command()
def version():
    """Show the ocbridge version."""
    console.print(f"{__logo__} ocbridge v{__version__}")


if __name__ == "__main__":
    app()
