"""Main Typer application for the virtualsa CLI."""

import asyncio
import json
import os
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from virtualsa.config import ENV_VARS, Settings, configure_logging, load_settings
from virtualsa.errors import BackendError, ConfigurationError, SessionTransportError
from virtualsa.mcp.registry import BackendRegistry, build_registry
from virtualsa.realtime.injector import error_text, summarize, truncate
from virtualsa.realtime.negotiator import LocalMedia
from virtualsa.realtime.session import DebugEvent, SessionState, build_session
from virtualsa.realtime.transcript import TranscriptLine

console = Console()

app = typer.Typer(
    name="virtualsa",
    help="Realtime voice solutions architect: relay server and tool backends.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def _settings(env_file: Optional[str]) -> Settings:
    try:
        settings = load_settings(env_file)
    except ConfigurationError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    configure_logging(settings.log_level)
    return settings


def _mask(value: str) -> str:
    return f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "***"


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind."),
    port: int = typer.Option(3000, "--port", "-p", help="Port to listen on."),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file."),
) -> None:
    """Run the credential and SDP relay server."""
    import uvicorn

    from virtualsa.server.app import app as server_app

    _settings(env_file)
    console.print(f"[bold]virtualsa[/bold] serving on http://{host}:{port}")
    uvicorn.run(server_app, host=host, port=port)


@app.command()
def tools(
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file."),
) -> None:
    """List the enabled tool routes."""
    registry = build_registry(_settings(env_file))

    table = Table(title="Tool Routes", border_style="blue")
    table.add_column("Prefix", style="bold")
    table.add_column("Backend")
    table.add_column("Transport")
    table.add_column("Category")
    table.add_column("Defaults", style="dim")
    for route in registry.routes:
        table.add_row(
            route.prefix,
            route.backend,
            route.client.backend.transport,
            route.category,
            json.dumps(route.defaults) if route.defaults else "",
        )
    console.print(table)
    asyncio.run(registry.aclose())


async def _call(registry: BackendRegistry, name: str, arguments: dict, timeout: float):
    route = registry.match(name)
    try:
        if route is None:
            return None, None
        segments = await asyncio.wait_for(
            route.client.call(name, route.apply_defaults(arguments)), timeout=timeout
        )
        return route, segments
    finally:
        await registry.aclose()


@app.command("call-tool")
def call_tool(
    name: str = typer.Argument(..., help="Tool name, e.g. tavily_search."),
    args: str = typer.Option("{}", "--args", "-a", help="JSON object of arguments."),
    timeout: float = typer.Option(60.0, "--timeout", "-t", help="Overall timeout in seconds."),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file."),
) -> None:
    """Invoke one tool backend and print the text the model would receive."""
    try:
        arguments = json.loads(args)
    except ValueError as exc:
        console.print(f"[red]Error:[/red] --args is not valid JSON: {exc}")
        raise typer.Exit(code=2)
    if not isinstance(arguments, dict):
        console.print("[red]Error:[/red] --args must be a JSON object")
        raise typer.Exit(code=2)

    settings = _settings(env_file)
    registry = build_registry(settings)
    try:
        route, segments = asyncio.run(_call(registry, name, arguments, timeout))
    except BackendError as exc:
        console.print(f"[red]{exc.backend} {exc.kind} error:[/red] {error_text(exc)}")
        raise typer.Exit(code=1)
    except asyncio.TimeoutError:
        console.print(f"[red]Error:[/red] {name} did not finish within {timeout}s")
        raise typer.Exit(code=1)

    if route is None:
        console.print(f"[red]Error:[/red] no backend handles {name}")
        raise typer.Exit(code=1)
    console.print(truncate(summarize(name, route.label, segments), settings.result_cap))


def _print_line(line: TranscriptLine) -> None:
    console.print(f"[bold]{line.speaker}:[/bold] {line.text}")


def _print_debug(event: DebugEvent) -> None:
    if event.type.startswith(("tool.", "canvas.", "connection.")):
        console.print(f"[dim]{event.type}[/dim] {event.label}")


async def _receive_only() -> LocalMedia:
    return LocalMedia()


async def _connect(settings: Settings, instructions: Optional[str], seconds: Optional[float]) -> None:
    components = build_session(settings, on_transcript=_print_line, on_debug=_print_debug)
    session = components.session
    try:
        await components.start(_receive_only, instructions=instructions)
        console.print(f"[green]Connected[/green] {session.session_id}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds if seconds else None
        while session.state is SessionState.ACTIVE:
            if deadline is not None and loop.time() >= deadline:
                break
            await asyncio.sleep(0.5)
    finally:
        await components.aclose()


@app.command()
def connect(
    instructions: Optional[str] = typer.Option(
        None, "--instructions", "-i", help="Extra session context for the model."
    ),
    seconds: Optional[float] = typer.Option(
        None, "--seconds", "-s", help="Disconnect after this many seconds."
    ),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="Path to a .env file."),
) -> None:
    """Open a receive-only realtime session and print transcripts and tool activity."""
    settings = _settings(env_file)
    try:
        asyncio.run(_connect(settings, instructions, seconds))
    except SessionTransportError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[dim]Disconnected[/dim]")


@app.command()
def env() -> None:
    """Show the environment variables virtualsa reads."""
    table = Table(title="Environment Variables", border_style="blue")
    table.add_column("Variable", style="bold")
    table.add_column("Value")
    table.add_column("Description", style="dim")

    set_count = 0
    for var in ENV_VARS:
        value = os.getenv(var.name)
        if value:
            set_count += 1
            display = _mask(value) if var.secret else value
        elif var.default is not None:
            display = f"[dim]{var.default} (default)[/dim]"
        else:
            display = "[dim]not set[/dim]"
        table.add_row(var.name, display, var.description)

    console.print(table)
    console.print(f"\n[dim]{set_count}/{len(ENV_VARS)} variables set[/dim]")
