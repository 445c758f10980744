"""CLI for Chat Relay: run the relay server or chat with it from a terminal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click
import uvicorn
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from chat_relay import __version__
from chat_relay.client.consumer import RelayClient
from chat_relay.client.session import ChatSession
from chat_relay.config import RelayConfig, load_config
from chat_relay.events.bus import EventBus
from chat_relay.server import create_app
from chat_relay.store import ConversationStore, SQLiteBackend
from chat_relay.types import EventType, RelayEvent

console = Console()

_HELP = """\
  /new             - Start a new conversation
  /list            - List conversations
  /switch <n>      - Switch to conversation n from /list
  /delete [n]      - Delete conversation n (default: current)
  /history         - Show the current conversation
  /retry           - Resend the last prompt
  /quit            - Exit
  Ctrl-C while a reply streams stops it."""


class _LiveRenderer:
    """Render target for the session; points at the active ``Live`` display."""

    def __init__(self) -> None:
        self.live: Live | None = None

    def __call__(self, text: str) -> None:
        if self.live is not None:
            self.live.update(Markdown(text))


class _StatusPrinter:
    """Prints one status line per session event."""

    def __init__(self, bus: EventBus) -> None:
        bus.subscribe(EventType.STREAM_ERROR, self.on_error)
        bus.subscribe(EventType.STREAM_CANCELLED, self.on_cancelled)
        bus.subscribe(EventType.CONVERSATION_CREATED, self.on_created)
        bus.subscribe(EventType.CONVERSATION_SWITCHED, self.on_switched)
        bus.subscribe(EventType.CONVERSATION_DELETED, self.on_deleted)

    def on_error(self, event: RelayEvent) -> None:
        hint = " [dim](/retry to resend)[/dim]" if event.data.get("can_retry") else ""
        console.print(f"[red]{escape(event.data.get('error') or '')}[/red]{hint}")

    def on_cancelled(self, event: RelayEvent) -> None:
        console.print("[dim]Stopped.[/dim]")

    def on_created(self, event: RelayEvent) -> None:
        console.print("[dim]New conversation.[/dim]")

    def on_switched(self, event: RelayEvent) -> None:
        console.print(f"[dim]Switched to {escape(event.data.get('title', ''))}[/dim]")

    def on_deleted(self, event: RelayEvent) -> None:
        console.print("[dim]Deleted.[/dim]")


def _open_store(config: RelayConfig) -> tuple[ConversationStore, SQLiteBackend]:
    backend = SQLiteBackend(config.storage.db_path)
    store = ConversationStore(backend, title_length=config.storage.title_length)
    return store, backend


# ---------------------------------------------------------------------------
# Interactive chat
# ---------------------------------------------------------------------------

async def _stream_reply(session: ChatSession, renderer: _LiveRenderer, prompt: str) -> None:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.stop)
    try:
        with Live(Markdown(""), console=console, refresh_per_second=30, transient=True) as live:
            renderer.live = live
            reply = await session.send(prompt)
    finally:
        renderer.live = None
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    if reply is not None:
        console.print(Markdown(reply))
    console.print()


def _print_conversations(session: ChatSession) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Messages", justify="right")
    for i, conv in enumerate(session.conversation_list(), 1):
        marker = "*" if conv.id == session.current_id else ""
        table.add_row(f"{i}{marker}", escape(conv.title), str(len(conv.messages)))
    console.print(table)


def _pick(session: ChatSession, arg: str) -> str | None:
    convs = session.conversation_list()
    try:
        return convs[int(arg) - 1].id
    except (ValueError, IndexError):
        console.print(f"[yellow]No conversation #{escape(arg)}[/yellow]")
        return None


async def _handle_command(line: str, session: ChatSession, renderer: _LiveRenderer) -> bool:
    """Run a slash command.  Returns False to quit."""
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()

    if cmd in ("/quit", "/exit"):
        return False
    if cmd == "/help":
        console.print(_HELP)
    elif cmd == "/new":
        await session.new_chat()
    elif cmd == "/list":
        _print_conversations(session)
    elif cmd == "/switch":
        target = _pick(session, arg)
        if target:
            await session.switch_conversation(target)
    elif cmd == "/delete":
        target = _pick(session, arg) if arg else session.current_id
        if target:
            await session.delete_conversation(target)
    elif cmd == "/history":
        for message in session.current_messages():
            console.print(f"[bold]{message.role.value}[/bold]")
            console.print(Markdown(message.content))
    elif cmd == "/retry":
        if session.last_prompt:
            await _stream_reply(session, renderer, session.last_prompt)
        else:
            console.print("[yellow]Nothing to retry.[/yellow]")
    else:
        console.print(f"[yellow]Unknown command: {escape(cmd)}[/yellow] (try /help)")
    return True


async def _chat_loop(config: RelayConfig) -> None:
    store, backend = _open_store(config)
    pruned = store.prune(config.storage.keep_conversations)
    if pruned:
        console.print(f"[dim]Pruned {pruned} old conversations[/dim]")

    client = RelayClient(config.client)
    renderer = _LiveRenderer()
    bus = EventBus()
    _StatusPrinter(bus)
    session = ChatSession(
        store,
        client,
        render=renderer,
        event_bus=bus,
        frame_interval=config.client.frame_interval,
        transform=None,
    )
    prompt_session: PromptSession[str] = PromptSession()

    console.print(
        f"[bold cyan]Chat Relay[/bold cyan] [dim]v{__version__} "
        f"@ {escape(config.client.base_url)} - /help for commands[/dim]\n"
    )
    try:
        while True:
            try:
                line = await prompt_session.prompt_async(HTML("<b>&gt; </b>"))
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await _handle_command(line, session, renderer):
                    break
                continue
            await _stream_reply(session, renderer, line)
    finally:
        await client.close()
        backend.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_relay.yaml (auto-detected from CWD or ~/.config/chat-relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Chat Relay - streaming chat-completion relay and terminal client."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = load_config(config_path)


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", type=int, default=None, help="Port (default: PORT or 3001)")
@click.pass_obj
def serve(config: RelayConfig, host: str | None, port: int | None) -> None:
    """Run the relay server."""
    host = host or config.server.host
    port = port or config.server.port
    console.print(f"[bold]Relay running on http://{host}:{port}[/bold]")
    console.print(f"[dim]Health check: http://{host}:{port}/health[/dim]")
    console.print(f"[dim]Chat API: http://{host}:{port}/api/chat[/dim]")
    uvicorn.run(create_app(config), host=host, port=port, log_level=config.server.log_level)


@main.command()
@click.option("--url", "base_url", default=None, help="Relay base URL")
@click.pass_obj
def chat(config: RelayConfig, base_url: str | None) -> None:
    """Chat with a running relay."""
    if base_url:
        config.client.base_url = base_url
    asyncio.run(_chat_loop(config))


@main.command("export")
@click.argument("output", type=click.Path(dir_okay=False), required=False)
@click.pass_obj
def export_cmd(config: RelayConfig, output: str | None) -> None:
    """Export all conversations as JSON (to OUTPUT or stdout)."""
    store, backend = _open_store(config)
    try:
        text = store.export_json()
    finally:
        backend.close()
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"[dim]Exported {len(store)} conversations to {escape(output)}[/dim]")
    else:
        click.echo(text)


@main.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_cmd(config: RelayConfig, source: str) -> None:
    """Replace all conversations with a JSON export."""
    store, backend = _open_store(config)
    try:
        count = store.import_json(Path(source).read_text(encoding="utf-8"))
    except ValueError as e:
        raise click.ClickException(f"Import failed: {e}") from e
    finally:
        backend.close()
    console.print(f"Imported {count} conversations")
