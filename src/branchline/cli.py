"""Command line front end for branchline."""

from __future__ import annotations

import asyncio
import logging
import signal as signals
import sys
from pathlib import Path
from typing import Any

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from branchline.config import BranchlineConfig, load_config
from branchline.context import ContextTracker
from branchline.events.bus import EventBus
from branchline.llm.cancellation import CancelController
from branchline.llm.client import OllamaClient
from branchline.llm.errors import OllamaError
from branchline.session import ChatSession
from branchline.tree.engine import ConversationNotFoundError, MessageTree
from branchline.tree.store import SQLiteNodeStore
from branchline.types import ChatEvent, Conversation, EventType, MessageNode, new_id

console = Console()

_ROLE_STYLES = {
    "system": "magenta",
    "user": "bold cyan",
    "assistant": "green",
    "tool": "yellow",
}


def _make_client(config: BranchlineConfig) -> OllamaClient:
    return OllamaClient(config.server, config.retry)


def _make_prompt_session() -> PromptSession:
    history_path = Path("~/.config/branchline/history").expanduser()
    history_path.parent.mkdir(parents=True, exist_ok=True)
    return PromptSession(history=FileHistory(str(history_path)))


def _format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _run(coro: Any) -> Any:
    """Run *coro*, turning classified errors into a red message and exit 1."""
    try:
        return asyncio.run(coro)
    except OllamaError as e:
        console.print(f"[red]{e.code.value}: {e.message}[/red]")
        sys.exit(1)
    except LookupError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to branchline.yaml (auto-detected from CWD or ~/.config/branchline/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """branchline - branching chat client for local Ollama models."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = load_config(config_path)


# ---------------------------------------------------------------------------
# Server commands
# ---------------------------------------------------------------------------

@main.command()
@click.option("--running", is_flag=True, help="Only models loaded in memory")
@click.pass_obj
def models(config: BranchlineConfig, running: bool):
    """List models available on the server."""

    async def _list() -> dict[str, Any]:
        async with _make_client(config) as client:
            if running:
                return await client.list_running_models()
            return await client.list_models()

    data = _run(_list())
    entries = data.get("models", [])
    if not entries:
        console.print("[dim]No models found.[/dim]")
        return

    table = Table(title="Running models" if running else "Models", border_style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Family")
    table.add_column("Parameters")
    for m in entries:
        details = m.get("details", {})
        table.add_row(
            m.get("name", ""),
            _format_size(m.get("size", 0)),
            details.get("family", ""),
            details.get("parameter_size", ""),
        )
    console.print(table)


@main.command()
@click.pass_obj
def ping(config: BranchlineConfig):
    """Check that the server is reachable."""

    async def _ping():
        async with _make_client(config) as client:
            return await client.test_connection()

    status = _run(_ping())
    if status.connected:
        console.print(
            f"[green]Connected[/green] to {status.base_url} "
            f"(Ollama {status.version}, {status.latency_ms:.0f} ms)"
        )
        return
    console.print(f"[red]Cannot reach {status.base_url}: {status.error}[/red]")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Conversation commands
# ---------------------------------------------------------------------------

@main.command()
@click.option("--archived", is_flag=True, help="Show archived conversations")
@click.pass_obj
def conversations(config: BranchlineConfig, archived: bool):
    """List stored conversations."""
    store = SQLiteNodeStore(config.storage.resolved_path)
    try:
        items = _run(store.list_conversations(archived=archived))
    finally:
        store.close()

    if not items:
        console.print("[dim]No conversations yet. Start one with: branchline chat[/dim]")
        return

    table = Table(title="Conversations", border_style="dim")
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Title", max_width=50)
    table.add_column("Model")
    table.add_column("Messages", justify="right")
    for conv in items:
        title = f"[yellow]*[/yellow] {conv.title}" if conv.is_pinned else conv.title
        table.add_row(conv.id, title, conv.model, str(conv.message_count))
    console.print(table)


@main.command()
@click.argument("conversation_id")
@click.pass_obj
def tree(config: BranchlineConfig, conversation_id: str):
    """Print the message tree of a conversation; * marks the active path."""
    store = SQLiteNodeStore(config.storage.resolved_path)
    try:
        state = _run(MessageTree(store).load_conversation(conversation_id))
    finally:
        store.close()

    if not state.messages:
        console.print(f"[dim]Conversation {conversation_id} has no messages.[/dim]")
        return

    active = set(state.active_path)

    def label(node: MessageNode) -> str:
        marker = "[bold]*[/bold] " if node.id in active else "  "
        preview = node.content.replace("\n", " ")[:60] or "[dim](empty)[/dim]"
        style = _ROLE_STYLES.get(node.role, "white")
        return f"{marker}[{style}]{node.role}[/{style}] {preview} [dim]{node.id[:8]}[/dim]"

    root = Tree(f"[bold]{conversation_id}[/bold]")

    def add(branch: Tree, node: MessageNode) -> None:
        child = branch.add(label(node))
        for child_id in node.child_ids:
            add(child, state.messages[child_id])

    for node in state.messages.values():
        if node.parent_id is None:
            add(root, node)
    console.print(root)


@main.command()
@click.argument("conversation_id", required=False)
@click.option("--model", "-m", default=None, help="Model to chat with")
@click.option("--prompt", "-p", "prompt_text", default=None,
              help="Send one message and exit")
@click.pass_obj
def chat(config: BranchlineConfig, conversation_id: str | None,
         model: str | None, prompt_text: str | None):
    """Chat in a conversation (a new one unless CONVERSATION_ID is given).

    Commands inside the chat: /regen, /prev, /next, /quit.  Ctrl-C stops
    the reply being streamed.
    """
    _run(_chat(config, conversation_id, model, prompt_text))


async def _chat(
    config: BranchlineConfig,
    conversation_id: str | None,
    model: str | None,
    prompt_text: str | None,
) -> None:
    store = SQLiteNodeStore(config.storage.resolved_path)
    engine = MessageTree(store)

    if conversation_id is None:
        conv = await store.create_conversation(
            Conversation(id=new_id(), model=model or config.default_model),
        )
        console.print(f"[dim]New conversation {conv.id}[/dim]")
    else:
        found = await store.get_conversation(conversation_id)
        if found is None:
            store.close()
            raise ConversationNotFoundError(conversation_id)
        conv = found

    bus = EventBus()

    def on_token(event: ChatEvent) -> None:
        console.print(event.data["token"], end="", markup=False, highlight=False)

    def on_stopped(event: ChatEvent) -> None:
        console.print(f"\n[yellow]Stopped: {event.data['error']}[/yellow]")

    bus.subscribe(EventType.STREAM_TOKEN, on_token)
    bus.subscribe(EventType.STREAM_ABORTED, on_stopped)

    chat_model = model or conv.model or config.default_model
    client = _make_client(config)
    session = ChatSession(
        client,
        engine,
        conv.id,
        model=chat_model,
        event_bus=bus,
        context=ContextTracker(
            chat_model,
            throttle_ms=config.streaming.context_throttle_ms,
        ),
        append_interval_ms=config.streaming.append_interval_ms,
    )

    async def turn(action: Any, *args: Any) -> None:
        controller = CancelController()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signals.SIGINT, controller.abort)
        try:
            await action(*args, signal=controller.signal)
        except OllamaError as e:
            # One-shot mode reports failures through the exit status
            if prompt_text is not None and not e.is_abort:
                raise
            if not e.is_abort:
                console.print(f"\n[red]{e.code.value}: {e.message}[/red]")
        finally:
            loop.remove_signal_handler(signals.SIGINT)
        console.print()
        usage = session.context.usage
        style = "red" if usage.is_critical else "yellow" if usage.is_near_limit else "dim"
        console.print(f"[{style}]{usage.status_message}[/{style}]")

    try:
        await session.load()
        if prompt_text is not None:
            await turn(session.send, prompt_text)
            return

        console.print(Panel(
            f"Model: [bold]{session.model}[/bold]\n"
            "/regen  new reply   /prev /next  switch branch   /quit  exit",
            title="branchline", border_style="blue",
        ))
        for node in session.state.active_messages:
            style = _ROLE_STYLES.get(node.role, "white")
            console.print(f"[{style}]{node.role}>[/{style}] {node.content}")

        prompt = _make_prompt_session()
        while True:
            try:
                line = (await prompt.prompt_async("you> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line == "/regen":
                if not session.state.can_regenerate:
                    console.print("[dim]Nothing to regenerate.[/dim]")
                    continue
                await turn(session.regenerate)
                continue
            if line in ("/prev", "/next"):
                leaf = session.state.leaf_id
                if leaf is not None:
                    session.switch_branch(leaf, line[1:])
                    last = session.state.active_messages[-1]
                    console.print(f"[green]{last.role}>[/green] {last.content}")
                continue
            await turn(session.send, line)
    finally:
        await client.close()
        store.close()
