"""CLI: phantom chat, phantom history"""

import asyncio
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from phantom_chat.channels import GLOBAL_CHANNEL
from phantom_chat.errors import TransportError
from phantom_chat.models.events import UIEvent
from phantom_chat.models.message import DeliveryState, ViewMessage, ViewRow
from phantom_chat.projector import ViewProjector

console = Console()

HELP = (
    "/peer ID  /global  /edit UUID TEXT  /react UUID EMOJI  /delete UUID  "
    "/retry UUID  /file PATH  /quit"
)


def _get_client():
    from phantom_chat.cli.main import _get_client
    return _get_client()


def _get_store():
    from phantom_chat.cli.main import _get_store
    return _get_store()


def _run(coro):
    from phantom_chat.cli.main import _run
    return _run(coro)


def render_message(msg: ViewMessage) -> str:
    if msg.is_system:
        return f"[dim italic]{escape(msg.content)}[/dim italic]"
    body = escape(msg.content)
    if msg.file_name:
        body = escape(f"[{msg.type.value}: {msg.file_name}, {msg.file_size}]")
    line = f"[dim]{msg.time}[/dim] [bold]{escape(msg.sender)}[/bold]: {body}"
    if msg.reply_to:
        line = f"[dim]> {escape(msg.reply_to.sender)}: {escape(msg.reply_to.content[:40])}[/dim]\n{line}"
    if msg.is_edited:
        line += " [dim](edited)[/dim]"
    if msg.reactions:
        line += "  " + " ".join(f"{emoji}{len(who)}" for emoji, who in msg.reactions.items())
    if msg.delivery == DeliveryState.FAILED:
        line += " [red](failed, /retry)[/red]"
    if msg.uuid:
        line += f" [dim]#{msg.uuid[:8]}[/dim]"
    return line


def render_row(row: ViewRow) -> None:
    if row.date_separator:
        console.rule(f"[dim]{row.date_separator.strftime('%d %B %Y')}[/dim]")
    console.print(render_message(row.message))


def _resolve_uuid(messages: list[ViewMessage], prefix: str) -> Optional[str]:
    matches = [m.uuid for m in messages if m.uuid and m.uuid.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


@click.command("history")
@click.argument("channel", default=GLOBAL_CHANNEL)
@click.option("-q", "--search", "query", default=None, help="Only messages matching text or sender.")
def history_cmd(channel: str, query: Optional[str]):
    """Print stored history of a channel or peer."""

    async def _history():
        store = _get_store()
        try:
            projector = ViewProjector(store)
            await projector.load(channel)
        finally:
            await store.close()
        rows = projector.rows(query)
        if not rows:
            console.print(f"[dim]#{channel}: no messages[/dim]")
        for row in rows:
            render_row(row)

    _run(_history())


@click.command("chat")
@click.option("-p", "--peer", "peer_id", default=None, help="Open a direct chat with this peer.")
def chat_cmd(peer_id: Optional[str]):
    """Interactive chat."""

    async def _chat():
        client = _get_client()
        engine = client.engine
        printed: set[str] = set()

        def show_new() -> None:
            for msg in engine.projector.messages:
                # Reprint on edit or reaction.
                key = f"{msg.uuid or msg.timestamp}:{msg.sender}:{msg.content}:{sorted(msg.reactions.items())}"
                if key not in printed:
                    printed.add(key)
                    console.print(render_message(msg))

        def on_event(event: str, data) -> None:
            if event in (UIEvent.VIEW_CHANGED, UIEvent.NOTICE):
                show_new()
            elif event == UIEvent.ALERT:
                console.print(f"[red]{escape(str(data))}[/red]")
            elif event == UIEvent.TYPING_CHANGED and data["peer_id"] == engine.active_peer:
                if data["is_typing"]:
                    console.print(f"[dim]{engine.peer_display_name(data['peer_id'])} is typing...[/dim]")
            elif event == UIEvent.DELIVERY_CHANGED and data["delivery"] == DeliveryState.FAILED:
                console.print(f"[red]Message #{data['uuid'][:8]} failed, /retry {data['uuid'][:8]}[/red]")

        engine.add_listener(on_event)
        try:
            with console.status("Connecting to node..."):
                await client.connect()
        except TransportError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            await client.disconnect()
            return
        if peer_id:
            await engine.select_peer(peer_id)
        console.print(f"[cyan]#{engine.current_channel} as {engine.local_peer_id or '?'}[/cyan]")
        console.print(f"[dim]{HELP}[/dim]\n")
        show_new()
        try:
            while True:
                line = await asyncio.to_thread(click.prompt, "You", prompt_suffix=": ", default="",
                                               show_default=False)
                if not line:
                    continue
                if not await _command(engine, line):
                    break
        except (KeyboardInterrupt, EOFError, click.Abort):
            pass
        finally:
            await client.disconnect()

    async def _command(engine, line: str) -> bool:
        if not line.startswith("/"):
            await engine.send_message(line)
            return True
        name, _, rest = line.partition(" ")
        if name in ("/quit", "/exit"):
            return False
        if name == "/global":
            await engine.select_channel(GLOBAL_CHANNEL)
        elif name == "/peer" and rest:
            await engine.select_peer(rest.strip())
        elif name == "/file" and rest:
            await engine.send_file(rest.strip())
        elif name in ("/edit", "/react", "/delete", "/retry") and rest:
            prefix, _, arg = rest.partition(" ")
            uuid = _resolve_uuid(engine.projector.messages, prefix)
            if uuid is None:
                console.print(f"[red]No unique message #{prefix}[/red]")
            elif name == "/edit":
                await engine.edit_message(uuid, arg)
            elif name == "/react":
                await engine.react(uuid, arg or "👍")
            elif name == "/delete":
                await engine.delete_message(uuid)
            else:
                await engine.retry(uuid)
        else:
            console.print(f"[dim]{HELP}[/dim]")
        return True

    _run(_chat())
