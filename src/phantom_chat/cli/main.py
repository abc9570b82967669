"""
Phantom chat CLI: the `phantom` command.

Commands:
  phantom chat [--peer ID]      Interactive chat REPL
  phantom history [CHANNEL]     Print stored history of a channel
  phantom contacts <cmd>        Contact book
  phantom profile [NAME]        Show or set the display name
  phantom connect ADDR          Dial a peer multiaddr
  phantom config <cmd>          Client configuration
"""

import asyncio
import logging

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install phantom-chat[cli]")

from phantom_chat.client import AsyncPhantomChat
from phantom_chat.config import load_config, save_config
from phantom_chat.store.base import DISPLAY_NAME_KEY
from phantom_chat.store.sqlite import SqliteStore

console = Console()


def _get_store() -> SqliteStore:
    return SqliteStore(load_config().db_path)


def _get_client() -> AsyncPhantomChat:
    return AsyncPhantomChat(load_config())


def _run(coro):
    return asyncio.run(coro)


@click.group()
@click.version_option("0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity.")
def main(verbose: bool):
    """Phantom chat: serverless peer-to-peer messaging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


@main.command("profile")
@click.argument("name", required=False)
def profile_cmd(name):
    """Show or set the local display name."""

    async def _profile():
        store = _get_store()
        try:
            if name:
                await store.save_setting(DISPLAY_NAME_KEY, name)
                console.print(f"[green]Display name set to {name}[/green]")
            else:
                current = await store.get_setting(DISPLAY_NAME_KEY)
                console.print(current or "[dim](not set)[/dim]")
        finally:
            await store.close()

    _run(_profile())


@main.command("connect")
@click.argument("address")
def connect_cmd(address):
    """Ask the node to dial a peer address."""

    async def _connect():
        client = _get_client()
        try:
            with console.status(f"Dialing {address}..."):
                await client.transport.connect_peer(address)
            console.print("[green]Connection request sent[/green]")
        finally:
            await client.transport.close()
            await client.store.close()

    _run(_connect())


@click.group("config")
def config_group():
    """Client configuration."""


@config_group.command("show")
def config_show():
    """Print the current configuration."""
    click.echo(load_config().model_dump_json(indent=2))


@config_group.command("set-node")
@click.argument("url")
def config_set_node(url):
    """Set the local node URL."""
    cfg = load_config()
    cfg.node_url = url
    save_config(cfg)
    console.print(f"[green]Node URL set to {url}[/green]")


# Register subcommands from separate modules
from phantom_chat.cli.chat import chat_cmd, history_cmd
from phantom_chat.cli.contacts import contacts

main.add_command(chat_cmd)
main.add_command(history_cmd)
main.add_command(contacts)
main.add_command(config_group)


if __name__ == "__main__":
    main()
