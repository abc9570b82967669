"""CLI: phantom contacts list|add|rm"""

import json

import click
from rich.console import Console
from rich.table import Table

console = Console()


def _get_store():
    from phantom_chat.cli.main import _get_store
    return _get_store()


def _run(coro):
    from phantom_chat.cli.main import _run
    return _run(coro)


@click.group()
def contacts():
    """Contact book."""


@contacts.command("list")
@click.option("--json-output", "--json", is_flag=True)
def contacts_list(json_output):
    """List saved contacts."""

    async def _list():
        store = _get_store()
        try:
            result = await store.get_contacts()
        finally:
            await store.close()
        if json_output:
            click.echo(json.dumps([c.model_dump() for c in result], indent=2))
            return
        table = Table(title=f"Contacts ({len(result)})")
        table.add_column("Name", style="bold")
        table.add_column("Peer ID")
        for c in result:
            table.add_row(c.name, c.peer_id)
        console.print(table)

    _run(_list())


@contacts.command("add")
@click.argument("peer_id")
@click.argument("name")
def contacts_add(peer_id, name):
    """Save a peer under a name."""

    async def _add():
        store = _get_store()
        try:
            await store.add_contact(peer_id, name)
        finally:
            await store.close()
        console.print(f"[green]Saved {name} ({peer_id})[/green]")

    _run(_add())


@contacts.command("rm")
@click.argument("peer_id")
def contacts_rm(peer_id):
    """Remove a contact."""

    async def _rm():
        store = _get_store()
        try:
            await store.delete_contact(peer_id)
        finally:
            await store.close()
        console.print(f"[green]Contact {peer_id} removed.[/green]")

    _run(_rm())
