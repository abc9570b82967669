"""
SQLite-backed store.

One shared connection guarded by a threading lock; every call runs in a worker
thread so the event loop never blocks on disk I/O.
"""

import asyncio
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from phantom_chat.errors import PersistenceError
from phantom_chat.models.envelope import MessageType, ReplyReference
from phantom_chat.models.message import Contact, MessageStatus, StoredMessage
from phantom_chat.store.base import MessageStore

T = TypeVar("T")

SCHEMA_VERSION = 1

_MESSAGE_COLUMNS = (
    "uuid, sender, content, channel, timestamp, reply_to, type, status, "
    "reactions, last_edited, file_name, file_size"
)


class SqliteStore(MessageStore):
    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            db_path = str(Path(db_path).expanduser())
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    def _configure(self) -> None:
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise PersistenceError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT UNIQUE,
                sender TEXT NOT NULL,
                content TEXT NOT NULL,
                channel TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                reply_to TEXT,
                type TEXT NOT NULL DEFAULT 'text',
                status TEXT NOT NULL DEFAULT 'sent',
                reactions TEXT NOT NULL DEFAULT '{}',
                last_edited INTEGER,
                file_name TEXT,
                file_size TEXT
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_channel_ts ON messages (channel, timestamp)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                peer_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                added_at INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self._lock:
                try:
                    return fn(self._conn)
                except sqlite3.Error as e:
                    raise PersistenceError(str(e)) from e
        return await asyncio.to_thread(call)

    async def save_message(self, message: StoredMessage) -> bool:
        params = (
            message.uuid,
            message.sender,
            message.content,
            message.channel,
            message.timestamp,
            message.reply_to.model_dump_json(exclude_none=True) if message.reply_to else None,
            message.type.value,
            message.status.value,
            json.dumps(message.reactions, ensure_ascii=False),
            message.last_edited,
            message.file_name,
            message.file_size,
        )

        def insert(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
            return cursor.rowcount == 1
        return await self._run(insert)

    async def get_message(self, uuid: str) -> Optional[StoredMessage]:
        row = await self._run(lambda conn: conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE uuid = ?", (uuid,)
        ).fetchone())
        return _message_from_row(row) if row else None

    async def get_messages(self, channel: str) -> list[StoredMessage]:
        rows = await self._run(lambda conn: conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE channel = ? ORDER BY timestamp ASC, id ASC",
            (channel,),
        ).fetchall())
        return [_message_from_row(row) for row in rows]

    async def update_message_content(self, uuid: str, content: str, last_edited: int) -> None:
        await self._run(lambda conn: conn.execute(
            "UPDATE messages SET content = ?, last_edited = ? WHERE uuid = ?", (content, last_edited, uuid)
        ))

    async def update_message_reactions(self, uuid: str, reactions: dict[str, list[str]]) -> None:
        payload = json.dumps(reactions, ensure_ascii=False)
        await self._run(lambda conn: conn.execute(
            "UPDATE messages SET reactions = ? WHERE uuid = ?", (payload, uuid)
        ))

    async def update_message_status(self, uuid: str, status: MessageStatus) -> None:
        await self._run(lambda conn: conn.execute(
            "UPDATE messages SET status = ? WHERE uuid = ?", (status.value, uuid)
        ))

    async def delete_message(self, uuid: str) -> bool:
        cursor = await self._run(lambda conn: conn.execute("DELETE FROM messages WHERE uuid = ?", (uuid,)))
        return cursor.rowcount > 0

    async def add_contact(self, peer_id: str, name: str) -> Contact:
        contact = Contact(peer_id=peer_id, name=name, added_at=int(time.time() * 1000))
        await self._run(lambda conn: conn.execute(
            "INSERT OR REPLACE INTO contacts (peer_id, name, added_at) VALUES (?, ?, ?)",
            (contact.peer_id, contact.name, contact.added_at),
        ))
        return contact

    async def get_contacts(self) -> list[Contact]:
        rows = await self._run(lambda conn: conn.execute(
            "SELECT peer_id, name, added_at FROM contacts ORDER BY name ASC"
        ).fetchall())
        return [Contact(peer_id=r["peer_id"], name=r["name"], added_at=r["added_at"]) for r in rows]

    async def delete_contact(self, peer_id: str) -> None:
        await self._run(lambda conn: conn.execute("DELETE FROM contacts WHERE peer_id = ?", (peer_id,)))

    async def get_setting(self, key: str) -> Optional[str]:
        row = await self._run(lambda conn: conn.execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        ).fetchone())
        return row["value"] if row else None

    async def save_setting(self, key: str, value: str) -> None:
        await self._run(lambda conn: conn.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
        ))

    async def close(self) -> None:
        with self._lock:
            self._conn.close()


def _message_from_row(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        uuid=row["uuid"],
        sender=row["sender"],
        content=row["content"],
        channel=row["channel"],
        timestamp=row["timestamp"],
        reply_to=_loads_reply(row["reply_to"]),
        type=_coerce(MessageType, row["type"], MessageType.TEXT),
        status=_coerce(MessageStatus, row["status"], MessageStatus.SENT),
        reactions=_loads_reactions(row["reactions"]),
        last_edited=row["last_edited"],
        file_name=row["file_name"],
        file_size=row["file_size"],
    )


def _coerce(enum_cls: Any, value: Optional[str], default: Any) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _loads_reply(raw: Optional[str]) -> Optional[ReplyReference]:
    if not raw:
        return None
    try:
        return ReplyReference.model_validate_json(raw)
    except ValueError:
        return None


def _loads_reactions(raw: Optional[str]) -> dict[str, list[str]]:
    try:
        data = json.loads(raw or "{}")
    except ValueError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {emoji: list(dict.fromkeys(who)) for emoji, who in data.items() if isinstance(who, list) and who}
