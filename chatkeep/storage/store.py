"""Async SQLite store using aiosqlite.

Reads open a short-lived connection each. Writes issued inside
``transaction()`` share one connection owned by the task that opened the
transaction; nested ``transaction()`` calls from that task become
SAVEPOINTs. A write lock serializes transactions across tasks (several
providers may sync concurrently).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from ..errors import DatabaseError
from ..lib.json import dumps as json_dumps
from ..lib.json import loads_or_none
from ..lib.log import get_logger
from ..lib.timestamps import from_epoch, to_epoch
from ..models import (
    Attachment,
    Conversation,
    Message,
    ProviderState,
    ProviderSyncMetadata,
    parts_from_json,
    parts_to_json,
)
from ..paths import default_db_path
from ..types import AttachmentKind, ProviderName, ProviderStatus
from .schema import SCHEMA_DDL, SCHEMA_VERSION

LOGGER = get_logger(__name__)


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        native_id=row["native_id"],
        provider=ProviderName(row["provider"]),
        title=row["title"] or "",
        created_at=from_epoch(row["created_at"]),
        updated_at=from_epoch(row["updated_at"]),
        synced_at=from_epoch(row["synced_at"]),
        message_count=row["message_count"],
        current_node_id=row["current_node_id"],
        sync_error=row["sync_error"],
        sync_retry_count=row["sync_retry_count"],
    )


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        parts=parts_from_json(row["parts"]),
        created_at=from_epoch(row["created_at"]),
        order_index=row["order_index"],
        parent_id=row["parent_id"],
        sibling_ids=loads_or_none(row["sibling_ids"]) or [],
        sibling_index=row["sibling_index"],
    )


def _row_to_attachment(row: aiosqlite.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        message_id=row["message_id"],
        conversation_id=row["conversation_id"],
        type=AttachmentKind(row["type"]),
        file_id=row["file_id"],
        original_url=row["original_url"],
        local_path=row["local_path"],
        filename=row["filename"],
        mime_type=row["mime_type"],
        size=row["size"],
        width=row["width"],
        height=row["height"],
    )


class AsyncSQLiteStore:
    """SQLite implementation of the SyncStore protocol.

    Example:
        store = AsyncSQLiteStore(Path("archive.db"))

        async with store.transaction():
            await store.delete_messages_for_conversation(conv.id)
            await store.upsert_conversation(conv)
            await store.upsert_messages(messages)
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else default_db_path()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._write_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._schema_ensured = False

        self._transaction_depth = 0
        self._txn_conn: aiosqlite.Connection | None = None
        self._txn_owner: asyncio.Task[Any] | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self._db_path, timeout=30)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    async def _ensure_schema_once(self) -> None:
        """Ensure schema is initialized exactly once."""
        if self._schema_ensured:
            return
        async with self._schema_lock:
            if self._schema_ensured:
                return
            conn = await self._connect()
            try:
                cursor = await conn.execute("PRAGMA user_version")
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
                if current_version > SCHEMA_VERSION:
                    raise DatabaseError(
                        f"Unsupported DB schema version {current_version} (expected {SCHEMA_VERSION})"
                    )
                if current_version < SCHEMA_VERSION:
                    await conn.executescript(SCHEMA_DDL)
                    await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                    await conn.commit()
            finally:
                await conn.close()
            self._schema_ensured = True

    def _in_own_transaction(self) -> bool:
        return (
            self._txn_conn is not None
            and self._transaction_depth > 0
            and self._txn_owner is asyncio.current_task()
        )

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection for one operation; the transaction's connection inside our own transaction."""
        await self._ensure_schema_once()
        if self._in_own_transaction():
            assert self._txn_conn is not None
            yield self._txn_conn
            return

        conn = await self._connect()
        try:
            yield conn
        finally:
            await conn.close()

    async def _commit(self, conn: aiosqlite.Connection) -> None:
        if conn is not self._txn_conn:
            await conn.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Commit everything written inside the block together, or roll it all back."""
        if self._in_own_transaction():
            await self._begin()
            try:
                yield
            except BaseException:
                await self._rollback()
                raise
            await self._commit_txn()
            return

        async with self._write_lock:
            self._txn_owner = asyncio.current_task()
            try:
                await self._begin()
                try:
                    yield
                except BaseException:
                    await self._rollback()
                    raise
                await self._commit_txn()
            finally:
                self._txn_owner = None

    async def _begin(self) -> None:
        await self._ensure_schema_once()
        if self._txn_conn is None:
            self._txn_conn = await self._connect()
        if self._transaction_depth == 0:
            await self._txn_conn.execute("BEGIN IMMEDIATE")
        else:
            await self._txn_conn.execute(f"SAVEPOINT sp_{self._transaction_depth}")
        self._transaction_depth += 1

    async def _commit_txn(self) -> None:
        if self._transaction_depth <= 0 or self._txn_conn is None:
            raise DatabaseError("No active transaction to commit")
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            await self._txn_conn.commit()
            await self._txn_conn.close()
            self._txn_conn = None
        else:
            await self._txn_conn.execute(f"RELEASE SAVEPOINT sp_{self._transaction_depth}")

    async def _rollback(self) -> None:
        if self._transaction_depth <= 0 or self._txn_conn is None:
            raise DatabaseError("No active transaction to rollback")
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            await self._txn_conn.rollback()
            await self._txn_conn.close()
            self._txn_conn = None
        else:
            await self._txn_conn.execute(f"ROLLBACK TO SAVEPOINT sp_{self._transaction_depth}")
            await self._txn_conn.execute(f"RELEASE SAVEPOINT sp_{self._transaction_depth}")

    async def close(self) -> None:
        if self._txn_conn is not None:
            await self._txn_conn.close()
            self._txn_conn = None
        self._transaction_depth = 0

    # Conversations

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
            row = await cursor.fetchone()
            return _row_to_conversation(row) if row is not None else None

    async def list_conversations(self, provider: Optional[ProviderName] = None) -> list[Conversation]:
        """Conversations newest first; never-synced placeholders last."""
        query = "SELECT * FROM conversations"
        params: tuple[Any, ...] = ()
        if provider is not None:
            query += " WHERE provider = ?"
            params = (provider.value,)
        query += " ORDER BY CASE WHEN updated_at IS NULL THEN 1 ELSE 0 END, updated_at DESC, id DESC"
        async with self._get_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_conversation(row) for row in rows]

    async def upsert_conversation(self, record: Conversation) -> None:
        """Insert or update a conversation.

        The sync error columns are only written on insert; afterwards they
        belong to ``update_conversation_sync_error``.
        """
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO conversations (
                    id, native_id, provider, title, created_at, updated_at, synced_at,
                    message_count, current_node_id, sync_error, sync_retry_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    native_id = excluded.native_id,
                    provider = excluded.provider,
                    title = excluded.title,
                    created_at = COALESCE(excluded.created_at, conversations.created_at),
                    updated_at = COALESCE(excluded.updated_at, conversations.updated_at),
                    synced_at = COALESCE(excluded.synced_at, conversations.synced_at),
                    message_count = excluded.message_count,
                    current_node_id = excluded.current_node_id
                """,
                (
                    record.id,
                    record.native_id,
                    record.provider.value,
                    record.title,
                    to_epoch(record.created_at),
                    to_epoch(record.updated_at),
                    to_epoch(record.synced_at),
                    record.message_count,
                    record.current_node_id,
                    record.sync_error,
                    record.sync_retry_count,
                ),
            )
            await self._commit(conn)

    async def get_max_updated_at(self, provider: ProviderName) -> Optional[datetime]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT MAX(updated_at) FROM conversations WHERE provider = ?",
                (provider.value,),
            )
            row = await cursor.fetchone()
        return from_epoch(row[0]) if row is not None else None

    async def update_conversation_sync_error(
        self, conversation_id: str, error: Optional[str], retry_count: int
    ) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE conversations SET sync_error = ?, sync_retry_count = ? WHERE id = ?",
                (error, retry_count, conversation_id),
            )
            await self._commit(conn)

    async def get_failed_conversations(self, provider: ProviderName, max_retries: int) -> list[Conversation]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM conversations
                WHERE provider = ? AND sync_error IS NOT NULL AND sync_retry_count < ?
                ORDER BY sync_retry_count, id
                """,
                (provider.value, max_retries),
            )
            rows = await cursor.fetchall()
        return [_row_to_conversation(row) for row in rows]

    # Messages

    async def get_messages(self, conversation_id: str) -> list[Message]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY order_index, id",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_message(row) for row in rows]

    async def delete_messages_for_conversation(self, conversation_id: str) -> None:
        async with self._get_connection() as conn:
            await conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            await self._commit(conn)

    async def upsert_messages(self, records: list[Message]) -> None:
        if not records:
            return
        async with self._get_connection() as conn:
            await conn.executemany(
                """
                INSERT INTO messages (
                    id, conversation_id, role, parts, created_at, order_index,
                    parent_id, sibling_ids, sibling_index
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id, id) DO UPDATE SET
                    role = excluded.role,
                    parts = excluded.parts,
                    created_at = excluded.created_at,
                    order_index = excluded.order_index,
                    parent_id = excluded.parent_id,
                    sibling_ids = excluded.sibling_ids,
                    sibling_index = excluded.sibling_index
                """,
                [
                    (
                        r.id,
                        r.conversation_id,
                        r.role,
                        parts_to_json(r.parts),
                        to_epoch(r.created_at),
                        r.order_index,
                        r.parent_id,
                        json_dumps(list(r.sibling_ids)),
                        r.sibling_index,
                    )
                    for r in records
                ],
            )
            await self._commit(conn)

    # Attachments

    async def get_attachments(self, conversation_id: str) -> list[Attachment]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM attachments WHERE conversation_id = ? ORDER BY message_id, id",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_attachment(row) for row in rows]

    async def upsert_attachments(self, records: list[Attachment]) -> None:
        """Insert or update attachments, keeping a recorded local copy when the new row has none."""
        if not records:
            return
        async with self._get_connection() as conn:
            await conn.executemany(
                """
                INSERT INTO attachments (
                    id, message_id, conversation_id, type, file_id, original_url,
                    local_path, filename, mime_type, size, width, height
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    file_id = excluded.file_id,
                    original_url = excluded.original_url,
                    local_path = CASE
                        WHEN excluded.local_path = '' THEN attachments.local_path
                        ELSE excluded.local_path
                    END,
                    filename = excluded.filename,
                    mime_type = excluded.mime_type,
                    size = MAX(excluded.size, attachments.size),
                    width = COALESCE(excluded.width, attachments.width),
                    height = COALESCE(excluded.height, attachments.height)
                """,
                [
                    (
                        r.id,
                        r.message_id,
                        r.conversation_id,
                        r.type.value,
                        r.file_id,
                        r.original_url,
                        r.local_path,
                        r.filename,
                        r.mime_type,
                        r.size,
                        r.width,
                        r.height,
                    )
                    for r in records
                ],
            )
            await self._commit(conn)

    async def prune_attachments(self, conversation_id: str, keep_ids: set[str]) -> None:
        async with self._get_connection() as conn:
            if keep_ids:
                placeholders = ",".join("?" * len(keep_ids))
                await conn.execute(
                    f"DELETE FROM attachments WHERE conversation_id = ? AND id NOT IN ({placeholders})",
                    (conversation_id, *sorted(keep_ids)),
                )
            else:
                await conn.execute("DELETE FROM attachments WHERE conversation_id = ?", (conversation_id,))
            await self._commit(conn)

    async def update_attachment_local_path(self, attachment_id: str, local_path: str, size: int) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE attachments SET local_path = ?, size = ? WHERE id = ?",
                (local_path, size, attachment_id),
            )
            await self._commit(conn)

    # Provider bookkeeping

    async def get_sync_metadata(self, provider: ProviderName) -> ProviderSyncMetadata:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM provider_sync_metadata WHERE provider = ?",
                (provider.value,),
            )
            row = await cursor.fetchone()
        if row is None:
            return ProviderSyncMetadata()
        return ProviderSyncMetadata(
            last_completed_offset=row["last_completed_offset"],
            is_full_sync_complete=bool(row["is_full_sync_complete"]),
            last_sync_page_size=row["last_sync_page_size"],
        )

    async def set_sync_metadata(self, provider: ProviderName, value: ProviderSyncMetadata) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO provider_sync_metadata (
                    provider, last_completed_offset, is_full_sync_complete, last_sync_page_size
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    last_completed_offset = excluded.last_completed_offset,
                    is_full_sync_complete = excluded.is_full_sync_complete,
                    last_sync_page_size = excluded.last_sync_page_size
                """,
                (
                    provider.value,
                    value.last_completed_offset,
                    int(value.is_full_sync_complete),
                    value.last_sync_page_size,
                ),
            )
            await self._commit(conn)

    async def get_provider_state(self, provider: ProviderName) -> ProviderState:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM provider_state WHERE provider = ?", (provider.value,))
            row = await cursor.fetchone()
        if row is None:
            return ProviderState(provider=provider)
        return ProviderState(
            provider=provider,
            is_online=bool(row["is_online"]),
            last_sync_at=from_epoch(row["last_sync_at"]),
            status=ProviderStatus(row["status"]),
            error_message=row["error_message"],
        )

    async def set_provider_state(self, state: ProviderState) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO provider_state (provider, is_online, last_sync_at, status, error_message)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    is_online = excluded.is_online,
                    last_sync_at = excluded.last_sync_at,
                    status = excluded.status,
                    error_message = excluded.error_message
                """,
                (
                    state.provider.value,
                    int(state.is_online),
                    to_epoch(state.last_sync_at),
                    state.status.value,
                    state.error_message,
                ),
            )
            await self._commit(conn)


__all__ = ["AsyncSQLiteStore", "default_db_path"]
