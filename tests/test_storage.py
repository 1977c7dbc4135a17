"""SQLite store: transactions, upsert semantics, bookkeeping tables."""

import aiosqlite
import pytest

from chatkeep.errors import DatabaseError
from chatkeep.models import (
    Attachment,
    Conversation,
    Message,
    ProviderState,
    ProviderSyncMetadata,
    SourceUrlPart,
    TextPart,
)
from chatkeep.storage import AsyncSQLiteStore
from chatkeep.storage.schema import SCHEMA_VERSION
from chatkeep.types import ProviderName, ProviderStatus

from tests.fakes import at


def _conversation(conversation_id="c1", provider=ProviderName.CHATGPT, updated=10.0, title=None, **kwargs) -> Conversation:
    return Conversation(
        id=conversation_id,
        native_id=f"native-{conversation_id}",
        provider=provider,
        title=title or f"Title {conversation_id}",
        updated_at=at(updated) if updated is not None else None,
        **kwargs,
    )


def _message(message_id, conversation_id="c1", **kwargs) -> Message:
    return Message(id=message_id, conversation_id=conversation_id, role="user", **kwargs)


def _attachment(attachment_id="m1-att-f1", **kwargs) -> Attachment:
    values = dict(id=attachment_id, message_id="m1", conversation_id="c1", file_id="f1", filename="a.png")
    values.update(kwargs)
    return Attachment(**values)


@pytest.mark.asyncio
async def test_messages_round_trip_with_citations(store):
    await store.upsert_conversation(_conversation())
    parts = [TextPart(text="Rain"), SourceUrlPart(source_id="s1", url="https://w.example", title="Weather")]
    await store.upsert_messages(
        [
            _message("m1", parts=parts, created_at=at(1), order_index=0),
            _message("m2", parent_id="m1", sibling_ids=["m2", "m3"], order_index=1),
        ]
    )

    first, second = await store.get_messages("c1")

    assert first.parts == parts
    assert first.created_at == at(1)
    assert second.parent_id == "m1"
    assert second.sibling_ids == ["m2", "m3"]
    assert second.sibling_index == 0


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    await store.upsert_conversation(_conversation())
    await store.upsert_messages([_message("m1")])

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.delete_messages_for_conversation("c1")
            await store.upsert_conversation(_conversation(title="Renamed"))
            raise RuntimeError("parse failed half way")

    assert [m.id for m in await store.get_messages("c1")] == ["m1"]
    assert (await store.get_conversation("c1")).title == "Title c1"


@pytest.mark.asyncio
async def test_nested_transaction_rolls_back_to_savepoint(store):
    async with store.transaction():
        await store.upsert_conversation(_conversation("outer"))
        with pytest.raises(ValueError):
            async with store.transaction():
                await store.upsert_conversation(_conversation("inner"))
                raise ValueError("inner")

    assert await store.get_conversation("outer") is not None
    assert await store.get_conversation("inner") is None


@pytest.mark.asyncio
async def test_upsert_keeps_sync_error_columns(store):
    await store.upsert_conversation(_conversation())
    await store.update_conversation_sync_error("c1", "boom", 2)

    await store.upsert_conversation(_conversation(updated=None, synced_at=at(50)))

    stored = await store.get_conversation("c1")
    assert stored.sync_error == "boom"
    assert stored.sync_retry_count == 2
    assert stored.updated_at == at(10)
    assert stored.synced_at == at(50)


@pytest.mark.asyncio
async def test_attachment_upsert_keeps_local_copy(store):
    await store.upsert_attachments([_attachment()])
    await store.update_attachment_local_path("m1-att-f1", "/cache/c1/f1_a.png", 42)

    await store.upsert_attachments([_attachment(original_url="https://new")])

    (attachment,) = await store.get_attachments("c1")
    assert attachment.local_path == "/cache/c1/f1_a.png"
    assert attachment.size == 42
    assert attachment.original_url == "https://new"


@pytest.mark.asyncio
async def test_prune_attachments_removes_rows_not_kept(store):
    await store.upsert_attachments([_attachment("keep"), _attachment("drop", file_id="f2")])

    await store.prune_attachments("c1", {"keep"})
    assert [a.id for a in await store.get_attachments("c1")] == ["keep"]

    await store.prune_attachments("c1", set())
    assert await store.get_attachments("c1") == []


@pytest.mark.asyncio
async def test_failed_conversations_respect_retry_limit(store):
    for conversation_id, retries in (("a", 0), ("b", 2), ("c", 5)):
        await store.upsert_conversation(_conversation(conversation_id))
        await store.update_conversation_sync_error(conversation_id, "err", retries)
    await store.upsert_conversation(_conversation("ok"))
    await store.upsert_conversation(_conversation("other", provider=ProviderName.CLAUDE))
    await store.update_conversation_sync_error("other", "err", 0)

    failed = await store.get_failed_conversations(ProviderName.CHATGPT, 3)

    assert [c.id for c in failed] == ["a", "b"]


@pytest.mark.asyncio
async def test_max_updated_at_is_per_provider(store):
    await store.upsert_conversation(_conversation("a", updated=10))
    await store.upsert_conversation(_conversation("b", updated=30))
    await store.upsert_conversation(_conversation("k", provider=ProviderName.CLAUDE, updated=99))
    await store.upsert_conversation(_conversation("placeholder", updated=None))

    assert await store.get_max_updated_at(ProviderName.CHATGPT) == at(30)
    assert await store.get_max_updated_at(ProviderName.PERPLEXITY) is None


@pytest.mark.asyncio
async def test_list_conversations_newest_first_placeholders_last(store):
    await store.upsert_conversation(_conversation("old", updated=1))
    await store.upsert_conversation(_conversation("placeholder", updated=None))
    await store.upsert_conversation(_conversation("new", updated=2))

    assert [c.id for c in await store.list_conversations()] == ["new", "old", "placeholder"]


@pytest.mark.asyncio
async def test_bookkeeping_defaults_and_round_trip(store):
    assert await store.get_sync_metadata(ProviderName.CLAUDE) == ProviderSyncMetadata()
    default_state = await store.get_provider_state(ProviderName.CLAUDE)
    assert default_state.status is ProviderStatus.DISCONNECTED

    metadata = ProviderSyncMetadata(last_completed_offset=60, is_full_sync_complete=True, last_sync_page_size=30)
    await store.set_sync_metadata(ProviderName.CLAUDE, metadata)
    state = ProviderState(
        provider=ProviderName.CLAUDE,
        is_online=True,
        last_sync_at=at(5),
        status=ProviderStatus.CONNECTED,
    )
    await store.set_provider_state(state)

    assert await store.get_sync_metadata(ProviderName.CLAUDE) == metadata
    assert await store.get_provider_state(ProviderName.CLAUDE) == state


@pytest.mark.asyncio
async def test_newer_schema_version_is_rejected(tmp_path):
    db_path = tmp_path / "future.db"
    async with aiosqlite.connect(db_path) as conn:
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        await conn.commit()

    with pytest.raises(DatabaseError):
        await AsyncSQLiteStore(db_path).get_conversation("x")


@pytest.mark.asyncio
async def test_schema_version_is_recorded(store):
    await store.get_conversation("x")
    async with aiosqlite.connect(store.db_path) as conn:
        cursor = await conn.execute("PRAGMA user_version")
        (version,) = await cursor.fetchone()
    assert version == SCHEMA_VERSION
