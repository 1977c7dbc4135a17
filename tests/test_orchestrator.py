"""Pagination orchestration: checkpoints, incremental watermark, progress."""

import asyncio

import pytest

from chatkeep.sync.orchestrator import SyncOrchestrator
from chatkeep.types import ProgressPhase, ProviderName

from tests.fakes import FakeProvider, FakeSleep, RecordingSink, at, make_parsed


def _provider(count: int, **kwargs) -> FakeProvider:
    provider = FakeProvider(**kwargs)
    for index in range(count):
        provider.add(f"c{index}", at(100 - index * 10))
    return provider


def _orchestrator(provider, store, settings, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(provider, store, settings=settings, sleep=FakeSleep(), **kwargs)


# =============================================================================
# Full sync
# =============================================================================


@pytest.mark.asyncio
async def test_full_sync_walks_every_page_and_completes(store, settings):
    provider = _provider(5)
    orchestrator = _orchestrator(provider, store, settings)

    result = await orchestrator.sync()

    assert result.success
    assert result.new_chats_found == 5
    assert provider.list_calls == [(0, 2), (2, 2), (4, 2)]
    metadata = await store.get_sync_metadata(ProviderName.CHATGPT)
    assert metadata.is_full_sync_complete
    assert metadata.last_completed_offset == 5
    assert metadata.last_sync_page_size == 1
    stored = await store.get_conversation("c3")
    assert stored.synced_at is not None
    assert stored.updated_at == at(70)
    assert len(await store.get_messages("c3")) == 2


@pytest.mark.asyncio
async def test_full_sync_stops_when_total_is_reached(store, settings):
    provider = _provider(4)
    orchestrator = _orchestrator(provider, store, settings)

    assert (await orchestrator.sync()).success

    # The second page is full, so only the reported total ends the sweep.
    assert provider.list_calls == [(0, 2), (2, 2)]
    assert (await store.get_sync_metadata(ProviderName.CHATGPT)).is_full_sync_complete


@pytest.mark.asyncio
async def test_failure_mid_page_leaves_checkpoint_unchanged(store, settings):
    provider = _provider(4)
    provider.failures["c3"] = -1
    orchestrator = _orchestrator(provider, store, settings)

    result = await orchestrator.sync()

    assert not result.success
    assert result.failed == 1
    metadata = await store.get_sync_metadata(ProviderName.CHATGPT)
    assert metadata.last_completed_offset == 2
    assert not metadata.is_full_sync_complete
    # The rest of the page was still processed.
    assert (await store.get_conversation("c2")).synced_at is not None
    failed = await store.get_conversation("c3")
    assert failed.sync_error == "Timed out fetching c3"
    assert failed.sync_retry_count == 1
    assert provider.detail_calls.count("c3") == settings.retry_attempts


@pytest.mark.asyncio
async def test_next_run_resumes_from_last_completed_page(store, settings):
    provider = _provider(4)
    provider.failures["c3"] = -1
    orchestrator = _orchestrator(provider, store, settings)
    await orchestrator.sync()

    provider.failures.clear()
    provider.list_calls.clear()
    result = await orchestrator.sync()

    assert result.success
    assert provider.list_calls == [(2, 2)]
    stored = await store.get_conversation("c3")
    assert stored.sync_error is None
    assert stored.synced_at is not None
    metadata = await store.get_sync_metadata(ProviderName.CHATGPT)
    assert metadata.is_full_sync_complete
    assert metadata.last_completed_offset == 4


@pytest.mark.asyncio
async def test_page_stays_held_after_failures_reach_the_retry_limit(store, settings):
    settings = settings.model_copy(update={"failed_retry_limit": 1})
    provider = _provider(3)
    provider.failures["c1"] = -1
    orchestrator = _orchestrator(provider, store, settings)

    for _ in range(2):
        result = await orchestrator.sync()
        assert not result.success
        assert result.failed == 1

    assert provider.list_calls == [(0, 2), (0, 2)]
    metadata = await store.get_sync_metadata(ProviderName.CHATGPT)
    assert metadata.last_completed_offset == 0
    assert not metadata.is_full_sync_complete
    assert (await store.get_conversation("c1")).sync_retry_count == 2


@pytest.mark.asyncio
async def test_full_sync_stores_messages_for_every_listed_conversation(store, settings):
    provider = _provider(3)

    await _orchestrator(provider, store, settings).sync()

    assert provider.detail_calls == ["c0", "c1", "c2"]
    for conversation_id in ("c0", "c1", "c2"):
        messages = await store.get_messages(conversation_id)
        assert [m.id for m in messages] == [f"{conversation_id}-0-user", f"{conversation_id}-0-assistant"]


@pytest.mark.asyncio
async def test_status_digits_in_a_failing_id_do_not_abort_the_run(store, settings):
    provider = FakeProvider()
    provider.add("6f4013aa", at(100))
    provider.add("c1", at(90))
    provider.failures["6f4013aa"] = -1

    result = await _orchestrator(provider, store, settings).sync()

    assert not result.success
    assert not result.auth_failed
    assert result.failed == 1
    assert provider.detail_calls.count("6f4013aa") == settings.retry_attempts
    assert (await store.get_conversation("6f4013aa")).sync_error == "Timed out fetching 6f4013aa"
    assert len(await store.get_messages("c1")) == 2


@pytest.mark.asyncio
async def test_safety_ceiling_ends_the_sweep(store, settings):
    settings = settings.model_copy(update={"safety_ceiling": 3})
    provider = _provider(10, report_total=False)
    orchestrator = _orchestrator(provider, store, settings)

    assert (await orchestrator.sync()).success

    metadata = await store.get_sync_metadata(ProviderName.CHATGPT)
    assert metadata.is_full_sync_complete
    assert metadata.last_completed_offset == 4
    assert len(provider.detail_calls) == 4


@pytest.mark.asyncio
async def test_progress_total_never_decreases(store, settings):
    provider = _provider(5, report_total=False)
    sink = RecordingSink()
    orchestrator = _orchestrator(provider, store, settings, progress=sink)

    await orchestrator.sync()

    totals = sink.totals()
    assert totals
    assert totals == sorted(totals)
    assert all(event.phase is ProgressPhase.SYNCING for event in sink.events)
    assert all(event.current <= event.total for event in sink.events)
    assert sink.events[-1].current == 5
    assert sink.events[-1].new_chats_found == 5


# =============================================================================
# Incremental sync
# =============================================================================


async def _synced(store, settings, count=3):
    provider = _provider(count)
    orchestrator = _orchestrator(provider, store, settings)
    await orchestrator.sync()
    provider.list_calls.clear()
    provider.detail_calls.clear()
    return provider, orchestrator


@pytest.mark.asyncio
async def test_incremental_fast_path_syncs_only_the_newest(store, settings):
    provider, orchestrator = await _synced(store, settings)
    provider.items[0] = provider.items[0].model_copy(update={"updated_at": at(100.6)})

    result = await orchestrator.sync()

    assert result.success
    assert result.new_chats_found == 0
    assert provider.list_calls == [(0, 2)]
    assert provider.detail_calls == ["c0"]


@pytest.mark.asyncio
async def test_incremental_stops_at_the_watermark(store, settings):
    provider, orchestrator = await _synced(store, settings)
    newest = provider.add("n1", at(200))
    newer = provider.add("n0", at(150))
    provider.items = [newest, newer, *provider.items[:-2]]

    result = await orchestrator.sync()

    assert result.success
    assert result.new_chats_found == 2
    assert provider.detail_calls == ["n1", "n0"]
    assert provider.list_calls == [(0, 2), (2, 2)]
    assert await store.get_max_updated_at(ProviderName.CHATGPT) == at(200)


@pytest.mark.asyncio
async def test_incremental_resyncs_updated_conversation(store, settings):
    provider, orchestrator = await _synced(store, settings)
    bumped = provider.items.pop(2).model_copy(update={"updated_at": at(300)})
    provider.items.insert(0, bumped)
    provider.details["c2"] = make_parsed("c2", turns=2)

    result = await orchestrator.sync()

    assert result.success
    assert result.new_chats_found == 0
    assert provider.detail_calls == ["c2"]
    assert len(await store.get_messages("c2")) == 4


@pytest.mark.asyncio
async def test_incremental_with_empty_store_syncs_everything(store, settings):
    provider, orchestrator = await _synced(store, settings, count=0)
    provider.add("a", at(10))

    result = await orchestrator.sync()

    assert result.success
    assert provider.detail_calls == ["a"]


# =============================================================================
# Run bookkeeping
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_run_is_skipped(store, settings):
    provider = _provider(3)
    orchestrator = _orchestrator(provider, store, settings)

    first = asyncio.ensure_future(orchestrator.sync())
    await asyncio.sleep(0)
    assert orchestrator.is_syncing

    second = await orchestrator.sync()
    assert second.skipped
    assert second.success

    assert (await first).success
    assert not orchestrator.is_syncing


@pytest.mark.asyncio
async def test_auth_failure_is_reported_not_raised(store, settings):
    provider = _provider(2, auth_fail_on_list=True)
    orchestrator = _orchestrator(provider, store, settings)

    result = await orchestrator.sync()

    assert not result.success
    assert result.auth_failed
    assert "401" in result.error
    assert not orchestrator.is_syncing
    assert (await store.get_sync_metadata(ProviderName.CHATGPT)).last_completed_offset == 0


@pytest.mark.asyncio
async def test_retry_failed_recovers_stored_failures(store, settings):
    provider = _provider(2)
    provider.failures["c1"] = settings.retry_attempts
    orchestrator = _orchestrator(provider, store, settings)
    assert not (await orchestrator.sync()).success

    result = await orchestrator.retry_failed()

    assert result.success
    assert result.failed == 0
    assert await store.get_failed_conversations(ProviderName.CHATGPT, 10) == []
    assert (await store.get_conversation("c1")).synced_at is not None


@pytest.mark.asyncio
async def test_resync_replaces_messages(store, settings):
    provider = _provider(1)
    provider.details["c0"] = make_parsed("c0", turns=3)
    orchestrator = _orchestrator(provider, store, settings)
    await orchestrator.sync_conversation(provider.items[0])
    assert len(await store.get_messages("c0")) == 6

    provider.details["c0"] = make_parsed("c0", turns=1)
    await orchestrator.sync_conversation(provider.items[0])

    assert [m.id for m in await store.get_messages("c0")] == ["c0-0-user", "c0-0-assistant"]
    assert (await store.get_conversation("c0")).message_count == 2


@pytest.mark.asyncio
async def test_refresh_returns_stored_copy_and_revalidates(store, settings):
    provider, orchestrator = await _synced(store, settings, count=1)
    provider.details["c0"] = make_parsed("c0", turns=2)

    conversation, messages = await orchestrator.refresh_conversation("c0")
    assert conversation.id == "c0"
    assert len(messages) == 2

    await orchestrator.wait_background()
    assert provider.detail_calls == ["c0"]
    assert len(await store.get_messages("c0")) == 4


@pytest.mark.asyncio
async def test_refresh_fetches_unknown_conversation(store, settings):
    provider = FakeProvider()
    provider.add("fresh", at(5))
    orchestrator = _orchestrator(provider, store, settings)

    conversation, messages = await orchestrator.refresh_conversation("fresh")

    assert conversation.synced_at is not None
    assert [m.role for m in messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_refresh_returns_none_when_fetch_keeps_failing(store, settings):
    provider = FakeProvider()
    provider.add("broken", at(5))
    provider.failures["broken"] = -1
    orchestrator = _orchestrator(provider, store, settings)

    assert await orchestrator.refresh_conversation("broken") is None
