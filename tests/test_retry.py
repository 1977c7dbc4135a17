"""Retry coordinator: backoff schedule, error persistence, non-retryable errors."""

import asyncio

import httpx
import pytest

from chatkeep.config import ChatGPTSettings
from chatkeep.errors import ExtractionError, ProviderAuthError, RemoteError, SyncCancelled
from chatkeep.models import Conversation, ConversationListItem
from chatkeep.providers import ChatGPTProvider
from chatkeep.sync.cancellation import CancellationToken
from chatkeep.sync.retry import RetryCoordinator, is_retryable
from chatkeep.types import ConversationId, ProviderName

from tests.fakes import FakeSleep


class Flaky:
    def __init__(self, failures: int, exc: Exception | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.exc = exc or RemoteError("timeout")

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


async def _seed(store, conversation_id="c1", error="old failure", retries=1):
    await store.upsert_conversation(
        Conversation(
            id=ConversationId(conversation_id),
            native_id=conversation_id,
            provider=ProviderName.CHATGPT,
            title="Seed",
        )
    )
    await store.update_conversation_sync_error(conversation_id, error, retries)


def test_is_retryable_classification():
    assert is_retryable(RemoteError("boom"))
    assert is_retryable(ExtractionError("bad shape"))
    assert not is_retryable(ProviderAuthError("nope", status_code=401))
    assert is_retryable(RemoteError("Timed out requesting /backend-api/conversation/6f4013aa-0000-4000-8000-000000000000"))
    assert is_retryable(RemoteError("HTTP 500: unauthorized worker"))
    assert not is_retryable(SyncCancelled())
    assert not is_retryable(asyncio.CancelledError())


@pytest.mark.asyncio
async def test_two_failures_then_success(store):
    await _seed(store)
    sleep = FakeSleep()
    op = Flaky(2)
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=sleep)

    assert await coordinator.run("c1", op) == "ok"

    assert op.calls == 3
    assert sleep.delays == [1.0, 2.0]
    stored = await store.get_conversation("c1")
    assert stored.sync_error is None
    assert stored.sync_retry_count == 0


@pytest.mark.asyncio
async def test_exhaustion_persists_error_and_increments_count(store):
    await _seed(store, retries=1)
    sleep = FakeSleep()
    op = Flaky(10)
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=sleep)

    with pytest.raises(RemoteError):
        await coordinator.run("c1", op)

    assert op.calls == 3
    assert sleep.delays == [1.0, 2.0]
    stored = await store.get_conversation("c1")
    assert stored.sync_error == "timeout"
    assert stored.sync_retry_count == 2


@pytest.mark.asyncio
async def test_exhaustion_creates_placeholder_for_unknown_conversation(store):
    coordinator = RetryCoordinator(store, ProviderName.CLAUDE, sleep=FakeSleep(), max_attempts=1)

    with pytest.raises(ExtractionError):
        await coordinator.run("new", Flaky(1, ExtractionError("no uuid")), native_id="native-new", title="New")

    stored = await store.get_conversation("new")
    assert stored.native_id == "native-new"
    assert stored.sync_error == "no uuid"
    assert stored.sync_retry_count == 1
    assert stored.updated_at is None
    assert await store.get_max_updated_at(ProviderName.CLAUDE) is None


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried_or_persisted(store):
    await _seed(store, error=None, retries=0)
    sleep = FakeSleep()
    op = Flaky(5, ProviderAuthError("HTTP 401", status_code=401))
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=sleep)

    with pytest.raises(ProviderAuthError):
        await coordinator.run("c1", op)

    assert op.calls == 1
    assert sleep.delays == []
    assert (await store.get_conversation("c1")).sync_error is None


@pytest.mark.asyncio
async def test_cancellation_propagates_without_consuming_attempts(store):
    op = Flaky(5, SyncCancelled("stop"))
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=FakeSleep())

    with pytest.raises(SyncCancelled):
        await coordinator.run("c1", op)

    assert op.calls == 1
    assert await store.get_conversation("c1") is None


@pytest.mark.asyncio
async def test_cancel_during_backoff_aborts(store):
    token = CancellationToken()

    async def cancelling_sleep(seconds: float) -> None:
        token.cancel("shutdown")
        await asyncio.sleep(3600)

    op = Flaky(5)
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=cancelling_sleep, cancel_token=token)

    with pytest.raises(SyncCancelled):
        await coordinator.run("c1", op)

    assert op.calls == 1
    assert await store.get_conversation("c1") is None


@pytest.mark.asyncio
async def test_lambda_returning_a_coroutine_is_awaited(store):
    await _seed(store)
    op = Flaky(1)
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=FakeSleep())

    assert await coordinator.run("c1", lambda: op()) == "ok"

    assert op.calls == 2
    assert (await store.get_conversation("c1")).sync_error is None


@pytest.mark.asyncio
async def test_timeout_on_conversation_id_with_status_digits_is_retried(store):
    native_id = "6f4013aa-0000-4000-8000-000000000000"
    calls = []

    def timeout(request):
        calls.append(request.url.path)
        raise httpx.ReadTimeout("timed out", request=request)

    provider = ChatGPTProvider(ChatGPTSettings(access_token="t"), transport=httpx.MockTransport(timeout))
    item = ConversationListItem(id=native_id, native_id=native_id, title="Digits")
    sleep = FakeSleep()
    coordinator = RetryCoordinator(store, ProviderName.CHATGPT, sleep=sleep)

    with pytest.raises(RemoteError):
        await coordinator.run(native_id, lambda: provider.fetch_detail(item), native_id=native_id, title=item.title)
    await provider.aclose()

    assert calls == [f"/backend-api/conversation/{native_id}"] * 3
    assert sleep.delays == [1.0, 2.0]
    stored = await store.get_conversation(native_id)
    assert stored.sync_error.startswith("Timed out requesting")
    assert stored.sync_retry_count == 1
