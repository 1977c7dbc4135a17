"""Bounded exponential-backoff retries around one conversation's sync."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ExtractionError, SyncCancelled, is_auth_failure
from ..lib.log import get_logger
from ..models import Conversation
from ..protocols import SyncStore
from ..types import ConversationId, ProviderName
from .cancellation import CancellationToken

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_retryable(exc: BaseException) -> bool:
    """Cancellation and lost authentication are never retried."""
    if isinstance(exc, (SyncCancelled, asyncio.CancelledError)):
        return False
    if not isinstance(exc, Exception):
        return False
    return not is_auth_failure(exc)


class RetryCoordinator:
    """Run a per-conversation operation with up to ``max_attempts`` tries.

    Waits ``base_delay * 2**(attempt-1)`` seconds between tries (1s, 2s, 4s
    with the defaults). On success the conversation's stored error is
    cleared; when every attempt failed the last error and an incremented
    retry count are persisted before the error is re-raised.
    """

    def __init__(
        self,
        store: SyncStore,
        provider: ProviderName,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Optional[Sleep] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep: Sleep = sleep or asyncio.sleep
        self._cancel_token = cancel_token

    async def _backoff(self, seconds: float) -> None:
        if self._cancel_token is not None:
            await self._cancel_token.run(self._sleep(seconds))
        else:
            await self._sleep(seconds)

    def _log_attempt(self, conversation_id: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0
            if isinstance(exc, ExtractionError):
                logger.error(
                    "conversation_extraction_failed",
                    provider=self._provider.value,
                    conversation_id=conversation_id,
                    attempt=state.attempt_number,
                    kind="extraction",
                    error=str(exc),
                    retry_in=wait,
                )
            else:
                logger.warning(
                    "conversation_sync_attempt_failed",
                    provider=self._provider.value,
                    conversation_id=conversation_id,
                    attempt=state.attempt_number,
                    error=str(exc),
                    retry_in=wait,
                )

        return _before_sleep

    async def run(
        self,
        conversation_id: str,
        operation: Callable[[], Awaitable[T]],
        *,
        native_id: Optional[str] = None,
        title: str = "",
    ) -> T:
        """Run ``operation`` with retries; see the class docstring for persistence rules."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, exp_base=2, min=0),
            retry=retry_if_exception(is_retryable),
            sleep=self._backoff,
            before_sleep=self._log_attempt(conversation_id),
            reraise=True,
        )
        try:
            # The awaitable is awaited here; tenacity would only await
            # coroutine functions, not lambdas returning coroutines.
            async for attempt in retrying:
                with attempt:
                    result: T = await operation()
        except BaseException as exc:
            if is_retryable(exc):
                await self._record_failure(conversation_id, exc, native_id=native_id, title=title)
            raise
        await self._store.update_conversation_sync_error(conversation_id, None, 0)
        return result

    async def _record_failure(
        self,
        conversation_id: str,
        exc: BaseException,
        *,
        native_id: Optional[str],
        title: str,
    ) -> None:
        message = str(exc) or type(exc).__name__
        existing = await self._store.get_conversation(conversation_id)
        retry_count = (existing.sync_retry_count if existing else 0) + 1
        if existing is None:
            # Placeholder row so the failure can be found and retried later.
            # No updated_at: it must not advance the incremental-sync watermark.
            await self._store.upsert_conversation(
                Conversation(
                    id=ConversationId(conversation_id),
                    native_id=native_id or conversation_id,
                    provider=self._provider,
                    title=title,
                    sync_error=message,
                    sync_retry_count=retry_count,
                )
            )
        else:
            await self._store.update_conversation_sync_error(conversation_id, message, retry_count)
        logger.error(
            "conversation_sync_failed",
            provider=self._provider.value,
            conversation_id=conversation_id,
            attempts=self._max_attempts,
            retry_count=retry_count,
            kind="extraction" if isinstance(exc, ExtractionError) else "remote",
            error=message,
        )


__all__ = ["RetryCoordinator", "is_retryable"]
