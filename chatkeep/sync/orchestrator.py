"""Pagination orchestration for one provider: full and incremental sync."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional, Set, Tuple

from ..config import Settings
from ..errors import ChatkeepError, SyncCancelled, is_auth_failure
from ..lib.log import get_logger
from ..lib.timestamps import truncate_to_seconds, utcnow
from ..models import (
    Conversation,
    ConversationListItem,
    Message,
    ProgressEvent,
    ProviderSyncMetadata,
    SyncResult,
)
from ..protocols import ProgressSink, Provider, SyncStore
from ..sources.records import ConversationRecords, build_records
from ..types import ConversationId, ProgressPhase
from .cancellation import CancellationToken
from .retry import RetryCoordinator, Sleep, is_retryable

if TYPE_CHECKING:
    from ..services.attachments import AttachmentPrefetcher

logger = get_logger(__name__)


class _Progress:
    """Progress counters whose ``total`` never decreases within a run."""

    def __init__(self, provider: Provider, sink: Optional[ProgressSink]) -> None:
        self._provider = provider
        self._sink = sink
        self.current = 0
        self.total = 0
        self.new_chats_found = 0

    def observe_total(self, total: int) -> None:
        self.total = max(self.total, total)

    def report(self, label: Optional[str] = None) -> None:
        self.total = max(self.total, self.current)
        if self._sink is None:
            return
        self._sink(
            ProgressEvent(
                phase=ProgressPhase.SYNCING,
                current=self.current,
                total=self.total,
                label=label,
                new_chats_found=self.new_chats_found,
                provider=self._provider.name,
            )
        )


class SyncOrchestrator:
    """Drives one provider's conversation list into the store.

    A run is a full sync until the provider's checkpoint says the initial
    sweep is complete, and an incremental sync afterwards. Conversations are
    processed one at a time; each goes through the retry coordinator, and a
    terminal failure is counted but does not stop the rest of the page.
    """

    def __init__(
        self,
        provider: Provider,
        store: SyncStore,
        *,
        settings: Optional[Settings] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Optional[Sleep] = None,
        prefetcher: Optional[AttachmentPrefetcher] = None,
    ) -> None:
        settings = settings or Settings()
        self.provider = provider
        self.store = store
        self._progress_sink = progress
        self._cancel_token = cancel_token or CancellationToken()
        self._safety_ceiling = settings.safety_ceiling
        self._failed_retry_limit = settings.failed_retry_limit
        self._download_attachments = settings.download_attachments
        self._prefetcher = prefetcher
        self._retry = RetryCoordinator(
            store,
            provider.name,
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            sleep=sleep,
            cancel_token=self._cancel_token,
        )
        self._in_progress = False
        self._background: Set[asyncio.Task] = set()

    @property
    def is_syncing(self) -> bool:
        return self._in_progress

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @contextmanager
    def _guard(self) -> Iterator[bool]:
        if self._in_progress:
            yield False
            return
        self._in_progress = True
        try:
            yield True
        finally:
            self._in_progress = False

    async def sync(self) -> SyncResult:
        """Run a full or incremental sync, whichever the checkpoint calls for.

        A call made while another run is active returns a skipped result.
        Cancellation propagates as SyncCancelled; other failures are folded
        into the returned SyncResult.
        """
        with self._guard() as acquired:
            if not acquired:
                logger.info("sync_already_running", provider=self.provider.name.value)
                return SyncResult(success=True, skipped=True)
            try:
                metadata = await self.store.get_sync_metadata(self.provider.name)
                if not metadata.is_full_sync_complete:
                    return await self.full_sync(metadata)
                return await self.incremental_sync()
            except SyncCancelled:
                raise
            except ChatkeepError as exc:
                return self._failure_result(exc)

    def _failure_result(self, exc: ChatkeepError) -> SyncResult:
        auth_failed = is_auth_failure(exc)
        logger.error(
            "provider_sync_failed",
            provider=self.provider.name.value,
            auth_failed=auth_failed,
            error=str(exc),
        )
        return SyncResult(success=False, error=str(exc), auth_failed=auth_failed)

    async def _process(self, item: ConversationListItem, progress: _Progress) -> bool:
        """Sync one listed conversation; False when it failed past all retries."""
        self._cancel_token.raise_if_cancelled()
        logger.debug(
            "conversation_sync_started",
            provider=self.provider.name.value,
            conversation_id=item.id,
        )
        existing = await self.store.get_conversation(item.id)
        try:
            await self._retry.run(
                item.id,
                lambda: self.sync_conversation(item),
                native_id=item.native_id,
                title=item.title,
            )
        except Exception as exc:
            if not is_retryable(exc):
                raise
            return False
        finally:
            progress.current += 1
        if existing is None or existing.synced_at is None:
            progress.new_chats_found += 1
        progress.report(item.title)
        await asyncio.sleep(0)
        return True

    async def full_sync(self, metadata: Optional[ProviderSyncMetadata] = None) -> SyncResult:
        """Page through the whole remote list from the stored checkpoint.

        The checkpoint only moves past a page once every conversation on it
        has synced. A page with a terminal failure ends the run with the
        checkpoint unchanged; the next run, or ``retry_failed``, picks the
        failed conversations up again.
        """
        name = self.provider.name
        if metadata is None:
            metadata = await self.store.get_sync_metadata(name)
        page_size = self.provider.page_size
        offset = metadata.last_completed_offset
        progress = _Progress(self.provider, self._progress_sink)
        progress.current = offset
        failed = 0
        logger.info("full_sync_started", provider=name.value, offset=offset)

        while True:
            self._cancel_token.raise_if_cancelled()
            if offset >= self._safety_ceiling:
                logger.warning("full_sync_safety_ceiling", provider=name.value, offset=offset)
                await self._checkpoint(offset, complete=True, page_size=page_size)
                break

            page = await self.provider.list_page(offset, page_size)
            if page.total is not None:
                progress.observe_total(page.total)
            progress.observe_total(offset + len(page.items))
            progress.report()

            page_failures = []
            for item in page.items:
                if not await self._process(item, progress):
                    page_failures.append(item.id)
            failed += len(page_failures)

            if page_failures:
                logger.warning(
                    "full_sync_page_incomplete",
                    provider=name.value,
                    offset=offset,
                    failed=len(page_failures),
                )
                return SyncResult(
                    success=False,
                    error=f"{len(page_failures)} conversation(s) failed on the page at offset {offset}",
                    new_chats_found=progress.new_chats_found,
                    failed=failed,
                )

            offset += len(page.items)
            complete = (
                not page.items
                or not page.has_more
                or (page.total is not None and page.total <= offset)
                or offset >= self._safety_ceiling
            )
            await self._checkpoint(offset, complete=complete, page_size=len(page.items))
            if complete:
                break
            await asyncio.sleep(0)

        logger.info(
            "full_sync_complete",
            provider=name.value,
            offset=offset,
            new_chats_found=progress.new_chats_found,
            failed=failed,
        )
        return SyncResult(success=True, new_chats_found=progress.new_chats_found, failed=failed)

    async def _checkpoint(self, offset: int, *, complete: bool, page_size: int) -> None:
        await self.store.set_sync_metadata(
            self.provider.name,
            ProviderSyncMetadata(
                last_completed_offset=offset,
                is_full_sync_complete=complete,
                last_sync_page_size=page_size,
            ),
        )
        logger.info(
            "sync_checkpoint",
            provider=self.provider.name.value,
            offset=offset,
            complete=complete,
        )

    async def incremental_sync(self) -> SyncResult:
        """Sync the conversations updated since the newest one stored.

        Timestamps are compared at whole-second precision. When the newest
        remote conversation carries exactly the stored maximum, only that one
        is re-synced. Relies on the remote list being ordered by update time,
        newest first.
        """
        name = self.provider.name
        page_size = self.provider.page_size
        watermark = truncate_to_seconds(await self.store.get_max_updated_at(name))
        progress = _Progress(self.provider, self._progress_sink)
        failed = 0
        offset = 0
        logger.info("incremental_sync_started", provider=name.value, watermark=watermark)

        while offset < self._safety_ceiling:
            self._cancel_token.raise_if_cancelled()
            page = await self.provider.list_page(offset, page_size)
            if not page.items:
                break

            if offset == 0 and watermark is not None:
                newest = page.items[0]
                if truncate_to_seconds(newest.updated_at) == watermark:
                    progress.observe_total(1)
                    progress.report()
                    ok = await self._process(newest, progress)
                    logger.info(
                        "incremental_sync_fast_path",
                        provider=name.value,
                        conversation_id=newest.id,
                        success=ok,
                    )
                    return SyncResult(
                        success=True,
                        new_chats_found=progress.new_chats_found,
                        failed=0 if ok else 1,
                    )

            reached_known = False
            for item in page.items:
                updated = truncate_to_seconds(item.updated_at)
                if watermark is not None and updated is not None and updated <= watermark:
                    reached_known = True
                    break
                progress.observe_total(progress.current + 1)
                if not await self._process(item, progress):
                    failed += 1

            if reached_known or not page.has_more:
                break
            offset += len(page.items)
            await asyncio.sleep(0)

        logger.info(
            "incremental_sync_complete",
            provider=name.value,
            synced=progress.current,
            new_chats_found=progress.new_chats_found,
            failed=failed,
        )
        return SyncResult(success=True, new_chats_found=progress.new_chats_found, failed=failed)

    async def retry_failed(self) -> SyncResult:
        """Re-attempt conversations with a stored error, outside any list sweep."""
        with self._guard() as acquired:
            if not acquired:
                return SyncResult(success=True, skipped=True)
            try:
                pending = await self.store.get_failed_conversations(
                    self.provider.name, self._failed_retry_limit
                )
            except ChatkeepError as exc:
                return self._failure_result(exc)
            progress = _Progress(self.provider, self._progress_sink)
            progress.observe_total(len(pending))
            failed = 0
            logger.info("retry_failed_started", provider=self.provider.name.value, count=len(pending))
            try:
                for conversation in pending:
                    if not await self._process(_list_item(conversation), progress):
                        failed += 1
            except SyncCancelled:
                raise
            except ChatkeepError as exc:
                return self._failure_result(exc)
            return SyncResult(success=failed == 0, failed=failed, new_chats_found=progress.new_chats_found)

    async def sync_conversation(self, item: ConversationListItem) -> ConversationRecords:
        """Fetch one conversation and replace its stored messages atomically."""
        parsed = await self.provider.fetch_detail(item)
        records = build_records(self.provider.name, parsed, listing=item, synced_at=utcnow())
        conversation_id = records.conversation.id
        async with self.store.transaction():
            await self.store.delete_messages_for_conversation(conversation_id)
            await self.store.upsert_conversation(records.conversation)
            await self.store.upsert_messages(records.messages)
            await self.store.upsert_attachments(records.attachments)
            await self.store.prune_attachments(
                conversation_id, {attachment.id for attachment in records.attachments}
            )
        if self._download_attachments and self._prefetcher is not None and records.attachments:
            await self._prefetcher.download(records.attachments, native_id=records.conversation.native_id)
        return records

    async def refresh_conversation(
        self, conversation_id: str
    ) -> Optional[Tuple[Conversation, list[Message]]]:
        """Return the stored conversation now and revalidate it in the background.

        A conversation not yet stored is fetched before returning. Returns
        None when it could not be fetched.
        """
        stored = await self.store.get_conversation(conversation_id)
        if stored is not None and stored.synced_at is not None:
            messages = await self.store.get_messages(conversation_id)
            self._spawn(self._revalidate(_list_item(stored)))
            return stored, messages

        item = _list_item(stored) if stored is not None else ConversationListItem(
            id=ConversationId(conversation_id), native_id=conversation_id
        )
        try:
            await self._retry.run(
                item.id, lambda: self.sync_conversation(item), native_id=item.native_id, title=item.title
            )
        except Exception as exc:
            if not is_retryable(exc):
                raise
            return None
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return None
        return conversation, await self.store.get_messages(conversation_id)

    async def _revalidate(self, item: ConversationListItem) -> None:
        try:
            await self._retry.run(
                item.id, lambda: self.sync_conversation(item), native_id=item.native_id, title=item.title
            )
        except SyncCancelled:
            logger.debug("conversation_refresh_cancelled", conversation_id=item.id)
        except Exception as exc:
            logger.warning(
                "conversation_refresh_failed",
                provider=self.provider.name.value,
                conversation_id=item.id,
                error=str(exc),
            )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_background(self) -> None:
        """Wait for scheduled background refreshes to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.wait_background()


def _list_item(conversation: Conversation) -> ConversationListItem:
    return ConversationListItem(
        id=conversation.id,
        native_id=conversation.native_id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


__all__ = ["SyncOrchestrator"]
