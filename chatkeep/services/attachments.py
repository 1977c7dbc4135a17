"""Local attachment cache and batch prefetch."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Iterable, Optional, Tuple

import aiofiles
import aiofiles.os

from ..errors import ChatkeepError, RemoteError, SyncCancelled
from ..lib.log import get_logger
from ..models import Attachment, Conversation, DownloadedFile, FileRef, ProgressEvent
from ..paths import safe_filename, safe_path_component
from ..protocols import ProgressSink, SyncStore
from ..types import ProgressPhase

if TYPE_CHECKING:
    from ..sync.cancellation import CancellationToken

logger = get_logger(__name__)

Fetch = Callable[[FileRef], Awaitable[DownloadedFile]]

MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
    "application/json": ".json",
}

_PARTIAL_SUFFIX = ".part"


def extension_for(mime_type: Optional[str]) -> str:
    if not mime_type:
        return ".bin"
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(base, ".bin")


def _non_empty_file(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


class AttachmentResolver:
    """Resolve provider file references to files under ``root``.

    Files live at ``{root}/{conversation}/{file_id}_{filename}``. A file
    already present there (or at a recorded ``local_path``) is returned
    without touching the network, and concurrent requests for the same file
    share one download.
    """

    def __init__(
        self,
        root: Path,
        fetch: Fetch,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.root = Path(root)
        self._fetch = fetch
        self._cancel_token = cancel_token
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}

    def conversation_dir(self, conversation_id: str) -> Path:
        return self.root / safe_path_component(conversation_id, fallback="conversation")

    def _prefix(self, file_id: str) -> str:
        return f"{safe_path_component(file_id, fallback='file')}_"

    def find_cached(self, conversation_id: str, file_id: str) -> Optional[Path]:
        directory = self.conversation_dir(conversation_id)
        if not directory.is_dir():
            return None
        prefix = self._prefix(file_id)
        for entry in sorted(directory.iterdir()):
            if entry.name.startswith(prefix) and not entry.name.endswith(_PARTIAL_SUFFIX) and _non_empty_file(entry):
                return entry
        return None

    async def resolve(
        self,
        ref: FileRef,
        desired_filename: Optional[str],
        conversation_id: str,
        *,
        known_path: Optional[str] = None,
    ) -> Path:
        """Return a local path for ``ref``, downloading it at most once.

        Raises:
            SyncCancelled: cancellation fired before the file was available.
            RemoteError: the provider returned no bytes or the fetch failed.
        """
        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()
        if known_path:
            recorded = Path(known_path)
            if _non_empty_file(recorded):
                return recorded
        cached = self.find_cached(conversation_id, ref.file_id)
        if cached is not None:
            return cached

        key = (conversation_id, ref.file_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._download(ref, desired_filename, conversation_id))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, key=key: self._inflight.pop(key, None))
        if self._cancel_token is not None:
            return await self._cancel_token.run(asyncio.shield(task))
        return await asyncio.shield(task)

    def cancel_pending(self) -> int:
        pending = [task for task in self._inflight.values() if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    def _filename(self, desired: Optional[str], mime_type: str) -> str:
        name = (desired or "").strip() or "attachment"
        if not Path(name).suffix:
            name += extension_for(mime_type)
        return safe_filename(name)

    async def _download(self, ref: FileRef, desired_filename: Optional[str], conversation_id: str) -> Path:
        downloaded = await self._fetch(ref)
        if not downloaded.data:
            raise RemoteError(f"Empty download for file {ref.file_id}")
        directory = self.conversation_dir(conversation_id)
        await aiofiles.os.makedirs(directory, exist_ok=True)
        target = directory / f"{self._prefix(ref.file_id)}{self._filename(desired_filename, downloaded.mime_type)}"
        partial = target.with_name(target.name + _PARTIAL_SUFFIX)
        async with aiofiles.open(partial, "wb") as fh:
            await fh.write(downloaded.data)
        await aiofiles.os.rename(partial, target)
        logger.debug(
            "attachment_downloaded",
            conversation_id=conversation_id,
            file_id=ref.file_id,
            path=str(target),
            size=len(downloaded.data),
        )
        return target


@dataclass
class PrefetchResult:
    total: int = 0
    downloaded: int = 0
    cached: int = 0
    failed: int = 0


class AttachmentPrefetcher:
    """Bring every attachment of a set of conversations into the local cache.

    Reports a ``counting`` phase while collecting attachment rows, then a
    ``downloading`` phase per attachment. Individual download failures are
    logged and counted; cancellation aborts the batch.
    """

    def __init__(
        self,
        resolver: AttachmentResolver,
        store: SyncStore,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
        yield_every: int = 10,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self._progress = progress
        self._cancel_token = cancel_token
        self._yield_every = max(1, yield_every)

    def _report(self, phase: ProgressPhase, current: int, total: int, label: Optional[str] = None) -> None:
        if self._progress is not None:
            self._progress(ProgressEvent(phase=phase, current=current, total=total, label=label))

    def _check_cancelled(self) -> None:
        if self._cancel_token is not None and self._cancel_token.cancelled:
            self.resolver.cancel_pending()
            self._cancel_token.raise_if_cancelled()

    async def resolve_one(self, attachment: Attachment, *, native_id: Optional[str] = None) -> Optional[Path]:
        """Resolve one attachment and record its local path; None on failure."""
        ref = FileRef(
            file_id=attachment.file_id or attachment.id,
            url=attachment.original_url or None,
            conversation_native_id=native_id,
        )
        try:
            path = await self.resolver.resolve(
                ref,
                attachment.filename,
                attachment.conversation_id,
                known_path=attachment.local_path or None,
            )
        except SyncCancelled:
            self.resolver.cancel_pending()
            raise
        except (ChatkeepError, OSError) as exc:
            logger.warning(
                "attachment_download_failed",
                conversation_id=attachment.conversation_id,
                attachment_id=attachment.id,
                error=str(exc),
            )
            return None
        if str(path) != attachment.local_path:
            await self.store.update_attachment_local_path(attachment.id, str(path), path.stat().st_size)
        return path

    async def download(self, attachments: Iterable[Attachment], *, native_id: Optional[str] = None) -> PrefetchResult:
        items = list(attachments)
        result = PrefetchResult(total=len(items))
        for index, attachment in enumerate(items):
            self._check_cancelled()
            had_path = bool(attachment.local_path) and _non_empty_file(Path(attachment.local_path))
            path = await self.resolve_one(attachment, native_id=native_id)
            if path is None:
                result.failed += 1
            elif had_path:
                result.cached += 1
            else:
                result.downloaded += 1
            if (index + 1) % self._yield_every == 0:
                await asyncio.sleep(0)
        return result

    async def run(self, conversations: Iterable[Conversation]) -> PrefetchResult:
        selected = list(conversations)
        pending: list[Tuple[Attachment, str]] = []
        for index, conversation in enumerate(selected):
            self._check_cancelled()
            for attachment in await self.store.get_attachments(conversation.id):
                pending.append((attachment, conversation.native_id))
            self._report(ProgressPhase.COUNTING, index + 1, len(selected), conversation.title or None)
            if (index + 1) % self._yield_every == 0:
                await asyncio.sleep(0)

        result = PrefetchResult(total=len(pending))
        logger.info("attachment_prefetch_started", conversations=len(selected), attachments=len(pending))
        for index, (attachment, native_id) in enumerate(pending):
            self._check_cancelled()
            cached = bool(attachment.local_path) and _non_empty_file(Path(attachment.local_path))
            if not cached:
                cached = self.resolver.find_cached(attachment.conversation_id, attachment.file_id or attachment.id) is not None
            path = await self.resolve_one(attachment, native_id=native_id)
            if path is None:
                result.failed += 1
            elif cached:
                result.cached += 1
            else:
                result.downloaded += 1
            self._report(ProgressPhase.DOWNLOADING, index + 1, len(pending), attachment.filename or None)
            if (index + 1) % self._yield_every == 0:
                await asyncio.sleep(0)
        logger.info(
            "attachment_prefetch_complete",
            downloaded=result.downloaded,
            cached=result.cached,
            failed=result.failed,
        )
        return result


__all__ = [
    "AttachmentResolver",
    "AttachmentPrefetcher",
    "PrefetchResult",
    "extension_for",
    "MIME_EXTENSIONS",
]
