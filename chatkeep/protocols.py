"""Protocol definitions for the collaborators of the sync engine.

These runtime-checkable Protocols decouple the orchestration code from
concrete storage, transport and progress reporting, allowing for:
- Easy testing via in-memory fakes
- Swappable backends and transports
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import (
    Attachment,
    Conversation,
    ConversationListItem,
    ConversationPage,
    DownloadedFile,
    FileRef,
    Message,
    ProgressEvent,
    ProviderState,
    ProviderSyncMetadata,
)
from .sources.parsers.base import ParsedConversation
from .types import ProviderName

ProgressSink = Callable[[ProgressEvent], None]


@runtime_checkable
class SyncStore(Protocol):
    """Persistence interface consumed by the sync engine.

    Every write is id-keyed and idempotent: the orchestrator relies on
    re-processing a page being safe.
    """

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def upsert_conversation(self, record: Conversation) -> None:
        ...

    async def delete_messages_for_conversation(self, conversation_id: str) -> None:
        ...

    async def upsert_messages(self, records: list[Message]) -> None:
        ...

    async def upsert_attachments(self, records: list[Attachment]) -> None:
        ...

    async def prune_attachments(self, conversation_id: str, keep_ids: set[str]) -> None:
        """Drop attachment rows of a conversation whose id is not in keep_ids."""
        ...

    async def get_max_updated_at(self, provider: ProviderName) -> Optional[datetime]:
        """Newest ``updated_at`` among a provider's stored conversations."""
        ...

    async def update_conversation_sync_error(
        self, conversation_id: str, error: Optional[str], retry_count: int
    ) -> None:
        ...

    async def get_sync_metadata(self, provider: ProviderName) -> ProviderSyncMetadata:
        ...

    async def set_sync_metadata(self, provider: ProviderName, value: ProviderSyncMetadata) -> None:
        ...

    async def get_failed_conversations(self, provider: ProviderName, max_retries: int) -> list[Conversation]:
        """Conversations with a stored sync error and fewer than max_retries attempts."""
        ...

    async def list_conversations(self, provider: Optional[ProviderName] = None) -> list[Conversation]:
        ...

    async def get_messages(self, conversation_id: str) -> list[Message]:
        ...

    async def get_attachments(self, conversation_id: str) -> list[Attachment]:
        ...

    async def update_attachment_local_path(self, attachment_id: str, local_path: str, size: int) -> None:
        ...

    async def get_provider_state(self, provider: ProviderName) -> ProviderState:
        ...

    async def set_provider_state(self, state: ProviderState) -> None:
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group writes so they commit together or not at all."""
        ...


@runtime_checkable
class Provider(Protocol):
    """Remote content fetcher for one hosted chat service.

    Implementations are free to use any transport; the engine only relies on
    these capabilities.
    """

    @property
    def name(self) -> ProviderName:
        ...

    @property
    def page_size(self) -> int:
        ...

    def is_connected(self) -> bool:
        """True when credentials are available for remote calls."""
        ...

    async def list_page(self, offset: int, limit: int) -> ConversationPage:
        """One page of the remote conversation list, newest first.

        Raises:
            ProviderAuthError: credentials were rejected.
            RemoteError: the page could not be fetched or decoded.
        """
        ...

    async def fetch_detail(self, item: ConversationListItem) -> ParsedConversation:
        """Fetch and extract a full conversation.

        Raises:
            ProviderAuthError: credentials were rejected.
            RemoteError: transient failure; ExtractionError for unexpected documents.
        """
        ...

    async def download_file(self, ref: FileRef) -> DownloadedFile:
        ...

    async def aclose(self) -> None:
        ...


__all__ = ["ProgressSink", "SyncStore", "Provider"]
