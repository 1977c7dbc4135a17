"""In-memory collaborators for sync tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from chatkeep.errors import ProviderAuthError, RemoteError
from chatkeep.lib.roles import Role
from chatkeep.models import (
    ConversationListItem,
    ConversationPage,
    DownloadedFile,
    FileRef,
    ProgressEvent,
    TextPart,
)
from chatkeep.sources.parsers.base import ParsedAttachment, ParsedConversation, ParsedMessage
from chatkeep.types import ConversationId, ProviderName

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return EPOCH + timedelta(seconds=seconds)


def make_parsed(conversation_id: str, *, turns: int = 1, attachments: int = 0) -> ParsedConversation:
    messages: List[ParsedMessage] = []
    parent: Optional[str] = None
    for turn in range(turns):
        for role in (Role.USER, Role.ASSISTANT):
            message_id = f"{conversation_id}-{turn}-{role.value}"
            messages.append(
                ParsedMessage(
                    id=message_id,
                    role=role.value,
                    parts=[TextPart(text=f"{role.value} {turn}")],
                    created_at=at(turn * 10 + (1 if role is Role.ASSISTANT else 0)),
                    parent_id=parent,
                )
            )
            parent = message_id
    for index in range(attachments):
        messages[0].attachments.append(
            ParsedAttachment(file_id=f"file-{index}", filename=f"image{index}.png", mime_type="image/png")
        )
    return ParsedConversation(
        id=conversation_id,
        native_id=conversation_id,
        title=f"Conversation {conversation_id}",
        created_at=messages[0].created_at if messages else None,
        updated_at=messages[-1].created_at if messages else None,
        messages=messages,
        current_node_id=messages[-1].id if messages else None,
    )


@dataclass
class FakeProvider:
    """Provider serving a fixed, newest-first conversation list."""

    name: ProviderName = ProviderName.CHATGPT
    page_size: int = 2
    connected: bool = True
    items: List[ConversationListItem] = field(default_factory=list)
    details: Dict[str, ParsedConversation] = field(default_factory=dict)
    # native id -> number of remaining failures (-1 fails forever)
    failures: Dict[str, int] = field(default_factory=dict)
    auth_fail_on_list: bool = False
    report_total: bool = True
    list_calls: List[Tuple[int, int]] = field(default_factory=list)
    detail_calls: List[str] = field(default_factory=list)
    download_calls: List[str] = field(default_factory=list)
    files: Dict[str, DownloadedFile] = field(default_factory=dict)
    closed: bool = False

    def add(self, conversation_id: str, updated_at: Optional[datetime], **kwargs) -> ConversationListItem:
        item = ConversationListItem(
            id=ConversationId(conversation_id),
            native_id=conversation_id,
            title=f"Conversation {conversation_id}",
            created_at=updated_at,
            updated_at=updated_at,
        )
        self.items.append(item)
        self.details[conversation_id] = make_parsed(conversation_id, **kwargs)
        return item

    def is_connected(self) -> bool:
        return self.connected

    async def list_page(self, offset: int, limit: int) -> ConversationPage:
        self.list_calls.append((offset, limit))
        if self.auth_fail_on_list:
            raise ProviderAuthError("HTTP 401: unauthorized", status_code=401)
        page = self.items[offset:offset + limit]
        return ConversationPage(
            items=page,
            total=len(self.items) if self.report_total else None,
            has_more=len(page) == limit,
        )

    async def fetch_detail(self, item: ConversationListItem) -> ParsedConversation:
        self.detail_calls.append(item.native_id)
        remaining = self.failures.get(item.native_id, 0)
        if remaining:
            if remaining > 0:
                self.failures[item.native_id] = remaining - 1
            raise RemoteError(f"Timed out fetching {item.native_id}")
        return self.details[item.native_id]

    async def download_file(self, ref: FileRef) -> DownloadedFile:
        self.download_calls.append(ref.file_id)
        return self.files.get(ref.file_id) or DownloadedFile(data=b"\x89PNG data", mime_type="image/png")

    async def aclose(self) -> None:
        self.closed = True


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def totals(self) -> List[int]:
        return [event.total for event in self.events]
