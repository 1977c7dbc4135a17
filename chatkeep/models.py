"""Canonical records shared by parsers, storage and the sync engine."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .lib.json import dumps, loads_or_none
from .types import (
    AttachmentId,
    AttachmentKind,
    ConversationId,
    MessageId,
    ProgressPhase,
    ProviderName,
    ProviderStatus,
)


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class SourceUrlPart(BaseModel):
    """An inline citation: marks the point in the text where a web source was cited."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["source-url"] = "source-url"
    source_id: str = Field(alias="sourceId")
    url: str
    title: Optional[str] = None
    attribution: Optional[str] = None
    snippet: Optional[str] = None
    icon_url: Optional[str] = None


MessagePart = Annotated[Union[TextPart, SourceUrlPart], Field(discriminator="type")]

_PARTS_ADAPTER: TypeAdapter[list[MessagePart]] = TypeAdapter(list[MessagePart])


def parts_to_json(parts: list[MessagePart]) -> str:
    return dumps(_PARTS_ADAPTER.dump_python(parts, mode="json", by_alias=True, exclude_none=True))


def parts_from_json(raw: str | bytes | None) -> list[MessagePart]:
    data = loads_or_none(raw)
    if not data:
        return [TextPart(text="")]
    return _PARTS_ADAPTER.validate_python(data)


def parts_text(parts: list[MessagePart]) -> str:
    """Concatenated text of all text parts, citations removed."""
    return "".join(part.text for part in parts if isinstance(part, TextPart))


class Conversation(BaseModel):
    id: ConversationId
    native_id: str
    provider: ProviderName
    title: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None
    message_count: int = Field(default=0, ge=0)
    current_node_id: Optional[MessageId] = None
    sync_error: Optional[str] = None
    sync_retry_count: int = Field(default=0, ge=0)

    @field_validator("id", "native_id")
    @classmethod
    def non_empty_string(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v


class Message(BaseModel):
    id: MessageId
    conversation_id: ConversationId
    role: str
    parts: list[MessagePart] = Field(default_factory=lambda: [TextPart(text="")])
    created_at: Optional[datetime] = None
    order_index: int = 0
    parent_id: Optional[MessageId] = None
    sibling_ids: list[MessageId] = Field(default_factory=list)
    sibling_index: int = 0

    @field_validator("parts")
    @classmethod
    def at_least_one_part(cls, v: list[MessagePart]) -> list[MessagePart]:
        return v or [TextPart(text="")]

    @model_validator(mode="after")
    def own_id_among_siblings(self) -> Message:
        if self.id not in self.sibling_ids:
            self.sibling_ids = [*self.sibling_ids, self.id]
        self.sibling_index = self.sibling_ids.index(self.id)
        return self

    @property
    def text(self) -> str:
        return parts_text(self.parts)


def make_attachment_id(message_id: str, file_id: str) -> AttachmentId:
    return AttachmentId(f"{message_id}-att-{file_id}")


class Attachment(BaseModel):
    id: AttachmentId
    message_id: MessageId
    conversation_id: ConversationId
    type: AttachmentKind = AttachmentKind.FILE
    file_id: Optional[str] = None
    original_url: str = ""
    local_path: str = ""
    filename: str = ""
    mime_type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    width: Optional[int] = None
    height: Optional[int] = None


class ProviderSyncMetadata(BaseModel):
    """Per-provider checkpoint deciding whether the next run is a full or incremental sync."""

    last_completed_offset: int = Field(default=0, ge=0)
    is_full_sync_complete: bool = False
    last_sync_page_size: Optional[int] = None


class ProviderState(BaseModel):
    provider: ProviderName
    is_online: bool = False
    last_sync_at: Optional[datetime] = None
    status: ProviderStatus = ProviderStatus.DISCONNECTED
    error_message: Optional[str] = None


class ConversationListItem(BaseModel):
    """One row of a provider's remote conversation list."""

    id: ConversationId
    native_id: str
    title: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationPage(BaseModel):
    items: list[ConversationListItem] = Field(default_factory=list)
    total: Optional[int] = None
    has_more: bool = False


class FileRef(BaseModel):
    """Provider-specific handle for downloading an attachment's bytes."""

    file_id: str
    url: Optional[str] = None
    conversation_native_id: Optional[str] = None


class DownloadedFile(BaseModel):
    data: bytes
    mime_type: str = "application/octet-stream"


class SyncResult(BaseModel):
    success: bool
    error: Optional[str] = None
    new_chats_found: int = 0
    failed: int = 0
    skipped: bool = False
    auth_failed: bool = False


class ProgressEvent(BaseModel):
    phase: ProgressPhase
    current: int = 0
    total: int = 0
    label: Optional[str] = None
    new_chats_found: int = 0
    provider: Optional[ProviderName] = None


__all__ = [
    "TextPart",
    "SourceUrlPart",
    "MessagePart",
    "parts_to_json",
    "parts_from_json",
    "parts_text",
    "Conversation",
    "Message",
    "Attachment",
    "make_attachment_id",
    "ProviderSyncMetadata",
    "ProviderState",
    "ConversationListItem",
    "ConversationPage",
    "FileRef",
    "DownloadedFile",
    "SyncResult",
    "ProgressEvent",
]
