"""Provider-neutral results produced by the conversation extractors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from ...errors import ExtractionError
from ...models import MessagePart, TextPart, parts_text
from ...types import AttachmentKind


@dataclass
class ParsedAttachment:
    file_id: str
    kind: AttachmentKind = AttachmentKind.FILE
    filename: str = ""
    mime_type: str = "application/octet-stream"
    original_url: str = ""
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None

    def completeness(self) -> int:
        """How many optional fields are filled in; used to pick between duplicate records."""
        score = 0
        for value in (self.filename, self.original_url, self.width, self.height):
            if value:
                score += 1
        if self.size:
            score += 1
        if self.mime_type and self.mime_type != "application/octet-stream":
            score += 1
        return score


@dataclass
class ParsedMessage:
    id: str
    role: str
    parts: List[MessagePart] = field(default_factory=lambda: [TextPart(text="")])
    created_at: Optional[datetime] = None
    parent_id: Optional[str] = None
    attachments: List[ParsedAttachment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return parts_text(self.parts)


@dataclass
class ParsedConversation:
    id: str
    native_id: str
    title: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    messages: List[ParsedMessage] = field(default_factory=list)
    current_node_id: Optional[str] = None


def merge_attachment(existing: Optional[ParsedAttachment], incoming: ParsedAttachment) -> ParsedAttachment:
    """Combine two records describing the same file, preferring the more complete one."""
    if existing is None:
        return incoming
    primary, secondary = (
        (incoming, existing) if incoming.completeness() > existing.completeness() else (existing, incoming)
    )
    return ParsedAttachment(
        file_id=primary.file_id,
        kind=AttachmentKind.IMAGE if AttachmentKind.IMAGE in (primary.kind, secondary.kind) else primary.kind,
        filename=primary.filename or secondary.filename,
        mime_type=(
            primary.mime_type
            if primary.mime_type != "application/octet-stream"
            else secondary.mime_type
        ),
        original_url=primary.original_url or secondary.original_url,
        size=primary.size or secondary.size,
        width=primary.width if primary.width is not None else secondary.width,
        height=primary.height if primary.height is not None else secondary.height,
    )


def append_text(parts: List[MessagePart], text: str) -> None:
    """Append text, merging into a preceding text part so dropped markers leave one run."""
    if not text:
        return
    if parts and isinstance(parts[-1], TextPart):
        parts[-1] = TextPart(text=parts[-1].text + text)
    else:
        parts.append(TextPart(text=text))


def finish_parts(parts: List[MessagePart]) -> List[MessagePart]:
    return parts or [TextPart(text="")]


def require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ExtractionError(f"Expected {what} to be an object, got {type(value).__name__}")
    return value


def require_list(value: Any, what: str) -> list[Any]:
    if not isinstance(value, list):
        raise ExtractionError(f"Expected {what} to be a list, got {type(value).__name__}")
    return value


def optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


__all__ = [
    "ParsedAttachment",
    "ParsedMessage",
    "ParsedConversation",
    "merge_attachment",
    "append_text",
    "finish_parts",
    "require_mapping",
    "require_list",
    "optional_int",
]
