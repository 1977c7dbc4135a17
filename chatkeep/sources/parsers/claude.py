"""Claude conversation documents (``chat_conversations/{id}?tree=True``).

Every branch is present in ``chat_messages`` with ``parent_message_uuid``
links; the active branch tip is ``current_leaf_message_uuid``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ...errors import ExtractionError
from ...lib.roles import Role
from ...lib.timestamps import parse_timestamp
from ...models import MessagePart, SourceUrlPart, TextPart
from ...types import AttachmentKind
from .base import (
    ParsedAttachment,
    ParsedConversation,
    ParsedMessage,
    append_text,
    finish_parts,
    merge_attachment,
    optional_int,
    require_list,
    require_mapping,
)
from .graph import RawNode, index_nodes, reconcile, resolve_current_node

CLAUDE_ORIGIN = "https://claude.ai"

_IMAGE_MIME = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}
_DOCUMENT_MIME = {
    "pdf": "application/pdf",
    "txt": "text/plain",
    "md": "text/markdown",
}


def _artifact_parts(markdown: str, citations: Sequence[Mapping[str, Any]], parts: List[MessagePart]) -> None:
    # Citations are offset ranges over the markdown; the cited span stays in the text.
    ordered = sorted(
        (c for c in citations if isinstance(c, Mapping)),
        key=lambda c: optional_int(c.get("start_index")) or 0,
    )
    last = 0
    for citation in ordered:
        end = optional_int(citation.get("end_index"))
        url = citation.get("url")
        if end is None or not isinstance(url, str) or not url:
            continue
        end = max(min(end, len(markdown)), last)
        append_text(parts, markdown[last:end])
        metadata = citation.get("metadata") if isinstance(citation.get("metadata"), Mapping) else {}
        parts.append(
            SourceUrlPart(
                source_id=str(citation.get("uuid") or f"{url}#{end}"),
                url=url,
                title=citation.get("title") or metadata.get("preview_title") or None,
                attribution=metadata.get("source") or None,
                icon_url=metadata.get("icon_url") or None,
                snippet=metadata.get("content_body") or None,
            )
        )
        last = end
    append_text(parts, markdown[last:])


def transform_parts(content: Sequence[Mapping[str, Any]]) -> List[MessagePart]:
    """Convert Claude content blocks to message parts.

    ``text`` blocks become text parts; ``artifacts`` tool calls contribute
    their markdown with ``md_citations`` turned into source parts placed
    right after each cited span. Other blocks (thinking, tool results) are
    not part of the displayed message.
    """
    parts: List[MessagePart] = []
    for block in content:
        if not isinstance(block, Mapping):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                parts.append(TextPart(text=text))
        elif block_type == "tool_use" and block.get("name") == "artifacts":
            tool_input = block.get("input") if isinstance(block.get("input"), Mapping) else {}
            markdown = tool_input.get("content")
            if not isinstance(markdown, str) or not markdown:
                continue
            citations = tool_input.get("md_citations")
            if isinstance(citations, list) and citations:
                _artifact_parts(markdown, citations, parts)
            else:
                parts.append(TextPart(text=markdown))
    return finish_parts(parts)


def file_url(path: Optional[str]) -> str:
    if not path:
        return ""
    if path.startswith("http"):
        return path
    return f"{CLAUDE_ORIGIN}{path}"


def mime_type_for(file_kind: str, filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if file_kind == "image":
        return _IMAGE_MIME.get(ext, "image/png")
    if file_kind == "document":
        return _DOCUMENT_MIME.get(ext, "application/pdf")
    return "application/octet-stream"


def _file_attachment(raw: Mapping[str, Any]) -> Optional[ParsedAttachment]:
    file_id = raw.get("file_uuid") or raw.get("uuid")
    if not isinstance(file_id, str) or not file_id:
        return None
    file_kind = str(raw.get("file_kind") or "")
    filename = str(raw.get("file_name") or "")

    url = ""
    width = height = None
    for asset_key in ("preview_asset", "document_asset", "thumbnail_asset"):
        asset = raw.get(asset_key)
        if isinstance(asset, Mapping) and asset.get("url"):
            url = file_url(asset["url"])
            width = optional_int(asset.get("image_width"))
            height = optional_int(asset.get("image_height"))
            break
    else:
        url = file_url(raw.get("preview_url") or raw.get("thumbnail_url"))

    return ParsedAttachment(
        file_id=file_id,
        kind=AttachmentKind.IMAGE if file_kind == "image" else AttachmentKind.FILE,
        filename=filename,
        mime_type=mime_type_for(file_kind, filename),
        original_url=url,
        size=optional_int(raw.get("size_bytes")) or 0,
        width=width,
        height=height,
    )


def message_attachments(message: Mapping[str, Any]) -> List[ParsedAttachment]:
    """Attachments from ``files`` and ``files_v2``, one per file uuid.

    Both lists usually describe the same files; when they do, the more
    complete record wins field by field.
    """
    collected: Dict[str, ParsedAttachment] = {}
    for key in ("files_v2", "files"):
        raw_files = message.get(key)
        if not isinstance(raw_files, list):
            continue
        for raw in raw_files:
            if not isinstance(raw, Mapping) or raw.get("success") is False:
                continue
            parsed = _file_attachment(raw)
            if parsed is not None:
                collected[parsed.file_id] = merge_attachment(collected.get(parsed.file_id), parsed)
    return list(collected.values())


def parse(payload: Mapping[str, Any], fallback_id: str | None = None) -> ParsedConversation:
    """Turn a Claude conversation document into a flat, time-ordered conversation.

    Raises:
        ExtractionError: when the document lacks an id or its message list.
    """
    payload = require_mapping(payload, "conversation")
    conv_id = payload.get("uuid") or fallback_id
    if not conv_id:
        raise ExtractionError("Claude conversation has no uuid")
    chat_messages = require_list(payload.get("chat_messages"), "chat_messages")

    raw_nodes: List[RawNode[Mapping[str, Any]]] = []
    for position, raw in enumerate(chat_messages):
        if not isinstance(raw, Mapping) or not raw.get("uuid"):
            continue
        created = parse_timestamp(raw.get("created_at"))
        parent = raw.get("parent_message_uuid")
        raw_nodes.append(
            RawNode(
                id=str(raw["uuid"]),
                parent_id=str(parent) if parent else None,
                created_at=created.timestamp() if created else None,
                payload={**raw, "_position": position},
            )
        )
    index = index_nodes(raw_nodes)

    messages: List[ParsedMessage] = []
    for placement in reconcile(index, lambda node: Role.normalize(node.payload.get("sender")) is not Role.UNKNOWN):
        if not placement.emitted:
            continue
        raw = placement.node.payload
        content = raw.get("content")
        if isinstance(content, list) and content:
            parts = transform_parts(content)
        else:
            parts = [TextPart(text=str(raw.get("text") or ""))]
        messages.append(
            ParsedMessage(
                id=placement.node.id,
                role=Role.normalize(raw.get("sender")).value,
                parts=parts,
                created_at=parse_timestamp(raw.get("created_at")),
                parent_id=placement.parent_id,
                attachments=message_attachments(raw),
            )
        )

    def _order(message: ParsedMessage) -> tuple[float, int]:
        raw = index.nodes[message.id].payload
        index_value = optional_int(raw.get("index"))
        return (
            message.created_at.timestamp() if message.created_at else 0.0,
            index_value if index_value is not None else raw["_position"],
        )

    messages.sort(key=_order)
    kept = {m.id for m in messages}
    leaf = payload.get("current_leaf_message_uuid")
    current = resolve_current_node(
        index,
        leaf if isinstance(leaf, str) else None,
        kept,
        messages[-1].id if messages else None,
    )

    return ParsedConversation(
        id=str(conv_id),
        native_id=str(conv_id),
        title=str(payload.get("name") or ""),
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
        messages=messages,
        current_node_id=current,
    )


__all__ = ["transform_parts", "message_attachments", "mime_type_for", "file_url", "parse"]
