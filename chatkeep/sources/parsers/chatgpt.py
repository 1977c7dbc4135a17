"""ChatGPT conversation documents (``/backend-api/conversation/{id}``).

A document is a ``mapping`` of node id -> ``{id, parent, children, message}``.
Only user/assistant messages addressed to everyone are shown to a person;
the rest (system roots, tool calls, hidden context carriers) is scaffolding
that the graph reconciliation routes around. Image-generation tool results
are the one piece of scaffolding with a visible payload: their images are
folded into the assistant message that presents them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ...errors import ExtractionError
from ...lib.hashing import source_part_id
from ...lib.log import get_logger
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
    require_mapping,
)
from .graph import RawIndex, RawNode, ancestors, descendants, index_nodes, reconcile, resolve_current_node

logger = get_logger(__name__)

CITATION_RE = re.compile(r"【(\d+)†[^】]+】")
CITATION_TYPES = frozenset({"webpage", "webpage_extended", "image_inline"})
HIDDEN_CONTENT_TYPES = frozenset({"user_editable_context", "model_editable_context"})
IMAGE_POINTER_PREFIXES = ("sediment://", "file-service://")


def transform_parts(content: str, references: Optional[Sequence[Mapping[str, Any]]] = None) -> List[MessagePart]:
    """Split ``【n†…】`` citation markers out of ``content`` into source parts.

    References are matched by their ``matched_text``; a marker without a
    matching reference that has a URL is removed from the text.
    """
    if not references:
        return [TextPart(text=content)]

    by_marker: Dict[str, Mapping[str, Any]] = {}
    for ref in references:
        if isinstance(ref, Mapping) and ref.get("matched_text"):
            by_marker[str(ref["matched_text"])] = ref

    parts: List[MessagePart] = []
    last = 0
    ordinal = 0
    for match in CITATION_RE.finditer(content):
        append_text(parts, content[last:match.start()])
        ref = by_marker.get(match.group(0))
        url = ref.get("url") if ref else None
        if ref is not None and isinstance(url, str) and url:
            parts.append(
                SourceUrlPart(
                    source_id=source_part_id(url, ordinal),
                    url=url,
                    title=ref.get("title") or None,
                    attribution=ref.get("attribution") or None,
                    snippet=ref.get("snippet") or None,
                )
            )
            ordinal += 1
        last = match.end()
    append_text(parts, content[last:])
    return finish_parts(parts)


def _coerce_float(value: object) -> float | None:
    # Exclude bool explicitly (bool is a subclass of int)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def strip_pointer(asset_pointer: str) -> str:
    for prefix in IMAGE_POINTER_PREFIXES:
        if asset_pointer.startswith(prefix):
            return asset_pointer[len(prefix):]
    return asset_pointer


@dataclass
class _NodeContent:
    role: Role
    text: str
    hidden: bool
    images: List[ParsedAttachment] = field(default_factory=list)
    attachments: List[ParsedAttachment] = field(default_factory=list)
    references: List[Mapping[str, Any]] = field(default_factory=list)

    @property
    def is_tool_image(self) -> bool:
        return self.role is Role.TOOL and bool(self.images)

    @property
    def displayable(self) -> bool:
        if self.hidden or self.role not in (Role.USER, Role.ASSISTANT):
            return False
        return bool(self.text.strip() or self.images or self.attachments)


def _image_from_part(part: Mapping[str, Any], filename: str = "") -> Optional[ParsedAttachment]:
    pointer = part.get("asset_pointer")
    if not isinstance(pointer, str) or not pointer:
        return None
    return ParsedAttachment(
        file_id=strip_pointer(pointer),
        kind=AttachmentKind.IMAGE,
        filename=filename,
        size=optional_int(part.get("size_bytes")) or 0,
        width=optional_int(part.get("width")),
        height=optional_int(part.get("height")),
    )


def _metadata_attachment(raw: Mapping[str, Any]) -> Optional[ParsedAttachment]:
    file_id = raw.get("id")
    if not isinstance(file_id, str) or not file_id:
        return None
    mime_type = raw.get("mime_type") if isinstance(raw.get("mime_type"), str) else ""
    return ParsedAttachment(
        file_id=file_id,
        kind=AttachmentKind.IMAGE if mime_type.startswith("image/") else AttachmentKind.FILE,
        filename=str(raw.get("name") or ""),
        mime_type=mime_type or "application/octet-stream",
        size=optional_int(raw.get("size")) or 0,
        width=optional_int(raw.get("width")),
        height=optional_int(raw.get("height")),
    )


def _read_node(node: Mapping[str, Any]) -> Optional[_NodeContent]:
    msg = node.get("message")
    if not isinstance(msg, Mapping):
        return None
    author = msg.get("author")
    role = Role.normalize(author.get("role") if isinstance(author, Mapping) else None)
    content = msg.get("content") if isinstance(msg.get("content"), Mapping) else {}
    metadata = msg.get("metadata") if isinstance(msg.get("metadata"), Mapping) else {}

    hidden = (
        bool(metadata.get("is_visually_hidden_from_conversation"))
        or content.get("content_type") in HIDDEN_CONTENT_TYPES
        or (msg.get("recipient") or "all") != "all"
    )

    texts: List[str] = []
    images: List[ParsedAttachment] = []
    image_title = str(metadata.get("image_gen_title") or "") if role is Role.TOOL else ""
    raw_parts = content.get("parts")
    if isinstance(raw_parts, list):
        for part in raw_parts:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, Mapping) and part.get("content_type") == "image_asset_pointer":
                image = _image_from_part(part, image_title)
                if image is not None:
                    images.append(image)

    attachments: List[ParsedAttachment] = []
    raw_attachments = metadata.get("attachments")
    if isinstance(raw_attachments, list):
        for raw in raw_attachments:
            if isinstance(raw, Mapping):
                parsed = _metadata_attachment(raw)
                if parsed is not None:
                    attachments.append(parsed)

    references: List[Mapping[str, Any]] = []
    raw_refs = metadata.get("content_references")
    if isinstance(raw_refs, list):
        references = [ref for ref in raw_refs if isinstance(ref, Mapping) and ref.get("type") in CITATION_TYPES]

    return _NodeContent(
        role=role,
        text="\n".join(texts),
        hidden=hidden,
        images=images,
        attachments=attachments,
        references=references,
    )


def _fold_targets(index: RawIndex[Optional[_NodeContent]]) -> Dict[str, str]:
    """Decide which displayed assistant message presents each tool-image node.

    Prefers the first displayed assistant descendant, then the nearest
    displayed ancestor if it is an assistant message. Tool nodes with
    neither are left out and become standalone assistant messages.
    """

    def _assistant(node_id: str) -> bool:
        payload = index.nodes[node_id].payload
        return payload is not None and payload.displayable and payload.role is Role.ASSISTANT

    def _displayed(node_id: str) -> bool:
        payload = index.nodes[node_id].payload
        return payload is not None and payload.displayable

    targets: Dict[str, str] = {}
    for node_id in index.order:
        payload = index.nodes[node_id].payload
        if payload is None or not payload.is_tool_image:
            continue
        target = next((cid for cid in descendants(index, node_id) if _assistant(cid)), None)
        if target is None:
            nearest = next((aid for aid in ancestors(index, node_id) if _displayed(aid)), None)
            if nearest is not None and _assistant(nearest):
                target = nearest
        if target is not None:
            targets[node_id] = target
    return targets


def _merge_into(collected: Dict[str, ParsedAttachment], attachments: Sequence[ParsedAttachment]) -> None:
    for attachment in attachments:
        collected[attachment.file_id] = merge_attachment(collected.get(attachment.file_id), attachment)


def parse(payload: Mapping[str, Any], fallback_id: str | None = None) -> ParsedConversation:
    """Turn a ChatGPT conversation document into a flat, time-ordered conversation.

    Raises:
        ExtractionError: when the document lacks an id or a node mapping.
    """
    payload = require_mapping(payload, "conversation")
    mapping = require_mapping(payload.get("mapping"), "conversation mapping")
    conv_id = payload.get("conversation_id") or payload.get("id") or fallback_id
    if not conv_id:
        raise ExtractionError("ChatGPT conversation has no id")

    raw_nodes: List[RawNode[Optional[_NodeContent]]] = []
    for node_id, node in mapping.items():
        if not isinstance(node, Mapping):
            continue
        msg = node.get("message") if isinstance(node.get("message"), Mapping) else {}
        parent = node.get("parent")
        raw_nodes.append(
            RawNode(
                id=str(node_id),
                parent_id=str(parent) if parent else None,
                created_at=_coerce_float(msg.get("create_time")),
                payload=_read_node(node),
            )
        )
    index = index_nodes(raw_nodes)

    fold_targets = _fold_targets(index)
    folded: Dict[str, List[ParsedAttachment]] = {}
    for tool_id, target_id in fold_targets.items():
        payload_content = index.nodes[tool_id].payload
        if payload_content is not None:
            folded.setdefault(target_id, []).extend(payload_content.images)

    def _visible(node: RawNode[Optional[_NodeContent]]) -> bool:
        content = node.payload
        if content is None:
            return False
        if content.is_tool_image:
            return node.id not in fold_targets
        return content.displayable

    messages: List[ParsedMessage] = []
    seen_generated: set[str] = set()
    for placement in reconcile(index, _visible):
        content = placement.node.payload
        if not placement.emitted or content is None:
            continue
        collected: Dict[str, ParsedAttachment] = {}
        generated = list(content.images) if content.is_tool_image else []
        generated.extend(folded.get(placement.node.id, []))
        for image in generated:
            if image.file_id in seen_generated:
                continue
            seen_generated.add(image.file_id)
            _merge_into(collected, [image])
        if not content.is_tool_image:
            _merge_into(collected, content.images)
        _merge_into(collected, content.attachments)

        messages.append(
            ParsedMessage(
                id=placement.node.id,
                role=Role.ASSISTANT.value if content.is_tool_image else content.role.value,
                parts=transform_parts(content.text, content.references),
                created_at=parse_timestamp(placement.node.created_at),
                parent_id=placement.parent_id,
                attachments=list(collected.values()),
            )
        )

    messages.sort(key=lambda m: m.created_at.timestamp() if m.created_at else 0.0)
    kept = {m.id for m in messages}
    current = resolve_current_node(
        index,
        payload.get("current_node") if isinstance(payload.get("current_node"), str) else None,
        kept,
        messages[-1].id if messages else None,
    )
    if len(messages) == 0 and mapping:
        logger.debug("chatgpt_no_visible_messages", conversation_id=conv_id, nodes=len(mapping))

    return ParsedConversation(
        id=str(conv_id),
        native_id=str(conv_id),
        title=str(payload.get("title") or ""),
        created_at=parse_timestamp(_coerce_float(payload.get("create_time"))),
        updated_at=parse_timestamp(_coerce_float(payload.get("update_time"))),
        messages=messages,
        current_node_id=current,
    )


def looks_like(payload: object) -> bool:
    if not isinstance(payload, dict):
        return False
    return isinstance(payload.get("mapping"), dict)


__all__ = ["CITATION_RE", "transform_parts", "strip_pointer", "parse", "looks_like"]
