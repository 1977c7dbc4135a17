"""Perplexity threads (``/rest/thread/{slug}``).

A thread is a list of entries, each a query and its answer; there is no
node graph, so messages are chained in entry order and the tip is the last
message.
"""

from __future__ import annotations

import re
from typing import Any, List, Mapping, Optional, Sequence

from ...errors import ExtractionError
from ...lib.hashing import hash_text_short, source_part_id
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
    require_list,
    require_mapping,
)

# optional space, a run of [n] markers (not markdown links), optional punctuation
CITATION_GROUP_RE = re.compile(r"( ?)((?:\[\d+\](?!\())+)([.,!?])?")
CITATION_RE = re.compile(r"\[(\d+)\]")
ATTACHMENT_ID_RE = re.compile(r"/([^/]+)/[^/?]+\.(jpg|jpeg|png|gif|webp)", re.IGNORECASE)


def transform_parts(markdown: str, web_results: Optional[Sequence[Mapping[str, Any]]] = None) -> List[MessagePart]:
    """Split ``[n]`` citation groups out of an answer into source parts.

    ``[n]`` is a 1-based index into ``web_results``. The single space before
    a group belongs to the marker; punctuation right after a group stays
    with the preceding text. Out-of-range indices and results without a URL
    are dropped.
    """
    if not web_results:
        return [TextPart(text=markdown)]

    parts: List[MessagePart] = []
    last = 0
    ordinal = 0
    for match in CITATION_GROUP_RE.finditer(markdown):
        append_text(parts, markdown[last:match.start()] + (match.group(3) or ""))
        for number in CITATION_RE.findall(match.group(2)):
            position = int(number) - 1
            if position < 0 or position >= len(web_results):
                continue
            result = web_results[position]
            url = result.get("url") if isinstance(result, Mapping) else None
            if not isinstance(url, str) or not url:
                continue
            meta = result.get("meta_data") if isinstance(result.get("meta_data"), Mapping) else {}
            parts.append(
                SourceUrlPart(
                    source_id=source_part_id(url, ordinal),
                    url=url,
                    title=result.get("name") or None,
                    attribution=meta.get("citation_domain_name") or None,
                    snippet=result.get("snippet") or None,
                )
            )
            ordinal += 1
        last = match.end()
    append_text(parts, markdown[last:])
    return finish_parts(parts)


def thread_id_from_slug(slug: str) -> str:
    """``what-is-this-cat-7zu8oWH.T1eHHROfJKh1jg`` -> ``7zu8oWH.T1eHHROfJKh1jg``."""
    _, dash, tail = slug.rpartition("-")
    return tail if dash and tail else slug


def attachment_file_id(url: str) -> str:
    match = ATTACHMENT_ID_RE.search(url)
    if match:
        return match.group(1)
    return hash_text_short(url)


def _block(blocks: Sequence[Any], usage: str) -> Mapping[str, Any]:
    for block in blocks:
        if isinstance(block, Mapping) and block.get("intended_usage") == usage:
            return block
    return {}


def parse(payload: Mapping[str, Any], slug: str, title: str | None = None) -> ParsedConversation:
    """Turn a Perplexity thread into query/answer messages chained in order.

    Raises:
        ExtractionError: when the thread did not load or has no entry list.
    """
    payload = require_mapping(payload, "thread")
    status = payload.get("status")
    if status is not None and status != "success":
        raise ExtractionError(f"Perplexity thread {slug} returned status {status!r}")
    entries = require_list(payload.get("entries"), "thread entries")
    conv_id = thread_id_from_slug(slug)

    messages: List[ParsedMessage] = []
    parent: Optional[str] = None
    for position, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            continue
        entry_id = str(entry.get("uuid") or f"{conv_id}-{position}")
        created = parse_timestamp(entry.get("updated_datetime") or entry.get("entry_updated_datetime"))

        attachments = []
        raw_attachments = entry.get("attachments")
        if isinstance(raw_attachments, list):
            for url in raw_attachments:
                if isinstance(url, str) and url:
                    attachments.append(
                        ParsedAttachment(
                            file_id=attachment_file_id(url),
                            kind=AttachmentKind.IMAGE,
                            mime_type="image/jpeg",
                            original_url=url,
                        )
                    )

        query = ParsedMessage(
            id=f"{entry_id}-query",
            role=Role.USER.value,
            parts=[TextPart(text=str(entry.get("query_str") or ""))],
            created_at=created,
            parent_id=parent,
            attachments=attachments,
        )
        messages.append(query)
        parent = query.id

        blocks = entry.get("blocks") if isinstance(entry.get("blocks"), list) else []
        answer_block = _block(blocks, "ask_text").get("markdown_block")
        if not isinstance(answer_block, Mapping):
            continue
        web_block = _block(blocks, "web_results").get("web_result_block")
        web_results = web_block.get("web_results") if isinstance(web_block, Mapping) else None
        answer = ParsedMessage(
            id=f"{entry_id}-answer",
            role=Role.ASSISTANT.value,
            parts=transform_parts(
                str(answer_block.get("answer") or ""),
                web_results if isinstance(web_results, list) else None,
            ),
            created_at=created,
            parent_id=parent,
        )
        messages.append(answer)
        parent = answer.id

    first = entries[0] if entries and isinstance(entries[0], Mapping) else {}
    thread_title = title or (first.get("thread_title") if isinstance(first, Mapping) else None)
    return ParsedConversation(
        id=conv_id,
        native_id=slug,
        title=str(thread_title or ""),
        created_at=messages[0].created_at if messages else None,
        updated_at=messages[-1].created_at if messages else None,
        messages=messages,
        current_node_id=messages[-1].id if messages else None,
    )


__all__ = ["transform_parts", "thread_id_from_slug", "attachment_file_id", "parse"]
