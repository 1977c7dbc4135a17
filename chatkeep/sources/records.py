"""Build canonical store records from a parsed conversation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..branching import build_tree, sibling_positions
from ..models import Attachment, Conversation, ConversationListItem, Message, make_attachment_id
from ..types import ConversationId, MessageId, ProviderName
from .parsers.base import ParsedConversation


@dataclass
class ConversationRecords:
    conversation: Conversation
    messages: List[Message]
    attachments: List[Attachment]


def build_records(
    provider: ProviderName,
    parsed: ParsedConversation,
    *,
    listing: Optional[ConversationListItem] = None,
    synced_at: Optional[datetime] = None,
) -> ConversationRecords:
    """Assign order, sibling lists and deterministic attachment ids.

    Sibling lists come from the reconciled parent links, never from the
    provider's raw child lists. List metadata (title, timestamps) wins over
    the document's when given, since incremental sync compares against it;
    the listing ids are the ones failures are recorded under.
    """
    conv_id = ConversationId(listing.id if listing else parsed.id)
    tree = build_tree(parsed.messages)
    positions = sibling_positions(tree)

    messages: List[Message] = []
    attachments: List[Attachment] = []
    for order_index, parsed_message in enumerate(parsed.messages):
        siblings, _ = positions[parsed_message.id]
        message_id = MessageId(parsed_message.id)
        messages.append(
            Message(
                id=message_id,
                conversation_id=conv_id,
                role=parsed_message.role,
                parts=parsed_message.parts,
                created_at=parsed_message.created_at,
                order_index=order_index,
                parent_id=tree.parent_of(parsed_message.id),
                sibling_ids=[MessageId(sid) for sid in siblings],
            )
        )
        for parsed_attachment in parsed_message.attachments:
            attachments.append(
                Attachment(
                    id=make_attachment_id(message_id, parsed_attachment.file_id),
                    message_id=message_id,
                    conversation_id=conv_id,
                    type=parsed_attachment.kind,
                    file_id=parsed_attachment.file_id,
                    original_url=parsed_attachment.original_url,
                    filename=parsed_attachment.filename,
                    mime_type=parsed_attachment.mime_type,
                    size=parsed_attachment.size,
                    width=parsed_attachment.width,
                    height=parsed_attachment.height,
                )
            )

    title = (listing.title if listing and listing.title else parsed.title) or "Untitled"
    conversation = Conversation(
        id=conv_id,
        native_id=listing.native_id if listing else parsed.native_id,
        provider=provider,
        title=title,
        created_at=(listing.created_at if listing and listing.created_at else parsed.created_at),
        updated_at=(listing.updated_at if listing and listing.updated_at else parsed.updated_at),
        synced_at=synced_at,
        message_count=len(messages),
        current_node_id=MessageId(parsed.current_node_id) if parsed.current_node_id else None,
    )
    return ConversationRecords(conversation=conversation, messages=messages, attachments=attachments)


__all__ = ["ConversationRecords", "build_records"]
