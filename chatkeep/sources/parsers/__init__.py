"""Per-provider citation transformers and conversation extractors."""

from .base import ParsedAttachment, ParsedConversation, ParsedMessage

__all__ = ["ParsedAttachment", "ParsedConversation", "ParsedMessage"]
