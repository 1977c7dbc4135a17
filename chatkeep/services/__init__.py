"""Services layered on top of the store: attachment caching."""

from .attachments import AttachmentPrefetcher, AttachmentResolver

__all__ = ["AttachmentPrefetcher", "AttachmentResolver"]
