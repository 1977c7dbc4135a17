"""ChatGPT backend API fetcher."""

from __future__ import annotations

from typing import Optional

import httpx

from ..config import ChatGPTSettings
from ..errors import RemoteError
from ..lib.timestamps import parse_timestamp
from ..models import ConversationListItem, ConversationPage, DownloadedFile, FileRef
from ..sources.parsers import chatgpt as parser
from ..sources.parsers.base import ParsedConversation, optional_int, require_mapping
from ..types import ConversationId, ProviderName
from .base import HttpProvider, list_items


class ChatGPTProvider(HttpProvider):
    name = ProviderName.CHATGPT

    def __init__(
        self,
        settings: ChatGPTSettings,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"oai-language": settings.language}
        if settings.access_token:
            headers["Authorization"] = f"Bearer {settings.access_token}"
        if settings.device_id:
            headers["oai-device-id"] = settings.device_id
        super().__init__(
            settings,
            base_url=settings.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.settings: ChatGPTSettings = settings

    def is_connected(self) -> bool:
        return bool(self.settings.access_token)

    async def list_page(self, offset: int, limit: int) -> ConversationPage:
        data = require_mapping(
            await self.http.get_json(
                "/backend-api/conversations",
                params={
                    "offset": offset,
                    "limit": limit,
                    "order": "updated",
                    "is_archived": "false",
                    "is_starred": "false",
                },
            ),
            "conversation list",
        )
        raw_items = list_items(data.get("items"), "conversation list items")
        items = [
            ConversationListItem(
                id=ConversationId(str(raw["id"])),
                native_id=str(raw["id"]),
                title=str(raw.get("title") or ""),
                created_at=parse_timestamp(raw.get("create_time")),
                updated_at=parse_timestamp(raw.get("update_time")),
            )
            for raw in raw_items
            if raw.get("id")
        ]
        return ConversationPage(
            items=items,
            total=optional_int(data.get("total")),
            has_more=len(raw_items) == limit,
        )

    async def fetch_detail(self, item: ConversationListItem) -> ParsedConversation:
        payload = await self.http.get_json(f"/backend-api/conversation/{item.native_id}")
        return parser.parse(payload, fallback_id=item.native_id)

    async def download_file(self, ref: FileRef) -> DownloadedFile:
        """Resolve a signed download URL for the file, then fetch its bytes."""
        data = require_mapping(
            await self.http.get_json(
                f"/backend-api/files/download/{ref.file_id}",
                params={"post_id": "", "inline": "false"},
            ),
            "file download",
        )
        url = data.get("download_url")
        if data.get("status") != "success" or not isinstance(url, str) or not url:
            raise RemoteError(f"No download URL for ChatGPT file {ref.file_id}")
        return await self.http.get_bytes(url)


__all__ = ["ChatGPTProvider"]
