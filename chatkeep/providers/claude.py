"""claude.ai web API fetcher."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from ..config import ClaudeSettings
from ..errors import ExtractionError
from ..lib.log import get_logger
from ..lib.timestamps import parse_timestamp
from ..models import ConversationListItem, ConversationPage
from ..sources.parsers import claude as parser
from ..sources.parsers.base import ParsedConversation, optional_int, require_mapping
from ..types import ConversationId, ProviderName
from .base import HttpProvider, list_items

logger = get_logger(__name__)


class ClaudeProvider(HttpProvider):
    """Conversations of one claude.ai organization.

    The organization is taken from settings or, failing that, the first
    organization the session can see.
    """

    name = ProviderName.CLAUDE

    def __init__(
        self,
        settings: ClaudeSettings,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cookies = {"sessionKey": settings.session_key} if settings.session_key else None
        super().__init__(
            settings,
            base_url=settings.base_url,
            cookies=cookies,
            timeout=timeout,
            transport=transport,
        )
        self.settings: ClaudeSettings = settings
        self._organization_id: Optional[str] = settings.organization_id
        self._org_lock = asyncio.Lock()
        self._total: Optional[int] = None

    def is_connected(self) -> bool:
        return bool(self.settings.session_key)

    async def organization_id(self) -> str:
        if self._organization_id:
            return self._organization_id
        async with self._org_lock:
            if not self._organization_id:
                organizations = list_items(await self.http.get_json("/api/organizations"), "organization list")
                for org in organizations:
                    if org.get("uuid"):
                        self._organization_id = str(org["uuid"])
                        break
                else:
                    raise ExtractionError("Claude session has no organization")
                logger.info("claude_organization_discovered", organization_id=self._organization_id)
        return self._organization_id

    async def _conversations_url(self) -> str:
        return f"/api/organizations/{await self.organization_id()}/chat_conversations"

    async def total_count(self) -> Optional[int]:
        data = await self.http.get_json(f"{await self._conversations_url()}/count_all")
        if isinstance(data, dict):
            return optional_int(data.get("count"))
        return None

    async def list_page(self, offset: int, limit: int) -> ConversationPage:
        base = await self._conversations_url()
        raw_items = list_items(
            await self.http.get_json(
                base,
                params={"limit": limit, "offset": offset, "consistency": "eventual"},
            ),
            "conversation list",
        )
        items = [
            ConversationListItem(
                id=ConversationId(str(raw["uuid"])),
                native_id=str(raw["uuid"]),
                title=str(raw.get("name") or ""),
                created_at=parse_timestamp(raw.get("created_at")),
                updated_at=parse_timestamp(raw.get("updated_at")),
            )
            for raw in raw_items
            if raw.get("uuid")
        ]
        if offset == 0 or self._total is None:
            self._total = await self.total_count()
        return ConversationPage(items=items, total=self._total, has_more=len(raw_items) == limit)

    async def fetch_detail(self, item: ConversationListItem) -> ParsedConversation:
        payload = require_mapping(
            await self.http.get_json(
                f"{await self._conversations_url()}/{item.native_id}",
                params={
                    "tree": "True",
                    "rendering_mode": "messages",
                    "render_all_tools": "true",
                    "consistency": "eventual",
                },
            ),
            "conversation",
        )
        return parser.parse(payload, fallback_id=item.native_id)


__all__ = ["ClaudeProvider"]
