"""Perplexity REST fetcher."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

import httpx

from ..config import PerplexitySettings
from ..lib.json import dumps
from ..lib.log import get_logger
from ..lib.timestamps import parse_timestamp
from ..models import ConversationListItem, ConversationPage
from ..sources.parsers import perplexity as parser
from ..sources.parsers.base import ParsedConversation, optional_int
from ..types import ConversationId, ProviderName
from .base import HttpProvider, list_items

logger = get_logger(__name__)

DETAIL_PAGE_SIZE = 10


def _entry_key(entry: Any) -> str:
    if isinstance(entry, Mapping) and entry.get("uuid"):
        return str(entry["uuid"])
    return dumps(entry)


class PerplexityProvider(HttpProvider):
    """Perplexity threads, addressed by slug.

    The stored conversation id is the thread id at the end of the slug; the
    slug itself is kept as ``native_id`` for fetching.
    """

    name = ProviderName.PERPLEXITY

    def __init__(
        self,
        settings: PerplexitySettings,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {
            "Accept": "*/*",
            "x-app-apiclient": "default",
            "x-app-apiversion": settings.api_version,
        }
        if settings.cookie:
            headers["Cookie"] = settings.cookie
        super().__init__(
            settings,
            base_url=settings.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.settings: PerplexitySettings = settings

    def is_connected(self) -> bool:
        return bool(self.settings.cookie)

    def _params(self) -> dict[str, str]:
        return {"version": self.settings.api_version, "source": "default"}

    async def list_page(self, offset: int, limit: int) -> ConversationPage:
        raw_items = list_items(
            await self.http.post_json(
                "/rest/thread/list_ask_threads",
                {"limit": limit, "ascending": False, "offset": offset, "search_term": ""},
                params=self._params(),
            ),
            "thread list",
        )
        items = []
        for raw in raw_items:
            slug = raw.get("slug")
            if not isinstance(slug, str) or not slug:
                continue
            last_query = parse_timestamp(raw.get("last_query_datetime"))
            items.append(
                ConversationListItem(
                    id=ConversationId(parser.thread_id_from_slug(slug)),
                    native_id=slug,
                    title=str(raw.get("title") or ""),
                    created_at=last_query,
                    updated_at=last_query,
                )
            )
        total = optional_int(raw_items[0].get("total_threads")) if raw_items else None
        return ConversationPage(items=items, total=total, has_more=len(raw_items) == limit)

    async def _thread_page(self, slug: str, offset: int) -> Any:
        return await self.http.get_json(
            f"/rest/thread/{slug}",
            params={
                "with_parent_info": "true",
                "with_schematized_response": "true",
                **self._params(),
                "limit": DETAIL_PAGE_SIZE,
                "offset": offset,
                "from_first": "true",
            },
        )

    async def fetch_detail(self, item: ConversationListItem) -> ParsedConversation:
        """Fetch every entry of a thread, DETAIL_PAGE_SIZE entries per request."""
        slug = item.native_id
        payload = await self._thread_page(slug, 0)
        entries = payload.get("entries") if isinstance(payload, Mapping) else None
        if isinstance(entries, list):
            entries = list(entries)
            seen = {_entry_key(entry) for entry in entries}
            batch: Any = entries
            while len(batch) == DETAIL_PAGE_SIZE:
                more = await self._thread_page(slug, len(entries))
                batch = more.get("entries") if isinstance(more, Mapping) else None
                if not isinstance(batch, list):
                    break
                fresh = [entry for entry in batch if _entry_key(entry) not in seen]
                if not fresh and batch:
                    logger.warning("perplexity_thread_paging_stalled", slug=slug, entries=len(entries))
                    break
                seen.update(_entry_key(entry) for entry in fresh)
                entries.extend(fresh)
            payload = {**payload, "entries": entries}
        return parser.parse(payload, slug, title=item.title or None)


__all__ = ["PerplexityProvider"]
