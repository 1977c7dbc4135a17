"""Shared plumbing for the httpx-backed provider fetchers."""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Mapping, Optional

import httpx

from ..config import ProviderSettings
from ..errors import ExtractionError
from ..models import DownloadedFile, FileRef
from ..types import ProviderName
from .http import HttpClient


class HttpProvider:
    """Owns the HTTP client and settings of one provider.

    Subclasses implement ``list_page``, ``fetch_detail`` and, where the
    attachment URL is not directly downloadable, ``download_file``.
    """

    name: ClassVar[ProviderName]

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.http = HttpClient(
            base_url,
            headers={"User-Agent": settings.user_agent, "Accept": "application/json", **(headers or {})},
            cookies=cookies,
            timeout=timeout,
            transport=transport,
        )

    @property
    def page_size(self) -> int:
        return self.settings.page_size

    def is_connected(self) -> bool:
        raise NotImplementedError

    async def download_file(self, ref: FileRef) -> DownloadedFile:
        if not ref.url:
            raise ExtractionError(f"{self.name} file {ref.file_id} has no download URL")
        return await self.http.get_bytes(ref.url)

    async def aclose(self) -> None:
        await self.http.aclose()


def list_items(raw_items: Any, what: str) -> List[Mapping[str, Any]]:
    if not isinstance(raw_items, list):
        raise ExtractionError(f"{what} is not a list")
    return [item for item in raw_items if isinstance(item, Mapping)]


__all__ = ["HttpProvider", "list_items"]
