"""httpx transport shared by the provider fetchers."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import ProviderAuthError, RemoteError
from ..lib.json import JSONDecodeError, dumps, loads
from ..models import DownloadedFile

AUTH_STATUS_CODES = (401, 403)


def _error_message(resp: httpx.Response) -> str:
    message = f"HTTP {resp.status_code}"
    try:
        payload = loads(resp.content)
    except JSONDecodeError:
        text = resp.text.strip()
        return f"{message}: {text[:200]}" if text else message
    if isinstance(payload, Mapping):
        detail = payload.get("detail") or payload.get("error")
        if isinstance(detail, Mapping):
            detail = detail.get("message")
        if isinstance(detail, str) and detail.strip():
            return f"{message}: {detail.strip()}"
    return message


def raise_for_status(resp: httpx.Response) -> None:
    """Raise ProviderAuthError for 401/403 and RemoteError for any other non-2xx."""
    if resp.status_code < 400:
        return
    message = _error_message(resp)
    if resp.status_code in AUTH_STATUS_CODES:
        raise ProviderAuthError(message, status_code=resp.status_code)
    raise RemoteError(message, status_code=resp.status_code)


class HttpClient:
    """Thin wrapper over ``httpx.AsyncClient`` mapping failures onto chatkeep errors."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        cookies: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            cookies=dict(cookies or {}),
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteError(f"Timed out requesting {url}") from exc
        except httpx.HTTPError as exc:
            raise RemoteError(f"Request to {url} failed: {exc}") from exc
        raise_for_status(resp)
        return resp

    async def get_json(self, url: str, *, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        resp = await self.request("GET", url, params=params, headers=headers)
        return self._decode(resp, url)

    async def post_json(
        self,
        url: str,
        body: Any,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        merged = {"content-type": "application/json", **(headers or {})}
        resp = await self.request("POST", url, params=params, headers=merged, content=dumps(body).encode("utf-8"))
        return self._decode(resp, url)

    async def get_bytes(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> DownloadedFile:
        resp = await self.request("GET", url, headers=headers)
        mime_type = resp.headers.get("content-type", "application/octet-stream").split(";", 1)[0].strip()
        return DownloadedFile(data=resp.content, mime_type=mime_type or "application/octet-stream")

    @staticmethod
    def _decode(resp: httpx.Response, url: str) -> Any:
        try:
            return loads(resp.content)
        except JSONDecodeError as exc:
            raise RemoteError(f"Response from {url} is not valid JSON") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["HttpClient", "raise_for_status", "AUTH_STATUS_CODES"]
