# backend/letterfacts/services/connectors/web_page.py
from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

from .base import ConnectorError
from ...core.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; LetterFactsBot/1.0)",
    "Accept": "text/html,application/xhtml+xml",
}

BLOCKED_STATUSES = (401, 403)


class FetchError(ConnectorError):
    pass


class UnsafeUrlError(FetchError):
    pass


class ResponseTooLargeError(FetchError):
    pass


class FetchTimeoutError(FetchError):
    pass


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def blocked(self) -> bool:
        return self.status in BLOCKED_STATUSES


def validate_fetch_url(url: str) -> None:
    """
    Reject obviously unsafe targets: non-http(s) schemes, missing hosts,
    localhost and literal private/loopback/link-local addresses.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise UnsafeUrlError(f"Unsupported URL scheme: {parsed.scheme or '(none)'}")
    host = (parsed.hostname or "").lower()
    if not host:
        raise UnsafeUrlError("URL has no host")
    if host == "localhost" or host.endswith(".localhost"):
        raise UnsafeUrlError("Refusing to fetch localhost")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return
    if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast:
        raise UnsafeUrlError(f"Refusing to fetch private address {host}")


async def _validate_hop(request: httpx.Request) -> None:
    # Redirect targets get the same host checks as the original URL
    validate_fetch_url(str(request.url))


class WebPageFetcher:
    """
    Fetch collaborator for raw pages.

    Enforces a total timeout and a body size cap while streaming. Non-2xx
    responses are returned (not raised) so callers can tell a blocked page
    from a transport failure.
    """

    name = "web_page"

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self.max_bytes = max_bytes if max_bytes is not None else settings.FETCH_MAX_BYTES
        self._transport = transport

    async def fetch(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
    ) -> FetchResponse:
        validate_fetch_url(url)
        timeout = timeout if timeout is not None else self.timeout
        max_bytes = max_bytes if max_bytes is not None else self.max_bytes

        try:
            return await asyncio.wait_for(
                self._get(url, {**DEFAULT_HEADERS, **(headers or {})}, timeout, max_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(f"Timed out after {timeout}s fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Request failed for {url}: {exc}") from exc

    async def _get(
        self,
        url: str,
        headers: Dict[str, str],
        timeout: float,
        max_bytes: int,
    ) -> FetchResponse:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=self._transport,
            event_hooks={"request": [_validate_hop]},
        ) as client:
            async with client.stream("GET", url, headers=headers) as resp:
                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise ResponseTooLargeError(f"{url} declares {declared} bytes")

                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.aiter_bytes():
                    total += len(chunk)
                    if total > max_bytes:
                        raise ResponseTooLargeError(f"{url} exceeded {max_bytes} bytes")
                    chunks.append(chunk)

                body = b"".join(chunks)
                try:
                    text = body.decode(resp.charset_encoding or "utf-8", errors="replace")
                except LookupError:
                    text = body.decode("utf-8", errors="replace")
                logger.debug(
                    "Fetched %s (%d, %d bytes)",
                    url,
                    resp.status_code,
                    total,
                    extra={"connector": self.name},
                )
                return FetchResponse(url=str(resp.url), status=resp.status_code, text=text)
