"""Thin aiohttp helpers shared by the version sources and the discovery prober.

Every request carries its own ``aiohttp.ClientTimeout``. Network errors are
raised to the caller (``aiohttp.ClientError`` / ``asyncio.TimeoutError``) so each
source decides whether to log, fall back to cache, or give up;
``asyncio.CancelledError`` is never caught here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .source_config import (
    HDR_RANGE,
    HDR_USER_AGENT,
    HEAD_EXISTS_STATUSES,
    SPEED_CHUNK_BYTES,
    VENDOR_USER_AGENT,
)

logger = logging.getLogger(__name__)

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class HttpResponse:
    """Status and decoded body of one request."""

    url: str
    status: int
    content_type: str = ""
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        return "html" in (self.content_type or "").lower()

    def json(self) -> Any:
        """Decoded JSON body, or None when the body is empty or not JSON."""

        if not self.text or not self.text.strip():
            return None
        try:
            return json.loads(self.text)
        except ValueError:
            return None


def _decode(raw: bytes, charset: Optional[str]) -> str:
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def client_timeout(seconds: float) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=float(seconds))


def create_session(user_agent: str = VENDOR_USER_AGENT) -> aiohttp.ClientSession:
    """Shared client session; must be created inside a running event loop."""

    return aiohttp.ClientSession(headers={HDR_USER_AGENT: user_agent})


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 15,
    read_body: bool = True,
) -> HttpResponse:
    async with session.request(
        method,
        url,
        headers=headers or None,
        timeout=client_timeout(timeout),
        allow_redirects=True,
    ) as resp:
        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        text = ""
        if read_body and method.upper() != "HEAD":
            text = _decode(await resp.read(), resp.charset)
        return HttpResponse(url=str(resp.url), status=resp.status, content_type=content_type, text=text)


async def ping(
    session: aiohttp.ClientSession,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 5,
) -> Tuple[bool, int]:
    """Return (reachable, elapsed_ms).

    A HEAD answered with 400/405/422 still proves the endpoint exists; any other
    non-success HEAD falls back to a GET.
    """

    started = time.perf_counter()
    try:
        head = await fetch(session, url, method="HEAD", headers=headers, timeout=timeout, read_body=False)
        if head.ok or head.status in HEAD_EXISTS_STATUSES:
            return True, int((time.perf_counter() - started) * 1000)
        started = time.perf_counter()
        resp = await fetch(session, url, headers=headers, timeout=timeout, read_body=False)
        return resp.ok, int((time.perf_counter() - started) * 1000)
    except NETWORK_ERRORS as exc:
        logger.debug("Ping %s failed: %s", url, exc)
        return False, 0


async def measure_download(
    session: aiohttp.ClientSession,
    url: str,
    *,
    size_bytes: int,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30,
) -> Tuple[int, float]:
    """Range-GET up to ``size_bytes`` and return (bytes_read, elapsed_seconds).

    Network errors propagate; the caller turns them into an unavailable result.
    """

    request_headers = dict(headers or {})
    request_headers[HDR_RANGE] = f"bytes=0-{max(0, size_bytes - 1)}"
    started = time.perf_counter()
    total = 0
    async with session.get(url, headers=request_headers, timeout=client_timeout(timeout)) as resp:
        if resp.status >= 400:
            return 0, time.perf_counter() - started
        async for chunk in resp.content.iter_chunked(SPEED_CHUNK_BYTES):
            total += len(chunk)
            if total >= size_bytes:
                break
    return total, time.perf_counter() - started


def megabytes_per_second(bytes_read: int, elapsed_seconds: float) -> float:
    if bytes_read <= 0 or elapsed_seconds <= 0:
        return 0.0
    return round(bytes_read / 1024 / 1024 / elapsed_seconds, 2)


__all__ = [
    "HttpResponse",
    "NETWORK_ERRORS",
    "client_timeout",
    "create_session",
    "fetch",
    "measure_download",
    "megabytes_per_second",
    "ping",
]
