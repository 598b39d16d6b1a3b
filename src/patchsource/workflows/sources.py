"""Source abstraction shared by the vendor API client and every mirror.

Each source owns its caches and exactly one ``asyncio.Lock`` guarding its remote
fetch path; callers must re-check the cache right after acquiring it. Public
methods never raise for missing data or network trouble; they return an empty
list or None instead.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import aiohttp

from ..core.keys import (
    K_ARTIFACT_URL,
    K_FROM,
    K_FROM_VERSION,
    K_HEAD_URL,
    K_SIGNATURE_URL,
    K_TO,
    K_VERSION,
)
from . import http_utils
from .http_utils import HttpResponse
from .source_utils import isoformat_utc, utc_now

logger = logging.getLogger(__name__)


class SourceType(str, Enum):
    OFFICIAL = "official"
    MIRROR = "mirror"


class VersionKey(NamedTuple):
    os: str
    arch: str
    branch: str


class PatchKey(NamedTuple):
    os: str
    arch: str
    branch: str
    from_build: int


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass
class VersionEntry:
    """One downloadable artifact; ``from_version == 0`` marks a full build."""

    version: int
    from_version: int = 0
    artifact_url: str = ""
    head_url: Optional[str] = None
    signature_url: Optional[str] = None

    @property
    def is_full_build(self) -> bool:
        return self.from_version == 0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_VERSION: self.version,
            K_FROM_VERSION: self.from_version,
            K_ARTIFACT_URL: self.artifact_url,
        }
        if self.head_url:
            payload[K_HEAD_URL] = self.head_url
        if self.signature_url:
            payload[K_SIGNATURE_URL] = self.signature_url
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["VersionEntry"]:
        try:
            version = int(data[K_VERSION])
            from_version = int(data.get(K_FROM_VERSION) or 0)
        except (KeyError, TypeError, ValueError):
            return None
        url = data.get(K_ARTIFACT_URL)
        if not isinstance(url, str) or not url:
            return None
        return cls(
            version=version,
            from_version=from_version,
            artifact_url=url,
            head_url=_opt_str(data.get(K_HEAD_URL)),
            signature_url=_opt_str(data.get(K_SIGNATURE_URL)),
        )


@dataclass
class PatchStep:
    """Directed edge ``from_version -> to_version`` in a branch's patch graph."""

    from_version: int
    to_version: int
    artifact_url: str
    head_url: Optional[str] = None
    signature_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_FROM: self.from_version,
            K_TO: self.to_version,
            K_ARTIFACT_URL: self.artifact_url,
        }
        if self.head_url:
            payload[K_HEAD_URL] = self.head_url
        if self.signature_url:
            payload[K_SIGNATURE_URL] = self.signature_url
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PatchStep"]:
        try:
            from_version = int(data[K_FROM])
            to_version = int(data[K_TO])
        except (KeyError, TypeError, ValueError):
            return None
        url = data.get(K_ARTIFACT_URL)
        if not isinstance(url, str) or not url:
            return None
        return cls(
            from_version=from_version,
            to_version=to_version,
            artifact_url=url,
            head_url=_opt_str(data.get(K_HEAD_URL)),
            signature_url=_opt_str(data.get(K_SIGNATURE_URL)),
        )

    def as_entry(self) -> VersionEntry:
        return VersionEntry(
            version=self.to_version,
            from_version=self.from_version,
            artifact_url=self.artifact_url,
            head_url=self.head_url,
            signature_url=self.signature_url,
        )


@dataclass
class SpeedTestResult:
    source_id: str
    ping_ms: int = 0
    speed_mbps: float = 0.0
    is_available: bool = False
    tested_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "ping_ms": self.ping_ms,
            "speed_mbps": self.speed_mbps,
            "is_available": self.is_available,
            "tested_at": isoformat_utc(self.tested_at),
        }


@dataclass
class SourceLayoutInfo:
    full_build_location: str
    patch_location: str
    cache_policy: str


class VersionSource(ABC):
    """Contract implemented by the vendor source and every mirror."""

    def __init__(
        self,
        source_id: str,
        priority: int,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        speed_ttl_minutes: int = 60,
    ) -> None:
        self.source_id = source_id
        self.priority = priority
        self._session = session
        self._fetch_lock = asyncio.Lock()
        self._speed_lock = asyncio.Lock()
        self._speed_result: Optional[SpeedTestResult] = None
        self._speed_ttl = timedelta(minutes=speed_ttl_minutes)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_id={self.source_id!r}, priority={self.priority})"

    @property
    @abstractmethod
    def source_type(self) -> SourceType:
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Cheap, local-only availability check (no network)."""

    @abstractmethod
    def is_diff_based_branch(self, branch: str) -> bool:
        ...

    @abstractmethod
    async def get_versions(self, os_name: str, arch: str, branch: str) -> List[VersionEntry]:
        """Entries sorted descending by version; empty on any failure."""

    @abstractmethod
    async def get_download_url(self, os_name: str, arch: str, branch: str, version: int) -> Optional[str]:
        ...

    @abstractmethod
    async def get_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        ...

    @abstractmethod
    async def get_patch_chain(self, os_name: str, arch: str, branch: str) -> List[PatchStep]:
        ...

    @abstractmethod
    def layout_info(self) -> SourceLayoutInfo:
        ...

    @abstractmethod
    async def _run_speed_test(self) -> SpeedTestResult:
        ...

    async def preload(self) -> None:
        """Best-effort warm-up; the default does nothing."""

    def cached_speed(self) -> Optional[SpeedTestResult]:
        result = self._speed_result
        if result is None:
            return None
        if utc_now() - result.tested_at >= self._speed_ttl:
            return None
        return result

    async def test_speed(self, force_refresh: bool = False) -> SpeedTestResult:
        """Measure ping and throughput; never raises, failures yield an unavailable result."""

        if not force_refresh:
            cached = self.cached_speed()
            if cached is not None:
                return cached
        async with self._speed_lock:
            if not force_refresh:
                cached = self.cached_speed()
                if cached is not None:
                    return cached
            try:
                result = await self._run_speed_test()
            except Exception as exc:  # speed tests must never propagate
                logger.warning("Speed test for %s failed: %s", self.source_id, exc)
                result = SpeedTestResult(source_id=self.source_id, is_available=False)
            self._speed_result = result
            return result

    async def _fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 15,
    ) -> HttpResponse:
        if self._session is None:
            raise aiohttp.ClientConnectionError(f"{self.source_id}: no HTTP session configured")
        return await http_utils.fetch(self._session, url, method=method, headers=headers, timeout=timeout)

    async def _ping(self, url: str, *, headers: Optional[Dict[str, str]] = None, timeout: float = 5) -> Tuple[bool, int]:
        if self._session is None:
            return False, 0
        return await http_utils.ping(self._session, url, headers=headers, timeout=timeout)

    async def _measure_download(
        self,
        url: str,
        *,
        size_bytes: int,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30,
    ) -> Tuple[int, float]:
        if self._session is None:
            raise aiohttp.ClientConnectionError(f"{self.source_id}: no HTTP session configured")
        return await http_utils.measure_download(
            self._session, url, size_bytes=size_bytes, headers=headers, timeout=timeout
        )


__all__ = [
    "PatchKey",
    "PatchStep",
    "SourceLayoutInfo",
    "SourceType",
    "SpeedTestResult",
    "VersionEntry",
    "VersionKey",
    "VersionSource",
]
