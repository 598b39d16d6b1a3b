"""Authenticated client for the official patches API.

``GET {base}/patches/{os}/{arch}/{branch}/{fromBuild}`` returns
``{"steps": [{"from", "to", "pwr", "pwrHead", "sig"}, ...]}``:

- ``fromBuild=0``: the newest full build as a single step
- ``fromBuild=1``: the whole incremental chain for an existing install

Responses are cached per ``PatchKey`` for 15 minutes. Each request carries a
bearer token; a 401/403 comes back as ``FetchOutcome.NEEDS_REFRESH`` and the
retry wrapper refreshes the token, wipes the cache (the returned URLs carry
expiring signatures) and tries once more.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

import aiohttp

from ..core.keys import K_FROM, K_PWR, K_PWR_HEAD, K_SIG, K_STEPS, K_TO
from .http_utils import NETWORK_ERRORS, megabytes_per_second
from .snapshots import update_patch_snapshot
from .source_config import (
    BRANCH_RELEASE,
    CACHE_DIR_PARTS,
    DEFAULT_PING_TIMEOUT,
    DEFAULT_VENDOR_API_BASE,
    HDR_AUTHORIZATION,
    HDR_USER_AGENT,
    PATCHES_SNAPSHOT_NAME,
    PROFILES_DIR_NAME,
    SPEED_DOWNLOAD_TIMEOUT,
    SPEED_TEST_SIZE_BYTES,
    VENDOR_AUTH_EXPIRED_STATUSES,
    VENDOR_CACHE_TTL_MINUTES,
    VENDOR_MAX_ATTEMPTS,
    VENDOR_PATCHES_SEGMENT,
    VENDOR_PRIORITY,
    VENDOR_REQUEST_TIMEOUT,
    VENDOR_SESSION_FILE,
    VENDOR_SOURCE_ID,
    VENDOR_SPEED_TTL_MINUTES,
    VENDOR_USER_AGENT,
)
from .source_utils import host_arch, host_os, sanitize_file_name, utc_now
from .sources import (
    PatchKey,
    PatchStep,
    SourceLayoutInfo,
    SourceType,
    SpeedTestResult,
    VersionEntry,
    VersionSource,
)

logger = logging.getLogger(__name__)


class AuthSession(Protocol):
    access_token: str


class AuthProvider(Protocol):
    """Login collaborator; only its session and refresh operations are used."""

    @property
    def current_session(self) -> Optional[AuthSession]:
        ...

    async def get_valid_official_session(self) -> Optional[AuthSession]:
        ...

    async def force_refresh(self) -> bool:
        ...


class Profile(Protocol):
    name: str
    is_official: bool


class ProfileProvider(Protocol):
    @property
    def profiles(self) -> Iterable[Profile]:
        ...


class FetchOutcome(Enum):
    SUCCESS = "success"
    NEEDS_REFRESH = "needs_refresh"
    FAILED = "failed"


@dataclass
class FetchAttempt:
    outcome: FetchOutcome
    steps: List[PatchStep] = field(default_factory=list)
    status: Optional[int] = None


def parse_steps(payload: Any) -> List[PatchStep]:
    """Decode the ``steps`` array of a patches response, skipping malformed items."""

    if not isinstance(payload, dict):
        return []
    raw_steps = payload.get(K_STEPS)
    if not isinstance(raw_steps, list):
        return []
    steps: List[PatchStep] = []
    for item in raw_steps:
        if not isinstance(item, dict):
            continue
        url = item.get(K_PWR)
        if not isinstance(url, str) or not url:
            continue
        try:
            from_version = int(item.get(K_FROM, 0))
            to_version = int(item[K_TO])
        except (KeyError, TypeError, ValueError):
            continue
        head = item.get(K_PWR_HEAD)
        sig = item.get(K_SIG)
        steps.append(
            PatchStep(
                from_version=from_version,
                to_version=to_version,
                artifact_url=url,
                head_url=head if isinstance(head, str) and head else None,
                signature_url=sig if isinstance(sig, str) and sig else None,
            )
        )
    return steps


class VendorSource(VersionSource):
    def __init__(
        self,
        app_dir: Path,
        auth: Optional[AuthProvider],
        profiles: Optional[ProfileProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        api_base: str = DEFAULT_VENDOR_API_BASE,
        cache_ttl_minutes: int = VENDOR_CACHE_TTL_MINUTES,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> None:
        super().__init__(VENDOR_SOURCE_ID, VENDOR_PRIORITY, session, speed_ttl_minutes=VENDOR_SPEED_TTL_MINUTES)
        self._app_dir = Path(app_dir)
        self._auth = auth
        self._profiles = profiles
        self._api_base = api_base.rstrip("/")
        self._cache_ttl = timedelta(minutes=cache_ttl_minutes)
        self._cache: Dict[PatchKey, Tuple[datetime, List[PatchStep]]] = {}
        self._background: Set[asyncio.Task] = set()
        self._os = os_name or host_os()
        self._arch = arch or host_arch()

    @property
    def source_type(self) -> SourceType:
        return SourceType.OFFICIAL

    @property
    def patches_snapshot_path(self) -> Path:
        return self._app_dir.joinpath(*CACHE_DIR_PARTS, PATCHES_SNAPSHOT_NAME)

    @property
    def is_available(self) -> bool:
        if self._auth is not None and self._auth.current_session is not None:
            return True
        if self._profiles is None:
            return False
        for profile in self._profiles.profiles or []:
            if not getattr(profile, "is_official", False):
                continue
            session_file = (
                self._app_dir / PROFILES_DIR_NAME / sanitize_file_name(getattr(profile, "name", "")) / VENDOR_SESSION_FILE
            )
            if session_file.exists():
                return True
        return False

    def is_diff_based_branch(self, branch: str) -> bool:
        return False

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Official source cache cleared")

    def patches_url(self, os_name: str, arch: str, branch: str, from_build: int) -> str:
        return f"{self._api_base}/{VENDOR_PATCHES_SEGMENT}/{os_name}/{arch}/{branch}/{from_build}"

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {HDR_AUTHORIZATION: f"Bearer {token}", HDR_USER_AGENT: VENDOR_USER_AGENT}

    def _cached(self, key: PatchKey) -> Optional[List[PatchStep]]:
        hit = self._cache.get(key)
        if hit is None:
            return None
        fetched_at, steps = hit
        if utc_now() - fetched_at >= self._cache_ttl:
            return None
        return steps

    # ------------------------------------------------------------------
    # Fetch path
    # ------------------------------------------------------------------

    async def _fetch_steps(self, key: PatchKey, token: str) -> FetchAttempt:
        cached = self._cached(key)
        if cached is not None:
            return FetchAttempt(FetchOutcome.SUCCESS, list(cached))
        async with self._fetch_lock:
            cached = self._cached(key)
            if cached is not None:
                return FetchAttempt(FetchOutcome.SUCCESS, list(cached))
            url = self.patches_url(key.os, key.arch, key.branch, key.from_build)
            try:
                resp = await self._fetch(url, headers=self._auth_headers(token), timeout=VENDOR_REQUEST_TIMEOUT)
            except NETWORK_ERRORS as exc:
                logger.warning("Patches API request failed for %s: %s", url, exc)
                return FetchAttempt(FetchOutcome.FAILED)
            if resp.status in VENDOR_AUTH_EXPIRED_STATUSES:
                return FetchAttempt(FetchOutcome.NEEDS_REFRESH, status=resp.status)
            if not resp.ok:
                logger.warning("Patches API returned %s: %s", resp.status, resp.text[:200])
                return FetchAttempt(FetchOutcome.FAILED, status=resp.status)
            payload = resp.json()
            if not isinstance(payload, dict):
                logger.warning("Patches API returned a non-object body for %s: %s", url, resp.text[:200])
                return FetchAttempt(FetchOutcome.FAILED, status=resp.status)
            steps = parse_steps(payload)
            self._cache[key] = (utc_now(), steps)
            logger.info("Patches API: %d step(s) for %s/%s/%s from %s", len(steps), *key)
            return FetchAttempt(FetchOutcome.SUCCESS, list(steps), status=resp.status)

    async def _get_steps(self, os_name: str, arch: str, branch: str, from_build: int) -> List[PatchStep]:
        """Retry wrapper: at most ``VENDOR_MAX_ATTEMPTS`` tries with one refresh in between."""

        if self._auth is None:
            return []
        key = PatchKey(os_name, arch, branch, from_build)
        cached = self._cached(key)
        if cached is not None:
            return list(cached)
        for attempt in range(VENDOR_MAX_ATTEMPTS):
            session = await self._auth.get_valid_official_session()
            token = getattr(session, "access_token", None) if session is not None else None
            if not token:
                logger.debug("No valid official session available")
                return []
            result = await self._fetch_steps(key, token)
            if result.outcome is FetchOutcome.SUCCESS:
                return result.steps
            if result.outcome is FetchOutcome.FAILED:
                return []
            if attempt >= VENDOR_MAX_ATTEMPTS - 1:
                logger.error("Official auth failed after %d attempts, giving up", VENDOR_MAX_ATTEMPTS)
                return []
            logger.warning(
                "Official auth error (%s), forcing token refresh (attempt %d/%d)",
                result.status,
                attempt + 1,
                VENDOR_MAX_ATTEMPTS,
            )
            if not await self._auth.force_refresh():
                logger.warning("Token refresh reported failure; retrying with the current session")
            self.clear_cache()
        return []

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get_versions(self, os_name: str, arch: str, branch: str) -> List[VersionEntry]:
        steps = await self._get_steps(os_name, arch, branch, 0)
        if not steps:
            return []
        newest = max(steps, key=lambda s: s.to_version)
        self._spawn(self._cache_full_chain(os_name, arch, branch))
        return [
            VersionEntry(
                version=newest.to_version,
                from_version=0,
                artifact_url=newest.artifact_url,
                head_url=newest.head_url,
                signature_url=newest.signature_url,
            )
        ]

    async def get_download_url(self, os_name: str, arch: str, branch: str, version: int) -> Optional[str]:
        for entry in await self.get_versions(os_name, arch, branch):
            if entry.version == version:
                return entry.artifact_url
        return None

    async def get_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        for step in await self._get_steps(os_name, arch, branch, from_version):
            if step.from_version == from_version and step.to_version == to_version:
                return step.artifact_url
        return None

    async def get_patch_chain(self, os_name: str, arch: str, branch: str) -> List[PatchStep]:
        steps = await self._get_steps(os_name, arch, branch, 1)
        return sorted(steps, key=lambda s: (s.to_version, s.from_version))

    async def preload(self) -> None:
        if self.is_available:
            await self.get_versions(self._os, self._arch, BRANCH_RELEASE)

    def layout_info(self) -> SourceLayoutInfo:
        return SourceLayoutInfo(
            full_build_location=f"{self._api_base}/{VENDOR_PATCHES_SEGMENT}/{{os}}/{{arch}}/{{branch}}/0",
            patch_location=f"{self._api_base}/{VENDOR_PATCHES_SEGMENT}/{{os}}/{{arch}}/{{branch}}/{{fromBuild}}",
            cache_policy=(
                f"in-memory TTL {int(self._cache_ttl.total_seconds() // 60)}m, cleared on token refresh; "
                f"chain snapshot {self.patches_snapshot_path}"
            ),
        )

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background patch-chain caching failed: %s", exc)

    async def wait_for_background(self) -> None:
        """Await pending fire-and-forget work (tests and orderly shutdown)."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _cache_full_chain(self, os_name: str, arch: str, branch: str) -> None:
        steps = await self._get_steps(os_name, arch, branch, 1)
        if not steps:
            return
        update_patch_snapshot(self.patches_snapshot_path, os_name, arch, branch, steps)
        logger.debug("Cached %d official patch step(s) for %s", len(steps), branch)

    # ------------------------------------------------------------------
    # Speed test
    # ------------------------------------------------------------------

    async def _run_speed_test(self) -> SpeedTestResult:
        result = SpeedTestResult(source_id=self.source_id)
        if self._auth is None:
            return result
        session = await self._auth.get_valid_official_session()
        token = getattr(session, "access_token", None) if session is not None else None
        if not token:
            return result
        headers = self._auth_headers(token)
        available, ping_ms = await self._ping(self._api_base, headers=headers, timeout=DEFAULT_PING_TIMEOUT)
        result.ping_ms = ping_ms
        result.is_available = available
        if not available:
            return result
        entries = await self.get_versions(self._os, self._arch, BRANCH_RELEASE)
        if entries:
            bytes_read, elapsed = await self._measure_download(
                entries[0].artifact_url,
                size_bytes=SPEED_TEST_SIZE_BYTES,
                headers=headers,
                timeout=SPEED_DOWNLOAD_TIMEOUT,
            )
            result.speed_mbps = megabytes_per_second(bytes_read, elapsed)
        logger.info("Official source: %sms ping, %.2f MB/s", result.ping_ms, result.speed_mbps)
        return result


__all__ = [
    "AuthProvider",
    "AuthSession",
    "FetchAttempt",
    "FetchOutcome",
    "Profile",
    "ProfileProvider",
    "VendorSource",
    "parse_steps",
]
