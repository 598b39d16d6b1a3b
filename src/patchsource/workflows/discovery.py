"""Heuristic mirror-protocol discovery.

Given an arbitrary (possibly malformed) URL, probe the host and synthesize a
working :class:`MirrorDescriptor`. Candidate base URLs are the full URL, the
bare authority, then each shorter parent path; for every candidate the
strategies below run in order and the first hit wins:

1. vendor info API (``/infos`` with platform/branch build fields)
2. json-index document (``/api.php``, ``/api.json``, ... with a known root key)
3. generic json-api version list (``items[]``, ``versions[]`` or a root array)
4. HTML autoindex with artifact links under common patch paths
5. vendor launcher API (400/422 on parameterized endpoints still confirms it)
6. static file tree (autoindex under other prefixes)
7. directory page that merely references OS-named subdirectories

Probes are sequential, bounded by a short timeout, and swallow their own
failures; discovery fails only after every candidate x strategy pair ran.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from .descriptor import (
    CacheConfig,
    FileNamePatternConfig,
    JsonIndexConfig,
    MirrorDescriptor,
    PatternConfig,
    SpeedTestConfig,
    VersionDiscoveryConfig,
)
from . import http_utils
from .http_utils import NETWORK_ERRORS, HttpResponse
from .source_config import (
    ARTIFACT_LINK_PATTERN,
    AUTOINDEX_HTML_PATTERN,
    AUTOINDEX_LAYOUT_SUFFIXES,
    AUTOINDEX_MIN_FILE_SIZE,
    AUTOINDEX_PATHS,
    DEFAULT_DIFF_FILE_PATTERN,
    DEFAULT_FULL_FILE_PATTERN,
    DEFAULT_INDEX_TTL_MINUTES,
    DEFAULT_PRIORITY,
    DEFAULT_SPEED_TTL_MINUTES,
    DISCOVERY_HTML_AUTOINDEX,
    DISCOVERY_JSON_API,
    DISCOVERY_TIMEOUT,
    INDEX_DIFF_BRANCHES,
    INDEX_ENDPOINTS,
    INDEX_GROUP_BASE,
    INDEX_GROUP_PATCH,
    INDEX_PLATFORM_MAPPING,
    INDEX_ROOT_KEYS,
    INFO_ARCH_MAPPING,
    INFO_BRANCH_KEYS,
    INFO_BUILD_FIELDS,
    INFO_BUILD_TEMPLATE,
    INFO_ENDPOINT,
    INFO_JSON_PATH,
    INFO_LATEST_ENDPOINT,
    INFO_OS_MAPPING,
    INFO_PLATFORM_KEYS,
    INFO_VERSION_URL,
    JSON_ROOT_TOKEN,
    LAUNCHER_BRANCH_MAPPING,
    LAUNCHER_CONFIRM_STATUSES,
    LAUNCHER_DIFF_TEMPLATE,
    LAUNCHER_FULL_TEMPLATE,
    LAUNCHER_HEALTH_ENDPOINT,
    LAUNCHER_VERSION_ENDPOINTS,
    LAUNCHER_VERSION_URL,
    OS_DIRECTORY_MARKERS,
    SOURCE_TYPE_JSON_INDEX,
    SOURCE_TYPE_PATTERN,
    STATIC_PATH_PREFIXES,
    STATIC_PATH_SUFFIXES,
    STRUCTURE_FLAT,
    STRUCTURE_GROUPED,
    VERSION_LIST_ENDPOINTS,
)
from .source_utils import (
    candidate_base_urls,
    join_url,
    mirror_id_from_host,
    mirror_name_from_host,
    normalize_base_url,
)

logger = logging.getLogger(__name__)

_ARTIFACT_LINK_RE = re.compile(ARTIFACT_LINK_PATTERN, re.IGNORECASE)

DETECTED_INFO_API = "pattern (info API)"
DETECTED_JSON_INDEX = "json-index"
DETECTED_VERSION_LIST = "pattern (json-api)"
DETECTED_AUTOINDEX = "pattern (html-autoindex)"
DETECTED_LAUNCHER_API = "pattern (launcher API)"
DETECTED_STATIC_FILES = "pattern (static files)"
DETECTED_DIRECTORY = "pattern (directory structure)"


@dataclass
class DiscoveryResult:
    success: bool
    error: Optional[str] = None
    mirror: Optional[MirrorDescriptor] = None
    detected_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "detected_type": self.detected_type,
            "mirror": self.mirror.to_dict() if self.mirror is not None else None,
        }


def artifact_links(html: str) -> List[str]:
    """Numeric artifact file names (``123.pwr``) linked from an HTML listing."""

    if not html:
        return []
    soup = BeautifulSoup(html, "lxml")
    found: List[str] = []
    for anchor in soup.find_all("a", href=True):
        target = str(anchor["href"]).strip().split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        if _ARTIFACT_LINK_RE.match(target):
            found.append(target)
    return found


def detect_index_structure(root: Dict[str, Any]) -> str:
    """``grouped`` when any platform node carries ``base``/``patch`` sub-keys."""

    for branch_node in root.values():
        if not isinstance(branch_node, dict):
            continue
        for platform_node in branch_node.values():
            if isinstance(platform_node, dict) and (
                INDEX_GROUP_BASE in platform_node or INDEX_GROUP_PATCH in platform_node
            ):
                return STRUCTURE_GROUPED
    return STRUCTURE_FLAT


def looks_like_info_api(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    for platform in INFO_PLATFORM_KEYS:
        platform_node = payload.get(platform)
        if not isinstance(platform_node, dict):
            continue
        for branch in INFO_BRANCH_KEYS:
            branch_node = platform_node.get(branch)
            if isinstance(branch_node, dict) and any(f in branch_node for f in INFO_BUILD_FIELDS):
                return True
    return False


def version_list_path(payload: Any) -> Optional[str]:
    """The ``jsonPath`` that reads this version-list document, if it is one."""

    if isinstance(payload, dict):
        if isinstance(payload.get("items"), list):
            return "items[].version"
        if isinstance(payload.get("versions"), list):
            return "versions"
        return None
    if isinstance(payload, list):
        return JSON_ROOT_TOKEN
    return None


Strategy = Callable[[str], Awaitable[Optional[Tuple[str, MirrorDescriptor]]]]


class MirrorDiscovery:
    def __init__(self, session: Optional[aiohttp.ClientSession] = None, *, timeout: float = DISCOVERY_TIMEOUT) -> None:
        self._session = session
        self._timeout = timeout
        self._host = ""

    async def discover(self, url: str) -> DiscoveryResult:
        base = normalize_base_url(url)
        if base is None:
            return DiscoveryResult(success=False, error=f"Invalid URL: {url!r}")
        self._host = urlparse(base).hostname or ""
        strategies: List[Tuple[str, Strategy]] = [
            ("info-api", self._try_info_api),
            ("json-index", self._try_json_index),
            ("json-api", self._try_version_list),
            ("html-autoindex", self._try_autoindex),
            ("launcher-api", self._try_launcher_api),
            ("static-files", self._try_static_files),
            ("directory", self._try_directory_listing),
        ]
        candidates = candidate_base_urls(base)
        for candidate in candidates:
            for label, strategy in strategies:
                logger.debug("Discovery: %s strategy on %s", label, candidate)
                try:
                    hit = await strategy(candidate)
                except Exception as exc:
                    logger.debug("Discovery: %s strategy failed on %s: %s", label, candidate, exc)
                    continue
                if hit is not None:
                    detected, descriptor = hit
                    logger.info("Discovery: %s detected %s (%s)", candidate, detected, descriptor.id)
                    return DiscoveryResult(success=True, mirror=descriptor, detected_type=detected)
        tried = len(candidates) * len(strategies)
        return DiscoveryResult(
            success=False,
            error=f"Could not detect a mirror protocol at {base} ({tried} candidate/strategy combinations tried)",
        )

    async def _get(self, url: str) -> Optional[HttpResponse]:
        if self._session is None:
            return None
        try:
            return await http_utils.fetch(self._session, url, timeout=self._timeout)
        except NETWORK_ERRORS as exc:
            logger.debug("Discovery: request to %s failed: %s", url, exc)
            return None

    async def _get_json(self, url: str) -> Any:
        resp = await self._get(url)
        if resp is None or not resp.ok:
            return None
        return resp.json()

    def _descriptor(
        self,
        *,
        source_type: str,
        ping_url: str,
        pattern: Optional[PatternConfig] = None,
        json_index: Optional[JsonIndexConfig] = None,
    ) -> MirrorDescriptor:
        return MirrorDescriptor(
            id=mirror_id_from_host(self._host),
            name=mirror_name_from_host(self._host),
            description=f"Auto-discovered mirror from {self._host}",
            priority=DEFAULT_PRIORITY,
            enabled=True,
            source_type=source_type,
            pattern=pattern,
            json_index=json_index,
            speed_test=SpeedTestConfig(ping_url=ping_url),
            cache=CacheConfig(index_ttl_minutes=DEFAULT_INDEX_TTL_MINUTES, speed_test_ttl_minutes=DEFAULT_SPEED_TTL_MINUTES),
        )

    def _launcher_descriptor(self, base: str) -> MirrorDescriptor:
        return self._descriptor(
            source_type=SOURCE_TYPE_PATTERN,
            ping_url=join_url(base, LAUNCHER_HEALTH_ENDPOINT),
            pattern=PatternConfig(
                base_url=base,
                full_build_url=LAUNCHER_FULL_TEMPLATE,
                diff_patch_url=LAUNCHER_DIFF_TEMPLATE,
                version_discovery=VersionDiscoveryConfig(
                    method=DISCOVERY_JSON_API,
                    url=LAUNCHER_VERSION_URL,
                    json_path="items[].version",
                ),
                branch_mapping=dict(LAUNCHER_BRANCH_MAPPING),
            ),
        )

    def _autoindex_descriptor(self, base: str, base_path: str) -> MirrorDescriptor:
        root = "{base}" + base_path
        return self._descriptor(
            source_type=SOURCE_TYPE_PATTERN,
            ping_url=base + base_path,
            pattern=PatternConfig(
                base_url=base,
                full_build_url=root + "/{os}/{arch}/{branch}/0/{version}.pwr",
                diff_patch_url=root + "/{os}/{arch}/{branch}/{from}/{to}.pwr",
                signature_url=root + "/{os}/{arch}/{branch}/0/{version}.pwr.sig",
                version_discovery=VersionDiscoveryConfig(
                    method=DISCOVERY_HTML_AUTOINDEX,
                    url=root + "/{os}/{arch}/{branch}/0/",
                    html_pattern=AUTOINDEX_HTML_PATTERN,
                    min_file_size_bytes=AUTOINDEX_MIN_FILE_SIZE,
                ),
            ),
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _try_info_api(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        if not looks_like_info_api(await self._get_json(join_url(base, INFO_ENDPOINT))):
            return None
        latest = await self._get(join_url(base, INFO_LATEST_ENDPOINT))
        logger.debug("Discovery: /latest check on %s -> %s", base, latest.status if latest else "unreachable")
        descriptor = self._descriptor(
            source_type=SOURCE_TYPE_PATTERN,
            ping_url=join_url(base, INFO_ENDPOINT),
            pattern=PatternConfig(
                base_url=base,
                full_build_url=INFO_BUILD_TEMPLATE,
                diff_patch_url=INFO_BUILD_TEMPLATE,
                version_discovery=VersionDiscoveryConfig(
                    method=DISCOVERY_JSON_API,
                    url=INFO_VERSION_URL,
                    json_path=INFO_JSON_PATH,
                ),
                os_mapping=dict(INFO_OS_MAPPING),
                arch_mapping=dict(INFO_ARCH_MAPPING),
                branch_mapping={},
            ),
        )
        return DETECTED_INFO_API, descriptor

    async def _try_json_index(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        for endpoint in INDEX_ENDPOINTS:
            api_url = join_url(base, endpoint)
            payload = await self._get_json(api_url)
            if not isinstance(payload, dict):
                continue
            for root_key in INDEX_ROOT_KEYS:
                root = payload.get(root_key)
                if not isinstance(root, dict):
                    continue
                descriptor = self._descriptor(
                    source_type=SOURCE_TYPE_JSON_INDEX,
                    ping_url=api_url,
                    json_index=JsonIndexConfig(
                        api_url=api_url,
                        root_path=root_key,
                        structure=detect_index_structure(root),
                        platform_mapping=dict(INDEX_PLATFORM_MAPPING),
                        file_name_pattern=FileNamePatternConfig(
                            full=DEFAULT_FULL_FILE_PATTERN, diff=DEFAULT_DIFF_FILE_PATTERN
                        ),
                        diff_based_branches=list(INDEX_DIFF_BRANCHES),
                    ),
                )
                return DETECTED_JSON_INDEX, descriptor
        return None

    async def _try_version_list(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        for endpoint in VERSION_LIST_ENDPOINTS:
            json_path = version_list_path(await self._get_json(join_url(base, endpoint)))
            if json_path is None:
                continue
            descriptor = self._launcher_descriptor(base)
            discovery = descriptor.pattern.version_discovery
            discovery.json_path = json_path
            if not endpoint.startswith("/launcher/"):
                discovery.url = "{base}" + endpoint
                descriptor.pattern.branch_mapping = None
                descriptor.speed_test.ping_url = join_url(base, endpoint)
            return DETECTED_VERSION_LIST, descriptor
        return None

    async def _try_autoindex(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        for path in AUTOINDEX_PATHS:
            resp = await self._get(join_url(base, path))
            if resp is None or not resp.ok or not artifact_links(resp.text):
                continue
            base_path = path
            for suffix in AUTOINDEX_LAYOUT_SUFFIXES:
                if base_path.endswith(suffix):
                    base_path = base_path[: -len(suffix)]
                    break
            return DETECTED_AUTOINDEX, self._autoindex_descriptor(base, base_path.rstrip("/"))
        return None

    async def _try_launcher_api(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        health = await self._get(join_url(base, LAUNCHER_HEALTH_ENDPOINT))
        logger.debug("Discovery: /health on %s -> %s", base, health.status if health else "unreachable")
        for endpoint in LAUNCHER_VERSION_ENDPOINTS:
            resp = await self._get(join_url(base, endpoint))
            if resp is None:
                continue
            if resp.status in LAUNCHER_CONFIRM_STATUSES:
                return DETECTED_LAUNCHER_API, self._launcher_descriptor(base)
        return None

    async def _try_static_files(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        for prefix in STATIC_PATH_PREFIXES:
            for suffix in STATIC_PATH_SUFFIXES:
                resp = await self._get(join_url(base, f"{prefix}/{suffix}"))
                if resp is None or not resp.ok or not artifact_links(resp.text):
                    continue
                return DETECTED_STATIC_FILES, self._autoindex_descriptor(base, prefix.rstrip("/"))
        return None

    async def _try_directory_listing(self, base: str) -> Optional[Tuple[str, MirrorDescriptor]]:
        resp = await self._get(base)
        if resp is None or not resp.ok or not resp.is_html:
            return None
        if not any(marker in resp.text for marker in OS_DIRECTORY_MARKERS):
            return None
        descriptor = self._autoindex_descriptor(base, "")
        descriptor.pattern.signature_url = None
        descriptor.speed_test.ping_url = base
        return DETECTED_DIRECTORY, descriptor


__all__ = [
    "DiscoveryResult",
    "MirrorDiscovery",
    "artifact_links",
    "detect_index_structure",
    "looks_like_info_api",
    "version_list_path",
]
