"""Descriptor-driven mirror source.

One engine interprets a :class:`MirrorDescriptor` at runtime:

- pattern mode: URLs are built from templates after os/arch/branch remapping;
  versions come from a json-api document, an HTML autoindex or a static list
- json-index mode: a single API document maps
  ``rootPath -> branch -> platform [-> group] -> filename -> url`` and version
  numbers are recovered from the file names

Both modes cache discovered data for ``cache.indexTtlMinutes`` behind the
source's single fetch lock and serve stale data when a refresh fails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .descriptor import JsonIndexConfig, MirrorDescriptor, PatternConfig
from .http_utils import NETWORK_ERRORS, megabytes_per_second
from .source_config import (
    BRANCH_PRE_RELEASE,
    BRANCH_RELEASE,
    DISCOVERY_HTML_AUTOINDEX,
    DISCOVERY_JSON_API,
    DISCOVERY_STATIC_LIST,
    INDEX_GROUP_BASE,
    INDEX_GROUP_PATCH,
    MIRROR_REQUEST_TIMEOUT,
    SPEED_DOWNLOAD_TIMEOUT,
)
from .source_utils import (
    apply_placeholders,
    host_arch,
    host_os,
    map_token,
    parse_diff_file_name,
    parse_full_file_name,
    parse_versions_from_html,
    parse_versions_from_json,
    string_map,
    utc_now,
)
from .sources import (
    PatchStep,
    SourceLayoutInfo,
    SourceType,
    SpeedTestResult,
    VersionEntry,
    VersionKey,
    VersionSource,
)

logger = logging.getLogger(__name__)


class MirrorSource(VersionSource):
    def __init__(
        self,
        descriptor: MirrorDescriptor,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> None:
        super().__init__(
            descriptor.id,
            descriptor.priority,
            session,
            speed_ttl_minutes=descriptor.cache.speed_test_ttl_minutes,
        )
        self.descriptor = descriptor
        self._os = os_name or host_os()
        self._arch = arch or host_arch()
        self._index_ttl = timedelta(minutes=descriptor.cache.index_ttl_minutes)
        self._version_cache: Dict[VersionKey, Tuple[datetime, List[int]]] = {}
        self._index_blob: Optional[Any] = None
        self._index_fetched_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.descriptor.name or self.descriptor.id

    @property
    def source_type(self) -> SourceType:
        return SourceType.MIRROR

    @property
    def is_available(self) -> bool:
        return self.descriptor.enabled

    @property
    def is_json_index(self) -> bool:
        return self.descriptor.json_index is not None and self.descriptor.pattern is None

    @property
    def supports_diffs(self) -> bool:
        if self.is_json_index:
            return True
        pattern = self.descriptor.pattern
        return pattern is not None and bool(pattern.diff_patch_url)

    def is_diff_based_branch(self, branch: str) -> bool:
        wanted = (branch or "").lower()
        return any(b.lower() == wanted for b in self.descriptor.diff_based_branches)

    def _fresh(self, fetched_at: Optional[datetime]) -> bool:
        return fetched_at is not None and utc_now() - fetched_at < self._index_ttl

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get_versions(self, os_name: str, arch: str, branch: str) -> List[VersionEntry]:
        if self.is_json_index:
            return await self._index_versions(os_name, arch, branch)
        pattern = self.descriptor.pattern
        if pattern is None:
            return []
        versions = await self._discover_versions(pattern, os_name, arch, branch)
        entries = []
        for version in versions:
            signature = None
            if pattern.signature_url:
                signature = self._pattern_url(
                    pattern, pattern.signature_url, os_name, arch, branch, version=version, to_version=version
                )
            entries.append(
                VersionEntry(
                    version=version,
                    from_version=0,
                    artifact_url=self._pattern_url(
                        pattern, pattern.full_build_url, os_name, arch, branch, version=version, to_version=version
                    ),
                    signature_url=signature,
                )
            )
        entries.sort(key=lambda e: e.version, reverse=True)
        return entries

    async def get_download_url(self, os_name: str, arch: str, branch: str, version: int) -> Optional[str]:
        if self.is_json_index:
            return await self._index_download_url(os_name, arch, branch, version)
        pattern = self.descriptor.pattern
        if pattern is None:
            return None
        if self.is_diff_based_branch(branch):
            # diff-based branches only expose the 0 -> 1 bootstrap as a "full" download
            if version != 1 or not pattern.diff_patch_url:
                return None
            return self._pattern_url(pattern, pattern.diff_patch_url, os_name, arch, branch, version=1, from_version=0, to_version=1)
        return self._pattern_url(pattern, pattern.full_build_url, os_name, arch, branch, version=version, to_version=version)

    async def get_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        if self.is_json_index:
            files = await self._index_files(os_name, branch, self._patch_group())
            config = self.descriptor.json_index
            for file_name, url in files.items():
                if parse_diff_file_name(file_name, config.file_name_pattern.diff, os_name, arch) == (from_version, to_version):
                    return url
            return None
        pattern = self.descriptor.pattern
        if pattern is None or not pattern.diff_patch_url:
            return None
        return self._pattern_url(
            pattern, pattern.diff_patch_url, os_name, arch, branch,
            version=0, from_version=from_version, to_version=to_version,
        )

    async def get_patch_chain(self, os_name: str, arch: str, branch: str) -> List[PatchStep]:
        """Walk known versions ascending and collect ``(prev, version)`` diffs.

        Falls back to full-build steps ``(0, version)`` when no diff resolves, so
        the chain is never empty while any version exists.
        """

        entries = await self.get_versions(os_name, arch, branch)
        if not entries:
            return []
        ordered = sorted({e.version for e in entries})
        steps: List[PatchStep] = []
        if self.supports_diffs:
            prev = 0
            for version in ordered:
                url = await self.get_diff_url(os_name, arch, branch, prev, version)
                if url:
                    steps.append(PatchStep(from_version=prev, to_version=version, artifact_url=url))
                prev = version
        if not steps:
            for version in ordered:
                url = await self.get_download_url(os_name, arch, branch, version)
                if url:
                    steps.append(PatchStep(from_version=0, to_version=version, artifact_url=url))
        return steps

    async def preload(self) -> None:
        if self.is_json_index:
            await self._get_index()
            return
        pattern = self.descriptor.pattern
        if pattern is not None:
            await self._discover_versions(pattern, self._os, self._arch, BRANCH_RELEASE)

    def layout_info(self) -> SourceLayoutInfo:
        ttl = self.descriptor.cache
        if self.is_json_index:
            config = self.descriptor.json_index
            return SourceLayoutInfo(
                full_build_location=f"JSON index {config.api_url} ({config.root_path}, {config.structure})",
                patch_location=f"JSON index files matching {config.file_name_pattern.diff}",
                cache_policy=f"index TTL {ttl.index_ttl_minutes}m; speed test TTL {ttl.speed_test_ttl_minutes}m",
            )
        pattern = self.descriptor.pattern
        full = pattern.full_build_url if pattern else ""
        diff = pattern.diff_patch_url if pattern and pattern.diff_patch_url else "none"
        method = pattern.version_discovery.method if pattern else "n/a"
        return SourceLayoutInfo(
            full_build_location=f"{full} (base {pattern.base_url if pattern else ''})",
            patch_location=diff,
            cache_policy=f"{method} version cache TTL {ttl.index_ttl_minutes}m; speed test TTL {ttl.speed_test_ttl_minutes}m",
        )

    # ------------------------------------------------------------------
    # Pattern mode
    # ------------------------------------------------------------------

    def _pattern_url(
        self,
        pattern: PatternConfig,
        template: Optional[str],
        os_name: str,
        arch: str,
        branch: str,
        *,
        version: int = 0,
        from_version: int = 0,
        to_version: int = 0,
    ) -> str:
        return apply_placeholders(
            template or "",
            base=pattern.base_url,
            os_name=map_token(pattern.os_mapping, os_name),
            arch=map_token(pattern.arch_mapping, arch),
            branch=map_token(pattern.branch_mapping, branch),
            version=version,
            from_version=from_version,
            to_version=to_version,
        )

    async def _discover_versions(self, pattern: PatternConfig, os_name: str, arch: str, branch: str) -> List[int]:
        discovery = pattern.version_discovery
        if discovery.method == DISCOVERY_STATIC_LIST:
            return sorted(set(discovery.static_versions or []), reverse=True)

        key = VersionKey(os_name, arch, branch)
        cached = self._version_cache.get(key)
        if cached and self._fresh(cached[0]):
            return list(cached[1])

        async with self._fetch_lock:
            cached = self._version_cache.get(key)
            if cached and self._fresh(cached[0]):
                return list(cached[1])

            url = self._pattern_url(pattern, discovery.url or "", os_name, arch, branch)
            if not url:
                logger.warning("Mirror %s: version discovery has no url", self.source_id)
                return []
            try:
                resp = await self._fetch(url, timeout=MIRROR_REQUEST_TIMEOUT)
            except NETWORK_ERRORS as exc:
                logger.warning("Mirror %s: version discovery failed for %s: %s", self.source_id, url, exc)
                return list(cached[1]) if cached else []
            if not resp.ok:
                logger.warning("Mirror %s: %s returned %s", self.source_id, url, resp.status)
                return list(cached[1]) if cached else []

            if discovery.method == DISCOVERY_JSON_API:
                json_path = self._pattern_url(pattern, discovery.json_path, os_name, arch, branch) if discovery.json_path else None
                payload = resp.json()
                if payload is None:
                    logger.warning("Mirror %s: %s did not return JSON", self.source_id, url)
                versions = parse_versions_from_json(payload, json_path)
            elif discovery.method == DISCOVERY_HTML_AUTOINDEX:
                versions = parse_versions_from_html(resp.text, discovery.html_pattern, discovery.min_file_size_bytes)
            else:
                logger.warning("Mirror %s: unknown discovery method %s", self.source_id, discovery.method)
                versions = []

            if versions:
                self._version_cache[key] = (utc_now(), list(versions))
                logger.info("Mirror %s: discovered %d version(s) for %s/%s/%s", self.source_id, len(versions), os_name, arch, branch)
            elif cached:
                return list(cached[1])
            return versions

    # ------------------------------------------------------------------
    # Json-index mode
    # ------------------------------------------------------------------

    def _base_group(self) -> Optional[str]:
        config = self.descriptor.json_index
        return INDEX_GROUP_BASE if config is not None and config.is_grouped else None

    def _patch_group(self) -> Optional[str]:
        config = self.descriptor.json_index
        return INDEX_GROUP_PATCH if config is not None and config.is_grouped else None

    async def _get_index(self) -> Optional[Any]:
        if self._index_blob is not None and self._fresh(self._index_fetched_at):
            return self._index_blob
        async with self._fetch_lock:
            if self._index_blob is not None and self._fresh(self._index_fetched_at):
                return self._index_blob
            config: JsonIndexConfig = self.descriptor.json_index
            try:
                resp = await self._fetch(config.api_url, timeout=MIRROR_REQUEST_TIMEOUT)
            except NETWORK_ERRORS as exc:
                logger.warning("Mirror %s: failed to fetch JSON index: %s", self.source_id, exc)
                return self._index_blob
            if not resp.ok:
                logger.warning("Mirror %s: JSON index returned %s", self.source_id, resp.status)
                return self._index_blob
            payload = resp.json()
            if not isinstance(payload, dict):
                logger.warning("Mirror %s: JSON index is not an object", self.source_id)
                return self._index_blob
            self._index_blob = payload
            self._index_fetched_at = utc_now()
            logger.info("Mirror %s: JSON index loaded", self.source_id)
            return payload

    async def _index_files(self, os_name: str, branch: str, group: Optional[str]) -> Dict[str, str]:
        root = await self._get_index()
        if not isinstance(root, dict):
            return {}
        config = self.descriptor.json_index
        node = root.get(config.root_path)
        if not isinstance(node, dict):
            return {}
        node = node.get(branch)
        if not isinstance(node, dict):
            return {}
        node = node.get(map_token(config.platform_mapping, os_name))
        if not isinstance(node, dict):
            return {}
        if group is not None:
            node = node.get(group)
        return string_map(node)

    async def _index_versions(self, os_name: str, arch: str, branch: str) -> List[VersionEntry]:
        config = self.descriptor.json_index
        templates = config.file_name_pattern
        entries: List[VersionEntry] = []
        if self.is_diff_based_branch(branch):
            for file_name, url in (await self._index_files(os_name, branch, self._patch_group())).items():
                parsed = parse_diff_file_name(file_name, templates.diff, os_name, arch)
                if parsed is not None:
                    entries.append(VersionEntry(version=parsed[1], from_version=parsed[0], artifact_url=url))
            entries.sort(key=lambda e: (-e.version, e.from_version))
            return entries

        by_version: Dict[int, VersionEntry] = {}
        for file_name, url in (await self._index_files(os_name, branch, self._base_group())).items():
            version = parse_full_file_name(file_name, templates.full, os_name, arch)
            if version is not None and version not in by_version:
                by_version[version] = VersionEntry(version=version, from_version=0, artifact_url=url)
        return [by_version[v] for v in sorted(by_version, reverse=True)]

    async def _index_download_url(self, os_name: str, arch: str, branch: str, version: int) -> Optional[str]:
        config = self.descriptor.json_index
        templates = config.file_name_pattern
        if self.is_diff_based_branch(branch):
            if version != 1:
                return None
            for file_name, url in (await self._index_files(os_name, branch, self._patch_group())).items():
                if parse_diff_file_name(file_name, templates.diff, os_name, arch) == (0, 1):
                    return url
            return None
        for file_name, url in (await self._index_files(os_name, branch, self._base_group())).items():
            if parse_full_file_name(file_name, templates.full, os_name, arch) == version:
                return url
        return None

    # ------------------------------------------------------------------
    # Speed test
    # ------------------------------------------------------------------

    def _ping_url(self) -> str:
        if self.descriptor.speed_test.ping_url:
            return self.descriptor.speed_test.ping_url
        if self.is_json_index:
            return self.descriptor.json_index.api_url
        pattern = self.descriptor.pattern
        return pattern.base_url if pattern is not None else ""

    async def _speed_test_url(self) -> Optional[str]:
        for branch in (BRANCH_PRE_RELEASE, BRANCH_RELEASE):
            entries = await self.get_versions(self._os, self._arch, branch)
            if entries:
                return entries[0].artifact_url
        return None

    async def _run_speed_test(self) -> SpeedTestResult:
        result = SpeedTestResult(source_id=self.source_id)
        ping_url = self._ping_url()
        if not ping_url:
            return result
        available, ping_ms = await self._ping(ping_url, timeout=self.descriptor.speed_test.ping_timeout_seconds)
        result.ping_ms = ping_ms
        result.is_available = available
        if not available:
            logger.warning("Mirror %s: speed test ping failed", self.source_id)
            return result

        test_url = await self._speed_test_url()
        if test_url:
            bytes_read, elapsed = await self._measure_download(
                test_url,
                size_bytes=self.descriptor.speed_test.speed_test_size_bytes,
                timeout=SPEED_DOWNLOAD_TIMEOUT,
            )
            result.speed_mbps = megabytes_per_second(bytes_read, elapsed)
        logger.info("Mirror %s: %sms ping, %.2f MB/s", self.source_id, result.ping_ms, result.speed_mbps)
        return result


__all__ = ["MirrorSource"]
