"""Multi-source version aggregation.

The aggregator owns the sources (vendor first, then mirrors by priority), the
merged per-branch version lists and the two disk snapshots under
``<app_dir>/Cache/Game``. Official entries always win over mirror entries for
the same version. Only terminal resolution failures raise (``NoSourceError``);
everything else degrades to empty results.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import aiohttp

from .descriptor_store import DescriptorStore
from .policy import DEFAULT_POLICY, SourcePolicy
from .snapshots import SourceBranches, VersionsSnapshot, load_json, save_json, update_patch_snapshot
from .source_config import CACHE_DIR_PARTS, PATCHES_SNAPSHOT_NAME, VERSIONS_SNAPSHOT_NAME
from .source_utils import host_arch, host_os, normalize_branch, utc_now
from .sources import PatchStep, SourceType, SpeedTestResult, VersionEntry, VersionSource

logger = logging.getLogger(__name__)

STATUS_NONE = "none"
STATUS_NOT_INSTALLED = "not_installed"
STATUS_UPDATE_AVAILABLE = "update_available"
STATUS_CURRENT = "current"
STATUS_ERROR = "error"


class NoSourceError(RuntimeError):
    """No source could resolve the requested artifact, even after a forced refresh."""


@dataclass
class VersionInfo:
    version: int
    source: SourceType
    is_latest: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {"version": self.version, "source": self.source.value, "is_latest": self.is_latest}


@dataclass
class VersionListResponse:
    versions: List[VersionInfo] = field(default_factory=list)
    has_official_account: bool = False
    official_source_available: bool = False
    has_download_sources: bool = False
    enabled_mirror_count: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "versions": [v.to_dict() for v in self.versions],
            "has_official_account": self.has_official_account,
            "official_source_available": self.official_source_available,
            "has_download_sources": self.has_download_sources,
            "enabled_mirror_count": self.enabled_mirror_count,
        }


@dataclass
class LatestVersionStatus:
    status: str
    installed_version: int = 0
    latest_version: int = 0


def _find_entry(entries: Optional[List[VersionEntry]], version: int) -> Optional[VersionEntry]:
    for entry in entries or []:
        if entry.version == version:
            return entry
    return None


def _walk_patch_graph(steps: Iterable[PatchStep], from_version: int, to_version: int) -> Optional[List[int]]:
    """Shortest ``from -> to`` path over the patch edges, as the list of versions reached."""

    edges: Dict[int, List[int]] = {}
    for step in steps:
        if step.to_version > step.from_version:
            edges.setdefault(step.from_version, []).append(step.to_version)
    if from_version not in edges:
        return None
    previous: Dict[int, int] = {}
    queue = deque([from_version])
    while queue:
        current = queue.popleft()
        if current == to_version:
            path = []
            while current != from_version:
                path.append(current)
                current = previous[current]
            return list(reversed(path))
        for nxt in sorted(edges.get(current, [])):
            if nxt <= to_version and nxt not in previous and nxt != from_version:
                previous[nxt] = current
                queue.append(nxt)
    return None


class VersionAggregator:
    def __init__(
        self,
        app_dir: Path,
        sources: Iterable[VersionSource],
        *,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
        policy: SourcePolicy = DEFAULT_POLICY,
    ) -> None:
        self.app_dir = Path(app_dir)
        self.policy = policy
        self._os = os_name or host_os()
        self._arch = arch or host_arch()
        self._sources: List[VersionSource] = sorted(sources, key=lambda s: s.priority)
        self._lock = asyncio.Lock()
        self._snapshot: Optional[VersionsSnapshot] = None
        self._selected_mirror: Optional[VersionSource] = None
        for source in self._sources:
            info = source.layout_info()
            logger.info(
                "Source %s [priority=%d]: full=%s; patches=%s; cache=%s",
                source.source_id,
                source.priority,
                info.full_build_location,
                info.patch_location,
                info.cache_policy,
            )

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    @property
    def sources(self) -> List[VersionSource]:
        return list(self._sources)

    @property
    def official_source(self) -> Optional[VersionSource]:
        for source in self._sources:
            if source.source_type is SourceType.OFFICIAL:
                return source
        return None

    @property
    def mirror_sources(self) -> List[VersionSource]:
        return [s for s in self._sources if s.source_type is SourceType.MIRROR]

    @property
    def has_official_account(self) -> bool:
        official = self.official_source
        return official is not None and official.is_available

    def has_download_sources(self) -> bool:
        return self.has_official_account or self.enabled_mirror_count() > 0

    def enabled_mirror_count(self) -> int:
        return len(self.mirror_sources)

    def available_mirrors(self) -> List[VersionSource]:
        return [m for m in self.mirror_sources if m.is_available]

    def is_diff_based_branch(self, branch: str) -> bool:
        branch = normalize_branch(branch)
        return any(s.is_diff_based_branch(branch) for s in self._sources)

    def reload_mirror_sources(self, store: DescriptorStore, session: Optional[aiohttp.ClientSession] = None) -> None:
        """Replace every mirror with a fresh set loaded from the descriptor files."""

        logger.info("Reloading mirror sources from %s", store.mirrors_dir)
        kept = [s for s in self._sources if s.source_type is not SourceType.MIRROR]
        fresh = store.load_all(session, os_name=self._os, arch=self._arch)
        self._sources = sorted(kept + list(fresh), key=lambda s: s.priority)
        self._selected_mirror = None
        logger.info("Reloaded %d mirror source(s)", len(fresh))
        if not self.has_download_sources():
            logger.info("No download sources left after reload, clearing version cache")
            self.clear_version_cache()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def versions_snapshot_path(self) -> Path:
        return self.app_dir.joinpath(*CACHE_DIR_PARTS, VERSIONS_SNAPSHOT_NAME)

    @property
    def patches_snapshot_path(self) -> Path:
        return self.app_dir.joinpath(*CACHE_DIR_PARTS, PATCHES_SNAPSHOT_NAME)

    def _sanitize(self, snapshot: VersionsSnapshot) -> VersionsSnapshot:
        known = {m.source_id.lower() for m in self.mirror_sources}
        kept = {mid: data for mid, data in snapshot.mirrors.items() if mid.lower() in known}
        if len(kept) != len(snapshot.mirrors):
            logger.debug("Sanitized mirror cache list: %d -> %d", len(snapshot.mirrors), len(kept))
        snapshot.mirrors = kept
        return snapshot

    def _load_snapshot(self) -> Optional[VersionsSnapshot]:
        payload = load_json(self.versions_snapshot_path)
        if payload is None:
            return None
        snapshot = VersionsSnapshot.from_dict(payload)
        if snapshot is None or snapshot.os != self._os or snapshot.arch != self._arch:
            return None
        return self._sanitize(snapshot)

    def _current_snapshot(self) -> Optional[VersionsSnapshot]:
        if self._snapshot is None:
            self._snapshot = self._load_snapshot()
        return self._snapshot

    def _save_snapshot(self, snapshot: VersionsSnapshot) -> None:
        try:
            save_json(self.versions_snapshot_path, snapshot.to_dict())
        except OSError as exc:
            logger.warning("Failed to save version cache: %s", exc)

    def _preferred_chain(self, snapshot: VersionsSnapshot, branch: str) -> List[PatchStep]:
        for _, data in self._ordered_caches(snapshot):
            steps = data.patches.get(branch)
            if steps:
                return steps
        return []

    def _save_patch_snapshot(self, snapshot: VersionsSnapshot, branch: str) -> None:
        try:
            update_patch_snapshot(
                self.patches_snapshot_path, self._os, self._arch, branch, self._preferred_chain(snapshot, branch)
            )
        except OSError as exc:
            logger.warning("Failed to save patch cache: %s", exc)

    def _ordered_caches(self, snapshot: VersionsSnapshot) -> Iterator[Tuple[str, SourceBranches]]:
        """Official data first, then mirror data in source priority order."""

        yield SourceType.OFFICIAL.value, snapshot.official
        seen = set()
        for mirror in self.mirror_sources:
            data = snapshot.mirrors.get(mirror.source_id)
            if data is not None:
                seen.add(mirror.source_id)
                yield mirror.source_id, data
        for mirror_id, data in snapshot.mirrors.items():
            if mirror_id not in seen:
                yield mirror_id, data

    def _is_fresh(self, snapshot: Optional[VersionsSnapshot], branch: str, max_age: timedelta) -> bool:
        if snapshot is None:
            return False
        fetched_at = snapshot.branch_fetched_at.get(branch)
        if fetched_at is not None:
            return utc_now() - fetched_at <= max_age
        if not snapshot.has_branch(branch):
            return False
        return utc_now() - snapshot.fetched_at <= max_age

    @property
    def _version_ttl(self) -> timedelta:
        return timedelta(minutes=self.policy.version_cache_ttl_minutes)

    # ------------------------------------------------------------------
    # Version lists
    # ------------------------------------------------------------------

    def _version_sources(self, snapshot: VersionsSnapshot, branch: str) -> Dict[int, SourceType]:
        merged: Dict[int, SourceType] = {}
        for data in snapshot.mirrors.values():
            for entry in data.branches.get(branch, []):
                merged[entry.version] = SourceType.MIRROR
        for entry in snapshot.official.branches.get(branch, []):
            merged[entry.version] = SourceType.OFFICIAL
        return merged

    def _merged_versions(self, snapshot: Optional[VersionsSnapshot], branch: str) -> List[int]:
        if snapshot is None:
            return []
        return sorted(self._version_sources(snapshot, branch), reverse=True)

    async def _fetch_branch(self, branch: str) -> VersionsSnapshot:
        """Query every available source for one branch; caller holds ``self._lock``."""

        snapshot = self._current_snapshot() or VersionsSnapshot(os=self._os, arch=self._arch)
        official_found = False
        mirror_found = False
        for source in self._sources:
            if not source.is_available:
                logger.debug("Source %s unavailable, skipping", source.source_id)
                continue
            try:
                entries = await source.get_versions(self._os, self._arch, branch)
                chain = await source.get_patch_chain(self._os, self._arch, branch) if entries else []
            except Exception as exc:
                logger.warning("Source %s failed for %s: %s", source.source_id, branch, exc)
                entries, chain = [], []
            if source.source_type is SourceType.OFFICIAL:
                data = snapshot.official
                official_found = official_found or bool(entries)
            else:
                data = snapshot.mirrors.setdefault(source.source_id, SourceBranches())
                mirror_found = mirror_found or bool(entries)
            if entries:
                data.branches[branch] = entries
                data.patches[branch] = chain
                logger.info("Source %s: %d version(s) for %s", source.source_id, len(entries), branch)
            elif data.branches.get(branch):
                logger.warning(
                    "Source %s returned no versions for %s, keeping %d cached",
                    source.source_id,
                    branch,
                    len(data.branches[branch]),
                )
        if official_found:
            snapshot.branch_sources[branch] = SourceType.OFFICIAL.value
        elif mirror_found:
            snapshot.branch_sources[branch] = SourceType.MIRROR.value
        now = utc_now()
        snapshot.fetched_at = now
        snapshot.branch_fetched_at[branch] = now
        self._snapshot = snapshot
        self._save_snapshot(snapshot)
        self._save_patch_snapshot(snapshot, branch)
        return snapshot

    async def get_version_list(self, branch: str) -> List[int]:
        """Merged versions for ``branch``, newest first; refetched when older than the TTL."""

        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if self._is_fresh(snapshot, branch, self._version_ttl):
            return self._merged_versions(snapshot, branch)
        async with self._lock:
            snapshot = self._current_snapshot()
            if not self._is_fresh(snapshot, branch, self._version_ttl):
                snapshot = await self._fetch_branch(branch)
        return self._merged_versions(snapshot, branch)

    def try_get_cached_versions(self, branch: str, max_age: timedelta) -> Optional[List[int]]:
        """Cached merged list when fresh within ``max_age`` and non-empty; never touches the network."""

        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if not self._is_fresh(snapshot, branch, max_age):
            return None
        versions = self._merged_versions(snapshot, branch)
        return versions or None

    async def get_version_list_with_sources(self, branch: str) -> VersionListResponse:
        branch = normalize_branch(branch)
        await self.get_version_list(branch)
        snapshot = self._current_snapshot()
        response = VersionListResponse(
            has_official_account=self.has_official_account,
            official_source_available=bool(snapshot and snapshot.official.branches.get(branch)),
            has_download_sources=self.has_download_sources(),
            enabled_mirror_count=self.enabled_mirror_count(),
        )
        if snapshot is None:
            return response
        merged = self._version_sources(snapshot, branch)
        response.versions = [VersionInfo(version=v, source=merged[v]) for v in sorted(merged, reverse=True)]
        if response.versions:
            response.versions[0].is_latest = True
        return response

    def get_version_source(self, branch: str, version: Optional[int] = None) -> SourceType:
        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if snapshot is None:
            return SourceType.MIRROR
        official = snapshot.official.branches.get(branch)
        if version is None:
            return SourceType.OFFICIAL if official else SourceType.MIRROR
        return SourceType.OFFICIAL if _find_entry(official, version) else SourceType.MIRROR

    def is_official_source_down(self, branch: str) -> bool:
        """True when the latest successful fetch for ``branch`` got data from mirrors only."""

        snapshot = self._current_snapshot()
        if snapshot is None:
            return False
        return snapshot.branch_sources.get(normalize_branch(branch)) == SourceType.MIRROR.value

    # ------------------------------------------------------------------
    # Patch sequences
    # ------------------------------------------------------------------

    def get_patch_sequence(self, from_version: int, to_version: int, branch: str = "release") -> List[int]:
        if to_version <= from_version:
            return []
        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if snapshot is not None:
            for source_id, data in self._ordered_caches(snapshot):
                path = _walk_patch_graph(data.patches.get(branch, []), from_version, to_version)
                if path:
                    logger.debug("Patch path %d -> %d via %s: %s", from_version, to_version, source_id, path)
                    return path
            known = [v for v in self._merged_versions(snapshot, branch) if from_version < v <= to_version]
            if to_version in known:
                return sorted(known)
        return list(range(from_version + 1, to_version + 1))

    # ------------------------------------------------------------------
    # URL resolution
    # ------------------------------------------------------------------

    def get_version_entry(self, branch: str, version: int) -> Optional[VersionEntry]:
        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if snapshot is None:
            return None
        for _, data in self._ordered_caches(snapshot):
            entry = _find_entry(data.branches.get(branch), version)
            if entry is not None:
                return entry
        return None

    def get_version_download_url(self, branch: str, version: int) -> Optional[str]:
        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if snapshot is None:
            return None
        for _, data in self._ordered_caches(snapshot):
            entry = _find_entry(data.branches.get(branch), version)
            if entry is not None and entry.artifact_url:
                return entry.artifact_url
        return None

    async def refresh_and_get_version_entry(self, branch: str, version: int) -> VersionEntry:
        branch = normalize_branch(branch)
        entry = self.get_version_entry(branch, version)
        if entry is not None and entry.artifact_url:
            logger.debug("Using cached entry for %s v%d", branch, version)
            return entry
        logger.info("No cached entry for %s v%d, refreshing cache", branch, version)
        await self.force_refresh_cache(branch)
        entry = self.get_version_entry(branch, version)
        if entry is not None and entry.artifact_url:
            return entry
        raise NoSourceError(
            f"Version {branch} v{version} not found in any source; "
            "it may not exist or all sources are unavailable"
        )

    async def refresh_and_get_download_url(self, branch: str, version: int) -> str:
        branch = normalize_branch(branch)
        url = self.get_version_download_url(branch, version)
        if url:
            logger.debug("Using cached URL for %s v%d", branch, version)
            return url
        logger.info("No cached URL for %s v%d, refreshing cache", branch, version)
        await self.force_refresh_cache(branch)
        url = self.get_version_download_url(branch, version)
        if url:
            return url
        raise NoSourceError(
            f"No download URL available for {branch} v{version}; "
            "the version may not exist or all sources are unavailable"
        )

    async def _ask_for_diff(self, branch: str, from_version: int, to_version: int) -> Optional[str]:
        for source in self._sources:
            if not source.is_available:
                continue
            url = await source.get_diff_url(self._os, self._arch, branch, from_version, to_version)
            if url:
                logger.debug("Diff %d -> %d resolved by %s", from_version, to_version, source.source_id)
                return url
        return None

    async def resolve_diff_url(self, branch: str, from_version: int, to_version: int) -> str:
        branch = normalize_branch(branch)
        url = await self._ask_for_diff(branch, from_version, to_version)
        if url:
            return url
        logger.info("No source has diff %d -> %d for %s, refreshing cache", from_version, to_version, branch)
        await self.force_refresh_cache(branch)
        url = await self._ask_for_diff(branch, from_version, to_version)
        if url:
            return url
        raise NoSourceError(f"No diff available for {branch} {from_version} -> {to_version}")

    async def _mirror_candidates(self) -> List[VersionSource]:
        selected = await self.get_selected_mirror()
        candidates = [selected] if selected is not None else []
        candidates.extend(m for m in self.mirror_sources if m is not selected)
        return candidates

    async def get_mirror_download_url(self, branch: str, version: int) -> Optional[str]:
        branch = normalize_branch(branch)
        for mirror in await self._mirror_candidates():
            url = await mirror.get_download_url(self._os, self._arch, branch, version)
            if url:
                if mirror is not self._selected_mirror:
                    logger.info("Switching selected mirror to %s", mirror.source_id)
                self._selected_mirror = mirror
                return url
        return None

    async def get_mirror_diff_url(self, branch: str, from_version: int, to_version: int) -> Optional[str]:
        branch = normalize_branch(branch)
        for mirror in await self._mirror_candidates():
            url = await mirror.get_diff_url(self._os, self._arch, branch, from_version, to_version)
            if url:
                if mirror is not self._selected_mirror:
                    logger.info("Switching selected mirror to %s", mirror.source_id)
                self._selected_mirror = mirror
                return url
        return None

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    async def force_refresh_cache(self, branch: str) -> None:
        branch = normalize_branch(branch)
        async with self._lock:
            await self._fetch_branch(branch)

    def invalidate_version(self, branch: str, version: int, source_id: Optional[str] = None) -> None:
        """Forget ``version`` (and patch steps reaching it) for one source, or for all when ``source_id`` is None."""

        branch = normalize_branch(branch)
        snapshot = self._current_snapshot()
        if snapshot is None:
            return
        removed = 0
        for cache_id, data in self._ordered_caches(snapshot):
            if source_id is not None and cache_id.lower() != source_id.lower():
                continue
            entries = data.branches.get(branch)
            if entries:
                kept = [e for e in entries if e.version != version]
                removed += len(entries) - len(kept)
                data.branches[branch] = kept
            steps = data.patches.get(branch)
            if steps:
                kept_steps = [s for s in steps if s.to_version != version]
                removed += len(steps) - len(kept_steps)
                data.patches[branch] = kept_steps
        if not removed:
            return
        logger.info("Invalidated %s v%d from %s (%d record(s))", branch, version, source_id or "all sources", removed)
        self._save_snapshot(snapshot)
        self._save_patch_snapshot(snapshot, branch)

    def clear_version_cache(self) -> None:
        self._snapshot = None
        for path in (self.versions_snapshot_path, self.patches_snapshot_path):
            try:
                if path.exists():
                    path.unlink()
                    logger.info("Deleted %s", path)
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Speed tests and mirror selection
    # ------------------------------------------------------------------

    async def test_mirror_speed(self, mirror_id: str, force_refresh: bool = False) -> Optional[SpeedTestResult]:
        for mirror in self.mirror_sources:
            if mirror.source_id.lower() == (mirror_id or "").lower():
                return await mirror.test_speed(force_refresh)
        logger.warning("Unknown mirror: %s", mirror_id)
        return None

    async def test_official_speed(self, force_refresh: bool = False) -> Optional[SpeedTestResult]:
        official = self.official_source
        if official is None:
            return None
        return await official.test_speed(force_refresh)

    async def select_best_mirror(self) -> Optional[VersionSource]:
        mirrors = self.mirror_sources
        if not mirrors:
            logger.warning("No mirrors available for selection")
            return None
        if len(mirrors) == 1:
            self._selected_mirror = mirrors[0]
            logger.info("Only one mirror available: %s", mirrors[0].source_id)
            return self._selected_mirror
        logger.info("Testing %d mirrors to select the best one", len(mirrors))
        results = await asyncio.gather(*(m.test_speed() for m in mirrors))
        ranked = sorted(
            (pair for pair in zip(mirrors, results) if pair[1].is_available and pair[1].speed_mbps > 0),
            key=lambda pair: (-pair[1].speed_mbps, pair[1].ping_ms),
        )
        if not ranked:
            logger.warning("No mirror passed the speed test, using %s", mirrors[0].source_id)
            self._selected_mirror = mirrors[0]
            return self._selected_mirror
        best, result = ranked[0]
        self._selected_mirror = best
        logger.info("Selected mirror %s (%.2f MB/s, %d ms ping)", best.source_id, result.speed_mbps, result.ping_ms)
        return best

    async def get_selected_mirror(self) -> Optional[VersionSource]:
        if self._selected_mirror is not None:
            return self._selected_mirror
        return await self.select_best_mirror()

    # ------------------------------------------------------------------
    # Installed-version status
    # ------------------------------------------------------------------

    async def get_latest_version_status(
        self,
        branch: str,
        installed_version: Optional[int],
        *,
        client_present: bool = True,
    ) -> LatestVersionStatus:
        """Compare an installation against the newest available version.

        ``installed_version`` is None when the install carries no version
        record; ``client_present`` is False when no client is installed.
        """

        try:
            versions = await self.get_version_list(branch)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.error("Failed to get latest version status: %s", exc)
            return LatestVersionStatus(STATUS_ERROR)
        if not versions:
            return LatestVersionStatus(STATUS_NONE)
        latest = versions[0]
        if not client_present:
            return LatestVersionStatus(STATUS_NOT_INSTALLED, 0, latest)
        if installed_version is None:
            return LatestVersionStatus(STATUS_UPDATE_AVAILABLE, 0, latest)
        if installed_version < latest:
            return LatestVersionStatus(STATUS_UPDATE_AVAILABLE, installed_version, latest)
        return LatestVersionStatus(STATUS_CURRENT, installed_version, latest)

    async def check_latest_needs_update(self, branch: str, installed_version: Optional[int]) -> bool:
        status = await self.get_latest_version_status(branch, installed_version)
        return status.status == STATUS_UPDATE_AVAILABLE


__all__ = [
    "LatestVersionStatus",
    "NoSourceError",
    "VersionAggregator",
    "VersionInfo",
    "VersionListResponse",
]
