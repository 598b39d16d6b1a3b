import asyncio
import json
from datetime import timedelta

import pytest

from patchsource.workflows.aggregator import NoSourceError, VersionAggregator
from patchsource.workflows.descriptor import MirrorDescriptor, PatternConfig, VersionDiscoveryConfig
from patchsource.workflows.descriptor_store import DescriptorStore
from patchsource.workflows.http_utils import HttpResponse
from patchsource.workflows.mirror_source import MirrorSource
from patchsource.workflows.policy import SourcePolicy
from patchsource.workflows.sources import (
    PatchStep,
    SourceLayoutInfo,
    SourceType,
    SpeedTestResult,
    VersionEntry,
    VersionSource,
)


class FakeSource(VersionSource):
    def __init__(
        self,
        source_id,
        priority,
        *,
        official=False,
        versions=None,
        chain=None,
        available=True,
        speed=None,
    ):
        super().__init__(source_id, priority)
        self.official = official
        self.versions = versions or {}
        self.chain = chain or {}
        self.available = available
        self.speed = speed
        self.version_calls = 0

    @property
    def source_type(self):
        return SourceType.OFFICIAL if self.official else SourceType.MIRROR

    @property
    def is_available(self):
        return self.available

    def is_diff_based_branch(self, branch):
        return False

    def _url(self, branch, version):
        return f"https://{self.source_id}/{branch}/{version}.pwr"

    async def get_versions(self, os_name, arch, branch):
        self.version_calls += 1
        return [VersionEntry(v, 0, self._url(branch, v)) for v in sorted(self.versions.get(branch, []), reverse=True)]

    async def get_download_url(self, os_name, arch, branch, version):
        return self._url(branch, version) if version in self.versions.get(branch, []) else None

    async def get_diff_url(self, os_name, arch, branch, from_version, to_version):
        if (from_version, to_version) in self.chain.get(branch, []):
            return f"https://{self.source_id}/diff/{from_version}-{to_version}.pwr"
        return None

    async def get_patch_chain(self, os_name, arch, branch):
        return [
            PatchStep(a, b, f"https://{self.source_id}/diff/{a}-{b}.pwr")
            for a, b in self.chain.get(branch, [])
        ]

    def layout_info(self):
        return SourceLayoutInfo("full", "patch", "cache")

    async def _run_speed_test(self):
        return self.speed or SpeedTestResult(source_id=self.source_id, is_available=False)


def _aggregator(tmp_path, *sources) -> VersionAggregator:
    return VersionAggregator(
        tmp_path,
        list(sources),
        os_name="linux",
        arch="amd64",
        policy=SourcePolicy(app_dir=tmp_path),
    )


def test_official_entries_override_mirror_entries(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [2, 3]})
    mirror = FakeSource("mirror-a", 10, versions={"release": [1, 3, 4]})
    aggregator = _aggregator(tmp_path, mirror, official)

    response = asyncio.run(aggregator.get_version_list_with_sources("release"))

    assert [(v.version, v.source, v.is_latest) for v in response.versions] == [
        (4, SourceType.MIRROR, True),
        (3, SourceType.OFFICIAL, False),
        (2, SourceType.OFFICIAL, False),
        (1, SourceType.MIRROR, False),
    ]
    assert response.official_source_available is True
    assert aggregator.get_version_download_url("release", 3) == "https://official/release/3.pwr"
    assert aggregator.get_version_download_url("release", 4) == "https://mirror-a/release/4.pwr"
    assert aggregator.get_version_source("release", 4) is SourceType.MIRROR
    assert aggregator.get_version_source("release") is SourceType.OFFICIAL


def test_version_list_is_cached_for_ttl(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"pre-release": [5, 6]})
    aggregator = _aggregator(tmp_path, mirror)

    async def run_twice():
        first = await aggregator.get_version_list("prerelease")
        second = await aggregator.get_version_list("pre-release")
        return first, second

    first, second = asyncio.run(run_twice())

    assert first == second == [6, 5]
    assert mirror.version_calls == 1

    reloaded_source = FakeSource("mirror-a", 10, versions={"pre-release": [7]})
    reloaded = _aggregator(tmp_path, reloaded_source)
    assert asyncio.run(reloaded.get_version_list("pre-release")) == [6, 5]
    assert reloaded_source.version_calls == 0
    assert reloaded.try_get_cached_versions("pre-release", timedelta(minutes=5)) == [6, 5]
    assert reloaded.try_get_cached_versions("release", timedelta(minutes=5)) is None


def test_stale_branch_is_refetched(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1]})
    aggregator = _aggregator(tmp_path, mirror)
    asyncio.run(aggregator.get_version_list("release"))
    aggregator._snapshot.branch_fetched_at["release"] -= timedelta(minutes=30)
    mirror.versions["release"] = [1, 2]

    assert asyncio.run(aggregator.get_version_list("release")) == [2, 1]
    assert mirror.version_calls == 2


def test_failing_sources_do_not_hide_healthy_ones(monkeypatch, tmp_path) -> None:
    class BrokenSource(FakeSource):
        async def get_versions(self, os_name, arch, branch):
            self.version_calls += 1
            raise RuntimeError("index exploded")

    groupless = MirrorSource(
        MirrorDescriptor(
            id="groupless",
            priority=5,
            pattern=PatternConfig(
                base_url="https://g.example",
                version_discovery=VersionDiscoveryConfig(
                    method="html-autoindex", url="{base}/{branch}/", html_pattern=r"\d+\.pwr"
                ),
            ),
        ),
        os_name="linux",
        arch="amd64",
    )

    async def fake_fetch(self, url, **kwargs):
        return HttpResponse(url=url, status=200, content_type="text/html", text='<a href="5.pwr">5.pwr</a>')

    monkeypatch.setattr(MirrorSource, "_fetch", fake_fetch, raising=False)
    broken = BrokenSource("broken", 1)
    healthy = FakeSource("mirror-a", 10, versions={"release": [3]})
    aggregator = _aggregator(tmp_path, groupless, broken, healthy)

    assert asyncio.run(aggregator.get_version_list("release")) == [3]
    assert broken.version_calls == 1


def test_empty_refetch_keeps_cached_versions(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [7]}, chain={"release": [(0, 7)]})
    aggregator = _aggregator(tmp_path, official)
    assert asyncio.run(aggregator.get_version_list("release")) == [7]

    aggregator._snapshot.branch_fetched_at["release"] -= timedelta(minutes=30)
    official.versions["release"] = []
    official.chain["release"] = []

    assert asyncio.run(aggregator.get_version_list("release")) == [7]
    assert official.version_calls == 2
    assert aggregator.get_version_download_url("release", 7) == "https://official/release/7.pwr"
    assert aggregator.get_patch_sequence(0, 7, "release") == [7]
    assert aggregator.is_official_source_down("release") is False


def test_concurrent_requests_fetch_once(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1, 2]})
    aggregator = _aggregator(tmp_path, mirror)

    async def run_many():
        return await asyncio.gather(*(aggregator.get_version_list("release") for _ in range(4)))

    results = asyncio.run(run_many())

    assert all(r == [2, 1] for r in results)
    assert mirror.version_calls == 1


def test_snapshots_are_written(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [2]}, chain={"release": [(0, 1), (1, 2)]})
    aggregator = _aggregator(tmp_path, official)

    asyncio.run(aggregator.get_version_list("release"))

    versions = json.loads(aggregator.versions_snapshot_path.read_text(encoding="utf-8"))
    patches = json.loads(aggregator.patches_snapshot_path.read_text(encoding="utf-8"))
    assert versions["os"] == "linux" and versions["arch"] == "amd64"
    assert versions["branchSources"] == {"release": "official"}
    assert versions["official"]["branches"]["release"][0]["version"] == 2
    assert [(s["from"], s["to"]) for s in patches["patches"]["release"]] == [(0, 1), (1, 2)]


def test_official_source_down_tracks_latest_fetch(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={})
    mirror = FakeSource("mirror-a", 10, versions={"release": [3]})
    aggregator = _aggregator(tmp_path, official, mirror)

    assert aggregator.is_official_source_down("release") is False

    asyncio.run(aggregator.get_version_list("release"))
    assert aggregator.is_official_source_down("release") is True

    official.versions["release"] = [3]
    asyncio.run(aggregator.force_refresh_cache("release"))
    assert aggregator.is_official_source_down("release") is False


def test_unavailable_sources_are_skipped(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [9]}, available=False)
    mirror = FakeSource("mirror-a", 10, versions={"release": [3]})
    aggregator = _aggregator(tmp_path, official, mirror)

    assert asyncio.run(aggregator.get_version_list("release")) == [3]
    assert official.version_calls == 0


def test_patch_sequence_follows_cached_graph(tmp_path) -> None:
    official = FakeSource(
        "official", 0, official=True, versions={"release": [5]}, chain={"release": [(1, 2), (2, 3), (3, 5)]}
    )
    aggregator = _aggregator(tmp_path, official)
    asyncio.run(aggregator.get_version_list("release"))

    assert aggregator.get_patch_sequence(1, 5, "release") == [2, 3, 5]
    assert aggregator.get_patch_sequence(5, 5, "release") == []


def test_patch_sequence_falls_back_to_known_versions_then_range(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1, 4, 6, 8]})
    aggregator = _aggregator(tmp_path, mirror)

    assert aggregator.get_patch_sequence(1, 4, "release") == [2, 3, 4]

    asyncio.run(aggregator.get_version_list("release"))

    assert aggregator.get_patch_sequence(1, 8, "release") == [4, 6, 8]
    assert aggregator.get_patch_sequence(1, 7, "release") == [2, 3, 4, 5, 6, 7]


def test_refresh_and_get_download_url(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1]})
    aggregator = _aggregator(tmp_path, mirror)

    async def resolve():
        url = await aggregator.refresh_and_get_download_url("release", 1)
        entry = await aggregator.refresh_and_get_version_entry("release", 1)
        return url, entry

    url, entry = asyncio.run(resolve())

    assert url == "https://mirror-a/release/1.pwr"
    assert entry.version == 1 and entry.from_version == 0
    assert mirror.version_calls == 1

    with pytest.raises(NoSourceError):
        asyncio.run(aggregator.refresh_and_get_download_url("release", 42))
    with pytest.raises(NoSourceError):
        asyncio.run(aggregator.refresh_and_get_version_entry("release", 42))


def test_resolve_diff_url(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [3]})
    mirror = FakeSource("mirror-a", 10, versions={"release": [3]}, chain={"release": [(2, 3)]})
    aggregator = _aggregator(tmp_path, official, mirror)

    assert asyncio.run(aggregator.resolve_diff_url("release", 2, 3)) == "https://mirror-a/diff/2-3.pwr"
    with pytest.raises(NoSourceError):
        asyncio.run(aggregator.resolve_diff_url("release", 1, 3))


def test_invalidate_version_for_one_source(tmp_path) -> None:
    official = FakeSource("official", 0, official=True, versions={"release": [2]})
    mirror = FakeSource("mirror-a", 10, versions={"release": [2, 3]}, chain={"release": [(2, 3)]})
    aggregator = _aggregator(tmp_path, official, mirror)
    asyncio.run(aggregator.get_version_list("release"))

    aggregator.invalidate_version("release", 3, "mirror-a")
    aggregator.invalidate_version("release", 2, "mirror-a")

    assert aggregator.get_version_entry("release", 3) is None
    assert aggregator.get_version_download_url("release", 2) == "https://official/release/2.pwr"
    on_disk = json.loads(aggregator.versions_snapshot_path.read_text(encoding="utf-8"))
    assert on_disk["mirrors"][0]["branches"]["release"] == []
    assert on_disk["mirrors"][0]["patches"]["release"] == []

    aggregator.invalidate_version("release", 2)
    assert aggregator.get_version_entry("release", 2) is None


def test_unknown_mirrors_are_dropped_from_loaded_snapshot(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1]})
    cache = tmp_path / "Cache" / "Game" / "versions.json"
    cache.parent.mkdir(parents=True)
    cache.write_text(
        json.dumps(
            {
                "fetchedAtUtc": "2099-01-01T00:00:00Z",
                "os": "linux",
                "arch": "amd64",
                "branchFetchedAt": {"release": "2099-01-01T00:00:00Z"},
                "mirrors": [
                    {"mirrorId": "gone", "branches": {"release": [{"version": 9, "artifactUrl": "https://gone/9"}]}},
                    {"mirrorId": "mirror-a", "branches": {"release": [{"version": 1, "artifactUrl": "https://a/1"}]}},
                    {"mirrorId": "", "branches": {}},
                ],
            }
        ),
        encoding="utf-8",
    )
    aggregator = _aggregator(tmp_path, mirror)

    assert asyncio.run(aggregator.get_version_list("release")) == [1]
    assert mirror.version_calls == 0


def test_snapshot_for_other_platform_is_ignored(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1]})
    cache = tmp_path / "Cache" / "Game" / "versions.json"
    cache.parent.mkdir(parents=True)
    cache.write_text(
        json.dumps({"os": "windows", "arch": "amd64", "branchFetchedAt": {"release": "2099-01-01T00:00:00Z"}}),
        encoding="utf-8",
    )
    aggregator = _aggregator(tmp_path, mirror)

    assert asyncio.run(aggregator.get_version_list("release")) == [1]
    assert mirror.version_calls == 1


def test_select_best_mirror_and_failover(tmp_path) -> None:
    slow = FakeSource(
        "slow", 10, versions={"release": [1]},
        speed=SpeedTestResult(source_id="slow", ping_ms=50, speed_mbps=5.0, is_available=True),
    )
    fast = FakeSource(
        "fast", 20, versions={},
        speed=SpeedTestResult(source_id="fast", ping_ms=80, speed_mbps=9.0, is_available=True),
    )
    dead = FakeSource("dead", 5)
    aggregator = _aggregator(tmp_path, slow, fast, dead)

    async def run():
        best = await aggregator.select_best_mirror()
        url = await aggregator.get_mirror_download_url("release", 1)
        selected = await aggregator.get_selected_mirror()
        return best, url, selected

    best, url, selected = asyncio.run(run())

    assert best is fast
    assert url == "https://slow/release/1.pwr"
    assert selected is slow


def test_select_best_mirror_falls_back_to_first(tmp_path) -> None:
    first = FakeSource("first", 1)
    second = FakeSource("second", 2)
    aggregator = _aggregator(tmp_path, second, first)

    assert asyncio.run(aggregator.select_best_mirror()) is first
    assert asyncio.run(_aggregator(tmp_path).select_best_mirror()) is None


def test_speed_helpers(tmp_path) -> None:
    official = FakeSource(
        "official", 0, official=True,
        speed=SpeedTestResult(source_id="official", ping_ms=10, speed_mbps=20.0, is_available=True),
    )
    mirror = FakeSource("Mirror-A", 10)
    aggregator = _aggregator(tmp_path, official, mirror)

    assert asyncio.run(aggregator.test_official_speed()).speed_mbps == 20.0
    assert asyncio.run(aggregator.test_mirror_speed("mirror-a")).is_available is False
    assert asyncio.run(aggregator.test_mirror_speed("missing")) is None


def test_latest_version_status(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [3, 5]})
    aggregator = _aggregator(tmp_path, mirror)

    async def statuses():
        return (
            await aggregator.get_latest_version_status("release", 5),
            await aggregator.get_latest_version_status("release", 3),
            await aggregator.get_latest_version_status("release", None),
            await aggregator.get_latest_version_status("release", 3, client_present=False),
            await aggregator.check_latest_needs_update("release", 3),
        )

    current, outdated, unknown, missing, needs_update = asyncio.run(statuses())

    assert (current.status, current.installed_version, current.latest_version) == ("current", 5, 5)
    assert outdated.status == "update_available"
    assert (unknown.status, unknown.installed_version) == ("update_available", 0)
    assert missing.status == "not_installed"
    assert needs_update is True

    empty = _aggregator(tmp_path / "other", FakeSource("mirror-b", 10))
    assert asyncio.run(empty.get_latest_version_status("release", 1)).status == "none"


def test_reload_without_sources_clears_cache(tmp_path) -> None:
    mirror = FakeSource("mirror-a", 10, versions={"release": [1]})
    aggregator = _aggregator(tmp_path, mirror)
    asyncio.run(aggregator.get_version_list("release"))
    assert aggregator.versions_snapshot_path.exists()

    aggregator.reload_mirror_sources(DescriptorStore(tmp_path))

    assert aggregator.enabled_mirror_count() == 0
    assert aggregator.has_download_sources() is False
    assert not aggregator.versions_snapshot_path.exists()
    assert not aggregator.patches_snapshot_path.exists()
