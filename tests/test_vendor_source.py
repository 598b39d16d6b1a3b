import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta

from patchsource.workflows.http_utils import HttpResponse
from patchsource.workflows.sources import PatchKey, PatchStep
from patchsource.workflows.source_utils import utc_now
from patchsource.workflows.vendor_source import VendorSource, parse_steps


@dataclass
class FakeSession:
    access_token: str


class FakeAuth:
    def __init__(self, token="t1"):
        self.session = FakeSession(token) if token else None
        self.refreshes = 0

    @property
    def current_session(self):
        return self.session

    async def get_valid_official_session(self):
        return self.session

    async def force_refresh(self):
        self.refreshes += 1
        self.session = FakeSession(f"t{self.refreshes + 1}")
        return True


@dataclass
class FakeProfile:
    name: str
    is_official: bool


class FakeProfiles:
    def __init__(self, *profiles):
        self.profiles = list(profiles)


STEPS_PAYLOAD = {
    "steps": [
        {"from": 0, "to": 1, "pwr": "https://cdn/1.pwr"},
        {"from": 1, "to": 2, "pwr": "https://cdn/2.pwr", "pwrHead": "https://cdn/2.head", "sig": "https://cdn/2.sig"},
    ]
}


def _ok(url, payload):
    return HttpResponse(url=url, status=200, content_type="application/json", text=json.dumps(payload))


def _vendor(tmp_path, auth, profiles=None) -> VendorSource:
    return VendorSource(tmp_path, auth, profiles, api_base="https://api.example", os_name="linux", arch="amd64")


def test_parse_steps_skips_malformed_items() -> None:
    steps = parse_steps(
        {
            "steps": [
                {"from": 0, "to": 3, "pwr": "https://cdn/3.pwr", "sig": ""},
                {"from": 0, "pwr": "https://cdn/missing-to.pwr"},
                {"from": 0, "to": 4},
                "junk",
            ]
        }
    )

    assert steps == [PatchStep(from_version=0, to_version=3, artifact_url="https://cdn/3.pwr")]
    assert parse_steps({"steps": "nope"}) == []
    assert parse_steps(None) == []


def test_patches_url_layout(tmp_path) -> None:
    vendor = _vendor(tmp_path, FakeAuth())

    assert vendor.patches_url("linux", "amd64", "release", 0) == "https://api.example/patches/linux/amd64/release/0"


def test_auth_expiry_refreshes_once_and_retries(tmp_path, monkeypatch) -> None:
    auth = FakeAuth()
    vendor = _vendor(tmp_path, auth)
    stale_key = PatchKey("linux", "amd64", "pre-release", 1)
    vendor._cache[stale_key] = (utc_now(), [PatchStep(0, 1, "https://old/1.pwr")])
    seen_tokens = []

    async def fake_fetch(self, url, *, headers=None, **kwargs):
        token = headers["Authorization"].split(" ", 1)[1]
        seen_tokens.append(token)
        if token == "t1":
            return HttpResponse(url=url, status=401, content_type="text/plain", text="expired")
        return _ok(url, STEPS_PAYLOAD)

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    steps = asyncio.run(vendor.get_patch_chain("linux", "amd64", "release"))

    assert [(s.from_version, s.to_version) for s in steps] == [(0, 1), (1, 2)]
    assert seen_tokens == ["t1", "t2"]
    assert auth.refreshes == 1
    assert stale_key not in vendor._cache


def test_persistent_auth_failure_stops_after_two_attempts(tmp_path, monkeypatch) -> None:
    auth = FakeAuth()
    vendor = _vendor(tmp_path, auth)
    calls = {"count": 0}

    async def fake_fetch(self, url, **kwargs):
        calls["count"] += 1
        return HttpResponse(url=url, status=403, content_type="text/plain", text="forbidden")

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    steps = asyncio.run(vendor.get_patch_chain("linux", "amd64", "release"))

    assert steps == []
    assert calls["count"] == 2
    assert auth.refreshes == 1


def test_missing_session_returns_empty_without_request(tmp_path, monkeypatch) -> None:
    auth = FakeAuth(token=None)
    vendor = _vendor(tmp_path, auth)

    async def fail_fetch(self, url, **kwargs):
        raise AssertionError("no request expected without a session")

    monkeypatch.setattr(VendorSource, "_fetch", fail_fetch, raising=False)

    assert asyncio.run(vendor.get_versions("linux", "amd64", "release")) == []
    assert auth.refreshes == 0
    assert vendor.is_available is False


def test_server_error_is_not_retried(tmp_path, monkeypatch) -> None:
    auth = FakeAuth()
    vendor = _vendor(tmp_path, auth)
    calls = {"count": 0}

    async def fake_fetch(self, url, **kwargs):
        calls["count"] += 1
        return HttpResponse(url=url, status=500, content_type="text/plain", text="boom")

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    assert asyncio.run(vendor.get_patch_chain("linux", "amd64", "release")) == []
    assert calls["count"] == 1
    assert auth.refreshes == 0


def test_non_json_body_is_not_cached(tmp_path, monkeypatch) -> None:
    auth = FakeAuth()
    vendor = _vendor(tmp_path, auth)
    calls = {"count": 0}

    async def fake_fetch(self, url, **kwargs):
        calls["count"] += 1
        return HttpResponse(url=url, status=200, content_type="text/html", text="<html>maintenance</html>")

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    async def run_twice():
        first = await vendor.get_patch_chain("linux", "amd64", "release")
        second = await vendor.get_patch_chain("linux", "amd64", "release")
        return first, second

    assert asyncio.run(run_twice()) == ([], [])
    assert calls["count"] == 2
    assert auth.refreshes == 0
    assert vendor._cache == {}

def test_steps_are_cached_within_ttl(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth())
    calls = {"count": 0}

    async def fake_fetch(self, url, **kwargs):
        calls["count"] += 1
        return _ok(url, STEPS_PAYLOAD)

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    async def run_twice():
        await vendor.get_patch_chain("linux", "amd64", "release")
        return await vendor.get_patch_chain("linux", "amd64", "release")

    steps = asyncio.run(run_twice())

    assert calls["count"] == 1
    assert len(steps) == 2


def test_expired_cache_entry_is_refetched(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth())
    key = PatchKey("linux", "amd64", "release", 1)
    vendor._cache[key] = (utc_now() - timedelta(minutes=20), [PatchStep(0, 1, "https://old/1.pwr")])

    async def fake_fetch(self, url, **kwargs):
        return _ok(url, STEPS_PAYLOAD)

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    steps = asyncio.run(vendor.get_patch_chain("linux", "amd64", "release"))

    assert steps[0].artifact_url == "https://cdn/1.pwr"


def test_versions_report_newest_build_and_cache_chain(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth())
    requested = []

    async def fake_fetch(self, url, **kwargs):
        requested.append(url.rsplit("/", 1)[-1])
        if url.endswith("/0"):
            return _ok(url, {"steps": [{"from": 0, "to": 2, "pwr": "https://cdn/full-2.pwr"}]})
        return _ok(url, STEPS_PAYLOAD)

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    async def run():
        entries = await vendor.get_versions("linux", "amd64", "release")
        await vendor.wait_for_background()
        return entries

    entries = asyncio.run(run())

    assert [(e.version, e.from_version, e.artifact_url) for e in entries] == [(2, 0, "https://cdn/full-2.pwr")]
    assert requested == ["0", "1"]
    snapshot = json.loads(vendor.patches_snapshot_path.read_text(encoding="utf-8"))
    assert snapshot["os"] == "linux"
    assert [(s["from"], s["to"]) for s in snapshot["patches"]["release"]] == [(0, 1), (1, 2)]


def test_diff_url_uses_from_build(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth())
    requested = []

    async def fake_fetch(self, url, **kwargs):
        requested.append(url)
        return _ok(url, STEPS_PAYLOAD)

    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)

    url = asyncio.run(vendor.get_diff_url("linux", "amd64", "release", 1, 2))

    assert url == "https://cdn/2.pwr"
    assert requested == ["https://api.example/patches/linux/amd64/release/1"]


def test_available_through_official_profile_session_file(tmp_path) -> None:
    profiles = FakeProfiles(FakeProfile("Offline", False), FakeProfile("Main: Account", True))
    vendor = _vendor(tmp_path, FakeAuth(token=None), profiles)

    assert vendor.is_available is False

    session_file = tmp_path / "Profiles" / "Main_ Account" / "hytale_session.json"
    session_file.parent.mkdir(parents=True)
    session_file.write_text("{}", encoding="utf-8")

    assert vendor.is_available is True


def test_speed_test_sends_bearer_token_and_is_cached(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth())
    seen = {"ping": [], "download": []}

    async def fake_ping(self, url, *, headers=None, timeout=5):
        seen["ping"].append((url, dict(headers or {})))
        return True, 12

    async def fake_fetch(self, url, **kwargs):
        return _ok(url, STEPS_PAYLOAD)

    async def fake_measure(self, url, *, size_bytes, headers=None, timeout=30):
        seen["download"].append((url, size_bytes, dict(headers or {})))
        return 2 * 1024 * 1024, 1.0

    monkeypatch.setattr(VendorSource, "_ping", fake_ping, raising=False)
    monkeypatch.setattr(VendorSource, "_fetch", fake_fetch, raising=False)
    monkeypatch.setattr(VendorSource, "_measure_download", fake_measure, raising=False)

    async def run():
        first = await vendor.test_speed()
        second = await vendor.test_speed()
        await vendor.wait_for_background()
        return first, second

    first, second = asyncio.run(run())

    assert first is second
    assert first.is_available is True
    assert first.ping_ms == 12
    assert first.speed_mbps == 2.0
    assert len(seen["ping"]) == 1
    ping_url, ping_headers = seen["ping"][0]
    assert ping_url == "https://api.example"
    assert ping_headers["Authorization"] == "Bearer t1"
    assert len(seen["download"]) == 1
    download_url, size_bytes, download_headers = seen["download"][0]
    assert download_url == "https://cdn/2.pwr"
    assert size_bytes == 10 * 1024 * 1024
    assert download_headers["Authorization"] == "Bearer t1"
    assert vendor.cached_speed() is first


def test_speed_test_without_session_is_unavailable(tmp_path, monkeypatch) -> None:
    vendor = _vendor(tmp_path, FakeAuth(token=None))

    async def fail_ping(self, url, **kwargs):
        raise AssertionError("no request without a session")

    monkeypatch.setattr(VendorSource, "_ping", fail_ping, raising=False)

    result = asyncio.run(vendor.test_speed())

    assert result.is_available is False
    assert result.speed_mbps == 0.0
