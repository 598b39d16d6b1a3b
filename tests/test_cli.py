import json

from typer.testing import CliRunner

from patchsource.cli import app
from patchsource.workflows.aggregator import VersionAggregator, VersionInfo, VersionListResponse
from patchsource.workflows.descriptor import JsonIndexConfig, MirrorDescriptor, PatternConfig
from patchsource.workflows.descriptor_store import DescriptorStore
from patchsource.workflows.discovery import DiscoveryResult, MirrorDiscovery
from patchsource.workflows.sources import SourceType

runner = CliRunner()


def _use_app_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("PATCHSOURCE_APP_DIR", str(tmp_path))
    monkeypatch.setenv("PATCHSOURCE_DISABLE_VENDOR", "1")


def test_no_args_prints_minimal_help() -> None:
    result = runner.invoke(app, [])

    assert result.exit_code == 0
    assert "patchsource discover <url>" in result.stdout


def test_find_and_help_full() -> None:
    found = runner.invoke(app, ["--find", "speed"])
    full = runner.invoke(app, ["--help-full"])

    assert found.exit_code == 0
    assert "command speed" in found.stdout
    assert full.exit_code == 0
    assert "PATCHSOURCE_APP_DIR" in full.stdout


def test_mirrors_json_lists_descriptors(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)
    DescriptorStore(tmp_path).save(
        MirrorDescriptor(id="alpha", name="Alpha", pattern=PatternConfig(base_url="https://alpha.example"))
    )

    result = runner.invoke(app, ["mirrors", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [d["id"] for d in payload] == ["alpha"]


def test_delete_reports_missing_mirror(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)
    DescriptorStore(tmp_path).save(
        MirrorDescriptor(id="alpha", pattern=PatternConfig(base_url="https://alpha.example"))
    )

    deleted = runner.invoke(app, ["delete", "alpha"])
    missing = runner.invoke(app, ["delete", "alpha"])

    assert deleted.exit_code == 0
    assert missing.exit_code == 2


def test_speed_without_mirrors(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)

    as_json = runner.invoke(app, ["speed", "--json"])
    plain = runner.invoke(app, ["speed"])

    assert as_json.exit_code == 0
    assert json.loads(as_json.stdout) == []
    assert plain.exit_code == 0
    assert "No enabled mirrors" in plain.stdout
    assert not DescriptorStore(tmp_path).exists("alpha")


def test_doctor_runs_against_app_dir(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)

    result = runner.invoke(app, ["doctor"])

    assert result.exit_code == 0
    assert "patchsource doctor" in result.stdout
    assert "PATCHSOURCE_APP_DIR: ok" in result.stdout


def test_discover_save_writes_descriptor(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)
    descriptor = MirrorDescriptor(
        id="x-example",
        name="X",
        source_type="json-index",
        json_index=JsonIndexConfig(api_url="https://x.example/api.json"),
    )

    async def fake_discover(self, url):
        return DiscoveryResult(success=True, mirror=descriptor, detected_type="json-index")

    monkeypatch.setattr(MirrorDiscovery, "discover", fake_discover, raising=False)

    result = runner.invoke(app, ["discover", "https://x.example", "--save", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["detected_type"] == "json-index"
    assert DescriptorStore(tmp_path).get("x-example") == descriptor


def test_discover_failure_exits_2(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)

    async def fake_discover(self, url):
        return DiscoveryResult(success=False, error="nothing matched")

    monkeypatch.setattr(MirrorDiscovery, "discover", fake_discover, raising=False)

    result = runner.invoke(app, ["discover", "https://nothing.example"])

    assert result.exit_code == 2


def test_versions_json(monkeypatch, tmp_path) -> None:
    _use_app_dir(monkeypatch, tmp_path)
    seen = {}

    async def fake_versions(self, branch):
        seen["branch"] = branch
        seen["os"] = self._os
        return VersionListResponse(
            versions=[VersionInfo(version=4, source=SourceType.MIRROR, is_latest=True)],
            enabled_mirror_count=1,
        )

    monkeypatch.setattr(VersionAggregator, "get_version_list_with_sources", fake_versions, raising=False)

    result = runner.invoke(app, ["versions", "pre-release", "--os", "windows", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["versions"] == [{"version": 4, "source": "mirror", "is_latest": True}]
    assert seen == {"branch": "pre-release", "os": "windows"}
