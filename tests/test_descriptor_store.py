import json

import pytest

from patchsource.workflows.descriptor import JsonIndexConfig, MirrorDescriptor, PatternConfig
from patchsource.workflows.descriptor_store import DescriptorStore
from patchsource.workflows.mirror_source import MirrorSource


def _descriptor(mirror_id: str, priority: int = 100, enabled: bool = True) -> MirrorDescriptor:
    return MirrorDescriptor(
        id=mirror_id,
        name=mirror_id.title(),
        priority=priority,
        enabled=enabled,
        source_type="pattern",
        pattern=PatternConfig(base_url=f"https://{mirror_id}.example"),
    )


def test_save_then_load_round_trips(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    original = _descriptor("alpha", priority=5)

    path = store.save(original)

    assert path == tmp_path / "Mirrors" / "alpha.mirror.json"
    assert store.exists("alpha")
    assert store.get("alpha") == original
    assert store.load_descriptors() == [original]


def test_load_sorts_by_priority_and_skips_disabled(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("slow", priority=50))
    store.save(_descriptor("fast", priority=10))
    store.save(_descriptor("off", priority=1, enabled=False))

    loaded = store.load_descriptors()

    assert [d.id for d in loaded] == ["fast", "slow"]
    assert [d.id for d in store.list_descriptors()] == ["off", "fast", "slow"]


def test_invalid_files_are_skipped(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("good"))
    mirrors = tmp_path / "Mirrors"
    (mirrors / "broken.mirror.json").write_text("{not json", encoding="utf-8")
    (mirrors / "array.mirror.json").write_text("[]", encoding="utf-8")
    (mirrors / "mixed.mirror.json").write_text(
        json.dumps(
            {
                "id": "mixed",
                "sourceType": "pattern",
                "pattern": {"baseUrl": "https://a"},
                "jsonIndex": {"apiUrl": "https://a/api"},
            }
        ),
        encoding="utf-8",
    )

    assert [d.id for d in store.load_descriptors()] == ["good"]


def test_duplicate_ids_first_file_wins(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("dup", priority=7))
    copy = _descriptor("dup", priority=99).to_dict()
    (tmp_path / "Mirrors" / "zz-copy.mirror.json").write_text(json.dumps(copy), encoding="utf-8")

    loaded = store.load_descriptors()

    assert len(loaded) == 1
    assert loaded[0].priority == 7


def test_save_rejects_bad_ids(tmp_path) -> None:
    store = DescriptorStore(tmp_path)

    with pytest.raises(ValueError):
        store.save(_descriptor(""))
    with pytest.raises(ValueError):
        store.save(_descriptor("../escape"))


def test_save_rejects_id_claimed_by_another_file(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    mirrors = tmp_path / "Mirrors"
    mirrors.mkdir()
    (mirrors / "legacy.mirror.json").write_text(json.dumps(_descriptor("taken").to_dict()), encoding="utf-8")

    with pytest.raises(ValueError):
        store.save(_descriptor("taken"))


def test_save_overwrites_its_own_file(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("alpha", priority=5))

    store.save(_descriptor("alpha", priority=6))

    assert store.get("alpha").priority == 6


def test_delete(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("alpha"))

    assert store.delete("alpha") is True
    assert store.exists("alpha") is False
    assert store.delete("alpha") is False
    assert store.delete("../alpha") is False


def test_load_all_builds_sources(tmp_path) -> None:
    store = DescriptorStore(tmp_path)
    store.save(_descriptor("beta", priority=20))
    store.save(
        MirrorDescriptor(
            id="index",
            priority=10,
            source_type="json-index",
            json_index=JsonIndexConfig(api_url="https://index.example/api.json"),
        )
    )

    sources = store.load_all(os_name="linux", arch="amd64")

    assert [s.source_id for s in sources] == ["index", "beta"]
    assert all(isinstance(s, MirrorSource) for s in sources)
    assert sources[0].is_json_index


def test_missing_directory_is_created_empty(tmp_path) -> None:
    store = DescriptorStore(tmp_path / "app")

    assert store.load_descriptors() == []
    assert store.mirrors_dir.is_dir()
