from __future__ import annotations

import json

import pytest

from portal.errors import ConfigSaveError, ConfigVersionConflict, SectionNotFound
from portal.field_config import (
    DEFAULT_SECTION_TITLES,
    SECTION_ORDER,
    FieldConfigStore,
    FieldDescriptor,
    parse_section,
)
from tests.conftest import WEEKLY_FIELDS


def test_missing_file_falls_back_to_defaults(tmp_path) -> None:
    store = FieldConfigStore(tmp_path / "nope.json")
    configs = store.load()
    assert list(configs) == SECTION_ORDER
    assert store.section_title("weekly-reports") == DEFAULT_SECTION_TITLES["weekly-reports"]
    assert store.tracker_id("weekly-reports") is None
    assert store.version() is None


def test_corrupt_file_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "field-configs.json"
    path.write_text("{not json", encoding="utf-8")
    store = FieldConfigStore(path)
    assert set(store.load()) == set(SECTION_ORDER)


def test_get_section_unknown_raises(store) -> None:
    with pytest.raises(SectionNotFound):
        store.get_section("no-such-section")


def test_get_section_returns_stored_descriptors(store) -> None:
    fields = store.get_section("weekly-reports")
    assert [f.external_key for f in fields] == [f["externalKey"] for f in WEEKLY_FIELDS]
    assert fields[0].reference_id == 3
    assert fields[5].options == ["작성중", "제출", "승인"]
    assert store.tracker_id("weekly-reports") == 77


def test_descriptor_accepts_legacy_codebeamer_id_key() -> None:
    d = FieldDescriptor.model_validate({"id": 1, "name": "제목", "codebeamerId": "name", "referenceId": "3"})
    assert d.external_key == "name"
    assert d.reference_id == 3
    assert d.to_json()["externalKey"] == "name"
    assert "options" not in d.to_json()


def test_parse_section_lenient_drops_duplicates_and_bad_entries() -> None:
    fields = parse_section(
        [
            {"id": 1, "name": "A", "externalKey": "a"},
            {"id": 1, "name": "B", "externalKey": "b"},
            {"id": 2, "name": "C", "externalKey": "a"},
            {"name": "no id", "externalKey": "x"},
            {"id": 3, "name": "D", "externalKey": "d", "type": "weird"},
        ]
    )
    assert [f.external_key for f in fields] == ["a", "d"]
    assert fields[1].type == "string"


def test_parse_section_strict_rejects_duplicate_ids() -> None:
    with pytest.raises(ConfigSaveError):
        parse_section(
            [{"id": 1, "name": "A", "externalKey": "a"}, {"id": 1, "name": "B", "externalKey": "b"}],
            strict=True,
            section="weekly-reports",
        )


def test_save_then_load_round_trips(store) -> None:
    edited = [dict(f) for f in WEEKLY_FIELDS[:3]]
    doc = store.save_or_raise({"weekly-reports": edited}, tracker_ids={"weekly-reports": "88"})
    assert doc.last_updated

    fresh = FieldConfigStore(store.path)
    assert [f.name for f in fresh.get_section("weekly-reports")] == ["제목", "상태", "작성자"]
    assert fresh.tracker_id("weekly-reports") == 88
    assert fresh.version() == doc.last_updated
    # 저장에 없던 기본 섹션은 읽을 때 다시 채워진다.
    assert "external-training" in fresh.load()


def test_save_writes_whole_document(store) -> None:
    store.save_or_raise({"weekly-reports": WEEKLY_FIELDS})
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert set(raw) == {"fieldConfigs", "sectionTitles", "trackerIds", "lastUpdated"}
    assert raw["trackerIds"] == {"weekly-reports": 77}
    assert not list(store.path.parent.glob("*.tmp"))


def test_save_with_stale_version_conflicts(store) -> None:
    current = store.version()
    store.save_or_raise({"weekly-reports": WEEKLY_FIELDS}, expected_version=current)
    with pytest.raises(ConfigVersionConflict):
        store.save_or_raise({"weekly-reports": WEEKLY_FIELDS}, expected_version=current)


def test_save_rejects_invalid_map_and_keeps_file(store) -> None:
    before = store.path.read_text(encoding="utf-8")
    assert store.save({"weekly-reports": "not a list"}) is False
    assert store.path.read_text(encoding="utf-8") == before


def test_save_write_failure_is_reported(tmp_path, monkeypatch) -> None:
    store = FieldConfigStore(tmp_path / "cfg.json")

    def boom(payload):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_atomic_json", boom)
    with pytest.raises(ConfigSaveError) as exc:
        store.save_or_raise({"weekly-reports": WEEKLY_FIELDS})
    assert isinstance(exc.value.__cause__, OSError)
    assert not store.path.exists()
