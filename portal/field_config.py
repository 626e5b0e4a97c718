# -*- coding: utf-8 -*-
"""Section field configuration: descriptors, built-in defaults and the file-backed store."""

from __future__ import annotations

import copy
import datetime as dt
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .errors import ConfigLoadError, ConfigSaveError, ConfigVersionConflict, SectionNotFound

LOG = logging.getLogger(__name__)

FIELD_TYPES = ("string", "number", "calendar", "selector", "textarea", "attachment")
FIELD_TYPE_SET = set(FIELD_TYPES)

SECTION_ORDER = [
    "weekly-reports",
    "travel-reports",
    "hardware-management",
    "equipment-management",
    "external-training",
]

DEFAULT_SECTION_TITLES: Dict[str, str] = {
    "weekly-reports": "주간보고",
    "travel-reports": "출장보고",
    "hardware-management": "하드웨어 관리",
    "equipment-management": "장비 관리",
    "external-training": "외부 교육",
}

REPORT_STATUS = ["작성중", "제출", "승인"]
HARDWARE_STAGES = ["개발", "검증", "양산"]
EQUIPMENT_STATUS = ["사용중", "보관", "수리중", "폐기"]
TRAINING_TYPES = ["온라인", "오프라인", "세미나"]


class FieldDescriptor(BaseModel):
    """One form field / table column of a section."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    name: str
    external_key: str = Field(
        validation_alias=AliasChoices("externalKey", "codebeamerId", "external_key"),
        serialization_alias="externalKey",
    )
    type: str = "string"
    required: bool = False
    readonly: bool = False
    options: List[str] = Field(default_factory=list)
    reference_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("referenceId", "reference_id"),
        serialization_alias="referenceId",
    )

    def to_json(self) -> Dict[str, Any]:
        out = self.model_dump(by_alias=True)
        if self.type != "selector":
            out.pop("options", None)
        return out


SectionMap = Dict[str, List[FieldDescriptor]]


def _f(fid: int, name: str, key: str, ftype: str = "string", **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": fid, "name": name, "externalKey": key, "type": ftype}
    out.update(extra)
    return out


# 기본 필드(name=3, status=7, description=80)는 CodeBeamer 표준 필드 ID.
# custom_field_* 의 referenceId 는 트래커 필드 동기화 후 관리자 화면에서 채운다.
DEFAULT_FIELD_CONFIGS: Dict[str, List[Dict[str, Any]]] = {
    "weekly-reports": [
        _f(1, "제목", "name", required=True, referenceId=3),
        _f(2, "상태", "status", readonly=True, referenceId=7),
        _f(3, "보고 주차", "custom_field_1001", "calendar", required=True),
        _f(4, "작성자", "custom_field_1002", required=True),
        _f(5, "진행 단계", "custom_field_1003", "selector", options=REPORT_STATUS),
        _f(6, "금주 실적", "custom_field_1004", "textarea"),
        _f(7, "차주 계획", "custom_field_1005", "textarea"),
        _f(8, "비고", "description", "textarea", referenceId=80),
        _f(9, "첨부파일", "attachments", "attachment"),
    ],
    "travel-reports": [
        _f(1, "제목", "name", required=True, referenceId=3),
        _f(2, "상태", "status", readonly=True, referenceId=7),
        _f(3, "출장지", "custom_field_2001", required=True),
        _f(4, "출발일", "custom_field_2002", "calendar", required=True),
        _f(5, "복귀일", "custom_field_2003", "calendar"),
        _f(6, "출장비(원)", "custom_field_2004", "number"),
        _f(7, "출장 목적", "description", "textarea", required=True, referenceId=80),
        _f(8, "첨부파일", "attachments", "attachment"),
    ],
    "hardware-management": [
        _f(1, "하드웨어명", "name", required=True, referenceId=3),
        _f(2, "상태", "status", readonly=True, referenceId=7),
        _f(3, "HW 버전", "custom_field_3001", required=True),
        _f(4, "개발 단계", "custom_field_3002", "selector", options=HARDWARE_STAGES),
        _f(5, "릴리즈일", "custom_field_3003", "calendar"),
        _f(6, "변경 내역", "description", "textarea", referenceId=80),
    ],
    "equipment-management": [
        _f(1, "장비명", "name", required=True, referenceId=3),
        _f(2, "상태", "status", readonly=True, referenceId=7),
        _f(3, "자산번호", "custom_field_4001", required=True),
        _f(4, "수량", "custom_field_4002", "number"),
        _f(5, "사용 상태", "custom_field_4003", "selector", options=EQUIPMENT_STATUS),
        _f(6, "구매일", "custom_field_4004", "calendar"),
        _f(7, "비고", "description", "textarea", referenceId=80),
    ],
    "external-training": [
        _f(1, "교육명", "name", required=True, referenceId=3),
        _f(2, "상태", "status", readonly=True, referenceId=7),
        _f(3, "교육 기관", "custom_field_5001", required=True),
        _f(4, "교육 형태", "custom_field_5002", "selector", options=TRAINING_TYPES),
        _f(5, "시작일", "custom_field_5003", "calendar", required=True),
        _f(6, "교육 시간(h)", "custom_field_5004", "number"),
        _f(7, "교육 내용", "description", "textarea", referenceId=80),
        _f(8, "수료증", "attachments", "attachment"),
    ],
}


def _clean_field_type(value: Any) -> str:
    t = str(value or "string").strip().lower()
    return t if t in FIELD_TYPE_SET else "string"


def _clean_reference_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        ref = int(str(value).strip())
    except ValueError:
        return None
    return ref if ref > 0 else None


def _clean_field_def(obj: Any) -> Optional[Dict[str, Any]]:
    if isinstance(obj, FieldDescriptor):
        return obj.to_json()
    if not isinstance(obj, Mapping):
        return None
    key = str(obj.get("externalKey") or obj.get("codebeamerId") or obj.get("external_key") or "").strip()
    name = str(obj.get("name") or "").strip()
    try:
        fid = int(obj.get("id"))
    except (TypeError, ValueError):
        return None
    if not key or not name:
        return None
    ftype = _clean_field_type(obj.get("type"))
    out: Dict[str, Any] = {
        "id": fid,
        "name": name,
        "externalKey": key,
        "type": ftype,
        "required": bool(obj.get("required")),
        "readonly": bool(obj.get("readonly")),
        "referenceId": _clean_reference_id(obj.get("referenceId", obj.get("reference_id"))),
    }
    if ftype == "selector":
        raw_opts = obj.get("options") or []
        if isinstance(raw_opts, list):
            out["options"] = [str(x).strip() for x in raw_opts if str(x).strip()]
    return out


def parse_section(raw_fields: Iterable[Any], *, strict: bool = False, section: str = "") -> List[FieldDescriptor]:
    """Clean one section's raw field list.

    Duplicate ids or external keys raise ConfigSaveError when `strict`,
    otherwise the later duplicate is dropped with a warning.
    """
    out: List[FieldDescriptor] = []
    seen_ids: set[int] = set()
    seen_keys: set[str] = set()
    for raw in raw_fields or []:
        cleaned = _clean_field_def(raw)
        if cleaned is None:
            if strict:
                raise ConfigSaveError(f"{section}: invalid field definition {raw!r}")
            LOG.warning("Skip invalid field definition in '%s': %r", section, raw)
            continue
        dup = None
        if cleaned["id"] in seen_ids:
            dup = f"duplicate field id {cleaned['id']}"
        elif cleaned["externalKey"] in seen_keys:
            dup = f"duplicate externalKey '{cleaned['externalKey']}'"
        if dup:
            if strict:
                raise ConfigSaveError(f"{section}: {dup}")
            LOG.warning("Drop field in '%s': %s", section, dup)
            continue
        seen_ids.add(cleaned["id"])
        seen_keys.add(cleaned["externalKey"])
        out.append(FieldDescriptor.model_validate(cleaned))
    return out


def default_field_configs() -> SectionMap:
    return {section: parse_section(copy.deepcopy(fields), section=section) for section, fields in DEFAULT_FIELD_CONFIGS.items()}


def section_map_to_json(section_map: Mapping[str, List[FieldDescriptor]]) -> Dict[str, List[Dict[str, Any]]]:
    return {section: [f.to_json() for f in fields] for section, fields in section_map.items()}


@dataclass
class ConfigDocument:
    field_configs: SectionMap
    section_titles: Dict[str, str] = field(default_factory=dict)
    tracker_ids: Dict[str, int] = field(default_factory=dict)
    last_updated: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "fieldConfigs": section_map_to_json(self.field_configs),
            "sectionTitles": dict(self.section_titles),
            "trackerIds": dict(self.tracker_ids),
            "lastUpdated": self.last_updated,
        }


def _clean_tracker_ids(raw: Any) -> Dict[str, int]:
    out: Dict[str, int] = {}
    if not isinstance(raw, Mapping):
        return out
    for section, value in raw.items():
        tid = _clean_reference_id(value)
        if tid is not None:
            out[str(section)] = tid
    return out


def _clean_titles(raw: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not isinstance(raw, Mapping):
        return out
    for section, title in raw.items():
        text = str(title or "").strip()
        if text:
            out[str(section)] = text
    return out


def default_document() -> ConfigDocument:
    return ConfigDocument(
        field_configs=default_field_configs(),
        section_titles=dict(DEFAULT_SECTION_TITLES),
        tracker_ids={},
        last_updated=None,
    )


class FieldConfigStore:
    """File-backed section map. Every save replaces the whole document."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    # -------------------------
    # read
    # -------------------------
    def _read_document(self) -> ConfigDocument:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigLoadError(f"{self.path} not found") from exc
        except (OSError, ValueError) as exc:
            raise ConfigLoadError(f"{self.path} unreadable: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("fieldConfigs"), dict):
            raise ConfigLoadError(f"{self.path} has no fieldConfigs mapping")

        defaults = default_document()
        configs: SectionMap = {}
        for section, fields in raw["fieldConfigs"].items():
            if isinstance(fields, list):
                configs[str(section)] = parse_section(fields, section=str(section))
        for section, fields in defaults.field_configs.items():
            configs.setdefault(section, fields)

        titles = dict(defaults.section_titles)
        titles.update(_clean_titles(raw.get("sectionTitles")))
        last_updated = raw.get("lastUpdated")
        return ConfigDocument(
            field_configs=configs,
            section_titles=titles,
            tracker_ids=_clean_tracker_ids(raw.get("trackerIds")),
            last_updated=str(last_updated) if last_updated else None,
        )

    def load_document(self) -> ConfigDocument:
        try:
            return self._read_document()
        except ConfigLoadError as e:
            if self.path.exists():
                LOG.warning("Field config load failed, using defaults: %s", e)
            else:
                LOG.info("No field config file at %s; using defaults.", self.path)
            return default_document()

    def load(self) -> SectionMap:
        return self.load_document().field_configs

    def get_section(self, name: str) -> List[FieldDescriptor]:
        configs = self.load()
        if name not in configs:
            raise SectionNotFound(name)
        return list(configs[name])

    def tracker_id(self, section: str) -> Optional[int]:
        return self.load_document().tracker_ids.get(section)

    def section_title(self, section: str) -> str:
        return self.load_document().section_titles.get(section, section)

    def version(self) -> Optional[str]:
        return self.load_document().last_updated

    # -------------------------
    # write
    # -------------------------
    def save(
        self,
        section_map: Mapping[str, Iterable[Any]],
        *,
        section_titles: Optional[Mapping[str, str]] = None,
        tracker_ids: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[str] = None,
    ) -> bool:
        try:
            self.save_or_raise(
                section_map,
                section_titles=section_titles,
                tracker_ids=tracker_ids,
                expected_version=expected_version,
            )
        except ConfigSaveError as e:
            LOG.warning("Field config save failed: %s", e)
            return False
        return True

    def save_or_raise(
        self,
        section_map: Mapping[str, Iterable[Any]],
        *,
        section_titles: Optional[Mapping[str, str]] = None,
        tracker_ids: Optional[Mapping[str, Any]] = None,
        expected_version: Optional[str] = None,
    ) -> ConfigDocument:
        if not isinstance(section_map, Mapping):
            raise ConfigSaveError("fieldConfigs must be an object of section -> field list")
        configs: SectionMap = {}
        for section, fields in section_map.items():
            if not isinstance(fields, (list, tuple)):
                raise ConfigSaveError(f"{section}: field list expected")
            configs[str(section)] = parse_section(fields, strict=True, section=str(section))

        # 같은 프로세스 안에서는 저장을 직렬화한다. 프로세스 간에는 expected_version 으로만 보호된다.
        with self._lock:
            current = self.load_document()
            if expected_version is not None and expected_version != current.last_updated:
                raise ConfigVersionConflict(expected_version, current.last_updated)

            titles = dict(current.section_titles)
            if section_titles is not None:
                titles.update(_clean_titles(section_titles))
            trackers = current.tracker_ids if tracker_ids is None else _clean_tracker_ids(tracker_ids)

            doc = ConfigDocument(
                field_configs=configs,
                section_titles=titles,
                tracker_ids=dict(trackers),
                last_updated=dt.datetime.now(dt.timezone.utc).isoformat(timespec="microseconds"),
            )
            try:
                self._write_atomic_json(doc.to_json())
            except OSError as e:
                raise ConfigSaveError(f"write {self.path} failed: {e}") from e
        LOG.info("Saved field configs (%d sections) to %s", len(configs), self.path)
        return doc

    def _write_atomic_json(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            prefix=f"{self.path.stem}.",
            suffix=".tmp",
            dir=str(self.path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
