"""Downstream records and their custom-field values.

CodeBeamer shapes custom-field values inconsistently: a plain scalar, a
``{"name": ...}`` choice object, or a ``values`` array of choices. The shape is
resolved once here into a FieldValue so the rest of the portal matches on a
type instead of probing dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class Scalar:
    text: str

    def display(self) -> str:
        return self.text

    def search_terms(self) -> List[str]:
        return [self.text]


@dataclass(frozen=True)
class Choice:
    name: str

    def display(self) -> str:
        return self.name

    def search_terms(self) -> List[str]:
        return [self.name]


@dataclass(frozen=True)
class MultiChoice:
    names: Tuple[str, ...]

    def display(self) -> str:
        return self.names[0] if self.names else ""

    def search_terms(self) -> List[str]:
        return list(self.names)


FieldValue = Union[Scalar, Choice, MultiChoice]


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _choice_name(value: Any) -> str:
    if isinstance(value, Mapping) and value.get("name"):
        return str(value["name"])
    return _scalar_text(value)


def parse_field_value(entry: Mapping[str, Any]) -> Optional[FieldValue]:
    value = entry.get("value")
    if isinstance(value, str):
        return Scalar(value)
    if isinstance(value, Mapping) and value.get("name"):
        return Choice(str(value["name"]))
    values = entry.get("values")
    if isinstance(values, list) and values:
        return MultiChoice(tuple(_choice_name(v) for v in values if v is not None))
    if isinstance(value, (Mapping, list)):
        return Scalar(json.dumps(value, ensure_ascii=False))
    if value is not None:
        return Scalar(_scalar_text(value))
    return None


def parse_flat_value(value: Any) -> Optional[FieldValue]:
    """Value stored directly on the record under ``custom_field_<id>``."""
    if value is None or value == "" or value == [] or value == {}:
        return None
    if isinstance(value, str):
        return Scalar(value)
    if isinstance(value, Mapping) and value.get("name"):
        return Choice(str(value["name"]))
    if isinstance(value, list):
        return MultiChoice(tuple(_choice_name(v) for v in value if v is not None))
    return None


def _entry_field_id(entry: Mapping[str, Any]) -> Optional[str]:
    for key in ("fieldId", "id", "referenceId"):
        raw = entry.get(key)
        if raw is not None and str(raw).strip():
            return str(raw).strip()
    return None


@dataclass(frozen=True)
class CustomFieldEntry:
    field_id: Optional[str]
    value: Optional[FieldValue]
    name: str = ""


@dataclass
class Record:
    id: int
    name: str = ""
    status: str = ""
    custom_fields: List[CustomFieldEntry] = field(default_factory=list)
    attachments: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def custom_field(self, reference_id: Any) -> Optional[CustomFieldEntry]:
        if reference_id is None:
            return None
        wanted = str(reference_id).strip()
        for entry in self.custom_fields:
            if entry.field_id == wanted:
                return entry
        return None

    @classmethod
    def from_downstream(cls, data: Mapping[str, Any]) -> "Record":
        status = data.get("status")
        if isinstance(status, Mapping):
            status = status.get("name") or ""
        entries: List[CustomFieldEntry] = []
        for raw in data.get("customFields") or []:
            if not isinstance(raw, Mapping):
                continue
            entries.append(
                CustomFieldEntry(
                    field_id=_entry_field_id(raw),
                    value=parse_field_value(raw),
                    name=str(raw.get("name") or ""),
                )
            )
        attachments = [
            str(c.get("name") or "Attachment")
            for c in (data.get("comments") or [])
            if isinstance(c, Mapping)
        ]
        try:
            rid = int(data.get("id"))
        except (TypeError, ValueError):
            rid = 0
        return cls(
            id=rid,
            name=str(data.get("name") or ""),
            status=str(status or ""),
            custom_fields=entries,
            attachments=attachments,
            raw=dict(data),
        )
