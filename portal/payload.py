"""FormState -> CodeBeamer wire payloads (item create and field update)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import NothingToUpdate, ValidationError
from .field_config import FieldDescriptor
from .utils import is_blank, parse_date, parse_number, to_wire_timestamp, today_ymd

LOG = logging.getLogger(__name__)

BUILTIN_KEYS = ("name", "title", "description")
DEFAULT_DESCRIPTION = "Auto-generated entry"

TEXT_FIELD = "TextFieldValue"
INTEGER_FIELD = "IntegerFieldValue"
DATE_FIELD = "DateFieldValue"
CHOICE_FIELD = "ChoiceFieldValue"


def wire_type(descriptor_type: str) -> str:
    if descriptor_type == "number":
        return INTEGER_FIELD
    if descriptor_type == "calendar":
        return DATE_FIELD
    if descriptor_type == "selector":
        return CHOICE_FIELD
    return TEXT_FIELD


def outbound_type(descriptor_type: str) -> str:
    # 선택형 필드도 TextFieldValue 로 보낸다. 운영 트래커의 필드 타입을 바꿀 수 없어서 choice-by-id 를 쓰지 않는다.
    t = wire_type(descriptor_type)
    return TEXT_FIELD if t == CHOICE_FIELD else t


@dataclass(frozen=True)
class CustomFieldValue:
    field_id: int
    type: str
    value: Any

    def to_wire(self) -> Dict[str, Any]:
        return {"fieldId": self.field_id, "type": self.type, "value": self.value}


@dataclass(frozen=True)
class FieldUpdate:
    field_id: int
    type: str
    name: str
    value: Any

    def to_wire(self) -> Dict[str, Any]:
        return {"fieldId": self.field_id, "type": self.type, "name": self.name, "value": self.value}


@dataclass(frozen=True)
class OutboundRecord:
    name: str
    description: str
    custom_fields: List[CustomFieldValue] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "customFields": [cf.to_wire() for cf in self.custom_fields],
        }


def _coerce(d: FieldDescriptor, raw: Any) -> Tuple[bool, Any]:
    if d.type == "number":
        num = parse_number(raw)
        if num is None:
            LOG.warning("Drop field '%s': %r is not numeric", d.external_key, raw)
            return False, None
        return True, num
    if d.type == "calendar":
        parsed = parse_date(raw)
        if parsed is None:
            LOG.warning("Drop field '%s': %r is not a date", d.external_key, raw)
            return False, None
        return True, to_wire_timestamp(parsed)
    return True, str(raw)


def _unresolved(d: FieldDescriptor) -> str:
    return f"{d.name} 필드의 CodeBeamer 참조 ID가 설정되지 않았습니다."


def _editable(d: FieldDescriptor) -> bool:
    return not d.readonly and d.type != "attachment"


def _first_filled(form_state: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = form_state.get(key)
        if not is_blank(value):
            return str(value)
    return None


def _description_fallback(form_state: Mapping[str, Any]) -> str:
    # dict 순서(입력 순서)를 따른다. 브라우저 폼에서는 필드 입력 순서에 따라 달라질 수 있다.
    for key, value in form_state.items():
        if key in BUILTIN_KEYS or is_blank(value):
            continue
        return f"Entry created: {value}"
    return DEFAULT_DESCRIPTION


def transform(
    form_state: Mapping[str, Any],
    descriptors: Sequence[FieldDescriptor],
    section: str,
    *,
    today: Optional[str] = None,
) -> OutboundRecord:
    """Build the item-create payload.

    name/title/description feed the built-in attributes; every other editable
    descriptor with a non-blank value becomes one custom-field entry keyed by
    its referenceId. Blank values are omitted, never sent as clears.
    """
    name = _first_filled(form_state, ("name", "title")) or f"{section} - {today or today_ymd()}"
    description = _first_filled(form_state, ("description",)) or _description_fallback(form_state)

    custom_fields: List[CustomFieldValue] = []
    unresolved: List[str] = []
    for d in descriptors:
        value = form_state.get(d.external_key)
        if is_blank(value):
            continue
        if d.external_key in BUILTIN_KEYS or not _editable(d):
            continue
        if d.reference_id is None:
            unresolved.append(_unresolved(d))
            continue
        ok, coerced = _coerce(d, value)
        if ok:
            custom_fields.append(CustomFieldValue(d.reference_id, outbound_type(d.type), coerced))

    if unresolved:
        raise ValidationError(unresolved)
    return OutboundRecord(name=name, description=description, custom_fields=custom_fields)


def build_field_updates(form_state: Mapping[str, Any], descriptors: Sequence[FieldDescriptor]) -> List[FieldUpdate]:
    """Field-update entries for an existing item: only fields that currently hold a value."""
    updates: List[FieldUpdate] = []
    unresolved: List[str] = []
    for d in descriptors:
        if not _editable(d):
            continue
        value = form_state.get(d.external_key)
        if is_blank(value):
            continue
        if d.reference_id is None:
            unresolved.append(_unresolved(d))
            continue
        ok, coerced = _coerce(d, value)
        if ok:
            updates.append(FieldUpdate(d.reference_id, outbound_type(d.type), d.name, coerced))

    if unresolved:
        raise ValidationError(unresolved)
    if not updates:
        raise NothingToUpdate()
    return updates
