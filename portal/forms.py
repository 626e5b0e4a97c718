"""Dynamic create/edit form driven by a section's field descriptors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .field_config import FieldDescriptor
from .records import Record
from .tables import get_field_value
from .utils import is_blank, parse_date, parse_number, render_fragment

LOG = logging.getLogger(__name__)

REQUIRED_GROUP = "필수 항목"
OPTIONAL_GROUP = "선택 항목"
SELECT_SENTINEL = "선택하세요"
EMPTY_FORM_TEXT = "등록된 필드가 없습니다."
ATTACHMENT_ACCEPT = ".pdf,.doc,.docx,.xls,.xlsx,.jpg,.jpeg,.png,.gif"

_WIDGETS = {
    "string": "text",
    "number": "number",
    "calendar": "date",
    "textarea": "textarea",
    "selector": "select",
    "attachment": "file",
}


@dataclass(frozen=True)
class FormControl:
    descriptor: FieldDescriptor
    widget: str
    value: str = ""
    placeholder: str = ""
    choices: Tuple[Tuple[str, str], ...] = ()
    multiple: bool = False
    accept: str = ""

    @property
    def dom_id(self) -> str:
        return f"field_{self.descriptor.id}"

    @property
    def input_name(self) -> str:
        return self.descriptor.external_key

    @property
    def label(self) -> str:
        return self.descriptor.name + (" *" if self.descriptor.required else "")

    @property
    def required(self) -> bool:
        return self.descriptor.required

    @property
    def readonly(self) -> bool:
        return self.descriptor.readonly


@dataclass(frozen=True)
class FieldGroup:
    title: str
    controls: Tuple[FormControl, ...]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_form(form_state: Mapping[str, Any], descriptors: Sequence[FieldDescriptor]) -> ValidationResult:
    errors: List[str] = []
    for d in descriptors:
        if d.type == "attachment":
            continue
        value = form_state.get(d.external_key)
        blank = is_blank(value)
        if d.required and blank:
            errors.append(f"{d.name}은(는) 필수 입력 항목입니다.")
        if d.type == "number" and not blank and parse_number(value) is None:
            errors.append(f"{d.name}은(는) 숫자여야 합니다.")
        if d.type == "calendar" and not blank and parse_date(value) is None:
            errors.append(f"{d.name}은(는) 유효한 날짜여야 합니다.")
    return ValidationResult(valid=not errors, errors=errors)


class FormRenderer:
    """Owns one FormState for one open form.

    Initial values are copied once at construction. Edits go through
    `on_input` in event order; the last write for a key wins.
    """

    def __init__(self, descriptors: Iterable[FieldDescriptor], initial: Optional[Mapping[str, Any]] = None) -> None:
        self.descriptors: Tuple[FieldDescriptor, ...] = tuple(descriptors)
        self._by_key: Dict[str, FieldDescriptor] = {d.external_key: d for d in self.descriptors}
        self._state: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            if value is not None:
                self._state[str(key)] = str(value)

    # -------------------------
    # FormState
    # -------------------------
    def on_input(self, key: str, value: Any) -> bool:
        d = self._by_key.get(key)
        text = "" if value is None else str(value)
        if d is not None:
            if d.readonly or d.type == "attachment":
                LOG.debug("Ignore edit of non-editable field '%s'", key)
                return False
            if d.type == "selector" and text and text not in d.options:
                LOG.warning("Ignore value %r outside options of '%s'", text, key)
                return False
        self._state[key] = text
        return True

    def update(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.on_input(str(key), value)

    def form_state(self) -> Dict[str, str]:
        return dict(self._state)

    def value(self, key: str) -> str:
        return self._state.get(key, "")

    def clear(self) -> None:
        self._state = {}

    def populate_from_record(self, record: Record) -> None:
        for d in self.descriptors:
            if d.type == "attachment":
                continue
            value = get_field_value(record, d)
            if d.type == "calendar":
                # date 입력은 YYYY-MM-DD만 받는다.
                parsed = parse_date(value)
                if parsed is not None:
                    value = parsed.date().isoformat()
            if not is_blank(value):
                self._state[d.external_key] = value

    def validate(self) -> ValidationResult:
        return validate_form(self._state, self.descriptors)

    # -------------------------
    # controls
    # -------------------------
    def control_for(self, d: FieldDescriptor) -> FormControl:
        widget = _WIDGETS.get(d.type, "text")
        value = "" if widget == "file" else self.value(d.external_key)
        if widget == "select":
            return FormControl(
                descriptor=d,
                widget=widget,
                value=value,
                choices=(("", SELECT_SENTINEL), *((o, o) for o in d.options)),
            )
        if widget == "file":
            return FormControl(descriptor=d, widget=widget, multiple=True, accept=ATTACHMENT_ACCEPT)
        placeholder = f"{d.name}을(를) 입력하세요" if widget in ("text", "number") else ""
        return FormControl(descriptor=d, widget=widget, value=value, placeholder=placeholder)

    def groups(self) -> List[FieldGroup]:
        required = tuple(self.control_for(d) for d in self.descriptors if d.required)
        optional = tuple(self.control_for(d) for d in self.descriptors if not d.required)
        out = []
        if required:
            out.append(FieldGroup(REQUIRED_GROUP, required))
        if optional:
            out.append(FieldGroup(OPTIONAL_GROUP, optional))
        return out

    def controls(self) -> List[FormControl]:
        return [c for g in self.groups() for c in g.controls]

    def render_html(self, *, errors: Sequence[str] = ()) -> str:
        return render_fragment(
            "form.html",
            groups=self.groups(),
            empty_text=EMPTY_FORM_TEXT,
            errors=list(errors),
        )
