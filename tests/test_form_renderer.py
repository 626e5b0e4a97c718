from __future__ import annotations

from portal.forms import (
    EMPTY_FORM_TEXT,
    OPTIONAL_GROUP,
    REQUIRED_GROUP,
    SELECT_SENTINEL,
    FormRenderer,
    validate_form,
)
from portal.records import Record
from tests.conftest import item


def test_groups_split_required_and_optional(weekly_descriptors) -> None:
    form = FormRenderer(weekly_descriptors)
    groups = form.groups()
    assert [g.title for g in groups] == [REQUIRED_GROUP, OPTIONAL_GROUP]
    assert [c.input_name for c in groups[0].controls] == ["name", "custom_field_1002"]
    assert groups[0].controls[0].label == "제목 *"
    assert groups[0].controls[0].dom_id == "field_1"


def test_controls_by_field_type(weekly_descriptors) -> None:
    controls = {c.input_name: c for c in FormRenderer(weekly_descriptors).controls()}
    assert controls["custom_field_1001"].widget == "date"
    assert controls["custom_field_1006"].widget == "number"
    assert controls["description"].widget == "textarea"
    select = controls["custom_field_1003"]
    assert select.widget == "select"
    assert select.choices[0] == ("", SELECT_SENTINEL)
    assert [v for v, _ in select.choices[1:]] == ["작성중", "제출", "승인"]
    upload = controls["attachments"]
    assert upload.widget == "file" and upload.multiple


def test_on_input_last_write_wins_and_ignores_non_editable(weekly_descriptors) -> None:
    form = FormRenderer(weekly_descriptors)
    assert form.on_input("name", "first")
    assert form.on_input("name", "second")
    assert not form.on_input("status", "Closed")
    assert not form.on_input("custom_field_1003", "없는 값")
    assert form.on_input("custom_field_1003", "제출")
    assert form.form_state() == {"name": "second", "custom_field_1003": "제출"}


def test_initial_values_are_copied(weekly_descriptors) -> None:
    initial = {"name": "seed"}
    form = FormRenderer(weekly_descriptors, initial)
    form.on_input("name", "changed")
    assert initial == {"name": "seed"}
    state = form.form_state()
    state["name"] = "outside"
    assert form.value("name") == "changed"


def test_validate_reports_required_number_and_date(weekly_descriptors) -> None:
    result = validate_form(
        {"name": " ", "custom_field_1006": "abc", "custom_field_1001": "not-a-date"},
        weekly_descriptors,
    )
    assert not result.valid
    assert result.errors == [
        "제목은(는) 필수 입력 항목입니다.",
        "작성자은(는) 필수 입력 항목입니다.",
        "보고일은(는) 유효한 날짜여야 합니다.",
        "시간은(는) 숫자여야 합니다.",
    ]


def test_validate_passes_with_required_fields(weekly_descriptors) -> None:
    result = validate_form({"name": "주간보고", "custom_field_1002": "kim"}, weekly_descriptors)
    assert result.valid and result.errors == []


def test_populate_from_record(weekly_descriptors) -> None:
    record = Record.from_downstream(item(4, "Fourth", **{"1002": "kim", "1003": {"name": "승인"}, "80": "memo"}))
    form = FormRenderer(weekly_descriptors)
    form.populate_from_record(record)
    assert form.form_state() == {
        "name": "Fourth",
        "status": "New",
        "custom_field_1002": "kim",
        "custom_field_1003": "승인",
        "description": "memo",
    }


def test_populate_from_record_converts_timestamps_for_date_inputs(weekly_descriptors) -> None:
    record = Record.from_downstream(item(5, "Fifth", **{"1001": "2026-03-05T00:00:00.000Z"}))
    form = FormRenderer(weekly_descriptors)
    form.populate_from_record(record)
    assert form.value("custom_field_1001") == "2026-03-05"
    control = [c for c in form.controls() if c.input_name == "custom_field_1001"][0]
    assert control.widget == "date"
    assert control.value == "2026-03-05"
    assert "보고일은(는) 유효한 날짜여야 합니다." not in validate_form(form.form_state(), weekly_descriptors).errors


def test_clear_blanks_every_control(weekly_descriptors) -> None:
    form = FormRenderer(weekly_descriptors)
    form.update({"name": "x", "custom_field_1002": "kim", "custom_field_1001": "2026-03-05", "custom_field_1006": "3"})
    form.clear()
    assert form.form_state() == {}
    assert all(c.value == "" for c in form.controls())


def test_render_html_escapes_and_shows_errors(weekly_descriptors) -> None:
    form = FormRenderer(weekly_descriptors, {"name": "<b>bold</b>"})
    html = form.render_html(errors=["작성자은(는) 필수 입력 항목입니다."])
    assert "&lt;b&gt;bold&lt;/b&gt;" in html
    assert "작성자은(는) 필수 입력 항목입니다." in html
    assert 'name="custom_field_1003"' in html
    assert 'type="file"' in html


def test_render_html_empty_descriptor_list() -> None:
    assert EMPTY_FORM_TEXT in FormRenderer([]).render_html()
