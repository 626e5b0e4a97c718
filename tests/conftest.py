from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from portal.codebeamer import AttachmentResult
from portal.errors import DownstreamRejected
from portal.field_config import FieldConfigStore, FieldDescriptor, default_document


def item(rid: int, name: str, **custom: Any) -> Dict[str, Any]:
    """A CodeBeamer item with customFields keyed by referenceId."""
    fields = [{"fieldId": int(ref), "name": f"f{ref}", "value": value} for ref, value in custom.items()]
    return {"id": rid, "name": name, "status": {"name": "New"}, "customFields": fields}


class FakeClient:
    """In-memory stand-in for CodeBeamerClient."""

    def __init__(self, items: Optional[List[Dict[str, Any]]] = None) -> None:
        self.items: Dict[int, Dict[str, Any]] = {int(it["id"]): it for it in (items or [])}
        self.calls: List[tuple] = []
        self.fetch_errors: List[Exception] = []
        self.fail_create: Optional[Exception] = None
        self.fail_get: Optional[Exception] = None
        self.fail_files: set = set()
        self.next_id = 1000

    def fetch_tracker_items(self, tracker_id, *, max_items=None, include_fields=False):
        self.calls.append(("fetch", tracker_id))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return list(self.items.values())

    def get_item(self, item_id):
        self.calls.append(("get", item_id))
        if self.fail_get is not None:
            raise self.fail_get
        if int(item_id) not in self.items:
            raise DownstreamRejected(404, {"message": "Not found"})
        return self.items[int(item_id)]

    def create_item(self, tracker_id, payload):
        self.calls.append(("create", tracker_id, payload))
        if self.fail_create is not None:
            raise self.fail_create
        self.next_id += 1
        created = {"id": self.next_id, "name": payload["name"], "customFields": []}
        self.items[self.next_id] = created
        return created

    def update_fields(self, item_id, field_values):
        self.calls.append(("update", item_id, list(field_values)))
        return {"id": item_id}

    def delete_item(self, item_id):
        self.calls.append(("delete", item_id))
        self.items.pop(int(item_id), None)

    def upload_attachments(self, item_id, files):
        self.calls.append(("upload", item_id, [f.filename for f in files]))
        return [
            AttachmentResult(f.filename, ok=f.filename not in self.fail_files, error="rejected" if f.filename in self.fail_files else "")
            for f in files
        ]

    def list_projects(self):
        return [{"id": 1, "name": "Portal"}]

    def list_trackers(self, project_id):
        return [{"id": 77, "name": "Weekly"}]

    def ping(self):
        return {"success": True, "message": "Codebeamer is reachable"}


def write_config(path: Path, *, tracker_ids: Optional[Dict[str, int]] = None, **sections: List[Dict[str, Any]]) -> None:
    doc = default_document().to_json()
    for section, fields in sections.items():
        doc["fieldConfigs"][section.replace("_", "-")] = fields
    doc["trackerIds"] = dict(tracker_ids or {})
    doc["lastUpdated"] = "2026-01-01T00:00:00.000000+00:00"
    path.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")


WEEKLY_FIELDS: List[Dict[str, Any]] = [
    {"id": 1, "name": "제목", "externalKey": "name", "type": "string", "required": True, "referenceId": 3},
    {"id": 2, "name": "상태", "externalKey": "status", "type": "string", "readonly": True, "referenceId": 7},
    {"id": 3, "name": "작성자", "externalKey": "custom_field_1002", "type": "string", "required": True, "referenceId": 1002},
    {"id": 4, "name": "보고일", "externalKey": "custom_field_1001", "type": "calendar", "referenceId": 1001},
    {"id": 5, "name": "시간", "externalKey": "custom_field_1006", "type": "number", "referenceId": 1006},
    {"id": 6, "name": "진행 단계", "externalKey": "custom_field_1003", "type": "selector",
     "options": ["작성중", "제출", "승인"], "referenceId": 1003},
    {"id": 7, "name": "비고", "externalKey": "description", "type": "textarea", "referenceId": 80},
    {"id": 8, "name": "첨부파일", "externalKey": "attachments", "type": "attachment"},
]


@pytest.fixture()
def weekly_descriptors() -> List[FieldDescriptor]:
    return [FieldDescriptor.model_validate(f) for f in WEEKLY_FIELDS]


@pytest.fixture()
def store(tmp_path) -> FieldConfigStore:
    path = tmp_path / "field-configs.json"
    write_config(path, tracker_ids={"weekly-reports": 77}, weekly_reports=WEEKLY_FIELDS)
    return FieldConfigStore(path)


@pytest.fixture()
def fake_client() -> FakeClient:
    return FakeClient(
        [
            item(1, "Alpha report", **{"1002": "kim", "1003": {"name": "제출"}}),
            item(2, "Beta report", **{"1002": "lee"}),
            item(3, "alpha follow-up", **{"1002": "park"}),
        ]
    )
