from __future__ import annotations

import io

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from portal.errors import DownstreamRejected, DownstreamUnavailable
from portal.main import create_app
from portal.settings import Settings
from tests.conftest import WEEKLY_FIELDS


@pytest.fixture()
def app(store, fake_client):
    settings = Settings(
        cb_base_url="https://cb.example.com/cb",
        session_secret="S" * 32,
        field_config_path=store.path,
        status_ttl_seconds=60.0,
    )
    app = create_app(settings, client_factory=lambda _settings, _session: fake_client)
    return app


@pytest.fixture()
def anon(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def client(app) -> TestClient:
    c = TestClient(app)
    resp = c.post("/login", data={"username": "kim", "password": "pw"}, follow_redirects=False)
    assert resp.status_code == 303
    return c


# -------------------------
# auth
# -------------------------
def test_api_requires_session(anon) -> None:
    resp = anon.get("/api/field-configs")
    assert resp.status_code == 401


def test_pages_redirect_to_login(anon) -> None:
    resp = anon.get("/weekly-reports", follow_redirects=False)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"


def test_login_requires_both_fields(anon) -> None:
    resp = anon.post("/login", data={"username": "kim", "password": ""})
    assert resp.status_code == 400
    assert "아이디와 비밀번호를 입력하세요." in resp.text


def test_session_cookie_does_not_carry_credentials(client, app) -> None:
    token = client.cookies.get("portal_session")
    assert token and "pw" not in token
    session = app.state.sessions.read(token)
    assert session.username == "kim"
    assert session.auth == "a2ltOnB3"


def test_logout_destroys_session(client) -> None:
    client.get("/logout", follow_redirects=False)
    assert client.get("/api/field-configs").status_code == 401


# -------------------------
# field configs
# -------------------------
def test_get_all_field_configs(client) -> None:
    body = client.get("/api/field-configs").json()
    assert body["success"] is True
    assert body["fieldConfigs"]["weekly-reports"][0]["externalKey"] == "name"
    assert body["trackerIds"] == {"weekly-reports": 77}


def test_get_section_field_configs(client) -> None:
    assert client.get("/api/field-configs/nope").status_code == 404
    body = client.get("/api/field-configs/weekly-reports").json()
    assert len(body["fieldConfigs"]) == len(WEEKLY_FIELDS)


def test_save_field_configs_and_conflict(client, store) -> None:
    version = store.version()
    payload = {"fieldConfigs": {"weekly-reports": WEEKLY_FIELDS[:2]}, "expectedLastUpdated": version}
    resp = client.post("/api/field-configs", json=payload)
    assert resp.status_code == 200
    assert resp.json()["lastUpdated"] != version
    assert len(store.get_section("weekly-reports")) == 2

    stale = client.post("/api/field-configs", json=payload)
    assert stale.status_code == 409


def test_save_field_configs_rejects_duplicates(client) -> None:
    dup = [WEEKLY_FIELDS[0], dict(WEEKLY_FIELDS[1], id=1)]
    resp = client.post("/api/field-configs", json={"fieldConfigs": {"weekly-reports": dup}})
    assert resp.status_code == 400


def test_tracker_id_lookup(client) -> None:
    assert client.get("/api/tracker-id/weekly-reports").json() == {"success": True, "trackerId": 77}
    assert client.get("/api/tracker-id/travel-reports").json()["success"] is False


# -------------------------
# CodeBeamer proxy
# -------------------------
def test_tracker_items_paging(client) -> None:
    body = client.get("/api/codebeamer/trackers/77/items", params={"page": 1, "pageSize": 2}).json()
    assert [it["id"] for it in body["items"]] == [1, 2]
    assert (body["page"], body["pageSize"], body["total"], body["hasMore"]) == (1, 2, 3, True)
    last = client.get("/api/codebeamer/trackers/77/items", params={"page": 2, "pageSize": 2}).json()
    assert last["hasMore"] is False


def test_downstream_errors_map_to_status(client, fake_client) -> None:
    fake_client.fetch_errors = [DownstreamUnavailable("down")]
    resp = client.get("/api/codebeamer/trackers/77/items")
    assert resp.status_code == 502
    assert resp.json()["success"] is False

    fake_client.fetch_errors = [DownstreamRejected(401, {"message": "bad credentials"})]
    resp = client.get("/api/codebeamer/trackers/77/items")
    assert resp.status_code == 401
    assert resp.json()["details"] == {"message": "bad credentials"}


def test_item_detail_not_found(client) -> None:
    assert client.get("/api/codebeamer/items/999").status_code == 404


def test_create_item_proxy(client, fake_client) -> None:
    resp = client.post("/api/v3/trackers/77/items", json={"name": "proxy", "description": "d", "customFields": []})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["item"]["name"] == "proxy"
    assert client.post("/api/v3/trackers/77/items", json={"name": " "}).status_code == 400


def test_update_fields_proxy(client, fake_client) -> None:
    resp = client.put(
        "/api/codebeamer/items/2/fields",
        json={"fieldValues": [{"fieldId": 1002, "type": "TextFieldValue", "value": "choi"}]},
    )
    assert resp.status_code == 200
    assert fake_client.calls[-1] == ("update", 2, [{"fieldId": 1002, "type": "TextFieldValue", "value": "choi"}])
    assert client.put("/api/codebeamer/items/2/fields", json={"fieldValues": []}).status_code == 400


def test_attachment_upload_reports_per_file(client, fake_client) -> None:
    fake_client.fail_files = {"b.png"}
    resp = client.post(
        "/api/v3/items/2/attachments",
        files=[
            ("attachments", ("a.pdf", b"%PDF", "application/pdf")),
            ("attachments", ("b.png", b"PNG", "image/png")),
        ],
    )
    body = resp.json()
    assert body["success"] is False
    assert [a["filename"] for a in body["attachments"]] == ["a.pdf"]
    assert [f["filename"] for f in body["failures"]] == ["b.png"]


def test_delete_item_proxy(client, fake_client) -> None:
    assert client.delete("/api/codebeamer/items/3").json() == {"success": True}
    assert 3 not in fake_client.items


# -------------------------
# pages
# -------------------------
def test_dashboard_lists_sections(client) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert "주간보고" in resp.text
    assert "외부 교육" in resp.text


def test_unknown_section_page_is_404(client) -> None:
    assert client.get("/no-such-section").status_code == 404


def test_section_page_renders_table_and_search(client) -> None:
    resp = client.get("/weekly-reports", params={"q": "alpha"})
    assert resp.status_code == 200
    assert "Alpha report" in resp.text
    assert "Beta report" not in resp.text
    assert "1 of 2" in resp.text


def test_section_page_opens_create_form(client) -> None:
    resp = client.get("/weekly-reports", params={"new": 1})
    assert 'action="/weekly-reports/items"' in resp.text
    assert "필수 항목" in resp.text


def test_create_through_page(client, fake_client) -> None:
    resp = client.post(
        "/weekly-reports/items",
        data={"name": "페이지 보고", "custom_field_1002": "kim", "unknown": "x"},
        files=[("attachments", ("a.pdf", b"%PDF", "application/pdf"))],
        follow_redirects=False,
    )
    assert resp.status_code == 303
    assert resp.headers["location"].startswith("/weekly-reports?msg=")
    create = [c for c in fake_client.calls if c[0] == "create"][0]
    assert create[2]["name"] == "페이지 보고"
    assert ("upload", 1001, ["a.pdf"]) in fake_client.calls


def test_create_with_missing_required_rerenders_form(client, fake_client) -> None:
    resp = client.post("/weekly-reports/items", data={"custom_field_1002": "kim"})
    assert resp.status_code == 400
    assert "제목은(는) 필수 입력 항목입니다." in resp.text
    assert 'value="kim"' in resp.text
    assert not [c for c in fake_client.calls if c[0] == "create"]


def test_edit_page_and_update(client, fake_client) -> None:
    page = client.get("/weekly-reports/items/2/edit")
    assert page.status_code == 200
    assert 'value="lee"' in page.text

    resp = client.post("/weekly-reports/items/2", data={"custom_field_1002": "choi"}, follow_redirects=False)
    assert resp.status_code == 303
    update = [c for c in fake_client.calls if c[0] == "update"][0]
    assert {"fieldId": 1002, "type": "TextFieldValue", "name": "작성자", "value": "choi"} in update[2]


def test_delete_through_page(client, fake_client) -> None:
    resp = client.post("/weekly-reports/items/3/delete", follow_redirects=False)
    assert resp.status_code == 303
    assert 3 not in fake_client.items


def test_page_writes_fetch_the_list_once(client, fake_client) -> None:
    resp = client.post("/weekly-reports/items", data={"name": "한 번만", "custom_field_1002": "kim"})
    assert resp.status_code == 200
    assert "주간보고가 성공적으로 저장되었습니다" in resp.text
    assert "한 번만" in resp.text
    assert len([c for c in fake_client.calls if c[0] == "fetch"]) == 1

    fake_client.calls.clear()
    resp = client.post("/weekly-reports/items/1/delete")
    assert resp.status_code == 200
    assert "주간보고 1번이 성공적으로 삭제되었습니다" in resp.text
    assert len([c for c in fake_client.calls if c[0] == "fetch"]) == 1


def test_export_xlsx(client) -> None:
    resp = client.get("/weekly-reports/export.xlsx")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.openxmlformats")
    wb = load_workbook(io.BytesIO(resp.content))
    ws = wb.active
    rows = list(ws.iter_rows(values_only=True))
    assert "제목" in rows[0]
    assert "첨부파일" not in rows[0]
    assert len(rows) == 4


def test_health(anon) -> None:
    assert anon.get("/health").json() == {"ok": True}
