import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from ..auth import SESSION_COOKIE, PortalSession, read_session, require_page_login
from ..codebeamer import CodeBeamerClient, StagedFile
from ..deps import get_page_client, get_settings, get_store, known_section
from ..export import build_excel
from ..field_config import SECTION_ORDER, FieldConfigStore
from ..manager import ReportManager
from ..settings import Settings
from ..tables import DEFAULT_PAGE_SIZE, PAGE_SIZES
from ..utils import TEMPLATE_DIR, today_ymd

LOG = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

router = APIRouter(tags=["pages"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _sections(store: FieldConfigStore) -> List[Dict[str, str]]:
    doc = store.load_document()
    names = [s for s in SECTION_ORDER if s in doc.field_configs]
    names += sorted(s for s in doc.field_configs if s not in SECTION_ORDER)
    return [{"key": s, "title": doc.section_titles.get(s, s)} for s in names]


def _manager(request: Request, section: str, client: CodeBeamerClient, store: FieldConfigStore) -> ReportManager:
    settings: Settings = request.app.state.settings
    # 쓰기 뒤에는 GET /{section}으로 리다이렉트하고 그 요청이 목록을 다시 읽는다.
    return ReportManager(section, client, store, status_ttl=settings.status_ttl_seconds, reload_after_write=False)


def _list_state(request: Request) -> Dict[str, Any]:
    qp = request.query_params
    page_size = _int_or(qp.get("pageSize"), DEFAULT_PAGE_SIZE)
    return {
        "q": (qp.get("q") or "").strip(),
        "page": max(1, _int_or(qp.get("page"), 1)),
        "pageSize": page_size if page_size in PAGE_SIZES else DEFAULT_PAGE_SIZE,
        "caseSensitive": qp.get("caseSensitive") == "1",
        "wholeWord": qp.get("wholeWord") == "1",
        "regex": qp.get("regex") == "1",
    }


def _int_or(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


def _apply_list_state(manager: ReportManager, state: Dict[str, Any]) -> None:
    manager.search_options.case_sensitive = state["caseSensitive"]
    manager.search_options.whole_word = state["wholeWord"]
    manager.search_options.regex = state["regex"]
    manager.search(state["q"])
    manager.change_page_size(state["pageSize"])
    manager.go_to_page(state["page"])


def _load(manager: ReportManager, state: Dict[str, Any]) -> None:
    manager.reload()
    _apply_list_state(manager, state)


def _redirect_with_status(section: str, manager: ReportManager) -> RedirectResponse:
    status = manager.status()
    query = ""
    if status is not None:
        query = "?" + urlencode({"msg": status.text, "ok": "1" if status.success else "0"})
    return RedirectResponse(url=f"/{section}{query}", status_code=303)


def _flash(request: Request, manager: ReportManager) -> Optional[Dict[str, Any]]:
    # 리다이렉트로 넘어온 메시지가 목록 새로고침 메시지보다 우선한다.
    msg = request.query_params.get("msg")
    if msg:
        return {"text": msg, "success": request.query_params.get("ok") == "1"}
    status = manager.status()
    if status is not None:
        return {"text": status.text, "success": status.success}
    return None


def _render_section(
    request: Request,
    manager: ReportManager,
    state: Dict[str, Any],
    *,
    status_code: int = 200,
    flash: Optional[Dict[str, Any]] = None,
) -> HTMLResponse:
    store: FieldConfigStore = request.app.state.store
    return templates.TemplateResponse(
        request,
        "section.html",
        {
            "title": manager.title,
            "section": manager.section,
            "sections": _sections(store),
            "state": state,
            "page_sizes": PAGE_SIZES,
            "manager": manager,
            "table_html": manager.table_html(),
            "form_html": manager.form_html(),
            "form_mode": manager.mode,
            "editing_id": manager.editing_id,
            "existing_attachments": manager.existing_attachments,
            "search_info": manager.cursor.info() if state["q"] else "",
            "status": flash or _flash(request, manager),
            "today": today_ymd(),
        },
        status_code=status_code,
    )


async def _render_failure(request: Request, manager: ReportManager, state: Dict[str, Any]) -> HTMLResponse:
    """Re-render the page with the form still open after a failed submit."""
    failure = _flash(request, manager)
    await run_in_threadpool(_load, manager, state)
    status_code = 400 if manager.validation_errors else 502
    return _render_section(request, manager, state, status_code=status_code, flash=failure)


async def _read_form(request: Request, manager: ReportManager) -> Tuple[Dict[str, str], List[StagedFile]]:
    form = await request.form()
    attachment_keys = {d.external_key for d in manager.descriptors if d.type == "attachment"}
    field_keys = {d.external_key for d in manager.descriptors}
    values: Dict[str, str] = {}
    files: List[StagedFile] = []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key in attachment_keys and value.filename:
                files.append(
                    StagedFile(
                        filename=value.filename,
                        content=await value.read(),
                        content_type=value.content_type or "application/octet-stream",
                    )
                )
            continue
        if key in field_keys:
            values[key] = value
    return values, files


# -------------------------
# login
# -------------------------
@router.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    if read_session(request):
        return RedirectResponse(url="/", status_code=303)
    return templates.TemplateResponse(request, "login.html", {"title": "로그인", "error": ""})


@router.post("/login")
def login_submit(
    request: Request,
    username: str = Form(""),
    password: str = Form(""),
    settings: Settings = Depends(get_settings),
):
    username = username.strip()
    if not username or not password:
        return templates.TemplateResponse(
            request,
            "login.html",
            {"title": "로그인", "error": "아이디와 비밀번호를 입력하세요.", "username": username},
            status_code=400,
        )
    token = request.app.state.sessions.create(username, password)
    LOG.info("Login: %s", username)
    resp = RedirectResponse(url="/", status_code=303)
    resp.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    return resp


@router.get("/logout")
def logout(request: Request):
    request.app.state.sessions.destroy(request.cookies.get(SESSION_COOKIE))
    resp = RedirectResponse(url="/login", status_code=303)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


# -------------------------
# dashboard / sections
# -------------------------
@router.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    _session: PortalSession = Depends(require_page_login),
    store: FieldConfigStore = Depends(get_store),
):
    sections = _sections(store)
    for s in sections:
        s["tracker_id"] = store.tracker_id(s["key"])
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {"title": "대시보드", "sections": sections, "today": today_ymd()},
    )


@router.get("/{section}/export.xlsx")
def section_export(
    request: Request,
    section: str = Depends(known_section),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    state = _list_state(request)
    _load(manager, state)
    data = build_excel(manager.title, manager.descriptors, manager.filtered_records)
    filename = f"{section}-{today_ymd()}.xlsx"
    return Response(
        content=data,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{section}/items/{item_id}/edit", response_class=HTMLResponse)
def section_edit(
    request: Request,
    item_id: int,
    section: str = Depends(known_section),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    state = _list_state(request)
    _load(manager, state)
    if manager.open_edit(item_id) is None:
        return _render_section(request, manager, state, status_code=502)
    return _render_section(request, manager, state)


@router.post("/{section}/items", response_class=HTMLResponse)
async def section_create(
    request: Request,
    section: str = Depends(known_section),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    values, files = await _read_form(request, manager)
    manager.open_create()
    manager.form.update(values)
    outcome = await run_in_threadpool(manager.submit, files)
    if outcome.ok:
        return _redirect_with_status(section, manager)
    return await _render_failure(request, manager, _list_state(request))


@router.post("/{section}/items/{item_id}", response_class=HTMLResponse)
async def section_update(
    request: Request,
    item_id: int,
    section: str = Depends(known_section),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    values, files = await _read_form(request, manager)
    state = _list_state(request)
    form = await run_in_threadpool(manager.open_edit, item_id)
    if form is None:
        return await _render_failure(request, manager, state)
    form.update(values)
    outcome = await run_in_threadpool(manager.submit, files)
    if outcome.ok:
        return _redirect_with_status(section, manager)
    return await _render_failure(request, manager, state)


@router.post("/{section}/items/{item_id}/delete")
def section_delete(
    request: Request,
    item_id: int,
    section: str = Depends(known_section),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    manager.delete(item_id)
    return _redirect_with_status(section, manager)


# 마지막에 등록한다. 다른 단일 세그먼트 경로를 가리지 않도록.
@router.get("/{section}", response_class=HTMLResponse)
def section_page(
    request: Request,
    section: str = Depends(known_section),
    new: int = Query(0),
    client: CodeBeamerClient = Depends(get_page_client),
    store: FieldConfigStore = Depends(get_store),
):
    manager = _manager(request, section, client, store)
    state = _list_state(request)
    _load(manager, state)
    if new:
        manager.open_create()
    return _render_section(request, manager, state)
