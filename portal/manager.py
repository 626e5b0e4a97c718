"""Per-section orchestration of the form, the table and the downstream calls.

One ReportManager is built per active view. It owns its FormRenderer,
TableRenderer, FormState, page and search state; nothing is shared between
instances.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .codebeamer import AttachmentResult, StagedFile
from .errors import DownstreamError, DownstreamRejected, PartialAttachmentFailure, PortalError, ValidationError
from .field_config import FieldConfigStore, FieldDescriptor
from .forms import FormRenderer
from .payload import build_field_updates, transform
from .records import Record
from .tables import PageState, SearchCursor, SearchOptions, TableRenderer, TableView, filter_records

LOG = logging.getLogger(__name__)

RELOAD_ATTEMPTS = 3
RELOAD_BACKOFF_SECONDS = 1.0


class ManagerState(str, enum.Enum):
    IDLE = "idle"
    FORM_OPEN = "form_open"
    VALIDATING = "validating"
    SUBMITTING = "submitting"


@dataclass(frozen=True)
class StatusMessage:
    text: str
    success: bool
    created_at: float


@dataclass
class SubmitOutcome:
    ok: bool
    ignored: bool = False
    cancelled: bool = False
    record_id: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    attachments: List[AttachmentResult] = field(default_factory=list)

    @property
    def failed_attachments(self) -> List[str]:
        return [a.filename for a in self.attachments if not a.ok]


def error_text(exc: BaseException) -> str:
    """User-facing text; downstream rejections keep CodeBeamer's own message."""
    if isinstance(exc, DownstreamRejected) and exc.body:
        body = exc.body
        if isinstance(body, Mapping):
            detail = body.get("message") or body.get("error") or json.dumps(body, ensure_ascii=False)
        else:
            detail = str(body)
        return f"{exc} - {detail}"
    return str(exc)


class ReportManager:
    def __init__(
        self,
        section: str,
        client: Any,
        store: FieldConfigStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        status_ttl: float = 5.0,
        reload_after_write: bool = True,
    ) -> None:
        self.section = section
        # 쓰기 후 바로 다른 화면으로 넘어가는 호출자는 재조회를 끈다.
        self.reload_after_write = reload_after_write
        self.client = client
        self.store = store
        self.descriptors: List[FieldDescriptor] = store.get_section(section)
        self.title = store.section_title(section)

        self.state = ManagerState.IDLE
        self.mode: Optional[str] = None
        self.editing_id: Optional[int] = None
        self.editing_record: Optional[Record] = None
        self.form: Optional[FormRenderer] = None
        self.validation_errors: List[str] = []

        self.table = TableRenderer()
        self.page = PageState()
        self.search_query = ""
        self.search_options = SearchOptions()
        self.cursor = SearchCursor()
        self.all_records: List[Record] = []
        self.filtered_records: List[Record] = []

        self.loading = False
        self.status_ttl = status_ttl
        self._status: Optional[StatusMessage] = None
        self._sleep = sleep
        self._clock = clock
        self._submit_lock = threading.Lock()
        self._torn_down = threading.Event()
        # close() 마다 증가한다. 진행 중이던 submit 은 자신이 시작한 세대가 아니면 결과를 버린다.
        self._generation = 0

    # -------------------------
    # status / loading
    # -------------------------
    def _set_status(self, text: str, success: bool) -> None:
        if success:
            LOG.info("[%s] %s", self.section, text)
        else:
            LOG.warning("[%s] %s", self.section, text)
        self._status = StatusMessage(text, success, self._clock())

    def status(self, now: Optional[float] = None) -> Optional[StatusMessage]:
        if self._status is None:
            return None
        current = self._clock() if now is None else now
        if current - self._status.created_at >= self.status_ttl:
            return None
        return self._status

    @contextmanager
    def _io(self) -> Iterator[None]:
        self.loading = True
        try:
            yield
        finally:
            self.loading = False

    @property
    def torn_down(self) -> bool:
        return self._torn_down.is_set()

    # -------------------------
    # form lifecycle
    # -------------------------
    def open_create(self, initial: Optional[Mapping[str, Any]] = None) -> FormRenderer:
        self.close()
        self.form = FormRenderer(self.descriptors, initial)
        self.mode = "create"
        self.state = ManagerState.FORM_OPEN
        return self.form

    def open_edit(self, record_id: int) -> Optional[FormRenderer]:
        self.close()
        try:
            with self._io():
                data = self.client.get_item(int(record_id))
        except PortalError as e:
            LOG.error("Load item %s for edit failed: %s", record_id, e)
            self._set_status(f"{self.title} {record_id}번을 불러오는데 실패했습니다: {error_text(e)}", False)
            return None

        record = Record.from_downstream(data or {"id": record_id})
        form = FormRenderer(self.descriptors)
        form.populate_from_record(record)
        self.form = form
        self.mode = "edit"
        self.editing_id = int(record_id)
        self.editing_record = record
        self.state = ManagerState.FORM_OPEN
        self._set_status(f"{self.title} {record_id}번을 수정합니다", True)
        return form

    def close(self) -> None:
        self._generation += 1
        if self.form is not None:
            self.form.clear()
        self.form = None
        self.mode = None
        self.editing_id = None
        self.editing_record = None
        self.validation_errors = []
        self.state = ManagerState.IDLE

    def teardown(self) -> None:
        self._torn_down.set()
        self.close()

    @property
    def existing_attachments(self) -> List[str]:
        return list(self.editing_record.attachments) if self.editing_record else []

    # -------------------------
    # submit
    # -------------------------
    def submit(self, files: Sequence[StagedFile] = ()) -> SubmitOutcome:
        if not self._submit_lock.acquire(blocking=False):
            LOG.info("[%s] submit already in flight; ignore duplicate call", self.section)
            return SubmitOutcome(ok=False, ignored=True)
        try:
            return self._submit(list(files))
        finally:
            self._submit_lock.release()

    def _submit(self, files: List[StagedFile]) -> SubmitOutcome:
        if self.form is None or self.state != ManagerState.FORM_OPEN:
            return SubmitOutcome(ok=False, errors=["열려 있는 입력 폼이 없습니다."])

        generation = self._generation
        self.state = ManagerState.VALIDATING
        result = self.form.validate()
        if not result.valid:
            self.validation_errors = list(result.errors)
            self.state = ManagerState.FORM_OPEN
            return SubmitOutcome(ok=False, errors=list(result.errors))

        self.validation_errors = []
        form_state = self.form.form_state()
        mode = self.mode
        self.state = ManagerState.SUBMITTING
        LOG.info("[%s] submitting %s form (%d values)", self.section, mode, len(form_state))

        record_id: Optional[int] = None
        attachments: List[AttachmentResult] = []
        try:
            with self._io():
                if mode == "edit":
                    record_id = self._update_existing(form_state)
                else:
                    record_id = self._create_new(form_state)
                if files and record_id is not None:
                    attachments = self.client.upload_attachments(record_id, files)
        except ValidationError as e:
            if generation != self._generation:
                return SubmitOutcome(ok=False, cancelled=True, errors=list(e.errors))
            self.validation_errors = list(e.errors)
            self.state = ManagerState.FORM_OPEN
            self._set_status(f"{self.title} 저장에 실패했습니다: {e}", False)
            return SubmitOutcome(ok=False, errors=list(e.errors))
        except Exception as e:
            # 어떤 오류든 상태 메시지가 되고 폼은 열린 채로 남는다.
            if not isinstance(e, PortalError):
                LOG.exception("[%s] unexpected submit failure", self.section)
            if generation != self._generation:
                return SubmitOutcome(ok=False, cancelled=True, errors=[error_text(e)])
            self.state = ManagerState.FORM_OPEN
            self._set_status(f"{self.title} 저장에 실패했습니다: {error_text(e)}", False)
            return SubmitOutcome(ok=False, errors=[error_text(e)])

        if generation != self._generation:
            LOG.info("[%s] submit finished after the form was closed; state left untouched", self.section)
            return SubmitOutcome(ok=True, cancelled=True, record_id=record_id, attachments=attachments)

        self.close()
        stale = self._reload_after_write()
        outcome = SubmitOutcome(ok=True, record_id=record_id, attachments=attachments)
        if outcome.failed_attachments:
            partial = PartialAttachmentFailure(record_id or 0, attachments)
            LOG.warning("[%s] %s", self.section, partial)
            self._set_status(
                f"{self.title}가 저장되었지만 첨부파일 {len(partial.failed)}개 업로드에 실패했습니다: "
                + ", ".join(partial.failed),
                False,
            )
        elif stale:
            self._set_status(f"{self.title}가 저장되었습니다. {stale}", False)
        else:
            self._set_status(f"{self.title}가 성공적으로 저장되었습니다", True)
        return outcome

    def _create_new(self, form_state: Mapping[str, Any]) -> Optional[int]:
        tracker_id = self.store.tracker_id(self.section)
        if not tracker_id:
            raise PortalError(f"{self.title} 관리용 트래커가 설정되지 않았습니다. 관리자에게 문의하세요.")
        payload = transform(form_state, self.descriptors, self.section)
        created = self.client.create_item(tracker_id, payload.to_wire()) or {}
        rid = created.get("id") if isinstance(created, Mapping) else None
        return int(rid) if rid is not None else None

    def _update_existing(self, form_state: Mapping[str, Any]) -> int:
        updates = build_field_updates(form_state, self.descriptors)
        LOG.info("[%s] updating item %s fields: %s", self.section, self.editing_id, [u.field_id for u in updates])
        self.client.update_fields(int(self.editing_id), [u.to_wire() for u in updates])
        return int(self.editing_id)

    # -------------------------
    # list / delete
    # -------------------------
    def reload(self) -> bool:
        """Full refetch of the section's tracker, retried on transient failures."""
        if self.torn_down:
            return False
        tracker_id = self.store.tracker_id(self.section)
        if not tracker_id:
            LOG.info("[%s] no tracker id configured", self.section)
            self.all_records = []
            self.apply_filters(reset_page=False)
            return True

        items: List[Any] = []
        with self._io():
            for attempt in range(1, RELOAD_ATTEMPTS + 1):
                try:
                    items = self.client.fetch_tracker_items(tracker_id, include_fields=True)
                    break
                except DownstreamError as e:
                    if e.transient and attempt < RELOAD_ATTEMPTS:
                        delay = attempt * RELOAD_BACKOFF_SECONDS
                        LOG.info("[%s] list fetch failed (%s), retrying in %.0fs", self.section, e, delay)
                        self._sleep(delay)
                        continue
                    if e.transient:
                        self._set_status("서버가 일시적으로 과부하 상태입니다. 잠시 후 새로고침 버튼을 클릭해주세요.", False)
                    else:
                        self._set_status(f"{self.title} 목록을 불러오는데 실패했습니다: {error_text(e)}", False)
                    return False

        self.all_records = [Record.from_downstream(it) for it in items if isinstance(it, Mapping)]
        self.apply_filters(reset_page=False)
        self._set_status(f"총 {len(self.all_records)}개의 아이템을 가져왔습니다", True)
        return True

    def delete(self, record_id: int) -> bool:
        try:
            with self._io():
                self.client.delete_item(int(record_id))
        except PortalError as e:
            self._set_status(f"삭제 실패: {error_text(e)}", False)
            return False
        stale = self._reload_after_write()
        if stale:
            self._set_status(f"{self.title} {record_id}번이 삭제되었습니다. {stale}", False)
        else:
            self._set_status(f"{self.title} {record_id}번이 성공적으로 삭제되었습니다", True)
        return True

    def _reload_after_write(self) -> str:
        """Refetch after a write; returns the failure text when the list is stale."""
        if not self.reload_after_write or self.torn_down:
            return ""
        if self.reload():
            return ""
        status = self._status
        return status.text if status is not None else "목록을 새로고침하지 못했습니다."

    # -------------------------
    # search / pagination
    # -------------------------
    def apply_filters(self, *, reset_page: bool = True) -> None:
        self.filtered_records = filter_records(self.all_records, self.search_query, self.search_options)
        self.cursor.reset(self.filtered_records)
        if reset_page:
            self.page.page = 1
        self.page.set_total(len(self.filtered_records))

    def search(self, query: str) -> None:
        self.search_query = (query or "").strip()
        self.apply_filters()

    def clear_search(self) -> None:
        self.search("")

    def toggle_case_sensitive(self) -> None:
        self.search_options.case_sensitive = not self.search_options.case_sensitive
        self.apply_filters()

    def toggle_whole_word(self) -> None:
        self.search_options.whole_word = not self.search_options.whole_word
        self.apply_filters()

    def toggle_regex(self) -> None:
        self.search_options.regex = not self.search_options.regex
        self.apply_filters()

    def next_page(self) -> int:
        return self.page.next()

    def prev_page(self) -> int:
        return self.page.prev()

    def go_to_page(self, page: int) -> int:
        return self.page.go_to(page)

    def change_page_size(self, size: int) -> None:
        self.page.set_page_size(size)
        self.page.set_total(len(self.filtered_records))

    def _show_current_result(self) -> Optional[Record]:
        record = self.cursor.current()
        if record is not None:
            self.page.go_to(self.cursor.index // self.page.page_size + 1)
        return record

    def next_result(self) -> Optional[Record]:
        self.cursor.next()
        return self._show_current_result()

    def previous_result(self) -> Optional[Record]:
        self.cursor.previous()
        return self._show_current_result()

    # -------------------------
    # views
    # -------------------------
    def _highlight_id(self) -> Optional[int]:
        if not self.search_query:
            return None
        current = self.cursor.current()
        return current.id if current else None

    def table_view(self) -> TableView:
        return self.table.render(self.filtered_records, self.descriptors, self.page, highlight_id=self._highlight_id())

    def list_query(self) -> Dict[str, str]:
        return {
            "q": self.search_query,
            "caseSensitive": "1" if self.search_options.case_sensitive else "",
            "wholeWord": "1" if self.search_options.whole_word else "",
            "regex": "1" if self.search_options.regex else "",
        }

    def table_html(self) -> str:
        return self.table.render_html(
            self.filtered_records,
            self.descriptors,
            self.page,
            section=self.section,
            highlight_id=self._highlight_id(),
            query=self.list_query(),
        )

    def form_html(self) -> str:
        if self.form is None:
            return ""
        return self.form.render_html(errors=self.validation_errors)
