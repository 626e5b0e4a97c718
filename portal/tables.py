from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .field_config import FieldDescriptor
from .records import Record, parse_flat_value
from .utils import format_date_ko, render_fragment

LOG = logging.getLogger(__name__)

PAGE_SIZES = (10, 25, 50, 100)
DEFAULT_PAGE_SIZE = 25
TRUNCATE_AT = 50
EMPTY_TEXT = "데이터가 없습니다."
ID_HEADER = "ID"
ACTIONS_HEADER = "작업"

T = TypeVar("T")


# -------------------------
# value extraction
# -------------------------
def get_field_value(record: Record, descriptor: FieldDescriptor) -> str:
    """Resolve the value of one descriptor on one record.

    Order: built-in name/status, custom field matched by referenceId,
    flat ``custom_field_<referenceId>`` key on the raw record, empty string.
    """
    key = descriptor.external_key
    if key == "name":
        return record.name
    if key == "status":
        return record.status

    entry = record.custom_field(descriptor.reference_id)
    if entry is not None:
        return entry.value.display() if entry.value is not None else ""

    if descriptor.reference_id is not None:
        flat = parse_flat_value(record.raw.get(f"custom_field_{descriptor.reference_id}"))
        if flat is not None:
            return flat.display()
    return ""


@dataclass(frozen=True)
class Cell:
    text: str
    title: str = ""


def display_cell(record: Record, descriptor: FieldDescriptor) -> Cell:
    value = get_field_value(record, descriptor)
    if descriptor.type == "calendar" and value:
        return Cell(format_date_ko(value))
    if descriptor.type in ("string", "textarea") and len(value) > TRUNCATE_AT:
        return Cell(value[:TRUNCATE_AT] + "...", title=value)
    return Cell(value)


# -------------------------
# pagination
# -------------------------
@dataclass
class PageState:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    total: int = 0

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total > 0 else 0

    @property
    def last_page(self) -> int:
        # 0 페이지는 빈 1페이지로 표시한다.
        return max(self.total_pages, 1)

    def go_to(self, page: int) -> int:
        self.page = min(max(int(page), 1), self.last_page)
        return self.page

    def next(self) -> int:
        if self.page < self.last_page:
            self.page += 1
        return self.page

    def prev(self) -> int:
        if self.page > 1:
            self.page -= 1
        return self.page

    def set_page_size(self, size: int) -> None:
        size = int(size)
        if size not in PAGE_SIZES:
            raise ValueError(f"page size must be one of {PAGE_SIZES}")
        self.page_size = size
        self.page = 1

    def set_total(self, total: int) -> None:
        self.total = max(0, int(total))
        self.go_to(self.page)

    def with_total(self, total: int) -> "PageState":
        state = replace(self)
        state.set_total(total)
        return state

    @property
    def start(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def end(self) -> int:
        return min(self.page * self.page_size, self.total)

    def slice(self, items: Sequence[T]) -> List[T]:
        return list(items[self.start:self.start + self.page_size])

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    def summary(self) -> str:
        if self.total == 0:
            return "0-0 / 총 0개"
        return f"{self.start + 1}-{self.end} / 총 {self.total}개"

    def page_info(self) -> str:
        return f"페이지 {self.page} / {self.last_page}"


# -------------------------
# search
# -------------------------
@dataclass
class SearchOptions:
    case_sensitive: bool = False
    whole_word: bool = False
    regex: bool = False


def searchable_text(record: Record) -> str:
    parts = [str(record.id), record.name]
    for entry in record.custom_fields:
        if entry.value is not None:
            parts.extend(entry.value.search_terms())
    return " ".join(p for p in parts if p)


def matches(text: str, query: str, options: Optional[SearchOptions] = None) -> bool:
    opts = options or SearchOptions()
    if opts.regex and not opts.whole_word:
        try:
            pattern = re.compile(query, 0 if opts.case_sensitive else re.IGNORECASE)
        except re.error:
            LOG.debug("Invalid search regex %r; fallback to substring match.", query)
        else:
            return pattern.search(text) is not None
    if not opts.case_sensitive:
        text = text.lower()
        query = query.lower()
    if opts.whole_word:
        return query in text.split()
    return query in text


def filter_records(records: Iterable[Record], query: str, options: Optional[SearchOptions] = None) -> List[Record]:
    q = (query or "").strip()
    if not q:
        return list(records)
    return [r for r in records if matches(searchable_text(r), q, options)]


class SearchCursor:
    """Walks the search hits one at a time, wrapping at both ends."""

    def __init__(self, results: Iterable[Record] = ()) -> None:
        self.reset(results)

    def reset(self, results: Iterable[Record]) -> None:
        self.results = list(results)
        self.index = 0

    def current(self) -> Optional[Record]:
        return self.results[self.index] if self.results else None

    def next(self) -> Optional[Record]:
        if self.results:
            self.index = (self.index + 1) % len(self.results)
        return self.current()

    def previous(self) -> Optional[Record]:
        if self.results:
            self.index = (self.index - 1 + len(self.results)) % len(self.results)
        return self.current()

    def info(self) -> str:
        if not self.results:
            return "0 of 0"
        return f"{self.index + 1} of {len(self.results)}"


# -------------------------
# table view
# -------------------------
@dataclass(frozen=True)
class TableRow:
    record_id: int
    cells: Tuple[Cell, ...]
    highlighted: bool = False


@dataclass(frozen=True)
class TableView:
    headers: Tuple[str, ...]
    rows: Tuple[TableRow, ...]
    colspan: int
    summary: str
    page_info: str
    page: int
    page_size: int
    total_pages: int
    has_prev: bool
    has_next: bool
    show_pagination: bool
    empty_text: str = EMPTY_TEXT

    @property
    def empty(self) -> bool:
        return not self.rows


@dataclass
class TableRenderer:
    truncate_at: int = TRUNCATE_AT
    page_sizes: Tuple[int, ...] = field(default=PAGE_SIZES)

    def render(
        self,
        records: Sequence[Record],
        descriptors: Sequence[FieldDescriptor],
        page: PageState,
        *,
        highlight_id: Optional[int] = None,
    ) -> TableView:
        state = page.with_total(len(records))
        rows = tuple(
            TableRow(
                record_id=r.id,
                cells=tuple(display_cell(r, d) for d in descriptors),
                highlighted=highlight_id is not None and r.id == highlight_id,
            )
            for r in state.slice(records)
        )
        return TableView(
            headers=(ID_HEADER, *(d.name for d in descriptors), ACTIONS_HEADER),
            rows=rows,
            colspan=len(descriptors) + 2,
            summary=state.summary(),
            page_info=state.page_info(),
            page=state.page,
            page_size=state.page_size,
            total_pages=state.total_pages,
            has_prev=state.has_prev,
            has_next=state.has_next,
            show_pagination=state.total > state.page_size,
        )

    def render_html(
        self,
        records: Sequence[Record],
        descriptors: Sequence[FieldDescriptor],
        page: PageState,
        *,
        section: str = "",
        highlight_id: Optional[int] = None,
        query: Optional[Mapping[str, str]] = None,
    ) -> str:
        view = self.render(records, descriptors, page, highlight_id=highlight_id)
        return render_fragment(
            "table.html",
            view=view,
            section=section,
            page_sizes=self.page_sizes,
            query={k: v for k, v in (query or {}).items() if v},
        )
