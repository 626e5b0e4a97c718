from __future__ import annotations

import datetime as dt
import math
from pathlib import Path
from typing import Any, Optional, Union

from jinja2 import Environment, FileSystemLoader, select_autoescape

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d", "%Y. %m. %d.", "%Y. %m. %d", "%Y%m%d")


def today_ymd() -> str:
    return dt.date.today().isoformat()


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def parse_date(value: Any) -> Optional[dt.datetime]:
    """Parse the date shapes the date picker and CodeBeamer produce; None if unparseable."""
    s = str(value or "").strip()
    if not s:
        return None
    iso = s[:-1] + "+00:00" if s.endswith(("Z", "z")) else s
    try:
        return dt.datetime.fromisoformat(iso)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def format_date_ko(value: Any) -> str:
    """'2024-01-15' -> '2024. 1. 15.'; unparseable values come back unchanged."""
    parsed = parse_date(value)
    if parsed is None:
        return str(value or "")
    return f"{parsed.year}. {parsed.month}. {parsed.day}."


def to_wire_timestamp(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    value = value.astimezone(dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_number(value: Any) -> Optional[Union[int, float]]:
    s = "" if value is None else str(value).strip()
    if not s:
        return None
    try:
        num = float(s)
    except ValueError:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return int(num) if num.is_integer() else num


TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
_FRAGMENT_ENV: Optional[Environment] = None


def render_fragment(template_name: str, **context: Any) -> str:
    global _FRAGMENT_ENV
    if _FRAGMENT_ENV is None:
        _FRAGMENT_ENV = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )
    return _FRAGMENT_ENV.get_template(template_name).render(**context)
