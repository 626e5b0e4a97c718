from __future__ import annotations

from io import BytesIO
from typing import Sequence

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from .field_config import FieldDescriptor
from .records import Record
from .tables import get_field_value
from .utils import format_date_ko


def build_excel(title: str, descriptors: Sequence[FieldDescriptor], records: Sequence[Record]) -> bytes:
    """Export rows with full (untruncated) values in descriptor column order."""
    wb = Workbook()
    ws = wb.active
    ws.title = (title or "items")[:31]

    columns = [d for d in descriptors if d.type != "attachment"]
    headers = ["ID"] + [d.name for d in columns]
    ws.append(headers)
    for r in records:
        row = [r.id]
        for d in columns:
            value = get_field_value(r, d)
            row.append(format_date_ko(value) if d.type == "calendar" and value else value)
        ws.append(row)

    # Automatic width optimization by real content length.
    for i, h in enumerate(headers, start=1):
        max_len = len(str(h))
        for row in ws.iter_rows(min_row=2, min_col=i, max_col=i):
            val = row[0].value
            if val is None:
                continue
            max_len = max(max_len, len(str(val)))
        ws.column_dimensions[get_column_letter(i)].width = max(10, min(48, max_len + 2))
    ws.freeze_panes = "A2"

    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()
