import csv
import io
from collections.abc import Iterable
from typing import Any

from fastapi.responses import StreamingResponse


def _fieldnames(rows: list[dict[str, Any]]) -> list[str]:
    names: dict[str, None] = {}
    for row in rows:
        for key in row:
            names.setdefault(key, None)
    return list(names)


def to_csv(rows: Iterable[dict[str, Any]]) -> str:
    """Serialise flat metric rows; values with commas or quotes are quoted."""
    rows = list(rows)
    if not rows:
        return ""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=_fieldnames(rows), lineterminator="\n", restval="")
    writer.writeheader()
    for row in rows:
        writer.writerow({key: "" if value is None else value for key, value in row.items()})
    return output.getvalue()


def csv_response(rows: Iterable[dict[str, Any]], filename: str) -> StreamingResponse:
    """Create a CSV streaming response."""
    body = to_csv(rows) or "No data available\n"
    return StreamingResponse(
        iter([body]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
