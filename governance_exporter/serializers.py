"""Render a rowset as JSON, CSV or HTML text."""

import csv
import html
import io
import json
from typing import Any, Callable, Mapping, Sequence

Rows = Sequence[Mapping[str, Any]]

HTML_STYLE = """
body { font-family: Segoe UI, Arial, sans-serif; margin: 24px; color: #222; }
h1 { font-size: 20px; }
h2 { font-size: 16px; margin-top: 24px; }
table { border-collapse: collapse; width: 100%; margin-bottom: 16px; }
th, td { border: 1px solid #ccc; padding: 4px 8px; text-align: left; font-size: 13px; }
th { background: #f0f0f0; }
tr:nth-child(even) td { background: #fafafa; }
.meta { color: #666; font-size: 12px; }
"""


def collect_columns(rows: Rows) -> list[str]:
    """Return the union of row keys in first-seen order."""
    columns: list[str] = []
    seen: set[str] = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def to_json(rows: Rows, **_: Any) -> str:
    columns = collect_columns(rows)
    normalized = [{column: row.get(column) for column in columns} for row in rows]
    return json.dumps(normalized, indent=2, ensure_ascii=False, default=str)


def to_csv(rows: Rows, **_: Any) -> str:
    columns = collect_columns(rows)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell_text(row.get(column)) for column in columns])
    return buffer.getvalue()


def _html_table(rows: Rows, columns: list[str]) -> str:
    header = "".join(f"<th>{html.escape(c)}</th>" for c in columns)
    body = "\n".join(
        "<tr>"
        + "".join(f"<td>{html.escape(_cell_text(row.get(c)))}</td>" for c in columns)
        + "</tr>"
        for row in rows
    )
    return f"<table>\n<thead><tr>{header}</tr></thead>\n<tbody>\n{body}\n</tbody>\n</table>"


def to_html(
    rows: Rows,
    title: str = "Report",
    subtitle: str | None = None,
    group_by: str | None = None,
    **_: Any,
) -> str:
    """Render a titled, styled document.

    With ``group_by`` rows are split into one table per distinct value of
    that column, in first-seen order, each labelled with the value.
    """
    columns = collect_columns(rows)
    sections: list[str] = []

    if group_by and group_by in columns:
        groups: dict[str, list[Mapping[str, Any]]] = {}
        for row in rows:
            groups.setdefault(_cell_text(row.get(group_by)), []).append(row)
        group_columns = [c for c in columns if c != group_by]
        for name, group_rows in groups.items():
            label = name or "(none)"
            sections.append(
                f"<h2>{html.escape(label)} ({len(group_rows)})</h2>\n"
                + _html_table(group_rows, group_columns)
            )
    else:
        sections.append(_html_table(rows, columns))

    meta = f'<p class="meta">{html.escape(subtitle)}</p>\n' if subtitle else ""
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n<head>\n<meta charset="utf-8">\n'
        f"<title>{html.escape(title)}</title>\n"
        f"<style>{HTML_STYLE}</style>\n</head>\n<body>\n"
        f"<h1>{html.escape(title)}</h1>\n{meta}"
        + "\n".join(sections)
        + "\n</body>\n</html>\n"
    )


SERIALIZERS: dict[str, Callable[..., str]] = {
    "json": to_json,
    "csv": to_csv,
    "html": to_html,
}
