"""CSV input parsing into QueryTask rows."""
from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .models import QueryTask

REQUIRED_COLUMNS = ("Keywords", "Brand", "Branch")


class InputValidationError(ValueError):
    pass


def _resolve_columns(fieldnames: Sequence[str]) -> Dict[str, str]:
    by_lower = {name.lower(): name for name in fieldnames}
    resolved: Dict[str, str] = {}
    for column in REQUIRED_COLUMNS:
        actual = by_lower.get(column.lower())
        if actual is None:
            raise InputValidationError("CSV must contain 'Keywords', 'Brand', and 'Branch' columns")
        resolved[column] = actual
    return resolved


def parse_query_csv(text: str) -> List[QueryTask]:
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        raise InputValidationError("CSV file is empty or has no data rows") from None
    except csv.Error as exc:
        raise InputValidationError(f"CSV parsing error: {exc}") from exc

    fieldnames = [h.strip() for h in header]
    columns = _resolve_columns(fieldnames)
    index = {column: fieldnames.index(actual) for column, actual in columns.items()}

    tasks: List[QueryTask] = []
    seen_rows = 0
    try:
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            seen_rows += 1
            values = {
                column: (row[i].strip() if i < len(row) else "") for column, i in index.items()
            }
            if values["Keywords"] and values["Brand"] and values["Branch"]:
                tasks.append(QueryTask(values["Keywords"], values["Brand"], values["Branch"]))
    except csv.Error as exc:
        raise InputValidationError(f"CSV parsing error: {exc}") from exc

    if seen_rows == 0:
        raise InputValidationError("CSV file is empty or has no data rows")
    if not tasks:
        raise InputValidationError("No valid data rows found in CSV")
    return tasks


def read_query_csv(path: str, encoding: str = "utf-8") -> List[QueryTask]:
    csv_path = Path(path)
    if not csv_path.exists():
        raise InputValidationError(f"Input file not found: {csv_path}")
    return parse_query_csv(csv_path.read_text(encoding=encoding))


def validate_tasks(tasks: Optional[Iterable[QueryTask]]) -> List[QueryTask]:
    if tasks is None:
        raise InputValidationError("No query tasks supplied")
    out = list(tasks)
    if not out:
        raise InputValidationError("No query tasks supplied")
    for idx, task in enumerate(out):
        if not isinstance(task, QueryTask):
            raise InputValidationError(f"Row {idx + 1} is not a QueryTask: {task!r}")
        if not (task.keyword.strip() and task.brand_name.strip() and task.branch_name.strip()):
            raise InputValidationError(f"Row {idx + 1} has an empty keyword, brand or branch")
    return out
