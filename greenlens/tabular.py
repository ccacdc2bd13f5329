"""
Tabular (CSV) expense parser.

Maps loosely-named spreadsheet columns onto date, vendor, description and
amount by header substring matching, then builds one ExpenseRecord per row.
"""

import logging
import re
from typing import Dict, List, Sequence

from .errors import FormatError, RecordValidationError
from .models import ExpenseRecord, to_float

logger = logging.getLogger(__name__)


# Acceptable header substrings per logical column, in priority order
COLUMN_CANDIDATES: Dict[str, Sequence[str]] = {
    "date": ("date", "transaction date", "txn date", "posted date", "time"),
    "vendor": (
        "vendor", "supplier", "merchant", "payee", "company", "name",
        "description", "memo", "details", "expense", "item",
    ),
    "description": (
        "description", "desc", "details", "memo", "notes", "item",
        "product", "service", "category",
    ),
    "amount": (
        "amount", "cost", "price", "total", "charge", "debit", "spend",
        "value", "usd", "dollars",
    ),
}

_LINE_BREAK = re.compile(r"\r?\n")
_QUOTES = re.compile(r"['\"]")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def split_line(line: str, delimiter: str = ",") -> List[str]:
    """Split one delimited line, honoring quoted fields that contain the delimiter."""
    cells = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            cells.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    cells.append("".join(current))
    return cells


def find_column(headers: List[str], candidates: Sequence[str]) -> int:
    """Index of the first header containing any candidate, tried in candidate order."""
    for candidate in candidates:
        for index, header in enumerate(headers):
            if candidate in header:
                return index
    return -1


def _clean(cell: str) -> str:
    return _QUOTES.sub("", cell).strip()


def parse_amount(raw: str) -> float:
    """Strip everything but digits, '.' and '-' and parse; 0 when unparseable."""
    return abs(to_float(_NON_NUMERIC.sub("", raw)))


def parse_csv(text: str, delimiter: str = ",") -> List[ExpenseRecord]:
    """
    Parse delimited text with a header row into uncategorized records.

    Raises:
        FormatError: fewer than two lines, no amount column, no vendor or
            description column, or no surviving data rows.
    """
    lines = _LINE_BREAK.split(text.strip())
    if len(lines) < 2:
        raise FormatError("CSV must have at least a header row and one data row.")

    headers = [_clean(h).lower() for h in split_line(lines[0], delimiter)]
    columns = {name: find_column(headers, candidates) for name, candidates in COLUMN_CANDIDATES.items()}

    if columns["amount"] == -1:
        raise FormatError(
            "Could not find an Amount column. Please ensure your CSV has a cost/amount column."
        )
    if columns["vendor"] == -1 and columns["description"] == -1:
        raise FormatError(
            "Could not find a Vendor or Description column. CSV needs at least 2 identifiable columns."
        )

    def cell(cells: List[str], name: str) -> str:
        index = columns[name]
        if index < 0 or index >= len(cells):
            return ""
        return cells[index]

    records = []
    for line_number, line in enumerate(lines[1:], start=2):
        line = line.strip()
        if not line:
            continue
        cells = split_line(line, delimiter)

        vendor = _clean(cell(cells, "vendor"))
        description = _clean(cell(cells, "description"))
        amount = parse_amount(cell(cells, "amount"))

        if amount == 0 and not vendor and not description:
            continue
        try:
            records.append(ExpenseRecord.build(
                vendor=vendor,
                description=description,
                amount=amount,
                date=_clean(cell(cells, "date")),
            ))
        except RecordValidationError:
            logger.debug(f"Skipping CSV line {line_number}: no vendor or description")

    if not records:
        raise FormatError("No valid data rows found in the CSV.")

    logger.info(f"Parsed {len(records)} rows from CSV ({len(lines) - 1} data lines)")
    return records
