"""
Regex-based line item mining for unstructured document text.

Used when no inference provider is configured. Best effort only: a line
becomes a record when it holds a plausible amount and something that looks
like a vendor label once the amount and date are removed.
"""

import logging
import re
from typing import List

from .config import MAX_FIELD_LENGTH, MAX_HEURISTIC_AMOUNT
from .models import ExpenseRecord

logger = logging.getLogger(__name__)

DOLLAR_PATTERN = re.compile(r"\$\s*(\d{1,6}(?:,\d{3})*(?:\.\d{2})?)")
NUMERIC_PATTERN = re.compile(r"\b(\d{1,6}(?:,\d{3})*\.\d{2})\b")
DATE_PATTERN = re.compile(r"\b(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}|\d{4}[/\-]\d{2}[/\-]\d{2})\b")

LABEL_WORDS = (
    "total", "subtotal", "balance", "tax", "tip", "due",
    "amount", "payment", "charge", "fee", "credit", "debit",
)
LABEL_PREFIX = re.compile(r"^(?:%s)\b\s*" % "|".join(LABEL_WORDS), re.IGNORECASE)

_PUNCTUATION = re.compile(r"[,$]")
_SPACES = re.compile(r"\s+")


def find_amount(line: str):
    """Return (matched substring, amount) or (None, 0.0)."""
    match = DOLLAR_PATTERN.search(line) or NUMERIC_PATTERN.search(line)
    if not match:
        return None, 0.0
    return match.group(0), float(match.group(1).replace(",", ""))


def vendor_label(line: str, amount_text: str, date_text: str) -> str:
    label = line.replace(amount_text, "", 1)
    if date_text:
        label = label.replace(date_text, "", 1)
    label = _SPACES.sub(" ", _PUNCTUATION.sub("", label)).strip()
    return LABEL_PREFIX.sub("", label).strip()


def extract_rows_from_text(text: str) -> List[ExpenseRecord]:
    """Mine currency/date patterns out of free text, one candidate per line."""
    records = []
    for line in text.split("\n"):
        line = line.strip()
        if len(line) < 4:
            continue

        amount_text, amount = find_amount(line)
        if amount_text is None or amount <= 0 or amount > MAX_HEURISTIC_AMOUNT:
            continue

        date_match = DATE_PATTERN.search(line)
        date = date_match.group(0) if date_match else ""

        vendor = vendor_label(line, amount_text, date)
        if len(vendor) < 2:
            continue

        label = vendor[:MAX_FIELD_LENGTH]
        records.append(ExpenseRecord.build(vendor=label, description=label, amount=amount, date=date))

    logger.info(f"Heuristic extraction found {len(records)} candidate line(s)")
    return records
