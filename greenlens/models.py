"""
Data model for expense ingestion and emission estimation.

An ExpenseRecord is created by a parser or extractor through
``ExpenseRecord.build``, assigned a category by the classifier stage, given a
CO2 estimate, and then persisted as part of an AnalysisResult.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import MAX_FIELD_LENGTH
from .errors import RecordValidationError


# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================

class Category(str, Enum):
    """Emission categories, in table-declaration order."""
    ENERGY = "energy"
    TRANSPORT = "transport"
    SUPPLY = "supply"
    WASTE = "waste"
    OTHER = "other"


class Confidence(str, Enum):
    """How a record's category was determined."""
    RULE = "rule"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# kg CO2e per USD spent (EPA/EEIO averages)
EMISSION_FACTORS: Dict[Category, float] = {
    Category.ENERGY: 0.233,
    Category.TRANSPORT: 0.181,
    Category.SUPPLY: 0.142,
    Category.WASTE: 0.098,
    Category.OTHER: 0.120,
}

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


def to_float(value: Any) -> float:
    """Lenient numeric parse: numbers pass through, strings use their leading number."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _LEADING_NUMBER.match(str(value))
        if not match:
            return 0.0
        number = float(match.group(0))
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def coerce_category(value: Any) -> Optional[Category]:
    """Map a loosely-typed category to the five-value set, or None."""
    if isinstance(value, Category):
        return value
    raw = str(value or "").strip().lower()
    try:
        return Category(raw)
    except ValueError:
        return None


def coerce_confidence(value: Any) -> Optional[Confidence]:
    if isinstance(value, Confidence):
        return value
    raw = str(value or "").strip().lower()
    try:
        return Confidence(raw)
    except ValueError:
        return None


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class ExpenseRecord:
    """One expense line item."""
    vendor: str
    description: str
    amount: float
    date: str = ""
    category: Optional[Category] = None
    confidence: Optional[Confidence] = None
    co2kg: float = 0.0
    direct_co2: bool = False

    @classmethod
    def build(
        cls,
        vendor: Any = "",
        description: Any = "",
        amount: Any = 0,
        date: Any = "",
        category: Any = None,
        confidence: Any = None,
        co2kg: Any = 0,
        direct_co2: Optional[bool] = None,
    ) -> "ExpenseRecord":
        """
        Validating factory for every record entering the pipeline.

        Strings are trimmed and truncated, amount and CO2 become non-negative
        floats, category and confidence are clamped to their enums (None when
        unrecognized). Raises RecordValidationError when both vendor and
        description are empty.
        """
        vendor = str(vendor if vendor is not None else "").strip()[:MAX_FIELD_LENGTH]
        description = str(description if description is not None else "").strip()[:MAX_FIELD_LENGTH]
        if not vendor and not description:
            raise RecordValidationError("Expense needs a vendor or a description")

        co2 = abs(to_float(co2kg))
        return cls(
            vendor=vendor,
            description=description,
            amount=abs(to_float(amount)),
            date=str(date if date is not None else "").strip(),
            category=coerce_category(category),
            confidence=coerce_confidence(confidence),
            co2kg=co2,
            direct_co2=(co2 > 0) if direct_co2 is None else bool(direct_co2),
        )

    def assign(self, category: Category, confidence: Confidence):
        """Set the classification outcome."""
        self.category = category
        self.confidence = confidence

    def apply_emission_factor(self):
        """Compute the final CO2 estimate, keeping a provider-reported figure."""
        if self.direct_co2 and self.co2kg > 0:
            self.co2kg = round(self.co2kg, 2)
            return
        factor = EMISSION_FACTORS.get(self.category, EMISSION_FACTORS[Category.OTHER])
        self.co2kg = round(self.amount * factor, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "description": self.description,
            "amount": self.amount,
            "date": self.date,
            "category": self.category.value if self.category else None,
            "confidence": self.confidence.value if self.confidence else None,
            "co2kg": self.co2kg,
            "directCo2": self.direct_co2,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpenseRecord":
        return cls.build(
            vendor=data.get("vendor"),
            description=data.get("description"),
            amount=data.get("amount"),
            date=data.get("date"),
            category=data.get("category"),
            confidence=data.get("confidence"),
            co2kg=data.get("co2kg"),
            direct_co2=bool(data.get("directCo2", False)),
        )


@dataclass
class CategorySummary:
    """Aggregate spend and emissions for one category."""
    amount: float = 0.0
    co2: float = 0.0
    count: int = 0

    def add(self, record: ExpenseRecord):
        self.amount += record.amount
        self.co2 += record.co2kg
        self.count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "co2": self.co2, "count": self.count}


def summarize(rows: Iterable[ExpenseRecord]) -> Tuple[Dict[Category, CategorySummary], float, float]:
    """Aggregate rows per category; every category key is present."""
    summary = {category: CategorySummary() for category in Category}
    total_amount = 0.0
    total_co2 = 0.0
    for row in rows:
        summary[row.category or Category.OTHER].add(row)
        total_amount += row.amount
        total_co2 += row.co2kg
    return summary, total_amount, total_co2


@dataclass
class AnalysisResult:
    """Persisted artifact of one successful pipeline run."""
    rows: List[ExpenseRecord]
    summary: Dict[Category, CategorySummary]
    total_amount: float
    total_co2: float
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_rows(cls, rows: List[ExpenseRecord], analyzed_at: Optional[datetime] = None) -> "AnalysisResult":
        summary, total_amount, total_co2 = summarize(rows)
        return cls(
            rows=list(rows),
            summary=summary,
            total_amount=total_amount,
            total_co2=total_co2,
            analyzed_at=analyzed_at or datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows": [row.to_dict() for row in self.rows],
            "summary": {category.value: s.to_dict() for category, s in self.summary.items()},
            "totalAmount": self.total_amount,
            "totalCO2": self.total_co2,
            "analyzedAt": self.analyzed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        rows = [ExpenseRecord.from_dict(row) for row in data["rows"]]
        summary = {category: CategorySummary() for category in Category}
        for key, values in (data.get("summary") or {}).items():
            category = coerce_category(key)
            if category is not None:
                summary[category] = CategorySummary(
                    amount=float(values.get("amount", 0)),
                    co2=float(values.get("co2", 0)),
                    count=int(values.get("count", 0)),
                )
        return cls(
            rows=rows,
            summary=summary,
            total_amount=float(data.get("totalAmount", 0)),
            total_co2=float(data.get("totalCO2", 0)),
            analyzed_at=datetime.fromisoformat(data["analyzedAt"]),
        )
