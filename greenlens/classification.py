"""
Two-stage expense categorization.

Stage one is a deterministic keyword table that needs no network access.
Records it cannot place are sent, as one batch, to an inference provider.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .errors import ClassificationError
from .models import Category, Confidence, ExpenseRecord, coerce_category, coerce_confidence
from .providers import InferenceRequest, ProviderChain, parse_json_array

logger = logging.getLogger(__name__)


# =============================================================================
# RULE-BASED CLASSIFIER
# =============================================================================

# Lowercase substrings per category; table order decides ties
KEYWORD_RULES: Dict[Category, Sequence[str]] = {
    Category.ENERGY: (
        "pge", "pg&e", "con edison", "conedison", "duke energy", "duke", "dominion",
        "entergy", "xcel", "southern company", "national grid", "eversource",
        "electric", "electricity", "utility", "utilities", "power bill", "power company",
        "kwh", "kilowatt", "solar", "solar panel", "renewable", "wind energy",
        "natural gas", "gas bill", "gas company", "gas utility", "sempra", "atmos",
        "piedmont natural gas", "nv energy", "we energies", "ameren", "dte energy",
        "pseg", "comed", "aep", "firstenergy", "ppg", "lighting", "hvac", "generator",
    ),
    Category.TRANSPORT: (
        "shell", "bp", "chevron", "exxon", "exxonmobil", "mobil", "valero", "marathon",
        "citgo", "sunoco", "arco", "texaco", "76", "circle k", "speedway", "wawa",
        "gasoline", "diesel", "petrol", "fuel", "gas station", "jet fuel", "aviation fuel",
        "uber", "lyft", "taxi", "fleet", "vehicle", "car rental", "hertz", "enterprise",
        "avis", "budget rental", "rideshare", "mileage", "tolls", "parking",
        "ups", "fedex", "dhl", "usps", "maersk", "freight", "logistics", "courier",
        "shipping", "shipment", "delivery", "trucking", "amazon logistics",
        "xpo logistics", "ch robinson", "j.b. hunt", "werner", "swift transport",
        "air freight", "ocean freight", "cargo", "3pl", "last mile",
        "airline", "delta", "united", "american airlines", "southwest", "flight",
        "amtrak", "train", "rail", "transit",
    ),
    Category.SUPPLY: (
        "amazon", "amazon business", "staples", "office depot", "uline", "grainger",
        "fastenal", "w.w. grainger", "mcmaster-carr", "home depot", "lowes", "lowe's",
        "packaging", "raw material", "raw materials", "office supplies",
        "lumber", "timber", "steel", "aluminum", "copper", "plastic", "resin",
        "fabric", "textile", "cardboard",
        "wholesale", "distributor",
        "food supplier", "wholesale food", "sysco", "us foods", "gordon food",
        "printing", "print shop", "manufacturing",
    ),
    Category.WASTE: (
        "waste management", "republic services", "clean harbors", "stericycle",
        "covanta", "casella waste", "recology", "advanced disposal", "rumpke",
        "waste connections", "clean earth", "us ecology",
        "recycling", "disposal", "landfill", "dumpster", "trash", "garbage",
        "compost", "composting", "hazardous waste", "e-waste", "scrap",
        "sewage", "wastewater", "sanitation", "janitorial", "cleaning service",
        "rubbish", "refuse", "incineration",
    ),
}


@dataclass(frozen=True)
class RuleMatch:
    category: Category
    keyword: str
    confidence: Confidence = Confidence.RULE


def rule_based_category(vendor: str, description: str) -> Optional[RuleMatch]:
    """First category whose keyword occurs in "vendor description", or None."""
    text = f"{vendor or ''} {description or ''}".lower()
    for category, keywords in KEYWORD_RULES.items():
        for keyword in keywords:
            if keyword in text:
                return RuleMatch(category=category, keyword=keyword)
    return None


# =============================================================================
# PROBABILISTIC CLASSIFIER
# =============================================================================

CATEGORIZE_SYSTEM_PROMPT = """You are a sustainability analyst helping categorize business expenses by emission type.
For each expense, assign exactly one category from: energy, transport, supply, waste, or other.
- energy: electricity bills, gas utilities, power companies, solar, HVAC
- transport: fuel, shipping carriers, freight, flights, vehicle rentals, couriers
- supply: raw materials, office supplies, manufacturing inputs, packaging, wholesale goods
- waste: waste disposal, recycling services, sanitation, cleaning
- other: anything that doesn't clearly fit above
Return ONLY a valid JSON array. Each element must have: index (number), category (string), confidence (high/medium/low).
No extra text, no markdown, just the raw JSON array."""


def build_batch_prompt(records: List[ExpenseRecord]) -> str:
    lines = [
        f'{i}. Vendor: "{r.vendor}" | Description: "{r.description}" | Amount: ${r.amount:.2f}'
        for i, r in enumerate(records, start=1)
    ]
    return "Categorize these business expenses:\n" + "\n".join(lines)


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else None


def apply_batch_results(records: List[ExpenseRecord], results: List[Any]) -> List[ExpenseRecord]:
    """Match response entries to records by 1-based index; misses become other/low."""
    by_index: Dict[int, Dict[str, Any]] = {}
    for entry in results:
        if not isinstance(entry, dict):
            continue
        index = _as_index(entry.get("index"))
        if index is not None and index not in by_index:
            by_index[index] = entry

    for position, record in enumerate(records, start=1):
        entry = by_index.get(position)
        category = coerce_category(entry.get("category")) if entry else None
        if category is None:
            record.assign(Category.OTHER, Confidence.LOW)
            continue
        confidence = coerce_confidence(entry.get("confidence"))
        if confidence is None or confidence == Confidence.RULE:
            confidence = Confidence.LOW
        record.assign(category, confidence)
    return records


class ProbabilisticClassifier:
    """Batch categorization of records the keyword table could not place."""

    def __init__(self, providers: ProviderChain):
        self.providers = providers

    async def categorize(self, records: List[ExpenseRecord]) -> List[ExpenseRecord]:
        """
        Assign a category and confidence to every record in place.

        Without a configured provider every record becomes other/low.

        Raises:
            ClassificationError: the primary (and secondary, if any) provider
                failed or returned an unparseable response.
        """
        if not records:
            return records

        if not self.providers.configured:
            for record in records:
                record.assign(Category.OTHER, Confidence.LOW)
            return records

        logger.info(f"Sending {len(records)} unknown expense(s) for categorization")
        request = InferenceRequest(system=CATEGORIZE_SYSTEM_PROMPT, prompt=build_batch_prompt(records))
        results = await self.providers.run(request, parse_json_array, ClassificationError)
        return apply_batch_results(records, results)
