"""
Structured extraction of expense line items through an inference provider.

Document text and receipt images are sent with a fixed extraction
instruction; the JSON array that comes back is normalized into
ExpenseRecords that already carry a category and confidence.
"""

import logging
from typing import Any, Iterable, List

from .config import MAX_IMAGE_BYTES, TEXT_EXCERPT_LIMIT
from .errors import ConfigurationError, ExtractionError, RecordValidationError, SizeLimitError
from .models import Confidence, ExpenseRecord, coerce_confidence, to_float
from .providers import InferenceRequest, ProviderChain, parse_json_array

logger = logging.getLogger(__name__)


DOCUMENT_SYSTEM_PROMPT = """You are a sustainability data extractor. Given text from any business document (sustainability report, expense table, invoice, financial statement), extract every emission or expense line item.

For each item return a JSON object with:
- vendor: the category, company, or item name (string)
- description: a brief description of the item (string)
- amount: the cost in USD (number, 0 if no dollar value given)
- co2_kg: the CO2 equivalent in kilograms (number; convert tonnes to kg by x 1000; 0 if not given)
- category: exactly one of: energy, transport, supply, waste, or other
  - energy: electricity, gas utilities, power companies, solar, HVAC, lighting
  - transport: fuel, shipping carriers, freight, flights, vehicle costs, delivery
  - supply: raw materials, office supplies, packaging, manufacturing inputs
  - waste: waste disposal, recycling, sanitation, cleaning
  - other: anything that does not clearly fit above
- confidence: high, medium, or low
- date: date string if present, otherwise ""

Return ONLY a valid JSON array. No markdown, no explanation, just the raw JSON array."""

IMAGE_SYSTEM_PROMPT = """You are a receipt and invoice parser. Extract all expense line items from the image provided. Return ONLY a valid JSON array. Each element must have: vendor (string), description (string), amount (number in USD, positive), date (string, empty if not visible), category (exactly one of: energy, transport, supply, waste, or other; energy = electricity/gas utilities/power; transport = fuel/shipping/freight/delivery; supply = materials/office supplies/packaging; waste = disposal/recycling/sanitation; other = anything else), confidence (high/medium/low). No explanations, no markdown, only the raw JSON array."""

DOCUMENT_USER_PROMPT = "Extract all emission and expense items from this document:\n\n{excerpt}"
IMAGE_USER_PROMPT = "Extract all expense line items from this receipt or document."


def make_excerpt(text: str, limit: int = TEXT_EXCERPT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n[truncated]"


def _provider_confidence(value: Any) -> Confidence:
    confidence = coerce_confidence(value)
    if confidence is None or confidence == Confidence.RULE:
        return Confidence.MEDIUM
    return confidence


def normalize_items(items: Iterable[Any], require_positive_amount: bool = False) -> List[ExpenseRecord]:
    """Turn raw provider items into records, dropping the unusable ones."""
    records = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if require_positive_amount and to_float(item.get("amount")) <= 0:
            continue
        try:
            records.append(ExpenseRecord.build(
                vendor=item.get("vendor"),
                description=item.get("description") or item.get("vendor"),
                amount=item.get("amount"),
                date=item.get("date"),
                category=item.get("category"),
                confidence=_provider_confidence(item.get("confidence")),
                co2kg=item.get("co2_kg"),
            ))
        except RecordValidationError:
            continue
    return records


def parse_document_response(text: str) -> List[ExpenseRecord]:
    records = normalize_items(parse_json_array(text))
    if not records:
        raise ExtractionError(
            "No recognizable data found. Ensure the file contains emission or expense information."
        )
    return records


def parse_image_response(text: str) -> List[ExpenseRecord]:
    records = normalize_items(parse_json_array(text), require_positive_amount=True)
    if not records:
        raise ExtractionError(
            "No expense items found. Ensure the file shows a receipt or financial document."
        )
    return records


class StructuredExtractionClient:
    """Extracts categorized line items from document text or images."""

    def __init__(self, providers: ProviderChain):
        self.providers = providers

    @property
    def configured(self) -> bool:
        return self.providers.configured

    async def extract_from_text(self, text: str) -> List[ExpenseRecord]:
        """Extract records from plain document text (oversized text is truncated)."""
        if not self.configured:
            raise ConfigurationError(
                "An API key is required to parse this PDF. Add ANTHROPIC_API_KEY or MISTRAL_API_KEY to .env."
            )

        request = InferenceRequest(
            system=DOCUMENT_SYSTEM_PROMPT,
            prompt=DOCUMENT_USER_PROMPT.format(excerpt=make_excerpt(text)),
        )
        records = await self.providers.run(request, parse_document_response, ExtractionError)
        logger.info(f"Structured extraction returned {len(records)} record(s) from text")
        return records

    async def extract_from_image(self, content: bytes, media_type: str, filename: str = "image") -> List[ExpenseRecord]:
        """
        Extract records from receipt image bytes.

        Raises:
            SizeLimitError: the image exceeds MAX_IMAGE_BYTES; raised before
                any provider is contacted.
        """
        if len(content) > MAX_IMAGE_BYTES:
            raise SizeLimitError(
                f'"{filename}" is too large (max 5 MB). Please compress the image and try again.'
            )
        if not self.configured:
            raise ConfigurationError(
                "An API key is required to parse images. Add ANTHROPIC_API_KEY or MISTRAL_API_KEY to .env."
            )

        request = InferenceRequest(
            system=IMAGE_SYSTEM_PROMPT,
            prompt=IMAGE_USER_PROMPT,
            image=content,
            media_type=media_type,
        )
        records = await self.providers.run(request, parse_image_response, ExtractionError)
        logger.info(f"Structured extraction returned {len(records)} record(s) from {filename}")
        return records
