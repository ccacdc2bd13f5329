"""
Configuration for GreenLens.

Settings are read from the process environment after loading a local
``.env`` file. API keys left at their documented placeholder values count
as unset, so a fresh checkout runs in rule-based mode.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_FIELD_LENGTH = 80
MAX_IMAGE_BYTES = 5 * 1024 * 1024
TEXT_EXCERPT_LIMIT = 6000
MIN_EXTRACTABLE_CHARS = 40
MAX_HEURISTIC_AMOUNT = 500_000
MAX_OUTPUT_TOKENS = 2048
TEMPERATURE = 0.1

STORAGE_KEY = "greenlens_analysis"

ACCEPTED_EXTENSIONS = ("csv", "pdf", "jpg", "jpeg", "png", "webp")
IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp")

PLACEHOLDER_KEYS = {
    "your-api-key-here",
    "your-anthropic-api-key-here",
    "your-mistral-key-here",
}


def clean_api_key(value: Optional[str]) -> Optional[str]:
    """Return a usable API key or None for empty and placeholder values."""
    if value is None:
        return None
    value = value.strip()
    if not value or value in PLACEHOLDER_KEYS:
        return None
    return value


class Settings(BaseModel):
    """Runtime configuration for the pipeline and its collaborators."""
    anthropic_api_key: Optional[str] = None
    mistral_api_key: Optional[str] = None
    primary_provider: str = Field("anthropic", pattern="^(anthropic|mistral)$")
    anthropic_model: str = "claude-3-5-haiku-20241022"
    mistral_model: str = "mistral-large-latest"
    mistral_vision_model: str = "pixtral-large-latest"
    inference_timeout_seconds: float = Field(60.0, gt=0)

    pdf_backend: str = Field("pdfplumber", pattern="^(pdfplumber|pymupdf)$")

    storage_backend: str = Field("local", pattern="^(local|supabase)$")
    storage_dir: str = "./storage"
    export_dir: Optional[str] = None
    supabase_bucket: str = "analysis"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            anthropic_api_key=clean_api_key(os.getenv("ANTHROPIC_API_KEY")),
            mistral_api_key=clean_api_key(os.getenv("MISTRAL_API_KEY")),
            primary_provider=os.getenv("PRIMARY_PROVIDER", "anthropic").lower(),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-20241022"),
            mistral_model=os.getenv("MISTRAL_MODEL", "mistral-large-latest"),
            mistral_vision_model=os.getenv("MISTRAL_VISION_MODEL", "pixtral-large-latest"),
            inference_timeout_seconds=float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "60")),
            pdf_backend=os.getenv("PDF_BACKEND", "pdfplumber").lower(),
            storage_backend=os.getenv("STORAGE_BACKEND", "local").lower(),
            storage_dir=os.getenv("STORAGE_DIR", "./storage"),
            export_dir=os.getenv("EXPORT_DIR") or None,
            supabase_bucket=os.getenv("SUPABASE_BUCKET", "analysis"),
        )

    @property
    def has_inference(self) -> bool:
        return bool(self.anthropic_api_key or self.mistral_api_key)
