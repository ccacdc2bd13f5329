# GreenLens Source Package
"""
GreenLens - Expense ingestion and carbon estimation

Modules:
- tabular: CSV expense parsing
- pdf_text: PDF text extraction
- heuristics: regex line-item mining for PDFs without a provider
- extraction: provider-backed structured extraction (text and images)
- classification: keyword rules with batch AI fallback
- pipeline: per-batch orchestration
- storage: persistence handoff to the reporting stage
- insights: sustainability score
- main: FastAPI application
"""

__version__ = "1.0.0"
