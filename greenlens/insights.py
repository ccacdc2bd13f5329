"""
Sustainability score derived from a stored analysis.

Shares are integer percentages of total CO2. Energy share counts against
efficiency; transport, supply and waste shares count directly.
"""

from typing import Dict, Optional

from .models import AnalysisResult, Category

SCORE_WEIGHTS = {
    Category.ENERGY: 0.30,
    Category.TRANSPORT: 0.25,
    Category.SUPPLY: 0.25,
    Category.WASTE: 0.20,
}

SCORE_LABELS = (
    (40, "High Impact"),
    (70, "Moderate Impact"),
    (90, "Sustainable"),
)


def category_shares(result: AnalysisResult) -> Dict[Category, int]:
    """Percentage of total CO2 per category."""
    total = result.total_co2
    return {
        category: round(summary.co2 / total * 100) if total > 0 else 0
        for category, summary in result.summary.items()
    }


def sustainability_score(result: AnalysisResult) -> Optional[int]:
    """0-100 score, higher is better; None without any emissions data."""
    if result.total_co2 <= 0:
        return None
    shares = category_shares(result)
    penalty = sum(shares[category] * weight for category, weight in SCORE_WEIGHTS.items())
    return max(0, min(100, round(100 - penalty)))


def score_label(score: int) -> str:
    for ceiling, label in SCORE_LABELS:
        if score <= ceiling:
            return label
    return "Green Leader"


def top_category(result: AnalysisResult) -> Category:
    """Category with the largest CO2; table order breaks ties."""
    return max(Category, key=lambda category: result.summary[category].co2)
