from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

logger = logging.getLogger(__name__)

INVALID_COUNTRY = "invalid_country"
MISSING_REPORT = "missing_report"
SYNTHESIZED_TARGET = "synthesized_target"

CATEGORY_HEADLINES = {
    INVALID_COUNTRY: "Projects resolved to a country outside the valid set",
    MISSING_REPORT: "Projects without any report data (excluded, data re-pulled)",
    SYNTHESIZED_TARGET: "Projects without a target; target copied from latest report",
}


class FatalIOError(RuntimeError):
    """Raised when the run cannot continue because an external collaborator failed."""


class DataSourceError(FatalIOError):
    pass


class OutputWriteError(FatalIOError):
    pass


@dataclass(slots=True, frozen=True)
class DataQualityWarning:
    category: str
    project: str
    message: str
    country: str | None = None


def by_category(diagnostics: list[DataQualityWarning]) -> dict[str, list[DataQualityWarning]]:
    grouped: dict[str, list[DataQualityWarning]] = defaultdict(list)
    for item in diagnostics:
        grouped[item.category].append(item)
    return dict(grouped)


def format_category(category: str, items: list[DataQualityWarning]) -> str:
    headline = CATEGORY_HEADLINES.get(category, category)
    lines = [f"{headline} ({len(items)}):"]
    for item in sorted(items, key=lambda entry: (entry.project, entry.message)):
        if item.country is not None:
            lines.append(f"  - {item.project} [{item.country}]: {item.message}")
        else:
            lines.append(f"  - {item.project}: {item.message}")
    return "\n".join(lines)


def log_diagnostics(diagnostics: list[DataQualityWarning]) -> None:
    """Emit one warning message per diagnostic category."""
    for category, items in by_category(diagnostics).items():
        logger.warning("%s", format_category(category, items))
