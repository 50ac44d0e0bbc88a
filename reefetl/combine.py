from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass

import pandas as pd

from reefetl.reshape import global_last

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CombinedTables:
    by_country: pd.DataFrame
    by_sector: pd.DataFrame


def _check_column_collisions(tables: Sequence[pd.DataFrame], key: str) -> None:
    counts = Counter(column for table in tables for column in table.columns if column != key)
    clashes = sorted(column for column, count in counts.items() if count > 1)
    if clashes:
        raise ValueError(f"Summary tables share non-key columns: {clashes}")


def combine_summaries(tables: Sequence[pd.DataFrame], key: str) -> pd.DataFrame:
    """Full outer join of per-indicator summaries on ``key`` with every gap set to 0.

    Column names must already be unique per indicator; nothing is renamed here.
    """
    if not tables:
        return pd.DataFrame(columns=[key])
    _check_column_collisions(tables, key)

    combined = tables[0].astype({key: object})
    for table in tables[1:]:
        combined = combined.merge(table.astype({key: object}), on=key, how="outer")

    combined = combined.fillna(0).infer_objects()
    logger.info(
        "Combined summaries key=%s tables=%s rows=%s columns=%s",
        key,
        len(tables),
        len(combined),
        combined.shape[1],
    )
    return global_last(combined, key)
