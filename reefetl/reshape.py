from __future__ import annotations

import pandas as pd

GLOBAL_LABEL = "Global"


def global_last(frame: pd.DataFrame, key: str) -> pd.DataFrame:
    """Sort by key with the Global row pinned to the bottom."""
    if frame.empty:
        return frame.reset_index(drop=True)

    is_global = frame[key].astype("string").eq(GLOBAL_LABEL).fillna(False)
    ordered = frame.assign(_is_global=is_global.astype(int)).sort_values(
        ["_is_global", key], kind="stable"
    )
    return ordered.drop(columns=["_is_global"]).reset_index(drop=True)


def wide_pivot(
    frame: pd.DataFrame,
    key: str,
    category: str,
    value: str,
    prefix: str = "",
) -> pd.DataFrame:
    """Turn (key, category, value) rows into one row per key and one column per category.

    Repeated (key, category) pairs are summed and absent combinations are 0.
    """
    data = frame.dropna(subset=[key, category])
    if data.empty:
        return pd.DataFrame(columns=[key])

    wide = data.pivot_table(
        index=key,
        columns=category,
        values=value,
        aggfunc="sum",
        fill_value=0,
    )
    wide.columns = [f"{prefix}{column}" for column in wide.columns]
    wide = wide.reset_index()
    wide.columns.name = None
    return global_last(wide, key)


def share_pivot(
    frame: pd.DataFrame,
    key: str,
    category: str,
    item: str,
    prefix: str = "",
) -> pd.DataFrame:
    """Percentage of distinct items falling in each category, per key.

    The Global row is recomputed over all keys from the ungrouped rows rather
    than averaged from the per-key percentages.
    """
    data = frame.dropna(subset=[key, category, item])
    if data.empty:
        return pd.DataFrame(columns=[key])

    counts = data.groupby([key, category])[item].nunique()
    totals = data.groupby(key)[item].nunique()
    per_key = counts.div(totals, level=key).mul(100).rename("share").reset_index()

    global_counts = data.groupby(category)[item].nunique()
    global_share = (global_counts / data[item].nunique() * 100).rename("share").reset_index()
    global_share.insert(0, key, GLOBAL_LABEL)

    long = pd.concat([per_key, global_share], ignore_index=True)
    return wide_pivot(long, key, category, "share", prefix=prefix)
