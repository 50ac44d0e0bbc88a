from __future__ import annotations

import pandas as pd
import pytest

from reefetl.reshape import GLOBAL_LABEL, share_pivot, wide_pivot


def test_wide_pivot_fills_missing_combinations_with_zero() -> None:
    frame = pd.DataFrame(
        {
            "Country": ["Fiji", "Fiji", "Brazil", "Fiji"],
            "Type": ["Tourism", "Fisheries", "Tourism", "Tourism"],
            "Amount": [10.0, 5.0, 3.0, 2.0],
        }
    )

    wide = wide_pivot(frame, "Country", "Type", "Amount", prefix="Revenue: ")

    assert wide["Country"].tolist() == ["Brazil", "Fiji"]
    fiji = wide.loc[wide["Country"] == "Fiji"].iloc[0]
    brazil = wide.loc[wide["Country"] == "Brazil"].iloc[0]
    assert fiji["Revenue: Tourism"] == 12.0
    assert fiji["Revenue: Fisheries"] == 5.0
    assert brazil["Revenue: Fisheries"] == 0
    assert not wide.isna().any().any()


def test_wide_pivot_keeps_global_row_last() -> None:
    frame = pd.DataFrame(
        {
            "Country": [GLOBAL_LABEL, "Brazil", "Fiji"],
            "Type": ["A", "A", "A"],
            "Amount": [3.0, 1.0, 2.0],
        }
    )

    wide = wide_pivot(frame, "Country", "Type", "Amount")

    assert wide["Country"].tolist() == ["Brazil", "Fiji", GLOBAL_LABEL]


def test_wide_pivot_of_empty_frame_has_only_key() -> None:
    frame = pd.DataFrame(columns=["Country", "Type", "Amount"])

    wide = wide_pivot(frame, "Country", "Type", "Amount")

    assert wide.empty
    assert wide.columns.tolist() == ["Country"]


def test_share_pivot_global_row_uses_ungrouped_counts() -> None:
    frame = pd.DataFrame(
        {
            "Country": ["A", "B", "B", "B"],
            "Sector": ["Tourism", "Tourism", "Fisheries", "Fisheries"],
            "Solution": ["s1", "s2", "s3", "s4"],
        }
    )

    shares = share_pivot(frame, "Country", "Sector", "Solution", prefix="Businesses % ")

    by_country = shares.set_index("Country")
    assert by_country.loc["A", "Businesses % Tourism"] == pytest.approx(100.0)
    assert by_country.loc["B", "Businesses % Tourism"] == pytest.approx(100 / 3)
    # The average of the per-country shares would be 66.7.
    assert by_country.loc[GLOBAL_LABEL, "Businesses % Tourism"] == pytest.approx(50.0)
    assert by_country.loc[GLOBAL_LABEL, "Businesses % Fisheries"] == pytest.approx(50.0)


def test_share_pivot_rows_sum_to_one_hundred() -> None:
    frame = pd.DataFrame(
        {
            "Country": ["Fiji", "Fiji", "Fiji", "Brazil", "Brazil"],
            "Sector": ["Tourism", "Fisheries", "Tourism", "Aquaculture", "Aquaculture"],
            "Solution": ["s1", "s2", "s3", "s4", "s4"],
        }
    )

    shares = share_pivot(frame, "Country", "Sector", "Solution")

    totals = shares.drop(columns=["Country"]).sum(axis=1)
    assert totals.tolist() == pytest.approx([100.0, 100.0, 100.0])


def test_share_pivot_counts_each_solution_once() -> None:
    frame = pd.DataFrame(
        {
            "Sector": ["Tourism", "Tourism", "Tourism"],
            "Country": ["Fiji", "Fiji", "Brazil"],
            "Solution": ["s1", "s1", "s2"],
        }
    )

    shares = share_pivot(frame, "Sector", "Country", "Solution").set_index("Sector")

    assert shares.loc["Tourism", "Fiji"] == pytest.approx(50.0)
    assert shares.loc["Tourism", "Brazil"] == pytest.approx(50.0)
