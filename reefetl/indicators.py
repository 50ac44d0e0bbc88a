from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from functools import reduce

import pandas as pd

from reefetl.diagnostics import SYNTHESIZED_TARGET, DataQualityWarning
from reefetl.reshape import GLOBAL_LABEL, global_last, share_pivot, wide_pivot

logger = logging.getLogger(__name__)

F1_TABLE = "F1"
F2_TABLE = "F2"
F6_TABLE = "F6"
F7_TABLE = "F7"
BUSINESSES_TABLE = "BusinessesFinanceSolutions"
INVESTMENTS_TABLE = "Investments"
REVENUES_TABLE = "Revenues"

REPORT_TABLES = [
    F1_TABLE,
    F2_TABLE,
    F6_TABLE,
    F7_TABLE,
    BUSINESSES_TABLE,
    INVESTMENTS_TABLE,
    REVENUES_TABLE,
]

PROJECT = "Project"
COUNTRY = "Country"
SECTOR = "Sector"
TITLE = "Title"
DATE_COLUMN = "Reporting Date"
DATA_TYPE = "Data Type"
SUBINDICATOR = "Sub-indicator"
CODE = "Code"
VALUE = "Value"
AMOUNT = "Amount"
SOLUTION = "Business/Finance Solution"
INVESTMENT_SOURCE = "Investment Source"
INVESTMENT_TYPE = "Investment Type"
REVENUE_TYPE = "Revenue Type"
GENDER_SMART = "Gender-Smart"

REPORT = "Report"
TARGET = "Target"
DATA_TYPES = (REPORT, TARGET)
ROLE_LABELS = {TARGET: "Target", REPORT: "Secured"}

DATES = "Reporting Dates"
TITLES = "Titles"
LIST_SEPARATOR = "; "

UNRESOLVED_COUNTRY = "Unresolved"
UNSPECIFIED_SECTOR = "Unspecified"

# Source areas are reported in km2.
AREA_TO_HECTARES = 100

# Malformed baseline round uploaded for a single project; never valid data.
EXCLUDED_TITLES = frozenset({"Baseline Report (superseded upload)"})

F2_PATTERNS = ("F2.1b", "F2.2b")
F6_PATTERNS = ("F6.1", "F6.2")
F7_PATTERNS = ("F7.1", "F7.2")

TRUTHY_FLAGS = {"true", "yes", "y", "1"}

BASE_COLUMNS = [PROJECT, TITLE, DATE_COLUMN, DATA_TYPE]


def parse_reporting_date(series: pd.Series) -> pd.Series:
    text = series.astype("string").str.strip().replace({"": pd.NA})
    # Date formats can differ between rows of one table.
    parsed = pd.to_datetime(text, errors="coerce", format="mixed")
    numeric = pd.to_numeric(text, errors="coerce").astype("float64")
    parsed_excel_serial = pd.to_datetime(numeric, unit="D", origin="1899-12-30", errors="coerce")
    return parsed.fillna(parsed_excel_serial)


def _clean_strings(series: pd.Series) -> pd.Series:
    return series.astype("string").str.strip().replace({"": pd.NA})


def prepare_table(
    frame: pd.DataFrame | None,
    numeric_columns: Sequence[str] = (),
    text_columns: Sequence[str] = (),
) -> pd.DataFrame:
    """Coerce a raw indicator table to the columns and dtypes the aggregators expect."""
    prepared = pd.DataFrame() if frame is None else frame.copy()

    for column in [*BASE_COLUMNS, *numeric_columns, *text_columns]:
        if column not in prepared.columns:
            prepared[column] = pd.NA

    for column in [PROJECT, TITLE, *text_columns]:
        prepared[column] = _clean_strings(prepared[column])
    prepared[DATA_TYPE] = _clean_strings(prepared[DATA_TYPE]).str.title()
    prepared[DATE_COLUMN] = parse_reporting_date(prepared[DATE_COLUMN])
    for column in numeric_columns:
        prepared[column] = pd.to_numeric(prepared[column], errors="coerce")

    prepared = prepared.loc[prepared[PROJECT].notna() & prepared[DATA_TYPE].isin(DATA_TYPES)]
    return prepared.reset_index(drop=True)


def drop_excluded_titles(frame: pd.DataFrame) -> pd.DataFrame:
    excluded = frame[TITLE].isin(EXCLUDED_TITLES).fillna(False)
    return frame.loc[~excluded].reset_index(drop=True)


def _pattern(patterns: Iterable[str]) -> str:
    return "|".join(re.escape(pattern) for pattern in patterns)


def filter_subindicators(frame: pd.DataFrame, patterns: Iterable[str]) -> pd.DataFrame:
    matches = frame[SUBINDICATOR].astype("string").str.contains(_pattern(patterns), regex=True, na=False)
    return frame.loc[matches.astype(bool)].reset_index(drop=True)


def extract_code(series: pd.Series, patterns: Iterable[str]) -> pd.Series:
    return series.astype("string").str.extract(f"({_pattern(patterns)})", expand=False)


def to_hectares(frame: pd.DataFrame, column: str = VALUE) -> pd.DataFrame:
    return frame.assign(**{column: frame[column] * AREA_TO_HECTARES})


def sum_snapshots(
    frame: pd.DataFrame,
    value_column: str = VALUE,
    extra_keys: Sequence[str] = (),
) -> pd.DataFrame:
    """Collapse the rows of one report round into a single value per key."""
    keys = [*BASE_COLUMNS, *extra_keys]
    if frame.empty:
        return frame.loc[:, [*keys, value_column]].reset_index(drop=True)
    return frame.groupby(keys, as_index=False, dropna=False)[value_column].sum()


def latest_rows(frame: pd.DataFrame, keys: Sequence[str]) -> pd.DataFrame:
    """Keep the most recent row per group.

    Rows sharing the maximum reporting date are ordered by title and the last
    one wins, so the result never depends on the incoming row order.
    """
    ordered = frame.sort_values([DATE_COLUMN, TITLE], kind="stable", na_position="first")
    latest = ordered.groupby(list(keys), dropna=False, sort=False).tail(1)
    return latest.sort_values(list(keys), kind="stable").reset_index(drop=True)


def latest_reports(frame: pd.DataFrame, keys: Sequence[str]) -> pd.DataFrame:
    return latest_rows(frame.loc[frame[DATA_TYPE].eq(REPORT)], keys)


def latest_round(frame: pd.DataFrame) -> pd.DataFrame:
    """Keep every row of each project's most recent report round."""
    round_keys = [PROJECT, DATE_COLUMN, TITLE]
    if frame.empty:
        return frame.reset_index(drop=True)
    rounds = latest_rows(frame.loc[:, round_keys].drop_duplicates(), [PROJECT])
    return frame.merge(rounds, on=round_keys, how="inner")


def reconcile_targets(
    frame: pd.DataFrame,
    value_column: str = VALUE,
    keys: Sequence[str] = (PROJECT,),
    label: str = "",
) -> tuple[pd.DataFrame, list[DataQualityWarning]]:
    """Pair every latest report with a target that is at least as large.

    Expects one Report and at most one Target row per key. A missing target is
    copied from the report; a target below its report is raised to it.
    """
    keys = list(keys)
    reports = frame.loc[frame[DATA_TYPE].eq(REPORT)]
    targets = frame.loc[frame[DATA_TYPE].eq(TARGET)]

    has_target = reports.set_index(keys).index.isin(targets.set_index(keys).index)
    missing = reports.loc[~has_target]
    synthesized = missing.assign(**{DATA_TYPE: TARGET})

    diagnostics = [
        DataQualityWarning(
            category=SYNTHESIZED_TARGET,
            project=str(row[PROJECT]),
            message=f"{label} target copied from report '{row[TITLE]}'".strip(),
        )
        for _, row in missing.iterrows()
    ]

    combined = pd.concat([frame, synthesized], ignore_index=True) if len(synthesized) else frame
    report_values = (
        reports.loc[:, [*keys, value_column]]
        .drop_duplicates(subset=keys, keep="last")
        .rename(columns={value_column: "_report_value"})
    )
    merged = combined.merge(report_values, on=keys, how="left")
    below_report = merged[DATA_TYPE].eq(TARGET) & merged["_report_value"].gt(merged[value_column])
    merged.loc[below_report, value_column] = merged.loc[below_report, "_report_value"]

    reconciled = merged.drop(columns=["_report_value"])
    reconciled = reconciled.sort_values([*keys, DATA_TYPE], kind="stable").reset_index(drop=True)
    return reconciled, diagnostics


def attach_country(frame: pd.DataFrame, lookup: pd.DataFrame) -> pd.DataFrame:
    left = frame.drop(columns=[COUNTRY], errors="ignore").astype({PROJECT: "string"})
    right = lookup.loc[:, [PROJECT, COUNTRY]].astype({PROJECT: "string"})
    merged = left.merge(right, on=PROJECT, how="left")
    merged[COUNTRY] = merged[COUNTRY].astype("string").fillna(UNRESOLVED_COUNTRY)
    return merged


def _join_dates(series: pd.Series) -> str:
    dates = pd.to_datetime(series, errors="coerce").dropna()
    return LIST_SEPARATOR.join(sorted(dates.dt.strftime("%Y-%m-%d").unique()))


def _join_titles(series: pd.Series) -> str:
    return LIST_SEPARATOR.join(sorted(series.dropna().astype(str).unique()))


def summarize(
    frame: pd.DataFrame,
    keys: Sequence[str],
    value_columns: Sequence[str] = (),
) -> pd.DataFrame:
    keys = list(keys)
    columns = [*keys, *value_columns, DATES, TITLES]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    aggregations = {column: (column, "sum") for column in value_columns}
    aggregations[DATES] = (DATE_COLUMN, _join_dates)
    aggregations[TITLES] = (TITLE, _join_titles)
    grouped = frame.groupby(keys, as_index=False, dropna=False).agg(**aggregations)
    return grouped.loc[:, columns]


def summarize_with_global(
    frame: pd.DataFrame,
    key: str,
    value_columns: Sequence[str] = (),
    by: Sequence[str] = (),
) -> pd.DataFrame:
    """Summarize per key and append the Global row recomputed over all rows."""
    keys = [key, *by]
    per_key = summarize(frame, keys, value_columns)
    overall = summarize(frame.assign(**{key: GLOBAL_LABEL}), keys, value_columns)
    if overall.empty:
        return per_key
    return pd.concat([per_key, overall], ignore_index=True)


def _outer_merge(frames: Sequence[pd.DataFrame], key: str) -> pd.DataFrame:
    keyed = [frame.astype({key: object}) for frame in frames]
    merged = reduce(lambda left, right: left.merge(right, on=key, how="outer"), keyed)
    for column in merged.columns:
        if column == key:
            continue
        if pd.api.types.is_numeric_dtype(merged[column]):
            merged[column] = merged[column].fillna(0)
        else:
            merged[column] = merged[column].fillna("")
    return global_last(merged, key)


def _labelled(summary: pd.DataFrame, family: str, values: dict[str, str]) -> pd.DataFrame:
    return summary.rename(
        columns={
            **values,
            DATES: f"{family} {DATES}",
            TITLES: f"{family} {TITLES}",
        }
    )


def split_by_data_type(
    summary: pd.DataFrame,
    key: str,
    family: str,
    unit: str,
    value_column: str = VALUE,
) -> pd.DataFrame:
    """Pivot Data Type into Target/Secured column pairs, one row per key."""
    roles = [f"{family} {ROLE_LABELS[data_type]}" for data_type in (TARGET, REPORT)]
    parts = []
    for data_type, role in zip((TARGET, REPORT), roles):
        part = summary.loc[summary[DATA_TYPE].eq(data_type)].drop(columns=[DATA_TYPE])
        part = _labelled(part, role, {value_column: f"{role} {unit}"})
        parts.append(part.astype({f"{role} {unit}": "float64"}))

    wide = _outer_merge(parts, key)
    ordered = [
        key,
        *(f"{role} {unit}" for role in roles),
        *(f"{role} {DATES}" for role in roles),
        *(f"{role} {TITLES}" for role in roles),
    ]
    return wide.loc[:, ordered]


def _area_family(
    frame: pd.DataFrame | None,
    lookup: pd.DataFrame,
    family: str,
    patterns: Sequence[str] = (),
) -> tuple[pd.DataFrame, list[DataQualityWarning]]:
    text_columns = [SUBINDICATOR] if patterns else []
    rows = drop_excluded_titles(prepare_table(frame, [VALUE], text_columns))
    if patterns:
        rows = filter_subindicators(rows, patterns)
    rows = to_hectares(sum_snapshots(rows))
    rows = latest_rows(rows, [PROJECT, DATA_TYPE])
    rows, diagnostics = reconcile_targets(rows, VALUE, label=family)
    rows = attach_country(rows, lookup)

    summary = summarize_with_global(rows, COUNTRY, [VALUE], by=[DATA_TYPE])
    table = split_by_data_type(summary, COUNTRY, family, "(ha)")
    logger.info(
        "Aggregated %s projects=%s countries=%s synthesized_targets=%s",
        family,
        rows[PROJECT].nunique(),
        len(table),
        len(diagnostics),
    )
    return table, diagnostics


def area_under_management(
    f1: pd.DataFrame | None, lookup: pd.DataFrame
) -> tuple[pd.DataFrame, list[DataQualityWarning]]:
    return _area_family(f1, lookup, "F1")


def protected_area_financing(
    f2: pd.DataFrame | None, lookup: pd.DataFrame
) -> tuple[pd.DataFrame, list[DataQualityWarning]]:
    return _area_family(f2, lookup, "F2", F2_PATTERNS)


def _people_family(
    frame: pd.DataFrame | None,
    lookup: pd.DataFrame,
    family: str,
    patterns: Sequence[str],
) -> pd.DataFrame:
    rows = drop_excluded_titles(prepare_table(frame, [VALUE], [SUBINDICATOR]))
    rows = filter_subindicators(rows, patterns)
    rows = rows.assign(**{CODE: extract_code(rows[SUBINDICATOR], patterns)})
    rows = sum_snapshots(rows, VALUE, [CODE])
    rows = latest_reports(rows, [PROJECT, CODE])
    rows = attach_country(rows, lookup)

    by_code = summarize_with_global(rows, COUNTRY, [VALUE], by=[CODE])
    values = wide_pivot(by_code, COUNTRY, CODE, VALUE)
    values = values.rename(columns={code: f"{code} Secured" for code in patterns})
    for code in patterns:
        if f"{code} Secured" not in values.columns:
            values[f"{code} Secured"] = 0.0

    provenance = _labelled(summarize_with_global(rows, COUNTRY), family, {})
    table = _outer_merge([values, provenance], COUNTRY)
    logger.info("Aggregated %s projects=%s countries=%s", family, rows[PROJECT].nunique(), len(table))
    return table.loc[
        :,
        [COUNTRY, *(f"{code} Secured" for code in patterns), f"{family} {DATES}", f"{family} {TITLES}"],
    ]


def direct_jobs(f6: pd.DataFrame | None, lookup: pd.DataFrame) -> pd.DataFrame:
    return _people_family(f6, lookup, "F6", F6_PATTERNS)


def indirect_beneficiaries(f7: pd.DataFrame | None, lookup: pd.DataFrame) -> pd.DataFrame:
    return _people_family(f7, lookup, "F7", F7_PATTERNS)


def _finance_rows(
    frame: pd.DataFrame | None,
    lookup: pd.DataFrame,
    numeric_columns: Sequence[str],
    text_columns: Sequence[str],
) -> pd.DataFrame:
    rows = drop_excluded_titles(prepare_table(frame, numeric_columns, [SECTOR, *text_columns]))
    rows[SECTOR] = rows[SECTOR].fillna(UNSPECIFIED_SECTOR)
    return attach_country(rows, lookup)


def _flow_summary(
    rows: pd.DataFrame,
    key: str,
    family: str,
    unit: str,
    split_column: str | None = None,
) -> pd.DataFrame:
    value_label = f"{family} {unit}"
    totals = _labelled(summarize_with_global(rows, key, [AMOUNT]), family, {AMOUNT: value_label})
    frames = [totals.astype({value_label: "float64"})]
    if split_column is not None:
        split = summarize_with_global(rows.dropna(subset=[split_column]), key, [AMOUNT], by=[split_column])
        frames.append(wide_pivot(split, key, split_column, AMOUNT, prefix=f"{value_label}: "))
    return _outer_merge(frames, key)


def investments(
    frame: pd.DataFrame | None, lookup: pd.DataFrame
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Investment totals per country and per sector.

    Every report round adds new money, so secured amounts are summed across
    rounds and also split by investment source. Targets are restated in each
    round, so only the latest target round of a project counts.
    """
    rows = _finance_rows(frame, lookup, [AMOUNT], [INVESTMENT_SOURCE, INVESTMENT_TYPE, SOLUTION])
    secured = rows.loc[rows[DATA_TYPE].eq(REPORT)]
    targets = latest_round(rows.loc[rows[DATA_TYPE].eq(TARGET)])
    paired_rows = pd.concat([secured, targets], ignore_index=True)

    tables = []
    for key in (COUNTRY, SECTOR):
        summary = summarize_with_global(paired_rows, key, [AMOUNT], by=[DATA_TYPE])
        paired = split_by_data_type(summary, key, "Investments", "(USD)", value_column=AMOUNT)
        split = summarize_with_global(
            secured.dropna(subset=[INVESTMENT_SOURCE]), key, [AMOUNT], by=[INVESTMENT_SOURCE]
        )
        by_source = wide_pivot(split, key, INVESTMENT_SOURCE, AMOUNT, prefix="Investments Secured (USD): ")
        tables.append(_outer_merge([paired, by_source], key))

    logger.info(
        "Aggregated Investments secured_rows=%s target_rows=%s", len(secured), len(targets)
    )
    return tables[0], tables[1]


def revenues(frame: pd.DataFrame | None, lookup: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
    rows = _finance_rows(frame, lookup, [AMOUNT], [REVENUE_TYPE, SOLUTION])
    reported = rows.loc[rows[DATA_TYPE].eq(REPORT)]
    logger.info("Aggregated Revenues rows=%s", len(reported))
    return (
        _flow_summary(reported, COUNTRY, "Revenues", "(USD)", split_column=REVENUE_TYPE),
        _flow_summary(reported, SECTOR, "Revenues", "(USD)", split_column=REVENUE_TYPE),
    )


def is_truthy(series: pd.Series) -> pd.Series:
    """Flag values such as ``Yes``/``true`` and any non-zero number (CSV reads 1 as 1.0)."""
    text = series.astype("string").str.strip().str.lower()
    numeric = pd.to_numeric(text, errors="coerce").astype("float64")
    flagged = text.isin(TRUTHY_FLAGS).fillna(False).astype(bool) | numeric.fillna(0).ne(0)
    return flagged.astype(bool)


def gender_positive_investments(
    frame: pd.DataFrame | None, lookup: pd.DataFrame
) -> tuple[pd.DataFrame, pd.DataFrame]:
    rows = _finance_rows(frame, lookup, [AMOUNT], [GENDER_SMART, SOLUTION])
    gender_smart = rows.loc[rows[DATA_TYPE].eq(REPORT) & is_truthy(rows[GENDER_SMART])]
    logger.info("Aggregated Gender-Smart Investments rows=%s", len(gender_smart))
    return (
        _flow_summary(gender_smart, COUNTRY, "Gender-Smart Investments", "(USD)"),
        _flow_summary(gender_smart, SECTOR, "Gender-Smart Investments", "(USD)"),
    )


def _solution_counts(rows: pd.DataFrame, key: str) -> pd.DataFrame:
    label = "Businesses/Finance Solutions"
    if rows.empty:
        return pd.DataFrame(columns=[key, label])
    per_key = rows.groupby(key)[SOLUTION].nunique().rename(label).reset_index()
    overall = pd.DataFrame({key: [GLOBAL_LABEL], label: [rows[SOLUTION].nunique()]})
    return pd.concat([per_key, overall], ignore_index=True)


def business_solutions(
    frame: pd.DataFrame | None, lookup: pd.DataFrame
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Distinct reef-positive business/finance solutions and their sector/country mix."""
    rows = _finance_rows(frame, lookup, [], [SOLUTION])
    rows = rows.loc[rows[DATA_TYPE].eq(REPORT) & rows[SOLUTION].notna()]

    tables = []
    for key, category in ((COUNTRY, SECTOR), (SECTOR, COUNTRY)):
        tables.append(
            _outer_merge(
                [
                    _solution_counts(rows, key),
                    share_pivot(rows, key, category, SOLUTION, prefix="Businesses % "),
                    _labelled(summarize_with_global(rows, key), "Businesses", {}),
                ],
                key,
            )
        )

    logger.info("Aggregated Businesses solutions=%s", rows[SOLUTION].nunique())
    return tables[0], tables[1]
