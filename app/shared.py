from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import duckdb
import pandas as pd
import streamlit as st

try:
    from reefetl.indicators import COUNTRY
except ModuleNotFoundError:
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    from reefetl.indicators import COUNTRY

from reefetl.pipeline import (
    AREA_PEOPLE_FILENAME,
    DIAGNOSTICS_FILENAME,
    DUCKDB_FILENAME,
    FINANCE_COUNTRY_FILENAME,
    FINANCE_SECTOR_FILENAME,
)

logger = logging.getLogger(__name__)

PROCESSED_DIR = Path("data/processed")


def _load_from_duckdb(db_path: Path) -> tuple[pd.DataFrame, pd.DataFrame]:
    connection = duckdb.connect(str(db_path), read_only=True)
    try:
        by_country = connection.execute("SELECT * FROM by_country").df()
        by_sector = connection.execute("SELECT * FROM by_sector").df()
    finally:
        connection.close()
    return by_country, by_sector


def load_summaries_with_source(
    processed_dir: Path = PROCESSED_DIR,
) -> tuple[pd.DataFrame, pd.DataFrame, str]:
    db_path = processed_dir / DUCKDB_FILENAME
    area_path = processed_dir / AREA_PEOPLE_FILENAME
    finance_path = processed_dir / FINANCE_COUNTRY_FILENAME
    sector_path = processed_dir / FINANCE_SECTOR_FILENAME

    if db_path.exists():
        try:
            by_country, by_sector = _load_from_duckdb(db_path)
            return by_country, by_sector, "duckdb"
        except duckdb.Error as exc:
            logger.warning("Could not read %s, falling back to CSV: %s", db_path, exc)

    if area_path.exists() and finance_path.exists() and sector_path.exists():
        by_country = pd.read_csv(area_path).merge(pd.read_csv(finance_path), on=COUNTRY, how="outer")
        return by_country, pd.read_csv(sector_path), "csv"

    return pd.DataFrame(), pd.DataFrame(), "empty"


def load_diagnostics(processed_dir: Path = PROCESSED_DIR) -> dict[str, Any]:
    path = processed_dir / DIAGNOSTICS_FILENAME
    if not path.exists():
        return {
            "warning_count": 0,
            "warnings": [],
            "note": "No diagnostics.json found. Run the pipeline to generate it.",
        }

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return {
            "warning_count": 0,
            "warnings": [],
            "note": f"Could not parse {path}.",
        }


@st.cache_data(show_spinner=False)
def load_summaries_cached() -> tuple[pd.DataFrame, pd.DataFrame, str]:
    return load_summaries_with_source()


@st.cache_data(show_spinner=False)
def load_diagnostics_cached() -> dict[str, Any]:
    return load_diagnostics()


def numeric_columns(frame: pd.DataFrame) -> list[str]:
    return [column for column in frame.columns if pd.api.types.is_numeric_dtype(frame[column])]


def format_currency(value: float | int | None) -> str:
    if value is None or pd.isna(value):
        return "N/A"

    amount = float(value)
    magnitude = abs(amount)
    if magnitude >= 1_000_000_000:
        return f"${amount / 1_000_000_000:,.2f}B"
    if magnitude >= 1_000_000:
        return f"${amount / 1_000_000:,.2f}M"
    if magnitude >= 1_000:
        return f"${amount / 1_000:,.1f}K"
    return f"${amount:,.0f}"


def format_hectares(value: float | int | None) -> str:
    if value is None or pd.isna(value):
        return "N/A"
    return f"{float(value):,.0f} ha"
