from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

import duckdb
import pandas as pd
import pytest

from reefetl.diagnostics import MISSING_REPORT, SYNTHESIZED_TARGET
from reefetl.pipeline import (
    AREA_PEOPLE_FILENAME,
    DIAGNOSTICS_FILENAME,
    DUCKDB_FILENAME,
    FINANCE_COUNTRY_FILENAME,
    FINANCE_SECTOR_FILENAME,
    RAW_REPORT_FILENAME,
    run_pipeline,
    write_outputs,
)
from reefetl.reshape import GLOBAL_LABEL

REPORT_COLUMNS = ["Project", "Title", "Reporting Date", "Data Type", "Value"]


class FakeSource:
    def __init__(self, projects: pd.DataFrame, tables: dict[str, pd.DataFrame]) -> None:
        self.projects = projects
        self.tables = tables
        self.report_calls: list[list[str]] = []

    def list_projects(self, tag: str = "coral-reef", exclude_test: bool = True) -> pd.DataFrame:
        return self.projects.copy()

    def get_report_data(self, projects: Iterable[str]) -> dict[str, pd.DataFrame]:
        names = sorted(projects)
        self.report_calls.append(names)
        return {
            name: frame.loc[frame["Project"].isin(names)].reset_index(drop=True)
            for name, frame in self.tables.items()
        }


@pytest.fixture
def source() -> FakeSource:
    projects = pd.DataFrame(
        {
            "Project": ["Alpha", "Beta", "Gamma", "Delta", "Epsilon", "Test Reef"],
            "Country": ["Fiji", "Fiji", "Tanzania", "Fiji", "Fiji", "Fiji"],
            "Tags": ["coral-reef"] * 6,
            "Notes": [""] * 6,
        }
    )
    f1 = pd.DataFrame.from_records(
        [
            ("Alpha", "Round 1", "2023-06-30", "Report", 1.0),
            ("Beta", "Round 1", "2023-06-30", "Report", 2.0),
            ("Beta", "Round 1", "2023-06-30", "Target", 1.0),
            ("Gamma", "Round 1", "2023-06-30", "Report", 0.5),
            ("Gamma", "Round 1", "2023-06-30", "Target", 1.0),
            ("Test Reef", "Round 1", "2023-06-30", "Report", 99.0),
        ],
        columns=REPORT_COLUMNS,
    )
    f6 = pd.DataFrame.from_records(
        [
            ("Gamma", "Round 1", "2023-06-30", "Report", "F6.1 Number of direct jobs", 4.0),
            # Delta has people data but never filed an area report.
            ("Delta", "Round 1", "2023-06-30", "Report", "F6.1 Number of direct jobs", 7.0),
        ],
        columns=["Project", "Title", "Reporting Date", "Data Type", "Sub-indicator", "Value"],
    )
    investments = pd.DataFrame.from_records(
        [
            ("Alpha", "Round 1", "2023-06-30", "Report", "s1", "Tourism", "Private", "Equity", "Yes", 100.0),
            ("Gamma", "Round 1", "2023-06-30", "Report", "s2", "Fisheries", "Public", "Grant", "No", 40.0),
        ],
        columns=[
            "Project",
            "Title",
            "Reporting Date",
            "Data Type",
            "Business/Finance Solution",
            "Sector",
            "Investment Source",
            "Investment Type",
            "Gender-Smart",
            "Amount",
        ],
    )
    return FakeSource(projects, {"F1": f1, "F6": f6, "Investments": investments})


def _country(table: pd.DataFrame, name: str) -> pd.Series:
    return table.loc[table["Country"] == name].iloc[0]


def test_run_pipeline_reconciles_area_per_country(source: FakeSource) -> None:
    result = run_pipeline(source)

    fiji = _country(result.combined.by_country, "Fiji")
    assert fiji["F1 Target (ha)"] == pytest.approx(300.0)
    assert fiji["F1 Secured (ha)"] == pytest.approx(300.0)

    region = _country(result.combined.by_country, "Kenya & Tanzania")
    assert region["F1 Secured (ha)"] == pytest.approx(50.0)
    assert region["F1 Target (ha)"] == pytest.approx(100.0)
    assert region["F6.1 Secured"] == 4.0
    assert region["Investments Secured (USD)"] == 40.0
    assert "Tanzania" not in result.combined.by_country["Country"].tolist()

    assert result.combined.by_country["Country"].tolist()[-1] == GLOBAL_LABEL
    assert result.combined.by_sector["Sector"].tolist()[-1] == GLOBAL_LABEL


def test_run_pipeline_repulls_without_projects_lacking_reports(source: FakeSource) -> None:
    result = run_pipeline(source)

    assert source.report_calls == [
        ["Alpha", "Beta", "Delta", "Epsilon", "Gamma"],
        ["Alpha", "Beta", "Gamma"],
    ]
    assert set(result.lookup["Project"]) == {"Alpha", "Beta", "Gamma"}
    assert "Test Reef" not in set(result.projects["Project"])

    global_row = _country(result.combined.by_country, GLOBAL_LABEL)
    assert global_row["F6.1 Secured"] == 4.0
    assert global_row["F1 Secured (ha)"] == pytest.approx(350.0)

    categories = [(item.category, item.project) for item in result.diagnostics]
    assert (MISSING_REPORT, "Delta") in categories
    assert (SYNTHESIZED_TARGET, "Alpha") in categories


def test_run_pipeline_drops_project_without_any_indicator_rows(source: FakeSource) -> None:
    result = run_pipeline(source)

    assert "Epsilon" not in set(result.lookup["Project"])
    assert "Epsilon" not in set(result.projects["Project"])
    assert (MISSING_REPORT, "Epsilon") in [(item.category, item.project) for item in result.diagnostics]

    fiji = _country(result.combined.by_country, "Fiji")
    assert fiji["F1 Secured (ha)"] == pytest.approx(300.0)
    assert fiji["F6.1 Secured"] == 0
    assert set(result.combined.by_country["Country"]) == {"Fiji", "Kenya & Tanzania", GLOBAL_LABEL}
    assert set(result.combined.by_sector["Sector"]) == {"Fisheries", "Tourism", GLOBAL_LABEL}
    for table in (result.combined.by_country, result.combined.by_sector):
        text = table.astype(str)
        assert not text.apply(lambda column: column.str.contains("Epsilon")).any().any()


def test_run_pipeline_outputs_have_no_missing_cells(source: FakeSource) -> None:
    result = run_pipeline(source)

    assert not result.combined.by_country.isna().any().any()
    assert not result.combined.by_sector.isna().any().any()
    assert "F1 Secured (ha)" in result.area_people_by_country.columns
    assert "Investments Secured (USD)" not in result.area_people_by_country.columns
    assert "Investments Secured (USD)" in result.finance_by_country.columns
    assert "F6.1 Secured" not in result.finance_by_country.columns


def test_write_outputs_writes_every_artifact(source: FakeSource, tmp_path: Path) -> None:
    result = run_pipeline(source)
    out_dir = tmp_path / "processed"

    paths = write_outputs(result, out_dir)

    for filename in (
        RAW_REPORT_FILENAME,
        AREA_PEOPLE_FILENAME,
        FINANCE_COUNTRY_FILENAME,
        FINANCE_SECTOR_FILENAME,
        DUCKDB_FILENAME,
        DIAGNOSTICS_FILENAME,
    ):
        assert (out_dir / filename).exists()

    area = pd.read_csv(paths["area_people_by_country"])
    assert area["Country"].tolist() == ["Fiji", "Kenya & Tanzania", GLOBAL_LABEL]

    sheets = pd.read_excel(paths["raw_reports"], sheet_name=None)
    assert set(sheets) == {"Projects", "F1", "F6", "Investments"}
    assert "Country" in sheets["F1"].columns

    connection = duckdb.connect(str(paths["duckdb"]), read_only=True)
    try:
        sectors = connection.execute("SELECT Sector FROM by_sector ORDER BY Sector").fetchall()
    finally:
        connection.close()
    assert [row[0] for row in sectors] == ["Fisheries", GLOBAL_LABEL, "Tourism"]

    report = json.loads(paths["diagnostics"].read_text(encoding="utf-8"))
    assert report["warning_count"] == len(result.diagnostics)
    assert report["warning_counts"][MISSING_REPORT] == 2
