from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import duckdb
import pandas as pd

from reefetl.combine import CombinedTables, combine_summaries
from reefetl.countries import (
    DEFAULT_OVERRIDE_RULES,
    OverrideRule,
    filter_placeholder_projects,
    load_override_rules,
    resolve_countries,
)
from reefetl.diagnostics import (
    MISSING_REPORT,
    DataQualityWarning,
    OutputWriteError,
    by_category,
    log_diagnostics,
)
from reefetl.indicators import (
    BUSINESSES_TABLE,
    COUNTRY,
    DATA_TYPE,
    F1_TABLE,
    F2_TABLE,
    F6_TABLE,
    F7_TABLE,
    INVESTMENTS_TABLE,
    PROJECT,
    REPORT,
    REVENUES_TABLE,
    SECTOR,
    area_under_management,
    attach_country,
    business_solutions,
    direct_jobs,
    drop_excluded_titles,
    gender_positive_investments,
    indirect_beneficiaries,
    investments,
    prepare_table,
    protected_area_financing,
    revenues,
)
from reefetl.sources import DEFAULT_TAG, LocalDataSource, ReportingApiClient, ReportSource

logger = logging.getLogger(__name__)

RAW_REPORT_FILENAME = "reports_raw.xlsx"
AREA_PEOPLE_FILENAME = "area_people_by_country.csv"
FINANCE_COUNTRY_FILENAME = "finance_by_country.csv"
FINANCE_SECTOR_FILENAME = "finance_by_sector.csv"
DUCKDB_FILENAME = "summaries.duckdb"
DIAGNOSTICS_FILENAME = "diagnostics.json"


@dataclass(slots=True)
class PipelineResult:
    projects: pd.DataFrame
    lookup: pd.DataFrame
    reports: dict[str, pd.DataFrame]
    combined: CombinedTables
    area_people_columns: list[str]
    diagnostics: list[DataQualityWarning] = field(default_factory=list)

    @property
    def area_people_by_country(self) -> pd.DataFrame:
        return self.combined.by_country.loc[:, [COUNTRY, *self.area_people_columns]]

    @property
    def finance_by_country(self) -> pd.DataFrame:
        finance_columns = [
            column
            for column in self.combined.by_country.columns
            if column != COUNTRY and column not in set(self.area_people_columns)
        ]
        return self.combined.by_country.loc[:, [COUNTRY, *finance_columns]]


def projects_with_data(reports: dict[str, pd.DataFrame]) -> set[str]:
    names: set[str] = set()
    for frame in reports.values():
        if PROJECT in frame.columns:
            names.update(frame[PROJECT].dropna().astype(str).str.strip())
    return names


def projects_without_reports(
    projects: Iterable[str],
    f1: pd.DataFrame | None,
) -> list[DataQualityWarning]:
    rows = drop_excluded_titles(prepare_table(f1))
    reported = set(rows.loc[rows[DATA_TYPE].eq(REPORT), PROJECT].astype(str))
    return [
        DataQualityWarning(
            category=MISSING_REPORT,
            project=project,
            message=f"no {REPORT} rows in {F1_TABLE}",
        )
        for project in sorted(set(projects))
        if project not in reported
    ]


def pull_report_data(
    source: ReportSource,
    projects: pd.DataFrame,
) -> tuple[pd.DataFrame, dict[str, pd.DataFrame], list[DataQualityWarning]]:
    """Fetch report data, re-pulling once without projects that never reported."""
    reports = source.get_report_data(projects[PROJECT].tolist())
    diagnostics = projects_without_reports(projects[PROJECT], reports.get(F1_TABLE))
    if not diagnostics:
        return projects, reports, diagnostics

    excluded = {item.project for item in diagnostics}
    kept = projects.loc[~projects[PROJECT].isin(excluded)].reset_index(drop=True)
    logger.info("Re-pulling report data excluded=%s remaining=%s", len(excluded), len(kept))
    return kept, source.get_report_data(kept[PROJECT].tolist()), diagnostics


def build_summaries(
    reports: dict[str, pd.DataFrame],
    lookup: pd.DataFrame,
) -> tuple[CombinedTables, list[str], list[DataQualityWarning]]:
    f1_table, f1_diagnostics = area_under_management(reports.get(F1_TABLE), lookup)
    f2_table, f2_diagnostics = protected_area_financing(reports.get(F2_TABLE), lookup)
    area_people = [
        f1_table,
        f2_table,
        direct_jobs(reports.get(F6_TABLE), lookup),
        indirect_beneficiaries(reports.get(F7_TABLE), lookup),
    ]

    invest_country, invest_sector = investments(reports.get(INVESTMENTS_TABLE), lookup)
    revenue_country, revenue_sector = revenues(reports.get(REVENUES_TABLE), lookup)
    business_country, business_sector = business_solutions(reports.get(BUSINESSES_TABLE), lookup)
    gender_country, gender_sector = gender_positive_investments(reports.get(INVESTMENTS_TABLE), lookup)

    combined = CombinedTables(
        by_country=combine_summaries(
            [*area_people, invest_country, revenue_country, business_country, gender_country],
            COUNTRY,
        ),
        by_sector=combine_summaries(
            [invest_sector, revenue_sector, business_sector, gender_sector],
            SECTOR,
        ),
    )
    area_people_columns = [column for table in area_people for column in table.columns if column != COUNTRY]
    return combined, area_people_columns, [*f1_diagnostics, *f2_diagnostics]


def run_pipeline(
    source: ReportSource,
    tag: str = DEFAULT_TAG,
    rules: Sequence[OverrideRule] = DEFAULT_OVERRIDE_RULES,
) -> PipelineResult:
    diagnostics: list[DataQualityWarning] = []

    projects = filter_placeholder_projects(source.list_projects(tag=tag, exclude_test=True))
    projects, reports, missing = pull_report_data(source, projects)
    diagnostics.extend(missing)

    lookup, country_diagnostics = resolve_countries(projects, projects_with_data(reports), rules)
    diagnostics.extend(country_diagnostics)

    combined, area_people_columns, reconcile_diagnostics = build_summaries(reports, lookup)
    diagnostics.extend(reconcile_diagnostics)

    log_diagnostics(diagnostics)
    return PipelineResult(
        projects=projects,
        lookup=lookup,
        reports=reports,
        combined=combined,
        area_people_columns=area_people_columns,
        diagnostics=diagnostics,
    )


def _text_columns_as_str(frame: pd.DataFrame) -> pd.DataFrame:
    object_columns = [column for column in frame.columns if not pd.api.types.is_numeric_dtype(frame[column])]
    return frame.astype({column: str for column in object_columns})


def _write_raw_reports(result: PipelineResult, path: Path) -> None:
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        result.lookup.to_excel(writer, sheet_name="Projects", index=False)
        for name, frame in sorted(result.reports.items()):
            if PROJECT in frame.columns:
                frame = attach_country(frame, result.lookup)
            frame.to_excel(writer, sheet_name=name[:31], index=False)


def _write_duckdb(result: PipelineResult, path: Path) -> None:
    connection = duckdb.connect(str(path))
    try:
        for name, frame in (("by_country", result.combined.by_country), ("by_sector", result.combined.by_sector)):
            connection.register("_frame", _text_columns_as_str(frame))
            connection.execute(f"CREATE OR REPLACE TABLE {name} AS SELECT * FROM _frame")
            connection.unregister("_frame")
    finally:
        connection.close()


def _diagnostics_report(result: PipelineResult) -> dict[str, Any]:
    return {
        "generated_at_utc": pd.Timestamp.now(tz="UTC").isoformat(),
        "project_count": int(len(result.lookup)),
        "report_rows": {name: int(len(frame)) for name, frame in result.reports.items()},
        "warning_count": len(result.diagnostics),
        "warning_counts": {category: len(items) for category, items in by_category(result.diagnostics).items()},
        "warnings": [asdict(item) for item in result.diagnostics],
    }


def write_outputs(result: PipelineResult, out_dir: Path) -> dict[str, Path]:
    paths = {
        "raw_reports": out_dir / RAW_REPORT_FILENAME,
        "area_people_by_country": out_dir / AREA_PEOPLE_FILENAME,
        "finance_by_country": out_dir / FINANCE_COUNTRY_FILENAME,
        "finance_by_sector": out_dir / FINANCE_SECTOR_FILENAME,
        "duckdb": out_dir / DUCKDB_FILENAME,
        "diagnostics": out_dir / DIAGNOSTICS_FILENAME,
    }

    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        _write_raw_reports(result, paths["raw_reports"])
        result.area_people_by_country.to_csv(paths["area_people_by_country"], index=False)
        result.finance_by_country.to_csv(paths["finance_by_country"], index=False)
        result.combined.by_sector.to_csv(paths["finance_by_sector"], index=False)
        _write_duckdb(result, paths["duckdb"])
        paths["diagnostics"].write_text(
            json.dumps(_diagnostics_report(result), indent=2),
            encoding="utf-8",
        )
    except (OSError, ValueError, duckdb.Error) as exc:
        raise OutputWriteError(f"Failed to write outputs to {out_dir}: {exc}") from exc

    logger.info("Wrote outputs out_dir=%s files=%s", out_dir, len(paths))
    return paths


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build country and sector summaries of coral reef project reports")
    parser.add_argument(
        "--raw-dir",
        type=Path,
        default=None,
        help="Read projects.csv and report tables from this directory instead of the reporting API",
    )
    parser.add_argument("--out-dir", type=Path, default=Path("data/processed"))
    parser.add_argument("--tag", default=DEFAULT_TAG)
    parser.add_argument("--overrides", type=Path, default=None, help="JSON file with extra country override rules")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = parse_args()

    source: ReportSource = LocalDataSource(args.raw_dir) if args.raw_dir else ReportingApiClient.from_env()
    result = run_pipeline(source, tag=args.tag, rules=load_override_rules(args.overrides))
    write_outputs(result, args.out_dir)
    logger.info(
        "Pipeline complete. projects=%s countries=%s sectors=%s warnings=%s",
        len(result.lookup),
        len(result.combined.by_country),
        len(result.combined.by_sector),
        len(result.diagnostics),
    )


if __name__ == "__main__":
    main()
