from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import pandas as pd
import requests

from reefetl.countries import PROJECT_COLUMNS, filter_placeholder_projects
from reefetl.diagnostics import DataSourceError
from reefetl.indicators import REPORT_TABLES

logger = logging.getLogger(__name__)

DEFAULT_TAG = "coral-reef"
DEFAULT_TIMEOUT = 60.0

API_URL_ENV = "REEF_API_URL"
API_TOKEN_ENV = "REEF_API_TOKEN"
API_TIMEOUT_ENV = "REEF_API_TIMEOUT"

PROJECTS_FILENAME = "projects.csv"

# Provider field names -> project table columns.
PROJECT_FIELD_MAP = {
    "name": "Project",
    "country": "Country",
    "tags": "Tags",
    "notes": "Notes",
}


class ReportSource(Protocol):
    def list_projects(self, tag: str = DEFAULT_TAG, exclude_test: bool = True) -> pd.DataFrame: ...

    def get_report_data(self, projects: Iterable[str]) -> dict[str, pd.DataFrame]: ...


def _projects_frame(records: list[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame.from_records(records).rename(columns=PROJECT_FIELD_MAP)
    for column in PROJECT_COLUMNS:
        if column not in frame.columns:
            frame[column] = pd.NA
    tags = frame["Tags"].map(lambda value: ", ".join(value) if isinstance(value, list) else value)
    return frame.assign(Tags=tags).loc[:, PROJECT_COLUMNS]


class ReportingApiClient:
    """Client for the remote project reporting API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    @classmethod
    def from_env(cls) -> ReportingApiClient:
        base_url = os.getenv(API_URL_ENV, "").strip()
        if not base_url:
            raise DataSourceError(f"{API_URL_ENV} is not set; pass --raw-dir to use local files.")
        timeout = float(os.getenv(API_TIMEOUT_ENV, "") or DEFAULT_TIMEOUT)
        return cls(base_url, token=os.getenv(API_TOKEN_ENV) or None, timeout=timeout)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise DataSourceError(f"{method} {url} failed: {exc}") from exc
        except ValueError as exc:
            raise DataSourceError(f"{method} {url} returned invalid JSON: {exc}") from exc

    def list_projects(self, tag: str = DEFAULT_TAG, exclude_test: bool = True) -> pd.DataFrame:
        payload = self._request(
            "GET",
            "projects",
            params={"tag": tag, "exclude_test": str(exclude_test).lower()},
        )
        if not isinstance(payload, list):
            raise DataSourceError("Project listing is not a JSON list.")

        projects = _projects_frame(payload)
        logger.info("Fetched projects tag=%s rows=%s", tag, len(projects))
        return projects

    def get_report_data(self, projects: Iterable[str]) -> dict[str, pd.DataFrame]:
        names = sorted(set(projects))
        payload = self._request("POST", "reports", json={"projects": names})
        if not isinstance(payload, dict):
            raise DataSourceError("Report data is not a JSON object keyed by table.")

        tables = {name: pd.DataFrame.from_records(records or []) for name, records in payload.items()}
        logger.info(
            "Fetched report data projects=%s tables=%s rows=%s",
            len(names),
            len(tables),
            sum(len(frame) for frame in tables.values()),
        )
        return tables


class LocalDataSource:
    """Reads a project list and report tables exported as CSV files."""

    def __init__(self, raw_dir: Path) -> None:
        self.raw_dir = raw_dir

    def _read(self, path: Path) -> pd.DataFrame:
        try:
            return pd.read_csv(path)
        except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
            raise DataSourceError(f"Failed to read {path}: {exc}") from exc

    def list_projects(self, tag: str = DEFAULT_TAG, exclude_test: bool = True) -> pd.DataFrame:
        projects = self._read(self.raw_dir / PROJECTS_FILENAME).rename(columns=PROJECT_FIELD_MAP)
        projects = _projects_frame(projects.to_dict("records"))

        tags = projects["Tags"].astype("string").fillna("")
        projects = projects.loc[tags.str.contains(tag, regex=False)].reset_index(drop=True)
        if exclude_test:
            projects = filter_placeholder_projects(projects)
        logger.info("Loaded projects path=%s tag=%s rows=%s", self.raw_dir, tag, len(projects))
        return projects

    def get_report_data(self, projects: Iterable[str]) -> dict[str, pd.DataFrame]:
        names = set(projects)
        tables: dict[str, pd.DataFrame] = {}
        for table in REPORT_TABLES:
            path = self.raw_dir / f"{table}.csv"
            if not path.exists():
                logger.info("Report table missing path=%s", path)
                continue
            frame = self._read(path)
            if "Project" not in frame.columns:
                raise DataSourceError(f"{path} has no Project column")
            tables[table] = frame.loc[frame["Project"].isin(names)].reset_index(drop=True)

        logger.info("Loaded report data projects=%s tables=%s", len(names), len(tables))
        return tables
