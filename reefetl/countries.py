from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import reduce
from pathlib import Path

import pandas as pd

from reefetl.diagnostics import INVALID_COUNTRY, DataQualityWarning

logger = logging.getLogger(__name__)

PROJECT_COLUMNS = ["Project", "Country", "Tags", "Notes"]
LOOKUP_COLUMNS = ["Project", "Country"]

# Kept in sync with the country list of the downstream reporting platform.
VALID_COUNTRIES = frozenset(
    {
        "Brazil",
        "Colombia",
        "Egypt",
        "Fiji",
        "Indonesia",
        "Jordan",
        "Kenya & Tanzania",
        "Maldives",
        "Mesoamerican Reef Region",
        "Micronesia Region",
        "Papua New Guinea",
        "Philippines",
        "Seychelles",
        "Sri Lanka",
        "The Bahamas",
    }
)

PLACEHOLDER_NAME_PATTERN = r"\b(?:test|placeholder|demo)\b"
PLACEHOLDER_TAG_PATTERN = r"\btest\b"


@dataclass(slots=True, frozen=True)
class OverrideRule:
    name: str
    predicate: Callable[[str, str | None], bool]
    country: str

    def matches(self, project: str, country: str | None) -> bool:
        return self.predicate(project, country)


def match_country(values: Iterable[str], country: str) -> OverrideRule:
    targets = frozenset(values)
    return OverrideRule(
        name=f"country in {sorted(targets)} -> {country}",
        predicate=lambda _project, current: current in targets,
        country=country,
    )


def match_project(project: str, country: str) -> OverrideRule:
    return OverrideRule(
        name=f"project == {project!r} -> {country}",
        predicate=lambda name, _current: name == project,
        country=country,
    )


DEFAULT_OVERRIDE_RULES: tuple[OverrideRule, ...] = (
    match_country(["Kenya", "Tanzania"], "Kenya & Tanzania"),
    match_country(["Belize", "Guatemala", "Honduras", "Mexico"], "Mesoamerican Reef Region"),
    match_country(
        ["Palau", "Federated States of Micronesia", "Micronesia", "Marshall Islands"],
        "Micronesia Region",
    ),
    match_country(["Bahamas"], "The Bahamas"),
)


def load_override_rules(path: Path | None = None) -> list[OverrideRule]:
    """Return the default rules extended with rules from a JSON file.

    The file holds ``{"countries": {provider_country: region}, "projects":
    {project_name: region}}``. Country rules follow the defaults; project
    rules always come last so they win over any country match.
    """
    rules = list(DEFAULT_OVERRIDE_RULES)
    if path is None:
        return rules

    payload = json.loads(path.read_text(encoding="utf-8"))
    for provider_country, region in payload.get("countries", {}).items():
        rules.append(match_country([provider_country], region))
    for project, region in payload.get("projects", {}).items():
        rules.append(match_project(project, region))

    logger.info("Loaded override rules path=%s rules=%s", path, len(rules))
    return rules


def apply_override_rules(
    project: str,
    country: str | None,
    rules: Iterable[OverrideRule] = DEFAULT_OVERRIDE_RULES,
) -> str | None:
    # Every rule sees the provider country; the last match wins.
    return reduce(
        lambda resolved, rule: rule.country if rule.matches(project, country) else resolved,
        rules,
        country,
    )


def _clean_strings(series: pd.Series) -> pd.Series:
    return series.astype("string").str.strip().replace({"": pd.NA})


def filter_placeholder_projects(projects: pd.DataFrame) -> pd.DataFrame:
    names = _clean_strings(projects["Project"]).fillna("")
    tags = (
        projects["Tags"].astype("string").fillna("")
        if "Tags" in projects.columns
        else pd.Series("", index=projects.index)
    )
    placeholder = (
        names.str.contains(PLACEHOLDER_NAME_PATTERN, case=False, regex=True)
        | tags.str.contains(PLACEHOLDER_TAG_PATTERN, case=False, regex=True)
        | names.eq("")
    )

    dropped = int(placeholder.sum())
    if dropped:
        logger.info("Dropped placeholder projects count=%s", dropped)
    return projects.loc[~placeholder].reset_index(drop=True)


def invalid_countries(lookup: pd.DataFrame) -> list[DataQualityWarning]:
    invalid = lookup.loc[~lookup["Country"].isin(VALID_COUNTRIES)]
    return [
        DataQualityWarning(
            category=INVALID_COUNTRY,
            project=str(row.Project),
            country=None if pd.isna(row.Country) else str(row.Country),
            message="country is not one of the platform regions",
        )
        for row in invalid.itertuples(index=False)
    ]


def resolve_countries(
    projects: pd.DataFrame,
    projects_with_data: Iterable[str],
    rules: Iterable[OverrideRule] = DEFAULT_OVERRIDE_RULES,
) -> tuple[pd.DataFrame, list[DataQualityWarning]]:
    rule_list = list(rules)
    with_data = set(projects_with_data)

    frame = pd.DataFrame(
        {
            "Project": _clean_strings(projects["Project"]),
            "Country": _clean_strings(projects["Country"]),
        }
    )
    frame = frame.loc[frame["Project"].isin(with_data)]
    frame = frame.drop_duplicates(subset=["Project"], keep="first")

    resolved = [
        apply_override_rules(project, None if pd.isna(country) else country, rule_list)
        for project, country in zip(frame["Project"], frame["Country"])
    ]
    lookup = pd.DataFrame(
        {
            "Project": pd.array(frame["Project"].tolist(), dtype="string"),
            "Country": pd.array(resolved, dtype="string"),
        }
    )
    lookup = lookup.sort_values("Project").reset_index(drop=True)

    diagnostics = invalid_countries(lookup)
    logger.info(
        "Resolved countries projects=%s invalid=%s",
        len(lookup),
        len(diagnostics),
    )
    return lookup, diagnostics
