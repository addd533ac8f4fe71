"""ethno_etl.dataset_index

Index mode: regional CSV exports → index.json plus one legacy
groupes_ethniques.csv per country folder.

Input files are named afrique_<region>_ethnies_2025.csv and carry a Country
column, the country population and the legacy ethnicity columns.  Rows whose
name mentions "sous-groupe" are excluded from every total and from the
per-country CSVs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ethno_etl.aggregate import percentage_of
from ethno_etl.artifacts import (
    LEGACY_CSV_NAME,
    REGION_NAMES,
    region_display_name,
    require_dir,
    write_json,
)
from ethno_etl.csv_formats import (
    LEGACY_HEADERS,
    LEGACY_NAME,
    LEGACY_PCT_AFRICA,
    LEGACY_POPULATION,
    read_table,
    serialize_rows,
)
from ethno_etl.normalize import parse_percentage, parse_population

log = logging.getLogger(__name__)

DEFAULT_RESULT_DIR = Path("dataset/result")
INDEX_FILE = "index.json"
COUNTRY_COL = "Country"
COUNTRY_POPULATION_COL = "population 2025 du pays"
SUBGROUP_MARKER = "sous-groupe"

_REGIONAL_FILE = re.compile(r"^(afrique_\w+?)_ethnies_2025\.csv$")


@dataclass
class IndexCounters:
    files_read: int = 0
    files_skipped: int = 0
    rows_read: int = 0
    subgroup_rows_excluded: int = 0
    countries: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_read": self.files_read,
            "files_skipped": self.files_skipped,
            "rows_read": self.rows_read,
            "subgroup_rows_excluded": self.subgroup_rows_excluded,
            "countries": self.countries,
            "warnings": self.warnings[:50],
        }


def region_from_filename(filename: str) -> str | None:
    """'afrique_de_l_ouest_ethnies_2025.csv' → 'afrique_de_l_ouest'; None if unknown."""
    m = _REGIONAL_FILE.match(filename)
    if not m or m.group(1) not in REGION_NAMES:
        return None
    return m.group(1)


def is_subgroup_row(name: str) -> bool:
    return SUBGROUP_MARKER in name


def clean_row(row: dict[str, str]) -> dict[str, str]:
    """Trim the country and name cells the index groups on."""
    return {
        **row,
        COUNTRY_COL: (row.get(COUNTRY_COL) or "").strip(),
        LEGACY_NAME: (row.get(LEGACY_NAME) or "").strip(),
    }


def build_index(rows_by_region: dict[str, list[dict[str, str]]]) -> dict[str, Any]:
    """Compute Africa / region / country / ethnicity totals.

    A country's population is taken from its first row; Africa's total is the
    sum over distinct countries.
    """
    country_population: dict[str, int] = {}
    for rows in rows_by_region.values():
        for row in rows:
            country_population.setdefault(row[COUNTRY_COL], parse_population(row.get(COUNTRY_POPULATION_COL)))
    africa_total = sum(country_population.values())

    regions: dict[str, Any] = {}
    for region, rows in rows_by_region.items():
        countries = list(dict.fromkeys(r[COUNTRY_COL] for r in rows))
        region_total = sum(country_population[c] for c in countries)

        ethnic_names: dict[str, set[str]] = {c: set() for c in countries}
        ethnicities: dict[str, dict[str, float]] = {}
        for row in rows:
            name = row[LEGACY_NAME]
            if is_subgroup_row(name):
                continue
            ethnic_names[row[COUNTRY_COL]].add(name)
            totals = ethnicities.setdefault(name, {"population": 0, "pct_africa": 0.0})
            totals["population"] += parse_population(row.get(LEGACY_POPULATION))
            totals["pct_africa"] += parse_percentage(row.get(LEGACY_PCT_AFRICA))

        regions[region] = {
            "name": region_display_name(region),
            "total_population": region_total,
            "countries": {
                c: {
                    "name": c,
                    "population": country_population[c],
                    "percentage_in_region": percentage_of(country_population[c], region_total),
                    "percentage_in_africa": percentage_of(country_population[c], africa_total),
                    "ethnicity_count": len(ethnic_names[c]),
                }
                for c in countries
            },
            "ethnicities": {
                name: {
                    "name": name,
                    "total_population_in_region": t["population"],
                    "percentage_in_region": percentage_of(t["population"], region_total),
                    "percentage_in_africa": t["pct_africa"],
                }
                for name, t in ethnicities.items()
            },
        }

    return {"total_population_africa": africa_total, "regions": regions}


def country_csv(rows: list[dict[str, str]]) -> str:
    """Legacy-format CSV text for one country's non-subgroup rows."""
    out = [
        {h: row.get(h, "") for h in LEGACY_HEADERS}
        for row in rows
        if not is_subgroup_row(row[LEGACY_NAME])
    ]
    return serialize_rows(LEGACY_HEADERS, out)


def run_index(source_dir: Path, result_dir: Path, counters: IndexCounters) -> dict[str, Any]:
    """Read every regional CSV in source_dir, write index.json and per-country CSVs."""
    require_dir(source_dir, "Source")
    rows_by_region: dict[str, list[dict[str, str]]] = {}
    for path in sorted(source_dir.glob("*.csv")):
        region = region_from_filename(path.name)
        if region is None:
            counters.files_skipped += 1
            counters.warnings.append(f"{path.name}: unknown region")
            log.warning("Skipping %s: unknown region", path.name)
            continue
        _, rows = read_table(path.read_text(encoding="utf-8-sig"))
        kept = [r for r in map(clean_row, rows) if r[COUNTRY_COL] and r[LEGACY_NAME]]
        counters.files_read += 1
        counters.rows_read += len(kept)
        counters.subgroup_rows_excluded += sum(1 for r in kept if is_subgroup_row(r[LEGACY_NAME]))
        rows_by_region.setdefault(region, []).extend(kept)

    index = build_index(rows_by_region)
    write_json(result_dir / INDEX_FILE, index)

    for region, rows in rows_by_region.items():
        by_country: dict[str, list[dict[str, str]]] = {}
        for row in rows:
            by_country.setdefault(row[COUNTRY_COL], []).append(row)
        for country, country_rows in by_country.items():
            target = result_dir / region / country / LEGACY_CSV_NAME
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(country_csv(country_rows), encoding="utf-8")
            counters.countries += 1

    return index
