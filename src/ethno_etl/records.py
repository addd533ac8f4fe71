"""ethno_etl.records

Country / ethnicity record building from typed CSV rows.

Two subgroup conventions are supported:
  - legacy:   "Basarwa/San" → parent Basarwa, subgroup San; the row total is
              split equally between subgroups.
  - enriched: rows grouped by Group (parenthetical suffix stripped).  Several
              rows carrying Sub_group values make one parent summed over
              them; a single row may instead list subgroups in Sub_group or
              in the Group parenthetical, split equally.

Parent totals always end up equal to the sum over their subgroups (see
aggregate.roll_up).
"""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ethno_etl.aggregate import roll_up, split_evenly
from ethno_etl.artifacts import (
    ALL_COUNTRIES,
    artifact_path,
    iter_country_dirs,
    list_artifacts,
    read_json,
    require_dir,
    select_csv,
    write_json,
)
from ethno_etl.csv_formats import (
    FORMAT_LEGACY,
    EnrichedRow,
    LegacyRow,
    ParsedTable,
    parse_csv,
)
from ethno_etl.dossier import CountryDescription
from ethno_etl.normalize import ordered_union, split_list
from ethno_etl.shared import RejectWriter

log = logging.getLogger(__name__)

_PARENTHETICAL = re.compile(r"^(.+?)\s*\((.+)\)$")


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass
class EthnicRecord:
    name: str
    population: int = 0
    percentage_in_country: float = 0.0
    percentage_in_africa: float = 0.0
    languages: list[str] = field(default_factory=list)
    region: str = ""
    sources: list[str] = field(default_factory=list)
    ancient_name: str = ""
    description: str = ""
    society_type: str = ""
    religion: str = ""
    linguistic_family: str = ""
    historical_status: str = ""
    regional_presence: list[str] = field(default_factory=list)
    has_subgroups: bool = False
    subgroups: list[EthnicRecord] = field(default_factory=list)
    # Set by the matching stage.
    matched_name: str | None = None
    match_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "population": self.population,
            "percentage_in_country": self.percentage_in_country,
            "percentage_in_africa": self.percentage_in_africa,
            "languages": list(self.languages),
            "region": self.region,
            "sources": list(self.sources),
            "ancient_name": self.ancient_name,
            "description": self.description,
            "society_type": self.society_type,
            "religion": self.religion,
            "linguistic_family": self.linguistic_family,
            "historical_status": self.historical_status,
            "regional_presence": list(self.regional_presence),
            "has_subgroups": self.has_subgroups,
            "subgroups": [s.to_dict() for s in self.subgroups],
            "matched_name": self.matched_name,
            "match_score": self.match_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EthnicRecord:
        return cls(
            name=data["name"],
            population=int(data.get("population") or 0),
            percentage_in_country=float(data.get("percentage_in_country") or 0),
            percentage_in_africa=float(data.get("percentage_in_africa") or 0),
            languages=list(data.get("languages") or []),
            region=data.get("region") or "",
            sources=list(data.get("sources") or []),
            ancient_name=data.get("ancient_name") or "",
            description=data.get("description") or "",
            society_type=data.get("society_type") or "",
            religion=data.get("religion") or "",
            linguistic_family=data.get("linguistic_family") or "",
            historical_status=data.get("historical_status") or "",
            regional_presence=list(data.get("regional_presence") or []),
            has_subgroups=bool(data.get("has_subgroups")),
            subgroups=[cls.from_dict(s) for s in data.get("subgroups") or []],
            matched_name=data.get("matched_name"),
            match_score=float(data.get("match_score") or 0),
        )


@dataclass
class CountryRecord:
    country_name: str
    region: str
    ethnicities: list[EthnicRecord] = field(default_factory=list)
    source_format: str = ""
    # Attached by the matching stage.
    country_description: CountryDescription | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "country_name": self.country_name,
            "region": self.region,
            "source_format": self.source_format,
            "ethnicities": [e.to_dict() for e in self.ethnicities],
            "country_description": (
                self.country_description.to_dict() if self.country_description else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CountryRecord:
        desc = data.get("country_description")
        return cls(
            country_name=data["country_name"],
            region=data["region"],
            ethnicities=[EthnicRecord.from_dict(e) for e in data.get("ethnicities") or []],
            source_format=data.get("source_format") or "",
            country_description=CountryDescription.from_dict(desc) if desc else None,
        )


# ---------------------------------------------------------------------------
# Name helpers
# ---------------------------------------------------------------------------

def split_parenthetical(name: str) -> tuple[str, list[str]] | None:
    """'Chokwe (X, Y)' → ('Chokwe', ['X', 'Y']); None without a trailing parenthetical."""
    m = _PARENTHETICAL.match(name.strip())
    if not m:
        return None
    return m.group(1).strip(), split_list(m.group(2))


def split_slash_name(name: str) -> tuple[str, list[str]] | None:
    """'Basarwa/San' → ('Basarwa', ['San']); None unless two or more segments."""
    if "/" not in name:
        return None
    parts = [p.strip() for p in name.split("/") if p.strip()]
    if len(parts) < 2:
        return None
    return parts[0], parts[1:]


def _even_subgroups(
    names: list[str],
    population: int,
    percentage_in_country: float,
    percentage_in_africa: float,
) -> list[EthnicRecord]:
    pop, pct_c, pct_a = split_evenly(
        population, percentage_in_country, percentage_in_africa, len(names)
    )
    return [
        EthnicRecord(
            name=n,
            population=pop,
            percentage_in_country=pct_c,
            percentage_in_africa=pct_a,
        )
        for n in names
    ]


# ---------------------------------------------------------------------------
# Legacy builder
# ---------------------------------------------------------------------------

def build_legacy(rows: list[LegacyRow]) -> list[EthnicRecord]:
    records: list[EthnicRecord] = []
    for row in rows:
        split = split_slash_name(row.name)
        if split is None:
            records.append(EthnicRecord(
                name=row.name,
                population=row.population,
                percentage_in_country=row.percentage_in_country,
                percentage_in_africa=row.percentage_in_africa,
            ))
            continue
        parent_name, sub_names = split
        parent = EthnicRecord(
            name=parent_name,
            has_subgroups=True,
            subgroups=_even_subgroups(
                sub_names,
                row.population,
                row.percentage_in_country,
                row.percentage_in_africa,
            ),
        )
        records.append(roll_up(parent))
    return records


# ---------------------------------------------------------------------------
# Enriched builder
# ---------------------------------------------------------------------------

def _metadata_from(row: EnrichedRow) -> dict[str, Any]:
    return {
        "ancient_name": row.ancient_name,
        "description": row.description,
        "society_type": row.society_type,
        "religion": row.religion,
        "linguistic_family": row.linguistic_family,
        "historical_status": row.historical_status,
    }


def _merge_group(name: str, rows: list[EnrichedRow]) -> EthnicRecord:
    """Several rows of one Group with Sub_group values → one parent."""
    subgroups = [
        EthnicRecord(
            name=r.sub_group,
            population=r.population,
            percentage_in_country=r.percentage_in_country,
            percentage_in_africa=r.percentage_in_africa,
        )
        for r in rows
        if r.sub_group
    ]
    dropped = sum(r.population for r in rows if not r.sub_group)
    if dropped:
        log.warning(
            "Group %r: %d people on rows without Sub_group are not part of any subgroup.",
            name, dropped,
        )
    parent = EthnicRecord(
        name=name,
        languages=ordered_union(*(list(r.languages) for r in rows)),
        region=", ".join(ordered_union([r.region for r in rows if r.region])),
        sources=ordered_union(*(list(r.sources) for r in rows)),
        regional_presence=ordered_union(*(list(r.regional_presence) for r in rows)),
        has_subgroups=True,
        subgroups=subgroups,
        **_metadata_from(rows[0]),
    )
    return roll_up(parent)


def _single_row(row: EnrichedRow) -> EthnicRecord:
    paren = split_parenthetical(row.group)
    listed = split_list(row.sub_group)

    if len(listed) > 1:
        name = paren[0] if paren else row.group
        sub_names = listed
    elif paren:
        name, sub_names = paren
    else:
        name, sub_names = row.group, []

    record = EthnicRecord(
        name=name,
        population=row.population,
        percentage_in_country=row.percentage_in_country,
        percentage_in_africa=row.percentage_in_africa,
        languages=list(row.languages),
        region=row.region,
        sources=list(row.sources),
        regional_presence=list(row.regional_presence),
        **_metadata_from(row),
    )
    if sub_names:
        record.has_subgroups = True
        record.subgroups = _even_subgroups(
            sub_names, row.population, row.percentage_in_country, row.percentage_in_africa
        )
        roll_up(record)
    return record


def build_enriched(rows: list[EnrichedRow]) -> list[EthnicRecord]:
    groups: dict[str, list[EnrichedRow]] = {}
    for row in rows:
        paren = split_parenthetical(row.group)
        key = paren[0] if paren else row.group
        groups.setdefault(key, []).append(row)

    records: list[EthnicRecord] = []
    for name, group_rows in groups.items():
        if len(group_rows) > 1 and any(r.sub_group for r in group_rows):
            records.append(_merge_group(name, group_rows))
        else:
            records.extend(_single_row(r) for r in group_rows)
    return records


def build_country_record(table: ParsedTable, country_name: str, region: str) -> CountryRecord:
    """Turn a parsed CSV table into the CountryRecord for one country folder."""
    if table.format == FORMAT_LEGACY:
        ethnicities = build_legacy(table.rows)  # type: ignore[arg-type]
    else:
        ethnicities = build_enriched(table.rows)  # type: ignore[arg-type]
    return CountryRecord(
        country_name=country_name,
        region=region,
        ethnicities=ethnicities,
        source_format=table.format,
    )


# ---------------------------------------------------------------------------
# Stage: parse_csv
# ---------------------------------------------------------------------------

@dataclass
class ParseCounters:
    countries_parsed: int = 0
    countries_skipped_no_csv: int = 0
    countries_failed: int = 0
    legacy_files: int = 0
    enriched_files: int = 0
    rows_read: int = 0
    rows_rejected: int = 0
    ethnicities: int = 0
    subgroups: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "countries_parsed": self.countries_parsed,
            "countries_skipped_no_csv": self.countries_skipped_no_csv,
            "countries_failed": self.countries_failed,
            "legacy_files": self.legacy_files,
            "enriched_files": self.enriched_files,
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "ethnicities": self.ethnicities,
            "subgroups": self.subgroups,
            "warnings": self.warnings[:50],
        }


def run_parse_csv(
    source_dir: Path,
    parsed_dir: Path,
    counters: ParseCounters,
    rejects: RejectWriter | None = None,
) -> list[CountryRecord]:
    """Parse every country CSV under source_dir into parsed_dir JSON artifacts."""
    records: list[CountryRecord] = []
    for src in iter_country_dirs(source_dir):
        csv_path = select_csv(src.path)
        if csv_path is None:
            counters.countries_skipped_no_csv += 1
            counters.warnings.append(f"{src.stem}: no CSV file")
            log.warning("No CSV file found for %s in %s", src.country, src.region)
            continue
        try:
            text = csv_path.read_text(encoding="utf-8-sig")
            table = parse_csv(text, rejects, source=str(csv_path))
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            counters.countries_failed += 1
            counters.warnings.append(f"{src.stem}: {exc}")
            log.warning("Could not parse %s: %s", csv_path, exc)
            continue

        record = build_country_record(table, src.country, src.region)
        counters.countries_parsed += 1
        counters.rows_read += len(table.rows) + table.rejected
        counters.rows_rejected += table.rejected
        if table.format == FORMAT_LEGACY:
            counters.legacy_files += 1
        else:
            counters.enriched_files += 1
        counters.ethnicities += len(record.ethnicities)
        counters.subgroups += sum(len(e.subgroups) for e in record.ethnicities)

        write_json(artifact_path(parsed_dir, src.region, src.country), record.to_dict())
        records.append(record)

    write_json(parsed_dir / ALL_COUNTRIES, [r.to_dict() for r in records])
    return records


def load_parsed_records(parsed_dir: Path) -> list[CountryRecord]:
    require_dir(parsed_dir, "Parsed")
    return [CountryRecord.from_dict(read_json(p)) for p in list_artifacts(parsed_dir)]

