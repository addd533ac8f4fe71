"""ethno_etl.matching

Fuzzy linking of CSV ethnic records to dossier ethnicity entries.

Scoring (on normalized key words):
  1.0  identical match forms
  0.8  one match form contains the other
  n/m  shared words over the larger word count
  0.0  nothing in common

A record is linked to the best-scoring entry when the score reaches
min_score (0.5 by default).  Parents and subgroups are matched
independently against the same flat pool of entries.  Matched narrative
data only fills empty CSV fields.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ethno_etl.artifacts import (
    ALL_MATCHED,
    MATCHED_SUFFIX,
    artifact_path,
    list_artifacts,
    read_json,
    require_dir,
    write_json,
)
from ethno_etl.dossier import CountryDescription, EthnicityDescription, load_descriptions
from ethno_etl.normalize import key_words, normalize_key
from ethno_etl.records import CountryRecord, EthnicRecord, load_parsed_records
from ethno_etl.shared import MissingInputError

log = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.5


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class MatchCounters:
    countries: int = 0
    countries_fully_matched: int = 0
    countries_partially_matched: int = 0
    countries_without_description: int = 0
    ethnicities_matched: int = 0
    ethnicities_unmatched: int = 0
    subgroups_matched: int = 0
    subgroups_unmatched: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "countries": self.countries,
            "countries_fully_matched": self.countries_fully_matched,
            "countries_partially_matched": self.countries_partially_matched,
            "countries_without_description": self.countries_without_description,
            "ethnicities_matched": self.ethnicities_matched,
            "ethnicities_unmatched": self.ethnicities_unmatched,
            "subgroups_matched": self.subgroups_matched,
            "subgroups_unmatched": self.subgroups_unmatched,
        }


@dataclass(frozen=True)
class MatchResult:
    description: EthnicityDescription
    score: float


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def match_form(name: str | None) -> str:
    """Lowercase concatenation of the key words: 'Fon & apparentés' → 'fonapparentes'."""
    return "".join(key_words(name))


def similarity(a: str | None, b: str | None) -> float:
    """Symmetric name similarity in [0, 1]."""
    fa, fb = match_form(a), match_form(b)
    if not fa or not fb:
        return 0.0
    if fa == fb:
        return 1.0
    if fa in fb or fb in fa:
        return 0.8
    wa, wb = set(key_words(a)), set(key_words(b))
    common = len(wa & wb)
    if common == 0:
        return 0.0
    return common / max(len(wa), len(wb))


def find_best_match(
    name: str,
    candidates: list[EthnicityDescription],
    min_score: float = DEFAULT_MIN_SCORE,
) -> MatchResult | None:
    """Best candidate by display name or stored normalized name, if >= min_score.

    Ties keep the earliest candidate.
    """
    best: EthnicityDescription | None = None
    best_score = 0.0
    key = normalize_key(name)
    for desc in candidates:
        score = similarity(name, desc.name)
        if desc.normalized_name:
            score = max(score, similarity(key, desc.normalized_name))
        if score > best_score:
            best, best_score = desc, score
            if best_score == 1.0:
                break
    if best is None or best_score < min_score:
        return None
    return MatchResult(description=best, score=best_score)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def apply_match(record: EthnicRecord, result: MatchResult) -> None:
    """Link record to result; narrative fields only fill empty CSV fields."""
    desc = result.description
    record.matched_name = desc.name
    record.match_score = result.score
    if not record.description and desc.description:
        record.description = desc.description
    if not record.ancient_name and desc.ancient_names:
        record.ancient_name = ", ".join(desc.ancient_names)


def match_country(
    record: CountryRecord,
    description: CountryDescription | None,
    counters: MatchCounters,
    min_score: float = DEFAULT_MIN_SCORE,
) -> CountryRecord:
    """Attach description to record and link each ethnicity and subgroup."""
    counters.countries += 1
    record.country_description = description
    if description is None:
        counters.countries_without_description += 1

    pool = description.ethnicities if description else []
    matched = 0
    for eth in record.ethnicities:
        result = find_best_match(eth.name, pool, min_score) if pool else None
        if result:
            apply_match(eth, result)
            matched += 1
            counters.ethnicities_matched += 1
        else:
            counters.ethnicities_unmatched += 1
        for sub in eth.subgroups:
            sub_result = find_best_match(sub.name, pool, min_score) if pool else None
            if sub_result:
                apply_match(sub, sub_result)
                counters.subgroups_matched += 1
            else:
                counters.subgroups_unmatched += 1

    if matched == len(record.ethnicities):
        counters.countries_fully_matched += 1
    else:
        counters.countries_partially_matched += 1
        log.info(
            "%s/%s: %d/%d ethnicities matched",
            record.region, record.country_name, matched, len(record.ethnicities),
        )
    return record


# ---------------------------------------------------------------------------
# Stage: match
# ---------------------------------------------------------------------------

def run_match(
    parsed_dir: Path,
    matched_dir: Path,
    counters: MatchCounters,
    min_score: float = DEFAULT_MIN_SCORE,
) -> list[CountryRecord]:
    """Merge parsed CSV records with parsed dossiers and write matched artifacts."""
    require_dir(parsed_dir, "Parsed")
    records = load_parsed_records(parsed_dir)
    if not records:
        raise MissingInputError(f"No parsed country records in {parsed_dir}; run parse_csv first")
    descriptions = load_descriptions(parsed_dir)

    results: list[CountryRecord] = []
    for record in records:
        desc = descriptions.get(f"{record.region}_{record.country_name}")
        if desc is None:
            log.warning("No description for %s/%s", record.region, record.country_name)
        matched = match_country(record, desc, counters, min_score)
        write_json(
            artifact_path(matched_dir, record.region, record.country_name, MATCHED_SUFFIX),
            matched.to_dict(),
        )
        results.append(matched)

    write_json(matched_dir / ALL_MATCHED, [r.to_dict() for r in results])
    return results


def load_matched_records(matched_dir: Path) -> list[CountryRecord]:
    require_dir(matched_dir, "Matched")
    paths = list_artifacts(matched_dir, MATCHED_SUFFIX)
    if not paths:
        raise MissingInputError(f"No matched country records in {matched_dir}; run match first")
    return [CountryRecord.from_dict(read_json(p)) for p in paths]
