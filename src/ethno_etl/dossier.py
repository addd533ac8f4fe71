"""ethno_etl.dossier

Line scanner for the free-text country dossiers.

A dossier mixes a country part (ancient-name timeline, numbered narrative
sections) with an ethnicity part (one "### Name" subsection per group, each
with optional **Ancien nom**: and **Description**: labels).  The scanner is a
small state machine; every keyword list, regex and lookahead bound comes from
DossierRules so corpus changes stay in config/dossier_rules.yml.

States:
  IDLE                              → nothing recognized yet
  IN_COUNTRY_SECTION                → country part, not collecting
  COLLECTING_ANCIENT_NAMES          → timeline lines, bounded by lookahead
  COLLECTING_COUNTRY_TEXT           → description / summary / notes block
  IN_ETHNICITY_SECTION              → between ethnicity labels
  COLLECTING_ETHNICITY_DESCRIPTION  → inside a **Description**: block
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ethno_etl.artifacts import (
    ALL_DESCRIPTIONS,
    DESCRIPTION_SUFFIX,
    artifact_path,
    iter_country_dirs,
    list_artifacts,
    read_json,
    select_dossier,
    write_json,
)
from ethno_etl.dossier_rules import DossierRules, any_match, load_dossier_rules
from ethno_etl.normalize import normalize_key, split_list

log = logging.getLogger(__name__)

_BULLET = re.compile(r"^[-•*]\s*")
_NUMBERED = re.compile(r"^\d+[.)]\s*")
_BOLD = re.compile(r"^(?:[-•*]\s*|\d+[.)]\s*)?\*\*(.+?)\*\*(.*)$")
_DATED_PARENTHETICAL = re.compile(r"\s*\(([^)]*\d[^)]*)\)")
_TRAILING_PARENTHETICAL = re.compile(r"\s*\([^)]*\)$")
_DASH_COMMENTARY = re.compile(r"[–—]")
_NUMBERED_LINE = re.compile(r"^[1-9]\.")
_QUOTE_CHARS = re.compile(r"[\"“”„«»]")
_TYPOGRAPHIC_QUOTES = str.maketrans({
    "“": '"', "”": '"', "„": '"', "«": '"', "»": '"',
    "‘": '"', "’": '"', "‚": '"', "‛": '"',
})
_QUOTED = re.compile(r'"([^"]+)"')
_HEADING_LIKE = re.compile(r"^(#|\*\*|\d+[.)]\s)|:\s*$")


# ---------------------------------------------------------------------------
# Output types
# ---------------------------------------------------------------------------

@dataclass
class AncientNameEntry:
    period: str
    names: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"period": self.period, "names": list(self.names)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AncientNameEntry:
        return cls(period=data.get("period") or "", names=list(data.get("names") or []))


@dataclass
class EthnicityDescription:
    name: str
    normalized_name: str
    ancient_names: list[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "normalized_name": self.normalized_name,
            "ancient_names": list(self.ancient_names),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EthnicityDescription:
        return cls(
            name=data["name"],
            normalized_name=data.get("normalized_name") or normalize_key(data["name"]),
            ancient_names=list(data.get("ancient_names") or []),
            description=data.get("description") or "",
        )


@dataclass
class CountryDescription:
    country_name: str
    region: str
    ancient_names: list[AncientNameEntry] = field(default_factory=list)
    description: str = ""
    ethnic_groups_summary: str | None = None
    notes: str | None = None
    ethnicities: list[EthnicityDescription] = field(default_factory=list)

    def summary_names(self, limit: int) -> list[str]:
        """First `limit` distinct ancient names across the timeline."""
        seen: list[str] = []
        for entry in self.ancient_names:
            for name in entry.names:
                if name not in seen:
                    seen.append(name)
                    if len(seen) >= limit:
                        return seen
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "country_name": self.country_name,
            "region": self.region,
            "ancient_names": [e.to_dict() for e in self.ancient_names],
            "description": self.description,
            "ethnic_groups_summary": self.ethnic_groups_summary,
            "notes": self.notes,
            "ethnicities": [e.to_dict() for e in self.ethnicities],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CountryDescription:
        return cls(
            country_name=data["country_name"],
            region=data["region"],
            ancient_names=[AncientNameEntry.from_dict(e) for e in data.get("ancient_names") or []],
            description=data.get("description") or "",
            ethnic_groups_summary=data.get("ethnic_groups_summary"),
            notes=data.get("notes"),
            ethnicities=[EthnicityDescription.from_dict(e) for e in data.get("ethnicities") or []],
        )


# ---------------------------------------------------------------------------
# Candidate cleaning
# ---------------------------------------------------------------------------

def extract_name(line: str, rules: DossierRules, prefer_after_colon: bool = False) -> str | None:
    """Clean one candidate into a bare proper name, or None if it reads like prose.

    "Nom officiel : République du Niger" (prefer_after_colon) → "République du Niger"
    "→ Apparaît le terme Maghrib al-Aqsa" → "Maghrib al-Aqsa"
    "Carthage (814 av. J.-C. – 146 av. J.-C.)" → "Carthage"
    """
    cleaned = rules.emoji.sub("", line).strip()
    cleaned = _BULLET.sub("", cleaned).strip()

    if "→" in cleaned:
        cleaned = cleaned.split("→")[1].strip()
        cleaned = rules.arrow_prefixes.sub("", cleaned).strip()

    if ":" in cleaned:
        parts = cleaned.split(":")
        cleaned = (parts[1] if prefer_after_colon else parts[0]).strip()

    cleaned = _DATED_PARENTHETICAL.sub("", cleaned).strip()
    cleaned = _TRAILING_PARENTHETICAL.sub("", cleaned).strip()
    cleaned = _QUOTE_CHARS.sub("", cleaned).replace("**", "").strip()
    cleaned = _NUMBERED.sub("", cleaned).strip()
    cleaned = rules.boilerplate_prefixes.sub("", cleaned).strip()
    cleaned = _DASH_COMMENTARY.split(cleaned)[0].strip()

    if len(cleaned) > rules.max_name_length or len(cleaned) < rules.min_name_length:
        return None
    if rules.determiners.match(cleaned) or rules.verb_cues.match(cleaned):
        return None
    return cleaned


def split_names(names_part: str) -> list[str]:
    """Names of a "period : names" line; quoted names win over comma splitting."""
    normalized = names_part.translate(_TYPOGRAPHIC_QUOTES)
    quoted = [q.strip() for q in _QUOTED.findall(normalized) if q.strip()]
    if quoted:
        return quoted
    names: list[str] = []
    for raw in names_part.split(","):
        cleaned = _QUOTE_CHARS.sub("", raw).replace("‘", "").replace("’", "")
        cleaned = re.sub(r"\.\s*$", "", cleaned.strip()).strip()
        if cleaned:
            names.append(cleaned)
    return names


def _period_entry(text: str) -> AncientNameEntry | None:
    period, _, names_part = text.partition(":")
    period = period.strip()
    names = split_names(names_part.strip())
    if not period or not names:
        return None
    return AncientNameEntry(period=period, names=names)


def _dated_period(text: str) -> str:
    m = _DATED_PARENTHETICAL.search(text)
    return m.group(1).strip() if m else ""


def ancient_entry_from_line(line: str, rules: DossierRules) -> AncientNameEntry | None:
    """Turn one line of an ancient-names block into a timeline entry.

    Patterns, first match wins: bold emphasis, bullet, numbered item, arrow
    annotation, "label: value", bare capitalized short line.
    """
    if not line or any_match(rules.ancient_name_skip, line):
        return None
    body = rules.emoji.sub("", line).strip()

    m = _BOLD.match(body)
    if m:
        bold, rest = m.group(1).strip(), m.group(2).strip()
        if rest.startswith(":"):
            return _period_entry(f"{bold}{rest}")
        name = extract_name(bold, rules)
        return AncientNameEntry(period=_dated_period(rest), names=[name]) if name else None

    for marker in (_BULLET, _NUMBERED):
        if marker.match(body):
            text = marker.sub("", body).strip()
            return _labelled_entry(text, rules)

    if "→" in body:
        name = extract_name(body, rules)
        return AncientNameEntry(period="", names=[name]) if name else None

    if ":" in body:
        return _labelled_entry(body, rules)

    if body[:1].isupper() and len(body) <= rules.max_name_length and not body.endswith("."):
        name = extract_name(body, rules)
        return AncientNameEntry(period=_dated_period(body), names=[name]) if name else None
    return None


def _labelled_entry(text: str, rules: DossierRules) -> AncientNameEntry | None:
    label, sep, value = text.partition(":")
    if sep and label.strip() and value.strip():
        if rules.boilerplate_prefixes.match(label.strip() + ":"):
            name = extract_name(text, rules, prefer_after_colon=True)
            return AncientNameEntry(period="", names=[name]) if name else None
        return _period_entry(text)
    name = extract_name(text, rules)
    return AncientNameEntry(period=_dated_period(text), names=[name]) if name else None


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class ScanState(str, Enum):
    IDLE = "idle"
    IN_COUNTRY_SECTION = "in_country_section"
    COLLECTING_ANCIENT_NAMES = "collecting_ancient_names"
    COLLECTING_COUNTRY_TEXT = "collecting_country_text"
    IN_ETHNICITY_SECTION = "in_ethnicity_section"
    COLLECTING_ETHNICITY_DESCRIPTION = "collecting_ethnicity_description"


_COUNTRY_STATES = (ScanState.IDLE, ScanState.IN_COUNTRY_SECTION)
_BOUNDED_STATES = (ScanState.COLLECTING_ANCIENT_NAMES, ScanState.COLLECTING_COUNTRY_TEXT)
_ETHNICITY_STATES = (ScanState.IN_ETHNICITY_SECTION, ScanState.COLLECTING_ETHNICITY_DESCRIPTION)


def _clean_heading_name(raw: str) -> str:
    return _NUMBERED.sub("", raw.replace("**", "").strip()).strip()


class DossierScanner:
    """Feed stripped lines one at a time; read the result from finish()."""

    def __init__(self, rules: DossierRules, country_name: str, region: str) -> None:
        self.rules = rules
        self.state = ScanState.IDLE
        self.result = CountryDescription(country_name=country_name, region=region)
        self._lines: list[str] = []
        self._section_end = -1
        self._text_target: str | None = None
        self._text: dict[str, list[str]] = {
            "description": [], "ethnic_groups_summary": [], "notes": [],
        }
        self._current: EthnicityDescription | None = None
        self._eth_lines: list[str] = []
        self._description_heading_at: int | None = None
        self._ethnicity_section_at: int | None = None

    # -- transitions --------------------------------------------------------

    def _find_end(self, start: int, markers: list, lookahead: int) -> int:
        stop = min(len(self._lines), start + lookahead)
        for j in range(start + 1, stop):
            if any_match(markers, self._lines[j]):
                return j
        return stop

    def _start_text(self, i: int, target: str) -> None:
        self._close_ethnicity()
        self.state = ScanState.COLLECTING_COUNTRY_TEXT
        self._text_target = target
        self._text[target] = []
        self._section_end = self._find_end(
            i, self.rules.sections[target].end, self.rules.section_lookahead
        )

    def _start_ancient_names(self, i: int) -> None:
        self.state = ScanState.COLLECTING_ANCIENT_NAMES
        self._section_end = self._find_end(
            i, self.rules.ancient_name_end, self.rules.ancient_names_lookahead
        )

    def _is_ancient_trigger(self, line: str) -> bool:
        if self.state == ScanState.COLLECTING_ANCIENT_NAMES:
            return False
        if not any_match(self.rules.ancient_name_triggers, line):
            return False
        # Inside a narrative block only heading-like lines open a new section.
        return self.state in _COUNTRY_STATES or bool(_HEADING_LIKE.search(line))

    def _close_ethnicity(self) -> None:
        if self._current is not None:
            self._current.description = "\n".join(self._eth_lines).strip()
            self.result.ethnicities.append(self._current)
        self._current = None
        self._eth_lines = []

    # -- per-line step ------------------------------------------------------

    def step(self, i: int, line: str) -> None:
        rules = self.rules
        if self.state in _BOUNDED_STATES and i >= self._section_end:
            self.state = ScanState.IN_COUNTRY_SECTION

        if rules.is_country_heading(line):
            self._close_ethnicity()
            self.state = ScanState.IN_COUNTRY_SECTION
            return

        target = rules.section_started_by(line)
        if target is not None:
            self._start_text(i, target)
            return

        if self.state in _COUNTRY_STATES and any_match(rules.ethnicity_section, line):
            self.state = ScanState.IN_ETHNICITY_SECTION
            if self._ethnicity_section_at is None:
                self._ethnicity_section_at = i
            return

        if self.state in _ETHNICITY_STATES:
            self._ethnicity_line(line)
            return

        if self._is_ancient_trigger(line):
            self._start_ancient_names(i)
            return

        if any_match(rules.description_headings, line) and not any_match(
            rules.ancient_name_triggers, line
        ):
            if self._description_heading_at is None:
                self._description_heading_at = i
            self._start_text(i, "description")
            return

        if self.state == ScanState.COLLECTING_ANCIENT_NAMES:
            entry = ancient_entry_from_line(line, rules)
            if entry is not None:
                self.result.ancient_names.append(entry)
        elif self.state == ScanState.COLLECTING_COUNTRY_TEXT:
            self._collect_text(line)

    def _collect_text(self, line: str) -> None:
        if not line or _NUMBERED_LINE.match(line):
            return
        if self._text_target == "description" and line.startswith("#"):
            return
        self._text[self._text_target].append(line)  # type: ignore[index]

    def _ethnicity_line(self, line: str) -> None:
        rules = self.rules
        m = rules.ethnicity_heading.match(line)
        if m:
            self._close_ethnicity()
            name = _clean_heading_name(m.group(1))
            self._current = EthnicityDescription(name=name, normalized_name=normalize_key(name))
            self.state = ScanState.IN_ETHNICITY_SECTION
            return
        if self._current is None:
            return

        if rules.ancient_name_label.match(line):
            room = rules.ethnicity_name_cap - len(self._current.ancient_names)
            if room > 0:
                names = split_list(rules.ancient_name_label.sub("", line, count=1))
                self._current.ancient_names.extend(names[:room])
            self.state = ScanState.IN_ETHNICITY_SECTION
            return

        if rules.description_label.match(line):
            self.state = ScanState.COLLECTING_ETHNICITY_DESCRIPTION
            rest = rules.description_label.sub("", line, count=1).strip()
            self._eth_lines = [rest] if rest else []
            return

        if self.state == ScanState.COLLECTING_ETHNICITY_DESCRIPTION and line:
            if rules.bold_label.match(line):
                self.state = ScanState.IN_ETHNICITY_SECTION
            else:
                self._eth_lines.append(line)

    # -- result -------------------------------------------------------------

    def scan(self, lines: list[str]) -> CountryDescription:
        self._lines = [ln.strip() for ln in lines]
        for i, line in enumerate(self._lines):
            self.step(i, line)
        return self.finish()

    def finish(self) -> CountryDescription:
        self._close_ethnicity()
        result = self.result
        result.description = "\n".join(self._text["description"]).strip()
        result.ethnic_groups_summary = "\n".join(self._text["ethnic_groups_summary"]).strip() or None
        result.notes = "\n".join(self._text["notes"]).strip() or None

        if (
            not result.description
            and self._description_heading_at is not None
            and self._ethnicity_section_at is not None
            and self._description_heading_at < self._ethnicity_section_at
        ):
            between = self._lines[self._description_heading_at + 1:self._ethnicity_section_at]
            result.description = "\n".join(
                ln for ln in between if ln and not ln.startswith("###")
            ).strip()
        return result


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def description_artifact(desc: CountryDescription, rules: DossierRules) -> dict[str, Any]:
    """JSON artifact for one dossier: the description plus its capped name summary."""
    return {**desc.to_dict(), "summary_names": desc.summary_names(rules.summary_name_cap)}


def parse_dossier(
    text: str,
    country_name: str,
    region: str,
    rules: DossierRules | None = None,
) -> CountryDescription:
    """Scan dossier text into a CountryDescription."""
    scanner = DossierScanner(rules or load_dossier_rules(), country_name, region)
    return scanner.scan(text.split("\n"))


def parse_dossier_file(
    path: Path,
    country_name: str,
    region: str,
    rules: DossierRules | None = None,
) -> CountryDescription:
    result = parse_dossier(path.read_text(encoding="utf-8"), country_name, region, rules)
    log.debug(
        "%s: %d timeline entries, %d ethnicities",
        path, len(result.ancient_names), len(result.ethnicities),
    )
    return result


# ---------------------------------------------------------------------------
# Stage: parse_descriptions
# ---------------------------------------------------------------------------

@dataclass
class DescriptionCounters:
    countries_parsed: int = 0
    countries_skipped_no_dossier: int = 0
    countries_failed: int = 0
    timeline_entries: int = 0
    ethnicities: int = 0
    with_ethnic_groups_summary: int = 0
    with_notes: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "countries_parsed": self.countries_parsed,
            "countries_skipped_no_dossier": self.countries_skipped_no_dossier,
            "countries_failed": self.countries_failed,
            "timeline_entries": self.timeline_entries,
            "ethnicities": self.ethnicities,
            "with_ethnic_groups_summary": self.with_ethnic_groups_summary,
            "with_notes": self.with_notes,
            "warnings": self.warnings[:50],
        }


def run_parse_descriptions(
    source_dir: Path,
    parsed_dir: Path,
    rules: DossierRules,
    counters: DescriptionCounters,
) -> list[CountryDescription]:
    """Parse every country dossier under source_dir into parsed_dir JSON artifacts."""
    results: list[CountryDescription] = []
    for src in iter_country_dirs(source_dir):
        txt_path = select_dossier(src.path)
        if txt_path is None:
            counters.countries_skipped_no_dossier += 1
            counters.warnings.append(f"{src.stem}: no dossier")
            log.warning("No description file found for %s in %s", src.country, src.region)
            continue
        try:
            desc = parse_dossier_file(txt_path, src.country, src.region, rules)
        except (OSError, UnicodeDecodeError) as exc:
            counters.countries_failed += 1
            counters.warnings.append(f"{src.stem}: {exc}")
            log.warning("Could not read %s: %s", txt_path, exc)
            continue

        counters.countries_parsed += 1
        counters.timeline_entries += len(desc.ancient_names)
        counters.ethnicities += len(desc.ethnicities)
        if desc.ethnic_groups_summary:
            counters.with_ethnic_groups_summary += 1
        if desc.notes:
            counters.with_notes += 1

        write_json(
            artifact_path(parsed_dir, src.region, src.country, DESCRIPTION_SUFFIX),
            description_artifact(desc, rules),
        )
        results.append(desc)

    write_json(parsed_dir / ALL_DESCRIPTIONS, [description_artifact(d, rules) for d in results])
    return results


def load_descriptions(parsed_dir: Path) -> dict[str, CountryDescription]:
    """Parsed dossiers keyed by "<region>_<country>"."""
    out: dict[str, CountryDescription] = {}
    for p in list_artifacts(parsed_dir, DESCRIPTION_SUFFIX):
        desc = CountryDescription.from_dict(read_json(p))
        out[f"{desc.region}_{desc.country_name}"] = desc
    return out
