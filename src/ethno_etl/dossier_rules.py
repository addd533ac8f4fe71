"""ethno_etl.dossier_rules

YAML-based line-pattern rules for the country dossier scanner.

Responsibilities:
  - Load and validate config/dossier_rules.yml
  - Compile every pattern once (case-insensitive)
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from ethno_etl.dossier_rules import load_dossier_rules

    rules = load_dossier_rules(Path("config/dossier_rules.yml"))
    rules.is_country_heading("# PAYS")
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULES_PATH = Path(__file__).resolve().parents[2] / "config" / "dossier_rules.yml"

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "lookahead",
    "caps",
    "country_heading",
    "sections",
    "description_headings",
    "ethnicity_section",
    "ancient_names",
    "ethnicity",
    "cleaning",
})

SECTION_NAMES = ("description", "ethnic_groups_summary", "notes")

REQUIRED_CLEANING_KEYS = frozenset({
    "emoji",
    "arrow_prefixes",
    "boilerplate_prefixes",
    "determiners",
    "verb_cues",
    "min_length",
    "max_length",
})

REQUIRED_ETHNICITY_KEYS = frozenset({
    "heading",
    "ancient_name_label",
    "description_label",
    "bold_label",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class DossierRulesValidationError(ValueError):
    """Raised when a dossier rules file fails schema validation."""


# ---------------------------------------------------------------------------
# Marker + rules dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Marker:
    """A pattern that matches a line unless an exclusion pattern also does."""

    pattern: re.Pattern[str]
    unless: re.Pattern[str] | None = None

    def matches(self, line: str) -> bool:
        if not self.pattern.search(line):
            return False
        return self.unless is None or not self.unless.search(line)


def any_match(markers: list[Marker], line: str) -> bool:
    return any(m.matches(line) for m in markers)


@dataclass(frozen=True)
class SectionRule:
    start: list[Marker]
    end: list[Marker]


@dataclass
class DossierRules:
    """Parsed, validated scanner rules loaded from a YAML file."""

    version: str
    yaml_hash: str
    ancient_names_lookahead: int
    section_lookahead: int
    summary_name_cap: int
    ethnicity_name_cap: int
    country_heading: list[Marker]
    sections: dict[str, SectionRule]
    description_headings: list[Marker]
    ethnicity_section: list[Marker]
    ancient_name_triggers: list[Marker]
    ancient_name_end: list[Marker]
    ancient_name_skip: list[Marker]
    ethnicity_heading: re.Pattern[str]
    ancient_name_label: re.Pattern[str]
    description_label: re.Pattern[str]
    bold_label: re.Pattern[str]
    emoji: re.Pattern[str]
    arrow_prefixes: re.Pattern[str]
    boilerplate_prefixes: re.Pattern[str]
    determiners: re.Pattern[str]
    verb_cues: re.Pattern[str]
    min_name_length: int
    max_name_length: int
    raw_yaml: str = field(repr=False, default="")

    def is_country_heading(self, line: str) -> bool:
        return any_match(self.country_heading, line)

    def section_started_by(self, line: str) -> str | None:
        for name in SECTION_NAMES:
            if any_match(self.sections[name].start, line):
                return name
        return None


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def _compile(pattern: Any, where: str) -> re.Pattern[str]:
    if not isinstance(pattern, str) or not pattern:
        raise DossierRulesValidationError(f"{where}: pattern must be a non-empty string.")
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise DossierRulesValidationError(f"{where}: invalid regex {pattern!r}: {exc}") from exc


def _markers(items: Any, where: str) -> list[Marker]:
    if not isinstance(items, list) or not items:
        raise DossierRulesValidationError(f"{where} must be a non-empty list.")
    out: list[Marker] = []
    for i, item in enumerate(items):
        loc = f"{where}[{i}]"
        if isinstance(item, dict):
            unless = item.get("unless")
            out.append(Marker(
                pattern=_compile(item.get("pattern"), loc),
                unless=_compile(unless, f"{loc}.unless") if unless is not None else None,
            ))
        else:
            out.append(Marker(pattern=_compile(item, loc)))
    return out


def _positive_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise DossierRulesValidationError(f"{where} must be a positive integer, got {value!r}.")
    return value


def validate_dossier_rules(data: Any) -> None:
    """Raise DossierRulesValidationError if data does not match the schema.

    Checks required keys and the nested section layout.  Pattern and integer
    checks happen while compiling in load_dossier_rules.
    """
    if not isinstance(data, dict):
        raise DossierRulesValidationError("YAML root must be a mapping.")

    missing = REQUIRED_YAML_KEYS - set(data.keys())
    if missing:
        raise DossierRulesValidationError(f"Missing required YAML keys: {sorted(missing)}")

    sections = data["sections"]
    if not isinstance(sections, dict):
        raise DossierRulesValidationError("sections must be a mapping.")
    missing_sections = set(SECTION_NAMES) - set(sections.keys())
    if missing_sections:
        raise DossierRulesValidationError(f"Missing sections: {sorted(missing_sections)}")
    for name in SECTION_NAMES:
        if not isinstance(sections[name], dict) or {"start", "end"} - set(sections[name]):
            raise DossierRulesValidationError(f"sections.{name} needs start and end lists.")

    ancient = data["ancient_names"]
    if not isinstance(ancient, dict) or {"triggers", "end", "skip"} - set(ancient):
        raise DossierRulesValidationError("ancient_names needs triggers, end and skip lists.")

    for key, required in (("ethnicity", REQUIRED_ETHNICITY_KEYS), ("cleaning", REQUIRED_CLEANING_KEYS)):
        block = data[key]
        if not isinstance(block, dict):
            raise DossierRulesValidationError(f"{key} must be a mapping.")
        missing_block = required - set(block.keys())
        if missing_block:
            raise DossierRulesValidationError(f"{key} missing keys: {sorted(missing_block)}")

    for key in ("lookahead", "caps"):
        if not isinstance(data[key], dict):
            raise DossierRulesValidationError(f"{key} must be a mapping.")


def build_dossier_rules(data: dict[str, Any], raw: str = "") -> DossierRules:
    validate_dossier_rules(data)
    cleaning = data["cleaning"]
    ethnicity = data["ethnicity"]
    ancient = data["ancient_names"]

    min_len = _positive_int(cleaning["min_length"], "cleaning.min_length")
    max_len = _positive_int(cleaning["max_length"], "cleaning.max_length")
    if min_len > max_len:
        raise DossierRulesValidationError(
            f"cleaning.min_length ({min_len}) exceeds cleaning.max_length ({max_len})."
        )

    return DossierRules(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        ancient_names_lookahead=_positive_int(
            data["lookahead"].get("ancient_names"), "lookahead.ancient_names"
        ),
        section_lookahead=_positive_int(data["lookahead"].get("sections"), "lookahead.sections"),
        summary_name_cap=_positive_int(data["caps"].get("summary_names"), "caps.summary_names"),
        ethnicity_name_cap=_positive_int(
            data["caps"].get("ethnicity_ancient_names"), "caps.ethnicity_ancient_names"
        ),
        country_heading=_markers(data["country_heading"], "country_heading"),
        sections={
            name: SectionRule(
                start=_markers(data["sections"][name]["start"], f"sections.{name}.start"),
                end=_markers(data["sections"][name]["end"], f"sections.{name}.end"),
            )
            for name in SECTION_NAMES
        },
        description_headings=_markers(data["description_headings"], "description_headings"),
        ethnicity_section=_markers(data["ethnicity_section"], "ethnicity_section"),
        ancient_name_triggers=_markers(ancient["triggers"], "ancient_names.triggers"),
        ancient_name_end=_markers(ancient["end"], "ancient_names.end"),
        ancient_name_skip=_markers(ancient["skip"], "ancient_names.skip"),
        ethnicity_heading=_compile(ethnicity["heading"], "ethnicity.heading"),
        ancient_name_label=_compile(ethnicity["ancient_name_label"], "ethnicity.ancient_name_label"),
        description_label=_compile(ethnicity["description_label"], "ethnicity.description_label"),
        bold_label=_compile(ethnicity["bold_label"], "ethnicity.bold_label"),
        emoji=_compile(cleaning["emoji"], "cleaning.emoji"),
        arrow_prefixes=_compile(cleaning["arrow_prefixes"], "cleaning.arrow_prefixes"),
        boilerplate_prefixes=_compile(cleaning["boilerplate_prefixes"], "cleaning.boilerplate_prefixes"),
        determiners=_compile(cleaning["determiners"], "cleaning.determiners"),
        verb_cues=_compile(cleaning["verb_cues"], "cleaning.verb_cues"),
        min_name_length=min_len,
        max_name_length=max_len,
        raw_yaml=raw,
    )


def load_dossier_rules(yaml_path: Path | None = None) -> DossierRules:
    """Load, validate, and return DossierRules from a YAML file.

    Args:
        yaml_path: Rules file; defaults to config/dossier_rules.yml in the repo.

    Raises:
        DossierRulesValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_RULES_PATH
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    return build_dossier_rules(data, raw)
