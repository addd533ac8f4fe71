"""ethno_etl.csv_formats

Format detection and typed row parsing for the two country CSV schemas.

  - legacy:   Ethnicity_or_Subgroup, pourcentage dans la population du pays,
              population de l'ethnie estimée dans le pays,
              pourcentage dans la population totale d'Afrique
  - enriched: Group, Sub_group, Population_2025, Percentage_in_country, ...

Detection inspects the header row only.  Anything unrecognized is parsed as
enriched.  Rows come out as frozen dataclasses with numbers already parsed,
so record building never checks for missing keys.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field

from ethno_etl.normalize import (
    parse_percentage,
    parse_population,
    split_list,
    trim,
)
from ethno_etl.shared import RejectWriter, normalize_headers

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FORMAT_LEGACY = "legacy"
FORMAT_ENRICHED = "enriched"

LEGACY_NAME = "Ethnicity_or_Subgroup"
LEGACY_PCT_COUNTRY = "pourcentage dans la population du pays"
LEGACY_POPULATION = "population de l'ethnie estimée dans le pays"
LEGACY_PCT_AFRICA = "pourcentage dans la population totale d'Afrique"

LEGACY_HEADERS = [LEGACY_NAME, LEGACY_PCT_COUNTRY, LEGACY_POPULATION, LEGACY_PCT_AFRICA]

ENRICHED_HEADERS = [
    "Group",
    "Sub_group",
    "Population_2025",
    "Percentage_in_country",
    "Percentage_in_Africa",
    "Language",
    "Region",
    "Sources",
    "Ancient_Name",
    "Description",
    "Type_de_societe",
    "Religion",
    "Famille_linguistique",
    "Statut_historique",
    "Presence_regionale",
]

_ENRICHED_MARKERS = {"Group", "Population_2025", "Percentage_in_country"}
_LEGACY_MARKERS = {LEGACY_NAME, LEGACY_PCT_COUNTRY, LEGACY_POPULATION}


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LegacyRow:
    name: str
    percentage_in_country: float
    population: int
    percentage_in_africa: float


@dataclass(frozen=True)
class EnrichedRow:
    group: str
    sub_group: str = ""
    population: int = 0
    percentage_in_country: float = 0.0
    percentage_in_africa: float = 0.0
    languages: tuple[str, ...] = ()
    region: str = ""
    sources: tuple[str, ...] = ()
    ancient_name: str = ""
    description: str = ""
    society_type: str = ""
    religion: str = ""
    linguistic_family: str = ""
    historical_status: str = ""
    regional_presence: tuple[str, ...] = ()


@dataclass
class ParsedTable:
    """Result of parse_csv: detected format plus typed rows."""

    format: str
    header: list[str]
    rows: list[LegacyRow] | list[EnrichedRow] = field(default_factory=list)
    rejected: int = 0


# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

def _clean_header(name: str) -> str:
    return name.replace("\ufeff", "").strip().strip('"').strip()


def read_table(text: str) -> tuple[list[str], list[dict[str, str]]]:
    """Split raw CSV text into (header, row dicts).

    Quoted fields may hold commas, doubled quotes and newlines.  Values are
    returned exactly as written (the typed row builders trim them).  Blank
    lines are dropped and short rows padded with "".  Fewer than two non-blank
    lines gives no rows.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text, newline=""))
    records = [r for r in reader if any(v.strip() for v in r)]
    if len(records) < 2:
        header = [_clean_header(h) for h in records[0]] if records else []
        return header, []

    header = [_clean_header(h) for h in records[0]]
    rows: list[dict[str, str]] = []
    for record in records[1:]:
        row = {h: (record[i] if i < len(record) else "") for i, h in enumerate(header)}
        rows.append(normalize_headers(row))
    return header, rows


def serialize_rows(header: list[str], rows: list[dict[str, str]]) -> str:
    """Write rows back out with minimal quoting and "\\n" line endings.

    Text already in this form reads back through read_table and serializes to
    the same bytes, padding inside quoted fields included.
    """
    buf = io.StringIO(newline="")
    writer = csv.writer(buf, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(header)
    for row in rows:
        writer.writerow([row.get(h, "") for h in header])
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_format_from_header(header: list[str]) -> str:
    names = set(header)
    if _ENRICHED_MARKERS <= names:
        return FORMAT_ENRICHED
    if _LEGACY_MARKERS <= names:
        return FORMAT_LEGACY
    log.debug("Unrecognized CSV header %s; assuming enriched format.", header)
    return FORMAT_ENRICHED


def detect_format(text: str) -> str:
    """Return FORMAT_LEGACY or FORMAT_ENRICHED from the header row of text."""
    if text.startswith("\ufeff"):
        text = text[1:]
    for record in csv.reader(io.StringIO(text, newline="")):
        if any(v.strip() for v in record):
            return detect_format_from_header([_clean_header(h) for h in record])
    return FORMAT_ENRICHED


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------

def legacy_row(raw: dict[str, str]) -> LegacyRow | None:
    """Build a LegacyRow, or None when the name cell is blank."""
    name = trim(raw.get(LEGACY_NAME))
    if name is None:
        return None
    return LegacyRow(
        name=name,
        percentage_in_country=parse_percentage(raw.get(LEGACY_PCT_COUNTRY)),
        population=parse_population(raw.get(LEGACY_POPULATION)),
        percentage_in_africa=parse_percentage(raw.get(LEGACY_PCT_AFRICA)),
    )


def enriched_row(raw: dict[str, str]) -> EnrichedRow | None:
    """Build an EnrichedRow, or None when the Group cell is blank."""
    group = trim(raw.get("Group"))
    if group is None:
        return None
    return EnrichedRow(
        group=group,
        sub_group=trim(raw.get("Sub_group")) or "",
        population=parse_population(raw.get("Population_2025")),
        percentage_in_country=parse_percentage(raw.get("Percentage_in_country")),
        percentage_in_africa=parse_percentage(raw.get("Percentage_in_Africa")),
        languages=tuple(split_list(raw.get("Language"))),
        region=trim(raw.get("Region")) or "",
        sources=tuple(split_list(raw.get("Sources"))),
        ancient_name=trim(raw.get("Ancient_Name")) or "",
        description=trim(raw.get("Description")) or "",
        society_type=trim(raw.get("Type_de_societe")) or "",
        religion=trim(raw.get("Religion")) or "",
        linguistic_family=trim(raw.get("Famille_linguistique")) or "",
        historical_status=trim(raw.get("Statut_historique")) or "",
        regional_presence=tuple(split_list(raw.get("Presence_regionale"))),
    )


def parse_csv(
    text: str,
    rejects: RejectWriter | None = None,
    source: str | None = None,
) -> ParsedTable:
    """Detect the schema of text and return its typed rows.

    Rows with a blank name cell are written to rejects (when given) and
    counted, never raised.
    """
    header, raw_rows = read_table(text)
    fmt = detect_format_from_header(header)
    build = legacy_row if fmt == FORMAT_LEGACY else enriched_row
    name_col = LEGACY_NAME if fmt == FORMAT_LEGACY else "Group"

    table = ParsedTable(format=fmt, header=header, rows=[])
    for raw in raw_rows:
        row = build(raw)
        if row is None:
            table.rejected += 1
            if rejects is not None:
                rejects.write(raw, f"blank_{name_col}", source=source)
            continue
        table.rows.append(row)
    return table
