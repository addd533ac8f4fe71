"""ethno_etl.artifacts

Filesystem contract between pipeline stages.

  dataset/source/<region>/<country>/   CSV export(s) + one dossier .txt
  dataset/parsed/<region>_<country>.json              parse_csv output
  dataset/parsed/<region>_<country>_description.json  parse_descriptions output
  dataset/matched/<region>_<country>_matched.json     match output
  all_countries.json / all_descriptions.json / all_matched.json aggregates
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ethno_etl.shared import MissingInputError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SOURCE_DIR = Path("dataset/source")
DEFAULT_PARSED_DIR = Path("dataset/parsed")
DEFAULT_MATCHED_DIR = Path("dataset/matched")

ALL_COUNTRIES = "all_countries.json"
ALL_DESCRIPTIONS = "all_descriptions.json"
ALL_MATCHED = "all_matched.json"

DESCRIPTION_SUFFIX = "_description"
MATCHED_SUFFIX = "_matched"

ENRICHED_CSV_MARKER = "_ethnies_complet"
LEGACY_CSV_NAME = "groupes_ethniques.csv"

# Region folder code → display name.
REGION_NAMES = {
    "afrique_du_nord": "Afrique du Nord",
    "afrique_de_l_ouest": "Afrique de l'Ouest",
    "afrique_centrale": "Afrique Centrale",
    "afrique_de_l_est": "Afrique de l'Est",
    "afrique_australe": "Afrique Australe",
}


# ---------------------------------------------------------------------------
# Source discovery
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CountrySource:
    region: str
    country: str
    path: Path

    @property
    def stem(self) -> str:
        return f"{self.region}_{self.country}"


def region_display_name(code: str) -> str:
    return REGION_NAMES.get(code, code)


def require_dir(path: Path, what: str) -> Path:
    if not path.is_dir():
        raise MissingInputError(f"{what} directory not found: {path}")
    return path


def iter_country_dirs(source_dir: Path) -> list[CountrySource]:
    """Every <region>/<country> folder under source_dir, sorted."""
    require_dir(source_dir, "Source")
    out: list[CountrySource] = []
    for region_dir in sorted(p for p in source_dir.iterdir() if p.is_dir()):
        for country_dir in sorted(p for p in region_dir.iterdir() if p.is_dir()):
            out.append(CountrySource(region_dir.name, country_dir.name, country_dir))
    return out


def select_csv(country_dir: Path) -> Path | None:
    """*_ethnies_complet*.csv, else groupes_ethniques.csv, else the first *.csv."""
    csvs = sorted(p for p in country_dir.glob("*.csv") if p.is_file())
    for p in csvs:
        if ENRICHED_CSV_MARKER in p.name:
            return p
    for p in csvs:
        if p.name == LEGACY_CSV_NAME:
            return p
    return csvs[0] if csvs else None


def select_dossier(country_dir: Path) -> Path | None:
    txts = sorted(p for p in country_dir.glob("*.txt") if p.is_file())
    return txts[0] if txts else None


# ---------------------------------------------------------------------------
# JSON artifacts
# ---------------------------------------------------------------------------

def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def artifact_path(directory: Path, region: str, country: str, suffix: str = "") -> Path:
    return directory / f"{region}_{country}{suffix}.json"


def list_artifacts(directory: Path, suffix: str = "") -> list[Path]:
    """Per-country artifacts in directory carrying suffix, aggregates excluded.

    With an empty suffix only plain record files are returned: description
    and matched artifacts are skipped.
    """
    out: list[Path] = []
    for p in sorted(directory.glob("*.json")):
        if p.name.startswith("all_"):
            continue
        stem = p.stem
        if suffix:
            if stem.endswith(suffix):
                out.append(p)
        elif not stem.endswith(DESCRIPTION_SUFFIX) and not stem.endswith(MATCHED_SUFFIX):
            out.append(p)
    return out
