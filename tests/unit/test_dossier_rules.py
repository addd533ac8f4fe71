"""Unit tests for ethno_etl.dossier_rules."""

from __future__ import annotations

import copy
import hashlib
import re
from pathlib import Path

import pytest
import yaml

from ethno_etl.dossier_rules import (
    DEFAULT_RULES_PATH,
    DossierRulesValidationError,
    Marker,
    any_match,
    build_dossier_rules,
    load_dossier_rules,
    validate_dossier_rules,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def default_data() -> dict:
    return yaml.safe_load(DEFAULT_RULES_PATH.read_text(encoding="utf-8"))


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "rules.yml"
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoadDefaultRules:
    def test_loads_repo_config(self):
        rules = load_dossier_rules()
        assert rules.version == "1"
        assert rules.ancient_names_lookahead == 150
        assert rules.section_lookahead == 200
        assert rules.summary_name_cap == 3
        assert rules.ethnicity_name_cap == 3

    def test_yaml_hash_is_sha256_of_file(self):
        rules = load_dossier_rules(DEFAULT_RULES_PATH)
        raw = DEFAULT_RULES_PATH.read_text(encoding="utf-8")
        assert rules.yaml_hash == hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def test_patterns_are_case_insensitive(self):
        rules = load_dossier_rules()
        assert rules.is_country_heading("# PAYS : NIGER")
        assert rules.is_country_heading("## pays")
        assert not rules.is_country_heading("Le pays est vaste.")

    def test_section_started_by(self):
        rules = load_dossier_rules()
        assert rules.section_started_by("3. RÉSUMÉ HISTORIQUE") == "description"
        assert rules.section_started_by("4. Résumé détaillé des groupes ethniques") == "ethnic_groups_summary"
        assert rules.section_started_by("6. NOTES") == "notes"
        assert rules.section_started_by("5. LANGUES") is None

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_dossier_rules(tmp_path / "absent.yml")

    def test_custom_file(self, tmp_path: Path, default_data):
        data = copy.deepcopy(default_data)
        data["version"] = "2"
        data["caps"]["summary_names"] = 5
        rules = load_dossier_rules(_write(tmp_path, data))
        assert rules.version == "2"
        assert rules.summary_name_cap == 5


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------

class TestMarker:
    def test_unless_excludes(self):
        rules = load_dossier_rules()
        assert any_match(rules.ethnicity_section, "Les peuples du Sahel")
        assert not any_match(rules.ethnicity_section, "Les peuples anciens")

    def test_plain_marker(self):
        m = Marker(pattern=re.compile("foo", re.IGNORECASE))
        assert m.matches("FOO bar")
        assert not m.matches("bar")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_root_must_be_mapping(self):
        with pytest.raises(DossierRulesValidationError, match="mapping"):
            validate_dossier_rules(["not", "a", "mapping"])

    def test_missing_top_level_key(self, default_data):
        data = copy.deepcopy(default_data)
        del data["cleaning"]
        with pytest.raises(DossierRulesValidationError, match="cleaning"):
            validate_dossier_rules(data)

    def test_missing_section(self, default_data):
        data = copy.deepcopy(default_data)
        del data["sections"]["notes"]
        with pytest.raises(DossierRulesValidationError, match="notes"):
            validate_dossier_rules(data)

    def test_section_needs_start_and_end(self, default_data):
        data = copy.deepcopy(default_data)
        del data["sections"]["description"]["end"]
        with pytest.raises(DossierRulesValidationError, match="sections.description"):
            validate_dossier_rules(data)

    def test_missing_ethnicity_key(self, default_data):
        data = copy.deepcopy(default_data)
        del data["ethnicity"]["heading"]
        with pytest.raises(DossierRulesValidationError, match="heading"):
            validate_dossier_rules(data)

    def test_invalid_regex(self, default_data):
        data = copy.deepcopy(default_data)
        data["country_heading"] = ["^(PAYS"]
        with pytest.raises(DossierRulesValidationError, match="invalid regex"):
            build_dossier_rules(data)

    def test_empty_marker_list(self, default_data):
        data = copy.deepcopy(default_data)
        data["ethnicity_section"] = []
        with pytest.raises(DossierRulesValidationError, match="non-empty list"):
            build_dossier_rules(data)

    def test_lookahead_must_be_positive(self, default_data):
        data = copy.deepcopy(default_data)
        data["lookahead"]["sections"] = 0
        with pytest.raises(DossierRulesValidationError, match="lookahead.sections"):
            build_dossier_rules(data)

    def test_bool_is_not_an_integer(self, default_data):
        data = copy.deepcopy(default_data)
        data["caps"]["summary_names"] = True
        with pytest.raises(DossierRulesValidationError, match="caps.summary_names"):
            build_dossier_rules(data)

    def test_min_length_above_max_length(self, default_data):
        data = copy.deepcopy(default_data)
        data["cleaning"]["min_length"] = 50
        data["cleaning"]["max_length"] = 10
        with pytest.raises(DossierRulesValidationError, match="exceeds"):
            build_dossier_rules(data)
