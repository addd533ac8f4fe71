"""Unit tests for ethno_etl.matching."""

from __future__ import annotations

from pathlib import Path

import pytest

from ethno_etl.artifacts import artifact_path, write_json
from ethno_etl.dossier import CountryDescription, EthnicityDescription
from ethno_etl.matching import (
    MatchCounters,
    MatchResult,
    apply_match,
    find_best_match,
    load_matched_records,
    match_country,
    match_form,
    run_match,
    similarity,
)
from ethno_etl.normalize import normalize_key
from ethno_etl.records import CountryRecord, EthnicRecord
from ethno_etl.shared import MissingInputError


def _desc(name: str, **kw) -> EthnicityDescription:
    return EthnicityDescription(name=name, normalized_name=normalize_key(name), **kw)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class TestSimilarity:
    def test_match_form(self):
        assert match_form("Fon & apparentés") == "fonapparentes"

    def test_identical(self):
        assert similarity("Fon", "FON") == 1.0

    def test_containment(self):
        assert similarity("Fon & apparentés", "Fon") == 0.8
        assert similarity("Fon", "Fon & apparentés") == 0.8

    def test_word_overlap(self):
        assert similarity("Peul Fulani", "Fulani Wodaabe") == pytest.approx(0.5)

    def test_nothing_in_common(self):
        assert similarity("Yoruba", "Igbo") == 0.0

    def test_empty(self):
        assert similarity("", "Fon") == 0.0
        assert similarity(None, None) == 0.0


class TestFindBestMatch:
    def test_exact_candidate(self):
        pool = [_desc("Fon"), _desc("Adja")]
        result = find_best_match("Fon", pool)
        assert result is not None
        assert result.description.name == "Fon"
        assert result.score == 1.0

    def test_best_score_wins(self):
        pool = [_desc("Adja & apparentés"), _desc("Adja")]
        result = find_best_match("Adja", pool)
        assert result.description.name == "Adja"

    def test_below_threshold(self):
        assert find_best_match("Bariba", [_desc("Fon"), _desc("Adja")]) is None

    def test_custom_threshold(self):
        pool = [_desc("Fulani Wodaabe")]
        assert find_best_match("Peul Fulani", pool) is not None
        assert find_best_match("Peul Fulani", pool, min_score=0.6) is None

    def test_empty_pool(self):
        assert find_best_match("Fon", []) is None


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

class TestApplyMatch:
    def test_fills_empty_fields(self):
        rec = EthnicRecord(name="Haoussa")
        desc = _desc("Haoussa", ancient_names=["Hausawa", "Habe"], description="Peuple commerçant.")
        apply_match(rec, MatchResult(desc, 1.0))
        assert rec.matched_name == "Haoussa"
        assert rec.match_score == 1.0
        assert rec.description == "Peuple commerçant."
        assert rec.ancient_name == "Hausawa, Habe"

    def test_csv_fields_win(self):
        rec = EthnicRecord(name="Haoussa", description="Texte CSV", ancient_name="Habe")
        desc = _desc("Haoussa", ancient_names=["Hausawa"], description="Texte dossier")
        apply_match(rec, MatchResult(desc, 0.8))
        assert rec.description == "Texte CSV"
        assert rec.ancient_name == "Habe"
        assert rec.match_score == 0.8


class TestMatchCountry:
    def test_parents_and_subgroups_matched_independently(self):
        record = CountryRecord("botswana", "afrique_australe", [
            EthnicRecord(name="Tswana"),
            EthnicRecord(name="Basarwa", has_subgroups=True, subgroups=[EthnicRecord(name="San")]),
        ])
        description = CountryDescription("botswana", "afrique_australe", ethnicities=[
            _desc("Tswana", description="Majoritaires."),
            _desc("San", description="Chasseurs-cueilleurs."),
        ])
        counters = MatchCounters()

        match_country(record, description, counters)

        assert record.country_description is description
        assert record.ethnicities[0].description == "Majoritaires."
        assert record.ethnicities[1].matched_name is None
        assert record.ethnicities[1].subgroups[0].description == "Chasseurs-cueilleurs."
        assert counters.ethnicities_matched == 1
        assert counters.ethnicities_unmatched == 1
        assert counters.subgroups_matched == 1
        assert counters.countries_partially_matched == 1

    def test_without_description(self):
        record = CountryRecord("tchad", "afrique_centrale", [EthnicRecord(name="Sara")])
        counters = MatchCounters()
        match_country(record, None, counters)
        assert record.country_description is None
        assert counters.countries_without_description == 1
        assert counters.ethnicities_unmatched == 1


# ---------------------------------------------------------------------------
# Stage: match
# ---------------------------------------------------------------------------

class TestRunMatch:
    def test_merges_artifacts(self, tmp_path: Path):
        parsed, matched = tmp_path / "parsed", tmp_path / "matched"
        benin = CountryRecord("benin", "afrique_de_l_ouest", [EthnicRecord(name="Fon")])
        togo = CountryRecord("togo", "afrique_de_l_ouest", [EthnicRecord(name="Ewe")])
        write_json(artifact_path(parsed, "afrique_de_l_ouest", "benin"), benin.to_dict())
        write_json(artifact_path(parsed, "afrique_de_l_ouest", "togo"), togo.to_dict())
        write_json(
            artifact_path(parsed, "afrique_de_l_ouest", "benin", "_description"),
            CountryDescription("benin", "afrique_de_l_ouest", description="Ancien Dahomey.",
                               ethnicities=[_desc("Fon", description="Royaume d'Abomey.")]).to_dict(),
        )
        counters = MatchCounters()

        results = run_match(parsed, matched, counters)

        assert [r.country_name for r in results] == ["benin", "togo"]
        assert (matched / "afrique_de_l_ouest_benin_matched.json").exists()
        assert (matched / "all_matched.json").exists()
        assert counters.countries == 2
        assert counters.countries_without_description == 1

        loaded = load_matched_records(matched)
        assert loaded[0].country_description.description == "Ancien Dahomey."
        assert loaded[0].ethnicities[0].description == "Royaume d'Abomey."

    def test_no_parsed_records(self, tmp_path: Path):
        (tmp_path / "parsed").mkdir()
        with pytest.raises(MissingInputError, match="parse_csv"):
            run_match(tmp_path / "parsed", tmp_path / "matched", MatchCounters())

    def test_no_matched_records(self, tmp_path: Path):
        (tmp_path / "matched").mkdir()
        with pytest.raises(MissingInputError, match="run match first"):
            load_matched_records(tmp_path / "matched")
