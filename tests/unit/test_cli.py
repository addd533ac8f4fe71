"""CLI tests for the file stages and argument guards (no database)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from ethno_etl.cli import main
from ethno_etl.csv_formats import LEGACY_HEADERS
from ethno_etl.revalidate import RevalidateResult

NIGER_DOSSIER = "# PAYS : NIGER\n3. RÉSUMÉ HISTORIQUE\nCarrefour saharien.\n# ETHNIES\n### Haoussa\n**Description**: Commerçants.\n"


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Run every invocation from tmp_path so run reports stay there."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REVALIDATE_SECRET", raising=False)
    source = tmp_path / "source" / "afrique_de_l_ouest" / "niger"
    source.mkdir(parents=True)
    (source / "groupes_ethniques.csv").write_text(
        ",".join(LEGACY_HEADERS) + "\nHaoussa,53,14000000,1.0\nZarma/Songhaï,21,5500000,0.4\n",
        encoding="utf-8",
    )
    (source / "niger.txt").write_text(NIGER_DOSSIER, encoding="utf-8")
    return tmp_path


def _invoke(*args: str):
    return CliRunner().invoke(main, list(args))


# ---------------------------------------------------------------------------
# File stages
# ---------------------------------------------------------------------------

class TestFileStages:
    def test_parse_csv(self, workdir: Path):
        result = _invoke(
            "--mode", "parse_csv",
            "--source-dir", "source",
            "--parsed-dir", "parsed",
            "--run-id", "t-parse",
        )
        assert result.exit_code == 0, result.output
        assert (workdir / "parsed" / "afrique_de_l_ouest_niger.json").exists()
        report = json.loads((workdir / "artifacts" / "reports" / "t-parse.json").read_text())
        assert report["mode"] == "parse_csv"
        assert report["counters"]["countries_parsed"] == 1
        assert report["counters"]["subgroups"] == 1

    def test_pipeline_through_match(self, workdir: Path):
        for mode in ("parse_csv", "parse_descriptions", "match"):
            result = _invoke("--mode", mode, "--source-dir", "source",
                             "--parsed-dir", "parsed", "--matched-dir", "matched")
            assert result.exit_code == 0, result.output
        matched = json.loads(
            (workdir / "matched" / "afrique_de_l_ouest_niger_matched.json").read_text(encoding="utf-8")
        )
        haoussa = matched["ethnicities"][0]
        assert haoussa["matched_name"] == "Haoussa"
        assert haoussa["description"] == "Commerçants."
        assert matched["country_description"]["description"] == "Carrefour saharien."

    def test_index(self, workdir: Path):
        exports = workdir / "exports"
        exports.mkdir()
        (exports / "afrique_australe_ethnies_2025.csv").write_text(
            "Country,population 2025 du pays," + ",".join(LEGACY_HEADERS) + "\n"
            "Botswana,2600000,Tswana,79,2054000,0.14\n",
            encoding="utf-8",
        )
        result = _invoke("--mode", "index", "--source-dir", "exports", "--result-dir", "result")
        assert result.exit_code == 0, result.output
        index = json.loads((workdir / "result" / "index.json").read_text(encoding="utf-8"))
        assert index["total_population_africa"] == 2600000
        assert (workdir / "result" / "afrique_australe" / "Botswana" / "groupes_ethniques.csv").exists()


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

class TestGuards:
    def test_missing_source_dir(self, workdir: Path):
        result = _invoke("--mode", "parse_csv", "--source-dir", "nope")
        assert result.exit_code == 1
        assert "FATAL" in result.output
        assert "Source directory not found" in result.output

    def test_match_without_parsed_records(self, workdir: Path):
        (workdir / "parsed").mkdir()
        result = _invoke("--mode", "match", "--parsed-dir", "parsed")
        assert result.exit_code == 1
        assert "run parse_csv first" in result.output

    def test_invalid_rules_file(self, workdir: Path):
        (workdir / "rules.yml").write_text("version: 1\n", encoding="utf-8")
        result = _invoke("--mode", "parse_descriptions", "--source-dir", "source",
                         "--rules-file", "rules.yml")
        assert result.exit_code == 1
        assert "dossier rules" in result.output

    def test_load_without_matched_dir(self, workdir: Path):
        result = _invoke("--mode", "load", "--matched-dir", "nope", "--db-dsn", "dbname=unused")
        assert result.exit_code == 1
        assert "Matched directory not found" in result.output

    def test_load_without_dsn(self, workdir: Path):
        for mode in ("parse_csv", "parse_descriptions", "match"):
            _invoke("--mode", mode, "--source-dir", "source",
                    "--parsed-dir", "parsed", "--matched-dir", "matched")
        result = _invoke("--mode", "load", "--matched-dir", "matched")
        assert result.exit_code == 1
        assert "--db-dsn" in result.output

    def test_reset_requires_yes(self, workdir: Path):
        result = _invoke("--mode", "reset", "--db-dsn", "dbname=unused")
        assert result.exit_code == 1
        assert "--yes" in result.output

    def test_unknown_mode(self, workdir: Path):
        result = _invoke("--mode", "export")
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# revalidate mode
# ---------------------------------------------------------------------------

class TestRevalidateMode:
    def test_secret_required(self, workdir: Path):
        result = _invoke("--mode", "revalidate")
        assert result.exit_code == 1
        assert "REVALIDATE_SECRET" in result.output

    def test_success(self, workdir: Path, monkeypatch):
        calls = []

        def fake(site_url, secret, tags=None, session=None, timeout=30):
            calls.append((site_url, secret))
            return RevalidateResult(attempted=True, ok=True, status_code=200, invalidated_tags=["regions"])

        monkeypatch.setenv("REVALIDATE_SECRET", "s3cret")
        monkeypatch.setenv("SITE_URL", "https://site.example")
        monkeypatch.setattr("ethno_etl.revalidate.revalidate_cache", fake)
        result = _invoke("--mode", "revalidate", "--run-id", "t-reval")
        assert result.exit_code == 0, result.output
        assert calls == [("https://site.example", "s3cret")]
        report = json.loads((workdir / "artifacts" / "reports" / "t-reval.json").read_text())
        assert report["counters"]["ok"] is True

    def test_failure_exits_non_zero(self, workdir: Path, monkeypatch):
        monkeypatch.setenv("REVALIDATE_SECRET", "s3cret")
        monkeypatch.setattr(
            "ethno_etl.revalidate.revalidate_cache",
            lambda *a, **kw: RevalidateResult(attempted=True, status_code=500, error="HTTP 500: boom"),
        )
        result = _invoke("--mode", "revalidate")
        assert result.exit_code == 1
        assert "HTTP 500" in result.output
