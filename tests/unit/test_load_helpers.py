"""Unit tests for the database-free parts of ethno_etl.load."""

from __future__ import annotations

import json
from types import SimpleNamespace

import psycopg
import psycopg.errors

from ethno_etl.dossier import AncientNameEntry, CountryDescription
from ethno_etl.load import (
    RESET_TABLES,
    STAGES,
    LoadContext,
    LoadCounters,
    Outcome,
    ResetCounters,
    _attempt,
    _upsert_or_fetch,
    ancient_names_json,
    build_load_report,
    format_db_error,
    language_code,
    limit_ancient_names,
)
from ethno_etl.normalize import KEY_VERSION


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------

class TestLanguageCode:
    def test_truncated_key(self):
        assert language_code("Haoussa") == "haoussa"
        assert language_code("Kinyarwanda-Kirundi") == "kinyarwand"

    def test_empty(self):
        assert language_code("  ") == ""


class TestLimitAncientNames:
    def test_caps_at_three(self):
        assert limit_ancient_names("A, B, C, D") == "A, B, C"

    def test_list_input(self):
        assert limit_ancient_names(["Hausawa", " Habe "]) == "Hausawa, Habe"

    def test_empty_is_none(self):
        assert limit_ancient_names("") is None
        assert limit_ancient_names(None) is None
        assert limit_ancient_names([]) is None


class TestAncientNamesJson:
    def test_full_timeline(self):
        desc = CountryDescription("niger", "afrique_de_l_ouest", ancient_names=[
            AncientNameEntry("Antiquité", ["Numidia", "Gaetulia"]),
            AncientNameEntry("", ["Bilad as-Sudan"]),
            AncientNameEntry("XIXe", ["Soudan"]),
            AncientNameEntry("1922", ["Niger"]),
        ])
        data = json.loads(ancient_names_json(desc))
        assert len(data) == 4
        assert data[0] == {"period": "Antiquité", "names": ["Numidia", "Gaetulia"]}

    def test_none_without_timeline(self):
        assert ancient_names_json(None) is None
        assert ancient_names_json(CountryDescription("mali", "afrique_de_l_ouest")) is None


class TestFormatDbError:
    def test_all_parts(self):
        exc = SimpleNamespace(
            sqlstate="23503",
            diag=SimpleNamespace(
                message_primary="insert violates foreign key",
                message_detail="Key (region_id) is not present.",
                message_hint="Load regions first.",
            ),
        )
        assert format_db_error(exc) == (
            "insert violates foreign key (code: 23503)"
            " - Key (region_id) is not present."
            " (hint: Load regions first.)"
        )

    def test_client_side_error(self):
        assert format_db_error(psycopg.Error("connection lost")) == "connection lost"


# ---------------------------------------------------------------------------
# Counters and context
# ---------------------------------------------------------------------------

class TestLoadCounters:
    def test_record_outcomes(self):
        c = LoadCounters()
        c.record("countries", Outcome.CREATED)
        c.record("countries", Outcome.UPDATED)
        c.record("countries", Outcome.FAILED, "countries 'x': boom")
        c.record("sources", Outcome.SKIPPED)
        d = c.to_dict()
        assert d["countries"] == {"created": 1, "updated": 1, "skipped": 0, "failed": 1}
        assert d["sources"]["skipped"] == 1
        assert d["db_errors"] == 1
        assert d["warnings"] == ["countries 'x': boom"]
        assert d["key_version"] == KEY_VERSION

    def test_every_stage_reported(self):
        d = LoadCounters().to_dict()
        for stage in STAGES:
            assert d[stage] == {"created": 0, "updated": 0, "skipped": 0, "failed": 0}


class TestLoadContext:
    def test_africa_population(self):
        ctx = LoadContext(region_populations={"afrique_australe": 10, "afrique_centrale": 5})
        assert ctx.africa_population == 15


class TestBuildLoadReport:
    def test_contains_stages_and_errors(self):
        c = LoadCounters(countries_in_input=2)
        c.record("regions", Outcome.CREATED)
        report = build_load_report(c, dry_run=True)
        assert "dry_run: True" in report
        assert "countries in input:  2" in report
        assert "regions" in report
        assert "DB errors:             0" in report

    def test_warnings_truncated(self):
        c = LoadCounters()
        for i in range(25):
            c.record("sources", Outcome.SKIPPED, f"w{i}")
        report = build_load_report(c)
        assert "Warnings (25):" in report
        assert "... and 5 more" in report
        assert "w24" not in report



# ---------------------------------------------------------------------------
# Upsert-or-fetch
# ---------------------------------------------------------------------------

UPSERT_SQL = "INSERT INTO countries (slug) VALUES (%s) RETURNING id, (xmax = 0)"
SELECT_SQL = "SELECT id FROM countries WHERE slug = %s"


class FakeConn:
    """psycopg-like conn: INSERT raises or returns insert_row, SELECT returns existing."""

    def __init__(self, insert_error=None, insert_row=None, existing=None):
        self.insert_error = insert_error
        self.insert_row = insert_row
        self.existing = existing
        self.statements: list[str] = []

    def execute(self, sql, params=None):
        self.statements.append(sql)
        if sql.startswith("INSERT"):
            if self.insert_error is not None:
                raise self.insert_error
            return SimpleNamespace(fetchone=lambda: self.insert_row)
        if sql.startswith("SELECT"):
            return SimpleNamespace(fetchone=lambda: self.existing)
        return SimpleNamespace(fetchone=lambda: None)


def _write_country(conn: FakeConn, counters: LoadCounters) -> str | None:
    return _attempt(
        conn, counters, "countries", "benin",
        lambda: _upsert_or_fetch(conn, UPSERT_SQL, ("benin",), SELECT_SQL, ("benin",)),
    )


class TestUpsertOrFetch:
    def test_unique_violation_fetches_existing_id(self):
        conn = FakeConn(
            insert_error=psycopg.errors.UniqueViolation("duplicate key"),
            existing=("existing-id",),
        )
        counters = LoadCounters()
        assert _write_country(conn, counters) == "existing-id"
        assert counters.stages["countries"].updated == 1
        assert counters.db_errors == 0
        assert counters.warnings == []
        assert any(s.startswith("ROLLBACK TO SAVEPOINT") for s in conn.statements)
        assert conn.statements[-1].startswith("RELEASE SAVEPOINT")

    def test_unique_violation_without_existing_row_fails(self):
        conn = FakeConn(insert_error=psycopg.errors.UniqueViolation("duplicate key"))
        counters = LoadCounters()
        assert _write_country(conn, counters) is None
        assert counters.stages["countries"].failed == 1
        assert counters.db_errors == 1
        assert "row not found after conflict" in counters.warnings[0]

    def test_inserted_row_is_created(self):
        counters = LoadCounters()
        assert _write_country(FakeConn(insert_row=("new-id", True)), counters) == "new-id"
        assert counters.stages["countries"].created == 1

    def test_conflict_update_is_updated(self):
        counters = LoadCounters()
        assert _write_country(FakeConn(insert_row=("old-id", False)), counters) == "old-id"
        assert counters.stages["countries"].updated == 1

    def test_do_nothing_conflict_is_skipped(self):
        counters = LoadCounters()
        conn = FakeConn(insert_row=None, existing=("old-id",))
        assert _write_country(conn, counters) == "old-id"
        assert counters.stages["countries"].skipped == 1
        assert counters.db_errors == 0

    def test_other_db_error_is_counted(self):
        counters = LoadCounters()
        conn = FakeConn(insert_error=psycopg.Error("value out of range"))
        assert _write_country(conn, counters) is None
        assert counters.stages["countries"].failed == 1
        assert counters.db_errors == 1
        assert "value out of range" in counters.warnings[0]


class TestReset:
    def test_children_cleared_before_parents(self):
        assert RESET_TABLES.index("ethnic_group_presence") < RESET_TABLES.index("ethnic_groups")
        assert RESET_TABLES.index("ethnic_groups") < RESET_TABLES.index("countries")
        assert RESET_TABLES.index("countries") < RESET_TABLES.index("african_regions")

    def test_reset_counters_to_dict(self):
        c = ResetCounters(deleted={"countries": 3})
        assert c.to_dict() == {"deleted": {"countries": 3}, "db_errors": 0, "warnings": []}
