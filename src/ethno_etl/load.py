"""ethno_etl.load

Idempotent load of matched country records into PostgreSQL.

Stage order (later stages look up ids produced by earlier ones):
  regions → countries → languages → sources → ethnic groups
  (parents, then subgroups, then standalone) → presences → links

Every natural-key write is an INSERT ... ON CONFLICT upsert run inside its
own savepoint.  A UniqueViolation falls back to selecting the existing id;
any other psycopg.Error is logged with SQLSTATE / detail / hint, counted as
a failed outcome and the entity is skipped.  The caller owns the outer
transaction: commit after a real run, rollback after a dry run.
"""

from __future__ import annotations

import itertools
import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import psycopg
import psycopg.errors

from ethno_etl.aggregate import estimate_country_population, percentage_of, region_populations
from ethno_etl.artifacts import region_display_name
from ethno_etl.dossier import CountryDescription
from ethno_etl.normalize import KEY_VERSION, normalize_key, split_list, trim
from ethno_etl.records import CountryRecord, EthnicRecord

log = logging.getLogger(__name__)

ETHNIC_ANCIENT_NAME_LIMIT = 3
LANGUAGE_CODE_LENGTH = 10

STAGES = (
    "regions",
    "countries",
    "languages",
    "sources",
    "ethnic_groups",
    "subgroups",
    "presences",
    "language_links",
    "source_links",
)

# Reverse dependency order.
RESET_TABLES = (
    "ethnic_group_sources",
    "ethnic_group_languages",
    "ethnic_group_presence",
    "ethnic_groups",
    "countries",
    "african_regions",
    "languages",
    "sources",
)


# ---------------------------------------------------------------------------
# Outcomes and counters
# ---------------------------------------------------------------------------

class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StageCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: Outcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class LoadCounters:
    countries_in_input: int = 0
    stages: dict[str, StageCounts] = field(
        default_factory=lambda: {name: StageCounts() for name in STAGES}
    )
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def record(self, stage: str, outcome: Outcome, message: str | None = None) -> None:
        self.stages[stage].add(outcome)
        if outcome is Outcome.FAILED:
            self.db_errors += 1
        if message:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "countries_in_input": self.countries_in_input,
            "key_version": KEY_VERSION,
            **{name: counts.to_dict() for name, counts in self.stages.items()},
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


@dataclass
class LoadContext:
    """Natural key → database id maps built up stage by stage during one run."""

    region_ids: dict[str, str] = field(default_factory=dict)
    country_ids: dict[str, str] = field(default_factory=dict)
    group_ids: dict[str, str] = field(default_factory=dict)
    language_ids: dict[str, str] = field(default_factory=dict)
    source_ids: dict[str, str] = field(default_factory=dict)
    region_populations: dict[str, int] = field(default_factory=dict)

    @property
    def africa_population(self) -> int:
        return sum(self.region_populations.values())


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------

def language_code(name: str) -> str:
    return normalize_key(name)[:LANGUAGE_CODE_LENGTH]


def limit_ancient_names(value: str | list[str] | None, limit: int = ETHNIC_ANCIENT_NAME_LIMIT) -> str | None:
    """At most `limit` names joined by ", "; None when there are none."""
    names = value if isinstance(value, list) else split_list(value)
    names = [n.strip() for n in names if n and n.strip()]
    return ", ".join(names[:limit]) or None


def ancient_names_json(description: CountryDescription | None) -> str | None:
    """Full country timeline as JSON text for the jsonb column."""
    if description is None or not description.ancient_names:
        return None
    return json.dumps([e.to_dict() for e in description.ancient_names], ensure_ascii=False)


def format_db_error(exc: psycopg.Error) -> str:
    """Primary message plus SQLSTATE, detail and hint when the server sent them."""
    diag = exc.diag
    message = diag.message_primary or str(exc).strip() or exc.__class__.__name__
    if exc.sqlstate:
        message += f" (code: {exc.sqlstate})"
    if diag.message_detail:
        message += f" - {diag.message_detail}"
    if diag.message_hint:
        message += f" (hint: {diag.message_hint})"
    return message


# ---------------------------------------------------------------------------
# Savepoint plumbing
# ---------------------------------------------------------------------------

_savepoint_seq = itertools.count(1)


@contextmanager
def _savepoint(conn: psycopg.Connection) -> Iterator[None]:
    """Explicit SAVEPOINT so the outer transaction stays with the caller."""
    sp = f"ethno_sp_{next(_savepoint_seq)}"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        yield
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {sp}")


def _upsert_or_fetch(
    conn: psycopg.Connection,
    upsert_sql: str,
    params: tuple[Any, ...],
    select_sql: str,
    select_params: tuple[Any, ...],
) -> tuple[str | None, Outcome]:
    """Run an upsert returning (id, inserted); on UniqueViolation select the existing id."""
    try:
        with _savepoint(conn):
            row = conn.execute(upsert_sql, params).fetchone()
    except psycopg.errors.UniqueViolation:
        log.debug("Unique conflict on %r; fetching existing row", select_params)
        existing = conn.execute(select_sql, select_params).fetchone()
        if existing is None:
            return None, Outcome.FAILED
        return str(existing[0]), Outcome.UPDATED
    if row is None:
        existing = conn.execute(select_sql, select_params).fetchone()
        if existing is None:
            return None, Outcome.FAILED
        return str(existing[0]), Outcome.SKIPPED
    return str(row[0]), Outcome.CREATED if row[1] else Outcome.UPDATED


def _attempt(
    conn: psycopg.Connection,
    counters: LoadCounters,
    stage: str,
    label: str,
    write: Callable[[], tuple[str | None, Outcome]],
) -> str | None:
    """Run one entity write; count the outcome and turn DB errors into FAILED."""
    try:
        with _savepoint(conn):
            entity_id, outcome = write()
    except psycopg.Error as exc:
        message = f"{stage} {label!r}: {format_db_error(exc)}"
        log.error(message)
        counters.record(stage, Outcome.FAILED, message)
        return None
    if outcome is Outcome.FAILED:
        counters.record(stage, outcome, f"{stage} {label!r}: row not found after conflict")
    else:
        counters.record(stage, outcome)
    return entity_id


def _upsert_entity(
    conn: psycopg.Connection,
    counters: LoadCounters,
    stage: str,
    label: str,
    upsert_sql: str,
    params: tuple[Any, ...],
    select_sql: str,
    select_params: tuple[Any, ...],
) -> str | None:
    return _attempt(
        conn, counters, stage, label,
        lambda: _upsert_or_fetch(conn, upsert_sql, params, select_sql, select_params),
    )


# ---------------------------------------------------------------------------
# Stage 1: regions
# ---------------------------------------------------------------------------

def load_regions(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    ctx.region_populations = region_populations(records)
    for code in dict.fromkeys(r.region for r in records):
        total = ctx.region_populations.get(code, 0)
        region_id = _upsert_entity(
            conn, counters, "regions", code,
            """
            INSERT INTO african_regions (code, name_fr, total_population)
            VALUES (%s, %s, %s)
            ON CONFLICT (code) DO UPDATE SET
              name_fr = EXCLUDED.name_fr,
              total_population = EXCLUDED.total_population,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            (code, region_display_name(code), total),
            "SELECT id FROM african_regions WHERE code = %s",
            (code,),
        )
        if region_id:
            ctx.region_ids[code] = region_id
            log.info("Region %s (%s) ready, population %d", code, region_display_name(code), total)


# ---------------------------------------------------------------------------
# Stage 2: countries
# ---------------------------------------------------------------------------

def load_countries(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    africa_total = ctx.africa_population
    for record in records:
        region_id = ctx.region_ids.get(record.region)
        if region_id is None:
            counters.record(
                "countries", Outcome.SKIPPED,
                f"countries {record.country_name!r}: region {record.region!r} not loaded",
            )
            continue

        slug = normalize_key(record.country_name)
        population = estimate_country_population(record.ethnicities)
        desc = record.country_description
        params = (
            slug,
            record.country_name,
            region_id,
            population,
            percentage_of(population, ctx.region_populations.get(record.region, 0)),
            percentage_of(population, africa_total),
            (desc.description if desc else "") or None,
            ancient_names_json(desc),
            trim(desc.ethnic_groups_summary) if desc else None,
            trim(desc.notes) if desc else None,
        )
        country_id = _upsert_entity(
            conn, counters, "countries", record.country_name,
            """
            INSERT INTO countries
              (slug, name_fr, region_id, population_2025, percentage_in_region,
               percentage_in_africa, description, ancient_names,
               ethnic_groups_summary, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (slug) DO UPDATE SET
              name_fr = EXCLUDED.name_fr,
              region_id = EXCLUDED.region_id,
              population_2025 = EXCLUDED.population_2025,
              percentage_in_region = EXCLUDED.percentage_in_region,
              percentage_in_africa = EXCLUDED.percentage_in_africa,
              description = EXCLUDED.description,
              ancient_names = EXCLUDED.ancient_names,
              ethnic_groups_summary = EXCLUDED.ethnic_groups_summary,
              notes = EXCLUDED.notes,
              updated_at = now()
            RETURNING id, (xmax = 0) AS inserted
            """,
            params,
            "SELECT id FROM countries WHERE slug = %s",
            (slug,),
        )
        if country_id:
            ctx.country_ids[slug] = country_id


# ---------------------------------------------------------------------------
# Stages 3-4: languages and sources
# ---------------------------------------------------------------------------

def load_languages(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    names = dict.fromkeys(
        lang for r in records for e in r.ethnicities for lang in e.languages if lang.strip()
    )
    for name in names:
        code = language_code(name)
        if not code:
            counters.record("languages", Outcome.SKIPPED, f"languages {name!r}: empty code")
            continue
        language_id = _upsert_entity(
            conn, counters, "languages", name,
            """
            INSERT INTO languages (code, name_fr)
            VALUES (%s, %s)
            ON CONFLICT (code) DO UPDATE SET name_fr = languages.name_fr
            RETURNING id, (xmax = 0) AS inserted
            """,
            (code, name),
            "SELECT id FROM languages WHERE code = %s",
            (code,),
        )
        if language_id:
            ctx.language_ids[name] = language_id


def load_sources(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    titles = dict.fromkeys(
        s for r in records for e in r.ethnicities for s in e.sources if s.strip()
    )
    for title in titles:
        source_id = _upsert_entity(
            conn, counters, "sources", title,
            """
            INSERT INTO sources (title)
            VALUES (%s)
            ON CONFLICT (title) DO NOTHING
            RETURNING id, true AS inserted
            """,
            (title,),
            "SELECT id FROM sources WHERE title = %s",
            (title,),
        )
        if source_id:
            ctx.source_ids[title] = source_id


# ---------------------------------------------------------------------------
# Stage 5: ethnic groups
# ---------------------------------------------------------------------------

_GROUP_UPSERT = """
    INSERT INTO ethnic_groups
      (slug, name_fr, parent_id, total_population, percentage_in_africa,
       description, ancient_name, society_type, religion, linguistic_family,
       historical_status, regional_presence)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (slug) DO UPDATE SET
      name_fr = EXCLUDED.name_fr,
      parent_id = EXCLUDED.parent_id,
      total_population = EXCLUDED.total_population,
      percentage_in_africa = EXCLUDED.percentage_in_africa,
      description = EXCLUDED.description,
      ancient_name = EXCLUDED.ancient_name,
      society_type = EXCLUDED.society_type,
      religion = EXCLUDED.religion,
      linguistic_family = EXCLUDED.linguistic_family,
      historical_status = EXCLUDED.historical_status,
      regional_presence = EXCLUDED.regional_presence,
      updated_at = now()
    RETURNING id, (xmax = 0) AS inserted
"""


def _group_params(record: EthnicRecord, slug: str, parent_id: str | None) -> tuple[Any, ...]:
    return (
        slug,
        record.name,
        parent_id,
        record.population,
        record.percentage_in_africa,
        record.description or None,
        limit_ancient_names(record.ancient_name),
        record.society_type or None,
        record.religion or None,
        record.linguistic_family or None,
        record.historical_status or None,
        ", ".join(record.regional_presence) or None,
    )


def _load_group(
    conn: psycopg.Connection,
    record: EthnicRecord,
    parent_id: str | None,
    stage: str,
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    slug = normalize_key(record.name)
    if not slug:
        counters.record(stage, Outcome.SKIPPED, f"{stage} {record.name!r}: empty slug")
        return
    if slug in ctx.group_ids:
        # First country seen wins; the presence rows still get written.
        counters.record(stage, Outcome.SKIPPED)
        return
    group_id = _upsert_entity(
        conn, counters, stage, record.name,
        _GROUP_UPSERT,
        _group_params(record, slug, parent_id),
        "SELECT id FROM ethnic_groups WHERE slug = %s",
        (slug,),
    )
    if group_id:
        ctx.group_ids[slug] = group_id


def load_ethnic_groups(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    """Parents first, then their subgroups, then standalone groups."""
    for record in records:
        for eth in record.ethnicities:
            if eth.has_subgroups:
                _load_group(conn, eth, None, "ethnic_groups", ctx, counters)

    for record in records:
        for eth in record.ethnicities:
            if not eth.has_subgroups:
                continue
            parent_id = ctx.group_ids.get(normalize_key(eth.name))
            if parent_id is None:
                counters.record(
                    "subgroups", Outcome.SKIPPED,
                    f"subgroups of {eth.name!r}: parent not loaded",
                )
                continue
            for sub in eth.subgroups:
                _load_group(conn, sub, parent_id, "subgroups", ctx, counters)

    for record in records:
        for eth in record.ethnicities:
            if not eth.has_subgroups:
                _load_group(conn, eth, None, "ethnic_groups", ctx, counters)


# ---------------------------------------------------------------------------
# Stages 6-7: presences and links
# ---------------------------------------------------------------------------

def _load_presence(
    conn: psycopg.Connection,
    record: EthnicRecord,
    region_tag: str,
    country_id: str,
    region_total: int,
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    group_id = ctx.group_ids.get(normalize_key(record.name))
    if group_id is None:
        counters.record("presences", Outcome.SKIPPED)
        return
    params = (
        group_id,
        country_id,
        record.population,
        record.percentage_in_country,
        percentage_of(record.population, region_total),
        record.percentage_in_africa,
        region_tag or None,
    )
    _upsert_entity(
        conn, counters, "presences", record.name,
        """
        INSERT INTO ethnic_group_presence
          (ethnic_group_id, country_id, population, percentage_in_country,
           percentage_in_region, percentage_in_africa, region)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (ethnic_group_id, country_id) DO UPDATE SET
          population = EXCLUDED.population,
          percentage_in_country = EXCLUDED.percentage_in_country,
          percentage_in_region = EXCLUDED.percentage_in_region,
          percentage_in_africa = EXCLUDED.percentage_in_africa,
          region = EXCLUDED.region
        RETURNING id, (xmax = 0) AS inserted
        """,
        params,
        "SELECT id FROM ethnic_group_presence WHERE ethnic_group_id = %s AND country_id = %s",
        (group_id, country_id),
    )


def load_presences(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    for record in records:
        country_id = ctx.country_ids.get(normalize_key(record.country_name))
        if country_id is None:
            counters.record(
                "presences", Outcome.SKIPPED,
                f"presences for {record.country_name!r}: country not loaded",
            )
            continue
        region_total = ctx.region_populations.get(record.region, 0)
        for eth in record.ethnicities:
            _load_presence(conn, eth, eth.region, country_id, region_total, ctx, counters)
            for sub in eth.subgroups:
                _load_presence(conn, sub, eth.region, country_id, region_total, ctx, counters)


def _link(
    conn: psycopg.Connection,
    counters: LoadCounters,
    stage: str,
    label: str,
    sql: str,
    params: tuple[Any, ...],
) -> None:
    def write() -> tuple[str | None, Outcome]:
        row = conn.execute(sql, params).fetchone()
        if row is None:
            return None, Outcome.SKIPPED
        return None, Outcome.CREATED if row[0] else Outcome.UPDATED

    _attempt(conn, counters, stage, label, write)


def load_links(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    ctx: LoadContext,
    counters: LoadCounters,
) -> None:
    """group↔language (first language primary) and group↔source links."""
    for record in records:
        for eth in record.ethnicities:
            group_id = ctx.group_ids.get(normalize_key(eth.name))
            if group_id is None:
                continue
            for i, lang in enumerate(eth.languages):
                language_id = ctx.language_ids.get(lang)
                if language_id is None:
                    continue
                _link(
                    conn, counters, "language_links", f"{eth.name}/{lang}",
                    """
                    INSERT INTO ethnic_group_languages (ethnic_group_id, language_id, is_primary)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (ethnic_group_id, language_id) DO UPDATE SET
                      is_primary = EXCLUDED.is_primary
                    RETURNING (xmax = 0) AS inserted
                    """,
                    (group_id, language_id, i == 0),
                )
            for title in eth.sources:
                source_id = ctx.source_ids.get(title)
                if source_id is None:
                    continue
                _link(
                    conn, counters, "source_links", f"{eth.name}/{title}",
                    """
                    INSERT INTO ethnic_group_sources (ethnic_group_id, source_id)
                    VALUES (%s, %s)
                    ON CONFLICT (ethnic_group_id, source_id) DO NOTHING
                    RETURNING true AS inserted
                    """,
                    (group_id, source_id),
                )


# ---------------------------------------------------------------------------
# Top-level runner
# ---------------------------------------------------------------------------

def run_load(
    conn: psycopg.Connection,
    records: list[CountryRecord],
    counters: LoadCounters,
    ctx: LoadContext | None = None,
) -> LoadContext:
    """Load matched records in dependency order.

    Args:
        conn: Open psycopg connection (caller manages the transaction).
        records: Matched country records.
        counters: Filled in place; db_errors > 0 means the run failed.
        ctx: Optional pre-built context; a fresh one is used otherwise.

    Returns:
        The LoadContext holding every id resolved during the run.
    """
    ctx = ctx if ctx is not None else LoadContext()
    counters.countries_in_input = len(records)
    load_regions(conn, records, ctx, counters)
    load_countries(conn, records, ctx, counters)
    load_languages(conn, records, ctx, counters)
    load_sources(conn, records, ctx, counters)
    load_ethnic_groups(conn, records, ctx, counters)
    load_presences(conn, records, ctx, counters)
    load_links(conn, records, ctx, counters)
    return ctx


def build_load_report(counters: LoadCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Load Report",
        f"  dry_run: {dry_run}",
        f"  key_version: {KEY_VERSION}",
        "=" * 60,
        f"  countries in input:  {counters.countries_in_input}",
        f"  {'stage':<16}{'created':>9}{'updated':>9}{'skipped':>9}{'failed':>8}",
    ]
    for name, c in counters.stages.items():
        lines.append(f"  {name:<16}{c.created:>9}{c.updated:>9}{c.skipped:>9}{c.failed:>8}")
    lines.append(f"DB errors:             {counters.db_errors}")
    if counters.warnings:
        lines.append(f"\nWarnings ({len(counters.warnings)}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if len(counters.warnings) > 20:
            lines.append(f"  ... and {len(counters.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------

@dataclass
class ResetCounters:
    deleted: dict[str, int] = field(default_factory=dict)
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": dict(self.deleted),
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


def reset_database(conn: psycopg.Connection, counters: ResetCounters) -> ResetCounters:
    """Delete every row, table by table in reverse dependency order."""
    for table in RESET_TABLES:
        try:
            with _savepoint(conn):
                cur = conn.execute(f"DELETE FROM {table}")
        except psycopg.Error as exc:
            message = f"{table}: {format_db_error(exc)}"
            log.error("Could not clear %s", message)
            counters.db_errors += 1
            counters.warnings.append(message)
            continue
        counters.deleted[table] = cur.rowcount
        log.info("Cleared %s (%d rows)", table, cur.rowcount)
    return counters
