"""ethno_etl.cli

Unified CLI entrypoint for the ethnographic dataset pipeline.

Modes (--mode), normally run in this order:
  index               regional CSVs → index.json + per-country groupes_ethniques.csv
  parse_csv           country CSVs → dataset/parsed/<region>_<country>.json
  parse_descriptions  country dossiers → dataset/parsed/<region>_<country>_description.json
  match               parsed records + descriptions → dataset/matched/*_matched.json
  load                matched records → PostgreSQL (idempotent upserts)
  reset               delete every loaded row (requires --yes)
  revalidate          ask the public site to drop its cached pages

Usage (load):
    ethno-etl --mode load --db-dsn "$DATABASE_URL" --matched-dir dataset/matched

Usage (dry-run load, everything rolled back):
    ethno-etl --mode load --dry-run --no-revalidate
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from ethno_etl.artifacts import DEFAULT_MATCHED_DIR, DEFAULT_PARSED_DIR, DEFAULT_SOURCE_DIR
from ethno_etl.dataset_index import DEFAULT_RESULT_DIR
from ethno_etl.dossier_rules import DossierRulesValidationError
from ethno_etl.matching import DEFAULT_MIN_SCORE
from ethno_etl.revalidate import DEFAULT_SECRET_ENV, DEFAULT_SITE_URL_ENV
from ethno_etl.shared import MissingInputError, RejectWriter, SupportsToDict, write_run_report


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _finish(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: SupportsToDict,
) -> None:
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))
    report_path = write_run_report(run_id, started_at, mode, dry_run, source_paths, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")


def _require_dsn(run_id: str, db_dsn: str | None) -> str:
    if not db_dsn:
        _fatal(run_id, "--db-dsn (or DATABASE_URL) is required for this mode")
    return db_dsn  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice([
        "index", "parse_csv", "parse_descriptions", "match",
        "load", "reset", "revalidate",
    ]),
    help="Pipeline stage to run",
)
@click.option("--db-dsn", envvar="DATABASE_URL", default=None, help="[load|reset] PostgreSQL DSN")
@click.option(
    "--source-dir",
    default=str(DEFAULT_SOURCE_DIR),
    type=click.Path(),
    show_default=True,
    help="[index|parse_csv|parse_descriptions] Source tree",
)
@click.option(
    "--result-dir",
    default=str(DEFAULT_RESULT_DIR),
    type=click.Path(),
    show_default=True,
    help="[index] Output tree for index.json and per-country CSVs",
)
@click.option("--parsed-dir", default=str(DEFAULT_PARSED_DIR), type=click.Path(), show_default=True)
@click.option("--matched-dir", default=str(DEFAULT_MATCHED_DIR), type=click.Path(), show_default=True)
@click.option(
    "--rules-file",
    default=None,
    type=click.Path(),
    help="[parse_descriptions] Dossier heuristics YAML (defaults to config/dossier_rules.yml)",
)
@click.option(
    "--min-score",
    default=DEFAULT_MIN_SCORE,
    type=click.FloatRange(0.0, 1.0),
    show_default=True,
    help="[match] Minimum similarity for a name match",
)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/ethno_rejects.csv",
    show_default=True,
    help="[parse_csv] CSV receiving rejected rows",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--dry-run", is_flag=True, default=False, help="[load|reset] Roll back instead of committing")
@click.option(
    "--revalidate/--no-revalidate",
    default=True,
    show_default=True,
    help="[load] Invalidate the site cache after an error-free load",
)
@click.option("--site-url-env", default=DEFAULT_SITE_URL_ENV, show_default=True, help="Env var holding the site URL")
@click.option(
    "--revalidate-secret-env",
    default=DEFAULT_SECRET_ENV,
    show_default=True,
    help="Env var holding the revalidate bearer secret",
)
@click.option("--yes", is_flag=True, default=False, help="[reset] Confirm deletion of all loaded data")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    source_dir: str,
    result_dir: str,
    parsed_dir: str,
    matched_dir: str,
    rules_file: str | None,
    min_score: float,
    rejects_path: str,
    run_id: str | None,
    dry_run: bool,
    revalidate: bool,
    site_url_env: str,
    revalidate_secret_env: str,
    yes: bool,
    log_level: str,
) -> None:
    """Ethnographic dataset ETL."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        if mode == "index":
            _run_index_mode(run_id, started_at, Path(source_dir), Path(result_dir))
        elif mode == "parse_csv":
            _run_parse_csv_mode(run_id, started_at, Path(source_dir), Path(parsed_dir), Path(rejects_path))
        elif mode == "parse_descriptions":
            _run_parse_descriptions_mode(run_id, started_at, Path(source_dir), Path(parsed_dir), rules_file)
        elif mode == "match":
            _run_match_mode(run_id, started_at, Path(parsed_dir), Path(matched_dir), min_score)
        elif mode == "load":
            _run_load_mode(
                run_id, started_at, db_dsn, Path(matched_dir), dry_run,
                revalidate, site_url_env, revalidate_secret_env,
            )
        elif mode == "reset":
            _run_reset_mode(run_id, started_at, db_dsn, dry_run, yes)
        elif mode == "revalidate":
            _run_revalidate_mode(run_id, started_at, site_url_env, revalidate_secret_env)
    except MissingInputError as exc:
        _fatal(run_id, str(exc))


# ---------------------------------------------------------------------------
# File stages
# ---------------------------------------------------------------------------

def _run_index_mode(run_id: str, started_at: str, source_dir: Path, result_dir: Path) -> None:
    from ethno_etl.dataset_index import IndexCounters, run_index

    counters = IndexCounters()
    index = run_index(source_dir, result_dir, counters)
    click.echo(
        f"[{run_id}] Indexed {len(index['regions'])} regions, "
        f"Africa population {index['total_population_africa']}"
    )
    _finish(run_id, started_at, "index", False,
            {"source_dir": str(source_dir), "result_dir": str(result_dir)}, counters)


def _run_parse_csv_mode(
    run_id: str, started_at: str, source_dir: Path, parsed_dir: Path, rejects_path: Path
) -> None:
    from ethno_etl.records import ParseCounters, run_parse_csv

    counters = ParseCounters()
    rejects = RejectWriter(rejects_path)
    try:
        records = run_parse_csv(source_dir, parsed_dir, counters, rejects)
    finally:
        rejects.close()
    click.echo(f"[{run_id}] Parsed {len(records)} countries → {parsed_dir}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rows rejected → {rejects_path}")
    _finish(run_id, started_at, "parse_csv", False,
            {"source_dir": str(source_dir), "parsed_dir": str(parsed_dir)}, counters)


def _run_parse_descriptions_mode(
    run_id: str, started_at: str, source_dir: Path, parsed_dir: Path, rules_file: str | None
) -> None:
    from ethno_etl.dossier import DescriptionCounters, run_parse_descriptions
    from ethno_etl.dossier_rules import load_dossier_rules

    try:
        rules = load_dossier_rules(Path(rules_file) if rules_file else None)
    except (OSError, DossierRulesValidationError) as exc:
        _fatal(run_id, f"dossier rules: {exc}")
    click.echo(f"[{run_id}] Dossier rules v{rules.version} ({rules.yaml_hash[:12]})")

    counters = DescriptionCounters()
    descriptions = run_parse_descriptions(source_dir, parsed_dir, rules, counters)
    click.echo(f"[{run_id}] Parsed {len(descriptions)} dossiers → {parsed_dir}")
    _finish(run_id, started_at, "parse_descriptions", False,
            {"source_dir": str(source_dir), "parsed_dir": str(parsed_dir),
             "rules_version": rules.version, "rules_hash": rules.yaml_hash}, counters)


def _run_match_mode(
    run_id: str, started_at: str, parsed_dir: Path, matched_dir: Path, min_score: float
) -> None:
    from ethno_etl.matching import MatchCounters, run_match

    counters = MatchCounters()
    records = run_match(parsed_dir, matched_dir, counters, min_score)
    click.echo(
        f"[{run_id}] Matched {len(records)} countries "
        f"({counters.countries_fully_matched} full, {counters.countries_partially_matched} partial)"
    )
    _finish(run_id, started_at, "match", False,
            {"parsed_dir": str(parsed_dir), "matched_dir": str(matched_dir),
             "min_score": str(min_score)}, counters)


# ---------------------------------------------------------------------------
# Database stages
# ---------------------------------------------------------------------------

def _run_load_mode(
    run_id: str,
    started_at: str,
    db_dsn: str | None,
    matched_dir: Path,
    dry_run: bool,
    revalidate: bool,
    site_url_env: str,
    secret_env: str,
) -> None:
    from ethno_etl.load import LoadCounters, build_load_report, run_load
    from ethno_etl.matching import load_matched_records

    records = load_matched_records(matched_dir)
    dsn = _require_dsn(run_id, db_dsn)
    click.echo(f"[{run_id}] Loading {len(records)} countries from {matched_dir}")

    counters = LoadCounters()
    conn = psycopg.connect(dsn, autocommit=False)
    try:
        run_load(conn, records, counters)
        click.echo(build_load_report(counters, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        else:
            # Entities that failed were already skipped via their savepoints.
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    report_path = write_run_report(
        run_id, started_at, "load", dry_run, {"matched_dir": str(matched_dir)}, counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.db_errors > 0:
        click.echo(f"[{run_id}] {counters.db_errors} DB errors — exiting non-zero", err=True)
        sys.exit(1)

    if revalidate and not dry_run:
        from ethno_etl.revalidate import revalidate_from_env

        result = revalidate_from_env(site_url_env, secret_env)
        if result.ok:
            click.echo(f"[{run_id}] Cache invalidated: {', '.join(result.invalidated_tags)}")
        else:
            click.echo(f"[{run_id}] WARNING: cache not invalidated ({result.error})", err=True)


def _run_reset_mode(
    run_id: str, started_at: str, db_dsn: str | None, dry_run: bool, yes: bool
) -> None:
    from ethno_etl.load import RESET_TABLES, ResetCounters, reset_database

    if not yes:
        _fatal(run_id, f"reset deletes every row of {', '.join(RESET_TABLES)}; pass --yes to confirm")
    dsn = _require_dsn(run_id, db_dsn)

    counters = ResetCounters()
    conn = psycopg.connect(dsn, autocommit=False)
    try:
        reset_database(conn, counters)
        for table, count in counters.deleted.items():
            click.echo(f"  {table:<26}{count:>8} rows")
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    _finish(run_id, started_at, "reset", dry_run, {}, counters)
    if counters.db_errors > 0:
        click.echo(f"[{run_id}] {counters.db_errors} tables could not be cleared", err=True)
        sys.exit(1)


def _run_revalidate_mode(run_id: str, started_at: str, site_url_env: str, secret_env: str) -> None:
    from ethno_etl.revalidate import revalidate_cache

    secret = os.environ.get(secret_env, "")
    if not secret:
        _fatal(run_id, f"env var {secret_env} must be set")

    result = revalidate_cache(os.environ.get(site_url_env), secret)
    _finish(run_id, started_at, "revalidate", False, {"site_url_env": site_url_env}, result)
    if not result.ok:
        click.echo(f"[{run_id}] Cache invalidation failed: {result.error}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
