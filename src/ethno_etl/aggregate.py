"""ethno_etl.aggregate

Hierarchical population arithmetic.

  - roll_up:                     parent totals = sums over its subgroups
  - split_evenly:                provisional equal split of a row total
  - estimate_country_population: country size inferred from the best-known share
  - region_populations:          per-region sums of estimated country sizes
  - percentage_of:               zero-guarded share of a total
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ethno_etl.records import CountryRecord, EthnicRecord


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Math.round semantics)."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Parent / subgroup totals
# ---------------------------------------------------------------------------

def roll_up(record: EthnicRecord) -> EthnicRecord:
    """Recompute a parent's population and percentages from its subgroups.

    Records without subgroups are returned untouched.  Mutates and returns
    record so callers can chain it.
    """
    if not record.has_subgroups or not record.subgroups:
        return record
    record.population = sum(s.population for s in record.subgroups)
    record.percentage_in_country = sum(s.percentage_in_country for s in record.subgroups)
    record.percentage_in_africa = sum(s.percentage_in_africa for s in record.subgroups)
    return record


def split_evenly(
    population: int,
    percentage_in_country: float,
    percentage_in_africa: float,
    count: int,
) -> tuple[int, float, float]:
    """Return (population, pct_country, pct_africa) for one of count equal shares.

    Percentages scale with the share of the population; a zero population
    gives zero percentages.
    """
    if count <= 0:
        return 0, 0.0, 0.0
    share = round_half_up(population / count)
    if population <= 0:
        return share, 0.0, 0.0
    return (
        share,
        share * percentage_in_country / population,
        share * percentage_in_africa / population,
    )


# ---------------------------------------------------------------------------
# Country and region totals
# ---------------------------------------------------------------------------

def estimate_country_population(records: Iterable[EthnicRecord]) -> int:
    """Largest population / percentage_in_country * 100 over records with a share."""
    best = 0
    for r in records:
        if r.percentage_in_country > 0:
            best = max(best, round_half_up(r.population / r.percentage_in_country * 100))
    return best


def region_populations(countries: Iterable[CountryRecord]) -> dict[str, int]:
    """Sum estimated country populations per region code."""
    totals: dict[str, int] = {}
    for c in countries:
        totals[c.region] = totals.get(c.region, 0) + estimate_country_population(c.ethnicities)
    return totals


def percentage_of(value: float, total: float) -> float:
    """value / total * 100, treating a zero total as 1."""
    return value / (total or 1) * 100
