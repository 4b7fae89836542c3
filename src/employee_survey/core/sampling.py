"""
Stratified proportional sampling for pulse surveys.

1. Detect candidate dimensions with enough data (coverage threshold)
2. Keep at most SAMPLING_MAX_DIMENSIONS, fewest distinct values first
3. Group identities into strata (unique combination of dimension values)
4. Proportional allocation with the largest remainder method
5. Uniform random selection inside each stratum

The coverage threshold and the dimension cap are policy constants in
employee_survey.config; they are heuristics, not derived values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import logging
import random

import pandas as pd

from employee_survey.config import (
    SAMPLING_DIMENSIONS,
    SAMPLING_MAX_DIMENSIONS,
    SAMPLING_MIN_COVERAGE,
)
from employee_survey.core.rounding import round_half_up_int

logger = logging.getLogger(__name__)

# Stratum key component for identities with no value on a dimension
ABSENT_VALUE = "_null_"


class SamplingError(ValueError):
    """Raised for invalid sampling requests."""


@dataclass
class Stratum:
    key: Tuple[str, ...]
    positions: List[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.positions)


@dataclass
class StratumAllocation:
    key: Tuple[str, ...]
    size: int
    ideal: float
    remainder: float
    allocated: int


@dataclass
class SamplePlan:
    population_size: int
    target_size: int
    dimensions: List[str]
    allocations: List[StratumAllocation]

    @property
    def allocated_total(self) -> int:
        return sum(min(a.allocated, a.size) for a in self.allocations)


def target_sample_size(population_size: int, percentage: float) -> int:
    """round(n * p / 100), at least 1 for a non-empty population."""
    if percentage is None or percentage <= 0:
        raise SamplingError(f"Sample percentage must be greater than 0, got {percentage!r}")
    if population_size <= 0:
        return 0
    return max(1, round_half_up_int(population_size * percentage / 100))


def _is_absent(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _stratum_value(value: Any) -> str:
    return ABSENT_VALUE if _is_absent(value) else str(value)


def select_dimensions(
    population: pd.DataFrame,
    candidates: Sequence[str] = SAMPLING_DIMENSIONS,
    *,
    min_coverage: float = SAMPLING_MIN_COVERAGE,
    max_dimensions: int = SAMPLING_MAX_DIMENSIONS,
) -> List[str]:
    """
    Dimensions used for stratification.

    A candidate is eligible when at least min_coverage of the population has
    a value for it. Eligible candidates are ordered by number of distinct
    values (ascending, stable on candidate order) and capped.
    """
    n = len(population)
    if n == 0:
        return []

    min_count = n * min_coverage
    eligible: List[Tuple[str, int]] = []
    for col in candidates:
        if col not in population.columns:
            continue
        present = population[col][~population[col].apply(_is_absent).astype(bool)]
        if len(present) >= min_count and len(present) > 0:
            eligible.append((col, len({str(v) for v in present})))

    eligible.sort(key=lambda item: item[1])
    return [col for col, _ in eligible[:max_dimensions]]


def build_strata(population: pd.DataFrame, dimensions: Sequence[str]) -> List[Stratum]:
    """Group row positions by their composite key, in order of first appearance."""
    strata: Dict[Tuple[str, ...], Stratum] = {}
    if not dimensions:
        return [Stratum(key=(), positions=list(range(len(population))))] if len(population) else []

    key_frame = population[list(dimensions)]
    for pos, row in enumerate(key_frame.itertuples(index=False, name=None)):
        key = tuple(_stratum_value(v) for v in row)
        stratum = strata.get(key)
        if stratum is None:
            stratum = strata[key] = Stratum(key=key)
        stratum.positions.append(pos)
    return list(strata.values())


def allocate(sizes: Sequence[int], population_size: int, target_size: int) -> List[int]:
    """
    Largest remainder (Hare-Niemeyer) apportionment of target_size.

    Base allocation is floor(size / N * target); the shortfall goes one unit
    at a time to the largest remainders, ties in stratum order. Integer
    arithmetic keeps remainders exact.
    """
    if population_size <= 0 or target_size <= 0:
        return [0 for _ in sizes]

    floors: List[int] = []
    remainders: List[int] = []
    for size in sizes:
        quotient, remainder = divmod(size * target_size, population_size)
        floors.append(quotient)
        remainders.append(remainder)

    allocated = list(floors)
    shortfall = target_size - sum(floors)
    by_remainder = sorted(range(len(sizes)), key=lambda i: -remainders[i])
    for i in by_remainder[:max(0, shortfall)]:
        allocated[i] += 1
    return allocated


def plan_sample(population: pd.DataFrame, target_size: int) -> Tuple[SamplePlan, List[Stratum]]:
    n = len(population)
    dimensions = select_dimensions(population)
    strata = build_strata(population, dimensions)

    if dimensions:
        counts = allocate([s.size for s in strata], n, target_size)
    else:
        counts = [target_size for _ in strata]

    allocations = [
        StratumAllocation(
            key=s.key,
            size=s.size,
            ideal=s.size * target_size / n if n else 0.0,
            remainder=(s.size * target_size % n) / n if n else 0.0,
            allocated=count,
        )
        for s, count in zip(strata, counts)
    ]
    plan = SamplePlan(
        population_size=n,
        target_size=target_size,
        dimensions=list(dimensions),
        allocations=allocations,
    )
    return plan, strata


def random_subset(items: Sequence[int], count: int, rng: random.Random) -> List[int]:
    """
    Uniform selection of 'count' items without replacement.

    Partial Fisher-Yates: only the selected tail is shuffled.
    """
    pool = list(items)
    n = len(pool)
    count = max(0, min(count, n))
    for i in range(n - 1, n - 1 - count, -1):
        j = rng.randint(0, i)
        pool[i], pool[j] = pool[j], pool[i]
    return pool[n - count:]


def sample_population(
    population: pd.DataFrame,
    percentage: float,
    *,
    rng: Optional[random.Random] = None,
) -> pd.DataFrame:
    """
    Draw a stratified sample of 'percentage' percent of the population.

    Returns a subset of the population rows (original index labels kept).
    The result can be slightly smaller than the target when a stratum cannot
    supply its allocation, never larger.
    """
    n = len(population)
    if n == 0:
        return population.copy()

    target = target_sample_size(n, percentage)
    if target >= n:
        return population.copy()

    # Fresh generator per call: no shared state between sampling runs
    rng = rng or random.Random()

    plan, strata = plan_sample(population, target)
    if not plan.dimensions:
        logger.info("No stratification dimension qualifies; simple random sample of %d/%d", target, n)
    else:
        logger.info(
            "Stratified sample of %d/%d over %s (%d strata)",
            target, n, plan.dimensions, len(strata),
        )

    selected: List[int] = []
    for stratum, alloc in zip(strata, plan.allocations):
        if alloc.allocated <= 0:
            continue
        count = min(alloc.allocated, stratum.size)
        selected.extend(random_subset(stratum.positions, count, rng))

    return population.iloc[selected].copy()
