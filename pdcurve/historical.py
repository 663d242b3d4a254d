"""
pdcurve.historical — Stage 3: historical PD by age bucket.

Pools the per-bucket PD figures (``avg_pd``) of every migration matrix of
one product category/segment, averages them per age bucket and fills gaps
by linear interpolation up to the highest age actually observed.

The interpolated curve is checked for monotonicity but left as observed;
monotonicity is imposed only when extrapolating.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import HistoricalConfig
from .errors import ConfigurationError
from .types import HistoricalPDRow, HistoricalPDTable, MigrationMatrix

logger = logging.getLogger(__name__)


def collect_observations(
    matrices: Sequence[MigrationMatrix],
    ages: Dict[str, int],
) -> Dict[int, List[Tuple[float, float]]]:
    """age -> [(avg_pd, row_total), ...] over all non-null observations."""
    obs: Dict[int, List[Tuple[float, float]]] = defaultdict(list)
    for m in matrices:
        if m.percentages is None:
            continue
        totals = m.row_totals
        for i, label in enumerate(m.labels):
            value = m.percentages.avg_pd[i]
            if value is None:
                continue
            obs[ages[label]].append((value, float(totals[i])))
    return obs


def historical_pd(
    observations: Dict[int, List[Tuple[float, float]]],
    max_age: int,
    weighting: str = "simple",
) -> List[Optional[float]]:
    """Mean PD per age for ages 0..max_age; None where nothing was observed."""
    out: List[Optional[float]] = [None] * (max_age + 1)
    for age, pairs in observations.items():
        if not pairs:
            continue
        values = np.array([v for v, _ in pairs], dtype=np.float64)
        if weighting == "exposure":
            weights = np.array([w for _, w in pairs], dtype=np.float64)
            out[age] = float(np.average(values, weights=weights))
        else:
            out[age] = float(values.mean())
    return out


def interpolate(historical: Sequence[Optional[float]]) -> List[Optional[float]]:
    """
    Fill every age in [0, HighestMaturity].

    Present values are copied, inner gaps are linear between the nearest
    present neighbours, a leading gap takes the first present value.
    Ages past the last observation stay None. Dense input comes back
    unchanged.
    """
    present = [i for i, v in enumerate(historical) if v is not None]
    out: List[Optional[float]] = [None] * len(historical)
    if not present:
        return out
    highest = present[-1]
    xp = np.array(present, dtype=np.float64)
    fp = np.array([historical[i] for i in present], dtype=np.float64)
    filled = np.interp(np.arange(highest + 1, dtype=np.float64), xp, fp)
    for age in range(highest + 1):
        out[age] = historical[age] if historical[age] is not None else float(filled[age])
    return out


def build_table(
    matrices: Sequence[MigrationMatrix],
    labels: Sequence[str],
    config: Optional[HistoricalConfig] = None,
    product_category: Optional[str] = None,
    segment: Optional[str] = None,
) -> HistoricalPDTable:
    """
    Historical PD table for one product category/segment.

    All matrices must share the bucket dimension ``labels``.
    """
    config = (config or HistoricalConfig()).validate(labels)
    if matrices:
        product_category = product_category or matrices[0].product_category
        segment = segment or matrices[0].segment
    for m in matrices:
        if list(m.labels) != list(labels):
            raise ConfigurationError(
                f"Matrix buckets {m.labels} differ from configured {list(labels)}",
                product_category=m.product_category, segment=m.segment,
                period_from=m.period_from, period_to=m.period_to,
            )
        if (m.product_category, m.segment) != (product_category, segment):
            raise ConfigurationError(
                "Matrices from several segments passed to one historical table",
                product_category=m.product_category, segment=m.segment,
            )

    ages = config.ages(labels)
    max_age = max(ages.values())
    observations = collect_observations(matrices, ages)
    hist = historical_pd(observations, max_age, config.weighting)
    interp = interpolate(hist)

    present = [a for a, v in enumerate(hist) if v is not None]
    highest = present[-1] if present else None

    label_of: Dict[int, List[str]] = defaultdict(list)
    for lb in labels:
        label_of[ages[lb]].append(lb)

    rows = [
        HistoricalPDRow(
            age=age,
            label="/".join(label_of.get(age, [])) or f"age {age}",
            historical_pd=hist[age],
            interpolated_pd=interp[age],
            observations=len(observations.get(age, [])),
        )
        for age in range(max_age + 1)
    ]
    periods = sorted({m.period_comparison for m in matrices})
    table = HistoricalPDTable(
        product_category=product_category,
        segment=segment,
        rows=rows,
        highest_maturity=highest,
        periods=periods,
    )

    if highest is None:
        logger.warning(
            "No historical observations for %s/%s across %d matrices",
            product_category, segment, len(matrices),
        )
    elif not table.is_monotonic:
        logger.info(
            "Interpolated PD for %s/%s is not monotonic; kept as observed",
            product_category, segment,
        )
    return table
