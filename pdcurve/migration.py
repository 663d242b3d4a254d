"""
pdcurve.migration — Stage 2: cohort migration matrices.

Implements the cohort method: match customers between two snapshots of the
same product category/segment, count bucket-to-bucket moves and exits,
then normalize each row by its total (moves + exits).

Customers appearing only at PeriodN have no prior state and belong to no
row of this matrix; they seed the next one.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import ROW_SUM_TOLERANCE
from .errors import ConfigurationError, NumericAnomaly
from .types import CustomerPeriodBucket, MigrationMatrix, PercentageMatrix

logger = logging.getLogger(__name__)


def period_pairs(periods: Sequence[str], step: int = 1) -> List[Tuple[str, str]]:
    """
    (PeriodN-1, PeriodN) pairs over sorted distinct periods, where N-1 lies
    ``step`` snapshots back (e.g. 4 for quarterly data compared yearly).
    """
    ordered = sorted(set(periods))
    return [(ordered[i - step], ordered[i]) for i in range(step, len(ordered))]


def build_matrix(
    previous: Sequence[CustomerPeriodBucket],
    current: Sequence[CustomerPeriodBucket],
    labels: Sequence[str],
    terminal: Sequence[str],
    absorbing_default: bool = False,
    exit_default_weight: float = 1.0,
    tolerance: float = ROW_SUM_TOLERANCE,
    period_from: Optional[str] = None,
    period_to: Optional[str] = None,
    product_category: Optional[str] = None,
    segment: Optional[str] = None,
) -> MigrationMatrix:
    """
    Build one migration matrix from two bucketed snapshots.

    Parameters
    ----------
    previous, current : CustomerPeriodBucket rows at PeriodN-1 and PeriodN,
        already scoped to one product category/segment.
    labels : bucket dimension, least to most delinquent.
    terminal : labels of the default-defining bucket(s).
    absorbing_default : if True, a customer in a terminal bucket at
        PeriodN-1 who is still present at PeriodN stays terminal.
    """
    ident = dict(
        product_category=product_category
        or _first_attr(previous, current, "product_category"),
        segment=segment or _first_attr(previous, current, "segment"),
        period_from=period_from or _first_attr(previous, (), "period"),
        period_to=period_to or _first_attr(current, (), "period"),
    )
    index = {lb: i for i, lb in enumerate(labels)}
    terminal_set = set(terminal)
    terminal_mask = [lb in terminal_set for lb in labels]
    if not any(terminal_mask):
        raise ConfigurationError(f"No terminal bucket among {list(labels)}", **ident)

    prev_map = _index_customers(previous, index, ident, ident["period_from"])
    curr_map = _index_customers(current, index, ident, ident["period_to"])

    n = len(labels)
    counts = np.zeros((n, n), dtype=np.int64)
    exits = np.zeros(n, dtype=np.int64)

    for customer, i in prev_map.items():
        j = curr_map.get(customer)
        if j is None:
            exits[i] += 1
            continue
        if absorbing_default and terminal_mask[i]:
            j = i
        counts[i, j] += 1

    percentages = normalize(counts, exits, terminal_mask, exit_default_weight)
    matrix = MigrationMatrix(
        period_from=ident["period_from"],
        period_to=ident["period_to"],
        product_category=ident["product_category"],
        segment=ident["segment"],
        labels=list(labels),
        counts=counts,
        exit_counts=exits,
        terminal=terminal_mask,
        percentages=percentages,
    )

    anomalies = check_row_sums(matrix, tolerance)
    matrix.diagnostics["anomalies"] = anomalies
    for a in anomalies:
        logger.warning("NumericAnomaly: %s", a)

    logger.debug(
        "Matrix %s/%s %s: %d customers, %d exits, %d new at PeriodN",
        matrix.product_category, matrix.segment, matrix.period_comparison,
        len(prev_map), int(exits.sum()), len(set(curr_map) - set(prev_map)),
    )
    return matrix


def normalize(
    counts: np.ndarray,
    exit_counts: np.ndarray,
    terminal_mask: Sequence[bool],
    exit_default_weight: float = 1.0,
) -> PercentageMatrix:
    """
    Row-normalize counts and exits by the row total.

    Rows with a zero total carry None everywhere. ``avg_pd`` is the share
    moving into terminal bucket(s); ``cumulative_pd`` chains the upward
    moves down to the terminal bucket, counting exits at
    ``exit_default_weight``.
    """
    n = counts.shape[0]
    totals = counts.sum(axis=1) + exit_counts
    term = np.asarray(terminal_mask, dtype=bool)

    matrix: List[List[Optional[float]]] = []
    exit_pct: List[Optional[float]] = []
    grand_total: List[Optional[float]] = []
    avg_pd: List[Optional[float]] = []

    for i in range(n):
        t = totals[i]
        if t <= 0:
            matrix.append([None] * n)
            exit_pct.append(None)
            grand_total.append(None)
            avg_pd.append(None)
            continue
        row = counts[i] / t
        e = exit_counts[i] / t
        matrix.append([float(x) for x in row])
        exit_pct.append(float(e))
        grand_total.append(float(row.sum() + e))
        avg_pd.append(float(row[term].sum()))

    return PercentageMatrix(
        matrix=matrix,
        exit_percentages=exit_pct,
        grand_total=grand_total,
        avg_pd=avg_pd,
        cumulative_pd=_cumulative_pd(matrix, exit_pct, term, exit_default_weight),
    )


def _cumulative_pd(
    matrix: List[List[Optional[float]]],
    exit_pct: List[Optional[float]],
    term: np.ndarray,
    exit_default_weight: float,
) -> List[Optional[float]]:
    """
    Backward recursion from the most delinquent bucket:
        cum[terminal] = 1
        cum[i] = Σ_{j>i} pct[i][j] · cum[j] + exit[i] · w
    Undefined rows stay None and contribute nothing upstream.
    """
    n = len(matrix)
    cum: List[Optional[float]] = [None] * n
    for i in range(n - 1, -1, -1):
        if term[i]:
            cum[i] = 1.0
            continue
        if exit_pct[i] is None:
            continue
        acc = exit_pct[i] * exit_default_weight
        for j in range(i + 1, n):
            if cum[j] is not None:
                acc += matrix[i][j] * cum[j]
        cum[i] = float(min(acc, 1.0))
    return cum


def check_row_sums(matrix: MigrationMatrix, tolerance: float = ROW_SUM_TOLERANCE) -> List[NumericAnomaly]:
    """Rows whose percentages plus exits stray from 1 by more than ``tolerance``."""
    found = []
    if matrix.percentages is None:
        return found
    for i, g in enumerate(matrix.percentages.grand_total):
        if g is None:
            continue
        if abs(g - 1.0) > tolerance:
            found.append(NumericAnomaly(
                f"Row {matrix.labels[i]!r} sums to {g:.12f}",
                product_category=matrix.product_category,
                segment=matrix.segment,
                period_from=matrix.period_from,
                period_to=matrix.period_to,
            ))
    return found


def _index_customers(
    rows: Sequence[CustomerPeriodBucket],
    index: Dict[str, int],
    ident: Dict,
    period: Optional[str],
) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in rows:
        if r.bucket not in index:
            raise ConfigurationError(
                f"Bucket {r.bucket!r} is not in the configured dimension {list(index)}",
                **ident,
            )
        if r.customer_id in out:
            raise ConfigurationError(
                f"Customer {r.customer_id!r} appears twice in period {period!r}",
                **ident,
            )
        out[r.customer_id] = index[r.bucket]
    return out


def _first_attr(a: Sequence, b: Sequence, name: str) -> Optional[str]:
    for seq in (a, b):
        if seq:
            return getattr(seq[0], name)
    return None
