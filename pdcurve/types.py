"""
pdcurve.types — shared data model for the PD migration pipeline.

Every derived artifact (customer buckets, migration matrices, historical
tables, extrapolated curves) is produced once per pipeline run and never
edited afterwards; the next run replaces it wholesale.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError

SegmentKey = Tuple[str, str]  # (product_category, segment)

WORST = "worst"
PERCENTAGE = "percentage"


@dataclass(frozen=True)
class LoanRecord:
    """One facility observation for one reporting period."""

    customer_id: str
    facility_id: str
    product_category: str
    segment: str
    days_past_due: int
    outstanding: float
    period: str

    @property
    def segment_key(self) -> SegmentKey:
        return (self.product_category, self.segment)


@dataclass(frozen=True)
class BucketDefinition:
    """
    Inclusive days-past-due range ``[start, end]``; ``end=None`` is open.

    ``terminal`` marks the default-defining bucket(s) used for the PD
    figures of the migration matrix.
    """

    start: int
    end: Optional[int]
    label: str
    stage: int = 1
    terminal: bool = False

    @property
    def is_open(self) -> bool:
        return self.end is None

    def contains(self, days_past_due: int) -> bool:
        if days_past_due < self.start:
            return False
        return self.end is None or days_past_due <= self.end


@dataclass(frozen=True)
class FinalBucketPolicy:
    """
    How several facilities of one customer collapse into a single bucket.

    ``worst`` — most severe bucket wins.
    ``percentage`` — bucket at which the balance-weighted cumulative share
    (most severe first) first reaches ``percentage`` % of the total.
    """

    kind: str = WORST
    percentage: Optional[float] = None

    @classmethod
    def worst(cls) -> "FinalBucketPolicy":
        return cls(WORST)

    @classmethod
    def threshold(cls, percentage: float) -> "FinalBucketPolicy":
        return cls(PERCENTAGE, percentage)

    def validate(self) -> "FinalBucketPolicy":
        if self.kind == WORST:
            return self
        if self.kind == PERCENTAGE:
            p = self.percentage
            if p is None or not (0 < p <= 100):
                raise ConfigurationError(
                    f"Percentage threshold must satisfy 0 < p <= 100, got {p!r}"
                )
            return self
        raise ConfigurationError(f"Unknown final bucket policy: {self.kind!r}")


@dataclass(frozen=True)
class CustomerPeriodBucket:
    """Final bucket of one customer in one period for one product/segment."""

    customer_id: str
    period: str
    product_category: str
    segment: str
    bucket: str
    outstanding: float = 0.0
    n_facilities: int = 1

    @property
    def segment_key(self) -> SegmentKey:
        return (self.product_category, self.segment)


@dataclass
class PercentageMatrix:
    """
    Row-normalized view of a MigrationMatrix.

    Rows whose total is zero are ``None`` throughout (insufficient data),
    never 0.0 and never NaN.
    """

    matrix: List[List[Optional[float]]]
    exit_percentages: List[Optional[float]]
    grand_total: List[Optional[float]]     # Σ_j matrix[i][j] + exit[i] ≈ 1
    avg_pd: List[Optional[float]]          # mass into terminal bucket(s)
    cumulative_pd: List[Optional[float]]   # chained PD down to the worst bucket


@dataclass
class MigrationMatrix:
    """
    Cohort transition counts for one (PeriodN-1, PeriodN, product, segment).

    ``counts[i][j]`` customers moved from bucket i to j; ``exit_counts[i]``
    customers in bucket i at PeriodN-1 that are absent at PeriodN.
    """

    period_from: str
    period_to: str
    product_category: str
    segment: str
    labels: List[str]
    counts: np.ndarray                  # (n, n) int
    exit_counts: np.ndarray             # (n,) int
    terminal: List[bool]
    percentages: Optional[PercentageMatrix] = None
    diagnostics: Dict = field(default_factory=dict)

    def __post_init__(self):
        self.diagnostics.update(self._compute_diagnostics())

    @property
    def segment_key(self) -> SegmentKey:
        return (self.product_category, self.segment)

    @property
    def row_totals(self) -> np.ndarray:
        return self.counts.sum(axis=1) + self.exit_counts

    @property
    def period_comparison(self) -> str:
        return f"{self.period_from}vs{self.period_to}"

    def _compute_diagnostics(self) -> Dict:
        n = len(self.labels)
        diag = {}
        diag["shape_ok"] = bool(
            self.counts.shape == (n, n) and self.exit_counts.shape == (n,)
        )
        diag["total_customers"] = int(self.row_totals.sum())
        diag["total_exits"] = int(self.exit_counts.sum())
        diag["empty_rows"] = [
            self.labels[i] for i in range(n) if self.row_totals[i] == 0
        ]
        if self.percentages is not None:
            errors = [
                abs(g - 1.0) for g in self.percentages.grand_total if g is not None
            ]
            diag["max_row_sum_error"] = float(max(errors)) if errors else 0.0
        return diag

    def as_dataframe(self, percentages: bool = False) -> pd.DataFrame:
        """Counts (or percentages) with an ``Exit`` and a ``Total`` column."""
        if percentages:
            if self.percentages is None:
                raise ValueError("Percentages have not been computed")
            pm = self.percentages
            df = pd.DataFrame(pm.matrix, index=self.labels, columns=self.labels)
            df["Exit"] = pm.exit_percentages
            df["Total"] = pm.grand_total
            df["PD"] = pm.avg_pd
            return df
        df = pd.DataFrame(self.counts, index=self.labels, columns=self.labels)
        df["Exit"] = self.exit_counts
        df["Total"] = self.row_totals
        return df

    def __repr__(self) -> str:
        return (
            f"MigrationMatrix({self.product_category!r}/{self.segment!r}, "
            f"{self.period_comparison}, customers={self.diagnostics['total_customers']})"
        )


@dataclass(frozen=True)
class HistoricalPDRow:
    age: int
    label: str
    historical_pd: Optional[float]
    interpolated_pd: Optional[float]
    observations: int = 0


@dataclass
class HistoricalPDTable:
    """Historical and interpolated PD by age bucket for one product/segment."""

    product_category: str
    segment: str
    rows: List[HistoricalPDRow]
    highest_maturity: Optional[int]
    periods: List[str] = field(default_factory=list)

    @property
    def segment_key(self) -> SegmentKey:
        return (self.product_category, self.segment)

    @property
    def interpolated(self) -> np.ndarray:
        """Interpolated PDs for ages 0..HighestMaturity."""
        if self.highest_maturity is None:
            return np.array([], dtype=np.float64)
        return np.array(
            [r.interpolated_pd for r in self.rows[: self.highest_maturity + 1]],
            dtype=np.float64,
        )

    @property
    def is_monotonic(self) -> bool:
        v = self.interpolated
        return bool(np.all(np.diff(v) >= -1e-12)) if len(v) > 1 else True

    def as_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [asdict(r) for r in self.rows],
            columns=["age", "label", "historical_pd", "interpolated_pd", "observations"],
        )


@dataclass
class ExtrapolatedPDCurve:
    """Full-horizon PD curve (ages 0..horizon) for one method."""

    product_category: str
    segment: str
    method: str
    values: np.ndarray
    highest_maturity: int
    adjusted_ages: Tuple[int, ...] = ()
    diagnostics: Dict = field(default_factory=dict)

    def __post_init__(self):
        v = self.values
        self.diagnostics.update({
            "monotonic": bool(np.all(np.diff(v) >= 0.0)) if len(v) > 1 else True,
            "bounded": bool(np.all((v >= 0.0) & (v <= 1.0))),
            "n_adjusted": len(self.adjusted_ages),
        })

    @property
    def segment_key(self) -> SegmentKey:
        return (self.product_category, self.segment)

    @property
    def horizon(self) -> int:
        return len(self.values) - 1

    def marginal(self) -> np.ndarray:
        """curve[t] - curve[t-1]; the first entry is curve[0]."""
        return np.diff(self.values, prepend=0.0)

    def as_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "age": np.arange(len(self.values)),
            "pd": self.values,
            "marginal_pd": self.marginal(),
            "extrapolated": np.arange(len(self.values)) > self.highest_maturity,
        })

    def __repr__(self) -> str:
        return (
            f"ExtrapolatedPDCurve({self.product_category!r}/{self.segment!r}, "
            f"method={self.method!r}, horizon={self.horizon}, "
            f"adjusted={list(self.adjusted_ages)})"
        )


def to_frame(items: Iterable) -> pd.DataFrame:
    """Flat records (LoanRecord, CustomerPeriodBucket, ...) as a DataFrame."""
    return pd.DataFrame([asdict(x) for x in items])
