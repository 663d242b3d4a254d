"""
pdcurve.config — typed run configuration, validated once at the boundary.

A setup document (JSON) is parsed into ``PipelineConfig``; every invalid
value raises ConfigurationError before any data is touched.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .bucketing import validate_buckets
from .errors import ConfigurationError
from .types import PERCENTAGE, WORST, BucketDefinition, FinalBucketPolicy

YEARLY = "YEARLY"
QUARTERLY = "QUARTERLY"
MONTHLY = "MONTHLY"
FREQUENCIES = (YEARLY, QUARTERLY, MONTHLY)

# (data frequency, comparison period) -> number of periods between N-1 and N
PERIOD_STEPS: Dict[Tuple[str, str], int] = {
    (YEARLY, YEARLY): 1,
    (QUARTERLY, YEARLY): 4,
    (QUARTERLY, QUARTERLY): 1,
    (MONTHLY, YEARLY): 12,
    (MONTHLY, QUARTERLY): 3,
    (MONTHLY, MONTHLY): 1,
}

ROW_SUM_TOLERANCE = 1e-9

DEFAULT_BUCKETS: List[BucketDefinition] = [
    BucketDefinition(0, 0, "Current", stage=1),
    BucketDefinition(1, 30, "1-30", stage=2),
    BucketDefinition(31, 60, "31-60", stage=2),
    BucketDefinition(61, 90, "61-90", stage=2),
    BucketDefinition(91, None, "90+", stage=3, terminal=True),
]

DEFAULT_METHODS: Tuple[str, ...] = ("linear", "geometric", "survival")


@dataclass(frozen=True)
class TimeConfig:
    frequency: str = YEARLY
    comparison_period: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "frequency", _norm(self.frequency))
        if self.frequency not in FREQUENCIES:
            raise ConfigurationError(f"Unknown frequency: {self.frequency!r}")
        if self.comparison_period is None:
            object.__setattr__(self, "comparison_period", self.frequency)
        else:
            object.__setattr__(self, "comparison_period", _norm(self.comparison_period))
        self.step_for(self.comparison_period)

    def step_for(self, comparison_period: Optional[str] = None) -> int:
        """Periods between N-1 and N; incompatible combinations are fatal."""
        comp = _norm(comparison_period) if comparison_period else self.comparison_period
        try:
            return PERIOD_STEPS[(self.frequency, comp)]
        except KeyError:
            raise ConfigurationError(
                f"Comparison period {comp!r} is not compatible with "
                f"frequency {self.frequency!r}"
            ) from None


@dataclass(frozen=True)
class SegmentConfig:
    product_category: str
    segment: str
    comparison_period: Optional[str] = None


@dataclass
class PDConfiguration:
    """
    Which product category/segment slices to build and how.

    An empty ``segments`` list means every slice present in the data,
    using the time config's comparison period.
    """

    segments: List[SegmentConfig] = field(default_factory=list)
    absorbing_default: bool = False
    exit_default_weight: float = 1.0
    row_sum_tolerance: float = ROW_SUM_TOLERANCE

    def validate(self, time_config: TimeConfig) -> "PDConfiguration":
        seen = set()
        for s in self.segments:
            key = (s.product_category, s.segment)
            if key in seen:
                raise ConfigurationError(
                    "Duplicate segment configuration",
                    product_category=s.product_category, segment=s.segment,
                )
            seen.add(key)
            time_config.step_for(s.comparison_period)
        if not (0.0 <= self.exit_default_weight <= 1.0):
            raise ConfigurationError(
                f"exit_default_weight must be within [0, 1], got {self.exit_default_weight}"
            )
        return self

    def step_for(self, key: Tuple[str, str], time_config: TimeConfig) -> int:
        for s in self.segments:
            if (s.product_category, s.segment) == key:
                return time_config.step_for(s.comparison_period)
        return time_config.step_for()


@dataclass
class HistoricalConfig:
    """
    ``weighting``: ``simple`` (arithmetic mean) or ``exposure`` (mean
    weighted by the originating row total).
    ``age_of``: bucket label -> age index; defaults to bucket position.
    """

    weighting: str = "simple"
    age_of: Optional[Dict[str, int]] = None

    def validate(self, labels: Sequence[str]) -> "HistoricalConfig":
        if self.weighting not in ("simple", "exposure"):
            raise ConfigurationError(f"Unknown weighting: {self.weighting!r}")
        if self.age_of is not None:
            missing = [lb for lb in labels if lb not in self.age_of]
            if missing:
                raise ConfigurationError(f"age_of has no age for buckets {missing}")
            bad = {k: v for k, v in self.age_of.items() if not isinstance(v, int) or v < 0}
            if bad:
                raise ConfigurationError(f"Ages must be non-negative integers: {bad}")
        return self

    def ages(self, labels: Sequence[str]) -> Dict[str, int]:
        if self.age_of is None:
            return {lb: i for i, lb in enumerate(labels)}
        return {lb: self.age_of[lb] for lb in labels}


@dataclass
class ExtrapolationConfig:
    """
    ``horizon``: last age of the emitted curves.
    ``efa_factors``: economic factor adjustment in percent by projection
    year (1 = first age past HighestMaturity); later years reuse the last
    defined factor.
    """

    horizon: int = 30
    methods: Tuple[str, ...] = DEFAULT_METHODS
    lognormal_threshold: int = 5
    efa_factors: Optional[Dict[int, float]] = None
    exponential_min_points: int = 3

    def __post_init__(self):
        self.methods = tuple(self.methods)
        if self.horizon < 0:
            raise ConfigurationError(f"horizon must be >= 0, got {self.horizon}")
        if not self.methods:
            raise ConfigurationError("At least one extrapolation method is required")
        if self.lognormal_threshold < 2:
            raise ConfigurationError("lognormal_threshold must be >= 2")
        if self.exponential_min_points < 1:
            raise ConfigurationError("exponential_min_points must be >= 1")
        if self.efa_factors is not None:
            if not isinstance(self.efa_factors, dict):
                raise ConfigurationError(
                    f"efa_factors must map year to percent, got {type(self.efa_factors).__name__}"
                )
            self.efa_factors = {int(k): float(v) for k, v in self.efa_factors.items()}
            if not self.efa_factors or min(self.efa_factors) < 1:
                raise ConfigurationError("efa_factors must be keyed by years >= 1")
            if any(v < 0 for v in self.efa_factors.values()):
                raise ConfigurationError("efa_factors must be non-negative")

    def efa_for(self, year: int) -> float:
        """Multiplier (not percent) for projection year ``year``."""
        if not self.efa_factors:
            return 1.0
        if year in self.efa_factors:
            return self.efa_factors[year] / 100.0
        defined = [y for y in self.efa_factors if y <= year]
        last = max(defined) if defined else min(self.efa_factors)
        return self.efa_factors[last] / 100.0


@dataclass
class PipelineConfig:
    buckets: List[BucketDefinition] = field(default_factory=lambda: list(DEFAULT_BUCKETS))
    policy: FinalBucketPolicy = field(default_factory=FinalBucketPolicy.worst)
    time: TimeConfig = field(default_factory=TimeConfig)
    pd: PDConfiguration = field(default_factory=PDConfiguration)
    historical: HistoricalConfig = field(default_factory=HistoricalConfig)
    extrapolation: ExtrapolationConfig = field(default_factory=ExtrapolationConfig)
    max_workers: Optional[int] = None

    def __post_init__(self):
        self.buckets = validate_buckets(self.buckets)
        self.policy.validate()
        self.pd.validate(self.time)
        self.historical.validate([b.label for b in self.buckets])
        if self.max_workers is not None and (
            not isinstance(self.max_workers, int) or self.max_workers < 1
        ):
            raise ConfigurationError("max_workers must be >= 1")

    @property
    def workers(self) -> int:
        return self.max_workers or os.cpu_count() or 1

    @classmethod
    def from_dict(cls, doc: Dict) -> "PipelineConfig":
        if not isinstance(doc, dict):
            raise ConfigurationError(
                f"Setup document must be a JSON object, got {type(doc).__name__}"
            )
        try:
            bucket_docs = doc.get("buckets") or []
            if not isinstance(bucket_docs, list):
                raise ConfigurationError("'buckets' must be a list")
            buckets = [
                BucketDefinition(
                    start=int(b["start"]),
                    end=None if b.get("end") is None else int(b["end"]),
                    label=str(b["label"]),
                    stage=int(b.get("stage", 1)),
                    terminal=bool(b.get("terminal", False)),
                )
                for b in bucket_docs
            ] or list(DEFAULT_BUCKETS)

            pol = _section(doc, "final_bucket_policy")
            kind = str(pol.get("type", WORST)).lower()
            policy = FinalBucketPolicy(
                kind,
                None if pol.get("percentage") is None else float(pol["percentage"]),
            )

            t = _section(doc, "time")
            time = TimeConfig(t.get("frequency", YEARLY), t.get("comparison_period"))

            p = _section(doc, "pd")
            pd_config = PDConfiguration(
                segments=[
                    SegmentConfig(
                        str(s["product_category"]), str(s["segment"]),
                        s.get("comparison_period"),
                    )
                    for s in p.get("segments", [])
                ],
                absorbing_default=bool(p.get("absorbing_default", False)),
                exit_default_weight=float(p.get("exit_default_weight", 1.0)),
                row_sum_tolerance=float(p.get("row_sum_tolerance", ROW_SUM_TOLERANCE)),
            )

            h = _section(doc, "historical")
            historical = HistoricalConfig(
                weighting=h.get("weighting", "simple"),
                age_of=h.get("age_of"),
            )

            e = _section(doc, "extrapolation")
            extrapolation = ExtrapolationConfig(
                horizon=int(e.get("horizon", 30)),
                methods=tuple(e.get("methods", DEFAULT_METHODS)),
                lognormal_threshold=int(e.get("lognormal_threshold", 5)),
                efa_factors=e.get("efa_factors"),
                exponential_min_points=int(e.get("exponential_min_points", 3)),
            )

            workers = doc.get("max_workers")
            max_workers = None if workers is None else int(workers)
        except ConfigurationError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid setup document: {exc}") from exc

        return cls(
            buckets=buckets,
            policy=policy,
            time=time,
            pd=pd_config,
            historical=historical,
            extrapolation=extrapolation,
            max_workers=max_workers,
        )


def load_config(path: str) -> PipelineConfig:
    """Read a JSON setup document from ``path``."""
    with open(path, encoding="utf-8") as fh:
        try:
            doc = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc
    return PipelineConfig.from_dict(doc)


def _norm(value: str) -> str:
    return str(value).strip().upper()


def _section(doc: Dict, name: str) -> Dict:
    value = doc.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(
            f"Section {name!r} must be an object, got {type(value).__name__}"
        )
    return value
