"""
pdcurve.pipeline — the four stage entry points and their orchestration.

    prepare_data              records -> customer buckets      (sequential)
    build_migration_matrices  buckets -> matrices              (per segment × period pair)
    build_historical_tables   matrices -> historical tables    (per segment)
    extrapolate               tables -> PD curves              (per segment)

Stages 2–4 fan their independent units out over a thread pool. Units read
immutable inputs and return fresh outputs, so nothing is shared or locked.
Cancellation is cooperative: once ``cancel_event`` is set, units that have
not started are skipped and reported, units already running finish.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import bucketing, extrapolation, historical, migration
from .config import (
    ExtrapolationConfig,
    HistoricalConfig,
    PDConfiguration,
    PipelineConfig,
    TimeConfig,
)
from .errors import ConfigurationError, DataSufficiencyError, SegmentFailure, StageResult
from .types import (
    BucketDefinition,
    CustomerPeriodBucket,
    ExtrapolatedPDCurve,
    FinalBucketPolicy,
    HistoricalPDTable,
    LoanRecord,
    MigrationMatrix,
    SegmentKey,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
_SKIPPED = object()


@dataclass
class _Unit:
    stage: str
    key: SegmentKey
    fn: Callable
    period_from: Optional[str] = None
    period_to: Optional[str] = None


@dataclass
class PipelineResult:
    customer_buckets: List[CustomerPeriodBucket] = field(default_factory=list)
    matrices: StageResult = field(default_factory=StageResult)
    tables: StageResult = field(default_factory=StageResult)
    curves: StageResult = field(default_factory=StageResult)

    @property
    def failures(self) -> List[SegmentFailure]:
        return self.matrices.failures + self.tables.failures + self.curves.failures

    def curves_for(self, product_category: str, segment: str) -> Dict[str, ExtrapolatedPDCurve]:
        return {
            c.method: c for c in self.curves.results
            if c.segment_key == (product_category, segment)
        }


def _run_units(
    units: Sequence[_Unit],
    max_workers: Optional[int],
    cancel_event: Optional[threading.Event],
) -> Tuple[List, List[SegmentFailure]]:
    """
    Run units on a pool and gather their outputs in submission order.

    DataSufficiencyError becomes a failure record for that unit;
    ConfigurationError and anything unexpected propagate.
    """

    def guarded(unit: _Unit):
        if cancel_event is not None and cancel_event.is_set():
            return _SKIPPED
        return unit.fn()

    results: List = []
    failures: List[SegmentFailure] = []
    if not units:
        return results, failures

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(guarded, u) for u in units]
        for unit, fut in zip(units, futures):
            try:
                out = fut.result()
            except DataSufficiencyError as exc:
                logger.warning("Skipping %s/%s at %s: %s", *unit.key, unit.stage, exc.message)
                failures.append(SegmentFailure.from_error(unit.stage, exc))
                continue
            if out is _SKIPPED:
                failures.append(SegmentFailure(
                    stage=unit.stage,
                    product_category=unit.key[0],
                    segment=unit.key[1],
                    message=CANCELLED,
                    period_from=unit.period_from,
                    period_to=unit.period_to,
                ))
                continue
            if isinstance(out, list):
                results.extend(out)
            else:
                results.append(out)
    return results, failures


# ═══════════════════════════════════════════════════════════════════════════════
# Stage entry points
# ═══════════════════════════════════════════════════════════════════════════════


def prepare_data(
    records: Iterable[LoanRecord],
    buckets: Sequence[BucketDefinition],
    policy: FinalBucketPolicy,
) -> List[CustomerPeriodBucket]:
    """Stage 1. Raises ConfigurationError; otherwise one row per customer/period/segment."""
    return bucketing.prepare_data(records, buckets, policy)


def build_migration_matrices(
    customer_buckets: Sequence[CustomerPeriodBucket],
    time_config: TimeConfig,
    pd_config: PDConfiguration,
    buckets: Sequence[BucketDefinition],
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> StageResult:
    """
    Stage 2. One matrix per (product category, segment, period pair).

    Period pairs come from the distinct periods of the whole input, with
    each segment's comparison-period step.
    """
    ordered = bucketing.validate_buckets(buckets)
    pd_config.validate(time_config)
    labels = [b.label for b in ordered]
    terminal = bucketing.terminal_labels(ordered)
    label_set = set(labels)

    by_slice: Dict[Tuple[SegmentKey, str], List[CustomerPeriodBucket]] = defaultdict(list)
    periods = set()
    for cpb in customer_buckets:
        if cpb.bucket not in label_set:
            raise ConfigurationError(
                f"Bucket {cpb.bucket!r} is not in the configured dimension {labels}",
                product_category=cpb.product_category, segment=cpb.segment,
                period_to=cpb.period,
            )
        by_slice[(cpb.segment_key, cpb.period)].append(cpb)
        periods.add(cpb.period)

    if pd_config.segments:
        keys = [(s.product_category, s.segment) for s in pd_config.segments]
    else:
        keys = sorted({k for k, _ in by_slice})

    units: List[_Unit] = []
    failures: List[SegmentFailure] = []
    for key in keys:
        step = pd_config.step_for(key, time_config)
        pairs = migration.period_pairs(sorted(periods), step)
        if not pairs:
            logger.warning(
                "Skipping %s/%s: %d periods is not enough history for a step of %d",
                key[0], key[1], len(periods), step,
            )
            failures.append(SegmentFailure(
                stage="migration", product_category=key[0], segment=key[1],
                message=f"insufficient history for comparison step {step}",
            ))
            continue
        for prev, curr in pairs:
            units.append(_Unit(
                stage="migration",
                key=key,
                period_from=prev,
                period_to=curr,
                fn=_matrix_task(
                    by_slice.get((key, prev), []), by_slice.get((key, curr), []),
                    labels, terminal, pd_config, key, prev, curr,
                ),
            ))

    logger.info(
        "Building %d migration matrices for %d segments over %d periods",
        len(units), len(keys), len(periods),
    )
    results, unit_failures = _run_units(units, max_workers, cancel_event)
    return StageResult(results=results, failures=failures + unit_failures)


def _matrix_task(prev, curr, labels, terminal, pd_config, key, period_from, period_to):
    def task() -> MigrationMatrix:
        return migration.build_matrix(
            prev, curr, labels, terminal,
            absorbing_default=pd_config.absorbing_default,
            exit_default_weight=pd_config.exit_default_weight,
            tolerance=pd_config.row_sum_tolerance,
            period_from=period_from,
            period_to=period_to,
            product_category=key[0],
            segment=key[1],
        )
    return task


def build_historical_tables(
    matrices: Sequence[MigrationMatrix],
    config: Optional[HistoricalConfig] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> StageResult:
    """Stage 3. One HistoricalPDTable per product category/segment."""
    config = config or HistoricalConfig()
    if not matrices:
        return StageResult()

    labels = list(matrices[0].labels)
    config.validate(labels)

    grouped: Dict[SegmentKey, List[MigrationMatrix]] = defaultdict(list)
    for m in matrices:
        grouped[m.segment_key].append(m)

    units = [
        _Unit(
            stage="historical",
            key=key,
            fn=_table_task(
                sorted(grouped[key], key=lambda m: (m.period_from, m.period_to)),
                labels, config, key,
            ),
        )
        for key in sorted(grouped)
    ]
    logger.info("Building historical PD tables for %d segments", len(units))
    results, failures = _run_units(units, max_workers, cancel_event)
    return StageResult(results=results, failures=failures)


def _table_task(matrices, labels, config, key):
    def task() -> HistoricalPDTable:
        return historical.build_table(matrices, labels, config, key[0], key[1])
    return task


def extrapolate(
    tables: Sequence[HistoricalPDTable],
    config: Optional[ExtrapolationConfig] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> StageResult:
    """
    Stage 4. One curve per (product category, segment, method). Segments
    without observations are reported as DataSufficiencyError failures.
    """
    config = config or ExtrapolationConfig()
    for name in config.methods:
        extrapolation.get_method(name)

    units = [
        _Unit(stage="extrapolation", key=t.segment_key, fn=_curve_task(t, config))
        for t in sorted(tables, key=lambda t: t.segment_key)
    ]
    logger.info(
        "Extrapolating %d tables to horizon %d with %s",
        len(units), config.horizon, list(config.methods),
    )
    results, failures = _run_units(units, max_workers, cancel_event)
    return StageResult(results=results, failures=failures)


def _curve_task(table, config):
    def task() -> List[ExtrapolatedPDCurve]:
        return extrapolation.extrapolate_table(table, config)
    return task


def run_pipeline(
    records: Iterable[LoanRecord],
    config: Optional[PipelineConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PipelineResult:
    """Run all four stages in order."""
    config = config or PipelineConfig()
    workers = config.workers
    result = PipelineResult()

    result.customer_buckets = prepare_data(records, config.buckets, config.policy)
    result.matrices = build_migration_matrices(
        result.customer_buckets, config.time, config.pd, config.buckets,
        max_workers=workers, cancel_event=cancel_event,
    )
    result.tables = build_historical_tables(
        result.matrices.results, config.historical,
        max_workers=workers, cancel_event=cancel_event,
    )
    result.curves = extrapolate(
        result.tables.results, config.extrapolation,
        max_workers=workers, cancel_event=cancel_event,
    )
    logger.info(
        "Pipeline finished: %d matrices, %d tables, %d curves, %d failures",
        len(result.matrices), len(result.tables), len(result.curves),
        len(result.failures),
    )
    return result
