"""
pdcurve.bucketing — Stage 1: delinquency bucketing and customer aggregation.

Every loan record is classified by days past due into exactly one
configured bucket, then all facilities of one customer within one
product category/segment collapse into a single final bucket per period
according to the active FinalBucketPolicy.

A days-past-due value that matches no bucket, or a bucket set with gaps
or overlaps, is a configuration error. Nothing is clamped or defaulted.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .errors import ConfigurationError
from .types import (
    PERCENTAGE,
    BucketDefinition,
    CustomerPeriodBucket,
    FinalBucketPolicy,
    LoanRecord,
)

logger = logging.getLogger(__name__)

RECORD_COLUMNS = (
    "customer_id",
    "facility_id",
    "product_category",
    "segment",
    "days_past_due",
    "outstanding",
    "period",
)
IDENTIFIER_COLUMNS = ("customer_id", "facility_id", "product_category", "segment", "period")


def validate_buckets(buckets: Sequence[BucketDefinition]) -> List[BucketDefinition]:
    """
    Check that the definitions tile ``[0, ∞)`` exactly once.

    Returns the definitions sorted by range start (the severity order).
    """
    if not buckets:
        raise ConfigurationError("No bucket definitions configured")

    labels = [b.label for b in buckets]
    dupes = sorted({lb for lb in labels if labels.count(lb) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate bucket labels: {dupes}")

    ordered = sorted(buckets, key=lambda b: b.start)
    for b in ordered:
        if b.start < 0:
            raise ConfigurationError(f"Bucket {b.label!r} starts below zero ({b.start})")
        if b.end is not None and b.end < b.start:
            raise ConfigurationError(
                f"Bucket {b.label!r} has end {b.end} before start {b.start}"
            )

    if ordered[0].start != 0:
        raise ConfigurationError(
            f"Buckets must start at 0; first bucket {ordered[0].label!r} "
            f"starts at {ordered[0].start}"
        )

    for prev, nxt in zip(ordered, ordered[1:]):
        if prev.end is None:
            raise ConfigurationError(
                f"Open-ended bucket {prev.label!r} overlaps {nxt.label!r}"
            )
        if nxt.start <= prev.end:
            raise ConfigurationError(f"Buckets {prev.label!r} and {nxt.label!r} overlap")
        if nxt.start > prev.end + 1:
            raise ConfigurationError(
                f"Gap between {prev.label!r} (ends {prev.end}) and "
                f"{nxt.label!r} (starts {nxt.start})"
            )

    if not ordered[-1].is_open:
        raise ConfigurationError(
            f"Last bucket {ordered[-1].label!r} must be open-ended, "
            f"ends at {ordered[-1].end}"
        )
    return ordered


def terminal_labels(buckets: Sequence[BucketDefinition]) -> List[str]:
    """Buckets flagged terminal; the most delinquent one if none is flagged."""
    ordered = sorted(buckets, key=lambda b: b.start)
    flagged = [b.label for b in ordered if b.terminal]
    return flagged or [ordered[-1].label]


def assign_bucket(days_past_due: int, buckets: Sequence[BucketDefinition]) -> int:
    """
    Index (into the start-sorted ``buckets``) of the range containing
    ``days_past_due``. ``buckets`` must already be validated.
    """
    if days_past_due < 0:
        raise ConfigurationError(f"days_past_due must be >= 0, got {days_past_due}")
    starts = [b.start for b in buckets]
    idx = bisect_right(starts, days_past_due) - 1
    if idx < 0 or not buckets[idx].contains(days_past_due):
        raise ConfigurationError(f"No bucket covers days_past_due={days_past_due}")
    return idx


def severity_key(idx: int, buckets: Sequence[BucketDefinition]) -> Tuple[int, int]:
    """Higher is worse: stage first, then position in the range order."""
    return (buckets[idx].stage, idx)


def resolve_final_bucket(
    facilities: Sequence[Tuple[int, float]],
    buckets: Sequence[BucketDefinition],
    policy: FinalBucketPolicy,
) -> int:
    """
    Collapse one customer's facilities to a single bucket index.

    Parameters
    ----------
    facilities : list of (bucket_index, outstanding)
    """
    by_severity = sorted(
        facilities, key=lambda f: severity_key(f[0], buckets), reverse=True
    )
    worst = by_severity[0][0]
    if policy.kind != PERCENTAGE:
        return worst

    total = sum(max(bal, 0.0) for _, bal in by_severity)
    if total <= 0:
        return worst

    target = policy.percentage / 100.0 * total
    cumulative = 0.0
    for idx, bal in by_severity:
        cumulative += max(bal, 0.0)
        if cumulative >= target - 1e-12 * total:
            return idx
    return by_severity[-1][0]


def prepare_period(
    records: Sequence[LoanRecord],
    buckets: Sequence[BucketDefinition],
    policy: FinalBucketPolicy,
) -> List[CustomerPeriodBucket]:
    """
    Bucket one period's records and emit one row per
    (customer, product category, segment). ``buckets`` must be validated.
    """
    groups: Dict[Tuple[str, str, str], List[Tuple[int, float]]] = defaultdict(list)
    period = None
    for rec in records:
        if period is None:
            period = rec.period
        elif rec.period != period:
            raise ConfigurationError(
                f"prepare_period received mixed periods {period!r} and {rec.period!r}"
            )
        try:
            idx = assign_bucket(rec.days_past_due, buckets)
        except ConfigurationError as exc:
            raise ConfigurationError(
                f"{exc.message} (customer {rec.customer_id}, facility {rec.facility_id})",
                product_category=rec.product_category,
                segment=rec.segment,
                period_to=rec.period,
            ) from exc
        groups[(rec.customer_id, rec.product_category, rec.segment)].append(
            (idx, float(rec.outstanding))
        )

    out = []
    for (customer, category, segment), facilities in groups.items():
        idx = resolve_final_bucket(facilities, buckets, policy)
        out.append(CustomerPeriodBucket(
            customer_id=customer,
            period=period,
            product_category=category,
            segment=segment,
            bucket=buckets[idx].label,
            outstanding=sum(bal for _, bal in facilities),
            n_facilities=len(facilities),
        ))
    out.sort(key=lambda c: (c.product_category, c.segment, c.customer_id))
    return out


def prepare_data(
    records: Iterable[LoanRecord],
    buckets: Sequence[BucketDefinition],
    policy: FinalBucketPolicy,
) -> List[CustomerPeriodBucket]:
    """
    Stage 1 entry point. Validates configuration first, then processes the
    records strictly period by period.

    Raises
    ------
    ConfigurationError
        Malformed buckets, invalid policy, duplicate (facility, period) or
        a days-past-due value outside every bucket.
    """
    ordered = validate_buckets(buckets)
    policy.validate()

    by_period: Dict[str, List[LoanRecord]] = defaultdict(list)
    seen = set()
    for rec in records:
        key = (rec.facility_id, rec.period)
        if key in seen:
            raise ConfigurationError(
                f"Duplicate record for facility {rec.facility_id!r}",
                product_category=rec.product_category,
                segment=rec.segment,
                period_to=rec.period,
            )
        seen.add(key)
        by_period[rec.period].append(rec)

    logger.info(
        "Bucketing %d records across %d periods (policy=%s)",
        len(seen), len(by_period), policy.kind,
    )

    result: List[CustomerPeriodBucket] = []
    for period in sorted(by_period):
        rows = prepare_period(by_period[period], ordered, policy)
        logger.debug(
            "Period %s: %d records -> %d customer buckets",
            period, len(by_period[period]), len(rows),
        )
        result.extend(rows)
    return result


def records_from_frame(
    df: pd.DataFrame,
    column_map: Optional[Mapping[str, str]] = None,
) -> List[LoanRecord]:
    """
    Build LoanRecords from a tabular extract.

    Parameters
    ----------
    df : DataFrame
        One row per facility and period.
    column_map : dict, optional
        Record field -> source column, for extracts with other headers.
    """
    column_map = dict(column_map or {})
    source = {f: column_map.get(f, f) for f in RECORD_COLUMNS}

    missing = [col for col in source.values() if col not in df.columns]
    if missing:
        raise ConfigurationError(f"Missing required columns: {missing}")

    frame = df[list(source.values())].rename(columns={v: k for k, v in source.items()})
    if frame["days_past_due"].isna().any():
        n_bad = int(frame["days_past_due"].isna().sum())
        raise ConfigurationError(f"{n_bad} rows have no days_past_due")

    null_ids = [c for c in IDENTIFIER_COLUMNS if frame[c].isna().any()]
    if null_ids:
        raise ConfigurationError(f"Missing identifiers in columns: {null_ids}")

    try:
        dpd = pd.to_numeric(frame["days_past_due"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"days_past_due is not numeric: {exc}") from exc
    fractional = dpd % 1 != 0
    if fractional.any():
        raise ConfigurationError(
            f"{int(fractional.sum())} rows have a non-integer days_past_due "
            f"(first: {dpd[fractional].iloc[0]})"
        )

    frame = frame.assign(
        outstanding=frame["outstanding"].fillna(0.0).astype(float),
        days_past_due=dpd.astype(int),
    )
    for col in IDENTIFIER_COLUMNS:
        frame[col] = frame[col].astype(str).str.strip()

    return [
        LoanRecord(
            customer_id=row.customer_id,
            facility_id=row.facility_id,
            product_category=row.product_category,
            segment=row.segment,
            days_past_due=int(row.days_past_due),
            outstanding=float(row.outstanding),
            period=row.period,
        )
        for row in frame.itertuples(index=False)
    ]
