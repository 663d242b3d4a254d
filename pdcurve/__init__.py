"""
pdcurve — PD migration-matrix and extrapolation engine
======================================================

Turns per-period loan snapshots into forward-looking probability-of-default
curves per product category and segment, for IFRS 9 expected-credit-loss
work.

1. **Bucketing**: classify every facility by days past due and collapse a
   customer's facilities into one final bucket per period (worst bucket or
   balance-weighted percentage threshold).

2. **Migration matrices**: cohort transition counts, exits and row-normalized
   percentages between consecutive periods, with a PD figure per bucket.

3. **Historical curve**: average PD per age bucket over the whole time
   series, gaps filled by linear interpolation.

4. **Extrapolation**: extend each curve to a configured horizon with
   pluggable methods; output curves are bounded to [0, 1] and
   non-decreasing.

Pipeline
--------
    Loan records → Customer buckets → Migration matrices
                                              ↓
                                    Historical PD tables
                                              ↓
                                  Extrapolated PD curves
"""

from .types import (
    LoanRecord,
    BucketDefinition,
    FinalBucketPolicy,
    CustomerPeriodBucket,
    MigrationMatrix,
    PercentageMatrix,
    HistoricalPDRow,
    HistoricalPDTable,
    ExtrapolatedPDCurve,
    to_frame,
)
from .errors import (
    PDEngineError,
    ConfigurationError,
    DataSufficiencyError,
    NumericAnomaly,
    SegmentFailure,
    StageResult,
)
from .config import (
    TimeConfig,
    SegmentConfig,
    PDConfiguration,
    HistoricalConfig,
    ExtrapolationConfig,
    PipelineConfig,
    DEFAULT_BUCKETS,
    load_config,
)
from .bucketing import validate_buckets, assign_bucket, records_from_frame
from .migration import build_matrix, period_pairs
from .historical import build_table, interpolate
from .extrapolation import (
    extrapolate_table,
    register_method,
    available_methods,
    enforce_bounds_and_monotonic,
)
from .pipeline import (
    prepare_data,
    build_migration_matrices,
    build_historical_tables,
    extrapolate,
    run_pipeline,
    PipelineResult,
)

__version__ = "1.0.0"

__all__ = [
    # Types
    "LoanRecord", "BucketDefinition", "FinalBucketPolicy", "CustomerPeriodBucket",
    "MigrationMatrix", "PercentageMatrix", "HistoricalPDRow", "HistoricalPDTable",
    "ExtrapolatedPDCurve", "to_frame",
    # Errors
    "PDEngineError", "ConfigurationError", "DataSufficiencyError", "NumericAnomaly",
    "SegmentFailure", "StageResult",
    # Configuration
    "TimeConfig", "SegmentConfig", "PDConfiguration", "HistoricalConfig",
    "ExtrapolationConfig", "PipelineConfig", "DEFAULT_BUCKETS", "load_config",
    # Stage building blocks
    "validate_buckets", "assign_bucket", "records_from_frame",
    "build_matrix", "period_pairs",
    "build_table", "interpolate",
    "extrapolate_table", "register_method", "available_methods",
    "enforce_bounds_and_monotonic",
    # Pipeline
    "prepare_data", "build_migration_matrices", "build_historical_tables",
    "extrapolate", "run_pipeline", "PipelineResult",
]
