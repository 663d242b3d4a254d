"""
pdcurve.errors — error taxonomy for the PD engine.

Three families, each carrying enough identity (product category, segment,
period pair, age bucket) to pinpoint the failing slice:

  ConfigurationError    fatal; raised before any computation proceeds
  DataSufficiencyError  per-segment; collected, never aborts the run
  NumericAnomaly        never raised; logged and kept in diagnostics
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class PDEngineError(Exception):
    """Base class. Identity fields are all optional."""

    def __init__(
        self,
        message: str,
        product_category: Optional[str] = None,
        segment: Optional[str] = None,
        period_from: Optional[str] = None,
        period_to: Optional[str] = None,
        age: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.product_category = product_category
        self.segment = segment
        self.period_from = period_from
        self.period_to = period_to
        self.age = age

    def identity(self) -> str:
        parts = []
        if self.product_category is not None or self.segment is not None:
            parts.append(f"{self.product_category}/{self.segment}")
        if self.period_from is not None or self.period_to is not None:
            parts.append(f"{self.period_from}->{self.period_to}")
        if self.age is not None:
            parts.append(f"age={self.age}")
        return ", ".join(parts)

    def __str__(self) -> str:
        ident = self.identity()
        return f"{self.message} [{ident}]" if ident else self.message


class ConfigurationError(PDEngineError, ValueError):
    """Malformed buckets, invalid policy, mismatched bucket dimension."""


class DataSufficiencyError(PDEngineError):
    """A product category/segment without a single historical observation."""


class NumericAnomaly(PDEngineError):
    """
    Row check-sum off by more than the tolerance, or a curve value that had
    to be clamped. Recorded, not raised.
    """


@dataclass(frozen=True)
class SegmentFailure:
    """Structured failure for one unit of work."""

    stage: str
    product_category: str
    segment: str
    message: str
    period_from: Optional[str] = None
    period_to: Optional[str] = None
    age: Optional[int] = None

    @classmethod
    def from_error(cls, stage: str, err: PDEngineError) -> "SegmentFailure":
        return cls(
            stage=stage,
            product_category=err.product_category or "",
            segment=err.segment or "",
            message=err.message,
            period_from=err.period_from,
            period_to=err.period_to,
            age=err.age,
        )


@dataclass
class StageResult(Generic[T]):
    """Success payload plus per-segment failures of one pipeline stage."""

    results: List[T] = field(default_factory=list)
    failures: List[SegmentFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def __len__(self) -> int:
        return len(self.results)
