"""
pdcurve.extrapolation — Stage 4: full-horizon PD curves.

Extends each interpolated historical curve beyond its highest observed
age. Ages up to HighestMaturity are taken from the interpolated table as
they are; only later ages are projected, and only from the trend of the
interpolated curve itself.

Methods
-------
    linear       continue the slope of the last observed step
    geometric    constant conditional default rate of the last step,
                 PD(k) = 1 - (1 - PD_last)(1 - h)^k
    lognormal    geometric up to a threshold, log-scaled exponent beyond
    survival     average conditional default rate over the whole curve,
                 accumulated through the survival product
    exponential  least-squares fit of 1 - a·exp(-b·t) (scipy curve_fit)

Whatever the method, the emitted curve is clamped to [0, 1] and made
non-decreasing. Every value changed by that pass is recorded.

New methods plug in through ``register_method``.
"""

from __future__ import annotations

import logging
import warnings
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from .config import ExtrapolationConfig
from .errors import ConfigurationError, DataSufficiencyError, NumericAnomaly
from .types import ExtrapolatedPDCurve, HistoricalPDTable

logger = logging.getLogger(__name__)

# history (ages 0..HM), number of ages to project, config -> projected values
Method = Callable[[np.ndarray, int, ExtrapolationConfig], np.ndarray]

_METHODS: Dict[str, Method] = {}


def register_method(name: str) -> Callable[[Method], Method]:
    def wrap(fn: Method) -> Method:
        _METHODS[name] = fn
        return fn
    return wrap


def get_method(name: str) -> Method:
    try:
        return _METHODS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown extrapolation method {name!r}; available: {available_methods()}"
        ) from None


def available_methods() -> List[str]:
    return sorted(_METHODS)


# ═══════════════════════════════════════════════════════════════════════════════
# Methods
# ═══════════════════════════════════════════════════════════════════════════════


@register_method("linear")
def linear_trend(history: np.ndarray, n_ahead: int, config: ExtrapolationConfig) -> np.ndarray:
    """Last value plus k times the last observed step."""
    slope = history[-1] - history[-2] if len(history) >= 2 else 0.0
    k = np.arange(1, n_ahead + 1, dtype=np.float64)
    return history[-1] + slope * k


@register_method("geometric")
def geometric(history: np.ndarray, n_ahead: int, config: ExtrapolationConfig) -> np.ndarray:
    last = history[-1]
    h = _step_hazard(history)
    k = np.arange(1, n_ahead + 1, dtype=np.float64)
    return 1.0 - (1.0 - last) * (1.0 - h) ** k


@register_method("lognormal")
def lognormal(history: np.ndarray, n_ahead: int, config: ExtrapolationConfig) -> np.ndarray:
    """
    Geometric for the first ``lognormal_threshold`` steps; afterwards the
    exponent grows as k·ln(k)/ln(threshold), fattening the long tail.
    """
    last = history[-1]
    h = _step_hazard(history)
    threshold = config.lognormal_threshold
    k = np.arange(1, n_ahead + 1, dtype=np.float64)
    exponent = np.where(k <= threshold, k, k * np.log(k) / np.log(threshold))
    return 1.0 - (1.0 - last) * (1.0 - h) ** exponent


@register_method("survival")
def survival_rate(history: np.ndarray, n_ahead: int, config: ExtrapolationConfig) -> np.ndarray:
    """
    Average conditional default rate over the observed curve,
        h = 1 - ((1 - PD_last) / (1 - PD_0)) ** (1 / HM),
    then marginal PD(k) = h · S(k-1) and PD(k) = PD(k-1) + marginal PD(k).
    """
    first, last = history[0], history[-1]
    span = len(history) - 1
    if span == 0 or first >= 1.0:
        h = 0.0
    else:
        ratio = max(1.0 - last, 0.0) / (1.0 - first)
        h = float(np.clip(1.0 - ratio ** (1.0 / span), 0.0, 1.0))

    survival = max(1.0 - last, 0.0) * np.cumprod(np.full(n_ahead, 1.0 - h))
    prior = np.concatenate(([max(1.0 - last, 0.0)], survival[:-1]))
    marginal = h * prior
    return last + np.cumsum(marginal)


@register_method("exponential")
def exponential_fit(history: np.ndarray, n_ahead: int, config: ExtrapolationConfig) -> np.ndarray:
    """
    Fit PD(t) = 1 - a·exp(-b·t) over ages 0..HM and continue it from the
    last observed value. Falls back to ``linear`` when there are too few
    points or the fit does not converge.
    """
    if len(history) < config.exponential_min_points:
        return linear_trend(history, n_ahead, config)

    t = np.arange(len(history), dtype=np.float64)

    def f(x, a, b):
        return 1.0 - a * np.exp(-b * x)

    p0 = (max(1.0 - history[0], 1e-6), 0.05)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            (a, b), _ = curve_fit(f, t, history, p0=p0, bounds=([0.0, 0.0], [1.0, np.inf]))
    except (RuntimeError, ValueError) as exc:
        logger.debug("Exponential fit failed (%s); using linear trend", exc)
        return linear_trend(history, n_ahead, config)

    ahead = np.arange(len(history), len(history) + n_ahead, dtype=np.float64)
    return history[-1] + (f(ahead, a, b) - f(t[-1], a, b))


def _step_hazard(history: np.ndarray) -> float:
    """Conditional default rate implied by the last observed step."""
    if len(history) < 2 or history[-2] >= 1.0:
        return 0.0
    return float(np.clip((history[-1] - history[-2]) / (1.0 - history[-2]), 0.0, 1.0))


# ═══════════════════════════════════════════════════════════════════════════════
# Curve assembly
# ═══════════════════════════════════════════════════════════════════════════════


def enforce_bounds_and_monotonic(values: np.ndarray) -> Tuple[np.ndarray, Tuple[int, ...], List[int]]:
    """
    Clamp to [0, 1], then lift every value to at least its predecessor.

    Returns (curve, ages changed, ages that were outside [0, 1]).
    """
    raw = np.asarray(values, dtype=np.float64)
    out_of_range = [
        int(a) for a in np.flatnonzero((raw < 0.0) | (raw > 1.0) | np.isnan(raw))
    ]
    clamped = np.clip(np.nan_to_num(raw, nan=0.0), 0.0, 1.0)
    fixed = np.maximum.accumulate(clamped)
    changed = tuple(int(a) for a in np.flatnonzero(fixed != raw))
    return fixed, changed, out_of_range


def extrapolate_curve(
    table: HistoricalPDTable,
    method: str,
    config: Optional[ExtrapolationConfig] = None,
) -> ExtrapolatedPDCurve:
    config = config or ExtrapolationConfig()
    fn = get_method(method)
    if table.highest_maturity is None:
        raise DataSufficiencyError(
            "No historical observations; cannot extrapolate",
            product_category=table.product_category, segment=table.segment,
        )

    history = table.interpolated
    hm = table.highest_maturity
    horizon = config.horizon
    pre_efa = None
    if horizon <= hm:
        raw = history[: horizon + 1].copy()
    else:
        n_ahead = horizon - hm
        tail = np.asarray(fn(history, n_ahead, config), dtype=np.float64)
        if config.efa_factors:
            pre_efa = np.concatenate([history, tail])
            tail = tail * np.array([config.efa_for(k) for k in range(1, n_ahead + 1)])
        raw = np.concatenate([history, tail])

    values, changed, out_of_range = enforce_bounds_and_monotonic(raw)
    anomalies = []
    if out_of_range:
        shown = ", ".join(f"age {a}: {raw[a]:.6g}" for a in out_of_range[:5])
        anomalies.append(NumericAnomaly(
            f"{method}: values outside [0, 1] before clamping ({shown})",
            product_category=table.product_category, segment=table.segment,
            age=out_of_range[0],
        ))
    rewritten = [a for a in changed if a <= hm]
    if rewritten:
        anomalies.append(NumericAnomaly(
            f"{method}: decreasing history raised at ages {rewritten}",
            product_category=table.product_category, segment=table.segment,
            age=rewritten[0],
        ))
    for a in anomalies:
        logger.warning("NumericAnomaly: %s", a)

    curve = ExtrapolatedPDCurve(
        product_category=table.product_category,
        segment=table.segment,
        method=method,
        values=values,
        highest_maturity=hm,
        adjusted_ages=changed,
    )
    curve.diagnostics["anomalies"] = anomalies
    if pre_efa is not None:
        # same curve before the economic factor adjustment, for audit
        curve.diagnostics["pre_efa_values"] = enforce_bounds_and_monotonic(pre_efa)[0]
    return curve


def extrapolate_table(
    table: HistoricalPDTable,
    config: Optional[ExtrapolationConfig] = None,
) -> List[ExtrapolatedPDCurve]:
    """One curve per configured method for one product category/segment."""
    config = config or ExtrapolationConfig()
    for name in config.methods:
        get_method(name)
    curves = [extrapolate_curve(table, name, config) for name in config.methods]
    logger.debug(
        "Extrapolated %s/%s (HM=%s) to horizon %d with %s",
        table.product_category, table.segment, table.highest_maturity,
        config.horizon, list(config.methods),
    )
    return curves
