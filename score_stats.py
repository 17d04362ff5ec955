"""
Descriptive statistics over lists of scores.

All helpers drop ``None``/NaN before computing and return ``None`` (never NaN)
when a statistic is undefined. Standard deviation and variance are population
statistics (divide by N).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

import numpy as np

# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------


def clean(values: Iterable[float | None]) -> list[float]:
    """Drop None and NaN entries, coercing the rest to float."""
    out: list[float] = []
    for v in values:
        if v is None:
            continue
        f = float(v)
        if math.isnan(f):
            continue
        out.append(f)
    return out


# ---------------------------------------------------------------------------
# Scalar statistics
# ---------------------------------------------------------------------------


def mean(values: Iterable[float | None]) -> float | None:
    vals = clean(values)
    return float(np.mean(vals)) if vals else None


def variance(values: Iterable[float | None]) -> float | None:
    vals = clean(values)
    return float(np.var(vals)) if vals else None


def std(values: Iterable[float | None]) -> float | None:
    vals = clean(values)
    return float(np.std(vals)) if vals else None


def median(values: Iterable[float | None]) -> float | None:
    vals = clean(values)
    return float(np.median(vals)) if vals else None


def pearson(x: list[float | None], y: list[float | None]) -> float | None:
    """Pearson correlation of paired values.

    Pairs where either side is missing are dropped. Returns None for fewer than
    two pairs, mismatched lengths, or a zero-variance input.
    """
    if len(x) != len(y):
        return None
    pairs = [(a, b) for a, b in zip(x, y) if a is not None and b is not None]
    if len(pairs) < 2:
        return None
    xs = np.array([p[0] for p in pairs], dtype=float)
    ys = np.array([p[1] for p in pairs], dtype=float)
    if np.isclose(xs.std(), 0.0) or np.isclose(ys.std(), 0.0):
        return None
    return float(np.corrcoef(xs, ys)[0, 1])


# ---------------------------------------------------------------------------
# Aggregate summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregateStatistics:
    mean: float | None = None
    std: float | None = None
    median: float | None = None
    min: float | None = None
    max: float | None = None
    count: int = 0
    values: tuple[float, ...] = ()

    def to_dict(self) -> dict:
        return {
            "mean": self.mean,
            "std": self.std,
            "median": self.median,
            "min": self.min,
            "max": self.max,
            "count": self.count,
            "values": list(self.values),
        }


EMPTY_STATS = AggregateStatistics()


def describe(values: Iterable[float | None]) -> AggregateStatistics:
    """Summarize non-null scores; an empty list yields the all-null zero state."""
    vals = clean(values)
    if not vals:
        return EMPTY_STATS
    arr = np.array(vals, dtype=float)
    return AggregateStatistics(
        mean=float(arr.mean()),
        std=float(arr.std()),
        median=float(np.median(arr)),
        min=float(arr.min()),
        max=float(arr.max()),
        count=len(vals),
        values=tuple(vals),
    )


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------

SCORE_BINS: list[tuple[str, float, float]] = [
    ("0-20%", 0.0, 0.2),
    ("20-40%", 0.2, 0.4),
    ("40-60%", 0.4, 0.6),
    ("60-80%", 0.6, 0.8),
    ("80-100%", 0.8, 1.01),
]


def score_distribution(values: Iterable[float | None]) -> list[dict]:
    """Histogram over five fixed score bands; the top band includes 1.0."""
    vals = clean(values)
    total = len(vals)
    dist = []
    for label, lo, hi in SCORE_BINS:
        n = sum(1 for v in vals if lo <= v < hi)
        dist.append({
            "range": label,
            "min": lo,
            "max": hi,
            "count": n,
            "percentage": n / total * 100 if total else 0.0,
        })
    return dist
