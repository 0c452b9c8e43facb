"""Small numeric helpers shared by the decision components."""

from __future__ import annotations

import math
from typing import Sequence


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def mean(xs: Sequence[float]) -> float:
    return sum(xs) / max(1, len(xs))


def std(xs: Sequence[float]) -> float:
    """Population standard deviation; 0.0 for an empty series."""
    m = mean(xs)
    return math.sqrt(mean([(x - m) ** 2 for x in xs]))


def safe_log_ratio(a: float, b: float) -> float:
    if a <= 0 or b <= 0:
        return 0.0
    return math.log(a / b)
