"""
Closed-form sums over integer composition ranges.

All ranges are inclusive [n1, n2]; an empty range (n2 < n1) sums to 0.
"""

from __future__ import annotations

import numpy as np


def _span(n1: int, n2: int) -> np.ndarray:
    if n2 < n1:
        return np.zeros(0, dtype=np.float64)
    return np.arange(int(n1), int(n2) + 1, dtype=np.float64)


def first_order_sum(n1: int, n2: int, mean: float) -> float:
    """sum_{n=n1}^{n2} (n - mean)."""
    if n2 < n1:
        return 0.0
    count = float(n2 - n1 + 1)
    return float(n1 + n2) * count / 2.0 - float(mean) * count


def second_order_sum(n1: int, n2: int, mean: float) -> float:
    """sum_{n=n1}^{n2} (n - mean)^2."""
    n = _span(n1, n2)
    return float(np.sum((n - mean) * (n - mean)))


def second_order_offset_sum(n1: int, n2: int, mean1: float, mean2: float, offset: int) -> float:
    """
    sum_{n=n1}^{n2} (n - mean1) * (n + offset - mean2).

    Used when n runs over one group's compositions and the partner group sits
    at a fixed shift; pass offset = -shift to land in the partner's range.
    """
    n = _span(n1, n2)
    return float(np.sum((n - mean1) * (n + offset - mean2)))
