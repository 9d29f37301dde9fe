"""Histograms with quantile and inter-quantile mean calculations."""

from __future__ import annotations

import math
from itertools import accumulate
from typing import Iterable


class Histogram:
    """A histogram stored as cumulative frequencies."""

    def __init__(self, counts: Iterable[int]) -> None:
        counts = [int(c) for c in counts]
        if not counts:
            raise ValueError("histogram needs at least one bin")
        self._cumulative = list(accumulate(counts, initial=0))

    def bins(self) -> int:
        return len(self._cumulative) - 1

    def total(self) -> int:
        return self._cumulative[-1]

    def cumulative_freq(self, bin: float) -> int:
        """Cumulative frequency up to a fractional point in a bin."""
        if bin <= 0:
            return 0
        if bin >= self.bins():
            return self.total()
        cum = self._cumulative
        b = int(bin)
        return int(cum[b] + (bin - b) * (cum[b + 1] - cum[b]))

    def quantile(self, q: float, first: int = -1, last: int = -1) -> float:
        """Return the fractional bin of the point q (0 <= q <= 1) through the histogram."""
        cum = self._cumulative
        if first == -1:
            first = 0
        if last == -1:
            last = len(cum) - 2
        if first > last:
            raise ValueError("first bin must not be after last bin")
        items = int(q * self.total())
        while first < last:
            middle = (first + last) // 2
            if cum[middle + 1] > items:
                last = middle
            else:
                first = middle + 1
        width = cum[first + 1] - cum[first]
        frac = 0.0 if width == 0 else (items - cum[first]) / width
        return first + frac

    def inter_quantile_mean(self, q_lo: float, q_hi: float) -> float:
        """Return the average bin value between two quantiles."""
        if not q_hi > q_lo:
            raise ValueError("q_hi must be greater than q_lo")
        cum = self._cumulative
        p_lo = self.quantile(q_lo)
        p_hi = self.quantile(q_hi, int(p_lo))
        sum_bin_freq = 0.0
        cumul_freq = 0.0
        p_next = math.floor(p_lo) + 1.0
        while p_next <= math.ceil(p_hi):
            bin = math.floor(p_lo)
            freq = (cum[bin + 1] - cum[bin]) * (min(p_next, p_hi) - p_lo)
            sum_bin_freq += bin * freq
            cumul_freq += freq
            p_lo = p_next
            p_next += 1.0
        if cumul_freq == 0:
            return math.nan
        # add 0.5 to give an average for bin mid-points
        return sum_bin_freq / cumul_freq + 0.5