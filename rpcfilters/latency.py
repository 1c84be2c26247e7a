"""Percentile estimation from latency histogram buckets."""

from __future__ import annotations

from dataclasses import dataclass

from rpcfilters.metrics import Buckets


@dataclass
class LatencyHistogram:
    """Estimates percentiles by interpolating inside histogram buckets."""

    buckets: Buckets

    def total_count(self) -> int:
        return sum(self.buckets.counts)

    def percentile(self, p: float) -> float:
        """Estimate the value at fraction ``p`` (0.99 for p99)."""
        boundaries = self.buckets.boundaries
        counts = self.buckets.counts
        total = self.total_count()
        target = p * total

        insert_idx = 0
        running = 0
        for i, c in enumerate(counts):
            running += c
            if running >= target:
                insert_idx = i
                break

        # Below the first boundary: estimate with the upper bound.
        if insert_idx == 0:
            return boundaries[0]
        # Past the last boundary: estimate with the lower bound.
        if insert_idx == len(boundaries):
            return boundaries[-1]

        below = sum(counts[:insert_idx])
        through = below + counts[insert_idx]
        lower = below / total
        upper = through / total
        interpolation = (p - lower) / (upper - lower)
        return boundaries[insert_idx - 1] * (1 + interpolation)