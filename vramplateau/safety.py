#!/usr/bin/env python3
"""Safety monitor: compares current VRAM usage with a configured ceiling."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SafetyVerdict:
    """Result of one safety check."""
    triggered: bool
    observed_vram_mb: Optional[int] = None
    ceiling_mb: int = 0

    def message(self) -> str:
        if not self.triggered:
            return "VRAM within limit"
        return f"VRAM {self.observed_vram_mb}MB >= MAX_VRAM_MB {self.ceiling_mb}"


class SafetyMonitor:
    """
    Polls the metric source against `ceiling_mb`.

    A ceiling of 0 (or less) disables checking. Unknown VRAM never
    triggers: missing data is not a reason to abort.
    """

    def __init__(self, metrics, ceiling_mb: int):
        self.metrics = metrics
        self.ceiling_mb = ceiling_mb

    @property
    def enabled(self) -> bool:
        return self.ceiling_mb > 0

    def evaluate(self, vram_mb: Optional[int]) -> SafetyVerdict:
        """Verdict for an already measured value."""
        if not self.enabled or vram_mb is None:
            return SafetyVerdict(False, vram_mb, self.ceiling_mb)
        return SafetyVerdict(vram_mb >= self.ceiling_mb, vram_mb, self.ceiling_mb)

    def check(self) -> SafetyVerdict:
        if not self.enabled:
            return SafetyVerdict(False, None, self.ceiling_mb)
        return self.evaluate(self.metrics.read_vram_mb())
