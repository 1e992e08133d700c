#!/usr/bin/env python3
"""
Report math for VRAM plateau runs.

Everything here is a pure function of captured snapshots, so a report
can be recomputed at any time and always yields the same verdict.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from .metrics import MetricSnapshot

DEFAULT_TOLERANCE_MB = 10


class Verdict(Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNKNOWN = "UNKNOWN"


@dataclass
class RunReport:
    """Baseline, per-cycle results and the final verdict of one run."""
    baseline: Optional[MetricSnapshot] = None
    per_cycle: List = field(default_factory=list)  # CycleResult
    final: Optional[MetricSnapshot] = None
    total_delta_mb: Optional[int] = None
    verdict: Verdict = Verdict.UNKNOWN
    tolerance_mb: int = DEFAULT_TOLERANCE_MB
    abort_reason: Optional[str] = None
    leak_slope_mb_per_cycle: Optional[float] = None
    config: Dict = field(default_factory=dict)

    @property
    def aborted(self) -> bool:
        return self.abort_reason is not None


def compute_delta(baseline: Optional[MetricSnapshot],
                  after: Optional[MetricSnapshot]) -> Optional[int]:
    """after - baseline in MB; None when either side is unknown."""
    if baseline is None or after is None:
        return None
    if baseline.vram_used_mb is None or after.vram_used_mb is None:
        return None
    return after.vram_used_mb - baseline.vram_used_mb


def classify(total_delta_mb: Optional[int], tolerance_mb: int = DEFAULT_TOLERANCE_MB) -> Verdict:
    if total_delta_mb is None:
        return Verdict.UNKNOWN
    if total_delta_mb <= tolerance_mb:
        return Verdict.PASS
    return Verdict.FAIL


def leak_slope(per_cycle) -> Optional[float]:
    """
    Least-squares growth of after-close VRAM in MB per cycle.

    Cycles with unknown VRAM are ignored; fewer than two known points
    gives None.
    """
    points = [(r.cycle.index, r.after.vram_used_mb) for r in per_cycle
              if r.after is not None and r.after.vram_used_mb is not None]
    if len(points) < 2:
        return None
    xs = np.array([p[0] for p in points], dtype=float)
    ys = np.array([p[1] for p in points], dtype=float)
    if np.ptp(xs) == 0:
        return None
    slope, _ = np.polyfit(xs, ys, 1)
    return float(slope)


def finalize_report(report: RunReport) -> RunReport:
    """Fill total delta, verdict and slope from the captured snapshots."""
    report.total_delta_mb = compute_delta(report.baseline, report.final)
    report.verdict = classify(report.total_delta_mb, report.tolerance_mb)
    report.leak_slope_mb_per_cycle = leak_slope(report.per_cycle)
    return report


def _fmt_delta(delta: Optional[int]) -> str:
    return "unknown" if delta is None else f"{delta:+d} MB"


def format_run_report(report: RunReport) -> str:
    """Format the run summary as human-readable text."""
    lines = ["=== Summary ==="]
    lines.append(f"  Baseline: {report.baseline.vram_text() if report.baseline else 'unknown'}")
    lines.append(f"  Final:    {report.final.vram_text() if report.final else 'unknown'}")
    for result in report.per_cycle:
        flag = " (aborted)" if result.cycle.aborted else ""
        lines.append(
            f"  Cycle {result.cycle.index}: after {result.after.vram_text() if result.after else 'unknown'}, "
            f"delta {_fmt_delta(result.delta_mb)}{flag}"
        )
    windows = report.per_cycle[0].cycle.target_window_count if report.per_cycle else 0
    lines.append(
        f"  Total delta: {_fmt_delta(report.total_delta_mb)} after "
        f"{len(report.per_cycle)} cycles of {windows} windows"
    )
    if report.leak_slope_mb_per_cycle is not None:
        lines.append(f"  Trend: {report.leak_slope_mb_per_cycle:+.1f} MB/cycle")
    if report.abort_reason:
        lines.append(f"  Aborted: {report.abort_reason}")
    lines.append("")

    if report.verdict is Verdict.PASS:
        lines.append(f"✓ PASS - VRAM is stable (delta <= {report.tolerance_mb} MB)")
    elif report.verdict is Verdict.FAIL:
        lines.append(f"✗ FAIL - VRAM grew by {report.total_delta_mb} MB (likely leaking)")
    else:
        lines.append("⚠ UNKNOWN - VRAM could not be measured; no verdict")
    return "\n".join(lines)


def report_to_dict(report: RunReport) -> Dict:
    """Serializable view of a report (for --json-report)."""
    return {
        'config': report.config,
        'baseline': report.baseline.to_dict() if report.baseline else None,
        'per_cycle': [r.to_dict() for r in report.per_cycle],
        'final': report.final.to_dict() if report.final else None,
        'total_delta_mb': report.total_delta_mb,
        'tolerance_mb': report.tolerance_mb,
        'verdict': report.verdict.value,
        'abort_reason': report.abort_reason,
        'leak_slope_mb_per_cycle': report.leak_slope_mb_per_cycle,
    }
