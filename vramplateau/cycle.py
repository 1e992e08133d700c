#!/usr/bin/env python3
"""
Cycle controller: one open -> measure -> close -> wait -> measure cycle.

Phases run strictly in order. The only ways out of the sequence are the
soft abort while opening (skip to closing) and the hard aborts while
waiting for windows to disappear (SafetyAbort, ConvergenceTimeout).
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .comparator import compute_delta
from .framework import ConvergenceTimeout, HardAbort, RunLog, SafetyAbort
from .log_parser import diff_cache_stats, parse_cache_stats, stats_payload
from .metrics import MetricSnapshot
from .safety import SafetyMonitor, SafetyVerdict
from .tagged_processes import TaggedProcessRegistry


class CyclePhase(Enum):
    OPENING = "opening"
    PEAK_MEASURE = "peak_measure"
    CLOSING = "closing"
    CONVERGENCE_WAIT = "convergence_wait"
    AFTER_MEASURE = "after_measure"
    REPORT = "report"


@dataclass
class Cycle:
    index: int
    tag: str
    target_window_count: int
    aborted: bool = False


@dataclass
class CycleResult:
    """What one cycle measured."""
    cycle: Cycle
    spawned: int = 0
    tagged_found: int = 0
    peak: Optional[MetricSnapshot] = None
    after: Optional[MetricSnapshot] = None
    delta_mb: Optional[int] = None
    converged: Optional[bool] = None  # None: wait disabled
    remaining_windows: Optional[int] = None
    cache_stats_delta: Dict[str, int] = field(default_factory=dict)
    abort_verdict: Optional[SafetyVerdict] = None
    after_verdict: Optional[SafetyVerdict] = None
    phases: List[CyclePhase] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'index': self.cycle.index,
            'tag': self.cycle.tag,
            'target_window_count': self.cycle.target_window_count,
            'aborted': self.cycle.aborted,
            'spawned': self.spawned,
            'tagged_found': self.tagged_found,
            'peak': self.peak.to_dict() if self.peak else None,
            'after': self.after.to_dict() if self.after else None,
            'delta_mb': self.delta_mb,
            'converged': self.converged,
            'remaining_windows': self.remaining_windows,
            'cache_stats_delta': self.cache_stats_delta,
        }


class CycleController:
    """Runs single cycles against a fixed run-level baseline."""

    def __init__(self, config, metrics, registry: TaggedProcessRegistry,
                 safety: SafetyMonitor, log: RunLog,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.metrics = metrics
        self.registry = registry
        self.safety = safety
        self.log = log
        self.sleep = sleep
        self.phase: Optional[CyclePhase] = None

    def _enter(self, result: CycleResult, phase: CyclePhase):
        self.phase = phase
        result.phases.append(phase)

    def _log_snapshot_output(self):
        # External helpers print their own report; keep it in the log verbatim
        outputs = getattr(self.metrics, 'outputs', None)
        if outputs:
            self.log.log(outputs[-1].rstrip("\n"))

    def run_cycle(self, index: int, baseline: MetricSnapshot) -> CycleResult:
        config = self.config
        cycle = Cycle(index=index, tag=self.registry.new_tag(index),
                      target_window_count=config.windows_per_cycle)
        result = CycleResult(cycle=cycle)

        # 1. Opening
        self._enter(result, CyclePhase.OPENING)
        self.log.log(f"Cycle {index}/{config.cycles}: opening {cycle.target_window_count} windows...")
        for _ in range(cycle.target_window_count):
            self.registry.spawn_tagged(config.open_cmd, cycle.tag)
            result.spawned += 1
            self.sleep(config.open_delay)
            verdict = self.safety.check()
            if verdict.triggered:
                self.log.fail(f"Safety stop: {verdict.message()}")
                self.log.log(f"Aborting window creation early due to VRAM safety stop "
                             f"({result.spawned}/{cycle.target_window_count} opened).")
                cycle.aborted = True
                result.abort_verdict = verdict
                break

        # 2. Peak measure
        if not cycle.aborted:
            self._enter(result, CyclePhase.PEAK_MEASURE)
            self.sleep(config.sleep_open)
            self.log.log("Snapshot (peak)")
            result.peak = self.metrics.snapshot(label=f"cycle{index}-peak")
            self._log_snapshot_output()
            self.log.log(f"  Peak: {result.peak.vram_text()} VRAM")
        else:
            self.log.log("Skipping peak snapshot due to safety stop.")

        # 3. Closing
        self._enter(result, CyclePhase.CLOSING)
        self.log.log("Closing windows...")
        pids = self.registry.find_by_tag(cycle.tag)
        result.tagged_found = len(pids)
        self.log.log(f"Found {len(pids)} tagged processes")
        self.registry.terminate(pids, grace=config.kill_grace)
        self.sleep(config.sleep_close)
        self.registry.reap()

        # 4. Convergence wait
        if config.wait_windows_timeout > 0:
            self._enter(result, CyclePhase.CONVERGENCE_WAIT)
            try:
                self._wait_for_windows(result)
            except HardAbort as e:
                e.partial_result = result
                raise

        # 5. After measure
        self._enter(result, CyclePhase.AFTER_MEASURE)
        self.log.log("Snapshot (after close)")
        result.after = self.metrics.snapshot(label=f"cycle{index}-after")
        self._log_snapshot_output()

        # 6. Report
        self._enter(result, CyclePhase.REPORT)
        result.delta_mb = compute_delta(baseline, result.after)
        result.cache_stats_delta = diff_cache_stats(
            parse_cache_stats(baseline.cache_stats_line),
            parse_cache_stats(result.after.cache_stats_line),
        )
        result.after_verdict = self.safety.evaluate(result.after.vram_used_mb)
        self._report(result, baseline)
        return result

    def _wait_for_windows(self, result: CycleResult):
        config = self.config
        basename = config.open_cmd_basename
        target = config.target_windows_after
        self.log.log(f"Waiting for windows to drop to <= {target} ...")

        waited = 0.0
        count = None
        while waited < config.wait_windows_timeout:
            self.registry.reap()
            count = self.registry.count_by_executable_basename(basename)
            result.remaining_windows = count
            if count <= target:
                result.converged = True
                self.log.log(f"Windows count reached {count}")
                return
            verdict = self.safety.check()
            if verdict.triggered:
                self.log.fail(f"Safety stop during close wait ({verdict.message()}). Forcing exit.")
                raise SafetyAbort(
                    f"Safety stop during close wait: {verdict.message()}", verdict=verdict
                )
            self.sleep(config.wait_windows_poll)
            waited += config.wait_windows_poll

        result.converged = False
        self.log.fail("Window count did not drop in time. Aborting to avoid VRAM exhaustion.")
        raise ConvergenceTimeout(
            f"{count} '{basename}' processes still alive after "
            f"{config.wait_windows_timeout:g}s (target <= {target})",
            remaining=count,
        )

    def _report(self, result: CycleResult, baseline: MetricSnapshot):
        label = f"Cycle {result.cycle.index}"
        if result.delta_mb is not None:
            self.log.log(f"{label} delta: VRAM_MB {result.after.vram_used_mb} "
                         f"(Δ {result.delta_mb:+d} from baseline)")
        else:
            self.log.log(f"{label} delta: VRAM_MB unknown")

        base_stats = stats_payload(baseline.cache_stats_line)
        after_stats = stats_payload(result.after.cache_stats_line)
        if base_stats or after_stats:
            self.log.log(f"{label} smithay stats baseline: {base_stats or '<none>'}")
            self.log.log(f"{label} smithay stats after:    {after_stats or '<none>'}")
        if result.cache_stats_delta:
            changes = " ".join(f"{k}={v:+d}" for k, v in result.cache_stats_delta.items())
            self.log.log(f"{label} smithay stats change: {changes}")
        self.log.log()
