#!/usr/bin/env python3
"""
Run orchestrator: baseline, N sequential cycles, summary and verdict.

Cycles never overlap; tag-based discovery and VRAM deltas are only
meaningful when one cycle owns the machine at a time.
"""

import json
import time
from pathlib import Path
from typing import Callable, Optional

from .comparator import RunReport, finalize_report, format_run_report, report_to_dict
from .cycle import CycleController
from .framework import HardAbort, RunLog, SafetyAbort, stamp
from .safety import SafetyMonitor
from .tagged_processes import TaggedProcessRegistry


class RunOrchestrator:
    """Sequences cycles and builds the RunReport."""

    def __init__(self, config, metrics, registry: TaggedProcessRegistry, log: RunLog,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.metrics = metrics
        self.registry = registry
        self.log = log
        self.sleep = sleep
        self.safety = SafetyMonitor(metrics, config.max_vram_mb)
        self.controller = CycleController(config, metrics, registry, self.safety, log, sleep=sleep)
        self.report: Optional[RunReport] = None

    def run(self) -> RunReport:
        """
        Execute the configured cycles.

        Returns the finalized report. On a hard abort the partial report is
        finalized and written, then the HardAbort propagates.
        """
        config = self.config
        report = RunReport(tolerance_mb=config.tolerance_mb, config=config.to_dict())
        self.report = report

        self.log.log(f"---- plateau auto start {stamp()} ----")
        for line in config.describe():
            self.log.log(line)

        try:
            self.log.log("Baseline snapshot...")
            report.baseline = self.metrics.snapshot(label="baseline")
            self._log_external_output()
            self.log.log(f"Baseline: {report.baseline.vram_text()} VRAM")
            if report.baseline.cache_stats_line:
                self.log.log(f"  smithay: {report.baseline.cache_stats_line}")
            self.log.log()

            try:
                self._run_cycles(report)
            except HardAbort as e:
                if e.partial_result is not None and e.partial_result not in report.per_cycle:
                    report.per_cycle.append(e.partial_result)
                report.abort_reason = str(e)
                report.final = self._last_after_snapshot(report)
                self._finish(report)
                raise

            report.final = self.metrics.snapshot(label="final")
            self._log_external_output()
            self._finish(report)
            return report
        finally:
            swept = self.registry.cleanup_all(grace=config.kill_grace)
            if swept:
                self.log.warn(f"Cleaned up {swept} leftover tagged processes")
            self.log.log(f"---- plateau auto end {stamp()} ----")

    def _run_cycles(self, report: RunReport):
        baseline = report.baseline
        for index in range(1, self.config.cycles + 1):
            result = self.controller.run_cycle(index, baseline)
            report.per_cycle.append(result)

            if result.after_verdict is not None and result.after_verdict.triggered:
                self.log.fail(f"Safety stop after cycle {index}: {result.after_verdict.message()}")
                raise SafetyAbort(
                    f"Safety stop after cycle {index}: {result.after_verdict.message()}",
                    verdict=result.after_verdict,
                )

            if result.cycle.aborted:
                self.log.log("Aborting remaining cycles due to safety stop.")
                break

    @staticmethod
    def _last_after_snapshot(report: RunReport):
        for result in reversed(report.per_cycle):
            if result.after is not None:
                return result.after
        return None

    def _log_external_output(self):
        outputs = getattr(self.metrics, 'outputs', None)
        if outputs:
            self.log.log(outputs[-1].rstrip("\n"))

    def _finish(self, report: RunReport):
        finalize_report(report)
        self.log.log(format_run_report(report))
        if self.config.json_report:
            path = Path(self.config.json_report).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(report_to_dict(report), indent=2) + "\n")
            self.log.log(f"Report written to {path}")
