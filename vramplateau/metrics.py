#!/usr/bin/env python3
"""
Metric source: GPU memory usage and compositor cache statistics.

Both readings are best-effort. A missing GPU tool or compositor log
degrades the report (values become unknown), it never stops the run.
"""

import shlex
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .framework import stamp
from .log_parser import (
    CACHE_STATS_MARKER,
    RENDER_LOG_MARKER,
    last_matching_line,
    parse_snapshot_output,
)

SYSFS_DRM = Path("/sys/class/drm")


@dataclass(frozen=True)
class MetricSnapshot:
    """One immutable measurement."""
    timestamp: float
    vram_used_mb: Optional[int] = None
    cache_stats_line: Optional[str] = None
    render_log_line: Optional[str] = None
    label: str = ""

    @property
    def vram_known(self) -> bool:
        return self.vram_used_mb is not None

    def vram_text(self) -> str:
        return f"{self.vram_used_mb} MB" if self.vram_used_mb is not None else "unknown"

    def to_dict(self) -> dict:
        return {
            'label': self.label,
            'timestamp': datetime.fromtimestamp(self.timestamp).isoformat(),
            'vram_used_mb': self.vram_used_mb,
            'cache_stats_line': self.cache_stats_line,
            'render_log_line': self.render_log_line,
        }


def _parse_first_int(text: str) -> Optional[int]:
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            return int(float(line))
        except ValueError:
            return None
    return None


def nvidia_smi_vram_mb(timeout: float = 5.0) -> Optional[int]:
    """Used memory of the first GPU via nvidia-smi, in MiB."""
    smi = shutil.which("nvidia-smi")
    if smi is None:
        return None
    try:
        result = subprocess.run(
            [smi, "--query-gpu=memory.used", "--format=csv,noheader,nounits"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return _parse_first_int(result.stdout)


def _card_index(card: Path) -> int:
    suffix = card.name[len("card"):]
    return int(suffix) if suffix.isdigit() else sys.maxsize


def sysfs_vram_mb(drm_root: Path = SYSFS_DRM) -> Optional[int]:
    """Used VRAM of the first DRM card exposing mem_info_vram_used (amdgpu, xe)."""
    try:
        # card2 before card10
        cards = sorted((p for p in Path(drm_root).iterdir()
                        if p.name.startswith("card") and "-" not in p.name),
                       key=_card_index)
    except OSError:
        return None
    for card in cards:
        used = card / "device" / "mem_info_vram_used"
        try:
            value = int(used.read_text().strip())
        except (OSError, ValueError):
            continue
        return value // (1024 * 1024)
    return None


class MetricSource:
    """Reads VRAM usage and compositor log statistics."""

    def __init__(self, compositor_log: str, gpu_backend: str = "auto",
                 drm_root: Path = SYSFS_DRM,
                 clock: Callable[[], float] = time.time):
        self.compositor_log = Path(compositor_log)
        self.gpu_backend = gpu_backend
        self.drm_root = drm_root
        self.clock = clock

    def read_vram_mb(self) -> Optional[int]:
        """Used VRAM in MB, or None when no query method works."""
        if self.gpu_backend == 'none':
            return None
        if self.gpu_backend in ('auto', 'nvidia-smi'):
            vram = nvidia_smi_vram_mb()
            if vram is not None or self.gpu_backend == 'nvidia-smi':
                return vram
        return sysfs_vram_mb(self.drm_root)

    def read_cache_stats(self) -> Optional[str]:
        """Most recent cache stats line from the compositor log, if any."""
        return last_matching_line(self.compositor_log, CACHE_STATS_MARKER)

    def read_render_log(self) -> Optional[str]:
        return last_matching_line(self.compositor_log, RENDER_LOG_MARKER)

    def snapshot(self, label: str = "") -> MetricSnapshot:
        return MetricSnapshot(
            timestamp=self.clock(),
            vram_used_mb=self.read_vram_mb(),
            cache_stats_line=self.read_cache_stats(),
            render_log_line=self.read_render_log(),
            label=label,
        )


class ExternalSnapshotSource(MetricSource):
    """
    Metric source backed by an external snapshot helper.

    The helper prints `VRAM_MB=<n>` and optionally the cache stats line
    (see `vram-snapshot`). Its raw output is kept in `outputs` so the
    orchestrator can log it verbatim.
    """

    def __init__(self, snapshot_cmd: str, compositor_log: str, timeout: float = 30.0,
                 clock: Callable[[], float] = time.time):
        super().__init__(compositor_log, gpu_backend='none', clock=clock)
        self.snapshot_cmd = snapshot_cmd
        self.timeout = timeout
        self.outputs: List[str] = []

    def _run(self) -> str:
        try:
            result = subprocess.run(
                shlex.split(self.snapshot_cmd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            return f"(snapshot failed: {e})"
        return (result.stdout or "") + (result.stderr or "")

    def read_vram_mb(self) -> Optional[int]:
        vram, _ = parse_snapshot_output(self._run())
        return vram

    def snapshot(self, label: str = "") -> MetricSnapshot:
        output = self._run()
        self.outputs.append(output)
        vram, stats = parse_snapshot_output(output)
        return MetricSnapshot(
            timestamp=self.clock(),
            vram_used_mb=vram,
            cache_stats_line=stats if stats is not None else self.read_cache_stats(),
            render_log_line=self.read_render_log(),
            label=label,
        )


def format_snapshot(snapshot: MetricSnapshot, when: Optional[str] = None) -> str:
    """Render a snapshot in the `[stamp] VRAM_MB=<n>` text format."""
    lines = [f"[{when or stamp()}] VRAM_MB={snapshot.vram_used_mb if snapshot.vram_known else ''}"]
    if snapshot.render_log_line:
        lines.append(snapshot.render_log_line)
    if snapshot.cache_stats_line:
        lines.append(snapshot.cache_stats_line)
    return "\n".join(lines)


def build_metric_source(config) -> MetricSource:
    """Metric source matching the configuration."""
    if config.snapshot_cmd:
        return ExternalSnapshotSource(config.snapshot_cmd, config.compositor_log)
    return MetricSource(config.compositor_log, gpu_backend=config.gpu_backend)
