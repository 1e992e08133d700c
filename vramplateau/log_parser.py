#!/usr/bin/env python3
"""
Log parser for compositor logs and snapshot helper output.

Extracts the smithay GLES cache statistics and render VRAM log lines
from the compositor log, and VRAM readings from snapshot output.
"""

import re
from pathlib import Path
from typing import Dict, Optional, Tuple

CACHE_STATS_MARKER = "smithay gles cleanup cache stats"
RENDER_LOG_MARKER = "backend::render: vram_log"

_ANSI_RE = re.compile(r'\x1b\[[0-9;]*m')
_VRAM_RE = re.compile(r'VRAM_MB=(\d+)')
# Integer counters only; "ratio=0.5" is not one, "buffers=4." is
_COUNTER_RE = re.compile(r'([A-Za-z_][\w.]*)\s*[=:]\s*(-?\d+)(?!\.?\d)')


def strip_ansi(text: str) -> str:
    """Remove terminal colour escape sequences."""
    return _ANSI_RE.sub('', text)


def last_matching_line(log_path: Path, marker: str) -> Optional[str]:
    """
    Last line of `log_path` containing `marker`, after stripping colours.

    Returns None if the log does not exist or nothing matches.
    """
    log_path = Path(log_path)
    if not log_path.is_file():
        return None

    last = None
    try:
        with open(log_path, 'r', errors='replace') as f:
            for line in f:
                line = strip_ansi(line).rstrip('\r\n')
                if marker in line:
                    last = line
    except OSError:
        return None
    return last


def stats_payload(line: Optional[str], marker: str = CACHE_STATS_MARKER) -> Optional[str]:
    """The part of a stats line after the marker (the whole line if absent)."""
    if line is None:
        return None
    _, sep, rest = line.partition(marker)
    if not sep:
        return line.strip()
    return rest.strip()


def parse_cache_stats(line: Optional[str]) -> Dict[str, int]:
    """
    Extract integer counters from a cache stats line.

    Accepts `key=value` and `key: value` pairs, e.g.
    "... cache stats textures=12 buffers: 4" -> {'textures': 12, 'buffers': 4}
    """
    payload = stats_payload(line)
    if not payload:
        return {}
    return {key: int(value) for key, value in _COUNTER_RE.findall(payload)}


def diff_cache_stats(before: Dict[str, int], after: Dict[str, int]) -> Dict[str, int]:
    """Per-counter change from `before` to `after` (counters present in either)."""
    diff = {}
    for key in sorted(set(before) | set(after)):
        change = after.get(key, 0) - before.get(key, 0)
        if change:
            diff[key] = change
    return diff


def parse_snapshot_output(text: str) -> Tuple[Optional[int], Optional[str]]:
    """
    Parse the output of a snapshot helper.

    Returns:
        (vram_mb, cache_stats_line); the last occurrence of each wins.
    """
    vram = None
    stats = None
    for raw in text.splitlines():
        line = strip_ansi(raw)
        match = _VRAM_RE.search(line)
        if match:
            vram = int(match.group(1))
        if CACHE_STATS_MARKER in line:
            stats = line.strip()
    return vram, stats
