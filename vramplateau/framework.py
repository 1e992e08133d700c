#!/usr/bin/env python3
"""
Framework for the VRAM plateau harness.

Provides:
- Error taxonomy (preflight errors, hard aborts) and exit codes
- Environment preflight checks
- The append-only run log shared by every component
"""

import os
import shlex
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, TextIO

# Exit codes
EXIT_OK = 0
EXIT_FAIL_VERDICT = 1
EXIT_PREFLIGHT = 2
EXIT_SAFETY_ABORT = 3
EXIT_CONVERGENCE_TIMEOUT = 4
EXIT_INTERRUPTED = 130


class HarnessError(Exception):
    """Base class for harness errors."""
    pass


class PreflightError(HarnessError):
    """Raised when preflight checks fail."""
    pass


class ConfigError(PreflightError):
    """Raised for malformed or inconsistent configuration."""
    pass


class HardAbort(HarnessError):
    """Raised when the whole run must stop immediately."""
    exit_code = EXIT_SAFETY_ABORT
    # Result of the cycle that was interrupted, attached by the cycle controller
    partial_result = None


class SafetyAbort(HardAbort):
    """VRAM reached the safety ceiling while the run could not back off."""

    exit_code = EXIT_SAFETY_ABORT

    def __init__(self, message: str, verdict=None):
        super().__init__(message)
        self.verdict = verdict


class ConvergenceTimeout(HardAbort):
    """Windows did not drop to the target count in time."""

    exit_code = EXIT_CONVERGENCE_TIMEOUT

    def __init__(self, message: str, remaining: Optional[int] = None):
        super().__init__(message)
        self.remaining = remaining


def stamp() -> str:
    """Local timestamp in the `date +'%F %T %z'` format."""
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %z")


class RunLog:
    """Append-only log stream: every line goes to stdout and the log file."""

    def __init__(self, path: Optional[Path] = None, stream: Optional[TextIO] = None,
                 verbose: bool = True):
        self.path = Path(path).expanduser() if path else None
        self.stream = stream
        self.verbose = verbose

    def _write_file(self, text: str):
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(text + "\n")

    def log(self, msg: str = ""):
        """Print and append a message (multi-line messages are kept as-is)."""
        if self.verbose:
            print(msg, file=self.stream or sys.stdout, flush=True)
        self._write_file(msg)

    def ok(self, msg: str):
        self.log(f"✓ {msg}")

    def warn(self, msg: str):
        self.log(f"⚠ {msg}")

    def fail(self, msg: str):
        self.log(f"✗ {msg}")

    def banner(self, title: str):
        self.log("=" * 70)
        self.log(title)
        self.log("=" * 70)


def check_binary(name: str, required: bool = True) -> Optional[str]:
    """Check if a binary exists in PATH (or is an executable path)."""
    if os.sep in name:
        path = name if os.path.isfile(name) and os.access(name, os.X_OK) else None
    else:
        path = shutil.which(name)
    if required and path is None:
        raise PreflightError(f"Required binary not found: {name}")
    return path


def command_executable(command: str) -> str:
    """Return the executable (first word) of a shell-style command."""
    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise ConfigError(f"Cannot parse command {command!r}: {e}")
    if not parts:
        raise ConfigError("Open command is empty")
    return parts[0]


def preflight_check(config, log: Optional[RunLog] = None) -> Dict[str, str]:
    """
    Run preflight checks for the harness.

    Returns dict of resolved tool paths.
    Raises PreflightError if a required prerequisite is missing; missing
    measurement sources only produce warnings.
    """
    tools = {}

    open_exe = command_executable(config.open_cmd)
    try:
        tools['open_cmd'] = check_binary(open_exe, required=True)
    except PreflightError:
        raise PreflightError(
            f"Worker launch command not found or not executable: {open_exe}"
        )

    if config.snapshot_cmd:
        snapshot_exe = command_executable(config.snapshot_cmd)
        path = check_binary(snapshot_exe, required=False)
        if path is None:
            raise PreflightError(
                f"Snapshot script not found or not executable: {snapshot_exe}"
            )
        tools['snapshot_cmd'] = path

    if config.gpu_backend in ('auto', 'nvidia-smi'):
        smi = check_binary('nvidia-smi', required=False)
        if smi:
            tools['nvidia-smi'] = smi
        elif log:
            log.warn("nvidia-smi not found; VRAM may be reported as unknown")

    if log and not Path(config.compositor_log).exists():
        log.warn(f"Compositor log not found: {config.compositor_log} (cache stats disabled)")

    return tools
