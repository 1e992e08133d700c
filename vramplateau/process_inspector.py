#!/usr/bin/env python3
"""
Live process inspection.

The harness never trusts PIDs it spawned: launchers may fork/exec into a
different final process. Instead it scans the process table and reads
each process's environment. Every read fails softly, since processes can
exit between being listed and being read.
"""

from pathlib import Path
from typing import Dict, List, Optional

import psutil


class ProcessInspector:
    """Read-only view of the live process table."""

    # Longest name read_name can return; None when names come back whole
    name_limit: Optional[int] = None

    def list_live_pids(self) -> List[int]:
        raise NotImplementedError

    def read_environment(self, pid: int) -> Dict[str, str]:
        """Environment of `pid`, or {} if it is unreadable or gone."""
        raise NotImplementedError

    def read_name(self, pid: int) -> Optional[str]:
        """Executable name of `pid`, or None if unreadable, gone, or a zombie."""
        raise NotImplementedError

    def matches_name(self, pid: int, name: str) -> bool:
        """True if `pid` runs an executable called `name`, as far as this view can tell."""
        if self.name_limit is not None:
            name = name[:self.name_limit]
        return self.read_name(pid) == name


def parse_environ_block(data: bytes) -> Dict[str, str]:
    """Parse a NUL-separated KEY=VALUE block (as in /proc/<pid>/environ)."""
    env = {}
    for entry in data.split(b'\0'):
        if not entry or b'=' not in entry:
            continue
        key, _, value = entry.partition(b'=')
        env[key.decode('utf-8', errors='replace')] = value.decode('utf-8', errors='replace')
    return env


class ProcfsInspector(ProcessInspector):
    """Linux /proc implementation."""

    # Kernel truncates comm to TASK_COMM_LEN - 1
    COMM_MAX = 15
    name_limit = COMM_MAX

    def __init__(self, proc_root: str = "/proc"):
        self.proc_root = Path(proc_root)

    def list_live_pids(self) -> List[int]:
        pids = []
        try:
            entries = list(self.proc_root.iterdir())
        except OSError:
            return pids
        for entry in entries:
            if entry.name.isdigit():
                pids.append(int(entry.name))
        return sorted(pids)

    def read_environment(self, pid: int) -> Dict[str, str]:
        try:
            data = (self.proc_root / str(pid) / "environ").read_bytes()
        except OSError:
            # Gone, or owned by someone else
            return {}
        return parse_environ_block(data)

    def _is_zombie(self, pid: int) -> bool:
        try:
            stat = (self.proc_root / str(pid) / "stat").read_text(errors='replace')
        except OSError:
            return False
        # Format: "pid (comm) state ..."; comm may contain spaces and parens
        _, _, rest = stat.rpartition(')')
        fields = rest.split()
        return bool(fields) and fields[0] == 'Z'

    def read_name(self, pid: int) -> Optional[str]:
        try:
            name = (self.proc_root / str(pid) / "comm").read_text(errors='replace').strip()
        except OSError:
            return None
        if not name or self._is_zombie(pid):
            return None
        return name


class PsutilInspector(ProcessInspector):
    """Portable implementation on psutil."""

    def list_live_pids(self) -> List[int]:
        return sorted(psutil.pids())

    def read_environment(self, pid: int) -> Dict[str, str]:
        try:
            return dict(psutil.Process(pid).environ())
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError):
            return {}

    def read_name(self, pid: int) -> Optional[str]:
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
            return proc.name() or None
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, OSError):
            return None


def default_inspector() -> ProcessInspector:
    """procfs where available, psutil elsewhere."""
    if Path("/proc/self/environ").exists():
        return ProcfsInspector()
    return PsutilInspector()
