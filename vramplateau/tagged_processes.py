#!/usr/bin/env python3
"""
Tagged process registry.

Workers are launched with a correlation tag in their environment and are
later found again by scanning the process table for that tag, so that
descendants of thin launchers are caught as well.
"""

import os
import shlex
import signal
import subprocess
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from .config import DEFAULT_TAG_ENV
from .process_inspector import ProcessInspector, default_inspector


def new_tag(cycle_index: int) -> str:
    """Unique tag for one cycle of one run."""
    return f"vram-{uuid.uuid4().hex}-{cycle_index}"


@dataclass
class SpawnedWorker:
    """Handle for a launched worker. Never awaited, only polled by reap()."""
    tag: str
    command: str
    proc: subprocess.Popen

    @property
    def pid(self) -> int:
        return self.proc.pid


class TaggedProcessRegistry:
    """Spawn, find and terminate processes by environment tag."""

    def __init__(self, inspector: Optional[ProcessInspector] = None,
                 tag_env_name: str = DEFAULT_TAG_ENV,
                 sleep: Callable[[float], None] = time.sleep):
        self.inspector = inspector or default_inspector()
        self.tag_env_name = tag_env_name
        self.sleep = sleep
        self.workers: List[SpawnedWorker] = []
        self.issued_tags: List[str] = []

    def new_tag(self, cycle_index: int) -> str:
        tag = new_tag(cycle_index)
        self.issued_tags.append(tag)
        return tag

    def spawn_tagged(self, command: str, tag: str) -> SpawnedWorker:
        """Launch `command` in the background with the tag in its environment."""
        env = {**os.environ, self.tag_env_name: tag}
        proc = subprocess.Popen(
            shlex.split(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            preexec_fn=os.setpgrp,
            env=env,
        )
        worker = SpawnedWorker(tag=tag, command=command, proc=proc)
        self.workers.append(worker)
        if tag not in self.issued_tags:
            self.issued_tags.append(tag)
        return worker

    def find_by_tag(self, tag: str) -> Set[int]:
        """PIDs of live processes whose environment carries exactly this tag."""
        own_pid = os.getpid()
        found = set()
        for pid in self.inspector.list_live_pids():
            if pid == own_pid:
                continue
            if self._tag_of(pid) == tag:
                found.add(pid)
        return found

    def _tag_of(self, pid: int) -> Optional[str]:
        return self.inspector.read_environment(pid).get(self.tag_env_name)

    def terminate(self, pids: Iterable[int], grace: float = 2.0):
        """
        SIGTERM all, wait `grace`, SIGKILL whatever is still there.

        Only a PID that still carries the tag it had when SIGTERM was sent
        is escalated, so a PID recycled during the grace period is left alone.
        """
        pids = sorted(set(pids))
        if not pids:
            return

        tags = {pid: self._tag_of(pid) for pid in pids}
        for pid in pids:
            _send_signal(pid, signal.SIGTERM)

        self.sleep(grace)
        self.reap()

        for pid in pids:
            tag = tags[pid]
            if tag is None or not _pid_exists(pid):
                continue
            if self._tag_of(pid) == tag:
                _send_signal(pid, signal.SIGKILL)

    def count_by_executable_basename(self, name: str) -> int:
        """Number of live processes whose executable name is `name`."""
        count = 0
        for pid in self.inspector.list_live_pids():
            if self.inspector.matches_name(pid, name):
                count += 1
        return count

    def reap(self):
        """Collect exit status of finished workers without waiting."""
        alive = []
        for worker in self.workers:
            if worker.proc.poll() is None:
                alive.append(worker)
        self.workers = alive

    def cleanup_all(self, grace: float = 2.0) -> int:
        """Terminate anything still carrying a tag issued by this registry."""
        pids = set()
        for tag in self.issued_tags:
            pids |= self.find_by_tag(tag)
        self.terminate(pids, grace=grace)
        self.reap()
        return len(pids)


def _send_signal(pid: int, sig: int):
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass  # Already gone
    except PermissionError:
        pass


def _pid_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
