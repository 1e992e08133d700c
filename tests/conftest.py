# tests/conftest.py
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pytest

from vramplateau import tagged_processes
from vramplateau.config import HarnessConfig
from vramplateau.framework import RunLog
from vramplateau.metrics import MetricSnapshot
from vramplateau.process_inspector import ProcessInspector
from vramplateau.tagged_processes import TaggedProcessRegistry

TAG_VAR = "COSMIC_VRAM_TAG"


@dataclass
class FakeProcess:
    pid: int
    name: str
    env: Dict[str, str] = field(default_factory=dict)
    stubborn: bool = False  # ignores SIGTERM


class FakeWorld:
    """In-memory process table with signal semantics."""

    def __init__(self):
        self.procs: Dict[int, FakeProcess] = {}
        self.next_pid = 10_000_000  # above any kernel pid_max
        self.signals: List[tuple] = []
        self.killed_tags: List[str] = []

    def spawn(self, name: str, env: Optional[Dict[str, str]] = None, stubborn: bool = False) -> int:
        pid = self.next_pid
        self.next_pid += 1
        self.procs[pid] = FakeProcess(pid, name, dict(env or {}), stubborn)
        return pid

    def alive(self, name: Optional[str] = None) -> int:
        return sum(1 for p in self.procs.values() if name is None or p.name == name)

    def send(self, pid: int, sig: int):
        self.signals.append((pid, sig))
        proc = self.procs.get(pid)
        if proc is None:
            return
        if sig == signal.SIGTERM and proc.stubborn:
            return
        del self.procs[pid]
        tag = proc.env.get(TAG_VAR)
        if tag and tag not in self.killed_tags:
            self.killed_tags.append(tag)

    def exists(self, pid: int) -> bool:
        return pid in self.procs


class FakeInspector(ProcessInspector):
    def __init__(self, world: FakeWorld):
        self.world = world

    def list_live_pids(self):
        return sorted(self.world.procs)

    def read_environment(self, pid):
        proc = self.world.procs.get(pid)
        return dict(proc.env) if proc else {}

    def read_name(self, pid):
        proc = self.world.procs.get(pid)
        return proc.name if proc else None


class FakeRegistry(TaggedProcessRegistry):
    """Registry whose workers live in the FakeWorld instead of the OS."""

    def __init__(self, world: FakeWorld, sleep: Callable[[float], None], stubborn: bool = False):
        super().__init__(FakeInspector(world), tag_env_name=TAG_VAR, sleep=sleep)
        self.world = world
        self.stubborn = stubborn
        self.spawned_pids: List[int] = []

    def spawn_tagged(self, command, tag):
        name = command.split()[0].rsplit("/", 1)[-1]
        pid = self.world.spawn(name, {TAG_VAR: tag}, stubborn=self.stubborn)
        self.spawned_pids.append(pid)
        if tag not in self.issued_tags:
            self.issued_tags.append(tag)
        return pid


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


class FakeMetrics:
    """Metric source whose VRAM reading is computed by a callable."""

    def __init__(self, vram_fn: Callable[[], Optional[int]],
                 stats_fn: Callable[[], Optional[str]] = lambda: None):
        self.vram_fn = vram_fn
        self.stats_fn = stats_fn
        self.snapshots: List[MetricSnapshot] = []
        self.reads = 0

    def read_vram_mb(self):
        self.reads += 1
        return self.vram_fn()

    def read_cache_stats(self):
        return self.stats_fn()

    def snapshot(self, label=""):
        snap = MetricSnapshot(timestamp=time.time(), vram_used_mb=self.vram_fn(),
                              cache_stats_line=self.stats_fn(), label=label)
        self.snapshots.append(snap)
        return snap


@pytest.fixture
def world(monkeypatch):
    w = FakeWorld()
    monkeypatch.setattr(tagged_processes, "_send_signal", w.send)
    monkeypatch.setattr(tagged_processes, "_pid_exists", w.exists)
    return w


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def registry(world, fake_sleep):
    return FakeRegistry(world, fake_sleep)


@pytest.fixture
def run_log(tmp_path):
    return RunLog(tmp_path / "harness.log", verbose=False)


@pytest.fixture
def make_config():
    def _make(**overrides):
        values = dict(
            cycles=1,
            windows_per_cycle=20,
            open_cmd="cosmic-term",
            open_delay=0.2,
            sleep_open=5,
            sleep_close=5,
            kill_grace=2,
            max_vram_mb=0,
            target_windows_after=2,
            wait_windows_timeout=3,
            wait_windows_poll=1,
            tolerance_mb=10,
            tag_env_name=TAG_VAR,
            log_file=None,
        )
        values.update(overrides)
        return HarnessConfig(**values).validate()
    return _make
