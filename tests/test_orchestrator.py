import json

import pytest

from vramplateau.comparator import Verdict, finalize_report
from vramplateau.cycle import CyclePhase
from vramplateau.framework import (
    EXIT_CONVERGENCE_TIMEOUT,
    EXIT_SAFETY_ABORT,
    ConvergenceTimeout,
    SafetyAbort,
)
from vramplateau.orchestrator import RunOrchestrator

from conftest import FakeMetrics, FakeRegistry


def _orchestrator(config, metrics, registry, run_log, fake_sleep):
    return RunOrchestrator(config, metrics, registry, run_log, sleep=fake_sleep)


def test_small_growth_within_tolerance_passes(world, registry, run_log, fake_sleep, make_config):
    # 1000 MB baseline, 10 MB per open window, 1 MB left behind per closed cycle
    metrics = FakeMetrics(lambda: 1000 + 10 * world.alive() + len(world.killed_tags))
    config = make_config(cycles=1, windows_per_cycle=20)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert report.baseline.vram_used_mb == 1000
    (result,) = report.per_cycle
    assert result.spawned == 20
    assert result.tagged_found == 20
    assert result.peak.vram_used_mb == 1200
    assert result.after.vram_used_mb == 1001
    assert result.delta_mb == 1
    assert result.converged is True
    assert report.total_delta_mb == 1
    assert report.verdict is Verdict.PASS

    text = run_log.path.read_text()
    assert "Cycle 1 delta: VRAM_MB 1001 (Δ +1 from baseline)" in text
    assert "✓ PASS" in text


def test_repeated_leak_fails(world, registry, run_log, fake_sleep, make_config):
    metrics = FakeMetrics(lambda: 1000 + 10 * world.alive() + 97 * len(world.killed_tags))
    config = make_config(cycles=5, windows_per_cycle=20)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert [r.delta_mb for r in report.per_cycle] == [97, 194, 291, 388, 485]
    assert report.total_delta_mb == 485
    assert report.verdict is Verdict.FAIL
    assert report.leak_slope_mb_per_cycle == pytest.approx(97.0)
    assert "✗ FAIL - VRAM grew by 485 MB" in run_log.path.read_text()


def test_safety_ceiling_while_opening_stops_run_after_cycle(
        world, registry, run_log, fake_sleep, make_config):
    # Reaches exactly 5000 MB with the 12th window open
    metrics = FakeMetrics(lambda: 4400 + 50 * world.alive())
    config = make_config(cycles=3, windows_per_cycle=20, max_vram_mb=5000)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert len(report.per_cycle) == 1
    (result,) = report.per_cycle
    assert result.cycle.aborted is True
    assert result.spawned == 12
    assert result.abort_verdict.observed_vram_mb == 5000
    assert result.peak is None
    assert CyclePhase.PEAK_MEASURE not in result.phases
    assert CyclePhase.CLOSING in result.phases
    assert result.after.vram_used_mb == 4400
    assert world.alive() == 0
    assert not report.aborted
    assert "Aborting remaining cycles due to safety stop." in run_log.path.read_text()


def test_convergence_timeout_hard_aborts(world, registry, run_log, fake_sleep, make_config):
    for _ in range(5):
        world.spawn("cosmic-term", stubborn=True)  # windows from outside the harness
    metrics = FakeMetrics(lambda: 1000)
    config = make_config(cycles=3, windows_per_cycle=2, target_windows_after=2,
                         wait_windows_timeout=3, wait_windows_poll=1)
    orch = _orchestrator(config, metrics, registry, run_log, fake_sleep)

    with pytest.raises(ConvergenceTimeout) as excinfo:
        orch.run()

    assert excinfo.value.exit_code == EXIT_CONVERGENCE_TIMEOUT
    assert excinfo.value.remaining == 5
    assert fake_sleep.calls[-3:] == [1, 1, 1]
    report = orch.report
    assert report.aborted
    (partial,) = report.per_cycle
    assert partial.converged is False
    assert partial.after is None
    assert report.final is None
    assert report.verdict is Verdict.UNKNOWN
    assert "Window count did not drop in time" in run_log.path.read_text()


def test_safety_trip_during_close_wait_is_fatal(world, registry, run_log, fake_sleep, make_config):
    for _ in range(3):
        world.spawn("cosmic-term", stubborn=True)
    metrics = FakeMetrics(lambda: 6000 if world.killed_tags else 1000)
    config = make_config(cycles=2, windows_per_cycle=4, max_vram_mb=5000)
    orch = _orchestrator(config, metrics, registry, run_log, fake_sleep)

    with pytest.raises(SafetyAbort) as excinfo:
        orch.run()

    assert excinfo.value.exit_code == EXIT_SAFETY_ABORT
    assert excinfo.value.verdict.observed_vram_mb == 6000
    assert len(orch.report.per_cycle) == 1
    assert "Safety stop during close wait" in run_log.path.read_text()


def test_after_close_snapshot_over_ceiling_stops_run(world, registry, run_log, fake_sleep, make_config):
    metrics = FakeMetrics(lambda: 4000 + 1500 * len(world.killed_tags))
    config = make_config(cycles=3, windows_per_cycle=3, max_vram_mb=5000)
    orch = _orchestrator(config, metrics, registry, run_log, fake_sleep)

    with pytest.raises(SafetyAbort):
        orch.run()

    report = orch.report
    assert len(report.per_cycle) == 1
    assert report.final.vram_used_mb == 5500
    assert report.total_delta_mb == 1500
    assert report.verdict is Verdict.FAIL


def test_unknown_vram_gives_unknown_verdict(world, registry, run_log, fake_sleep, make_config):
    metrics = FakeMetrics(lambda: None)
    config = make_config(cycles=2, windows_per_cycle=3, max_vram_mb=5000)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert len(report.per_cycle) == 2
    assert all(r.delta_mb is None for r in report.per_cycle)
    assert all(not r.cycle.aborted for r in report.per_cycle)
    assert report.total_delta_mb is None
    assert report.verdict is Verdict.UNKNOWN
    text = run_log.path.read_text()
    assert "Cycle 1 delta: VRAM_MB unknown" in text
    assert "UNKNOWN" in text
    assert "PASS" not in text


def test_zero_windows_cycle(world, registry, run_log, fake_sleep, make_config):
    metrics = FakeMetrics(lambda: 1000 + 10 * world.alive())
    config = make_config(cycles=1, windows_per_cycle=0)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    (result,) = report.per_cycle
    assert result.spawned == 0
    assert result.tagged_found == 0
    assert result.peak.vram_used_mb == report.baseline.vram_used_mb
    assert registry.spawned_pids == []


def test_no_tagged_process_survives_run(world, fake_sleep, run_log, make_config):
    registry = FakeRegistry(world, fake_sleep, stubborn=True)
    metrics = FakeMetrics(lambda: 1000)
    config = make_config(cycles=3, windows_per_cycle=5, target_windows_after=0)

    _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert len(registry.issued_tags) == 3
    assert len(set(registry.issued_tags)) == 3
    for tag in registry.issued_tags:
        assert registry.find_by_tag(tag) == set()


def test_interrupt_still_cleans_up_tagged_processes(world, registry, run_log, fake_sleep, make_config):
    def vram():
        if world.alive() == 5:
            raise KeyboardInterrupt
        return 1000

    metrics = FakeMetrics(vram)
    config = make_config(cycles=1, windows_per_cycle=10, max_vram_mb=5000)

    with pytest.raises(KeyboardInterrupt):
        _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert world.alive() == 0
    assert registry.find_by_tag(registry.issued_tags[0]) == set()
    assert "Cleaned up 5 leftover tagged processes" in run_log.path.read_text()


def test_cache_stats_are_reported_per_cycle(world, registry, run_log, fake_sleep, make_config):
    def stats():
        n = len(world.killed_tags)
        return f"INFO smithay gles cleanup cache stats textures={4 + 3 * n} buffers=2"

    metrics = FakeMetrics(lambda: 1000, stats)
    config = make_config(cycles=2, windows_per_cycle=2)

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    assert [r.cache_stats_delta for r in report.per_cycle] == [{'textures': 3}, {'textures': 6}]
    text = run_log.path.read_text()
    assert "Cycle 2 smithay stats baseline: textures=4 buffers=2" in text
    assert "Cycle 2 smithay stats after:    textures=10 buffers=2" in text


def test_json_report_and_recomputation(world, registry, run_log, fake_sleep, make_config, tmp_path):
    out = tmp_path / "reports" / "run.json"
    metrics = FakeMetrics(lambda: 1000 + 10 * world.alive() + 3 * len(world.killed_tags))
    config = make_config(cycles=2, windows_per_cycle=2, json_report=str(out))

    report = _orchestrator(config, metrics, registry, run_log, fake_sleep).run()

    data = json.loads(out.read_text())
    assert data['verdict'] == "PASS"
    assert data['total_delta_mb'] == 6
    assert [c['delta_mb'] for c in data['per_cycle']] == [3, 6]
    assert data['config']['windows_per_cycle'] == 2

    before = (report.total_delta_mb, report.verdict, report.leak_slope_mb_per_cycle)
    finalize_report(report)
    assert (report.total_delta_mb, report.verdict, report.leak_slope_mb_per_cycle) == before
