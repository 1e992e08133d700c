#!/usr/bin/env python3
"""
Harness configuration.

Settings are resolved once at startup: built-in defaults, then the
upper-case environment variables understood by the shell harness
(CYCLES, WINDOWS_TARGET, OPEN_CMD, ...), then command-line flags.
The resulting HarnessConfig is passed explicitly to every component.
"""

import argparse
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .framework import ConfigError, command_executable

DEFAULT_TAG_ENV = "COSMIC_VRAM_TAG"
DEFAULT_COMPOSITOR_LOG = "/tmp/cosmic-debug.log"
GPU_BACKENDS = ('auto', 'nvidia-smi', 'sysfs', 'none')


@dataclass
class HarnessConfig:
    """Effective configuration for one run."""
    cycles: int = 3
    windows_per_cycle: int = 20
    open_cmd: str = "cosmic-term"
    open_delay: float = 0.2
    sleep_open: float = 5.0
    sleep_close: float = 5.0
    kill_grace: float = 2.0
    max_vram_mb: int = 5000  # 0 = disabled
    target_windows_after: int = 2
    wait_windows_timeout: float = 3.0  # 0 = don't wait
    wait_windows_poll: float = 1.0
    tolerance_mb: int = 10
    tag_env_name: str = DEFAULT_TAG_ENV
    compositor_log: str = DEFAULT_COMPOSITOR_LOG
    log_file: Optional[str] = field(default_factory=lambda: str(Path.home() / "vram-plateau.log"))
    snapshot_cmd: Optional[str] = None
    gpu_backend: str = "auto"
    json_report: Optional[str] = None

    @property
    def open_cmd_basename(self) -> str:
        return os.path.basename(command_executable(self.open_cmd))

    def validate(self) -> "HarnessConfig":
        """Raise ConfigError for values the harness cannot run with."""
        if not self.open_cmd or not self.open_cmd.strip():
            raise ConfigError("OPEN_CMD is required.")
        command_executable(self.open_cmd)
        for name in ('cycles', 'windows_per_cycle', 'target_windows_after', 'tolerance_mb'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0 (got {getattr(self, name)})")
        for name in ('open_delay', 'sleep_open', 'sleep_close', 'kill_grace',
                     'wait_windows_timeout'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0 (got {getattr(self, name)})")
        if self.wait_windows_timeout > 0 and self.wait_windows_poll <= 0:
            raise ConfigError("wait_windows_poll must be > 0 when a wait timeout is set")
        if not self.tag_env_name or '=' in self.tag_env_name:
            raise ConfigError(f"Invalid tag variable name: {self.tag_env_name!r}")
        if self.gpu_backend not in GPU_BACKENDS:
            raise ConfigError(
                f"Unknown GPU backend {self.gpu_backend!r} (choose from {', '.join(GPU_BACKENDS)})"
            )
        return self

    def describe(self) -> List[str]:
        """Header lines listing the effective configuration."""
        return [
            f"CYCLES={self.cycles} WINDOWS_TARGET={self.windows_per_cycle}",
            f"OPEN_CMD={self.open_cmd}",
            f"SLEEP_OPEN={self.sleep_open:g} SLEEP_CLOSE={self.sleep_close:g} "
            f"OPEN_DELAY={self.open_delay:g} KILL_GRACE={self.kill_grace:g}",
            f"MAX_VRAM_MB={self.max_vram_mb} (0 = disabled)",
            f"TARGET_WINDOWS_AFTER={self.target_windows_after} "
            f"WAIT_WINDOWS_TIMEOUT={self.wait_windows_timeout:g} "
            f"WAIT_WINDOWS_POLL={self.wait_windows_poll:g}",
            f"TOLERANCE_MB={self.tolerance_mb} GPU_BACKEND={self.gpu_backend}",
            f"COMPOSITOR_LOG={self.compositor_log}",
            f"SNAPSHOT_CMD={self.snapshot_cmd or '<builtin>'}",
            f"LOG_FILE={self.log_file or '<none>'}",
        ]

    def to_dict(self) -> Dict:
        return asdict(self)


# Environment variable -> (field, converter)
ENV_VARS = {
    'CYCLES': ('cycles', int),
    'WINDOWS_TARGET': ('windows_per_cycle', int),
    'WINDOWS': ('windows_per_cycle', int),
    'OPEN_CMD': ('open_cmd', str),
    'OPEN_DELAY': ('open_delay', float),
    'SLEEP_OPEN': ('sleep_open', float),
    'SLEEP_CLOSE': ('sleep_close', float),
    'KILL_GRACE': ('kill_grace', float),
    'MAX_VRAM_MB': ('max_vram_mb', int),
    'TARGET_WINDOWS_AFTER': ('target_windows_after', int),
    'WAIT_WINDOWS_TIMEOUT': ('wait_windows_timeout', float),
    'WAIT_WINDOWS_POLL': ('wait_windows_poll', float),
    'TOLERANCE_MB': ('tolerance_mb', int),
    'COMPOSITOR_LOG': ('compositor_log', str),
    'LOG_FILE': ('log_file', str),
    'SNAPSHOT_CMD': ('snapshot_cmd', str),
    'GPU_BACKEND': ('gpu_backend', str),
}


def from_env(environ: Optional[Mapping[str, str]] = None,
             base: Optional[HarnessConfig] = None) -> HarnessConfig:
    """Overlay environment variables onto `base` (defaults if None)."""
    environ = os.environ if environ is None else environ
    config = base or HarnessConfig()
    overrides = {}
    for var, (name, conv) in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        # WINDOWS is the older spelling; WINDOWS_TARGET wins when both are set
        if var == 'WINDOWS' and environ.get('WINDOWS_TARGET'):
            continue
        try:
            overrides[name] = conv(raw)
        except ValueError:
            raise ConfigError(f"Invalid value for {var}: {raw!r}")
    return replace(config, **overrides)


def build_arg_parser(defaults: Optional[HarnessConfig] = None) -> argparse.ArgumentParser:
    """Argument parser whose defaults come from `defaults`."""
    d = defaults or HarnessConfig()
    parser = argparse.ArgumentParser(
        prog="vram-plateau",
        description="Open/close windows in cycles under the compositor and measure VRAM deltas",
    )
    parser.add_argument('--cycles', type=int, default=d.cycles,
                        help=f'Number of open/close cycles (default: {d.cycles})')
    parser.add_argument('--windows', dest='windows_per_cycle', type=int,
                        default=d.windows_per_cycle,
                        help=f'Windows opened per cycle (default: {d.windows_per_cycle})')
    parser.add_argument('--open-cmd', default=d.open_cmd,
                        help=f'Command that opens one window (default: {d.open_cmd})')
    parser.add_argument('--open-delay', type=float, default=d.open_delay,
                        help=f'Delay between spawns in seconds (default: {d.open_delay:g})')
    parser.add_argument('--sleep-open', type=float, default=d.sleep_open,
                        help=f'Settle delay before the peak snapshot (default: {d.sleep_open:g})')
    parser.add_argument('--sleep-close', type=float, default=d.sleep_close,
                        help=f'Settle delay after closing windows (default: {d.sleep_close:g})')
    parser.add_argument('--kill-grace', type=float, default=d.kill_grace,
                        help=f'Seconds between SIGTERM and SIGKILL (default: {d.kill_grace:g})')
    parser.add_argument('--max-vram-mb', type=int, default=d.max_vram_mb,
                        help=f'VRAM safety ceiling, 0 disables (default: {d.max_vram_mb})')
    parser.add_argument('--target-windows-after', type=int, default=d.target_windows_after,
                        help=f'Window count considered converged (default: {d.target_windows_after})')
    parser.add_argument('--wait-timeout', dest='wait_windows_timeout', type=float,
                        default=d.wait_windows_timeout,
                        help=f'Convergence wait timeout, 0 disables (default: {d.wait_windows_timeout:g})')
    parser.add_argument('--wait-poll', dest='wait_windows_poll', type=float,
                        default=d.wait_windows_poll,
                        help=f'Convergence poll interval (default: {d.wait_windows_poll:g})')
    parser.add_argument('--tolerance-mb', type=int, default=d.tolerance_mb,
                        help=f'Total delta still considered PASS (default: {d.tolerance_mb})')
    parser.add_argument('--tag-env', dest='tag_env_name', default=d.tag_env_name,
                        help=f'Environment variable carrying the cycle tag (default: {d.tag_env_name})')
    parser.add_argument('--compositor-log', default=d.compositor_log,
                        help=f'Compositor log scraped for cache stats (default: {d.compositor_log})')
    parser.add_argument('--log-file', default=d.log_file,
                        help='Append-only harness log (default: %(default)s)')
    parser.add_argument('--no-log-file', dest='log_file', action='store_const', const=None,
                        help='Only log to stdout')
    parser.add_argument('--snapshot-cmd', default=d.snapshot_cmd,
                        help='External snapshot helper printing VRAM_MB=<n> (default: builtin)')
    parser.add_argument('--gpu-backend', choices=GPU_BACKENDS, default=d.gpu_backend,
                        help=f'How VRAM usage is queried (default: {d.gpu_backend})')
    parser.add_argument('--json-report', default=d.json_report,
                        help='Also write the run report as JSON to this path')
    parser.add_argument('--fail-exit', action='store_true',
                        help='Exit with status 1 when the verdict is FAIL')
    parser.add_argument('--quiet', action='store_true',
                        help='Do not echo the log to stdout')
    return parser


def config_from_args(argv: Optional[List[str]] = None,
                     environ: Optional[Mapping[str, str]] = None):
    """
    Resolve defaults, environment and command line into a config.

    Returns:
        (HarnessConfig, argparse.Namespace)
    """
    env_config = from_env(environ)
    parser = build_arg_parser(env_config)
    args = parser.parse_args(argv)
    names = {f.name for f in fields(HarnessConfig)}
    values = {k: v for k, v in vars(args).items() if k in names}
    config = replace(env_config, **values).validate()
    return config, args
