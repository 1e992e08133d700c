#!/usr/bin/env python3
"""
Print one VRAM snapshot.

Output format (readable by `vram-plateau --snapshot-cmd`):

    [2026-01-01 12:00:00 +0000] VRAM_MB=1234
    <last backend::render: vram_log line>
    <last smithay gles cleanup cache stats line>
"""

import argparse
import sys
from typing import List, Optional

from .config import DEFAULT_COMPOSITOR_LOG, GPU_BACKENDS
from .metrics import MetricSource, format_snapshot


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="vram-snapshot", description=__doc__.splitlines()[1])
    parser.add_argument('log_file', nargs='?', default=DEFAULT_COMPOSITOR_LOG,
                        help='Compositor log to scrape (default: %(default)s)')
    parser.add_argument('--gpu-backend', choices=GPU_BACKENDS, default='auto',
                        help='How VRAM usage is queried (default: %(default)s)')
    args = parser.parse_args(argv)

    source = MetricSource(args.log_file, gpu_backend=args.gpu_backend)
    snap = source.snapshot(label="snapshot")
    print(format_snapshot(snap))
    if not source.compositor_log.exists():
        print(f"(log not found: {args.log_file})")
    if not snap.vram_known:
        print("VRAM query unavailable (no nvidia-smi or sysfs VRAM counter)", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
