#!/usr/bin/env python3
"""
VRAM plateau test.

Opens and closes windows in cycles under the running compositor and
measures VRAM deltas against a baseline. Run it from a terminal inside
the compositor session under test.

Exit status: 0 when all cycles ran (PASS or FAIL is in the report),
2 for preflight errors, 3 for a safety abort, 4 when windows did not
close in time, 130 when interrupted.
"""

import sys
from typing import List, Optional

from .comparator import Verdict
from .config import config_from_args
from .framework import (
    EXIT_FAIL_VERDICT,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PREFLIGHT,
    HardAbort,
    PreflightError,
    RunLog,
    preflight_check,
)
from .metrics import build_metric_source
from .orchestrator import RunOrchestrator
from .tagged_processes import TaggedProcessRegistry


def main(argv: Optional[List[str]] = None) -> int:
    try:
        config, args = config_from_args(argv)
    except PreflightError as e:
        print(f"✗ FAIL: {e}", file=sys.stderr)
        return EXIT_PREFLIGHT

    log = RunLog(config.log_file, verbose=not args.quiet)

    try:
        preflight_check(config, log=log)
    except PreflightError as e:
        log.fail(str(e))
        return EXIT_PREFLIGHT

    registry = TaggedProcessRegistry(tag_env_name=config.tag_env_name)
    orchestrator = RunOrchestrator(config, build_metric_source(config), registry, log)

    try:
        report = orchestrator.run()
    except HardAbort as e:
        log.fail(f"Run aborted: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        log.warn("Interrupted")
        return EXIT_INTERRUPTED

    if args.fail_exit and report.verdict is Verdict.FAIL:
        return EXIT_FAIL_VERDICT
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
