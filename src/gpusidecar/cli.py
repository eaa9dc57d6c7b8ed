"""Command-line interface for the ``gpusidecar`` tool.

Samples every installed GPU about once per second and prints one JSON
object per line on stdout.  Example::

    gpusidecar 4242 | my-log-shipper

The optional positional argument is the pid whose process tree the
``gpu.process.*`` keys are attributed to.  Diagnostics go to stderr.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Optional

from .backends import make_backend
from .errors import GpuBackendError, RecordSerializationError
from .proctree import PgrepChildLister
from .sampler import MetricSampler
from .scheduler import JsonLineEmitter, SamplingLoop

LOG_LEVEL_ENV = "GPUSIDECAR_LOG_LEVEL"
INTERVAL_ENV = "GPUSIDECAR_INTERVAL"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_INTERVAL = 1.0

logger = logging.getLogger(__name__)


def parse_pid(value: Optional[str]) -> int:
    """Parse the target pid; missing or unparsable values become ``0``."""
    if value is None:
        return 0
    try:
        pid = int(value.strip())
    except ValueError:
        return 0
    return pid if pid >= 0 else 0


def _env_interval() -> float:
    raw = os.getenv(INTERVAL_ENV)
    if not raw:
        return DEFAULT_INTERVAL
    try:
        return float(raw)
    except ValueError:
        # Logging is not configured yet; WARNING still reaches stderr.
        logger.warning(
            "Ignoring invalid %s=%r, using %ss", INTERVAL_ENV, raw, DEFAULT_INTERVAL
        )
        return DEFAULT_INTERVAL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpusidecar",
        description="Emit GPU telemetry as JSON lines, attributing usage to a process tree.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "pid",
        nargs="?",
        default=None,
        help="Process id to attribute GPU usage to (0 if omitted or invalid)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=_env_interval(),
        help=f"Sampling period in seconds (env: {INTERVAL_ENV})",
    )
    parser.add_argument(
        "--backend",
        choices=["auto", "nvml", "none"],
        default="auto",
        help="Device backend",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with an error if the GPU library cannot be initialised",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=os.getenv(LOG_LEVEL_ENV, "WARNING"),
        help=f"Diagnostic log level on stderr (env: {LOG_LEVEL_ENV})",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry-point for the ``gpusidecar`` CLI.

    Returns
    -------
    int
        Only returned when the loop is interrupted or a fatal error occurs:
        **130** on Ctrl-C, **1** on a fatal error, **2** on bad arguments.
    """
    t_start = time.perf_counter()
    parser = build_parser()
    args = parser.parse_args(argv)

    # argparse does not check defaults against choices.
    if args.log_level not in LOG_LEVELS:
        parser.error(
            f"invalid {LOG_LEVEL_ENV} value {args.log_level!r} "
            f"(choose from {', '.join(LOG_LEVELS)})"
        )

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.interval <= 0:
        parser.error("--interval must be > 0")

    pid = parse_pid(args.pid)

    t_init = time.perf_counter()
    try:
        backend = make_backend(args.backend, strict=args.strict)
    except GpuBackendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    init_ms = (time.perf_counter() - t_init) * 1000.0

    sampler = MetricSampler(backend, root_pid=pid, child_lister=PgrepChildLister())
    loop = SamplingLoop(sampler, JsonLineEmitter(sys.stdout), period_s=args.interval)

    print(f"Library init took {init_ms:.3f} ms", flush=True)
    print(f"Startup took {(time.perf_counter() - t_start) * 1000.0:.3f} ms", flush=True)

    try:
        loop.run()
    except KeyboardInterrupt:
        return 130
    except RecordSerializationError as e:
        print(f"Fatal: {e}", file=sys.stderr)
        return 1
    finally:
        backend.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
