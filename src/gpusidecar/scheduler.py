"""Fixed-cadence sampling loop and JSON-lines output.

The scheduler alternates between two states, SAMPLING and SLEEPING.  Each
pass is timed and the following sleep is shortened by the time the pass
took, so passes start roughly ``period_s`` apart.  A pass that overruns
the period is followed immediately by the next one; passes never overlap
and missed periods are not made up.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Callable, Optional, TextIO

from .errors import RecordSerializationError
from .sampler import MetricSampler, SampleRecord

logger = logging.getLogger(__name__)


class JsonLineEmitter:
    """Writes each record as one compact JSON object per line.

    Keys are sorted so output is diffable and stable across runs.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout

    def encode(self, record: SampleRecord, timestamp: float) -> str:
        """Return the JSON line for *record* stamped with *timestamp*."""
        record.set("_timestamp", float(timestamp))
        try:
            return json.dumps(
                record.as_dict(), sort_keys=True, separators=(",", ":"), allow_nan=False
            )
        except (TypeError, ValueError) as e:
            raise RecordSerializationError(f"could not encode sample record: {e}") from e

    def emit(self, record: SampleRecord, timestamp: float) -> None:
        line = self.encode(record, timestamp)
        self.stream.write(line + "\n")
        self.stream.flush()


class FixedCadenceScheduler:
    """Runs *tick* every *period_s* seconds, compensating for its run time.

    Parameters
    ----------
    tick:
        One sampling pass.  Called with no arguments.
    period_s:
        Target time between the start of consecutive passes.
    clock:
        Monotonic clock used to time passes.
    sleep:
        Blocking sleep; injected so tests need no real delays.
    """

    def __init__(
        self,
        tick: Callable[[], None],
        period_s: float = 1.0,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if period_s <= 0:
            raise ValueError("period_s must be > 0")
        self.tick = tick
        self.period_s = float(period_s)
        self.clock = clock
        self.sleep = sleep
        self.passes = 0

    def next_sleep(self, elapsed_s: float) -> float:
        """Sleep needed after a pass that took *elapsed_s* seconds."""
        return max(0.0, self.period_s - elapsed_s)

    def run_once(self) -> float:
        """Run one pass and return how long the loop should sleep after it."""
        t0 = self.clock()
        self.tick()
        self.passes += 1
        return self.next_sleep(self.clock() - t0)

    def run(self, max_passes: Optional[int] = None) -> None:
        """Loop forever, or for *max_passes* passes if given."""
        while max_passes is None or self.passes < max_passes:
            delay = self.run_once()
            if delay > 0:
                self.sleep(delay)
            else:
                logger.debug("Pass %d overran the %.3fs period", self.passes, self.period_s)


class SamplingLoop:
    """Glue between sampler, emitter and scheduler.

    Each pass captures the wall-clock timestamp at its start, samples (or
    falls back to the zero-device record) and emits one line.
    """

    def __init__(
        self,
        sampler: MetricSampler,
        emitter: JsonLineEmitter,
        period_s: float = 1.0,
        wallclock: Callable[[], float] = time.time,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sampler = sampler
        self.emitter = emitter
        self.wallclock = wallclock
        self.scheduler = FixedCadenceScheduler(
            self.run_pass, period_s=period_s, clock=clock, sleep=sleep
        )

    def run_pass(self) -> None:
        timestamp = self.wallclock()
        record = self.sampler.sample_or_fallback()
        self.emitter.emit(record, timestamp)

    def run(self, max_passes: Optional[int] = None) -> None:
        self.scheduler.run(max_passes=max_passes)
