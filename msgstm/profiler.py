"""A small tick-based profiler with a fixed number of measurement slots."""

from __future__ import annotations

import math
import time
from typing import Callable

ENTRY_TIMES_SIZE = 16
GETTICKS_CALC_REPS = 1_000_000
_HEADER = "(PROFILING) " + ">" * 86


def split_seconds(seconds: float) -> tuple[int, int, int, int]:
    """Split a duration into whole seconds, milli-, micro- and nanoseconds."""
    s = math.trunc(seconds)
    ms = math.trunc((seconds - s) * 1000)
    us = math.trunc(((seconds - s) * 1_000_000) - (ms * 1000))
    ns = math.trunc(((seconds - s) * 1_000_000_000) - (ms * 1_000_000) - (us * 1000))
    return s, ms, us, ns


class Profiler:
    """Accumulates tick counts per slot.

    ``clock`` returns the current tick count; ``ref_speed_ghz`` is the number
    of ticks per nanosecond, used to turn ticks into time in reports.
    """

    def __init__(
        self,
        clock: Callable[[], int] = time.perf_counter_ns,
        ref_speed_ghz: float = 1.0,
        slots: int = ENTRY_TIMES_SIZE,
    ) -> None:
        self.clock = clock
        self.ref_speed_ghz = ref_speed_ghz
        self.messages = [""] * slots
        self.total_ticks = [0] * slots
        self.total_samples = [0] * slots
        self.correction = 0
        self._entry = [0] * slots
        self._valid = [False] * slots

    def start(self, slot: int) -> None:
        self._entry[slot] = self.clock()
        self._valid[slot] = True

    def stop(self, slot: int) -> None:
        """Record the time since the matching :meth:`start`; ignored without one."""
        if not self._valid[slot]:
            return
        self.add_sample(slot, self.clock() - self._entry[slot] - self.correction)
        self._valid[slot] = False

    def add_sample(self, slot: int, ticks: int) -> None:
        self.total_ticks[slot] += ticks
        self.total_samples[slot] += 1

    def calibrate(self, reps: int = GETTICKS_CALC_REPS) -> int:
        """Measure the cost of reading the clock and store it as the correction."""
        if reps <= 0:
            raise ValueError("reps must be positive")
        total = 0
        for _ in range(reps):
            begin = self.clock()
            end = self.clock()
            total += end - begin
        self.correction = int(total / reps)
        return self.correction

    def report(self, start: int = 0, end: int = ENTRY_TIMES_SIZE) -> str:
        """Render the statistics of slots ``start`` to ``end - 1``; empty if none."""
        slots = range(start, end)
        sampled = [i for i in slots if self.total_samples[i]]
        if not sampled:
            return ""
        all_ticks = sum(self.total_ticks[i] for i in sampled)
        scale = self.ref_speed_ghz * 1e9
        lines = [_HEADER]
        for i in sampled:
            ticks = self.total_ticks[i]
            samples = self.total_samples[i]
            if not ticks:
                continue
            perc = 100 * (ticks / all_ticks)
            s, ms, us, ns = split_seconds(ticks / scale)
            sa, msa, usa, nsa = split_seconds((ticks // samples) / scale)
            lines.append(f"[{i:02d}]{self.messages[i]}:")
            lines.append(
                f" [{perc:4.1f}%] samples: {samples:<12d} | "
                f"time: {s:3d} {ms:3d} {us:3d} {ns:3d} | "
                f"avg: {sa:3d} {msa:3d} {usa:3d} {nsa:3d} | "
                f"ticks: {ticks / samples:.1f}"
            )
        return "\n".join(lines) + "\n"