from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable

import psutil

from procusage.core.config import CpuScale
from procusage.core.utils import clamp, utc_now
from procusage.sources.base import Snapshot


@dataclass(frozen=True)
class UsageReading:
    cpu_percent: float
    resident_bytes: int
    virtual_bytes: int
    sampled_at: datetime
    cold_start: bool = False


@dataclass(frozen=True)
class _EngineState:
    previous: Snapshot | None = None
    last_sample_time: float | None = None
    last_reading: UsageReading | None = None


def tick_cpu_percent(previous: Snapshot, current: Snapshot) -> float | None:
    """100 * process ticks / system ticks between two snapshots.

    Returns None when the system delta is not positive (counters not
    advanced), so the caller keeps its last good value.
    """
    sys_delta = current.system_ticks - previous.system_ticks
    if sys_delta <= 0:
        return None
    proc_delta = current.process_ticks - previous.process_ticks
    return 100.0 * proc_delta / sys_delta


@dataclass
class DeltaEngine:
    """Turns successive snapshots into a bounded CPU percentage.

    The first snapshot only becomes the baseline (cpu_percent 0, flagged
    ``cold_start``). Within ``min_refresh_interval_seconds`` of the last
    sample the saved reading is served without touching the source.

    ``cpu_scale`` decides what 100% means: "machine" is every core busy,
    "core" is one core busy (so the ceiling is 100 * cpu_count).
    """

    min_refresh_interval_seconds: float = 2.0
    cpu_scale: CpuScale = "machine"
    cpu_count: int = field(default_factory=lambda: psutil.cpu_count(logical=True) or 1)
    clock: Callable[[], float] = time.monotonic
    wall_clock: Callable[[], datetime] = utc_now
    _state: _EngineState = field(default_factory=_EngineState, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _log: logging.Logger = field(
        default_factory=lambda: logging.getLogger("procusage.delta"), init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.cpu_count < 1:
            raise ValueError("cpu_count must be >= 1")

    @property
    def upper_bound(self) -> float:
        return 100.0 * self.cpu_count if self.cpu_scale == "core" else 100.0

    @property
    def previous_snapshot(self) -> Snapshot | None:
        with self._lock:
            return self._state.previous

    def should_refresh(self, now: float | None = None) -> bool:
        return self.cached_reading(now) is None

    def cached_reading(self, now: float | None = None) -> UsageReading | None:
        now = self.clock() if now is None else now
        with self._lock:
            state = self._state
        if state.last_reading is None or state.last_sample_time is None:
            return None
        if now - state.last_sample_time < self.min_refresh_interval_seconds:
            return state.last_reading
        return None

    def mark_attempt(self, now: float | None = None) -> None:
        """Record a refresh attempt that produced no snapshot."""
        now = self.clock() if now is None else now
        with self._lock:
            self._state = replace(self._state, last_sample_time=now)

    def update(self, current: Snapshot) -> UsageReading:
        now = self.clock()
        with self._lock:
            state = self._state
            previous = state.previous

            if previous is None:
                reading = self._reading(0.0, current, cold_start=True)
                self._state = _EngineState(previous=current, last_sample_time=now, last_reading=reading)
                self._log.debug("baseline snapshot stored", extra={"pid": current.resolved_pid})
                return reading

            newer = previous.timestamp_monotonic < current.timestamp_monotonic
            pct = self._percent(previous, current) if newer else None
            if pct is None or state.last_reading is None:
                self._log.debug(
                    "degenerate delta, keeping previous reading",
                    extra={"elapsed": current.timestamp_monotonic - previous.timestamp_monotonic},
                )
                reading = state.last_reading or self._reading(0.0, current, cold_start=True)
            else:
                reading = self._reading(pct, current)

            self._state = _EngineState(
                previous=current if newer else previous,
                last_sample_time=now,
                last_reading=reading,
            )
            return reading

    def _percent(self, previous: Snapshot, current: Snapshot) -> float | None:
        if current.reported_cpu_percent is not None:
            # counter-reported "% Processor Time" is relative to one core
            pct = float(current.reported_cpu_percent)
            if self.cpu_scale == "machine":
                pct /= self.cpu_count
        else:
            raw = tick_cpu_percent(previous, current)
            if raw is None:
                return None
            pct = raw * self.cpu_count if self.cpu_scale == "core" else raw
        if math.isinf(pct) or math.isnan(pct):
            return None
        return clamp(pct, 0.0, self.upper_bound)

    def _reading(self, pct: float, snap: Snapshot, *, cold_start: bool = False) -> UsageReading:
        return UsageReading(
            cpu_percent=pct,
            resident_bytes=snap.resident_bytes,
            virtual_bytes=snap.virtual_bytes,
            sampled_at=self.wall_clock(),
            cold_start=cold_start,
        )
