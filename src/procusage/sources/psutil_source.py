from __future__ import annotations

import logging
import os
import time
from typing import Callable

import psutil

from procusage.core.exceptions import BackendError
from procusage.sources.base import CounterIdentity, Snapshot, SnapshotSource, seconds_to_ticks


def _system_total(times: object) -> float:
    total = float(sum(times))  # type: ignore[arg-type]
    # guest time on Linux is already included in user/nice
    total -= float(getattr(times, "guest", 0.0))
    total -= float(getattr(times, "guest_nice", 0.0))
    return total


class PsutilSource(SnapshotSource):
    name = "psutil"
    requires_identity = False

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._log = logging.getLogger("procusage.psutil")
        self._clock = clock
        try:
            self._proc = psutil.Process(os.getpid())
        except psutil.Error as exc:
            raise BackendError(f"Unable to open current process: {exc}") from exc

    def query(self, identity: CounterIdentity | None = None) -> Snapshot:
        try:
            with self._proc.oneshot():
                proc_times = self._proc.cpu_times()
                mem = self._proc.memory_info()
            sys_times = psutil.cpu_times()
        except psutil.Error as exc:
            raise BackendError(f"psutil query failed: {exc}") from exc

        # Kernel time counts idle so that kernel + user spans every core's elapsed time.
        sys_total = _system_total(sys_times)
        sys_user = float(sys_times.user)
        rss = int(mem.rss)
        private = int(getattr(mem, "private", rss))
        return Snapshot(
            timestamp_monotonic=self._clock(),
            resolved_pid=int(self._proc.pid),
            resident_bytes=rss,
            private_bytes=private,
            virtual_bytes=int(mem.vms),
            process_cpu_kernel_ticks=seconds_to_ticks(proc_times.system),
            process_cpu_user_ticks=seconds_to_ticks(proc_times.user),
            system_cpu_kernel_ticks=seconds_to_ticks(sys_total - sys_user),
            system_cpu_user_ticks=seconds_to_ticks(sys_user),
            system_idle_ticks=seconds_to_ticks(sys_times.idle),
        )
