from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

# Cumulative CPU times are expressed in 100ns units.
TICKS_PER_SECOND = 10_000_000


def seconds_to_ticks(seconds: float) -> int:
    return int(round(float(seconds) * TICKS_PER_SECOND))


@dataclass(frozen=True)
class CounterIdentity:
    candidate_name: str
    resolved_pid: int


@dataclass(frozen=True)
class Snapshot:
    """One point-in-time read of cumulative CPU ticks and memory counters.

    ``system_cpu_kernel_ticks`` includes idle time, so kernel + user is the
    total CPU capacity that elapsed across all cores. Backends that report a
    ready-made percentage set ``reported_cpu_percent`` and leave ticks at 0.
    """

    timestamp_monotonic: float
    resolved_pid: int
    resident_bytes: int
    private_bytes: int
    virtual_bytes: int
    process_cpu_kernel_ticks: int = 0
    process_cpu_user_ticks: int = 0
    system_cpu_kernel_ticks: int = 0
    system_cpu_user_ticks: int = 0
    system_idle_ticks: int = 0
    reported_cpu_percent: float | None = None

    @property
    def process_ticks(self) -> int:
        return self.process_cpu_kernel_ticks + self.process_cpu_user_ticks

    @property
    def system_ticks(self) -> int:
        return self.system_cpu_kernel_ticks + self.system_cpu_user_ticks


class SnapshotSource(ABC):
    """Capability producing snapshots for the calling process.

    Sources that address processes by counter instance name set
    ``requires_identity`` and expect a ``CounterIdentity`` on every query;
    the others query "self" and receive ``None``. A missing instance raises
    ``InstanceNotPresentError``, any other failure ``BackendError``.
    """

    name: str = "abstract"
    requires_identity: bool = False

    @abstractmethod
    def query(self, identity: CounterIdentity | None = None) -> Snapshot:
        raise NotImplementedError

    def close(self) -> None:
        return None
