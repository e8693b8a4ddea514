from __future__ import annotations


class ProcUsageError(Exception):
    """Base error for process usage sampling."""


class ConfigError(ProcUsageError):
    pass


class SamplingError(ProcUsageError):
    pass


class NotFoundError(SamplingError):
    """No counter instance within the attempt budget belongs to this process."""


class ParseError(SamplingError):
    pass


class BackendError(SamplingError):
    """The query mechanism itself failed (spawn, API status, syscall)."""


class InstanceNotPresentError(SamplingError):
    """The named counter instance does not exist; the next candidate may."""


class StaleIdentityError(SamplingError):
    def __init__(self, candidate_name: str, reported_pid: int | None, own_pid: int) -> None:
        super().__init__(
            f"counter instance {candidate_name!r} reports pid {reported_pid}, expected {own_pid}"
        )
        self.candidate_name = candidate_name
        self.reported_pid = reported_pid
        self.own_pid = own_pid
