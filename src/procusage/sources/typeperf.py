from __future__ import annotations

import logging
import math
import subprocess
import time
from dataclasses import dataclass
from typing import Callable

from procusage.core.exceptions import BackendError, InstanceNotPresentError, ParseError
from procusage.sources.base import CounterIdentity, Snapshot, SnapshotSource

TYPEPERF_COMMAND = "typeperf"

# Output fragments typeperf prints when the requested instance does not exist.
NOT_PRESENT_MARKERS = ("The data is not valid", "No valid counters")

MIN_FIELDS = 5


@dataclass(frozen=True)
class ReportLine:
    sampled_at: str
    pid: int
    cpu_percent: float
    private_bytes: int
    virtual_bytes: int


def counter_paths(instance_name: str) -> list[str]:
    return [
        f"\\Process({instance_name})\\ID Process",
        f"\\Process({instance_name})\\% Processor Time",
        f"\\Process({instance_name})\\Private Bytes",
        f"\\Process({instance_name})\\Virtual Bytes",
    ]


def _field(raw: str) -> str:
    return raw.strip().strip('"')


def _number(raw: str, what: str) -> float:
    value = _field(raw)
    try:
        number = float(value)
    except ValueError as exc:
        raise ParseError(f"Unable to parse {what}: {raw!r}") from exc
    if not math.isfinite(number):
        raise ParseError(f"Unable to parse {what}: {raw!r}")
    return number


def parse_result(line: str) -> ReportLine:
    """Parse one typeperf data line.

    eg: "04/17/2016 15.38.00.016","5123.00000","1.2340000","123.00000","123.00000"
    """
    values = line.split(",")
    if len(values) < MIN_FIELDS:
        raise ParseError(f"Invalid result, expected {MIN_FIELDS} fields: {line!r}")
    return ReportLine(
        sampled_at=_field(values[0]),
        pid=int(_number(values[1], "pid")),
        cpu_percent=_number(values[2], "percent cpu"),
        private_bytes=int(_number(values[3], "private bytes")),
        virtual_bytes=int(_number(values[4], "virtual bytes")),
    )


def parse_output(output: str) -> ReportLine:
    # header, blank delimiter, data; typeperf may append status lines after the data.
    lines = [ln for ln in output.splitlines() if ln.strip()]
    if len(lines) < 2:
        raise ParseError(f"Invalid typeperf output: {output!r}")
    return parse_result(lines[1])


class TypeperfSource(SnapshotSource):
    """Reads process counters by spawning the ``typeperf`` reporting utility.

    typeperf cannot address a process by pid, only by its volatile image
    instance name (``python#1``), so every query needs a ``CounterIdentity``.
    """

    name = "typeperf"
    requires_identity = True

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        command: str = TYPEPERF_COMMAND,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = logging.getLogger("procusage.typeperf")
        self._timeout_seconds = float(timeout_seconds)
        self._command = command
        self._clock = clock

    def query(self, identity: CounterIdentity | None = None) -> Snapshot:
        if identity is None:
            raise BackendError("typeperf requires a counter instance name")
        output = self._run(identity.candidate_name)
        report = parse_output(output)
        return Snapshot(
            timestamp_monotonic=self._clock(),
            resolved_pid=report.pid,
            resident_bytes=report.private_bytes,
            private_bytes=report.private_bytes,
            virtual_bytes=report.virtual_bytes,
            reported_cpu_percent=report.cpu_percent,
        )

    def _run(self, instance_name: str) -> str:
        # "-sc 1" returns a single set of samples instead of monitoring continuously
        args = [self._command, *counter_paths(instance_name), "-sc", "1"]
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self._timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise BackendError(f"typeperf timed out after {self._timeout_seconds}s") from exc
        except OSError as exc:
            raise BackendError(f"typeperf failed to start: {exc}") from exc

        output = proc.stdout or ""
        if proc.returncode != 0:
            combined = output + (proc.stderr or "")
            if any(marker in combined for marker in NOT_PRESENT_MARKERS):
                self._log.debug("instance not present", extra={"instance": instance_name})
                raise InstanceNotPresentError(f"counter instance not present: {instance_name}")
            self._log.warning(
                "typeperf failed",
                extra={"instance": instance_name, "returncode": proc.returncode},
            )
            raise BackendError(f"typeperf failed: exit status {proc.returncode}")
        return output
