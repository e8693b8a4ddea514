from __future__ import annotations

import ctypes
import logging
import os
import sys
import threading
import time
from typing import Any, Callable, Protocol

from procusage.core.exceptions import BackendError, InstanceNotPresentError
from procusage.sources.base import CounterIdentity, Snapshot, SnapshotSource

PDH_FMT_DOUBLE = 0x00000200
PDH_MORE_DATA = 0x800007D2
PDH_CSTATUS_NO_INSTANCE = 0x800007D1
PDH_NO_DATA = 0x800007D5
PDH_INVALID_DATA = 0xC0000BC6

NOT_PRESENT_STATUSES = frozenset({PDH_CSTATUS_NO_INSTANCE, PDH_NO_DATA, PDH_INVALID_DATA})

# Maximum same-named processes accepted in one counter array.
MAX_QUERY_ROWS = 128


class _FmtCounterValueDouble(ctypes.Structure):
    _fields_ = [("CStatus", ctypes.c_uint32), ("doubleValue", ctypes.c_double)]


class _FmtCounterValueItemDouble(ctypes.Structure):
    _fields_ = [("szName", ctypes.c_wchar_p), ("FmtValue", _FmtCounterValueDouble)]


def _status_error(status: int, call: str) -> Exception:
    if status in NOT_PRESENT_STATUSES:
        return InstanceNotPresentError(f"{call}: no counter data (0x{status:08X})")
    return BackendError(f"{call} failed (0x{status:08X})")


class CounterApi(Protocol):
    def open_query(self) -> Any: ...

    def add_counter(self, query: Any, path: str) -> Any: ...

    def collect(self, query: Any) -> None: ...

    def counter_array(self, counter: Any) -> list[tuple[str, float]]: ...

    def close_query(self, query: Any) -> None: ...


class PdhApi:
    """Thin ctypes binding over pdh.dll's formatted counter calls."""

    def __init__(self) -> None:
        if sys.platform != "win32":
            raise BackendError("PDH counters are only available on Windows")
        try:
            self._pdh = ctypes.WinDLL("pdh.dll")  # type: ignore[attr-defined]
        except OSError as exc:
            raise BackendError(f"Unable to load pdh.dll: {exc}") from exc

    def _call(self, name: str, *args: Any) -> int:
        return int(getattr(self._pdh, name)(*args)) & 0xFFFFFFFF

    def open_query(self) -> Any:
        handle = ctypes.c_void_p()
        status = self._call("PdhOpenQueryW", None, 0, ctypes.byref(handle))
        if status != 0:
            raise _status_error(status, "PdhOpenQuery")
        return handle

    def add_counter(self, query: Any, path: str) -> Any:
        handle = ctypes.c_void_p()
        status = self._call("PdhAddEnglishCounterW", query, ctypes.c_wchar_p(path), 0, ctypes.byref(handle))
        if status != 0:
            raise _status_error(status, f"PdhAddCounter({path})")
        return handle

    def collect(self, query: Any) -> None:
        status = self._call("PdhCollectQueryData", query)
        if status != 0:
            raise _status_error(status, "PdhCollectQueryData")

    def counter_array(self, counter: Any) -> list[tuple[str, float]]:
        size = ctypes.c_uint32(0)
        count = ctypes.c_uint32(0)
        # Always two calls: the first reports the buffer size needed.
        status = self._call(
            "PdhGetFormattedCounterArrayW",
            counter,
            PDH_FMT_DOUBLE,
            ctypes.byref(size),
            ctypes.byref(count),
            None,
        )
        if status == 0:
            return []
        if status != PDH_MORE_DATA:
            raise _status_error(status, "PdhGetFormattedCounterArray")
        if count.value > MAX_QUERY_ROWS:
            raise BackendError(f"too many counter instances: {count.value} > {MAX_QUERY_ROWS}")

        buf = (ctypes.c_byte * size.value)()
        status = self._call(
            "PdhGetFormattedCounterArrayW",
            counter,
            PDH_FMT_DOUBLE,
            ctypes.byref(size),
            ctypes.byref(count),
            buf,
        )
        if status != 0:
            raise _status_error(status, "PdhGetFormattedCounterArray")
        items = ctypes.cast(buf, ctypes.POINTER(_FmtCounterValueItemDouble))
        return [(items[i].szName or "", float(items[i].FmtValue.doubleValue)) for i in range(count.value)]

    def close_query(self, query: Any) -> None:
        self._call("PdhCloseQuery", query)


class PdhCounterSource(SnapshotSource):
    """Queries wildcard process counters through the native PDH API.

    Every instance matching ``<base>*`` is returned in one array per counter;
    the row whose "ID Process" equals our pid is ours, so no instance name
    has to be resolved up front. Counters must be collected once before the
    first real query (priming), then each query is collect + read.
    """

    name = "pdh"
    requires_identity = False

    def __init__(
        self,
        *,
        base_instance_name: str,
        api: CounterApi | None = None,
        pid: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = logging.getLogger("procusage.pdh")
        self._base = base_instance_name
        self._api = api
        self._pid = int(pid) if pid is not None else os.getpid()
        self._clock = clock
        # the query handle and its counters are shared by every caller
        self._lock = threading.Lock()
        self._query: Any = None
        self._counters: dict[str, Any] = {}

    def _counter_paths(self) -> dict[str, str]:
        name = f"{self._base}*"
        return {
            "pid": f"\\Process({name})\\ID Process",
            "cpu": f"\\Process({name})\\% Processor Time",
            "rss": f"\\Process({name})\\Working Set - Private",
            "vss": f"\\Process({name})\\Virtual Bytes",
        }

    def _ensure_initialized(self) -> None:
        if self._query is not None:
            return
        if self._api is None:
            self._api = PdhApi()
        query = self._api.open_query()
        try:
            counters = {key: self._api.add_counter(query, path) for key, path in self._counter_paths().items()}
            self._api.collect(query)
        except Exception:
            self._api.close_query(query)
            raise
        self._query = query
        self._counters = counters
        self._log.info("pdh counters primed", extra={"instance_pattern": f"{self._base}*"})

    def query(self, identity: CounterIdentity | None = None) -> Snapshot:
        with self._lock:
            self._ensure_initialized()
            assert self._api is not None
            self._api.collect(self._query)
            arrays = {key: self._api.counter_array(counter) for key, counter in self._counters.items()}

        lengths = {len(rows) for rows in arrays.values()}
        if len(lengths) != 1:
            raise BackendError(f"counter arrays disagree in length: {sorted(lengths)}")

        idx = next((i for i, (_, v) in enumerate(arrays["pid"]) if int(v) == self._pid), None)
        if idx is None:
            raise InstanceNotPresentError(f"pid {self._pid} not among {self._base}* counter instances")

        rss = int(arrays["rss"][idx][1])
        return Snapshot(
            timestamp_monotonic=self._clock(),
            resolved_pid=self._pid,
            resident_bytes=rss,
            private_bytes=rss,
            virtual_bytes=int(arrays["vss"][idx][1]),
            reported_cpu_percent=float(arrays["cpu"][idx][1]),
        )

    def close(self) -> None:
        with self._lock:
            if self._query is not None and self._api is not None:
                self._api.close_query(self._query)
            self._query = None
            self._counters = {}
