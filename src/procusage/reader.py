from __future__ import annotations

import logging
import os
import threading
from typing import Callable

from procusage.core.config import SamplerConfig
from procusage.core.exceptions import InstanceNotPresentError, NotFoundError, SamplingError
from procusage.engine.delta import DeltaEngine, UsageReading
from procusage.engine.identity import IdentityResolver
from procusage.sources.base import Snapshot, SnapshotSource
from procusage.sources.factory import build_source


class UsageReader:
    """Single entry point returning the CPU and memory usage of this process."""

    def __init__(
        self,
        *,
        source: SnapshotSource,
        engine: DeltaEngine,
        resolver: IdentityResolver | None = None,
        pid_fn: Callable[[], int] = os.getpid,
    ) -> None:
        if source.requires_identity and resolver is None:
            raise ValueError(f"source {source.name!r} needs an IdentityResolver")
        self._log = logging.getLogger("procusage.reader")
        self._source = source
        self._engine = engine
        self._resolver = resolver
        self._pid_fn = pid_fn

    @classmethod
    def from_config(cls, config: SamplerConfig, *, source: SnapshotSource | None = None) -> "UsageReader":
        source = source or build_source(config)
        engine = DeltaEngine(
            min_refresh_interval_seconds=config.min_refresh_interval_seconds,
            cpu_scale=config.cpu_scale,
        )
        resolver = None
        if source.requires_identity:
            resolver = IdentityResolver(
                source,
                base_name=config.base_instance_name,
                max_attempts=config.max_resolution_attempts,
            )
        return cls(source=source, engine=engine, resolver=resolver)

    @property
    def source(self) -> SnapshotSource:
        return self._source

    @property
    def engine(self) -> DeltaEngine:
        return self._engine

    @property
    def resolver(self) -> IdentityResolver | None:
        return self._resolver

    def read_usage(self) -> UsageReading:
        cached = self._engine.cached_reading()
        if cached is not None:
            return cached

        try:
            snap = self._snapshot()
        except SamplingError as exc:
            # keep a failing backend from being retried faster than the throttle window
            self._engine.mark_attempt()
            self._log.debug("snapshot failed", extra={"backend": self._source.name, "error": str(exc)})
            raise
        return self._engine.update(snap)

    def _snapshot(self) -> Snapshot:
        own_pid = self._pid_fn()
        if self._resolver is not None:
            return self._resolver.resolve(own_pid).snapshot
        try:
            return self._source.query(None)
        except InstanceNotPresentError as exc:
            raise NotFoundError(f"no counters found for pid {own_pid}") from exc

    def close(self) -> None:
        self._source.close()


_default_reader: UsageReader | None = None
_default_lock = threading.Lock()


def get_default_reader(config: SamplerConfig | None = None) -> UsageReader:
    """Process-wide reader, built lazily from ``config`` on first use."""
    global _default_reader
    with _default_lock:
        if _default_reader is None:
            _default_reader = UsageReader.from_config(config or SamplerConfig())
        return _default_reader


def reset_default_reader() -> None:
    global _default_reader
    with _default_lock:
        reader, _default_reader = _default_reader, None
    if reader is not None:
        reader.close()


def read_usage() -> UsageReading:
    return get_default_reader().read_usage()
