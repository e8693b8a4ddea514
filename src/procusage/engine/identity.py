from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from procusage.core.exceptions import InstanceNotPresentError, NotFoundError, StaleIdentityError
from procusage.sources.base import CounterIdentity, Snapshot, SnapshotSource


def candidate_name(base: str, index: int) -> str:
    return f"{base}#{index}"


@dataclass(frozen=True)
class Resolution:
    identity: CounterIdentity
    snapshot: Snapshot


class IdentityResolver:
    """Maps our pid to a counter instance name in a namespace keyed by image name.

    Same-named processes are told apart only by an order-of-registration
    suffix (``python#0``, ``python#1``...) that shifts as other instances
    start and stop, so a cached name is rechecked against our pid on every
    use. The lock covers only reads and writes of the cached identity;
    racing callers may enumerate concurrently.
    """

    def __init__(self, source: SnapshotSource, *, base_name: str, max_attempts: int = 128) -> None:
        self._log = logging.getLogger("procusage.identity")
        self._source = source
        self._base_name = base_name
        self._max_attempts = int(max_attempts)
        self._lock = threading.Lock()
        self._cached: CounterIdentity | None = None

    @property
    def cached(self) -> CounterIdentity | None:
        with self._lock:
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def resolve(self, own_pid: int) -> Resolution:
        cached = self.cached
        if cached is not None:
            try:
                return self._confirm(cached, own_pid)
            except StaleIdentityError as exc:
                self._log.info(
                    "cached counter instance is stale",
                    extra={"instance": exc.candidate_name, "reported_pid": exc.reported_pid},
                )
                self._clear_if(cached)
        return self._enumerate(own_pid)

    def _confirm(self, identity: CounterIdentity, own_pid: int) -> Resolution:
        try:
            snap = self._source.query(identity)
        except InstanceNotPresentError as exc:
            raise StaleIdentityError(identity.candidate_name, None, own_pid) from exc
        if snap.resolved_pid != own_pid:
            raise StaleIdentityError(identity.candidate_name, snap.resolved_pid, own_pid)
        self._log.debug("counter instance cache hit", extra={"instance": identity.candidate_name})
        return Resolution(identity=identity, snapshot=snap)

    def _enumerate(self, own_pid: int) -> Resolution:
        for index in range(self._max_attempts):
            name = candidate_name(self._base_name, index)
            try:
                snap = self._source.query(CounterIdentity(candidate_name=name, resolved_pid=own_pid))
            except InstanceNotPresentError:
                self._log.debug("candidate not present", extra={"instance": name})
                continue
            self._log.debug("candidate probed", extra={"instance": name, "reported_pid": snap.resolved_pid})
            if snap.resolved_pid == own_pid:
                identity = CounterIdentity(candidate_name=name, resolved_pid=own_pid)
                with self._lock:
                    self._cached = identity
                self._log.info("counter instance resolved", extra={"instance": name, "pid": own_pid})
                return Resolution(identity=identity, snapshot=snap)
        raise NotFoundError(
            f"no {self._base_name}#N counter instance reports pid {own_pid} "
            f"within {self._max_attempts} attempts"
        )

    def _clear_if(self, expected: CounterIdentity) -> None:
        # Another caller may already have cached a fresh identity.
        with self._lock:
            if self._cached == expected:
                self._cached = None
