from __future__ import annotations

import subprocess
from typing import Any

import pytest

from procusage.core.exceptions import BackendError, InstanceNotPresentError, ParseError
from procusage.engine.identity import IdentityResolver
from procusage.sources import typeperf
from procusage.sources.base import CounterIdentity
from procusage.sources.typeperf import TypeperfSource, counter_paths, parse_output, parse_result

SAMPLE_LINE = '"04/17/2016 15.38.00.016","5123.00000","1.2340000","123.00000","123.00000"'

NOT_VALID_OUTPUT = "\r\nError: The data is not valid.\r\n"


def _report(instance: str, pid: int, cpu: float = 3.5, private: int = 2048, virtual: int = 8192) -> str:
    header = ",".join(['"(PDH-CSV 4.0)"'] + [f'"\\\\HOST{p}"' for p in counter_paths(instance)])
    data = f'"10/18/2026 09:15:02.125","{pid}.000000","{cpu}","{private}.000000","{virtual}.000000"'
    return f"\r\n{header}\r\n{data}\r\nExiting, please wait...\r\nThe command completed successfully.\r\n"


class _FakeRun:
    """Stands in for subprocess.run, answering per counter instance name."""

    def __init__(self, by_instance: dict[str, tuple[int, str]]) -> None:
        self.by_instance = by_instance
        self.calls: list[list[str]] = []
        self.kwargs: dict[str, Any] = {}

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        self.kwargs = kwargs
        path = args[1]
        instance = path[len("\\Process(") : path.index(")")]
        code, out = self.by_instance.get(instance, (-1073738824, NOT_VALID_OUTPUT))
        return subprocess.CompletedProcess(args, code, stdout=out, stderr="")


def test_parse_result_literal_line() -> None:
    r = parse_result(SAMPLE_LINE)
    assert r.sampled_at == "04/17/2016 15.38.00.016"
    assert r.pid == 5123
    assert r.cpu_percent == pytest.approx(1.234)
    assert r.private_bytes == 123
    assert r.virtual_bytes == 123


def test_parse_result_tolerates_spaces_after_commas() -> None:
    r = parse_result('"04/17/2016 15.38.00.016", "5123.00000", "1.2340000", "123.00000", "456.00000"')
    assert r.pid == 5123
    assert r.virtual_bytes == 456


def test_parse_result_too_few_fields() -> None:
    with pytest.raises(ParseError):
        parse_result('"04/17/2016 15.38.00.016","5123.00000","1.2340000"')


def test_parse_result_non_numeric_value() -> None:
    with pytest.raises(ParseError):
        parse_result('"04/17/2016 15.38.00.016","5123.00000"," ","123.00000","123.00000"')


@pytest.mark.parametrize(
    "line",
    [
        '"04/17/2016 15.38.00.016","inf","1.0","123.0","123.0"',
        '"04/17/2016 15.38.00.016","5123.0","nan","123.0","123.0"',
        '"04/17/2016 15.38.00.016","5123.0","1.0","123.0","1e400"',
    ],
)
def test_parse_result_non_finite_value(line: str) -> None:
    with pytest.raises(ParseError):
        parse_result(line)


def test_non_finite_report_is_typed_for_resolver(monkeypatch) -> None:
    bad = '\r\n"(PDH-CSV 4.0)","x"\r\n"10/18/2026 09:15:02.125","inf","1.0","1.0","1.0"\r\n'
    monkeypatch.setattr(typeperf.subprocess, "run", _FakeRun({"python#0": (0, bad)}))
    resolver = IdentityResolver(TypeperfSource(), base_name="python", max_attempts=4)
    with pytest.raises(ParseError):
        resolver.resolve(42)


def test_parse_output_skips_blank_and_status_lines() -> None:
    r = parse_output(_report("python#1", 42, cpu=12.5))
    assert r.pid == 42
    assert r.cpu_percent == pytest.approx(12.5)


def test_parse_output_without_data_line() -> None:
    with pytest.raises(ParseError):
        parse_output('\r\n"(PDH-CSV 4.0)","\\\\HOST\\Process(python#0)\\ID Process"\r\n')


def test_query_builds_counter_command(monkeypatch) -> None:
    fake = _FakeRun({"python#1": (0, _report("python#1", 42, cpu=6.0, private=1000, virtual=5000))})
    monkeypatch.setattr(typeperf.subprocess, "run", fake)
    source = TypeperfSource(timeout_seconds=3.0, clock=lambda: 77.0)

    snap = source.query(CounterIdentity(candidate_name="python#1", resolved_pid=42))

    assert fake.calls[0] == [
        "typeperf",
        "\\Process(python#1)\\ID Process",
        "\\Process(python#1)\\% Processor Time",
        "\\Process(python#1)\\Private Bytes",
        "\\Process(python#1)\\Virtual Bytes",
        "-sc",
        "1",
    ]
    assert fake.kwargs["timeout"] == 3.0
    assert snap.timestamp_monotonic == 77.0
    assert snap.resolved_pid == 42
    assert snap.reported_cpu_percent == pytest.approx(6.0)
    assert snap.resident_bytes == 1000
    assert snap.private_bytes == 1000
    assert snap.virtual_bytes == 5000


def test_query_missing_instance_signals_not_present(monkeypatch) -> None:
    monkeypatch.setattr(typeperf.subprocess, "run", _FakeRun({}))
    with pytest.raises(InstanceNotPresentError):
        TypeperfSource().query(CounterIdentity(candidate_name="python#9", resolved_pid=42))


def test_query_other_failure_is_backend_error(monkeypatch) -> None:
    monkeypatch.setattr(typeperf.subprocess, "run", _FakeRun({"python#0": (1, "Error: access denied\r\n")}))
    with pytest.raises(BackendError):
        TypeperfSource().query(CounterIdentity(candidate_name="python#0", resolved_pid=42))


def test_query_spawn_failure_is_backend_error(monkeypatch) -> None:
    def _missing(*_args: Any, **_kwargs: Any) -> None:
        raise FileNotFoundError("typeperf")

    monkeypatch.setattr(typeperf.subprocess, "run", _missing)
    with pytest.raises(BackendError):
        TypeperfSource().query(CounterIdentity(candidate_name="python#0", resolved_pid=42))


def test_query_timeout_is_backend_error(monkeypatch) -> None:
    def _hang(args: list[str], **kwargs: Any) -> None:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(typeperf.subprocess, "run", _hang)
    with pytest.raises(BackendError):
        TypeperfSource(timeout_seconds=0.5).query(CounterIdentity(candidate_name="python#0", resolved_pid=42))


def test_query_requires_identity() -> None:
    with pytest.raises(BackendError):
        TypeperfSource().query(None)


def test_resolver_finds_instance_through_typeperf(monkeypatch) -> None:
    fake = _FakeRun(
        {
            "python#0": (0, _report("python#0", 11)),
            "python#1": (0, _report("python#1", 42)),
        }
    )
    monkeypatch.setattr(typeperf.subprocess, "run", fake)
    resolver = IdentityResolver(TypeperfSource(), base_name="python", max_attempts=4)

    out = resolver.resolve(42)

    assert out.identity.candidate_name == "python#1"
    assert len(fake.calls) == 2
