import os
import subprocess
import tempfile
import stat
from pathlib import Path

import pandas as pd
import pytest

from trace_energy.energy_query import EnergyMetric, Slice, get_energy_metrics
from trace_energy.trace_processor import (
    PerfettoTraceQueryService,
    ShellTraceQueryService,
    TraceProcessorError,
    default_trace_processor_candidates,
    make_query_service,
    resolve_trace_processor,
)


def _fake_shell(tmp_path: Path, body: str) -> str:
    script = tmp_path / "trace_processor_shell"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def _trace(tmp_path: Path) -> Path:
    trace = tmp_path / "run.pftrace"
    trace.write_bytes(b"\x00")
    return trace


def test_shell_service_returns_stdout(tmp_path: Path):
    binary = _fake_shell(
        tmp_path,
        'echo "Loading trace..." >&2\n'
        "printf '\"name\",\"energyUs\"\\n\"power.cpu\",500.0\\n\"power.gpu\",120.25\\n'\n",
    )
    svc = ShellTraceQueryService(binary, timeout_s=10)
    out = get_energy_metrics(svc, _trace(tmp_path), Slice(100, 200))
    assert out == [EnergyMetric("powerCpu", 500.0), EnergyMetric("powerGpu", 120.25)]


def test_shell_service_passes_query_file(tmp_path: Path):
    # Echo the query file back so the test can see what was sent.
    binary = _fake_shell(tmp_path, '[ "$1" = "--query-file" ] || exit 3\ncat "$2"\n')
    svc = ShellTraceQueryService(binary, timeout_s=10)
    text = svc.raw_query(_trace(tmp_path), "SELECT 42")
    assert text == "SELECT 42\n"


def test_shell_service_removes_query_file(tmp_path: Path):
    binary = _fake_shell(tmp_path, 'echo "$2"\n')
    svc = ShellTraceQueryService(binary, timeout_s=10)
    query_file = svc.raw_query(_trace(tmp_path), "SELECT 1").strip()
    assert query_file.endswith(".sql")
    assert not os.path.exists(query_file)


def test_shell_service_nonzero_exit(tmp_path: Path):
    binary = _fake_shell(tmp_path, 'echo "Could not read trace" >&2\nexit 1\n')
    svc = ShellTraceQueryService(binary, timeout_s=10)
    with pytest.raises(TraceProcessorError) as ei:
        svc.raw_query(_trace(tmp_path), "SELECT 1")
    assert ei.value.returncode == 1
    assert "Could not read trace" in str(ei.value)


def test_shell_service_missing_trace(tmp_path: Path):
    svc = ShellTraceQueryService(_fake_shell(tmp_path, "exit 0\n"))
    with pytest.raises(FileNotFoundError):
        svc.raw_query(tmp_path / "nope.pftrace", "SELECT 1")


def test_perfetto_service_missing_trace(tmp_path: Path):
    pytest.importorskip("perfetto")
    with pytest.raises(FileNotFoundError):
        PerfettoTraceQueryService().raw_query(tmp_path / "nope.pftrace", "SELECT 1")


def test_candidates_prefer_env(monkeypatch):
    monkeypatch.setenv("TRACE_PROCESSOR_SHELL", "/opt/perfetto/trace_processor_shell")
    cands = default_trace_processor_candidates()
    assert cands[0] == "/opt/perfetto/trace_processor_shell"
    assert "trace_processor_shell" in cands
    assert len(cands) == len(set(cands))


def test_resolve_explicit_wins(monkeypatch):
    monkeypatch.setenv("TRACE_PROCESSOR_SHELL", "/elsewhere")
    assert resolve_trace_processor("/my/tp") == "/my/tp"


def test_resolve_from_env_file(tmp_path: Path, monkeypatch):
    binary = _fake_shell(tmp_path, "exit 0\n")
    monkeypatch.setenv("TRACE_PROCESSOR_SHELL", binary)
    assert resolve_trace_processor(None) == binary


def test_resolve_not_found(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("TRACE_PROCESSOR_SHELL", raising=False)
    monkeypatch.setenv("PATH", str(tmp_path))
    monkeypatch.setenv("HOME", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="trace_processor_shell not found"):
        resolve_trace_processor(None)


def test_make_query_service(tmp_path: Path):
    binary = _fake_shell(tmp_path, "exit 0\n")
    svc = make_query_service("shell", binary=binary, timeout_s=5)
    assert isinstance(svc, ShellTraceQueryService)
    assert svc.binary == binary
    assert svc.timeout_s == 5.0

    py = make_query_service("python", binary="/x/tp")
    assert isinstance(py, PerfettoTraceQueryService)
    assert py.bin_path == "/x/tp"

    with pytest.raises(ValueError):
        make_query_service("grpc")


def test_shell_service_timeout_removes_query_file(tmp_path: Path, monkeypatch):
    query_dir = tmp_path / "q"
    query_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(query_dir))
    marker = tmp_path / "query_file.txt"
    binary = _fake_shell(tmp_path, f'echo "$2" > "{marker}"\nexec sleep 5\n')

    svc = ShellTraceQueryService(binary, timeout_s=0.2)
    with pytest.raises(subprocess.TimeoutExpired):
        svc.raw_query(_trace(tmp_path), "SELECT 1")

    assert list(query_dir.glob("*.sql")) == []
    if marker.exists():
        assert not os.path.exists(marker.read_text(encoding="utf-8").strip())


class _FakeQueryResult:
    def __init__(self, df):
        self.df = df

    def as_pandas_dataframe(self):
        return self.df


def _fake_trace_processor(df, seen):
    class FakeTraceProcessor:
        def __init__(self, trace=None, config=None):
            seen["trace"] = trace

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def query(self, q):
            seen["query"] = q
            return _FakeQueryResult(df)

    return FakeTraceProcessor


def test_perfetto_service_renders_shell_csv(tmp_path: Path, monkeypatch):
    tp_mod = pytest.importorskip("perfetto.trace_processor")
    df = pd.DataFrame(
        {"name": ["power.cpu_big", "power.gpu", "power.x"], "energyUs": [500.0, 120.25, 7]},
        dtype=object,
    )
    seen = {}
    monkeypatch.setattr(tp_mod, "TraceProcessor", _fake_trace_processor(df, seen))

    trace = _trace(tmp_path)
    svc = PerfettoTraceQueryService()
    text = svc.raw_query(trace, "SELECT 1")
    assert text == '"name","energyUs"\n"power.cpu_big",500.0\n"power.gpu",120.25\n"power.x",7\n'
    assert seen == {"trace": str(trace), "query": "SELECT 1"}

    out = get_energy_metrics(svc, trace, Slice(100, 200))
    assert out == [
        EnergyMetric("powerCpuBig", 500.0),
        EnergyMetric("powerGpu", 120.25),
        EnergyMetric("powerX", 7.0),
    ]
    assert "c.ts >= 100 AND c.ts <= 200" in seen["query"]


def test_perfetto_service_empty_result_is_header_only(tmp_path: Path, monkeypatch):
    tp_mod = pytest.importorskip("perfetto.trace_processor")
    df = pd.DataFrame(columns=["name", "energyUs"], dtype=object)
    monkeypatch.setattr(tp_mod, "TraceProcessor", _fake_trace_processor(df, {}))

    svc = PerfettoTraceQueryService()
    assert svc.raw_query(_trace(tmp_path), "SELECT 1") == '"name","energyUs"\n'
    assert get_energy_metrics(svc, _trace(tmp_path), Slice(0, 1)) == []
