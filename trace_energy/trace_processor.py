from __future__ import annotations

import csv
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol


DEFAULT_TIMEOUT_S = 120.0


class TraceQueryService(Protocol):
    def raw_query(self, trace_path: str | os.PathLike[str], query: str) -> str:
        ...


class TraceProcessorError(RuntimeError):
    def __init__(self, returncode: int, stderr: str, trace_path: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.trace_path = trace_path
        msg = stderr.strip() or "no stderr"
        super().__init__(f"trace_processor failed (rc={returncode}) on {trace_path}: {msg}")


def default_trace_processor_candidates() -> list[str]:
    candidates: list[str] = []

    # 1) Explicit env override
    env = os.environ.get("TRACE_PROCESSOR_SHELL")
    if env:
        candidates.append(env)

    # 2) On PATH
    candidates.extend(["trace_processor_shell", "trace_processor"])

    # 3) Common per-user install location
    candidates.append(str(Path.home() / ".local" / "bin" / "trace_processor_shell"))

    return list(dict.fromkeys(c for c in candidates if c))


def resolve_trace_processor(binary_arg: str | None) -> str:
    if binary_arg:
        return binary_arg
    for cand in default_trace_processor_candidates():
        found = shutil.which(cand)
        if found:
            return found
        if Path(cand).is_file():
            return cand
    raise FileNotFoundError(
        "trace_processor_shell not found. Pass --trace-processor <path>, set TRACE_PROCESSOR_SHELL, "
        "or add it to PATH."
    )


class ShellTraceQueryService:
    """Runs queries through the `trace_processor_shell` binary, one process per query.

    The shell prints query results as CSV with a quoted header row, which is
    returned untouched.
    """

    def __init__(self, binary: str, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.binary = binary
        self.timeout_s = float(timeout_s)

    def raw_query(self, trace_path: str | os.PathLike[str], query: str) -> str:
        trace = Path(trace_path)
        if not trace.exists():
            raise FileNotFoundError(f"Trace not found: {trace}")

        # Multi-line SQL goes in through --query-file.
        with tempfile.NamedTemporaryFile("w", delete=False, suffix=".sql", encoding="utf-8", newline="\n") as f:
            query_file = f.name
            f.write(query)
            if not query.endswith("\n"):
                f.write("\n")

        try:
            proc = subprocess.run(
                [self.binary, "--query-file", query_file, str(trace)],
                capture_output=True,
                timeout=self.timeout_s,
            )
        finally:
            Path(query_file).unlink(missing_ok=True)

        if proc.returncode != 0:
            raise TraceProcessorError(proc.returncode, proc.stderr.decode("utf-8", errors="replace"), str(trace))
        return proc.stdout.decode("utf-8", errors="replace")


class PerfettoTraceQueryService:
    """Runs queries in-process through the `perfetto` Python package.

    Results are rendered back into the same quoted CSV text the shell prints,
    so both services are interchangeable for callers that parse text.
    """

    def __init__(self, bin_path: str | None = None) -> None:
        self.bin_path = bin_path

    def raw_query(self, trace_path: str | os.PathLike[str], query: str) -> str:
        from perfetto.trace_processor import TraceProcessor, TraceProcessorConfig

        trace = Path(trace_path)
        if not trace.exists():
            raise FileNotFoundError(f"Trace not found: {trace}")

        config = TraceProcessorConfig(bin_path=self.bin_path) if self.bin_path else TraceProcessorConfig()
        with TraceProcessor(trace=str(trace), config=config) as tp:
            df = tp.query(query).as_pandas_dataframe()

        return df.to_csv(index=False, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")


def make_query_service(
    backend: str,
    binary: str | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> TraceQueryService:
    if backend == "shell":
        return ShellTraceQueryService(resolve_trace_processor(binary), timeout_s=timeout_s)
    if backend == "python":
        return PerfettoTraceQueryService(bin_path=binary)
    raise ValueError(f"unknown trace query backend: {backend!r} (expected 'shell' or 'python')")
