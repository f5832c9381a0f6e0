from __future__ import annotations

import csv
import math
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trace_energy.trace_processor import TraceQueryService


EXPECTED_HEADER = '"name","energyUs"'

_RE_WORD_SEP = re.compile(r"[._\-\s]+")


@dataclass(frozen=True)
class Slice:
    """Closed time window [ts, end_ts] in trace timestamps (ns)."""

    ts: int
    end_ts: int

    @property
    def dur(self) -> int:
        return self.end_ts - self.ts

    @classmethod
    def from_dur(cls, ts: int, dur: int) -> Slice:
        return cls(ts=ts, end_ts=ts + dur)


@dataclass(frozen=True)
class EnergyMetric:
    name: str
    energy_us: float


class SchemaMismatchError(RuntimeError):
    def __init__(self, query: str, header: str | None) -> None:
        self.query = query
        self.header = header
        got = "empty result" if header is None else repr(header)
        super().__init__(f"query failed! expected header {EXPECTED_HEADER}, got {got}\n{query}")


class EnergyRowParseError(ValueError):
    def __init__(self, line_no: int, line: str, reason: str) -> None:
        self.line_no = line_no
        self.line = line
        super().__init__(f"bad energy row at line {line_no}: {reason}: {line!r}")


def _as_int_bound(v: object, what: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int):
        raise TypeError(f"{what} must be an int timestamp, got {type(v).__name__}")
    return int(v)


def build_energy_query(window: Slice) -> str:
    ts = _as_int_bound(window.ts, "window.ts")
    end_ts = _as_int_bound(window.end_ts, "window.end_ts")
    return "\n".join(
        [
            "SELECT",
            "    t.name,",
            "    max(c.value) - min(c.value) AS energyUs",
            "FROM counter c",
            "JOIN counter_track t ON c.track_id = t.id",
            "WHERE t.name GLOB 'power.*'",
            f"AND c.ts >= {ts} AND c.ts <= {end_ts}",
            "GROUP BY t.name",
        ]
    )


def unquote(s: str) -> str:
    return s.strip().strip('"')


def camel_case(s: str) -> str:
    """`power.cpu_big` -> `powerCpuBig`. The first word is left untouched."""
    words = [w for w in _RE_WORD_SEP.split(s) if w]
    if not words:
        return ""
    return words[0] + "".join(w[:1].upper() + w[1:] for w in words[1:])


def parse_energy_csv(text: str, query: str) -> list[EnergyMetric]:
    """Parse trace_processor CSV output for the energy query.

    Blank lines are skipped anywhere. The first non-blank line has to be the
    exact quoted header; each following line has to be `name,value`.
    """

    numbered = [(i, ln.rstrip("\r")) for i, ln in enumerate(text.split("\n"), start=1) if ln.strip()]
    if not numbered or numbered[0][1] != EXPECTED_HEADER:
        raise SchemaMismatchError(query, numbered[0][1] if numbered else None)

    out: list[EnergyMetric] = []
    for line_no, line in numbered[1:]:
        cols = next(csv.reader([line]))
        if len(cols) != 2:
            raise EnergyRowParseError(line_no, line, f"expected 2 columns, got {len(cols)}")
        raw = cols[1].strip()
        try:
            if "_" in raw:
                raise ValueError(raw)
            energy = float(raw)
        except ValueError:
            raise EnergyRowParseError(line_no, line, f"non-numeric energy value {cols[1]!r}") from None
        if not math.isfinite(energy):
            raise EnergyRowParseError(line_no, line, f"non-finite energy value {cols[1]!r}")
        out.append(EnergyMetric(name=camel_case(unquote(cols[0])), energy_us=energy))
    return out


def get_energy_metrics(
    service: TraceQueryService,
    trace_path: str | os.PathLike[str],
    window: Slice,
) -> list[EnergyMetric]:
    """Energy delta of every `power.*` counter track within `window`.

    Errors raised by `service` propagate as-is.
    """

    query = build_energy_query(window)
    text = service.raw_query(trace_path, query)
    return parse_energy_csv(text, query)


@dataclass(frozen=True)
class EnergyMetricsExtractor:
    service: TraceQueryService

    def extract(self, trace_path: str | os.PathLike[str], window: Slice) -> list[EnergyMetric]:
        return get_energy_metrics(self.service, trace_path, window)
