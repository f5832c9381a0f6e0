from __future__ import annotations

import argparse
import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from trace_energy.energy_query import EnergyMetric
from trace_energy.energy_query import Slice
from trace_energy.energy_query import get_energy_metrics
from trace_energy.trace_processor import DEFAULT_TIMEOUT_S
from trace_energy.trace_processor import TraceQueryService
from trace_energy.trace_processor import make_query_service


# -----------------------------
# Summaries
# -----------------------------


@dataclass(frozen=True)
class EnergySummary:
    label: str
    trace_path: str
    ts: int
    end_ts: int
    dur_ns: int
    n_rails: int
    total_energy_us: float
    top_rail: str | None


def metrics_to_frame(metrics: list[EnergyMetric]) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "name": [m.name for m in metrics],
            "energy_us": np.asarray([m.energy_us for m in metrics], dtype=float),
        }
    )
    total = float(df["energy_us"].sum()) if len(df) else 0.0
    if total != 0.0:
        df["share"] = df["energy_us"].to_numpy() / total
    else:
        df["share"] = np.full(len(df), np.nan)
    return df


def summarize_energy(
    metrics: list[EnergyMetric],
    trace_path: str | os.PathLike[str],
    window: Slice,
    label: str = "",
) -> EnergySummary:
    trace = Path(trace_path)
    top_rail = None
    if metrics:
        top_rail = max(metrics, key=lambda m: m.energy_us).name

    return EnergySummary(
        label=label or trace.stem,
        trace_path=str(trace),
        ts=int(window.ts),
        end_ts=int(window.end_ts),
        dur_ns=int(window.dur),
        n_rails=len(metrics),
        total_energy_us=float(sum(m.energy_us for m in metrics)),
        top_rail=top_rail,
    )


def write_energy_outputs(
    metrics: list[EnergyMetric],
    summary: EnergySummary,
    out_dir: Path,
) -> tuple[Path, Path]:
    out_dir.mkdir(parents=True, exist_ok=True)

    out_json = out_dir / "energy_metrics.json"
    out_csv = out_dir / "energy_metrics.csv"

    out_json.write_text(
        json.dumps(
            {
                "summary": asdict(summary),
                "metrics": [asdict(m) for m in metrics],
            },
            ensure_ascii=False,
            indent=2,
        )
        + "\n",
        encoding="utf-8",
    )
    metrics_to_frame(metrics).to_csv(out_csv, index=False, encoding="utf-8")
    return out_json, out_csv


def extract_and_write(
    service: TraceQueryService,
    trace: Path,
    window: Slice,
    out_dir: Path | None = None,
    label: str = "",
) -> tuple[list[EnergyMetric], EnergySummary, Path, Path]:
    if not trace.exists():
        raise FileNotFoundError(f"Trace not found: {trace}")

    out_dir = out_dir or trace.parent

    metrics = get_energy_metrics(service, trace, window)
    summary = summarize_energy(metrics, trace, window, label=label)
    out_json, out_csv = write_energy_outputs(metrics, summary, out_dir)
    return metrics, summary, out_json, out_csv


# -----------------------------
# Report
# -----------------------------


def report_energy(csv_path: Path, out_dir: Path | None = None) -> tuple[Path, Path]:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    if out_dir is None:
        out_dir = csv_path.parent
    out_dir.mkdir(parents=True, exist_ok=True)

    df = pd.read_csv(csv_path)
    if "energy_us" in df.columns:
        df["energy_us"] = pd.to_numeric(df["energy_us"], errors="coerce")
    df = df.dropna(subset=[c for c in ["name", "energy_us"] if c in df.columns])

    md_path = out_dir / "energy_summary.md"
    png_path = out_dir / "energy_breakdown.png"

    lines: list[str] = []
    lines.append("# Energy report")
    lines.append("")
    lines.append(f"- source: {csv_path.as_posix()}")
    lines.append(f"- rails: {int(len(df))}")

    if df.empty:
        lines.append("- no power.* rails in window")
    else:
        df = df.sort_values("energy_us", ascending=False).reset_index(drop=True)
        total = float(df["energy_us"].sum())
        lines.append(f"- total_energy_us: {total:.1f}")
        lines.append("")
        lines.append("| rail | energy_us | share |")
        lines.append("|---|---:|---:|")
        for _, row in df.iterrows():
            share = float(row["energy_us"]) / total if total else float("nan")
            share_s = f"{share * 100:.1f}%" if share == share else "n/a"
            lines.append(f"| {row['name']} | {float(row['energy_us']):.1f} | {share_s} |")

    md_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    fig, ax = plt.subplots(1, 1, figsize=(9, max(3.0, 0.4 * len(df) + 1.5)))
    if df.empty:
        ax.text(0.5, 0.5, "no power.* rails", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
    else:
        plot_df = df.iloc[::-1]
        ax.barh(plot_df["name"].astype(str), plot_df["energy_us"], color="tab:blue")
        ax.set_xlabel("energy (uWs)")
    ax.set_title(csv_path.stem)
    fig.tight_layout()
    fig.savefig(png_path, dpi=160)
    plt.close(fig)

    return md_path, png_path


# -----------------------------
# Module CLI
# -----------------------------


def _window_from_args(args: argparse.Namespace) -> Slice:
    if args.end is not None:
        if args.end < args.start:
            raise SystemExit(f"--end ({args.end}) is before --start ({args.start})")
        return Slice(ts=args.start, end_ts=args.end)
    if args.dur < 0:
        raise SystemExit(f"--dur must be >= 0, got {args.dur}")
    return Slice.from_dur(args.start, args.dur)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Per-rail energy (power.* counters) from Perfetto traces")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_ex = sub.add_parser("extract", help="Query power.* counter deltas within a time window")
    p_ex.add_argument("--trace", type=Path, required=True, help="Input .pftrace/.perfetto-trace path")
    p_ex.add_argument("--start", type=int, required=True, help="Window start timestamp (ns, inclusive)")
    end_group = p_ex.add_mutually_exclusive_group(required=True)
    end_group.add_argument("--end", type=int, default=None, help="Window end timestamp (ns, inclusive)")
    end_group.add_argument("--dur", type=int, default=None, help="Window duration (ns)")
    p_ex.add_argument("--out-dir", type=Path, default=None, help="Output directory (default: alongside trace)")
    p_ex.add_argument("--label", default="", help="Label to include in outputs")
    p_ex.add_argument("--backend", choices=["shell", "python"], default="shell")
    p_ex.add_argument("--trace-processor", default=None, help="Path to trace_processor_shell")
    p_ex.add_argument("--timeout-s", type=float, default=DEFAULT_TIMEOUT_S)
    p_ex.add_argument("--print", dest="print_rows", action="store_true", help="Also print name,energy_us rows")

    p_rep = sub.add_parser("report", help="Generate report (energy_summary.md + energy_breakdown.png)")
    p_rep.add_argument("--csv", type=Path, required=True)
    p_rep.add_argument("--out-dir", type=Path, default=None)

    args = ap.parse_args(argv)

    if args.cmd == "extract":
        window = _window_from_args(args)
        if not args.trace.exists():
            raise SystemExit(f"Trace not found: {args.trace}")
        try:
            service = make_query_service(args.backend, binary=args.trace_processor, timeout_s=args.timeout_s)
        except FileNotFoundError as e:
            raise SystemExit(str(e)) from None

        metrics, summary, out_json, out_csv = extract_and_write(
            service, args.trace, window, out_dir=args.out_dir, label=args.label
        )
        if not metrics:
            print(f"WARN: no power.* counter tracks in [{window.ts}, {window.end_ts}] for {args.trace}")
        if args.print_rows:
            print("name,energy_us")
            for m in metrics:
                print(f"{m.name},{m.energy_us}")
        print(f"Wrote: {out_json}")
        print(f"Wrote: {out_csv}")
        return 0

    if args.cmd == "report":
        if not args.csv.exists():
            raise SystemExit(f"CSV not found: {args.csv}")
        md_path, png_path = report_energy(args.csv, out_dir=args.out_dir)
        print(f"Wrote: {md_path}")
        print(f"Wrote: {png_path}")
        return 0

    raise SystemExit("unknown command")


if __name__ == "__main__":
    raise SystemExit(main())
