from __future__ import annotations

import sys
from pathlib import Path

# Allow `python scripts/extract_energy_metrics.py` from a plain checkout.
_ROOT = str(Path(__file__).resolve().parents[1])
if _ROOT not in sys.path:
    sys.path.insert(0, _ROOT)

from trace_energy.energy_ops import main as energy_main


def main(argv: list[str] | None = None) -> int:
    """Shortcut for `python -m trace_energy.energy_ops extract ...`."""
    args = sys.argv[1:] if argv is None else argv
    return energy_main(["extract", *args])


if __name__ == "__main__":
    raise SystemExit(main())
