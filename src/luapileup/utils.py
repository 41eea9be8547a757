from __future__ import annotations

import gzip
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterable, Optional, TextIO

logger = logging.getLogger(__name__)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def open_output(path: Optional[str | Path]) -> TextIO:
    """Open the row output: stdout for None or '-', gzip for '.gz' paths."""
    if path is None or str(path) == "-":
        return sys.stdout
    ensure_outdir(Path(path).parent)
    return open_textmaybe_gzip(path, "wt")


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def chunked_range(start: int, end: int, size: int) -> Iterable[tuple[int, int]]:
    """Split [start, end) into consecutive half-open pieces of at most ``size``."""
    pos = start
    while pos < end:
        stop = min(end, pos + size)
        yield pos, stop
        pos = stop
