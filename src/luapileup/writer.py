from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, TextIO

import numpy as np

from .errors import LuaPileupError
from .expression import ColumnPredicate
from .models import Column

logger = logging.getLogger(__name__)

BASE_FIELDS = ["#chrom", "pos0", "ref_base", "depth", "a", "c", "g", "t", "n"]
EXTRA_FIELDS = ["ins", "del", "ref_skip", "fail"]

# last edge is an open-ended catch-all
DEPTH_BIN_EDGES = [0, 1, 2, 5, 10, 20, 50, 100, 200, 500, 1_000, 10_000, 100_000, 1 << 40]


@dataclass
class RunStats:
    """Streaming counters for the run summary."""

    positions: int = 0
    rows_written: int = 0
    rows_zero_depth: int = 0
    rows_dropped_by_filter: int = 0
    reads_failed: int = 0
    mates_suppressed: int = 0
    depth_counts: np.ndarray = field(
        default_factory=lambda: np.zeros(len(DEPTH_BIN_EDGES) - 1, dtype=np.int64)
    )

    def add_depths(self, depths: List[int]) -> None:
        if depths:
            self.depth_counts += np.histogram(depths, bins=DEPTH_BIN_EDGES)[0]

    def to_dict(self) -> Dict[str, object]:
        return {
            "positions": self.positions,
            "rows_written": self.rows_written,
            "rows_zero_depth": self.rows_zero_depth,
            "rows_dropped_by_filter": self.rows_dropped_by_filter,
            "reads_failed": self.reads_failed,
            "mates_suppressed": self.mates_suppressed,
            "depth_hist": {
                "bin_edges": list(DEPTH_BIN_EDGES),
                "counts": self.depth_counts.tolist(),
            },
        }


class OutputWriter:
    """Apply the column predicate and serialize surviving rows.

    Rows must be handed over in ascending (contig, position) order; the writer
    refuses a position that goes backwards within a contig. A row rejected by
    the predicate is dropped whole. Zero-depth rows are never written.
    """

    def __init__(
        self,
        handle: TextIO,
        *,
        column_predicate: Optional[ColumnPredicate] = None,
        all_counts: bool = False,
        header: bool = True,
    ) -> None:
        self.handle = handle
        self.column_predicate = column_predicate
        self.all_counts = all_counts
        self.stats = RunStats()
        self._last_contig: Optional[str] = None
        self._last_pos = -1
        if header:
            self.write_header()

    def write_header(self) -> None:
        fields = BASE_FIELDS + (EXTRA_FIELDS if self.all_counts else [])
        self.handle.write("\t".join(fields) + "\n")

    def format_row(self, col: Column) -> str:
        values = [col.contig, col.pos, col.ref_base, col.depth, col.a, col.c, col.g, col.t, col.n]
        if self.all_counts:
            values += [col.ins, col.dels, col.ref_skip, col.fail]
        return "\t".join(str(v) for v in values) + "\n"

    def _check_order(self, col: Column) -> None:
        if col.contig == self._last_contig and col.pos <= self._last_pos:
            raise LuaPileupError(
                f"Rows out of order: {col.contig}:{col.pos} after {self._last_contig}:{self._last_pos}"
            )
        self._last_contig = col.contig
        self._last_pos = col.pos

    def accept(self, col: Column) -> bool:
        if col.depth == 0:
            self.stats.rows_zero_depth += 1
            return False
        if self.column_predicate is not None and not self.column_predicate.evaluate(col):
            self.stats.rows_dropped_by_filter += 1
            return False
        return True

    def write(self, col: Column) -> bool:
        self._check_order(col)
        self.stats.positions += 1
        self.stats.reads_failed += col.fail
        self.stats.mates_suppressed += col.suppressed
        if not self.accept(col):
            return False
        self.handle.write(self.format_row(col))
        self.stats.rows_written += 1
        return True

    def write_all(self, columns: Iterable[Column]) -> int:
        written = 0
        depths: List[int] = []
        for col in columns:
            if self.write(col):
                written += 1
                depths.append(col.depth)
        self.stats.add_depths(depths)
        return written
