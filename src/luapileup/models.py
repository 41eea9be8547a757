from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Region:
    """A chunk of work: one contig interval processed by a single worker.

    Coordinates are 0-based half-open.

    Attributes
    ----------
    contig:
        Contig name as present in the alignment header.
    start, end:
        Interval bounds, ``start < end``.
    index:
        Dispatch order; output is merged by this index, never by completion order.
    """

    contig: str
    start: int
    end: int
    index: int = 0

    def __len__(self) -> int:
        return self.end - self.start


class ObservationKind(enum.Enum):
    """How a read contributes to a reference position."""

    ALIGNED = "aligned"
    INSERTION = "insertion"  # aligned base immediately followed by an insertion
    DELETION = "deletion"
    REF_SKIP = "ref_skip"

    @property
    def has_base(self) -> bool:
        return self in (ObservationKind.ALIGNED, ObservationKind.INSERTION)


@dataclass(frozen=True)
class Observation:
    """One read's passing contribution to a pileup column."""

    qname: str
    kind: ObservationKind
    base: Optional[str]
    mapq: int
    start0: int
    is_read1: bool
    order: int  # position of the read in the fetched stream


@dataclass
class Column:
    """Aggregated counts at one reference position.

    ``depth`` always equals ``a + c + g + t + n``. Insertions, deletions,
    reference skips, predicate failures and suppressed mates are counted
    separately and never enter ``depth``.
    """

    contig: str
    pos: int
    depth: int = 0
    a: int = 0
    c: int = 0
    g: int = 0
    t: int = 0
    n: int = 0
    ins: int = 0
    dels: int = 0
    ref_skip: int = 0
    fail: int = 0
    suppressed: int = 0
    ref_base: str = "."

    def add_base(self, base: str) -> None:
        b = base.upper()
        if b == "A":
            self.a += 1
        elif b == "C":
            self.c += 1
        elif b == "G":
            self.g += 1
        elif b == "T":
            self.t += 1
        else:
            self.n += 1
        self.depth += 1


@dataclass(frozen=True)
class FilterOutcome:
    """Result of a predicate evaluation; the diagnostic never affects counting."""

    passed: bool
    diagnostic: Optional[str] = None
