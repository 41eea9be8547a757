from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import pysam

from .expression import ReadPredicate
from .models import Column, Observation, ObservationKind, Region
from .readview import DEFAULT_SKIP_FLAGS, project
from .reference import MISSING_BASE, ReferenceSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 100_000

# (position, passing observations, number of reads failing the predicate)
RawColumn = Tuple[int, List[Observation], int]


class PileupWalker:
    """Walk a region position by position, filtering reads with a Lua predicate.

    Reads must arrive in coordinate order (as produced by an indexed fetch).
    Reads carrying any of ``skip_flags`` are never considered. At each position
    at most ``max_depth`` covering reads are evaluated; the rest are ignored at
    that position only.
    """

    def __init__(
        self,
        predicate: ReadPredicate,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        skip_flags: int = DEFAULT_SKIP_FLAGS,
    ) -> None:
        self.predicate = predicate
        self.max_depth = int(max_depth)
        self.skip_flags = int(skip_flags)
        self.truncated_positions = 0
        self.reads_skipped = 0

    def _usable(self, read: pysam.AlignedSegment) -> bool:
        if read.flag & self.skip_flags:
            return False
        if not read.cigartuples or read.reference_end is None:
            return False
        return read.reference_end > read.reference_start

    def walk(self, reads: Iterable[pysam.AlignedSegment], region: Region) -> Iterator[RawColumn]:
        it = iter(reads)
        order = 0

        def next_read() -> Optional[pysam.AlignedSegment]:
            for r in it:
                if self._usable(r):
                    return r
                self.reads_skipped += 1
            return None

        pending = next_read()
        active: List[Tuple[int, pysam.AlignedSegment]] = []
        pos = region.start

        while pos < region.end:
            while pending is not None and pending.reference_start <= pos:
                active.append((order, pending))
                order += 1
                pending = next_read()

            active = [(o, r) for o, r in active if r.reference_end > pos]
            if not active:
                if pending is None:
                    break
                # jump over uncovered stretches
                pos = pending.reference_start
                continue

            yield self._column(active, pos)
            pos += 1

    def _column(self, active: List[Tuple[int, pysam.AlignedSegment]], pos: int) -> RawColumn:
        observations: List[Observation] = []
        failed = 0
        considered = 0

        for order, read in active:
            if considered >= self.max_depth:
                self.truncated_positions += 1
                break
            view = project(read, pos)
            if view is None:
                continue
            considered += 1
            if not self.predicate.evaluate(view):
                failed += 1
                continue
            observations.append(
                Observation(
                    qname=view.qname,
                    kind=view.kind,
                    base=view.base,
                    mapq=view.mapping_quality,
                    start0=view.start,
                    is_read1=view.is_read1,
                    order=order,
                )
            )

        return pos, observations, failed


def _retention_key(obs: Observation) -> Tuple[int, bool, int, bool, int]:
    # higher MAPQ, then a called base over a gap, then earlier start, then read1,
    # then earlier in the stream
    return (-obs.mapq, not obs.kind.has_base, obs.start0, not obs.is_read1, obs.order)


def resolve_mate_overlaps(observations: List[Observation]) -> Tuple[List[Observation], int]:
    """Keep one observation per template at a position.

    Returns the retained observations (in their original order) and the number
    suppressed. Suppressed observations count neither as bases nor as fails.
    """
    by_template: Dict[str, List[Observation]] = {}
    for obs in observations:
        if obs.qname:
            by_template.setdefault(obs.qname, []).append(obs)

    kept: List[Observation] = []
    suppressed = 0
    for obs in observations:
        group = by_template.get(obs.qname)
        if group is None or len(group) == 1:
            kept.append(obs)
            continue
        if obs is min(group, key=_retention_key):
            kept.append(obs)
        else:
            suppressed += 1
    return kept, suppressed


def aggregate(
    contig: str,
    pos: int,
    observations: Iterable[Observation],
    *,
    failed: int = 0,
    suppressed: int = 0,
    ref_base: str = MISSING_BASE,
) -> Column:
    """Fold observations into a :class:`Column`."""
    col = Column(contig=contig, pos=pos, fail=failed, suppressed=suppressed, ref_base=ref_base)
    for obs in observations:
        if obs.kind.has_base:
            col.add_base(obs.base or "N")
            if obs.kind is ObservationKind.INSERTION:
                col.ins += 1
        elif obs.kind is ObservationKind.DELETION:
            col.dels += 1
        else:
            col.ref_skip += 1
    return col


def pileup_region(
    reads: Iterable[pysam.AlignedSegment],
    region: Region,
    *,
    walker: PileupWalker,
    reference: Optional[ReferenceSource] = None,
    flank: int = 0,
    mate_fix: bool = False,
) -> Iterator[Column]:
    """Produce the candidate columns of one region in ascending position order."""
    for pos, observations, failed in walker.walk(reads, region):
        suppressed = 0
        if mate_fix:
            observations, suppressed = resolve_mate_overlaps(observations)
        if reference is not None:
            ref_base = reference.window(region.contig, pos, flank)
        else:
            ref_base = MISSING_BASE * (2 * flank + 1)
        yield aggregate(
            region.contig,
            pos,
            observations,
            failed=failed,
            suppressed=suppressed,
            ref_base=ref_base,
        )
