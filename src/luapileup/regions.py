from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from intervaltree import IntervalTree

from .errors import ConfigError
from .models import Region
from .utils import chunked_range, open_textmaybe_gzip

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1_000_000

_BED_SKIP_PREFIXES = ("#", "track", "browser")

BedInterval = Tuple[str, int, int]


def load_bed_intervals(path: str | Path) -> List[BedInterval]:
    """Read (contig, start, end) records from a BED file (plain or gzipped).

    Only the first three columns are used. Coordinates are BED-style: 0-based,
    half-open. Bounds are validated later against the alignment header.
    """
    intervals: List[BedInterval] = []
    try:
        fh = open_textmaybe_gzip(path, "rt")
    except OSError as e:
        raise ConfigError(f"Unable to read BED file {path}: {e}") from e

    with fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip() or line.startswith(_BED_SKIP_PREFIXES):
                continue
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3:
                parts = line.split()
            if len(parts) < 3:
                raise ConfigError(f"{path}:{lineno}: expected at least 3 columns, got: {line.strip()}")
            try:
                start = int(parts[1])
                end = int(parts[2])
            except ValueError as e:
                raise ConfigError(f"{path}:{lineno}: unable to parse start/end: {line.strip()}") from e
            intervals.append((parts[0], start, end))

    logger.info("Loaded %d intervals from %s", len(intervals), path)
    return intervals


def _validate(intervals: Sequence[BedInterval], lengths: Dict[str, int], what: str) -> None:
    for i, (contig, start, end) in enumerate(intervals):
        if contig not in lengths:
            raise ConfigError(
                f"{what} interval {i} references contig '{contig}' not found in the alignment header"
            )
        if start < 0 or start >= end:
            raise ConfigError(
                f"{what} interval {i} is invalid: {contig}:{start}-{end} (need 0 <= start < end)"
            )


class RegionSource:
    """Ordered, disjoint chunks covering include-minus-exclude.

    ``contigs`` is the ordered ``(name, length)`` list from the alignment header
    and defines the canonical contig order of the output. Without include
    intervals the whole reference is covered. The interval sets are built once
    and never modified afterwards; iterating is lazy and may be repeated.
    """

    def __init__(
        self,
        contigs: Sequence[Tuple[str, int]],
        *,
        include: Optional[Sequence[BedInterval]] = None,
        exclude: Optional[Sequence[BedInterval]] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ConfigError("chunk_size must be >= 1")
        self.contigs = [(str(name), int(length)) for name, length in contigs]
        self.chunk_size = int(chunk_size)
        lengths = dict(self.contigs)

        if include is not None:
            _validate(include, lengths, "Include")
        if exclude is not None:
            _validate(exclude, lengths, "Exclude")

        trees: Dict[str, IntervalTree] = {}
        if include is None:
            for name, length in self.contigs:
                if length > 0:
                    trees[name] = IntervalTree.from_tuples([(0, length)])
        else:
            for contig, start, end in include:
                end = min(end, lengths[contig])
                if start >= end:
                    logger.warning("Include interval %s:%d-%d lies past the contig end; ignored", contig, start, end)
                    continue
                trees.setdefault(contig, IntervalTree()).addi(start, end)
            for tree in trees.values():
                # strict=False also joins abutting intervals
                tree.merge_overlaps(strict=False)

        for contig, start, end in exclude or ():
            if contig in trees:
                trees[contig].chop(start, end)

        self._trees = trees

    @classmethod
    def from_files(
        cls,
        contigs: Sequence[Tuple[str, int]],
        *,
        include_bed: Optional[str | Path] = None,
        exclude_bed: Optional[str | Path] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> "RegionSource":
        include = load_bed_intervals(include_bed) if include_bed is not None else None
        exclude = load_bed_intervals(exclude_bed) if exclude_bed is not None else None
        return cls(contigs, include=include, exclude=exclude, chunk_size=chunk_size)

    def intervals(self) -> Iterator[BedInterval]:
        """Yield the merged target intervals in canonical order."""
        for name, _length in self.contigs:
            tree = self._trees.get(name)
            if not tree:
                continue
            for iv in sorted(tree):
                yield name, iv.begin, iv.end

    def total_bases(self) -> int:
        return sum(end - start for _contig, start, end in self.intervals())

    def __iter__(self) -> Iterator[Region]:
        index = 0
        for contig, start, end in self.intervals():
            for lo, hi in chunked_range(start, end, self.chunk_size):
                yield Region(contig=contig, start=lo, end=hi, index=index)
                index += 1
