from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import pysam

logger = logging.getLogger(__name__)

MISSING_BASE = "."
_DEFAULT_CACHE_SIZE = 1000


class ReferenceSource:
    """Indexed FASTA access with a small forward-looking block cache.

    Pileup positions are visited in ascending order, so each fetch reads a
    block of at least ``cache_size`` bases and later positions are served from
    memory. Without a FASTA every base is reported as ``.``.
    """

    def __init__(self, fasta_path: Optional[str | Path] = None, *, cache_size: int = _DEFAULT_CACHE_SIZE) -> None:
        self.fasta_path = str(fasta_path) if fasta_path is not None else None
        self.cache_size = max(1, int(cache_size))
        self._fasta: Optional[pysam.FastaFile] = None
        self._lengths: Dict[str, int] = {}
        if self.fasta_path is not None:
            self._fasta = pysam.FastaFile(self.fasta_path)
            self._lengths = dict(zip(self._fasta.references, self._fasta.lengths))

        self._cache_contig: Optional[str] = None
        self._cache_start = 0
        self._cache = ""

    def __enter__(self) -> "ReferenceSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None

    def _fetch(self, contig: str, start: int, end: int) -> str:
        cache_end = self._cache_start + len(self._cache)
        if contig == self._cache_contig and start >= self._cache_start and end <= cache_end:
            return self._cache[start - self._cache_start : end - self._cache_start]

        assert self._fasta is not None
        block_end = min(self._lengths[contig], max(end, start + self.cache_size))
        self._cache = self._fasta.fetch(contig, start, block_end)
        self._cache_contig = contig
        self._cache_start = start
        return self._cache[: end - start]

    def window(self, contig: str, pos: int, flank: int = 0) -> str:
        """Reference bases at ``pos - flank`` through ``pos + flank`` inclusive.

        The result always has ``2 * flank + 1`` characters; positions outside
        the contig, or any failed lookup, are reported as ``.``.
        """
        width = 2 * flank + 1
        if self._fasta is None:
            return MISSING_BASE * width
        length = self._lengths.get(contig)
        if length is None:
            return MISSING_BASE * width

        left = pos - flank
        right = pos + flank + 1
        lo = max(0, left)
        hi = min(length, right)
        if lo >= hi:
            return MISSING_BASE * width

        try:
            seq = self._fetch(contig, lo, hi)
        except (KeyError, ValueError, IndexError, OSError) as e:
            logger.debug("Reference fetch failed at %s:%d: %s", contig, pos, e)
            return MISSING_BASE * width

        left_pad = MISSING_BASE * (lo - left)
        right_pad = MISSING_BASE * (width - len(left_pad) - len(seq))
        return left_pad + seq + right_pad
