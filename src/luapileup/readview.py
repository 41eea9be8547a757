from __future__ import annotations

import array
import logging
from functools import cached_property
from typing import Any, List, Optional, Sequence, Tuple

import pysam

from .models import ObservationKind

logger = logging.getLogger(__name__)

# SAM flag bits
FLAG_PAIRED = 1
FLAG_REVERSE = 16
FLAG_UNMAPPED = 4
FLAG_SECONDARY = 256
FLAG_QCFAIL = 512
FLAG_DUPLICATE = 1024

DEFAULT_SKIP_FLAGS = FLAG_UNMAPPED | FLAG_SECONDARY | FLAG_QCFAIL | FLAG_DUPLICATE

# CIGAR operations as reported by pysam
_MATCH_OPS = (0, 7, 8)  # M, =, X
_INS = 1
_DEL = 2
_REF_SKIP = 3
_SOFT_CLIP = 4
_HARD_CLIP = 5
_PAD = 6


def locate(
    cigartuples: Sequence[Tuple[int, int]], ref_start: int, pos: int
) -> Optional[Tuple[ObservationKind, Optional[int]]]:
    """Map a reference position onto a read.

    Returns ``(kind, qpos)`` where ``qpos`` is the offset into the query
    sequence (``None`` for deletions and reference skips), or ``None`` when the
    alignment does not span ``pos``. An aligned base whose next non-padding
    operation is an insertion is reported as ``INSERTION``.
    """
    if pos < ref_start:
        return None

    ref_pos = ref_start
    query_pos = 0
    n_ops = len(cigartuples)

    for i, (op, length) in enumerate(cigartuples):
        if op in _MATCH_OPS:
            ref_end = ref_pos + length
            if pos < ref_end:
                qpos = query_pos + (pos - ref_pos)
                kind = ObservationKind.ALIGNED
                if pos == ref_end - 1:
                    j = i + 1
                    while j < n_ops and cigartuples[j][0] == _PAD:
                        j += 1
                    if j < n_ops and cigartuples[j][0] == _INS:
                        kind = ObservationKind.INSERTION
                return kind, qpos
            ref_pos = ref_end
            query_pos += length
        elif op == _INS or op == _SOFT_CLIP:
            query_pos += length
        elif op == _DEL or op == _REF_SKIP:
            if pos < ref_pos + length:
                kind = ObservationKind.DELETION if op == _DEL else ObservationKind.REF_SKIP
                return kind, None
            ref_pos += length
        # H and P consume neither

    return None


def _leading_soft_clip(cigartuples: Sequence[Tuple[int, int]]) -> int:
    for op, length in cigartuples:
        if op == _HARD_CLIP:
            continue
        return length if op == _SOFT_CLIP else 0
    return 0


def _trailing_soft_clip(cigartuples: Sequence[Tuple[int, int]]) -> int:
    for op, length in reversed(cigartuples):
        if op == _HARD_CLIP:
            continue
        return length if op == _SOFT_CLIP else 0
    return 0


class ReadView:
    """Position-specific, read-only projection of an aligned read.

    Attributes are computed on first access and cached. A view is built per
    (read, position) pair and must not outlive the predicate evaluation that
    uses it.
    """

    def __init__(
        self,
        read: pysam.AlignedSegment,
        pos: int,
        kind: ObservationKind,
        qpos: Optional[int],
    ) -> None:
        self._read = read
        self.pos = pos
        self.kind = kind
        self.qpos = qpos

    def __repr__(self) -> str:
        return f"ReadView({self.qname!r}, pos={self.pos}, kind={self.kind.value}, qpos={self.qpos})"

    # -----------------
    # record fields
    # -----------------

    @property
    def mapping_quality(self) -> int:
        return int(self._read.mapping_quality)

    @property
    def flags(self) -> int:
        return int(self._read.flag)

    @property
    def tid(self) -> int:
        return int(self._read.reference_id)

    @property
    def start(self) -> int:
        return int(self._read.reference_start)

    @cached_property
    def stop(self) -> int:
        end = self._read.reference_end
        return int(end) if end is not None else self.start

    @property
    def insert_size(self) -> int:
        return int(self._read.template_length)

    @property
    def qname(self) -> str:
        return self._read.query_name or ""

    @property
    def is_reverse(self) -> bool:
        return bool(self.flags & FLAG_REVERSE)

    @property
    def is_read1(self) -> bool:
        return bool(self._read.is_read1)

    @cached_property
    def sequence(self) -> str:
        return self._read.query_sequence or ""

    @cached_property
    def length(self) -> int:
        """Query length; taken from the CIGAR when the record stores no sequence."""
        if self.sequence:
            return len(self.sequence)
        return int(self._read.infer_query_length() or 0)

    @cached_property
    def cigar(self) -> str:
        return self._read.cigarstring or "*"

    @cached_property
    def strand(self) -> int:
        """1 for forward, -1 for reverse, 0 when the pair orientation is unusual."""
        f = self.flags
        if f & FLAG_PAIRED == 0:
            return -1 if f & FLAG_REVERSE else 1
        if f & 99 == 99 or f & 147 == 147:
            return 1
        if f & 83 == 83 or f & 163 == 163:
            return -1
        return 0

    @cached_property
    def _qualities(self) -> Optional[array.array]:
        return self._read.query_qualities

    @cached_property
    def average_base_quality(self) -> float:
        quals = self._qualities
        if quals is None or len(quals) == 0:
            return 0.0
        return float(sum(quals)) / len(quals)

    # -----------------
    # position specific
    # -----------------

    @cached_property
    def base(self) -> Optional[str]:
        if self.qpos is None:
            return None
        seq = self.sequence
        if self.qpos >= len(seq):
            return "N"
        return seq[self.qpos]

    @cached_property
    def bq(self) -> int:
        quals = self._qualities
        if self.qpos is None or quals is None or self.qpos >= len(quals):
            return -1
        return int(quals[self.qpos])

    @cached_property
    def distance_from_5prime(self) -> int:
        if self.qpos is None:
            return -1
        if self.is_reverse:
            return self.length - 1 - self.qpos
        return self.qpos

    @cached_property
    def distance_from_3prime(self) -> int:
        if self.qpos is None:
            return -1
        if self.is_reverse:
            return self.qpos
        return self.length - 1 - self.qpos

    # -----------------
    # CIGAR summaries
    # -----------------

    @cached_property
    def indel_count(self) -> int:
        return sum(1 for op, _ in self._read.cigartuples or () if op in (_INS, _DEL))

    @cached_property
    def soft_clip_5prime_len(self) -> int:
        cig = self._read.cigartuples or ()
        return _trailing_soft_clip(cig) if self.is_reverse else _leading_soft_clip(cig)

    @cached_property
    def soft_clip_3prime_len(self) -> int:
        cig = self._read.cigartuples or ()
        return _leading_soft_clip(cig) if self.is_reverse else _trailing_soft_clip(cig)

    # -----------------
    # methods
    # -----------------

    def n_proportion_window(self, k: int, end: int = 5) -> float:
        """Fraction of 'N' among the ``k`` read bases nearest the 5' (end=5) or 3' (end=3) end."""
        if end not in (3, 5):
            raise ValueError(f"end must be 5 or 3, got {end!r}")
        seq = self.sequence
        k = min(int(k), len(seq))
        if k <= 0:
            return 0.0
        # the 5' end of a reverse read is the end of the stored sequence
        from_start = (end == 5) != self.is_reverse
        window = seq[:k] if from_start else seq[len(seq) - k :]
        return window.upper().count("N") / float(k)

    def n_proportion_5_prime(self, k: int) -> float:
        return self.n_proportion_window(k, 5)

    def n_proportion_3_prime(self, k: int) -> float:
        return self.n_proportion_window(k, 3)

    def tag(self, name: str) -> Any:
        """Value of an auxiliary tag, or None when the read does not carry it."""
        if not self._read.has_tag(name):
            return None
        value = self._read.get_tag(name)
        if isinstance(value, (array.array, list, tuple)):
            return list(value)
        return value


def project(read: pysam.AlignedSegment, pos: int) -> Optional[ReadView]:
    """Build the view of ``read`` at reference position ``pos``.

    Returns None when the read has no CIGAR or does not span ``pos``.
    """
    cig: Optional[List[Tuple[int, int]]] = read.cigartuples
    if not cig:
        return None
    hit = locate(cig, int(read.reference_start), pos)
    if hit is None:
        return None
    kind, qpos = hit
    return ReadView(read, pos, kind, qpos)
