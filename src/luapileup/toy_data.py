from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIGS: List[Tuple[str, str]] = [
    ("chr1", ("ACGT" * 50)[:200]),
    ("chr2", ("TTGCA" * 20)[:100]),
]


def write_fasta(path: str | Path, contigs: Sequence[Tuple[str, str]]) -> Path:
    """Write a FASTA (60 columns per line) and its .fai index."""
    path = Path(path)
    lines: List[str] = []
    for name, seq in contigs:
        lines.append(f">{name}")
        for i in range(0, len(seq), 60):
            lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    pysam.faidx(str(path))
    return path


def make_read(
    name: str,
    start0: int,
    seq: str,
    *,
    cigar: Optional[str] = None,
    mapq: int = 60,
    flag: int = 0,
    tid: int = 0,
    quals: Optional[str] = None,
    tags: Optional[Sequence[Tuple[str, object]]] = None,
    mate_start0: int = -1,
    tlen: int = 0,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = flag
    a.reference_id = tid
    a.reference_start = start0
    a.mapping_quality = mapq
    if cigar is None:
        a.cigartuples = [(0, len(seq))]
    else:
        a.cigarstring = cigar
    a.query_qualities = pysam.qualitystring_to_array(quals if quals is not None else "I" * len(seq))
    if mate_start0 >= 0:
        a.next_reference_id = tid
        a.next_reference_start = mate_start0
        a.template_length = tlen
    for tag, value in tags or ():
        a.set_tag(tag, value)
    return a


def write_bam(
    path: str | Path,
    contigs: Sequence[Tuple[str, int]],
    reads: Iterable[pysam.AlignedSegment],
) -> Path:
    """Write reads as a coordinate-sorted, indexed BAM."""
    path = Path(path)
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in contigs],
    }
    ordered = sorted(reads, key=lambda r: (r.reference_id, r.reference_start))
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
        for r in ordered:
            bam.write(r)
    pysam.index(str(path))
    return path


def _ref(contig: int, start: int, end: int) -> str:
    return TOY_CONTIGS[contig][1][start:end]


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference and BAM exercising every observation kind.

    Layout on chr1:
    - ``lowq``/``highq``: MAPQ 10 and 40 reads over 100-129;
    - ``tmpl``: a proper pair whose mates overlap at 70-89;
    - ``del1``: 10M2D10M from 150 (deletion at 160-161);
    - ``ins1``: 10M2I10M from 150 (insertion after 159);
    - ``nread``: 20M from 150 carrying an N at 155;
    - ``clip``: 3S17M from 150 with an NM tag;
    - ``dup``: a duplicate at 150 that is never counted.
    chr2 holds one read at 0-39.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    ref_fa = write_fasta(outdir_p / "toy_ref.fa", TOY_CONTIGS)

    reads: List[pysam.AlignedSegment] = [
        make_read("lowq", 100, _ref(0, 100, 130), mapq=10),
        make_read("highq", 100, _ref(0, 100, 130), mapq=40),
        make_read("tmpl", 40, _ref(0, 40, 90), flag=99, mapq=60, mate_start0=70, tlen=80),
        make_read("tmpl", 70, _ref(0, 70, 120), flag=147, mapq=50, mate_start0=40, tlen=-80),
        make_read("del1", 150, _ref(0, 150, 160) + _ref(0, 162, 172), cigar="10M2D10M"),
        make_read("ins1", 150, _ref(0, 150, 160) + "GG" + _ref(0, 160, 170), cigar="10M2I10M"),
        make_read("nread", 150, _ref(0, 150, 155) + "N" + _ref(0, 156, 170)),
        make_read("clip", 150, "TTT" + _ref(0, 150, 167), cigar="3S17M", tags=[("NM", 0)]),
        make_read("dup", 150, _ref(0, 150, 170), flag=1024),
        make_read("c2r", 0, _ref(1, 0, 40), tid=1),
    ]

    bam_path = write_bam(
        outdir_p / "toy.bam",
        [(name, len(seq)) for name, seq in TOY_CONTIGS],
        reads,
    )

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
