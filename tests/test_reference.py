from pathlib import Path

from luapileup.reference import ReferenceSource
from luapileup.toy_data import write_fasta


def _fasta(tmp_path: Path) -> Path:
    return write_fasta(tmp_path / "ref.fa", [("chr1", "ACGTACGTAC"), ("chr2", "GGGG")])


def test_single_base_and_flanked_window(tmp_path: Path):
    with ReferenceSource(_fasta(tmp_path)) as ref:
        assert ref.window("chr1", 2, 0) == "G"
        # k=1 centred on the 'C' at position 1
        assert ref.window("chr1", 1, 1) == "ACG"
        assert ref.window("chr1", 5, 2) == "TACGT"


def test_window_pads_past_contig_bounds(tmp_path: Path):
    with ReferenceSource(_fasta(tmp_path)) as ref:
        assert ref.window("chr1", 0, 1) == ".AC"
        assert ref.window("chr1", 9, 2) == "TAC.."
        assert ref.window("chr2", 1, 4) == "...GGGG.."


def test_cache_serves_other_contigs_correctly(tmp_path: Path):
    with ReferenceSource(_fasta(tmp_path), cache_size=4) as ref:
        seq = "".join(ref.window("chr1", i, 0) for i in range(10))
        assert seq == "ACGTACGTAC"
        assert ref.window("chr2", 0, 0) == "G"
        assert ref.window("chr1", 3, 0) == "T"


def test_unknown_contig_and_missing_fasta_degrade():
    assert ReferenceSource(None).window("chr1", 10, 1) == "..."
    assert ReferenceSource(None).window("chr1", 10, 0) == "."


def test_unknown_contig_with_fasta(tmp_path: Path):
    with ReferenceSource(_fasta(tmp_path)) as ref:
        assert ref.window("chrZ", 0, 0) == "."
