import io
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from luapileup.errors import ConfigError, ExpressionError
from luapileup.runner import PileupConfig, iter_ordered, run_pileup
from luapileup.toy_data import make_toy_data


@pytest.fixture(scope="module")
def toy(tmp_path_factory):
    return make_toy_data(outdir=tmp_path_factory.mktemp("toy"))


def run(toy, **kwargs):
    config = PileupConfig(bam_path=toy["bam"], **kwargs)
    out = io.StringIO()
    summary = run_pileup(config, out, progress=False)
    return out.getvalue(), summary


def rows(text):
    lines = text.splitlines()
    header = lines[0].split("\t")
    return {
        (r[0], int(r[1])): dict(zip(header, r))
        for r in (line.split("\t") for line in lines[1:])
    }


def test_positions_and_counts(toy):
    text, summary = run(toy)
    table = rows(text)
    chr1 = sorted(pos for contig, pos in table if contig == "chr1")
    chr2 = sorted(pos for contig, pos in table if contig == "chr2")
    assert chr1 == list(range(40, 130)) + list(range(150, 172))
    assert chr2 == list(range(0, 40))

    assert table[("chr1", 75)]["depth"] == "2"
    assert table[("chr1", 100)]["depth"] == "3"
    assert table[("chr1", 155)]["t"] == "3"
    assert table[("chr1", 155)]["n"] == "1"
    assert table[("chr1", 170)]["depth"] == "1"
    assert table[("chr1", 100)]["ref_base"] == "."

    assert summary["reads_skipped_by_flag"] == 1
    assert summary["stats"]["rows_written"] == len(table)
    for key in ("config", "chunks", "target_bases", "positions_truncated", "runtime_seconds"):
        assert key in summary
    assert summary["target_bases"] == 300


def test_rows_are_in_header_order(toy):
    text, _ = run(toy, chunk_size=7)
    keys = [(line.split("\t")[0], int(line.split("\t")[1])) for line in text.splitlines()[1:]]
    order = {"chr1": 0, "chr2": 1}
    assert keys == sorted(keys, key=lambda k: (order[k[0]], k[1]))


def test_output_is_identical_across_threads_and_chunks(toy):
    expected, _ = run(toy, threads=1, chunk_size=1_000_000, mate_fix=True)
    for threads, chunk_size in ((1, 3), (4, 7), (8, 1), (3, 64)):
        text, _ = run(toy, threads=threads, chunk_size=chunk_size, mate_fix=True)
        assert text == expected


def test_read_expression_and_all_counts(toy):
    text, _ = run(toy, read_expression="return read.mapping_quality > 30", all_counts=True)
    table = rows(text)
    assert table[("chr1", 100)]["depth"] == "2"
    assert table[("chr1", 100)]["fail"] == "1"
    assert table[("chr1", 159)]["depth"] == "4"
    assert table[("chr1", 159)]["ins"] == "1"
    assert table[("chr1", 160)]["depth"] == "3"
    assert table[("chr1", 160)]["del"] == "1"


def test_mate_fix(toy):
    plain = rows(run(toy)[0])
    fixed_text, summary = run(toy, mate_fix=True)
    fixed = rows(fixed_text)
    assert fixed[("chr1", 75)]["depth"] == "1"
    assert fixed[("chr1", 60)]["depth"] == plain[("chr1", 60)]["depth"] == "1"
    assert summary["stats"]["mates_suppressed"] == 20


def test_pile_expression_filters_rows(toy):
    text, summary = run(toy, column_expression="return pile.depth >= 3")
    table = rows(text)
    assert all(int(r["depth"]) >= 3 for r in table.values())
    assert ("chr1", 100) in table
    assert ("chr1", 75) not in table
    assert summary["stats"]["rows_dropped_by_filter"] > 0


def test_include_and_exclude_beds(toy, tmp_path: Path):
    inc = tmp_path / "inc.bed"
    exc = tmp_path / "exc.bed"
    inc.write_text("chr1\t95\t105\nchr2\t10\t12\n", encoding="utf-8")
    exc.write_text("chr1\t98\t100\n", encoding="utf-8")
    text, summary = run(toy, include_bed=str(inc), exclude_bed=str(exc))
    assert sorted(rows(text)) == (
        [("chr1", p) for p in (95, 96, 97, 100, 101, 102, 103, 104)] + [("chr2", 10), ("chr2", 11)]
    )
    assert summary["target_bases"] == 10


def test_flanked_reference_window(toy):
    text, _ = run(toy, fasta_path=toy["ref_fa"], flank=1)
    table = rows(text)
    assert table[("chr1", 101)]["ref_base"] == "ACG"
    assert table[("chr2", 0)]["ref_base"] == ".TT"


def test_unknown_field_aborts_the_run(toy):
    with pytest.raises(ExpressionError):
        run(toy, read_expression="return read.not_a_field > 1")


def test_invalid_config_is_rejected(toy):
    with pytest.raises(ConfigError):
        run(toy, threads=0)
    with pytest.raises(ConfigError):
        run(toy, read_expression="read.mapping_quality > 1")


def test_missing_index_is_reported(tmp_path: Path):
    bam = tmp_path / "noindex.bam"
    bam.write_bytes(b"")
    with pytest.raises(ConfigError):
        run_pileup(PileupConfig(bam_path=str(bam)), io.StringIO(), progress=False)


def test_iter_ordered_preserves_submission_order():
    def slow_square(x):
        return x * x

    with ThreadPoolExecutor(max_workers=4) as ex:
        assert list(iter_ordered(ex, slow_square, range(1, 20), max_in_flight=3)) == [x * x for x in range(1, 20)]


def test_iter_ordered_propagates_errors():
    def boom(x):
        if x == 3:
            raise ValueError("bad item")
        return x

    with ThreadPoolExecutor(max_workers=2) as ex:
        with pytest.raises(ValueError):
            list(iter_ordered(ex, boom, range(10), max_in_flight=2))
