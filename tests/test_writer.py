import io

import pytest

from luapileup.errors import LuaPileupError
from luapileup.expression import ColumnPredicate
from luapileup.models import Column
from luapileup.writer import BASE_FIELDS, EXTRA_FIELDS, OutputWriter


def col(pos, depth=1, contig="chr1", **counts):
    counts.setdefault("a", depth)
    return Column(contig=contig, pos=pos, depth=depth, **counts)


def test_header_and_row_format():
    out = io.StringIO()
    writer = OutputWriter(out)
    writer.write(Column(contig="chr1", pos=9, depth=3, a=1, c=1, t=1, ref_base="G"))
    lines = out.getvalue().splitlines()
    assert lines[0].split("\t") == BASE_FIELDS
    assert lines[1] == "chr1\t9\tG\t3\t1\t1\t0\t1\t0"


def test_all_counts_adds_columns():
    out = io.StringIO()
    writer = OutputWriter(out, all_counts=True)
    writer.write(Column(contig="chr1", pos=0, depth=1, g=1, ins=1, dels=2, ref_skip=3, fail=4))
    header, row = out.getvalue().splitlines()
    assert header.split("\t") == BASE_FIELDS + EXTRA_FIELDS
    assert row.split("\t")[-4:] == ["1", "2", "3", "4"]


def test_zero_depth_rows_are_not_written():
    out = io.StringIO()
    writer = OutputWriter(out, header=False)
    assert not writer.write(Column(contig="chr1", pos=0, depth=0, fail=2, dels=1))
    assert out.getvalue() == ""
    assert writer.stats.rows_zero_depth == 1
    assert writer.stats.reads_failed == 2


def test_column_predicate_drops_whole_rows():
    out = io.StringIO()
    writer = OutputWriter(out, column_predicate=ColumnPredicate("return pile.depth >= 2"), header=False)
    written = writer.write_all([col(1, depth=1), col(2, depth=2), col(3, depth=5)])
    assert written == 2
    assert [line.split("\t")[1] for line in out.getvalue().splitlines()] == ["2", "3"]
    assert writer.stats.rows_dropped_by_filter == 1
    assert writer.stats.rows_written == 2


def test_positions_must_ascend_within_a_contig():
    writer = OutputWriter(io.StringIO())
    writer.write(col(5))
    writer.write(col(0, contig="chr2"))
    with pytest.raises(LuaPileupError):
        writer.write(col(0, contig="chr2"))


def test_stats_depth_histogram():
    writer = OutputWriter(io.StringIO())
    writer.write_all([col(1, depth=1), col(2, depth=3), col(3, depth=3), col(4, depth=0)])
    stats = writer.stats.to_dict()
    assert stats["positions"] == 4
    assert stats["rows_written"] == 3
    counts = stats["depth_hist"]["counts"]
    edges = stats["depth_hist"]["bin_edges"]
    assert len(counts) == len(edges) - 1
    assert sum(counts) == 3
    # bins are [1, 2) and [2, 5)
    assert counts[1] == 1
    assert counts[2] == 2
