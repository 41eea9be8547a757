from luapileup.expression import ReadPredicate
from luapileup.models import Column, Observation, ObservationKind, Region
from luapileup.pileup import PileupWalker, aggregate, pileup_region, resolve_mate_overlaps
from luapileup.toy_data import make_read


def obs(qname, *, mapq=60, start0=0, is_read1=True, order=0, base="A", kind=ObservationKind.ALIGNED):
    return Observation(
        qname=qname,
        kind=kind,
        base=base,
        mapq=mapq,
        start0=start0,
        is_read1=is_read1,
        order=order,
    )


def test_read_predicate_excludes_low_mapq_reads():
    reads = [
        make_read("lowq", 100, "ACGTA", mapq=10),
        make_read("highq", 100, "ACGTA", mapq=40),
    ]
    walker = PileupWalker(ReadPredicate("return read.mapping_quality > 30"))
    cols = list(pileup_region(reads, Region("chr1", 0, 200), walker=walker))
    assert [c.pos for c in cols] == [100, 101, 102, 103, 104]
    for c in cols:
        assert c.depth == 1
        assert c.fail == 1
    assert (cols[0].a, cols[1].c, cols[2].g, cols[3].t) == (1, 1, 1, 1)


def test_walker_skips_uncovered_positions_and_flagged_reads():
    reads = [
        make_read("a", 10, "ACG"),
        make_read("dup", 12, "GTA", flag=1024),
        make_read("b", 50, "TT"),
    ]
    walker = PileupWalker(ReadPredicate())
    positions = [pos for pos, _obs, _failed in walker.walk(reads, Region("chr1", 0, 100))]
    assert positions == [10, 11, 12, 50, 51]
    assert walker.reads_skipped == 1


def test_walker_respects_region_bounds():
    reads = [make_read("a", 10, "ACGTACGTAC")]
    walker = PileupWalker(ReadPredicate())
    positions = [pos for pos, _obs, _failed in walker.walk(reads, Region("chr1", 12, 15))]
    assert positions == [12, 13, 14]


def test_max_depth_is_a_soft_cap():
    reads = [make_read(f"r{i}", 100, "ACG") for i in range(5)]
    walker = PileupWalker(ReadPredicate(), max_depth=3)
    cols = list(pileup_region(reads, Region("chr1", 0, 200), walker=walker))
    assert [c.depth for c in cols] == [3, 3, 3]
    assert walker.truncated_positions == 3


def test_failed_reads_count_towards_the_cap():
    reads = [make_read(f"r{i}", 100, "A", mapq=10 if i < 2 else 60) for i in range(4)]
    walker = PileupWalker(ReadPredicate("return read.mapping_quality > 30"), max_depth=3)
    col = next(iter(pileup_region(reads, Region("chr1", 0, 200), walker=walker)))
    assert col.fail == 2
    assert col.depth == 1


def test_resolve_keeps_higher_mapq_mate():
    observations = [
        obs("t1", mapq=30, start0=100, order=0, base="A"),
        obs("solo", order=1, base="C"),
        obs("t1", mapq=50, start0=120, is_read1=False, order=2, base="G"),
    ]
    kept, suppressed = resolve_mate_overlaps(observations)
    assert suppressed == 1
    assert [o.qname for o in kept] == ["solo", "t1"]
    assert kept[1].base == "G"


def test_resolve_tie_breaks_are_deterministic():
    earlier = obs("t1", mapq=60, start0=100, is_read1=False, order=1)
    later = obs("t1", mapq=60, start0=120, is_read1=True, order=0)
    kept, _ = resolve_mate_overlaps([later, earlier])
    assert kept == [earlier]

    r1 = obs("t2", mapq=60, start0=100, is_read1=True, order=5)
    r2 = obs("t2", mapq=60, start0=100, is_read1=False, order=4)
    kept, _ = resolve_mate_overlaps([r2, r1])
    assert kept == [r1]


def test_resolve_prefers_called_base_on_mapq_tie():
    gap = obs("t3", mapq=60, start0=100, is_read1=True, order=0, base=None, kind=ObservationKind.DELETION)
    called = obs("t3", mapq=60, start0=120, is_read1=False, order=1, base="C")
    kept, suppressed = resolve_mate_overlaps([gap, called])
    assert kept == [called]
    assert suppressed == 1
    col = aggregate("chr1", 130, kept, suppressed=suppressed)
    assert col.depth == 1
    assert col.dels == 0

    # a higher-MAPQ gap still wins
    gap_hq = obs("t4", mapq=60, order=0, base=None, kind=ObservationKind.DELETION)
    called_lq = obs("t4", mapq=20, is_read1=False, order=1, base="C")
    kept, _ = resolve_mate_overlaps([gap_hq, called_lq])
    assert kept == [gap_hq]


def test_mate_fix_reduces_depth_by_overlapping_pairs():
    ref = "ACGTACGTACGTACGTACGT"
    reads = [
        make_read("tmpl", 0, ref[0:12], flag=99, mate_start0=8, tlen=20),
        make_read("tmpl", 8, ref[8:20], flag=147, mate_start0=0, tlen=-20),
        make_read("other", 0, ref[0:20]),
    ]
    region = Region("chr1", 0, 20)
    plain = list(pileup_region(reads, region, walker=PileupWalker(ReadPredicate())))
    fixed = list(pileup_region(reads, region, walker=PileupWalker(ReadPredicate()), mate_fix=True))
    assert [c.pos for c in plain] == [c.pos for c in fixed]
    for p, f in zip(plain, fixed):
        overlapping = 8 <= p.pos < 12
        assert p.depth - f.depth == (1 if overlapping else 0)
        assert f.suppressed == (1 if overlapping else 0)
        assert f.fail == 0


def test_aggregate_counts_by_kind():
    observations = [
        obs("a", base="a"),
        obs("b", base="C"),
        obs("c", base="R"),
        obs("d", base="T", kind=ObservationKind.INSERTION),
        obs("e", base=None, kind=ObservationKind.DELETION),
        obs("f", base=None, kind=ObservationKind.REF_SKIP),
    ]
    col = aggregate("chr1", 10, observations, failed=2, ref_base="G")
    assert isinstance(col, Column)
    assert (col.a, col.c, col.g, col.t, col.n) == (1, 1, 0, 1, 1)
    assert col.depth == col.a + col.c + col.g + col.t + col.n == 4
    assert (col.ins, col.dels, col.ref_skip, col.fail) == (1, 1, 1, 2)
    assert col.ref_base == "G"


def test_deletions_do_not_enter_depth():
    reads = [
        make_read("del", 100, "ACGTAC", cigar="3M2D3M"),
        make_read("plain", 100, "ACGTACGT"),
    ]
    cols = {c.pos: c for c in pileup_region(reads, Region("chr1", 0, 200), walker=PileupWalker(ReadPredicate()))}
    assert cols[103].depth == 1
    assert cols[103].dels == 1
    assert cols[102].depth == 2


def test_missing_reference_uses_placeholder_window():
    reads = [make_read("a", 5, "ACG")]
    cols = list(pileup_region(reads, Region("chr1", 0, 10), walker=PileupWalker(ReadPredicate()), flank=2))
    assert all(c.ref_base == "....." for c in cols)
