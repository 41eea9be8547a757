from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, TextIO, TypeVar

import pysam
from tqdm import tqdm

from .errors import ConfigError
from .expression import ALWAYS_TRUE, ReadPredicate, compile_predicates
from .models import Column, Region
from .pileup import DEFAULT_MAX_DEPTH, PileupWalker, pileup_region
from .readview import DEFAULT_SKIP_FLAGS
from .reference import ReferenceSource
from .regions import DEFAULT_CHUNK_SIZE, RegionSource
from .validation import check_bam_index, check_fasta_index
from .writer import OutputWriter

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class PileupConfig:
    """Everything a run needs; shared read-only by all workers."""

    bam_path: str
    read_expression: str = ALWAYS_TRUE
    column_expression: Optional[str] = None
    threads: int = 2
    max_depth: int = DEFAULT_MAX_DEPTH
    include_bed: Optional[str] = None
    exclude_bed: Optional[str] = None
    fasta_path: Optional[str] = None
    mate_fix: bool = False
    flank: int = 0
    all_counts: bool = False
    skip_flags: int = DEFAULT_SKIP_FLAGS
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def validate(self) -> None:
        if self.threads < 1:
            raise ConfigError("threads must be >= 1")
        if self.max_depth < 1:
            raise ConfigError("max_depth must be >= 1")
        if self.flank < 0:
            raise ConfigError("flank must be >= 0")
        if self.chunk_size < 1:
            raise ConfigError("chunk_size must be >= 1")
        if self.skip_flags < 0:
            raise ConfigError("skip_flags must be a non-negative integer")
        if "return" not in self.read_expression:
            raise ConfigError(f"Expression {self.read_expression!r} must contain 'return'")
        if self.column_expression is not None and "return" not in self.column_expression:
            raise ConfigError(f"Expression {self.column_expression!r} must contain 'return'")


@dataclass
class ChunkResult:
    region: Region
    columns: List[Column]
    truncated_positions: int = 0
    reads_skipped: int = 0


_worker_state = threading.local()


def _worker_predicate(source: str) -> ReadPredicate:
    """Per-thread read predicate; Lua runtimes are never shared between threads."""
    cached = getattr(_worker_state, "predicate", None)
    if cached is None or cached.source != source:
        cached = ReadPredicate(source)
        _worker_state.predicate = cached
    return cached


def process_region(config: PileupConfig, region: Region) -> ChunkResult:
    """Pile up one region to completion in the calling thread."""
    walker = PileupWalker(
        _worker_predicate(config.read_expression),
        max_depth=config.max_depth,
        skip_flags=config.skip_flags,
    )
    with pysam.AlignmentFile(config.bam_path, "r", reference_filename=config.fasta_path) as bam:
        with ReferenceSource(config.fasta_path) as reference:
            reads = bam.fetch(region.contig, region.start, region.end)
            columns = list(
                pileup_region(
                    reads,
                    region,
                    walker=walker,
                    reference=reference,
                    flank=config.flank,
                    mate_fix=config.mate_fix,
                )
            )
    logger.debug("Region %s:%d-%d produced %d columns", region.contig, region.start, region.end, len(columns))
    return ChunkResult(
        region=region,
        columns=columns,
        truncated_positions=walker.truncated_positions,
        reads_skipped=walker.reads_skipped,
    )


def iter_ordered(
    executor: ThreadPoolExecutor,
    fn: Callable[[T], R],
    items: Iterable[T],
    *,
    max_in_flight: int,
) -> Iterator[R]:
    """Map ``fn`` over ``items`` in the pool, yielding results in submission order.

    At most ``max_in_flight`` items are submitted ahead of the consumer. The
    first failure cancels everything not yet started and is re-raised.
    """
    it = iter(items)
    pending: Deque[Future] = deque()
    try:
        for item in it:
            pending.append(executor.submit(fn, item))
            if len(pending) >= max_in_flight:
                break
        while pending:
            result = pending.popleft().result()
            for item in it:
                pending.append(executor.submit(fn, item))
                break
            yield result
    except BaseException:
        for fut in pending:
            fut.cancel()
        raise


def _bam_contigs(bam_path: str) -> List[tuple]:
    with pysam.AlignmentFile(bam_path, "r") as bam:
        return list(zip(bam.references, bam.lengths))


def run_pileup(config: PileupConfig, handle: TextIO, *, progress: bool = True) -> Dict[str, object]:
    """Main workhorse: validate inputs, pile up every region, write rows in order."""
    t0 = time.time()
    config.validate()

    check_bam_index(config.bam_path)
    if config.fasta_path is not None:
        check_fasta_index(config.fasta_path)

    # compile in the main thread first so expression errors surface before any work
    _read_pred, column_pred = compile_predicates(config.read_expression, config.column_expression)

    regions = RegionSource.from_files(
        _bam_contigs(config.bam_path),
        include_bed=config.include_bed,
        exclude_bed=config.exclude_bed,
        chunk_size=config.chunk_size,
    )
    n_chunks = sum(1 for _ in regions)
    logger.info("Processing %d bases in %d chunks with %d threads", regions.total_bases(), n_chunks, config.threads)

    writer = OutputWriter(handle, column_predicate=column_pred, all_counts=config.all_counts)
    truncated = 0
    skipped = 0

    with ThreadPoolExecutor(max_workers=config.threads, thread_name_prefix="luapileup") as executor:
        results: Iterable[ChunkResult] = iter_ordered(
            executor,
            lambda region: process_region(config, region),
            regions,
            max_in_flight=2 * config.threads,
        )
        if progress:
            results = tqdm(results, total=n_chunks, unit="chunk", desc="Pileup")
        for chunk in results:
            writer.write_all(chunk.columns)
            truncated += chunk.truncated_positions
            skipped += chunk.reads_skipped

    handle.flush()

    if truncated:
        logger.warning("Depth reached max_depth=%d at %d positions; extra reads were ignored there", config.max_depth, truncated)

    dt = time.time() - t0
    summary: Dict[str, object] = {
        "config": asdict(config),
        "chunks": n_chunks,
        "target_bases": regions.total_bases(),
        "positions_truncated": truncated,
        "reads_skipped_by_flag": skipped,
        "stats": writer.stats.to_dict(),
        "runtime_seconds": float(dt),
    }
    logger.info("Wrote %d rows in %.1fs", writer.stats.rows_written, dt)
    return summary
