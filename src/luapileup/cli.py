from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .expression import ALWAYS_TRUE
from .pileup import DEFAULT_MAX_DEPTH
from .readview import DEFAULT_SKIP_FLAGS
from .regions import DEFAULT_CHUNK_SIZE
from .runner import PileupConfig, run_pileup
from .utils import open_output, write_json


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _positive_int(s: str) -> int:
    v = int(s)
    if v < 1:
        raise argparse.ArgumentTypeError(f"Expected an integer >= 1, got {s}")
    return v


def _non_negative_int(s: str) -> int:
    v = int(s, 0)
    if v < 0:
        raise argparse.ArgumentTypeError(f"Expected an integer >= 0, got {s}")
    return v


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    sys.stderr.write(f"{err.__class__.__name__}: {err}\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="luapileup",
        description=(
            "luapileup: per-position base counts from a BAM/CRAM, with reads and output rows "
            "filtered by Lua expressions (e.g. 'return read.mapping_quality > 30')."
        ),
    )
    p.add_argument("--version", action="version", version=f"luapileup {__version__}")

    p.add_argument("bam", type=_path_exists, help="Input BAM/CRAM (sorted, indexed).")
    p.add_argument(
        "expression",
        nargs="?",
        default=None,
        help=f"Lua read filter; must contain 'return' (default: '{ALWAYS_TRUE}').",
    )
    p.add_argument(
        "-r",
        "--read-expression",
        default=None,
        help="Lua read filter, as an alternative to the positional EXPRESSION.",
    )
    p.add_argument(
        "-p",
        "--pile-expression",
        default=None,
        help="Lua expression on the 'pile' table; rows where it is false are dropped.",
    )
    p.add_argument("-t", "--threads", type=_positive_int, default=2, help="Number of worker threads.")
    p.add_argument(
        "-m",
        "--max-depth",
        type=_positive_int,
        default=DEFAULT_MAX_DEPTH,
        help="Maximum reads considered per position.",
    )
    p.add_argument("-b", "--bedfile", type=_path_exists, default=None, help="BED of include regions.")
    p.add_argument("-e", "--exclude", type=_path_exists, default=None, help="BED of exclude regions.")
    p.add_argument("-f", "--fasta", type=_path_exists, default=None, help="Reference FASTA (faidx indexed).")
    p.add_argument(
        "-k",
        "--flank",
        type=_non_negative_int,
        default=0,
        help="Reference bases to show on each side of the position in the ref_base column.",
    )
    p.add_argument(
        "--mate-fix",
        action="store_true",
        help="Do not double count overlapping mates (keeps the higher-MAPQ mate).",
    )
    p.add_argument(
        "--all-counts",
        action="store_true",
        help="Also write ins, del, ref_skip and fail columns.",
    )
    p.add_argument(
        "--skip-flags",
        type=_non_negative_int,
        default=DEFAULT_SKIP_FLAGS,
        help="Ignore reads with any of these SAM flag bits (default: unmapped|secondary|qcfail|dup).",
    )
    p.add_argument(
        "--chunk-size",
        type=_positive_int,
        default=DEFAULT_CHUNK_SIZE,
        help="Bases per unit of parallel work.",
    )
    p.add_argument("-o", "--output", default=None, help="Output TSV path (default: stdout; .gz compresses).")
    p.add_argument("--summary-json", default=None, help="Write run counters and depth histogram here.")
    p.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    p.add_argument("--log-file", default=None, help="Also write logs to this file.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")
    return p


def cmd_run(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file).expanduser().resolve() if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)

    logger = logging.getLogger("luapileup")
    logger.info("luapileup %s", __version__)

    try:
        if args.expression is not None and args.read_expression is not None:
            raise ValueError("Give the read expression either positionally or with --read-expression, not both")
        read_expression = args.read_expression or args.expression or ALWAYS_TRUE

        config = PileupConfig(
            bam_path=args.bam,
            read_expression=read_expression,
            column_expression=args.pile_expression,
            threads=int(args.threads),
            max_depth=int(args.max_depth),
            include_bed=args.bedfile,
            exclude_bed=args.exclude,
            fasta_path=args.fasta,
            mate_fix=bool(args.mate_fix),
            flank=int(args.flank),
            all_counts=bool(args.all_counts),
            skip_flags=int(args.skip_flags),
            chunk_size=int(args.chunk_size),
        )
        config.validate()

        out = open_output(args.output)
        try:
            summary = run_pileup(config, out, progress=not args.no_progress)
        finally:
            if out is not sys.stdout:
                out.close()

        if args.summary_json:
            write_json(args.summary_json, summary)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return cmd_run(args)


if __name__ == "__main__":
    raise SystemExit(main())
