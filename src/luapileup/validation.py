from __future__ import annotations

import logging
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)


def _first_existing(*paths: Path) -> bool:
    return any(p.exists() for p in paths)


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM/CRAM exists and has an index; raise ConfigError with fix instructions."""
    bam = Path(bam_path)
    if not bam.exists():
        raise ConfigError(f"Alignment file does not exist: {bam}")
    if bam.suffix == ".cram":
        if _first_existing(bam.with_suffix(bam.suffix + ".crai"), bam.with_suffix(".crai")):
            return
    elif _first_existing(
        bam.with_suffix(bam.suffix + ".bai"),
        bam.with_suffix(".bai"),
        bam.with_suffix(bam.suffix + ".csi"),
    ):
        return
    raise ConfigError("Alignment file is not indexed. Run: samtools index " + str(bam))


def check_fasta_index(fasta_path: str | Path) -> None:
    """Ensure a FASTA exists and has a .fai index; raise ConfigError with fix instructions."""
    fa = Path(fasta_path)
    if not fa.exists():
        raise ConfigError(f"Reference FASTA does not exist: {fa}")
    if not fa.with_suffix(fa.suffix + ".fai").exists():
        raise ConfigError("Reference FASTA is not indexed. Run: samtools faidx " + str(fa))
    if fa.suffix == ".gz" and not fa.with_suffix(fa.suffix + ".gzi").exists():
        logger.warning("Compressed FASTA %s has no .gzi index; it must be bgzip-compressed", fa)
