"""luapileup: per-position base counts from BAM/CRAM with Lua read and column filters.

Public API is intentionally small; most users should use the CLI:

    luapileup sample.bam 'return read.mapping_quality > 30' --fasta ref.fa

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
