"""Exception types raised by luapileup.

Setup problems (bad intervals, missing indexes, bad options) raise
:class:`ConfigError` before any position is processed. Predicate problems raise
:class:`ExpressionError`, whether they are found while compiling or while
evaluating against a read or a column; both abort the whole run.
"""

from __future__ import annotations

from typing import Optional


class LuaPileupError(RuntimeError):
    """Base class for all luapileup errors."""


class ConfigError(LuaPileupError):
    """Raised when inputs or options are invalid."""


class ExpressionError(LuaPileupError):
    """Raised when a Lua predicate fails to compile or to evaluate."""

    def __init__(self, message: str, *, source: str, binding: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source
        self.binding = binding

    def __str__(self) -> str:
        what = f"{self.binding} expression" if self.binding else "expression"
        return f"{self.args[0]} (in {what}: {self.source!r})"
