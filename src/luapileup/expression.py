"""Sandboxed Lua predicates evaluated against reads and pileup columns.

Each predicate owns a private :class:`lupa.LuaRuntime`. The user's source is
compiled once with ``load`` as a text chunk of its own, then ``load``, ``io``,
``os`` and the other unsafe globals are removed from the runtime. Globals
assigned during one evaluation are gone by the next. The environment only
reaches:

- the bound view (``read`` or ``pile``), a read-only proxy whose fields are
  resolved in Python; unknown fields raise instead of returning ``nil``;
- read-only copies of the ``string``, ``math`` and ``table`` libraries and a
  handful of pure base functions;
- ``string_count(haystack, needle)`` and a 32-bit ``bit32`` module;
- ``print``, which writes diagnostics to stderr and never to the row output.

There is no ``io``, ``os``, ``require``, ``load``, ``debug`` or ``python``, and
Python attribute access from Lua is refused outright.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

from lupa import LuaError, LuaRuntime

from .errors import ConfigError, ExpressionError
from .models import Column, FilterOutcome
from .readview import ReadView

logger = logging.getLogger(__name__)

ALWAYS_TRUE = "return true"

_MASK32 = 0xFFFFFFFF

_SANDBOX_BUILDER = """
return function(helpers)
  local setmetatable, error, tostring = setmetatable, error, tostring
  local function readonly(t)
    return setmetatable({}, {
      __index = t,
      __newindex = function(_, key)
        error("attempt to modify read-only library field '" .. tostring(key) .. "'", 2)
      end,
    })
  end
  return {
    string = readonly(string),
    math = readonly(math),
    table = readonly(table),
    bit32 = readonly(helpers.bit32),
    pairs = pairs,
    ipairs = ipairs,
    next = next,
    select = select,
    type = type,
    tostring = tostring,
    tonumber = tonumber,
    error = error,
    assert = assert,
    pcall = pcall,
    unpack = table.unpack,
    print = helpers.print,
    string_count = helpers.string_count,
  }
end
"""

_PROXY_BUILDER = """
return function(resolve)
  local setmetatable, error, tostring = setmetatable, error, tostring
  local proxy = {}
  return setmetatable(proxy, {
    __index = function(_, key)
      local value, is_method = resolve(key)
      if is_method then
        return function(first, ...)
          if first == proxy then
            return value(...)
          end
          return value(first, ...)
        end
      end
      return value
    end,
    __newindex = function(_, key)
      error("attempt to assign to read-only field '" .. tostring(key) .. "'", 2)
    end,
  })
end
"""

# The user source is compiled as a chunk of its own, in text mode, with a fixed
# environment table. Lookups and assignments on that table are routed to a
# per-call table, so each evaluation starts from an empty set of globals.
_COMPILER = """
local load, setmetatable, tostring = load, setmetatable, tostring
return function(source, sandbox)
  local current = {}
  local env = setmetatable({}, {
    __index = function(_, key)
      local value = current[key]
      if value ~= nil then
        return value
      end
      return sandbox[key]
    end,
    __newindex = function(_, key, value)
      current[key] = value
    end,
  })
  local fn, err = load(source, "=expression", "t", env)
  if not fn then
    return false, tostring(err)
  end
  return function(name, view)
    current = {[name] = view}
    return fn()
  end, ""
end
"""

# removed from the runtime's own globals once the compiler has captured load
_UNSAFE_GLOBALS = (
    "io",
    "os",
    "load",
    "loadfile",
    "loadstring",
    "dofile",
    "require",
    "package",
    "debug",
    "collectgarbage",
    "python",
)


def _deny_attribute_access(obj: Any, attr_name: Any, is_setting: bool) -> Any:
    raise AttributeError("access to Python attributes is not allowed in expressions")


# -----------------
# helper functions
# -----------------

def _u32(x: Any) -> int:
    return int(x) & _MASK32


def _band(*args: Any) -> int:
    r = _MASK32
    for a in args:
        r &= _u32(a)
    return r


def _bor(*args: Any) -> int:
    r = 0
    for a in args:
        r |= _u32(a)
    return r


def _bxor(*args: Any) -> int:
    r = 0
    for a in args:
        r ^= _u32(a)
    return r


def _bnot(x: Any) -> int:
    return ~_u32(x) & _MASK32


def _lshift(x: Any, n: Any) -> int:
    n = int(n)
    if n < 0:
        return _rshift(x, -n)
    if n >= 32:
        return 0
    return (_u32(x) << n) & _MASK32


def _rshift(x: Any, n: Any) -> int:
    n = int(n)
    if n < 0:
        return _lshift(x, -n)
    if n >= 32:
        return 0
    return _u32(x) >> n


def _arshift(x: Any, n: Any) -> int:
    v = _u32(x)
    if v & 0x80000000:
        v -= 1 << 32
    n = min(max(int(n), 0), 31)
    return (v >> n) & _MASK32


def _btest(*args: Any) -> bool:
    return _band(*args) != 0


def _extract(x: Any, field: Any, width: Any = 1) -> int:
    field = int(field)
    width = int(width)
    if field < 0 or width < 1 or field + width > 32:
        raise ValueError("bit32.extract: trying to access non-existent bits")
    return (_u32(x) >> field) & ((1 << width) - 1)


BIT32_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "band": _band,
    "bor": _bor,
    "bxor": _bxor,
    "bnot": _bnot,
    "lshift": _lshift,
    "rshift": _rshift,
    "arshift": _arshift,
    "btest": _btest,
    "extract": _extract,
}


def string_count(haystack: Any, needle: Any) -> int:
    """Number of non-overlapping occurrences of ``needle`` in ``haystack``."""
    needle = str(needle)
    if not needle:
        raise ValueError("string_count: needle must not be empty")
    return str(haystack).count(needle)


def _lua_repr(value: Any) -> str:
    if value is None:
        return "nil"
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


# -----------------
# predicates
# -----------------

_READ_FIELDS = frozenset(
    [
        "mapping_quality",
        "flags",
        "tid",
        "start",
        "stop",
        "pos",
        "qpos",
        "bq",
        "base",
        "distance_from_5prime",
        "distance_from_3prime",
        "length",
        "insert_size",
        "qname",
        "sequence",
        "cigar",
        "strand",
        "is_reverse",
        "is_read1",
        "average_base_quality",
        "indel_count",
        "soft_clip_5prime_len",
        "soft_clip_3prime_len",
    ]
)

# names used by earlier releases
_READ_ALIASES = {
    "soft_clips_5_prime": "soft_clip_5prime_len",
    "soft_clips_3_prime": "soft_clip_3prime_len",
}

_READ_METHODS = frozenset(["tag", "n_proportion_window", "n_proportion_5_prime", "n_proportion_3_prime"])

_COLUMN_FIELDS = {
    "depth": "depth",
    "a": "a",
    "c": "c",
    "g": "g",
    "t": "t",
    "n": "n",
    "fail": "fail",
    "ins": "ins",
    "del": "dels",
    "ref_skip": "ref_skip",
    "suppressed": "suppressed",
    "pos": "pos",
    "contig": "contig",
    "ref_base": "ref_base",
}


class LuaPredicate:
    """A compiled boolean Lua expression bound to one view name.

    Instances are not thread-safe; each worker must build its own.
    """

    binding = "view"

    def __init__(self, source: str) -> None:
        if "return" not in source:
            raise ConfigError(f"Expression {source!r} must contain 'return'")
        self.source = source
        self._diagnostics: List[str] = []

        self._lua = LuaRuntime(
            register_eval=False,
            register_builtins=False,
            unpack_returned_tuples=True,
            attribute_filter=_deny_attribute_access,
        )
        helpers = self._lua.table_from(
            {
                "print": self._print,
                "string_count": string_count,
                "bit32": self._lua.table_from(BIT32_FUNCTIONS),
            }
        )
        sandbox = self._lua.execute(_SANDBOX_BUILDER)(helpers)
        self._make_proxy = self._lua.execute(_PROXY_BUILDER)
        compile_chunk = self._lua.execute(_COMPILER)

        lua_globals = self._lua.globals()
        for name in _UNSAFE_GLOBALS:
            lua_globals[name] = None

        try:
            call, err = compile_chunk(source, sandbox)
        except LuaError as e:
            raise ExpressionError(f"Invalid Lua expression: {e}", source=source, binding=self.binding) from e
        if call is False:
            raise ExpressionError(f"Invalid Lua expression: {err}", source=source, binding=self.binding)
        self._call = call

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.source!r})"

    def _print(self, *args: Any) -> None:
        text = "\t".join(_lua_repr(a) for a in args)
        self._diagnostics.append(text)
        sys.stderr.write(text + "\n")

    def _to_lua(self, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return self._lua.table_from(list(value))
        return value

    def _resolve(self, obj: Any, key: Any) -> Tuple[Any, bool]:
        raise NotImplementedError

    def _run(self, obj: Any) -> bool:
        proxy = self._make_proxy(lambda key: self._resolve(obj, key))
        try:
            result = self._call(self.binding, proxy)
        except Exception as e:
            raise ExpressionError(
                f"Error evaluating expression: {e}", source=self.source, binding=self.binding
            ) from e
        return result is not None and result is not False

    def evaluate(self, obj: Any) -> bool:
        self._diagnostics.clear()
        return self._run(obj)

    def evaluate_outcome(self, obj: Any) -> FilterOutcome:
        self._diagnostics.clear()
        passed = self._run(obj)
        diagnostic = "\n".join(self._diagnostics) if self._diagnostics else None
        return FilterOutcome(passed=passed, diagnostic=diagnostic)


class ReadPredicate(LuaPredicate):
    """Predicate over a :class:`ReadView`, bound to the Lua global ``read``."""

    binding = "read"

    def __init__(self, source: str = ALWAYS_TRUE) -> None:
        super().__init__(source)

    def _resolve(self, view: ReadView, key: Any) -> Tuple[Any, bool]:
        key = _READ_ALIASES.get(key, key)
        if key in _READ_FIELDS:
            return getattr(view, key), False
        if key == "kind":
            return view.kind.value, False
        if key in _READ_METHODS:
            method = getattr(view, key)
            return (lambda *args: self._to_lua(method(*args))), True
        raise AttributeError(f"read has no field '{key}'")


class ColumnPredicate(LuaPredicate):
    """Predicate over a :class:`Column`, bound to the Lua global ``pile``."""

    binding = "pile"

    def _resolve(self, column: Column, key: Any) -> Tuple[Any, bool]:
        attr = _COLUMN_FIELDS.get(key)
        if attr is None:
            raise AttributeError(f"pile has no field '{key}'")
        return getattr(column, attr), False


def compile_predicates(
    read_expression: Optional[str], column_expression: Optional[str]
) -> Tuple[ReadPredicate, Optional[ColumnPredicate]]:
    """Compile both predicates up front so syntax errors surface before any work starts."""
    read_pred = ReadPredicate(read_expression or ALWAYS_TRUE)
    col_pred = ColumnPredicate(column_expression) if column_expression else None
    logger.debug("Compiled read predicate %r and column predicate %r", read_pred, col_pred)
    return read_pred, col_pred
