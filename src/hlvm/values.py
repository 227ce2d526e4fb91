"""Runtime value types and conversions.

Values flowing through the stack are plain Python objects: ``int``,
``str``, ``bool``, ``list``, ``dict`` and ``None``, plus the types defined
here: the ``UNDEFINED`` singleton, ``Function`` and ``OneShotGenerator``.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .environment import Environment


class Undefined:
    """The undefined value (singleton)."""

    _instance: Optional["Undefined"] = None

    def __new__(cls) -> "Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __str__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = Undefined()


@dataclass(eq=False)
class Function:
    """A compiled function closed over its defining environment."""

    name: str
    nparams: int
    env: "Environment" = field(repr=False)
    entry: int

    def __str__(self) -> str:
        return f"[function {self.name}]"


class OneShotGenerator:
    """Generator wrapper around an already computed result.

    The callable ran to completion when the generator was created, so only
    the first resume produces its value; later resumes produce undefined.
    """

    def __init__(self, value: Any):
        self._value = value
        self.done = False

    def resume(self, sent: Any = UNDEFINED) -> Any:
        if self.done:
            return UNDEFINED
        self.done = True
        return self._value

    def __repr__(self) -> str:
        return f"<OneShotGenerator done={self.done}>"


def is_callable(value: Any) -> bool:
    return isinstance(value, Function) or (
        callable(value) and not isinstance(value, (type, OneShotGenerator))
    )


def is_number(value: Any) -> bool:
    """True for ints, excluding bools."""
    return isinstance(value, int) and not isinstance(value, bool)


def to_boolean(value: Any) -> bool:
    """Truthiness: 0, "", false, undefined and None are falsy."""
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, (bool, int, float)):
        return value != 0
    if isinstance(value, str):
        return len(value) > 0
    # Arrays, objects and functions are always truthy
    return True


def to_int32(value: Any) -> int:
    """Coerce to a signed 32-bit integer (wrapping)."""
    if isinstance(value, bool):
        n = 1 if value else 0
    elif isinstance(value, int):
        n = value
    elif isinstance(value, float):
        n = int(value) if value == value and value not in (float("inf"), float("-inf")) else 0
    elif isinstance(value, str):
        n = parse_int(value)
    else:
        n = 0
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def to_uint32(value: Any) -> int:
    return to_int32(value) & 0xFFFFFFFF


def parse_int(text: str) -> int:
    """Parse a numeric string, 0 when it is not numeric."""
    n = parse_number(text)
    return 0 if n is None else n


def parse_number(text: str) -> Optional[int]:
    """Parse a numeric string, or None when it is not numeric."""
    s = text.strip()
    if s == "":
        return 0
    try:
        if s[:2] in ("0x", "0X"):
            return int(s[2:], 16)
        return int(s, 10)
    except ValueError:
        pass
    try:
        f = float(s)
    except ValueError:
        return None
    if f != f or f in (float("inf"), float("-inf")):
        return None
    return int(f)


def to_number(value: Any) -> float:
    """Numeric view used by relational comparisons (NaN when not numeric)."""
    if value is UNDEFINED:
        return float("nan")
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        n = parse_number(value)
        return float("nan") if n is None else n
    return float("nan")


def to_string(value: Any) -> str:
    """Textual representation."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value:
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, list):
        return ",".join(
            "" if item is UNDEFINED or item is None else to_string(item) for item in value
        )
    if isinstance(value, dict):
        return "[object Object]"
    if isinstance(value, Function):
        return str(value)
    if isinstance(value, OneShotGenerator):
        return "[object Generator]"
    if callable(value):
        return f"[function {getattr(value, '__name__', 'host')}]"
    return str(value)


def strict_equals(a: Any, b: Any) -> bool:
    """Equality without coercion between types."""
    if a is UNDEFINED or b is UNDEFINED:
        return a is b
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    # Objects, arrays and functions compare by identity
    return a is b


def serialize(value: Any) -> int:
    """Default value -> integer fallback used by CAST.

    Numbers pass through, numeric strings parse, everything else
    contributes its structural size.
    """
    if value is None or value is UNDEFINED:
        return 0
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return to_int32(value)
    if isinstance(value, str):
        n = parse_number(value)
        return to_int32(n if n is not None else len(value))
    if isinstance(value, (list, dict)):
        return len(value)
    return 0
