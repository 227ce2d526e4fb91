"""Host capabilities handed to the VM."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import HostExit
from .memory import Memory2D
from .values import UNDEFINED, serialize, to_string


def _default_print(*args: Any) -> None:
    print(" ".join(to_string(arg) for arg in args))


@dataclass
class Host:
    """Everything the VM may reach outside itself.

    Args:
        print: Output sink, also reachable from programs as ``!!!!print``.
        values: Named values for ``LOAD_HOST`` (``!!!!name``).
        ops: Custom operations for ``CUSTOM``, called as
            ``op(vm, fetch, host)``; a non-None result is pushed.
        memory: Memory backend, ``None`` to run without one.
    """

    print: Callable[..., Any] = _default_print
    values: Dict[str, Any] = field(default_factory=dict)
    ops: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    memory: Optional[Memory2D] = field(default_factory=Memory2D)

    def exit(self, code: int = 1, message: str = "VM exit") -> None:
        """Abort the current execution."""
        raise HostExit(code, message)

    def req(self, name: str) -> Any:
        """Look up a named host value."""
        if name in self.values:
            return self.values[name]
        if name == "print":
            return self.print
        if name == "exit":
            return self.exit
        return UNDEFINED

    def serialize(self, value: Any) -> int:
        """Integer fallback for values CAST cannot convert directly."""
        return serialize(value)
