"""Execution context: compile and run source text in one place."""

import logging
from typing import Any, Callable, Dict, List, Optional

from .compiler import CompiledProgram, Compiler
from .environment import StorePolicy
from .host import Host
from .memory import Memory2D
from .protocol import DEFAULT_SEED
from .values import UNDEFINED, to_string
from .vm import VM, ExecutionState, DEFAULT_MAX_CALL_DEPTH, DEFAULT_STACK_SIZE

logger = logging.getLogger(__name__)

_DEFAULT_MEMORY = object()


class Context:
    """Execution context with configurable limits and host capabilities.

    Host values and the memory grid persist across ``eval`` calls; variable
    bindings do not, every run starts from a fresh root scope.
    """

    def __init__(
        self,
        seed: int = DEFAULT_SEED,
        stack_size: int = DEFAULT_STACK_SIZE,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        store_policy: StorePolicy = StorePolicy.IMPLICIT,
        time_limit: Optional[float] = None,
        memory: Any = _DEFAULT_MEMORY,
        values: Optional[Dict[str, Any]] = None,
        ops: Optional[Dict[str, Callable[..., Any]]] = None,
        print: Optional[Callable[..., Any]] = None,
    ):
        """Create a new context.

        Args:
            seed: Blinding seed used by ``compile``
            stack_size: Value stack capacity
            max_call_depth: Maximum nesting of function calls
            store_policy: Handling of stores to undeclared names
            time_limit: Maximum execution time in seconds
            memory: Memory backend; ``None`` runs without one
            values: Initial host values (``!!!!name``)
            ops: Custom operations for ``CUSTOM``
            print: Output sink (default collects into ``output`` and logs)
        """
        self.seed = seed
        self.stack_size = stack_size
        self.max_call_depth = max_call_depth
        self.store_policy = store_policy
        self.time_limit = time_limit
        self.output: List[str] = []
        self.last_state: Optional[ExecutionState] = None

        if memory is _DEFAULT_MEMORY:
            memory = Memory2D()
        self.host = Host(
            print=print if print is not None else self._print,
            values=dict(values or {}),
            ops=dict(ops or {}),
            memory=memory,
        )

    def _print(self, *args: Any) -> None:
        line = " ".join(to_string(arg) for arg in args)
        self.output.append(line)
        logger.info("print: %s", line)

    def compile(self, source: str) -> CompiledProgram:
        """Compile source text with this context's seed."""
        return Compiler(source, self.seed).compile()

    def run(self, bytecode: bytes, strings: List[str]) -> ExecutionState:
        """Run a compiled container against this context's host."""
        vm = VM(
            strings,
            self.host,
            stack_size=self.stack_size,
            max_call_depth=self.max_call_depth,
            store_policy=self.store_policy,
            time_limit=self.time_limit,
        )
        self.last_state = vm.run(bytecode)
        return self.last_state

    def eval(self, source: str) -> Any:
        """Compile and run source text, returning the value left on top of the stack.

        Raises:
            CompileError: If the source has syntax errors
            VMError: If execution raises a runtime condition
        """
        program = self.compile(source)
        return self.run(program.bytecode, program.strings).result

    def get(self, name: str) -> Any:
        """Get a host value by name."""
        return self.host.values.get(name, UNDEFINED)

    def set(self, name: str, value: Any) -> None:
        """Set a host value, reachable from programs as ``!!!!name``."""
        self.host.values[name] = value
