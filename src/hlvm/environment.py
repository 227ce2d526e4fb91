"""Lexical environments (scope chain)."""

from enum import Enum
from typing import Any, Dict, Optional, Set

from .errors import ConstAssignError, RedeclareError, UndeclaredError
from .values import UNDEFINED


class StorePolicy(Enum):
    """What a store to a name no scope declares does."""

    IMPLICIT = "implicit"  # create the binding in the current scope
    STRICT = "strict"      # fail with UndeclaredError


class Environment:
    """A scope: name -> value bindings, const names, optional parent.

    ``stack_mark`` is the value stack height when the scope was entered by
    ``PUSH_SCOPE``; leaving the scope truncates the stack back to it.
    """

    def __init__(self, parent: Optional["Environment"] = None, stack_mark: Optional[int] = None):
        self.parent = parent
        self.stack_mark = stack_mark
        self.vars: Dict[str, Any] = {}
        self.consts: Set[str] = set()

    def __repr__(self) -> str:
        return f"Environment({sorted(self.vars)!r}, depth={self.depth})"

    @property
    def depth(self) -> int:
        depth = 0
        env = self.parent
        while env is not None:
            depth += 1
            env = env.parent
        return depth

    def child(self, stack_mark: Optional[int] = None) -> "Environment":
        return Environment(self, stack_mark)

    def declare(self, name: str, value: Any = UNDEFINED, const: bool = False) -> None:
        """Bind ``name`` in this scope; redeclaring in the same scope fails."""
        if name in self.vars:
            raise RedeclareError(f"Redeclare {name}")
        self.vars[name] = value
        if const:
            self.consts.add(name)

    def find(self, name: str) -> Optional["Environment"]:
        """Return the innermost scope declaring ``name``."""
        env = self
        while env is not None:
            if name in env.vars:
                return env
            env = env.parent
        return None

    def load(self, name: str) -> Any:
        env = self.find(name)
        if env is None:
            return UNDEFINED
        return env.vars[name]

    def store(self, name: str, value: Any, policy: StorePolicy = StorePolicy.IMPLICIT) -> Any:
        """Assign to the innermost declaring scope.

        Undeclared names are handled according to ``policy``.
        """
        env = self.find(name)
        if env is None:
            if policy is StorePolicy.STRICT:
                raise UndeclaredError(f"Assign to undeclared {name}")
            self.vars[name] = value
            return value
        if name in env.consts:
            raise ConstAssignError(f"Assign to const {name}")
        env.vars[name] = value
        return value
