"""Compile-time and runtime error types."""

from typing import Optional


class CompileError(Exception):
    """Syntax or structural error raised while compiling source text."""

    def __init__(self, message: str = "", line: int = 0, column: int = 0):
        self.message = message
        self.line = line
        self.column = column
        # Include position in error message if line is specified
        if line > 0:
            formatted_message = f"{message} (line {line}, column {column})"
        else:
            formatted_message = message
        super().__init__(formatted_message)


class VMError(Exception):
    """Base class for all structured runtime conditions.

    Every condition carries a numeric ``code`` and, once it has passed
    through the dispatch loop, the instruction pointer it failed at.
    """

    code = 0

    def __init__(self, message: str = "", code: Optional[int] = None, ip: Optional[int] = None):
        self.message = message
        if code is not None:
            self.code = code
        self.ip = ip
        super().__init__(message)

    def __str__(self) -> str:
        where = f" @IP={self.ip}" if self.ip is not None else ""
        return f"[{self.code}] {self.message}{where}"


class RedeclareError(VMError):
    """A name was declared twice in the same scope."""

    code = 300


class ConstAssignError(VMError):
    """A const binding was written to."""

    code = 301


class UndeclaredError(VMError):
    """Store to an undeclared name under the strict store policy."""

    code = 302


class VMTypeError(VMError):
    """An operation received a value of an unsupported type.

    Codes follow the expected type: 100 number, 101 string, 102 boolean,
    103 object, 104 function.
    """

    code = 100


class InvalidOpcodeError(VMError):
    """The fetched byte does not name an instruction."""

    code = 400

    def __init__(self, opcode: int, ip: Optional[int] = None):
        self.opcode = opcode
        super().__init__(f"Invalid opcode: 0x{opcode:02x}", ip=ip)


class StackOverflowError(VMError):
    """The value stack is full."""

    code = 401


class CallDepthError(VMError):
    """Too many nested function calls."""

    code = 402


class InvalidJumpError(VMError):
    """A jump moved the instruction pointer before the start of the body."""

    code = 403


class TruncatedInstructionError(VMError):
    """An operand fetch ran past the end of the body."""

    code = 404


class StackUnderflowError(VMError):
    """An instruction popped an empty stack."""

    code = 405


class NoMemoryError(VMError):
    """A memory opcode ran without a memory backend."""

    code = 600


class MemoryBoundsError(VMError):
    """Out-of-bounds memory access (601 read, 602 write)."""

    READ = 601
    WRITE = 602

    def __init__(self, message: str, address: int, code: int, value: Optional[int] = None):
        self.address = address
        self.value = value
        super().__init__(message, code=code)


class InvalidAddressError(VMError):
    """An address operand was neither an int nor a relative pair."""

    code = 605


class UnknownOperationError(VMError):
    """CUSTOM named an operation the host does not provide."""

    code = 700


class HostOperationError(VMError):
    """A CUSTOM operation's awaitable result could not be completed."""

    code = 701


class ContainerError(VMError):
    """Malformed bytecode container or bundle."""

    code = 800


class TimeLimitError(VMError):
    """Raised when execution time limit is exceeded."""

    code = 900

    def __init__(self, message: str = "Execution timeout"):
        super().__init__(message)


class HostExit(VMError):
    """Raised by the default host exit procedure."""

    def __init__(self, code: int = 1, message: str = "VM exit"):
        super().__init__(message, code=code)
