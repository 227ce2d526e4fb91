"""
hlvm - a small scripting language compiled to blinded stack bytecode

A single-pass compiler turns source text into a compact, XOR-blinded
instruction stream; a stack virtual machine with lexical scopes, closures
and a 2D word memory executes it.
"""

__version__ = "0.1.0"

from .compiler import CompiledProgram, compile
from .context import Context
from .disassembler import disassemble
from .environment import StorePolicy
from .errors import (
    CompileError, VMError, RedeclareError, ConstAssignError, UndeclaredError,
    VMTypeError, InvalidOpcodeError, StackOverflowError, StackUnderflowError,
    CallDepthError, InvalidJumpError, TruncatedInstructionError, NoMemoryError,
    MemoryBoundsError, InvalidAddressError, UnknownOperationError,
    HostOperationError, ContainerError, TimeLimitError, HostExit,
)
from .host import Host
from .memory import Memory2D
from .opcodes import OpCode
from .protocol import DEFAULT_SEED, Bundle, blind, deblind, decode, encode
from .values import UNDEFINED
from .vm import VM, ExecutionState, run

__all__ = [
    "__version__",
    "compile", "CompiledProgram", "run", "VM", "ExecutionState",
    "disassemble", "Context", "Host", "Memory2D", "StorePolicy", "OpCode",
    "DEFAULT_SEED", "Bundle", "blind", "deblind", "encode", "decode", "UNDEFINED",
    "CompileError", "VMError", "RedeclareError", "ConstAssignError",
    "UndeclaredError", "VMTypeError", "InvalidOpcodeError", "StackOverflowError",
    "StackUnderflowError", "CallDepthError", "InvalidJumpError",
    "TruncatedInstructionError", "NoMemoryError", "MemoryBoundsError",
    "InvalidAddressError", "UnknownOperationError", "HostOperationError",
    "ContainerError", "TimeLimitError", "HostExit",
]
