"""Bytecode opcodes and their operand widths."""

from enum import IntEnum


class OpCode(IntEnum):
    """Bytecode operation codes."""

    # Core / immediates
    STOP = 0x00
    PUSH_U8 = 0x01        # arg: u8
    PUSH_I32 = 0x10       # arg: i32 big-endian
    PUSH_STR = 0x34       # arg: string index

    # Arithmetic (int32 wrapping)
    ADD = 0x02
    SUB = 0x03
    DIV = 0x04
    MOD = 0x05
    MUL = 0x06
    XOR = 0x07
    NEG = 0x08
    SHL = 0x20
    SHR = 0x21
    USHR = 0x22

    # Logical
    NOT = 0x14
    AND = 0x1D
    OR = 0x1E

    # Comparison
    EQ = 0x24
    NEQ = 0x25
    GT = 0x26
    LT = 0x27
    GTE = 0x28
    LTE = 0x29

    # Control flow: arg = signed rel8
    JMP = 0x30
    JZ = 0x31
    JNZ = 0x32

    # Objects/arrays
    GET_IDX = 0x36
    SET_IDX = 0x37
    NEW_OBJ = 0x40
    OBJ_SET = 0x41
    NEW_ARR = 0x42        # arg: element count
    ARR_PUSH = 0x43

    # Variables
    DECL = 0x50           # args: name index, flags (1 = const, 2 = pop initializer)
    LOAD = 0x51           # arg: name index
    STORE = 0x52          # arg: name index
    LOAD_HOST = 0x53      # arg: name index

    # Functions and scopes
    MAKE_FN = 0x60        # args: name index, param count, rel8 entry
    RET = 0x61
    PUSH_SCOPE = 0x62
    POP_SCOPE = 0x63
    CALL_ANY = 0x73       # arg: argument count

    # Types
    CAST = 0x81           # arg: type name index

    # Memory
    MEM_SET_BASE = 0x90
    MEM_GET_BASE = 0x91
    MEM_READ = 0x92
    MEM_WRITE = 0x93

    # Generators (partial)
    GEN_NEW = 0xA8
    YIELD = 0xA9
    GEN_RESUME = 0xAA

    # Host extension
    CUSTOM = 0xE0         # arg: operation name index, then host-defined bytes


OPERAND_WIDTHS = {op: 0 for op in OpCode}
OPERAND_WIDTHS.update({
    OpCode.PUSH_U8: 1,
    OpCode.PUSH_I32: 4,
    OpCode.PUSH_STR: 1,
    OpCode.JMP: 1,
    OpCode.JZ: 1,
    OpCode.JNZ: 1,
    OpCode.NEW_ARR: 1,
    OpCode.DECL: 2,
    OpCode.LOAD: 1,
    OpCode.STORE: 1,
    OpCode.LOAD_HOST: 1,
    OpCode.MAKE_FN: 3,
    OpCode.CALL_ANY: 1,
    OpCode.CAST: 1,
    OpCode.CUSTOM: 1,
})

JUMP_OPCODES = frozenset([OpCode.JMP, OpCode.JZ, OpCode.JNZ])

# Opcodes whose first operand is a string table index
STRING_OPERAND_OPCODES = frozenset([
    OpCode.PUSH_STR, OpCode.DECL, OpCode.LOAD, OpCode.STORE,
    OpCode.LOAD_HOST, OpCode.MAKE_FN, OpCode.CAST, OpCode.CUSTOM,
])

DECL_CONST = 0x01
DECL_INIT = 0x02


def to_rel8(byte: int) -> int:
    """Interpret an operand byte as a signed 8-bit offset."""
    return byte - 256 if byte & 0x80 else byte
