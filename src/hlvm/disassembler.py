"""Bytecode disassembler.

Decodes a container independently of the VM: it re-derives the keystream
from the seed, walks the plain body instruction by instruction and prints
mnemonics with their operands. Offsets are body offsets, the same numbers
the VM reports as ``ip``.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

from .opcodes import OpCode, OPERAND_WIDTHS, JUMP_OPCODES, STRING_OPERAND_OPCODES, to_rel8
from .protocol import decode, deblind

logger = logging.getLogger(__name__)


class Instruction(NamedTuple):
    """One decoded instruction."""

    offset: int
    opcode: int
    operands: Tuple[int, ...]
    truncated: bool = False

    @property
    def name(self) -> str:
        try:
            return OpCode(self.opcode).name
        except ValueError:
            return f"OP_{self.opcode:02x}"

    @property
    def next_offset(self) -> int:
        return self.offset + 1 + len(self.operands)

    def target(self) -> Optional[int]:
        """Absolute target of a jump or MAKE_FN entry, else None."""
        if self.truncated:
            return None
        if self.opcode in JUMP_OPCODES:
            return self.next_offset + to_rel8(self.operands[0])
        if self.opcode == OpCode.MAKE_FN:
            return self.next_offset + to_rel8(self.operands[2])
        return None


def decode_instructions(body: bytes) -> List[Instruction]:
    """Split a plain (de-blinded) body into instructions."""
    instructions = []
    i = 0
    while i < len(body):
        op = body[i]
        width = OPERAND_WIDTHS.get(op, 0)
        operands = tuple(body[i + 1:i + 1 + width])
        truncated = len(operands) < width
        instructions.append(Instruction(i, op, operands, truncated))
        i += 1 + width
    return instructions


def _string_label(index: int, strings: Sequence[str], show_strings: bool) -> str:
    if show_strings and index < len(strings):
        return repr(strings[index])
    return f"str#{index}"


def _format_operands(
    ins: Instruction,
    strings: Sequence[str],
    annotate_jumps: bool,
    show_strings: bool,
) -> str:
    op, operands = ins.opcode, ins.operands
    if ins.truncated:
        return " ".join(str(b) for b in operands) + " <truncated>"
    if op == OpCode.PUSH_I32:
        value = int.from_bytes(bytes(operands), "big", signed=True)
        return str(value)
    if op in JUMP_OPCODES:
        rel = to_rel8(operands[0])
        if annotate_jumps:
            return f"rel={rel} -> {ins.target()}"
        return f"rel={rel}"
    if op == OpCode.MAKE_FN:
        label = _string_label(operands[0], strings, show_strings)
        entry = f"entry={ins.target()}" if annotate_jumps else f"rel={to_rel8(operands[2])}"
        return f"{label}, nparams={operands[1]}, {entry}"
    if op == OpCode.DECL:
        label = _string_label(operands[0], strings, show_strings)
        return f"{label}, flags={operands[1]}"
    if op in STRING_OPERAND_OPCODES:
        return _string_label(operands[0], strings, show_strings)
    if op == OpCode.CALL_ANY:
        return f"argc={operands[0]}"
    if op == OpCode.NEW_ARR:
        return f"count={operands[0]}"
    return " ".join(str(b) for b in operands)


def disassemble(
    bytecode: bytes,
    strings: Sequence[str] = (),
    seed: Optional[int] = None,
    show_bytes: bool = True,
    annotate_jumps: bool = True,
    show_strings: bool = True,
    include_cfg: bool = False,
) -> str:
    """Disassemble a bytecode container for debugging.

    Args:
        bytecode: Container bytes.
        strings: The string table the container was compiled with.
        seed: Keystream seed; ``None`` uses the seed in the header.
        show_bytes: Prefix each line with its body offset.
        annotate_jumps: Resolve relative jumps to absolute targets.
        show_strings: Print string operands as literals instead of indices.
        include_cfg: Append the list of control-flow edges.
    """
    container = decode(bytecode)
    if seed is None:
        seed = container.seed
    body = deblind(container.body, seed)

    lines = []
    edges: List[Tuple[int, int]] = []
    for ins in decode_instructions(body):
        text = _format_operands(ins, strings, annotate_jumps, show_strings)
        prefix = f"@{ins.offset:6d}  " if show_bytes else ""
        line = f"{prefix}{ins.name}{' ' + text if text else ''}"
        lines.append(line)
        logger.debug(line)

        target = ins.target()
        if target is not None:
            edges.append((ins.offset, target))

    if include_cfg:
        lines.append("")
        lines.append("CFG edges:")
        lines.extend(f"  {src} -> {dst}" for src, dst in edges)

    return "\n".join(lines)
