"""Single-pass compiler: parses source and emits blinded bytecode directly.

Statements are parsed by recursive descent and expressions by precedence
climbing. No syntax tree is built; instructions go straight into a byte
buffer and forward jumps are back-patched once their target is known.
"""

import logging
from typing import List, NamedTuple, Optional

from .errors import CompileError
from .lexer import lex
from .opcodes import OpCode, DECL_CONST, DECL_INIT
from .protocol import DEFAULT_SEED, MAX_BODY, encode
from .tokens import Token, TokenType

logger = logging.getLogger(__name__)


# Operator precedence (higher = binds tighter)
PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3, "!=": 3,
    "<": 4, ">": 4, "<=": 4, ">=": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "%": 6, "^": 6,
    "<<": 7, ">>": 7, ">>>": 7,
}

# Unary & binds tighter than the shift operators
ADDRESS_PRECEDENCE = 8

BINARY_OPS = {
    "||": OpCode.OR,
    "&&": OpCode.AND,
    "==": OpCode.EQ,
    "!=": OpCode.NEQ,
    "<": OpCode.LT,
    ">": OpCode.GT,
    "<=": OpCode.LTE,
    ">=": OpCode.GTE,
    "+": OpCode.ADD,
    "-": OpCode.SUB,
    "*": OpCode.MUL,
    "/": OpCode.DIV,
    "%": OpCode.MOD,
    "^": OpCode.XOR,
    "<<": OpCode.SHL,
    ">>": OpCode.SHR,
    ">>>": OpCode.USHR,
}

MAX_STRINGS = 256


class CompiledProgram(NamedTuple):
    """Compilation result: the container and its string table."""

    bytecode: bytes
    strings: List[str]


class Compiler:
    """Compiles source text to a bytecode container."""

    def __init__(self, source: str, seed: int = DEFAULT_SEED):
        self.tokens: List[Token] = lex(source)
        self.pos = 0
        self.seed = seed
        self.code: List[int] = []
        self.strings: List[str] = []
        last = self.tokens[-1] if self.tokens else None
        self._eof = Token(
            TokenType.EOF, None,
            last.line if last else 1,
            last.column if last else 1,
        )

    def compile(self) -> CompiledProgram:
        """Compile the whole program."""
        while not self._is_at_end():
            self._parse_statement()
        self._emit(OpCode.STOP)
        if len(self.code) > MAX_BODY:
            raise CompileError(
                f"Program too long: {len(self.code)} bytes (max {MAX_BODY})",
                self._eof.line, self._eof.column,
            )

        logger.debug(
            "Compiled %d tokens into %d body bytes, %d strings (seed=0x%08x)",
            len(self.tokens), len(self.code), len(self.strings), self.seed,
        )
        return CompiledProgram(encode(self.code, self.seed), list(self.strings))

    # ---- Tokens ----

    def _peek(self, offset: int = 0) -> Token:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index]
        return self._eof

    def _advance(self) -> Token:
        token = self._peek()
        if token.type != TokenType.EOF:
            self.pos += 1
        return token

    def _is_at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def _check_symbol(self, *values: str) -> bool:
        return self._peek().is_symbol(*values)

    def _match_symbol(self, value: str) -> bool:
        if self._check_symbol(value):
            self._advance()
            return True
        return False

    def _describe(self, token: Token) -> str:
        if token.type == TokenType.EOF:
            return "end of input"
        return f"{token.type.name} {token.value!r}"

    def _error(self, message: str) -> CompileError:
        """Create a compile error at the current token."""
        token = self._peek()
        return CompileError(
            f"{message} but got {self._describe(token)}", token.line, token.column
        )

    def _unexpected(self) -> CompileError:
        token = self._peek()
        return CompileError(f"Unexpected {self._describe(token)}", token.line, token.column)

    def _expect_symbol(self, value: str) -> Token:
        if not self._check_symbol(value):
            raise self._error(f"Expected {value!r}")
        return self._advance()

    def _expect_identifier(self, what: str = "identifier") -> str:
        if self._peek().type != TokenType.IDENTIFIER:
            raise self._error(f"Expected {what}")
        return self._advance().value

    # ---- Emission ----

    def _emit(self, opcode: OpCode, *operands: int) -> int:
        """Emit an instruction, return its position."""
        pos = len(self.code)
        self.code.append(opcode)
        self.code.extend(operand & 0xFF for operand in operands)
        return pos

    def _emit_i32(self, value: int) -> None:
        value &= 0xFFFFFFFF
        self._emit(
            OpCode.PUSH_I32,
            value >> 24, value >> 16, value >> 8, value,
        )

    def _rel8(self, target: int, operand_at: int) -> int:
        """Encode ``target`` relative to the byte after ``operand_at``."""
        delta = target - (operand_at + 1)
        if not -128 <= delta <= 127:
            token = self._peek()
            raise CompileError(
                f"Jump offset {delta} does not fit in a signed byte",
                token.line, token.column,
            )
        return delta & 0xFF

    def _emit_jump(self, opcode: OpCode) -> int:
        """Emit a forward jump, return the operand position for patching."""
        pos = self._emit(opcode, 0)
        return pos + 1

    def _patch_jump(self, operand_at: int, target: Optional[int] = None) -> None:
        """Point the jump operand at ``target`` (or the current position)."""
        if target is None:
            target = len(self.code)
        self.code[operand_at] = self._rel8(target, operand_at)

    def _emit_loop(self, opcode: OpCode, target: int) -> None:
        """Emit a backward jump to an already known target."""
        operand_at = len(self.code) + 1
        self._emit(opcode, self._rel8(target, operand_at))

    def _intern(self, value: str) -> int:
        """Add a string to the table and return its index."""
        if value in self.strings:
            return self.strings.index(value)
        if len(self.strings) >= MAX_STRINGS:
            token = self._peek()
            raise CompileError(
                f"String table full ({MAX_STRINGS} entries)", token.line, token.column
            )
        self.strings.append(value)
        return len(self.strings) - 1

    def _declare(self, name: str, flags: int) -> None:
        self._emit(OpCode.DECL, self._intern(name), flags)

    # ---- Statements ----

    def _parse_statement(self) -> None:
        """Parse a statement."""
        token = self._peek()

        if token.is_symbol(";"):
            self._advance()
            return

        if token.is_symbol("{"):
            self._parse_block()
            return

        if token.is_keyword("let", "const", "var"):
            self._parse_declaration()
            return

        if token.is_keyword("if"):
            self._parse_if()
            return

        if token.is_keyword("while"):
            self._parse_while()
            return

        if token.is_keyword("do"):
            self._parse_do_while()
            return

        if token.is_keyword("for"):
            self._parse_for()
            return

        if token.is_keyword("return"):
            self._parse_return()
            return

        if token.is_keyword("function", "fn") and self._peek(1).type == TokenType.IDENTIFIER:
            name = self._parse_function()
            self._declare(name, DECL_INIT)
            return

        self._parse_assignment()
        self._match_symbol(";")

    def _parse_block(self) -> None:
        self._expect_symbol("{")
        self._emit(OpCode.PUSH_SCOPE)
        while not self._check_symbol("}"):
            if self._is_at_end():
                raise self._error("Expected '}'")
            self._parse_statement()
        self._expect_symbol("}")
        self._emit(OpCode.POP_SCOPE)

    def _parse_loop_body(self) -> None:
        """Parse a loop body; an unbraced statement gets a scope of its own."""
        if self._check_symbol("{"):
            self._parse_block()
            return
        self._emit(OpCode.PUSH_SCOPE)
        self._parse_statement()
        self._emit(OpCode.POP_SCOPE)

    def _parse_declaration(self) -> None:
        """Parse let/const/var NAME [= expr];"""
        kind = self._advance().value
        name = self._expect_identifier("variable name")
        flags = DECL_CONST if kind == "const" else 0
        if self._match_symbol("="):
            self._parse_expression()
            flags |= DECL_INIT
        self._expect_symbol(";")
        self._declare(name, flags)

    def _parse_if(self) -> None:
        self._advance()
        self._expect_symbol("(")
        self._parse_expression()
        self._expect_symbol(")")

        jump_false = self._emit_jump(OpCode.JZ)
        self._parse_statement()

        if self._peek().is_keyword("else"):
            self._advance()
            jump_end = self._emit_jump(OpCode.JMP)
            self._patch_jump(jump_false)
            self._parse_statement()
            self._patch_jump(jump_end)
        else:
            self._patch_jump(jump_false)

    def _parse_while(self) -> None:
        self._advance()
        loop_start = len(self.code)
        self._expect_symbol("(")
        self._parse_expression()
        self._expect_symbol(")")

        jump_end = self._emit_jump(OpCode.JZ)
        self._parse_loop_body()
        self._emit_loop(OpCode.JMP, loop_start)
        self._patch_jump(jump_end)

    def _parse_do_while(self) -> None:
        self._advance()
        loop_start = len(self.code)
        self._parse_loop_body()

        if not self._peek().is_keyword("while"):
            raise self._error("Expected 'while'")
        self._advance()
        self._expect_symbol("(")
        self._parse_expression()
        self._expect_symbol(")")
        self._match_symbol(";")

        self._emit_loop(OpCode.JNZ, loop_start)

    def _parse_for(self) -> None:
        """Parse for (init; cond; post) body.

        Layout::

            init
            cond:  <cond>; JZ end; JMP body
            post:  PUSH_SCOPE; <post>; POP_SCOPE; JMP cond
            body:  <body>; JMP post
            end:

        An empty post clause emits nothing but the jump.
        """
        self._advance()
        self._expect_symbol("(")
        self._emit(OpCode.PUSH_SCOPE)

        if self._match_symbol(";"):
            pass
        elif self._peek().is_keyword("let", "const", "var"):
            self._parse_declaration()
        else:
            self._parse_assignment()
            self._expect_symbol(";")

        cond_pc = len(self.code)
        if self._check_symbol(";"):
            self._emit(OpCode.PUSH_U8, 1)
        else:
            self._parse_expression()
        self._expect_symbol(";")

        jump_end = self._emit_jump(OpCode.JZ)
        jump_body = self._emit_jump(OpCode.JMP)

        post_pc = len(self.code)
        if not self._check_symbol(")"):
            self._emit(OpCode.PUSH_SCOPE)
            self._parse_assignment()
            self._emit(OpCode.POP_SCOPE)
        self._expect_symbol(")")
        self._emit_loop(OpCode.JMP, cond_pc)

        self._patch_jump(jump_body)
        self._parse_loop_body()
        self._emit_loop(OpCode.JMP, post_pc)

        self._patch_jump(jump_end)
        self._emit(OpCode.POP_SCOPE)

    def _parse_return(self) -> None:
        self._advance()
        if self._check_symbol(";") or self._check_symbol("}") or self._is_at_end():
            self._emit(OpCode.PUSH_U8, 0)
        else:
            self._parse_expression()
        self._match_symbol(";")
        self._emit(OpCode.RET)

    def _parse_function(self) -> str:
        """Parse function [name](params) { body } and emit MAKE_FN.

        Layout::

            JMP over
            entry: [PUSH_SCOPE; LOAD arg0 .. LOAD argN-1; DECL pN-1 .. DECL p0]
                   <body>; PUSH_U8 0; RET
            over:  MAKE_FN name, nparams, rel8(entry)

        The call binds arguments by position to ``arg0``, ``arg1``, ...; the
        prologue copies them into the declared names in a fresh scope, where
        the body's own declarations live as well. Functions without
        parameters have no prologue. Returns the function name.
        """
        self._advance()
        name = None
        if self._peek().type == TokenType.IDENTIFIER:
            name = self._advance().value

        self._expect_symbol("(")
        params: List[str] = []
        if not self._check_symbol(")"):
            while True:
                token = self._peek()
                param = self._expect_identifier("parameter name")
                if param in params:
                    raise CompileError(
                        f"Duplicate parameter name {param!r}", token.line, token.column
                    )
                params.append(param)
                if not self._match_symbol(","):
                    break
        self._expect_symbol(")")
        if len(params) > 255:
            raise self._error("Too many parameters")

        jump_over = self._emit_jump(OpCode.JMP)
        entry = len(self.code)
        if name is None:
            name = f"__anon__{entry}"

        if params:
            self._emit(OpCode.PUSH_SCOPE)
            for i in range(len(params)):
                self._emit(OpCode.LOAD, self._intern(f"arg{i}"))
            # The last argument is on top
            for param in reversed(params):
                self._declare(param, DECL_INIT)

        self._expect_symbol("{")
        while not self._check_symbol("}"):
            if self._is_at_end():
                raise self._error("Expected '}'")
            self._parse_statement()
        self._expect_symbol("}")
        self._emit(OpCode.PUSH_U8, 0)
        self._emit(OpCode.RET)

        self._patch_jump(jump_over)
        make_at = len(self.code)
        self._emit(
            OpCode.MAKE_FN,
            self._intern(name),
            len(params),
            self._rel8(entry, make_at + 3),
        )
        return name

    # ---- Expressions ----

    def _parse_assignment(self) -> None:
        """Parse an expression that may be an assignment."""
        self._parse_expression(can_assign=True)

    def _parse_expression(self, min_precedence: int = 1, can_assign: bool = False) -> None:
        """Parse binary expression with operator precedence."""
        self._parse_unary(can_assign)

        while True:
            token = self._peek()
            if token.type != TokenType.SYMBOL:
                break
            precedence = PRECEDENCE.get(token.value)
            if precedence is None or precedence < min_precedence:
                break

            self._advance()
            self._parse_expression(precedence + 1)
            self._emit(BINARY_OPS[token.value])

    def _parse_unary(self, can_assign: bool = False) -> None:
        token = self._peek()

        if token.is_symbol("-", "!"):
            self._advance()
            self._parse_unary()
            self._emit(OpCode.NEG if token.value == "-" else OpCode.NOT)
            return

        if token.is_symbol("&"):
            # Relative address: ['&', offset]
            self._advance()
            self._emit(OpCode.PUSH_STR, self._intern("&"))
            self._parse_expression(ADDRESS_PRECEDENCE)
            self._emit(OpCode.NEW_ARR, 2)
            return

        self._parse_postfix(can_assign)

    def _parse_postfix(self, can_assign: bool) -> None:
        """Parse a primary followed by member, index and call suffixes."""
        if self._parse_primary(can_assign):
            return

        while True:
            if self._match_symbol("."):
                prop = self._expect_identifier("property name")
                self._emit(OpCode.PUSH_STR, self._intern(prop))
            elif self._match_symbol("["):
                self._parse_expression()
                self._expect_symbol("]")
            elif self._match_symbol("("):
                argc = self._parse_arguments()
                self._emit(OpCode.CALL_ANY, argc)
                continue
            else:
                break

            if can_assign and self._check_symbol("="):
                self._advance()
                self._parse_expression()
                self._emit(OpCode.SET_IDX)
                return
            self._emit(OpCode.GET_IDX)

    def _parse_arguments(self) -> int:
        """Parse call arguments after '(' and return their count."""
        argc = 0
        if not self._check_symbol(")"):
            while True:
                self._parse_expression()
                argc += 1
                if not self._match_symbol(","):
                    break
        self._expect_symbol(")")
        if argc > 255:
            raise self._error("Too many arguments")
        return argc

    def _parse_primary(self, can_assign: bool) -> bool:
        """Parse a primary expression.

        Returns True when the primary turned out to be a complete name
        assignment, which leaves nothing for postfix parsing.
        """
        token = self._peek()

        if token.type == TokenType.NUMBER:
            self._advance()
            self._emit_i32(token.value)
            return False

        if token.type == TokenType.STRING:
            self._advance()
            self._emit(OpCode.PUSH_STR, self._intern(token.value))
            return False

        if token.type == TokenType.IDENTIFIER:
            self._advance()
            name = token.value
            if can_assign and self._check_symbol("="):
                self._advance()
                self._parse_expression()
                self._emit(OpCode.STORE, self._intern(name))
                return True
            self._emit(OpCode.LOAD, self._intern(name))
            return False

        if token.type == TokenType.HOST_ESCAPE:
            self._advance()
            name = self._expect_identifier("host name")
            self._emit(OpCode.LOAD_HOST, self._intern(name))
            return False

        if token.is_symbol("("):
            self._advance()
            self._parse_expression()
            self._expect_symbol(")")
            return False

        if token.is_symbol("["):
            self._advance()
            count = 0
            if not self._check_symbol("]"):
                while True:
                    self._parse_expression()
                    count += 1
                    if not self._match_symbol(","):
                        break
            self._expect_symbol("]")
            if count > 255:
                raise self._error("Too many array elements")
            self._emit(OpCode.NEW_ARR, count)
            return False

        if token.is_symbol("{"):
            self._parse_object_literal()
            return False

        if token.is_keyword("function", "fn"):
            self._parse_function()
            return False

        raise self._unexpected()

    def _parse_object_literal(self) -> None:
        """Parse {key: value, ...}."""
        self._advance()
        self._emit(OpCode.NEW_OBJ)
        if not self._check_symbol("}"):
            while True:
                key_token = self._peek()
                if key_token.type not in (TokenType.IDENTIFIER, TokenType.STRING):
                    raise self._error("Expected property name")
                self._advance()
                self._expect_symbol(":")
                self._parse_expression()
                self._emit(OpCode.PUSH_STR, self._intern(key_token.value))
                self._emit(OpCode.OBJ_SET)
                if not self._match_symbol(","):
                    break
        self._expect_symbol("}")


def compile(source: str, seed: int = DEFAULT_SEED) -> CompiledProgram:
    """Compile source text into ``(bytecode, strings)``."""
    return Compiler(source, seed).compile()
