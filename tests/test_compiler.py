"""Tests for the compiler's code generation."""

import pytest
from hlvm.compiler import compile, MAX_STRINGS
from hlvm.errors import CompileError
from hlvm.opcodes import OpCode as Op, DECL_CONST, DECL_INIT
from hlvm.protocol import DEFAULT_SEED, HEADER_SIZE, MAGIC, VERSION, decode


def plain(source, seed=DEFAULT_SEED):
    """Compile and return the de-blinded body and the string table."""
    bytecode, strings = compile(source, seed)
    return list(decode(bytecode).plain()), strings


def i32(n):
    n &= 0xFFFFFFFF
    return [Op.PUSH_I32, n >> 24, (n >> 16) & 0xFF, (n >> 8) & 0xFF, n & 0xFF]


class TestContainer:
    """The compiler's output framing."""

    def test_empty_program(self):
        body, strings = plain("")
        assert body == [Op.STOP]
        assert strings == []

    def test_header(self):
        bytecode, _ = compile("1;", seed=0xDEADBEEF)
        assert bytecode[0] == MAGIC
        assert bytecode[1] == VERSION
        assert bytecode[2:6] == bytes([0xDE, 0xAD, 0xBE, 0xEF])
        assert int.from_bytes(bytecode[6:8], "big") == len(bytecode) - HEADER_SIZE

    def test_deterministic(self):
        source = "let x = 1; fn f(a) { return a * x; } f(3);"
        assert compile(source) == compile(source)

    def test_seed_changes_bytes_not_instructions(self):
        a, _ = compile("let x = 1; x + 2;", seed=1)
        b, _ = compile("let x = 1; x + 2;", seed=2)
        assert a != b
        assert decode(a).plain() == decode(b).plain()

    def test_result_unpacks(self):
        program = compile("1")
        bytecode, strings = program
        assert program.bytecode == bytecode
        assert program.strings == strings


class TestDeclarations:
    """let / const / var and assignment."""

    def test_let_with_initializer(self):
        body, strings = plain("let x = 5;")
        assert body == i32(5) + [Op.DECL, 0, DECL_INIT, Op.STOP]
        assert strings == ["x"]

    def test_const_sets_both_flags(self):
        body, _ = plain("const y = 1;")
        assert body[5:8] == [Op.DECL, 0, DECL_CONST | DECL_INIT]

    def test_declaration_without_initializer(self):
        body, _ = plain("var z;")
        assert body == [Op.DECL, 0, 0, Op.STOP]

    def test_name_assignment_stores(self):
        body, strings = plain("x = 1;")
        assert body == i32(1) + [Op.STORE, 0, Op.STOP]
        assert strings == ["x"]

    def test_element_assignment(self):
        body, strings = plain("a[0] = 1;")
        assert body == [Op.LOAD, 0] + i32(0) + i32(1) + [Op.SET_IDX, Op.STOP]

    def test_member_assignment(self):
        body, strings = plain("o.k = 2;")
        assert body == [Op.LOAD, 0, Op.PUSH_STR, 1] + i32(2) + [Op.SET_IDX, Op.STOP]
        assert strings == ["o", "k"]

    def test_chained_assignment_is_rejected(self):
        with pytest.raises(CompileError):
            compile("a = b = 1;")

    def test_strings_are_interned_once(self):
        _, strings = plain('x = "hi"; y = "hi"; x = y;')
        assert strings == ["hi", "x", "y"]


class TestExpressions:
    """Expression code generation order."""

    def test_precedence(self):
        body, _ = plain("1 + 2 * 3")
        assert body == i32(1) + i32(2) + i32(3) + [Op.MUL, Op.ADD, Op.STOP]

    def test_shift_binds_tighter_than_multiply(self):
        body, _ = plain("1 << 2 * 3")
        assert body == i32(1) + i32(2) + [Op.SHL] + i32(3) + [Op.MUL, Op.STOP]

    def test_left_associative(self):
        body, _ = plain("8 - 4 - 2")
        assert body == i32(8) + i32(4) + [Op.SUB] + i32(2) + [Op.SUB, Op.STOP]

    def test_logical_operators_evaluate_both_sides(self):
        body, _ = plain("1 && 0 || 2")
        assert body == i32(1) + i32(0) + [Op.AND] + i32(2) + [Op.OR, Op.STOP]

    def test_unary(self):
        body, _ = plain("-!1")
        assert body == i32(1) + [Op.NOT, Op.NEG, Op.STOP]

    def test_relative_address(self):
        body, strings = plain("&5")
        assert body == [Op.PUSH_STR, 0] + i32(5) + [Op.NEW_ARR, 2, Op.STOP]
        assert strings == ["&"]

    def test_relative_address_binds_tightly(self):
        body, _ = plain("&1 + 2")
        assert body == [Op.PUSH_STR, 0] + i32(1) + [Op.NEW_ARR, 2] + i32(2) + [Op.ADD, Op.STOP]

    def test_host_escape(self):
        body, strings = plain("!!!!print")
        assert body == [Op.LOAD_HOST, 0, Op.STOP]
        assert strings == ["print"]

    def test_call(self):
        body, strings = plain("f(1, 2)")
        assert body == [Op.LOAD, 0] + i32(1) + i32(2) + [Op.CALL_ANY, 2, Op.STOP]

    def test_array_literal(self):
        body, _ = plain("[1, 2]")
        assert body == i32(1) + i32(2) + [Op.NEW_ARR, 2, Op.STOP]

    def test_object_literal(self):
        body, strings = plain("({a: 1})")
        assert body == [Op.NEW_OBJ] + i32(1) + [Op.PUSH_STR, 0, Op.OBJ_SET, Op.STOP]
        assert strings == ["a"]

    def test_index_and_member(self):
        body, strings = plain("a[1].b")
        assert body == [Op.LOAD, 0] + i32(1) + [Op.GET_IDX, Op.PUSH_STR, 1, Op.GET_IDX, Op.STOP]


class TestControlFlow:
    """Jump layout and back-patching."""

    def test_if_forward_jump(self):
        body, _ = plain("if (0) 1;")
        # JZ operand at 6, target 12: rel = 12 - 7
        assert body == i32(0) + [Op.JZ, 5] + i32(1) + [Op.STOP]

    def test_if_else(self):
        body, _ = plain("if (0) 1; else 2;")
        assert body == (
            i32(0) + [Op.JZ, 7] + i32(1) + [Op.JMP, 5] + i32(2) + [Op.STOP]
        )

    def test_while_backward_jump(self):
        body, _ = plain("while (0) {}")
        assert body == i32(0) + [Op.JZ, 4, Op.PUSH_SCOPE, Op.POP_SCOPE, Op.JMP, 0xF5, Op.STOP]

    def test_do_while(self):
        body, _ = plain("do {} while (0);")
        assert body == [Op.PUSH_SCOPE, Op.POP_SCOPE] + i32(0) + [Op.JNZ, 0xF7, Op.STOP]

    def test_empty_for_condition(self):
        body, _ = plain("for (;;) {}")
        assert body[:4] == [Op.PUSH_SCOPE, Op.PUSH_U8, 1, Op.JZ]

    def test_for_is_scoped(self):
        body, _ = plain("for (let i = 0; i < 1; i = i + 1) {}")
        assert body[0] == Op.PUSH_SCOPE
        assert body[-2:] == [Op.POP_SCOPE, Op.STOP]

    def test_block_scope(self):
        body, _ = plain("{ 1; }")
        assert body == [Op.PUSH_SCOPE] + i32(1) + [Op.POP_SCOPE, Op.STOP]

    def test_unbraced_loop_body_is_scoped(self):
        body, _ = plain("while (0) 1;")
        assert body == (
            i32(0) + [Op.JZ, 9, Op.PUSH_SCOPE] + i32(1) + [Op.POP_SCOPE, Op.JMP, 0xF0, Op.STOP]
        )

    def test_for_post_clause_is_scoped(self):
        body, _ = plain("for (; 0; x = 1) {}")
        # cond: PUSH_I32 0 (1..5), JZ (6), JMP body (8), post at 10
        assert body[10:20] == [Op.PUSH_SCOPE] + i32(1) + [Op.STORE, 0, Op.POP_SCOPE, Op.JMP]

    def test_jump_overflow_is_a_compile_error(self):
        source = "while (1) {" + "1;" * 30 + "}"
        with pytest.raises(CompileError) as exc_info:
            compile(source)
        assert "signed byte" in str(exc_info.value)


class TestFunctions:
    """Function layout and parameter binding."""

    def test_function_declaration_layout(self):
        body, strings = plain("function f(a){ return a + 1; }")
        assert strings == ["arg0", "a", "f"]
        assert body == (
            [Op.JMP, 18]
            + [Op.PUSH_SCOPE, Op.LOAD, 0, Op.DECL, 1, DECL_INIT]
            + [Op.LOAD, 1] + i32(1) + [Op.ADD, Op.RET]
            + [Op.PUSH_U8, 0, Op.RET]
            + [Op.MAKE_FN, 2, 1, 0xEA]
            + [Op.DECL, 2, DECL_INIT]
            + [Op.STOP]
        )

    def test_parameters_bound_last_first(self):
        body, strings = plain("fn f(x, y) {}")
        assert strings == ["arg0", "arg1", "y", "x", "f"]
        assert body[2:13] == [
            Op.PUSH_SCOPE, Op.LOAD, 0, Op.LOAD, 1,
            Op.DECL, 2, DECL_INIT, Op.DECL, 3, DECL_INIT,
        ]

    def test_no_prologue_without_parameters(self):
        body, _ = plain("fn f() { return; }")
        assert body[2:6] == [Op.PUSH_U8, 0, Op.RET, Op.PUSH_U8]

    def test_anonymous_function_name(self):
        _, strings = plain("(function () {})")
        assert strings == ["__anon__2"]

    def test_duplicate_parameter(self):
        with pytest.raises(CompileError) as exc_info:
            compile("fn f(a, a) {}")
        assert "Duplicate parameter" in str(exc_info.value)
        assert exc_info.value.column == 9


class TestCompileErrors:
    """Syntax errors carry a position."""

    def test_missing_variable_name(self):
        with pytest.raises(CompileError) as exc_info:
            compile("let = 5;")
        assert exc_info.value.line == 1
        assert "variable name" in str(exc_info.value)

    def test_premature_end(self):
        with pytest.raises(CompileError) as exc_info:
            compile("1 +")
        assert "end of input" in str(exc_info.value)

    def test_unclosed_paren(self):
        with pytest.raises(CompileError):
            compile("(1")

    def test_unclosed_block(self):
        with pytest.raises(CompileError):
            compile("{ let x = 1;")

    def test_declaration_needs_semicolon(self):
        with pytest.raises(CompileError):
            compile("let x = 1")

    def test_error_position(self):
        with pytest.raises(CompileError) as exc_info:
            compile("let x = 1;\nlet y = ;")
        assert exc_info.value.line == 2
        assert exc_info.value.column == 9

    def test_string_table_overflow(self):
        source = " ".join(f'"s{i}";' for i in range(MAX_STRINGS + 1))
        with pytest.raises(CompileError) as exc_info:
            compile(source)
        assert "String table full" in str(exc_info.value)

    def test_string_table_at_capacity(self):
        source = " ".join(f'"s{i}";' for i in range(MAX_STRINGS))
        _, strings = compile(source)
        assert len(strings) == MAX_STRINGS

    def test_body_too_long(self):
        # Each statement is a 5-byte PUSH_I32
        with pytest.raises(CompileError) as exc_info:
            compile("1;" * 13200)
        assert "Program too long" in str(exc_info.value)
