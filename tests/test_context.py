"""Tests for the Context facade."""

import pytest
from hlvm import Context, UNDEFINED
from hlvm.errors import CompileError
from hlvm.opcodes import OpCode as Op
from hlvm.protocol import encode


class TestContextBasics:
    """Test basic context functionality."""

    def test_evaluate_number(self):
        """Evaluate a simple number."""
        ctx = Context()
        assert ctx.eval("42") == 42

    def test_evaluate_string(self):
        """Evaluate a string literal."""
        ctx = Context()
        assert ctx.eval('"hello"') == "hello"

    def test_empty_program_is_undefined(self):
        assert Context().eval("") is UNDEFINED

    def test_statement_without_value(self):
        assert Context().eval("let x = 1;") is UNDEFINED

    def test_syntax_error(self):
        with pytest.raises(CompileError):
            Context().eval("let = ;")

    def test_bindings_do_not_persist(self):
        ctx = Context()
        ctx.eval("let x = 1;")
        assert ctx.eval("x") is UNDEFINED

    def test_last_state(self):
        ctx = Context()
        ctx.eval("1; 2")
        assert ctx.last_state.stack == [1, 2]
        assert ctx.last_state.halted


class TestContextHost:
    """Host values and sinks."""

    def test_get_set(self):
        ctx = Context()
        ctx.set("limit", 10)
        assert ctx.get("limit") == 10
        assert ctx.eval("!!!!limit * 2") == 20

    def test_get_missing(self):
        assert Context().get("nope") is UNDEFINED

    def test_output_collected(self):
        ctx = Context()
        ctx.eval('!!!!print("a"); !!!!print("b", 2);')
        assert ctx.output == ["a", "b 2"]

    def test_custom_print(self):
        lines = []
        ctx = Context(print=lambda *args: lines.append(args))
        ctx.eval('!!!!print("x", 1)')
        assert lines == [("x", 1)]

    def test_memory_persists_between_runs(self):
        ctx = Context()
        ctx.run(encode(bytes([Op.PUSH_U8, 3, Op.PUSH_U8, 8, Op.MEM_WRITE])), [])
        state = ctx.run(encode(bytes([Op.PUSH_U8, 3, Op.MEM_READ])), [])
        assert state.result == 8

    def test_without_memory(self):
        assert Context(memory=None).host.memory is None

    def test_seed(self):
        ctx = Context(seed=5)
        bytecode, _ = ctx.compile("1")
        assert bytecode[2:6] == bytes([0, 0, 0, 5])
        assert ctx.eval("1 + 1") == 2

    def test_custom_op(self):
        ctx = Context(ops={"seven": lambda vm, fetch, host: 7})
        assert ctx.get("seven") is UNDEFINED
        assert "seven" in ctx.host.ops
