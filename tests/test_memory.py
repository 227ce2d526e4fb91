"""Tests for the 2D memory grid and the memory opcodes."""

import pytest
from hlvm.errors import InvalidAddressError, MemoryBoundsError, NoMemoryError
from hlvm.host import Host
from hlvm.memory import Memory2D
from hlvm.opcodes import OpCode as Op


class TestMemory2D:
    """The grid itself."""

    def test_default_size(self):
        mem = Memory2D()
        assert (mem.rows, mem.cols, mem.size) == (256, 256, 65536)

    def test_custom_size(self):
        assert Memory2D(4, 4).size == 256

    def test_too_many_bits(self):
        with pytest.raises(ValueError):
            Memory2D(9, 8)

    def test_coords(self):
        assert Memory2D().coords(0x0102) == (1, 2)

    def test_starts_zeroed(self):
        assert Memory2D().read(123) == 0

    def test_write_read(self):
        mem = Memory2D()
        mem.write(0x22, 77)
        assert mem.read(0x22) == 77

    def test_values_stored_unsigned(self):
        mem = Memory2D()
        mem.write(5, -1)
        assert mem.read(5) == 0xFFFFFFFF

    def test_read_out_of_bounds(self):
        with pytest.raises(MemoryBoundsError) as exc_info:
            Memory2D().read(65536)
        assert exc_info.value.code == 601
        assert exc_info.value.address == 65536

    def test_write_out_of_bounds(self):
        with pytest.raises(MemoryBoundsError) as exc_info:
            Memory2D().write(70000, 1)
        assert exc_info.value.code == 602
        assert exc_info.value.value == 1

    def test_dump_window(self):
        mem = Memory2D()
        mem.write(0x0101, 9)
        window = mem.dump_window(0x0101, radius_rows=1, radius_cols=1)
        assert [row["row"] for row in window] == [0, 1, 2]
        assert window[1]["cols"] == [0, 9, 0]

    def test_dump_window_clips_at_edges(self):
        window = Memory2D().dump_window(0, radius_rows=1, radius_cols=2)
        assert [row["row"] for row in window] == [0, 1]
        assert len(window[0]["cols"]) == 3


class TestMemoryOpcodes:
    """MEM_* instructions and address resolution."""

    def test_relative_write(self, run_raw):
        host = Host()
        code = [
            Op.PUSH_U8, 0x20, Op.MEM_SET_BASE,
            Op.PUSH_STR, 0, Op.PUSH_U8, 2, Op.NEW_ARR, 2,
            Op.PUSH_U8, 77, Op.MEM_WRITE,
        ]
        state = run_raw(code, strings=["&"], host=host)
        assert host.memory.read(0x22) == 77
        assert state.stack == [0x20, 77]
        assert state.mem_base == 0x20

    def test_relative_round_trip(self, run_raw):
        host = Host()
        code = [
            Op.PUSH_U8, 0x20, Op.MEM_SET_BASE,
            Op.PUSH_STR, 0, Op.PUSH_U8, 2, Op.NEW_ARR, 2,
            Op.PUSH_U8, 0xAB, Op.MEM_WRITE,
            Op.PUSH_STR, 0, Op.PUSH_U8, 2, Op.NEW_ARR, 2,
            Op.MEM_READ,
        ]
        state = run_raw(code, strings=["&"], host=host)
        assert state.result == 0xAB
        assert host.memory.read(0x22) == 0xAB
        assert host.memory.read(0x02) == 0

    def test_negative_relative_offset(self, run_raw):
        host = Host()
        code = [
            Op.PUSH_U8, 0x20, Op.MEM_SET_BASE,
            Op.PUSH_STR, 0, Op.PUSH_U8, 2, Op.NEG, Op.NEW_ARR, 2,
            Op.PUSH_U8, 5, Op.MEM_WRITE,
        ]
        run_raw(code, strings=["&"], host=host)
        assert host.memory.read(0x1E) == 5

    def test_absolute_read(self, run_raw):
        host = Host()
        host.memory.write(0x22, 0xFFFFFFFF)
        state = run_raw([Op.PUSH_U8, 0x22, Op.MEM_READ], host=host)
        assert state.result == -1

    def test_get_base(self, run_raw):
        state = run_raw([Op.PUSH_U8, 9, Op.MEM_SET_BASE, Op.MEM_GET_BASE])
        assert state.stack == [9, 9]

    def test_read_out_of_bounds(self, run_raw):
        with pytest.raises(MemoryBoundsError) as exc_info:
            run_raw([Op.PUSH_I32, 0x00, 0x01, 0x00, 0x00, Op.MEM_READ])
        assert exc_info.value.code == 601
        assert exc_info.value.address == 65536
        assert exc_info.value.ip == 5

    def test_write_out_of_bounds(self, run_raw):
        with pytest.raises(MemoryBoundsError) as exc_info:
            run_raw([Op.PUSH_I32, 0x00, 0x01, 0x00, 0x00, Op.PUSH_U8, 1, Op.MEM_WRITE])
        assert exc_info.value.code == 602

    def test_invalid_address(self, run_raw):
        with pytest.raises(InvalidAddressError) as exc_info:
            run_raw([Op.PUSH_STR, 0, Op.MEM_READ], strings=["x"])
        assert exc_info.value.code == 605

    def test_no_memory(self, run_raw):
        with pytest.raises(NoMemoryError) as exc_info:
            run_raw([Op.PUSH_U8, 1, Op.MEM_READ], host=Host(memory=None))
        assert exc_info.value.code == 600

