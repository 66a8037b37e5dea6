"""
Memory subsystem and label table tests.

Memory accesses must stay inside [0, capacity) and fail without partial
writes; the label table binds each name once and refuses changes after it
is sealed.
"""

import numpy as np
import pytest

from labels import LabelTable, LabelTableSealedError
from memory import MEM_CAPACITY, Memory


class TestMemoryBounds:
    def test_default_capacity(self):
        assert Memory().capacity == MEM_CAPACITY

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            Memory(0)

    def test_store_then_load(self):
        mem = Memory(16)
        assert mem.store(b"\x01\x02\x03", 4, 3)
        out = bytearray(3)
        assert mem.load(out, 4, 3)
        assert out == b"\x01\x02\x03"

    def test_load_into_numpy_buffer(self):
        mem = Memory(16)
        mem.store(b"\xaa\xbb", 0, 2)
        out = np.zeros(2, dtype=np.uint8)
        assert mem.load(out, 0, 2)
        assert out.tolist() == [0xAA, 0xBB]

    def test_last_byte_is_addressable(self):
        mem = Memory(16)
        assert mem.store(b"\x7f", 15, 1)
        assert mem.read_int(15, 1) == 0x7F

    def test_out_of_range_fails_without_partial_write(self):
        mem = Memory(16)
        assert not mem.store(b"\xff" * 4, 14, 4)
        assert mem.snapshot() == bytes(16)

    def test_negative_offset(self):
        mem = Memory(16)
        assert not mem.store(b"\x01", -1, 1)
        assert not mem.load(bytearray(1), -1, 1)
        assert mem.read_int(-8, 8) is None

    def test_short_source_buffer(self):
        mem = Memory(16)
        assert not mem.store(b"\x01", 0, 4)

    def test_reset(self):
        mem = Memory(8)
        mem.write_int(-1, 0, 8)
        mem.reset()
        assert mem.snapshot() == bytes(8)


class TestMemoryIntegers:
    @pytest.mark.parametrize("width", [1, 2, 4, 8])
    def test_little_endian_round_trip(self, width):
        mem = Memory(32)
        value = 0x1122334455667788
        assert mem.write_int(value, 8, width)
        assert mem.read_int(8, width) == value & ((1 << (8 * width)) - 1)

    def test_byte_order(self):
        mem = Memory(8)
        mem.write_int(0x0102, 0, 2)
        assert mem.snapshot(0, 2) == b"\x02\x01"

    def test_negative_values_store_twos_complement(self):
        mem = Memory(8)
        mem.write_int(-2, 0, 4)
        assert mem.read_int(0, 4) == 0xFFFFFFFE

    @pytest.mark.parametrize("width", [0, 3, 5, 16])
    def test_invalid_widths(self, width):
        mem = Memory(32)
        assert not mem.write_int(1, 0, width)
        assert mem.read_int(0, width) is None


class TestMemoryStrings:
    def test_stops_at_null(self):
        mem = Memory(16)
        mem.store(b"hi\x00there\x00", 2, 9)
        assert mem.read_cstring(2) == b"hi"

    def test_empty_string(self):
        assert Memory(4).read_cstring(0) == b""

    def test_running_off_the_end_fails(self):
        mem = Memory(4)
        mem.store(b"abcd", 0, 4)
        assert mem.read_cstring(2) is None
        assert mem.read_cstring(4) is None

    def test_scan_is_capped(self):
        mem = Memory(4)
        mem.store(b"abcd", 0, 4)
        assert mem.read_cstring(0) == b"abc"
        assert mem.read_cstring(0, limit=2) == b"ab"


class TestLabelTable:
    def test_insert_and_lookup(self):
        table = LabelTable()
        assert table.insert("main", 0)
        assert table.lookup("main") == 0
        assert "main" in table
        assert len(table) == 1

    def test_missing_label(self):
        assert LabelTable().lookup("nope") is None

    def test_never_overwrites(self):
        table = LabelTable()
        table.insert("f", 3)
        assert not table.insert("f", 9)
        assert table.lookup("f") == 3

    def test_sealed_table_rejects_inserts(self):
        table = LabelTable()
        table.insert("f", 3)
        table.seal()
        with pytest.raises(LabelTableSealedError):
            table.insert("g", 4)
        assert table.lookup("f") == 3

    def test_names_in_insertion_order(self):
        table = LabelTable()
        for i, name in enumerate(["c", "a", "b"]):
            table.insert(name, i)
        assert table.names() == ["c", "a", "b"]
        assert list(table) == ["c", "a", "b"]
