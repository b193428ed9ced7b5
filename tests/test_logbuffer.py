"""Tests for the bounded log buffer."""

import threading

import pytest

from goosegate.core.logbuffer import LogBuffer, LogChunk


class TestLogBufferAppend:
    """Tests for LogBuffer.append."""

    def test_keeps_everything_under_capacity(self):
        buf = LogBuffer(16)
        buf.append(b"hello ")
        buf.append("world")
        assert buf.full() == "hello world"
        assert len(buf) == 11

    def test_drops_oldest_bytes_beyond_capacity(self):
        buf = LogBuffer(8)
        buf.append(b"0123456789")
        assert buf.raw() == b"23456789"
        buf.append(b"ab")
        assert buf.raw() == b"456789ab"
        assert len(buf) == 8

    def test_ignores_empty_chunks(self):
        buf = LogBuffer(8)
        buf.append(b"")
        buf.append("")
        assert len(buf) == 0

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            LogBuffer(0)

    def test_concurrent_appends_never_exceed_capacity(self):
        buf = LogBuffer(100)

        def writer():
            for _ in range(200):
                buf.append(b"x" * 7)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(buf) == 100


class TestLogBufferRead:
    """Tests for LogBuffer.read offsets."""

    def test_incremental_reads_cover_the_buffer(self):
        buf = LogBuffer(1024)
        buf.append(b"abcdefghij")

        first = buf.read(0, 4)
        assert first == LogChunk(data="abcd", next_offset=4, is_end=False)
        second = buf.read(first.next_offset, 4)
        assert second.data == "efgh"
        third = buf.read(second.next_offset, 4)
        assert third.data == "ij"
        assert third.next_offset == 10
        assert third.is_end is True

    def test_offset_past_end_is_clamped(self):
        buf = LogBuffer(1024)
        buf.append(b"abc")
        chunk = buf.read(50, 10)
        assert chunk.data == ""
        assert chunk.next_offset == 3
        assert chunk.is_end is True

    def test_negative_offset_reads_from_start(self):
        buf = LogBuffer(1024)
        buf.append(b"abc")
        assert buf.read(-5, 10).data == "abc"

    def test_empty_buffer_is_end(self):
        chunk = LogBuffer(10).read()
        assert chunk.to_dict() == {"data": "", "nextOffset": 0, "isEnd": True}

    def test_invalid_utf8_is_replaced(self):
        buf = LogBuffer(1024)
        buf.append("é".encode("utf-8")[:1] + b"ok")
        chunk = buf.read(0, 100)
        assert chunk.data.endswith("ok")
        assert "�" in chunk.data

    def test_offsets_index_current_contents_after_trim(self):
        buf = LogBuffer(4)
        buf.append(b"abcdef")
        assert buf.read(0, 10).data == "cdef"

    def test_tailing_never_splits_characters(self):
        text = "héllo ✓ wörld"
        buf = LogBuffer(1024)
        buf.append(text)

        pieces = []
        offset = 0
        while True:
            chunk = buf.read(offset, 2)
            pieces.append(chunk.data)
            offset = chunk.next_offset
            if chunk.is_end:
                break

        assert "".join(pieces) == text
        assert all("�" not in piece for piece in pieces)

    def test_wide_character_is_returned_whole(self):
        buf = LogBuffer(1024)
        buf.append("✓ok")
        chunk = buf.read(0, 1)
        assert chunk.data == "✓"
        assert chunk.next_offset == 3
