# tests/test_metered.py
"""
Tests for metered.py: counters follow exactly what the underlying stream
accepted or returned, and errors pass through untouched.
"""
import asyncio
import pytest
from metered import MeteredStream, wrap
from mock_streams import make_reader, MockWriter

class TestWrites:
    @pytest.mark.asyncio
    async def test_bytes_written_matches_total(self):
        writer = MockWriter()
        stream = wrap(None, writer)
        chunks = [b"abc", b"", b"defgh", b"", b"i" * 1000]
        for chunk in chunks:
            assert await stream.write(chunk) == len(chunk)
        assert stream.bytes_written == sum(len(c) for c in chunks)
        assert bytes(writer.data) == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_zero_length_write_is_noop(self):
        writer = MockWriter()
        stream = MeteredStream(None, writer)
        await stream.write(b"")
        assert stream.bytes_written == 0
        assert writer.drains == 0

    @pytest.mark.asyncio
    async def test_failed_drain_does_not_count(self):
        writer = MockWriter(fail_on_drain=True)
        stream = MeteredStream(None, writer)
        with pytest.raises(ConnectionResetError):
            await stream.write(b"payload")
        assert stream.bytes_written == 0

    @pytest.mark.asyncio
    async def test_counts_never_decrease(self):
        stream = MeteredStream(None, MockWriter())
        seen = []
        for size in (5, 0, 1, 0, 7):
            await stream.write(b"x" * size)
            seen.append(stream.bytes_written)
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_write_without_writer(self):
        stream = MeteredStream(make_reader(b""), None)
        with pytest.raises(RuntimeError):
            await stream.write(b"x")

class TestReads:
    @pytest.mark.asyncio
    async def test_partial_reads_are_counted(self):
        stream = MeteredStream(make_reader(b"0123456789"), None)
        assert await stream.read(4) == b"0123"
        assert stream.bytes_read == 4
        assert await stream.read(100) == b"456789"
        assert stream.bytes_read == 10
        assert await stream.read(100) == b""
        assert stream.bytes_read == 10
        assert stream.at_eof()

    @pytest.mark.asyncio
    async def test_read_error_propagates(self):
        reader = make_reader(b"", eof=False)
        reader.set_exception(ConnectionResetError("boom"))
        stream = MeteredStream(reader, None)
        with pytest.raises(ConnectionResetError):
            await stream.read(10)
        assert stream.bytes_read == 0

    @pytest.mark.asyncio
    async def test_directions_are_independent(self):
        stream = MeteredStream(make_reader(b"in"), MockWriter())
        await stream.read(10)
        await stream.write(b"out!")
        assert (stream.bytes_read, stream.bytes_written) == (2, 4)

class TestEof:
    @pytest.mark.asyncio
    async def test_write_eof_when_supported(self):
        writer = MockWriter()
        MeteredStream(None, writer).write_eof()
        assert writer.eof

    @pytest.mark.asyncio
    async def test_write_eof_skipped_when_unsupported(self):
        writer = MockWriter(eof_supported=False)
        MeteredStream(None, writer).write_eof()
        assert not writer.eof

    @pytest.mark.asyncio
    async def test_write_eof_skipped_when_closing(self):
        writer = MockWriter()
        writer.close()
        stream = MeteredStream(None, writer)
        assert not stream.can_write_eof()
        stream.write_eof()
        assert not writer.eof

    def test_peername_passthrough(self):
        assert MeteredStream(None, MockWriter(peername=("10.0.0.1", 9))).peername == ("10.0.0.1", 9)
        assert MeteredStream(None, None).peername is None
