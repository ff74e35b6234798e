"""
Unit tests for the bounded byte pipe.

Tests cover:
- Ordered delivery and end of stream
- Backpressure bound
- Error propagation in both directions
"""

import asyncio

import pytest

from workers.zip_archiver.errors import TransferError
from workers.zip_archiver.transfer.pipe import BytePipe


class TestBytePipe:
    """Tests for BytePipe."""

    @pytest.mark.asyncio
    async def test_read_returns_written_bytes_then_eof(self):
        pipe = BytePipe(max_buffer_bytes=16)

        await pipe.write(b"hello")
        await pipe.write(b" world")
        await pipe.close_write()

        received = b""
        while True:
            chunk = await pipe.read()
            if not chunk:
                break
            received += chunk

        assert received == b"hello world"

    @pytest.mark.asyncio
    async def test_empty_write_is_noop(self):
        pipe = BytePipe(max_buffer_bytes=4)

        await pipe.write(b"")
        await pipe.close_write()

        assert await pipe.read() == b""

    @pytest.mark.asyncio
    async def test_large_write_is_split_to_bound(self):
        """A write larger than the buffer never exceeds the bound."""
        pipe = BytePipe(max_buffer_bytes=8)
        payload = bytes(range(100))

        async def reader():
            out = b""
            while True:
                chunk = await pipe.read()
                if not chunk:
                    return out
                assert len(chunk) <= 8
                out += chunk

        read_task = asyncio.create_task(reader())
        await pipe.write(payload)
        await pipe.close_write()

        assert await read_task == payload
        assert pipe.peak_buffered_bytes <= 8
        assert pipe.bytes_written == 100

    @pytest.mark.asyncio
    async def test_writer_blocks_while_full(self):
        """Writer waits until the reader drains."""
        pipe = BytePipe(max_buffer_bytes=4)
        await pipe.write(b"abcd")

        blocked = asyncio.create_task(pipe.write(b"efgh"))
        await asyncio.sleep(0.01)
        assert not blocked.done()
        assert pipe.buffered_bytes == 4

        assert await pipe.read() == b"abcd"
        await asyncio.wait_for(blocked, timeout=1.0)
        assert await pipe.read() == b"efgh"

    @pytest.mark.asyncio
    async def test_reader_blocks_while_empty(self):
        pipe = BytePipe(max_buffer_bytes=4)

        pending = asyncio.create_task(pipe.read())
        await asyncio.sleep(0.01)
        assert not pending.done()

        await pipe.write(b"x")
        assert await asyncio.wait_for(pending, timeout=1.0) == b"x"

    @pytest.mark.asyncio
    async def test_close_write_with_error_reaches_reader(self):
        """Reader raises the writer's error and buffered bytes are discarded."""
        pipe = BytePipe(max_buffer_bytes=16)
        error = TransferError("fetch failed")

        await pipe.write(b"partial")
        await pipe.close_write(error)

        with pytest.raises(TransferError) as exc_info:
            await pipe.read()
        assert exc_info.value is error
        assert pipe.buffered_bytes == 0

    @pytest.mark.asyncio
    async def test_close_write_error_wakes_blocked_reader(self):
        pipe = BytePipe(max_buffer_bytes=16)
        error = TransferError("fetch failed")

        pending = asyncio.create_task(pipe.read())
        await asyncio.sleep(0.01)
        await pipe.close_write(error)

        with pytest.raises(TransferError) as exc_info:
            await asyncio.wait_for(pending, timeout=1.0)
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_close_read_wakes_blocked_writer(self):
        """Writer blocked on a full pipe raises the reader's error."""
        pipe = BytePipe(max_buffer_bytes=4)
        error = TransferError("upload failed")
        await pipe.write(b"full")

        blocked = asyncio.create_task(pipe.write(b"more"))
        await asyncio.sleep(0.01)
        await pipe.close_read(error)

        with pytest.raises(TransferError) as exc_info:
            await asyncio.wait_for(blocked, timeout=1.0)
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_write_after_close_read_raises(self):
        pipe = BytePipe(max_buffer_bytes=4)
        error = TransferError("upload failed")
        await pipe.close_read(error)

        with pytest.raises(TransferError) as exc_info:
            await pipe.write(b"x")
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_write_after_close_write_raises(self):
        pipe = BytePipe(max_buffer_bytes=4)
        await pipe.close_write()

        with pytest.raises(TransferError):
            await pipe.write(b"x")

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            BytePipe(max_buffer_bytes=0)
