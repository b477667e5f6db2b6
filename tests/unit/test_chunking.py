from __future__ import annotations

import asyncio

import pytest

from adseries.chunking import ChunkAssembler, assemble


def test_buffers_are_released_only_after_threshold_is_exceeded():
    assembler = ChunkAssembler(threshold=10)
    assert assembler.feed(b"12345") is None
    assert assembler.feed(b"67890") is None
    assert assembler.feed(b"a") == b"1234567890a"
    assert assembler.pending == 0


def test_flush_returns_remainder_once():
    assembler = ChunkAssembler(threshold=10)
    assembler.feed(b"abc")
    assert assembler.flush() == b"abc"
    assert assembler.flush() is None


def test_concatenation_of_buffers_equals_input():
    chunks = [b"x" * 4, b"y" * 7, b"z" * 3, b"w" * 12, b"v"]
    buffers = list(assemble(chunks, threshold=8))
    assert b"".join(buffers) == b"".join(chunks)
    assert all(len(buffer) <= 8 + 12 for buffer in buffers)


def test_empty_stream_yields_nothing():
    assert list(assemble([], threshold=8)) == []
    assert list(assemble([b"", b""], threshold=8)) == []


def test_small_object_is_one_buffer():
    assert list(assemble([b"ab", b"cd"], threshold=1024)) == [b"abcd"]


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        ChunkAssembler(threshold=0)


def test_assemble_async():
    async def source():
        for chunk in (b"aaaa", b"bbbb", b"cc"):
            yield chunk

    async def collect():
        return [buffer async for buffer in ChunkAssembler(threshold=6).assemble_async(source())]

    assert asyncio.run(collect()) == [b"aaaabbbb", b"cc"]
