"""Tests for incremental file tailing."""

import asyncio

import pytest

from agent_relay.tail import LineSplitter, Tail


def drain(tail):
    events = []
    while not tail.events.empty():
        events.append(tail.events.get_nowait())
    return events


def drain_lines(tail):
    return [event.line for event in drain(tail) if event.kind == "line"]


class TestLineSplitter:
    def test_holds_back_partial_line(self):
        splitter = LineSplitter()

        assert splitter.feed(b'{"a": 1}\n{"b"') == ['{"a": 1}']
        assert splitter.pending == b'{"b"'
        assert splitter.feed(b": 2}\n") == ['{"b": 2}']
        assert splitter.pending == b""

    def test_multibyte_character_split_across_chunks(self):
        splitter = LineSplitter()

        assert splitter.feed(b"caf\xc3") == []
        assert splitter.feed(b"\xa9\n") == ["café"]

    def test_strips_carriage_returns_and_keeps_empty_lines(self):
        splitter = LineSplitter()

        assert splitter.feed(b"one\r\n\r\ntwo\n") == ["one", "", "two"]

    def test_reset_discards_buffer(self):
        splitter = LineSplitter()
        splitter.feed(b"partial")
        splitter.reset()

        assert splitter.feed(b"next\n") == ["next"]


class TestTail:
    @pytest.mark.asyncio
    async def test_emits_lines_across_chunk_boundaries(self, tmp_path):
        path = tmp_path / "session.jsonl"
        path.write_bytes(b"")
        tail = Tail(path)

        with open(path, "ab") as f:
            f.write(b'{"a": 1}\n{"b"')
        assert await tail.read_new_content() == 1

        with open(path, "ab") as f:
            f.write(b': 2}\n\n{"c": 3}\n')
        assert await tail.read_new_content() == 3

        assert drain_lines(tail) == ['{"a": 1}', '{"b": 2}', "", '{"c": 3}']
        assert tail.position == path.stat().st_size

    @pytest.mark.asyncio
    async def test_start_from_end_skips_existing_content(self, tmp_path):
        path = tmp_path / "session.jsonl"
        path.write_text("old line\n")
        tail = Tail(path, start_from_end=True)

        assert await tail.read_new_content() == 0
        with open(path, "a") as f:
            f.write("new line\n")
        await tail.read_new_content()

        assert drain_lines(tail) == ["new line"]

    @pytest.mark.asyncio
    async def test_truncated_file_is_reread_from_start(self, tmp_path):
        path = tmp_path / "session.jsonl"
        path.write_text("first line\nsecond line\n")
        tail = Tail(path)
        await tail.read_new_content()
        drain(tail)

        path.write_text("new\n")
        assert await tail.read_new_content() == 1

        assert drain_lines(tail) == ["new"]
        assert tail.position == 4

    @pytest.mark.asyncio
    async def test_missing_file_emits_nothing(self, tmp_path):
        tail = Tail(tmp_path / "missing.jsonl")

        assert await tail.read_new_content() == 0
        assert tail.events.empty()

    @pytest.mark.asyncio
    async def test_read_error_is_reported_as_event(self, tmp_path):
        directory = tmp_path / "not-a-file.jsonl"
        directory.mkdir()
        (directory / "child").write_text("x")
        tail = Tail(directory)

        await tail.read_new_content()

        events = drain(tail)
        if events:
            assert events[0].kind == "error"
            assert isinstance(events[0].error, OSError)

    @pytest.mark.asyncio
    async def test_running_tail_picks_up_appends(self, tmp_path):
        path = tmp_path / "session.jsonl"
        path.write_text("existing\n")
        tail = Tail(path, poll_interval=0.1)
        tail.start()
        try:
            first = await asyncio.wait_for(tail.events.get(), timeout=5)
            assert first.line == "existing"

            with open(path, "a") as f:
                f.write("appended\n")
            second = await asyncio.wait_for(tail.events.get(), timeout=5)
            assert second.line == "appended"
            assert tail.running
        finally:
            await tail.stop()

        assert not tail.running
