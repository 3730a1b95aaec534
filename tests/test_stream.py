"""Tests for flotilla.stream."""

from __future__ import annotations

import asyncio
import json

import pytest

from flotilla.stream import EventType, StreamBus, StreamEvent, WatchOptions


async def _collect(agen, count, timeout=2.0):
    events = []

    async def _run():
        async for event in agen:
            events.append(event)
            if len(events) >= count:
                break

    await asyncio.wait_for(_run(), timeout=timeout)
    return events


# ---------------------------------------------------------------------------
# StreamEvent
# ---------------------------------------------------------------------------


class TestStreamEvent:
    def test_to_dict_uses_wire_names(self):
        event = StreamEvent(EventType.OUTPUT, "3", "analyze", "hello", timestamp="t")
        assert event.to_dict() == {
            "timestamp": "t",
            "type": "output",
            "deployedId": "3",
            "taskId": "analyze",
            "content": "hello",
        }

    def test_metadata_only_when_set(self):
        event = StreamEvent(EventType.OUTPUT, "3", "analyze", "x", metadata={"tokens": 5})
        assert json.loads(event.to_json())["metadata"] == {"tokens": 5}

    def test_parse_skips_malformed(self):
        assert StreamEvent.parse("") is None
        assert StreamEvent.parse("{not json") is None
        assert StreamEvent.parse("[1, 2]") is None
        assert StreamEvent.parse('{"type": "bogus"}') is None

    def test_parse_bytes(self):
        line = StreamEvent(EventType.THINKING, "1", "t", "hmm").to_json().encode()
        event = StreamEvent.parse(line + b"\n")
        assert event.type == EventType.THINKING
        assert event.content == "hmm"


class TestWatchOptions:
    def test_invalid_filter(self):
        with pytest.raises(ValueError, match="Invalid filter"):
            WatchOptions(filter="(unclosed")

    def test_invalid_format_and_tail(self):
        with pytest.raises(ValueError):
            WatchOptions(format="xml")
        with pytest.raises(ValueError):
            WatchOptions(tail=-1)

    def test_filter_is_case_insensitive(self):
        options = WatchOptions(filter="edit")
        event = StreamEvent(EventType.TOOL_USE, "1", "t", {"name": "Edit"})
        assert options.matches(event)
        assert not options.matches(StreamEvent(EventType.OUTPUT, "1", "t", "nothing"))


# ---------------------------------------------------------------------------
# Producers
# ---------------------------------------------------------------------------


class TestAppend:
    def test_first_append_writes_started(self, bus):
        bus.append(1, "analyze", EventType.OUTPUT, "one")
        bus.append(1, "analyze", EventType.OUTPUT, "two")
        events = bus.read_events(1, "analyze")
        assert [e.type for e in events] == [EventType.STATUS, EventType.OUTPUT, EventType.OUTPUT]
        assert events[0].content["status"] == "started"
        assert [e.content for e in events[1:]] == ["one", "two"]

    def test_started_written_once_across_instances(self, root):
        StreamBus(root).append(1, "analyze", EventType.OUTPUT, "one")
        StreamBus(root).append(1, "analyze", EventType.OUTPUT, "two")
        statuses = [e for e in StreamBus(root).read_events(1, "analyze") if e.type == EventType.STATUS]
        assert len(statuses) == 1

    def test_one_record_per_line(self, bus):
        bus.append(1, "analyze", EventType.OUTPUT, "multi\nline\ncontent")
        lines = bus.stream_path(1, "analyze").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["content"] == "multi\nline\ncontent"

    def test_subscribers(self, bus):
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        bus.append(1, "a", EventType.OUTPUT, "x")
        unsubscribe()
        bus.append(1, "a", EventType.OUTPUT, "y")
        assert [e.content for e in seen] == [{"status": "started", "message": "Task execution started"}, "x"]

    def test_failing_subscriber_does_not_break_append(self, bus):
        def broken(event):
            raise RuntimeError("nope")

        bus.subscribe(broken)
        event = bus.append(1, "a", EventType.OUTPUT, "x")
        assert event.content == "x"
        assert len(bus.read_events(1, "a")) == 2

    def test_stats(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "x")
        bus.append(1, "a", EventType.TOOL_USE, {"name": "Read"})
        bus.append(1, "b", EventType.ERROR, {"message": "bad"})
        stats = bus.stats(1)
        assert stats.stream_count == 2
        assert stats.event_count == 5
        assert stats.by_type == {"status": 2, "output": 1, "tool_use": 1, "error": 1}
        assert stats.by_task == {"a": 3, "b": 2}


# ---------------------------------------------------------------------------
# Watchers
# ---------------------------------------------------------------------------


class TestWatch:
    @pytest.mark.asyncio
    async def test_tail_without_follow(self, bus):
        for i in range(5):
            bus.append(1, "a", EventType.OUTPUT, f"line {i}")
        events = [e async for e in bus.watch(1, WatchOptions(follow=False, tail=2))]
        assert [e.content for e in events] == ["line 3", "line 4"]

    @pytest.mark.asyncio
    async def test_tail_applies_per_task(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "a1")
        bus.append(1, "b", EventType.OUTPUT, "b1")
        events = [e async for e in bus.watch(1, WatchOptions(follow=False, tail=1))]
        assert sorted(e.content for e in events) == ["a1", "b1"]

    @pytest.mark.asyncio
    async def test_filter(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "keep this")
        bus.append(1, "a", EventType.OUTPUT, "drop")
        options = WatchOptions(follow=False, tail=10, filter="KEEP")
        events = [e async for e in bus.watch(1, options)]
        assert [e.content for e in events] == ["keep this"]

    @pytest.mark.asyncio
    async def test_malformed_lines_skipped(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "good")
        with open(bus.stream_path(1, "a"), "a", encoding="utf-8") as f:
            f.write("garbage\n")
        events = [e async for e in bus.watch(1, WatchOptions(follow=False, tail=10))]
        assert [e.content for e in events][-1] == "good"

    @pytest.mark.asyncio
    async def test_follow_sees_new_events(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "before")
        agen = bus.watch(1, WatchOptions(tail=0))
        collector = asyncio.ensure_future(_collect(agen, 2))
        await asyncio.sleep(0.05)
        bus.append(1, "a", EventType.OUTPUT, "after 1")
        bus.append(1, "a", EventType.OUTPUT, "after 2")
        events = await collector
        assert [e.content for e in events] == ["after 1", "after 2"]

    @pytest.mark.asyncio
    async def test_follow_picks_up_streams_created_later(self, bus):
        agen = bus.watch(7, WatchOptions(tail=5))
        collector = asyncio.ensure_future(_collect(agen, 2))
        await asyncio.sleep(0.05)
        bus.append(7, "late", EventType.OUTPUT, "hello")
        events = await collector
        assert [e.type for e in events] == [EventType.STATUS, EventType.OUTPUT]
        assert events[1].task_id == "late"

    @pytest.mark.asyncio
    async def test_partial_line_waits_for_newline(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "first")
        agen = bus.watch(1, WatchOptions(tail=0))
        collector = asyncio.ensure_future(_collect(agen, 1))
        await asyncio.sleep(0.05)
        line = StreamEvent(EventType.OUTPUT, "1", "a", "split").to_json()
        path = bus.stream_path(1, "a")
        with open(path, "a", encoding="utf-8") as f:
            f.write(line[:10])
        await asyncio.sleep(0.05)
        assert not collector.done()
        with open(path, "a", encoding="utf-8") as f:
            f.write(line[10:] + "\n")
        events = await collector
        assert events[0].content == "split"

    @pytest.mark.asyncio
    async def test_many_watchers_see_the_same_events(self, bus):
        collectors = [
            asyncio.ensure_future(_collect(bus.watch(1, WatchOptions(tail=0)), 3))
            for _ in range(3)
        ]
        await asyncio.sleep(0.05)
        for i in range(3):
            bus.append(1, "a", EventType.OUTPUT, f"e{i}")
        results = await asyncio.gather(*collectors)
        for events in results:
            assert [e.type for e in events][0] == EventType.STATUS
            assert [e.content for e in events][1:] == ["e0", "e1"]

    @pytest.mark.asyncio
    async def test_stop_ends_watchers(self, bus):
        bus.append(1, "a", EventType.OUTPUT, "x")
        events = []

        async def _watch():
            async for event in bus.watch(1, WatchOptions(tail=10)):
                events.append(event)

        task = asyncio.ensure_future(_watch())
        await asyncio.sleep(0.05)
        assert bus.stop(1) == 1
        await asyncio.wait_for(task, timeout=2)
        assert len(events) == 2
