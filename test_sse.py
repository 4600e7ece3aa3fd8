"""
Tests for SSE framing and parsing.
Run with: pytest test_sse.py -v
"""
import json

import pytest

from sse import format_sse, iter_sse_events


async def _lines(text):
    for line in text.split("\n"):
        yield line


def test_format_sse():
    frame = format_sse("result", {"model": "GPT-4o", "progress": 50})
    assert frame == 'event: result\ndata: {"model": "GPT-4o", "progress": 50}\n\n'


@pytest.mark.asyncio
async def test_iter_sse_events_round_trip():
    text = format_sse("progress", {"total": 6}) + format_sse("complete", {"message": "done"})
    events = [e async for e in iter_sse_events(_lines(text))]

    assert [e.event for e in events] == ["progress", "complete"]
    assert events[0].json() == {"total": 6}


@pytest.mark.asyncio
async def test_iter_sse_events_comments_multiline_and_default_name():
    text = ": keep-alive\n\ndata: {\"a\":\ndata: 1}\n\nevent: stats\ndata: {}\n"
    events = [e async for e in iter_sse_events(_lines(text))]

    assert events[0].event == "message"
    assert json.loads(events[0].data) == {"a": 1}
    assert events[1].event == "stats"
    assert events[1].json() == {}
