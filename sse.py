"""Server-Sent Events framing and parsing.

Wire format per event: `event: <name>\\ndata: <json>\\n\\n`.
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@dataclass
class SSEEvent:
    event: str
    data: str

    def json(self) -> Any:
        return json.loads(self.data) if self.data else {}


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """Group raw text lines into events. Multiple data lines join with newlines."""
    event = None
    data = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data or event:
                yield SSEEvent(event=event or "message", data="\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield SSEEvent(event=event or "message", data="\n".join(data))
