"""Minimal Server-Sent Events decoder over a line iterator."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional


@dataclass(slots=True)
class SseEvent:
    event: str
    data: str
    id: Optional[str] = None


def iter_events(lines: Iterable[str]) -> Iterator[SseEvent]:
    """Group raw stream lines into events.

    Follows the text/event-stream framing: ``field: value`` lines, comments
    starting with ``:``, and a blank line that dispatches the buffered event.
    Events without data are not dispatched.
    """
    event_name = ""
    data_lines: List[str] = []
    last_id: Optional[str] = None

    for raw in lines:
        if raw is None:
            continue
        line = raw.rstrip("\r")
        if not line:
            if data_lines:
                yield SseEvent(event=event_name or "message", data="\n".join(data_lines), id=last_id)
            event_name = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            event_name = value
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            last_id = value
        # "retry" and unknown fields are ignored

    if data_lines:
        yield SseEvent(event=event_name or "message", data="\n".join(data_lines), id=last_id)
