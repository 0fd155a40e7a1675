"""Server-Sent Events adapter for drained snapshots."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from chatstream.events import StreamSnapshot


async def sse_generator(
    snapshots: AsyncIterator[StreamSnapshot],
) -> AsyncIterator[str]:
    """Convert a StreamSnapshot async iterator into SSE-formatted strings."""
    async for snapshot in snapshots:
        data = json.dumps(snapshot.to_dict(), ensure_ascii=False)
        yield f"event: snapshot\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
