"""
Change feed endpoint (Server-Sent Events).
"""
import asyncio
from typing import AsyncIterator, Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ephemera.api.deps import get_feed
from ephemera.core import metrics
from ephemera.core.config import Settings, get_settings
from ephemera.core.feed import ChangeFeed
from ephemera.core.logging import get_logger
from ephemera.schemas.message import ChangeEvent

logger = get_logger(__name__)

router = APIRouter(tags=["Feed"])


def format_sse(event: ChangeEvent) -> str:
    """Encode one change event as an SSE frame."""
    return f"event: {event.event}\ndata: {event.model_dump_json()}\n\n"


async def stream_events(
    feed: ChangeFeed,
    conversation_id: str,
    heartbeat: float,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one subscriber until the client goes away.

    The subscription is registered before the first frame so nothing
    published after the stream opens is missed.
    """
    queue: asyncio.Queue = asyncio.Queue()
    subscription = feed.subscribe(conversation_id, queue.put_nowait)
    metrics.adjust_gauge("feed_subscribers", 1)
    logger.info("Feed stream opened", extra={"extra_data": {"conversation_id": conversation_id}})
    try:
        yield ": subscribed\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event)
    finally:
        subscription.close()
        metrics.adjust_gauge("feed_subscribers", -1)
        logger.info("Feed stream closed", extra={"extra_data": {"conversation_id": conversation_id}})


@router.get(
    "/conversations/{conversation_id}/feed",
    summary="Subscribe to changes",
    description="Insert, update and delete events for one conversation as text/event-stream.",
    response_class=StreamingResponse,
)
async def conversation_feed(
    conversation_id: str,
    feed: Annotated[ChangeFeed, Depends(get_feed)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StreamingResponse:
    return StreamingResponse(
        stream_events(feed, conversation_id, settings.feed_heartbeat_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
