"""
In-process change feed.

Subscribers register a callback per conversation and receive every
``ChangeEvent`` published for it, in publish order.
"""
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from ephemera.core.logging import get_logger
from ephemera.schemas.message import ChangeEvent

logger = get_logger(__name__)

Handler = Callable[[ChangeEvent], None]


class Subscription:
    """Disposer handle returned by ``ChangeFeed.subscribe``."""

    def __init__(self, feed: "ChangeFeed", conversation_id: str, handler: Handler):
        self._feed = feed
        self.conversation_id = conversation_id
        self.handler = handler
        self.active = True

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        if self.active:
            self.active = False
            self._feed._remove(self)

    __call__ = close


class ChangeFeed:
    """Publish/subscribe hub keyed by conversation id."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, conversation_id: str, handler: Handler) -> Subscription:
        subscription = Subscription(self, conversation_id, handler)
        self._subscriptions[conversation_id].append(subscription)
        logger.debug(
            "Feed subscriber added",
            extra={"extra_data": {"conversation_id": conversation_id}}
        )
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscriber of its conversation.

        A failing subscriber is logged and skipped so the others still get
        the event. Returns the number of successful deliveries.
        """
        delivered = 0
        for subscription in list(self._subscriptions.get(event.conversation_id, ())):
            if not subscription.active:
                continue
            try:
                subscription.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Feed subscriber failed",
                    extra={
                        "extra_data": {
                            "conversation_id": event.conversation_id,
                            "event": event.event,
                            "message_id": event.message_id,
                        }
                    }
                )
        return delivered

    def subscriber_count(self, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return len(self._subscriptions.get(conversation_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.conversation_id)
        if not subs:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.conversation_id]
        logger.debug(
            "Feed subscriber removed",
            extra={"extra_data": {"conversation_id": subscription.conversation_id}}
        )
