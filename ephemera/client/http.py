"""
Backend implementation over the FastAPI service, using httpx.

The change feed is consumed as Server-Sent Events from
``GET /conversations/{id}/feed``.
"""
import asyncio
import json
from datetime import datetime
from typing import List, Optional

import httpx
from pydantic import ValidationError

from ephemera.client.backend import EventHandler, ReconnectHandler, Unsubscribe
from ephemera.client.errors import BackendRejected, MalformedRecord, TransientNetworkError
from ephemera.core.config import Settings, get_settings
from ephemera.core.logging import get_logger
from ephemera.schemas.message import (
    ChangeEvent,
    MessageBase,
    MessageDraft,
    MessagesListResponse,
    ReadResponse,
    MediaUploadResponse,
    ViewResult,
    parse_message,
)

logger = get_logger(__name__)

RECONNECT_DELAY_SECONDS = 1.0


class SSEDecoder:
    """
    Line-oriented decoder for the change feed's event stream.

    Feed lines one at a time; a complete change event is returned when its
    terminating blank line arrives. Comment lines (``: keep-alive``) are
    ignored.
    """

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[ChangeEvent]:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[ChangeEvent]:
        event_name, data = self._event, "\n".join(self._data)
        self._event, self._data = None, []
        if not data:
            return None
        try:
            event = ChangeEvent.model_validate(json.loads(data))
        except (ValueError, ValidationError) as e:
            raise MalformedRecord(f"Undecodable feed event: {e}") from e
        if event_name is not None and event_name != event.event:
            raise MalformedRecord(f"Event name {event_name!r} does not match payload {event.event!r}")
        return event


class HttpBackend:
    """Talks to a running Ephemera service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.client = client or httpx.AsyncClient(
            base_url=settings.backend_url,
            timeout=settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"{method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except (ValueError, AttributeError):
                detail = response.text
            raise BackendRejected(response.status_code, str(detail))
        return response

    def _decode(self, response: httpx.Response, model):
        """Validate a JSON body; anything undecodable is a ``MalformedRecord``."""
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedRecord(f"Unexpected response body: {e}") from e

    async def insert_message(self, draft: MessageDraft) -> MessageBase:
        response = await self._request(
            "POST",
            f"/conversations/{draft.conversation_id}/messages",
            json=draft.to_request().model_dump(mode="json"),
        )
        try:
            return parse_message(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedRecord(str(e)) from e

    async def mark_message_viewed(self, message_id: str, viewer_id: str) -> ViewResult:
        response = await self._request(
            "POST", f"/messages/{message_id}/view", json={"viewer_id": viewer_id}
        )
        return self._decode(response, ViewResult)

    async def list_messages(
        self,
        conversation_id: str,
        viewer_id: str,
        since: Optional[datetime] = None,
    ) -> List[MessageBase]:
        params = {"viewer_id": viewer_id, "limit": 500}
        if since is not None:
            params["since"] = since.isoformat()
        response = await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)

        try:
            rows = response.json().get("data", [])
        except (ValueError, AttributeError) as e:
            raise MalformedRecord(f"Unexpected response body: {e}") from e

        messages = []
        for row in rows:
            try:
                messages.append(parse_message(row))
            except ValidationError as e:
                # Drop the row, keep the rest of the page
                logger.warning(
                    "Dropped malformed message row",
                    extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}}
                )
        return messages

    async def mark_read(self, message_id: str, reader_id: str) -> bool:
        response = await self._request(
            "POST", f"/messages/{message_id}/read", json={"reader_id": reader_id}
        )
        return self._decode(response, ReadResponse).updated > 0

    async def mark_conversation_read(self, conversation_id: str, reader_id: str) -> int:
        response = await self._request(
            "POST", f"/conversations/{conversation_id}/read", json={"reader_id": reader_id}
        )
        return self._decode(response, ReadResponse).updated

    async def upload_media(self, data: bytes, content_type: str) -> str:
        response = await self._request(
            "POST", "/media", content=data, headers={"Content-Type": content_type}
        )
        return self._decode(response, MediaUploadResponse).url

    async def subscribe(
        self,
        conversation_id: str,
        handler: EventHandler,
        on_reconnect: Optional[ReconnectHandler] = None,
    ) -> Unsubscribe:
        """
        Open the feed stream and wait until the server has registered it.

        The stream is kept open by a background task that reconnects after
        transport errors and calls ``on_reconnect`` once each new stream is
        established. Calling the returned function stops it.
        """
        loop = asyncio.get_running_loop()
        ready = loop.create_future()
        task = loop.create_task(self._consume_feed(conversation_id, handler, ready, on_reconnect))
        try:
            await ready
        except BaseException:
            task.cancel()
            raise

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _consume_feed(
        self,
        conversation_id: str,
        handler: EventHandler,
        ready: asyncio.Future,
        on_reconnect: Optional[ReconnectHandler] = None,
    ) -> None:
        url = f"/conversations/{conversation_id}/feed"
        while True:
            decoder = SSEDecoder()
            established = False
            try:
                async with self.client.stream("GET", url, timeout=None) as response:
                    if response.status_code >= 400:
                        raise BackendRejected(response.status_code, "feed subscription refused")
                    async for line in response.aiter_lines():
                        if not established:
                            established = True
                            if not ready.done():
                                ready.set_result(None)
                            elif on_reconnect is not None:
                                self._run_callback(on_reconnect, conversation_id)
                        try:
                            event = decoder.feed(line)
                        except MalformedRecord as e:
                            logger.warning(f"Skipped feed event: {e}")
                            continue
                        if event is not None:
                            self._run_callback(handler, conversation_id, event)
                if not ready.done():
                    ready.set_exception(TransientNetworkError("Feed closed before it was established"))
                    return
                logger.info("Feed stream ended, reconnecting", extra={"extra_data": {"conversation_id": conversation_id}})
            except httpx.HTTPError as e:
                if not ready.done():
                    ready.set_exception(TransientNetworkError(f"Feed connection failed: {e}"))
                    return
                logger.warning(
                    "Feed connection lost, reconnecting",
                    extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}}
                )
            except BackendRejected as e:
                if not ready.done():
                    ready.set_exception(e)
                    return
                logger.error(f"Feed subscription refused: {e}")
                return
            await asyncio.sleep(RECONNECT_DELAY_SECONDS)

    def _run_callback(self, callback, conversation_id: str, *args) -> None:
        # A failing callback must not end the stream
        try:
            callback(*args)
        except Exception:
            logger.exception(
                "Feed callback failed",
                extra={"extra_data": {"conversation_id": conversation_id}}
            )
