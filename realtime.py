"""
Pusher integration for project chat.

The server side publishes chat events and signs presence-channel handshakes.
EchoFilter is the receiving side's duplicate suppression: a client that shows
its own message optimistically drops the broadcast copy when it comes back.
"""
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import pusher
from bson import ObjectId
from fastapi import HTTPException

from config import (
    PUSHER_APP_ID,
    PUSHER_KEY,
    PUSHER_SECRET,
    PUSHER_CLUSTER,
    CHANNEL_PREFIX,
    CHAT_EVENT,
)

logger = logging.getLogger(__name__)

_client: Optional[pusher.Pusher] = None


def get_pusher() -> pusher.Pusher:
    global _client
    if _client is None:
        if not PUSHER_APP_ID:
            logger.error("PUSHER_APP_ID not set; chat is unavailable")
            raise HTTPException(status_code=503, detail="Chat broker not configured")
        _client = pusher.Pusher(
            app_id=PUSHER_APP_ID,
            key=PUSHER_KEY,
            secret=PUSHER_SECRET,
            cluster=PUSHER_CLUSTER,
            ssl=True,
        )
    return _client


def channel_for(property_id: str) -> str:
    return f"{CHANNEL_PREFIX}{property_id}"


def property_id_from_channel(channel: str) -> Optional[str]:
    """Return the property id a chat channel belongs to, or None if the name is not a property channel."""
    if not channel or not channel.startswith(CHANNEL_PREFIX):
        return None
    property_id = channel[len(CHANNEL_PREFIX):]
    if not ObjectId.is_valid(property_id):
        return None
    return property_id


def chat_event_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    # Pusher serializes with json.dumps, so datetimes go out as ISO strings
    return {
        "user": record["user"],
        "message": record["message"],
        "timestamp": record["timestamp"].isoformat(),
    }


def publish_chat_message(client: pusher.Pusher, channel: str, record: Dict[str, Any]) -> None:
    client.trigger(channel, CHAT_EVENT, chat_event_payload(record))
    logger.debug("Published %s on %s", CHAT_EVENT, channel)


def authorize_presence(client: pusher.Pusher, socket_id: str, channel_name: str, user: Dict[str, Any]) -> Dict[str, Any]:
    presence_data = {
        "user_id": user["id"],
        "user_info": {"name": user.get("name"), "email": user.get("email")},
    }
    return client.authenticate(channel=channel_name, socket_id=socket_id, custom_data=presence_data)


class EchoFilter:
    """Drops a received chat message that matches one this client just sent.

    Helper for the receiving client (chat panel or bot); the server never
    de-duplicates and does not use this class.

    Each sent (user, message) pair suppresses at most one incoming copy, and only
    within `window` seconds. Messages carry no ids, so this is a heuristic.
    """

    def __init__(self, window: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._pending: Deque[Tuple[str, str, float]] = deque()

    def sent(self, user: str, message: str) -> None:
        self._pending.append((user, message, self._clock()))

    def accept(self, payload: Dict[str, Any]) -> bool:
        now = self._clock()
        while self._pending and now - self._pending[0][2] > self.window:
            self._pending.popleft()
        key = (payload.get("user"), payload.get("message"))
        for i, (user, message, _) in enumerate(self._pending):
            if (user, message) == key:
                del self._pending[i]
                return False
        return True
