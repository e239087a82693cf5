"""
Conversation Log — the append-only transcript of a booking session.

Messages are appended at the tail with a fresh id and never edited or removed.
Listeners registered with subscribe() are notified after every append so a UI
can scroll to the newest entry or push it over a socket.
"""

import logging
import uuid
from typing import Callable, Optional

from booking.messages import Message, Payload, Role

logger = logging.getLogger(__name__)

Listener = Callable[[Message], None]


class ConversationLog:
    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._listeners: list[Listener] = []

    def append(self, role: Role, content: str, payload: Optional[Payload] = None) -> Message:
        message = Message(id=uuid.uuid4().hex, role=role, content=content, payload=payload)
        self._messages.append(message)
        logger.debug("log[%d] %s/%s: %s", len(self._messages) - 1, role, message.type, content[:80])

        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                # A broken listener must not lose the message for everyone else.
                logger.exception("Conversation log listener failed")
        return message

    def all(self) -> list[Message]:
        return list(self._messages)

    def find(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a log-changed listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._messages)
