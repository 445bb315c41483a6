"""Mirrors main-chain events into the thread store.

Registered as an EventCollector listener. A store failure is logged and
dropped; it never reaches the chain operation that emitted the event.
"""

import logging

from forkchat.events import (
    EVENT_CHAIN_ADVANCED,
    EVENT_CHAIN_RESET,
    EVENT_SESSION_RESET,
    EVENT_THREAD_LOADED,
    EVENT_TURN_APPENDED,
)
from forkchat.store import ChatStore, StoredMessage

logger = logging.getLogger(__name__)

THREAD_TITLE_MAX_CHARS = 50


def thread_title(text: str) -> str:
    return text[:THREAD_TITLE_MAX_CHARS] + ("..." if len(text) > THREAD_TITLE_MAX_CHARS else "")


class ThreadRecorder:
    """Event listener that persists the main conversation as a thread."""

    def __init__(self, store: ChatStore, thread_id: str | None = None):
        self.store = store
        self.thread_id = thread_id

    def __call__(self, event: dict) -> None:
        try:
            self._handle(event)
        except Exception as e:
            logger.warning(f"Thread store update failed ({event.get('event_type')}): {e}")

    def _handle(self, event: dict) -> None:
        event_type = event["event_type"]

        if event_type == EVENT_TURN_APPENDED:
            turn = event["turn"]
            if self.thread_id is None:
                thread = self.store.create_thread(title=thread_title(turn["text"]))
                self.thread_id = thread.id
                logger.info(f"Recording conversation as thread {thread.id[:8]}")
            self.store.append_message(
                self.thread_id,
                StoredMessage(
                    id=turn["id"],
                    role=turn["role"],
                    text=turn["text"],
                    created_at=turn["created_at"],
                    response_id=turn.get("response_id"),
                    meta=turn.get("meta") or {},
                ),
            )

        elif event_type in (EVENT_CHAIN_ADVANCED, EVENT_CHAIN_RESET):
            # A user reset starts a new thread; the stored one keeps its head.
            reason = (event.get("metadata") or {}).get("reason")
            if self.thread_id is not None and reason != "user":
                self.store.update_thread(
                    self.thread_id, last_response_id=event["continuation_token"]
                )

        elif event_type == EVENT_SESSION_RESET:
            self.thread_id = None

        elif event_type == EVENT_THREAD_LOADED:
            self.thread_id = (event.get("metadata") or {}).get("thread_id")
