"""Central event bus: one-way notifications of chain and branch mutations."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event types
EVENT_TURN_APPENDED = "turn_appended"
EVENT_CHAIN_ADVANCED = "chain_advanced"
EVENT_CHAIN_RESET = "chain_reset"
EVENT_BRANCH_FORKED = "branch_forked"
EVENT_BRANCH_TURN_APPENDED = "branch_turn_appended"
EVENT_BRANCH_MERGED = "branch_merged"
EVENT_MERGE_FAILED = "merge_failed"
EVENT_TASK_INGESTED = "task_ingested"
EVENT_SESSION_RESET = "session_reset"
EVENT_THREAD_LOADED = "thread_loaded"


class EventCollector:
    """Central event bus: notifies listeners, never fails the emitter."""

    def __init__(self, session_id: str | None = None):
        self._session_id = session_id
        self._listeners: list[Callable] = []
        self._emitted = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @session_id.setter
    def session_id(self, value: str):
        self._session_id = value

    @property
    def emitted_count(self) -> int:
        return self._emitted

    def emit(
        self,
        event_type: str,
        summary: str,
        *,
        turn: dict | None = None,
        branch_id: str | None = None,
        continuation_token: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        """Emit an event to all listeners and return the event data."""
        self._emitted += 1
        event_data = {
            "id": self._emitted,
            "timestamp": time.time(),
            "event_type": event_type,
            "summary": summary,
            "session_id": self._session_id,
            "turn": turn,
            "branch_id": branch_id,
            "continuation_token": continuation_token,
            "metadata": metadata,
        }
        logger.debug(f"Event {event_type}: {summary}")

        for listener in list(self._listeners):
            try:
                listener(event_data)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")

        return event_data

    def add_listener(self, callback: Callable[[dict], Any]) -> None:
        """Register a listener for all events."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        """Remove a registered listener."""
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass
