"""Chat session: wires the chain, branches, merging and persistence together.

One ChatSession per conversation window. The CLI talks only to this class.
"""

from __future__ import annotations

import logging
from typing import Any

from forkchat.branches import BranchManager
from forkchat.chain import ChainController
from forkchat.config import ForkchatConfig
from forkchat.errors import ForkError
from forkchat.events import EVENT_SESSION_RESET, EVENT_THREAD_LOADED, EventCollector
from forkchat.gateway import CompletionGateway
from forkchat.merge import MergeEngine
from forkchat.models import Branch, CloseOutcome, MergeMode, Mode, Role, Turn
from forkchat.queue import IngestionQueue
from forkchat.recorder import ThreadRecorder
from forkchat.store import ChatStore
from forkchat.summarizer import Summarizer
from forkchat.tasks import CodeTask, TaskIngestor

logger = logging.getLogger(__name__)


class ChatSession:
    """A live conversation with its branches."""

    def __init__(
        self,
        config: ForkchatConfig | None = None,
        *,
        gateway=None,
        store: ChatStore | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.config = config or ForkchatConfig.load()
        self.gateway = gateway or CompletionGateway(self.config.gateway, self.config.models)
        self.events = EventCollector()
        self.queue = IngestionQueue()
        self.controller = ChainController(self.gateway, events=self.events, queue=self.queue)
        self.branches = BranchManager(self.gateway, events=self.events)
        self.summarizer = summarizer or Summarizer(
            self.gateway, max_bullets=self.config.merge.max_bullets
        )
        self.merger = MergeEngine(self.controller, self.summarizer, self.config.merge)
        self.ingestor = TaskIngestor(self.controller)

        self.store = store
        if self.store is None and self.config.store.enabled:
            self.store = ChatStore(self.config.store.db_path, owner=self.config.store.owner)
        self.recorder: ThreadRecorder | None = None
        if self.store is not None:
            self.recorder = ThreadRecorder(self.store)
            self.events.add_listener(self.recorder)

    @property
    def thread_id(self) -> str | None:
        return self.recorder.thread_id if self.recorder else None

    @property
    def turns(self) -> list[Turn]:
        return self.controller.state.visible_turns()

    # --- Main chain ---

    async def send(self, text: str, mode: Mode = Mode.DEEP) -> Turn:
        return await self.controller.send(text, mode)

    # --- Branches ---

    def fork(self, parent: Turn | int | None = None) -> Branch:
        """Fork from an assistant turn, or from the N-th one (1-based).

        With no argument, forks from the latest assistant turn.
        """
        if isinstance(parent, Turn):
            if self.controller.state.find(parent.local_id) is None:
                raise ForkError(f"Turn {parent.local_id[:8]} is not part of the main chain")
            return self.branches.fork(parent)

        assistant_turns = self.controller.state.assistant_turns()
        if not assistant_turns:
            raise ForkError("No assistant reply to fork from yet")
        if parent is None:
            return self.branches.fork(assistant_turns[-1])
        if not 1 <= parent <= len(assistant_turns):
            raise ForkError(
                f"Assistant turn {parent} out of range (1-{len(assistant_turns)})"
            )
        return self.branches.fork(assistant_turns[parent - 1])

    async def send_in_branch(self, branch: Branch, text: str) -> Turn:
        return await self.branches.send_in_branch(branch, text)

    async def close_branch(
        self,
        branch: Branch,
        should_merge: bool | None = None,
        merge_mode: MergeMode | None = None,
    ) -> CloseOutcome:
        return await self.merger.close_branch(branch, should_merge, merge_mode)

    # --- Side work ---

    async def ingest_tasks(self, tasks: list[CodeTask]) -> list[str]:
        return await self.ingestor.ingest_completed(tasks)

    # --- Lifecycle ---

    def reset(self) -> None:
        """Start a fresh conversation."""
        self.controller.reset()
        self.branches.clear()
        self.ingestor.reset()
        self.events.emit(EVENT_SESSION_RESET, "Session reset")
        logger.info("Session reset")

    def load_thread(self, thread_id: str) -> list[Turn]:
        """Restore a stored thread into this (fresh) session."""
        if self.store is None:
            raise RuntimeError("Thread store is disabled")
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise KeyError(f"Thread {thread_id} not found")

        turns = [
            Turn(
                local_id=m.id,
                role=Role(m.role),
                text=m.text,
                created_at=m.created_at,
                continuation_ref=m.response_id,
                meta=m.meta,
            )
            for m in thread.messages
        ]
        self.controller.restore(turns, thread.last_response_id)
        self.events.emit(
            EVENT_THREAD_LOADED,
            f"Loaded thread {thread.title}",
            continuation_token=thread.last_response_id,
            metadata={"thread_id": thread.id, "turns": len(turns)},
        )
        logger.info(f"Loaded thread {thread.id[:8]} ({len(turns)} turns)")
        return turns

    def get_status(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "chain": self.controller.get_stats(),
            "branches": self.branches.get_stats(),
            "tasks": self.ingestor.get_stats(),
            "gateway": self.gateway.get_stats() if hasattr(self.gateway, "get_stats") else {},
            "events": self.events.emitted_count,
        }

    async def aclose(self) -> None:
        await self.queue.close()
        if hasattr(self.gateway, "aclose"):
            await self.gateway.aclose()
