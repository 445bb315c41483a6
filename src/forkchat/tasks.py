"""Background ingestion of completed code tasks into the main chain.

Completed tasks are ingested oldest completion first. A task is marked
ingested before its call starts, so overlapping passes never ingest it
twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from forkchat.events import EVENT_TASK_INGESTED

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 5
MAX_CONTEXT_BULLETS = 4


class TaskStatus(Enum):
    """Code task lifecycle."""
    QUEUED = "queued"
    RUNNING = "running"
    DRAFT_READY = "draft_ready"
    APPLIED = "applied"
    PR_CREATED = "pr_created"
    DONE = "done"
    FAILED = "failed"


COMPLETED_STATUSES = {TaskStatus.DRAFT_READY, TaskStatus.APPLIED, TaskStatus.PR_CREATED}


@dataclass
class TaskContextSummary:
    """Compact summary of what a task produced."""
    title: str
    file_paths: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    bullets: list[str] = field(default_factory=list)


@dataclass
class CodeTask:
    """A side task whose result is fed back into the conversation."""
    id: str
    title: str
    status: TaskStatus
    created_at: float
    updated_at: float
    prompt: str = ""
    context_summary: TaskContextSummary | None = None
    error: str | None = None


def build_task_context(task: CodeTask) -> str | None:
    """Context text for a completed task, or None without a summary."""
    summary = task.context_summary
    if summary is None:
        return None

    files = ", ".join(summary.file_paths[:MAX_CONTEXT_FILES])
    if len(summary.file_paths) > MAX_CONTEXT_FILES:
        files += "..."
    lines = [
        f'Context from completed code task "{summary.title}":',
        "",
        f"Files generated: {files}",
    ]
    if summary.languages:
        lines.append(f"Languages: {', '.join(summary.languages)}")
    if summary.bullets:
        lines.append("")
        lines.append("Summary of what was built:")
        for bullet in summary.bullets[:MAX_CONTEXT_BULLETS]:
            lines.append(f"- {bullet}")
    return "\n".join(lines)


class TaskIngestor:
    """Feeds completed tasks to the chain controller in completion order."""

    def __init__(self, controller):
        self.controller = controller
        self._ingested: set[str] = set()
        self._ingesting = False

    def is_ingested(self, task_id: str) -> bool:
        return task_id in self._ingested

    def ready_tasks(self, tasks: list[CodeTask]) -> list[CodeTask]:
        """Completed, summarized, not yet ingested; oldest completion first."""
        ready = [
            t for t in tasks
            if t.status in COMPLETED_STATUSES
            and t.context_summary is not None
            and t.id not in self._ingested
        ]
        return sorted(ready, key=lambda t: t.updated_at)

    async def ingest_completed(self, tasks: list[CodeTask]) -> list[str]:
        """Ingest every ready task; returns the ids ingested successfully."""
        if self._ingesting:
            return []

        ingested: list[str] = []
        self._ingesting = True
        try:
            for task in self.ready_tasks(tasks):
                self._ingested.add(task.id)
                if await self.ingest_task(task):
                    ingested.append(task.id)
        finally:
            self._ingesting = False
        return ingested

    async def ingest_task(self, task: CodeTask) -> bool:
        """Ingest one task's context. Failures are logged, not raised."""
        context = build_task_context(task)
        if context is None:
            return False
        try:
            turn = await self.controller.ingest_context(
                context, meta={"task_id": task.id, "task_title": task.title}
            )
        except Exception as e:
            logger.error(f"Failed to ingest task {task.id[:8]} context: {e}")
            return False

        logger.info(f"Task {task.id[:8]} ingested into chain")
        self.controller.events.emit(
            EVENT_TASK_INGESTED,
            f"Task {task.title} ingested",
            continuation_token=turn.continuation_ref,
            metadata={"task_id": task.id},
        )
        return True

    def reset(self) -> None:
        self._ingested.clear()

    def get_stats(self) -> dict[str, Any]:
        return {"ingested": len(self._ingested), "ingesting": self._ingesting}
