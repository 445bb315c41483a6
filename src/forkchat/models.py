"""Chain and branch data model.

Turns are append-only within their chain. The main chain keeps two
layers: committed turns, written only by queued operations, and pending
user turns shown optimistically until their operation reaches the head
of the ingestion queue.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(Enum):
    """Who produced a turn."""
    USER = "user"
    ASSISTANT = "assistant"
    CONTEXT = "context"


class Mode(Enum):
    """Chat effort mode."""
    FAST = "fast"
    DEEP = "deep"


class MergeMode(Enum):
    """How a branch is folded back into the main chain."""
    SUMMARY = "summary"
    FULL = "full"


class CloseOutcome(Enum):
    """Result of closing a branch."""
    EMPTY = "empty"
    KEPT_SEPARATE = "kept_separate"
    ALREADY_MERGED = "already_merged"
    IN_PROGRESS = "in_progress"
    MERGED = "merged"


def generate_id() -> str:
    return str(uuid.uuid4())


def role_label(role: Role) -> str:
    """Transcript label for a role."""
    if role is Role.USER:
        return "User"
    if role is Role.ASSISTANT:
        return "Assistant"
    if role is Role.CONTEXT:
        return "Context"
    raise ValueError(f"Unknown role: {role!r}")


@dataclass(frozen=True)
class Turn:
    """One message in a chain."""

    local_id: str
    role: Role
    text: str
    created_at: float
    continuation_ref: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        role: Role,
        text: str,
        continuation_ref: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Turn:
        return cls(
            local_id=generate_id(),
            role=role,
            text=text,
            created_at=time.time(),
            continuation_ref=continuation_ref,
            meta=dict(meta or {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.local_id,
            "role": self.role.value,
            "text": self.text,
            "created_at": self.created_at,
            "response_id": self.continuation_ref,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Turn:
        return cls(
            local_id=data["id"],
            role=Role(data["role"]),
            text=data["text"],
            created_at=data.get("created_at", 0.0),
            continuation_ref=data.get("response_id"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class ChainState:
    """The main conversation: committed turns plus the chain head token."""

    turns: list[Turn] = field(default_factory=list)
    pending: list[Turn] = field(default_factory=list)
    continuation_token: str | None = None

    def append(self, turn: Turn) -> None:
        """Commit a turn. The only way turns enter the chain."""
        self.turns.append(turn)

    def add_pending(self, turn: Turn) -> None:
        self.pending.append(turn)

    def commit_pending(self, turn: Turn) -> None:
        """Move an optimistic turn into the committed list."""
        if turn in self.pending:
            self.pending.remove(turn)
        self.append(turn)

    def drop_pending(self, turn: Turn) -> None:
        if turn in self.pending:
            self.pending.remove(turn)

    def visible_turns(self) -> list[Turn]:
        return [*self.turns, *self.pending]

    def find(self, local_id: str) -> Turn | None:
        for turn in self.turns:
            if turn.local_id == local_id:
                return turn
        return None

    def assistant_turns(self) -> list[Turn]:
        return [t for t in self.turns if t.role is Role.ASSISTANT]

    def clear(self) -> None:
        self.turns = []
        self.pending = []
        self.continuation_token = None

    def to_dict(self) -> dict:
        return {
            "turns": [t.to_dict() for t in self.turns],
            "continuation_token": self.continuation_token,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ChainState:
        return cls(
            turns=[Turn.from_dict(t) for t in data.get("turns", [])],
            continuation_token=data.get("continuation_token"),
        )


class Branch:
    """A side conversation forked from one assistant turn of the main chain."""

    def __init__(
        self,
        parent_turn_local_id: str,
        parent_continuation_ref: str,
        title: str,
        *,
        branch_id: str | None = None,
        mode: Mode = Mode.FAST,
        created_at: float | None = None,
    ):
        self.id = branch_id or generate_id()
        self.parent_turn_local_id = parent_turn_local_id
        self._parent_continuation_ref = parent_continuation_ref
        self.title = title
        self.mode = mode
        self.turns: list[Turn] = []
        self.continuation_token: str | None = None
        self.include_in_main = False
        self.include_mode = MergeMode.SUMMARY
        self.merged_into_main = False
        self.merged_at: float | None = None
        self.merged_as: MergeMode | None = None
        self.created_at = created_at or time.time()
        self.updated_at = self.created_at

    @property
    def parent_continuation_ref(self) -> str:
        """Token of the fork point, fixed at fork time."""
        return self._parent_continuation_ref

    @property
    def continuation_base(self) -> str:
        """Token the next branch call continues from."""
        return self.continuation_token or self._parent_continuation_ref

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_turn_local_id": self.parent_turn_local_id,
            "parent_continuation_ref": self._parent_continuation_ref,
            "title": self.title,
            "mode": self.mode.value,
            "turns": [t.to_dict() for t in self.turns],
            "continuation_token": self.continuation_token,
            "include_in_main": self.include_in_main,
            "include_mode": self.include_mode.value,
            "merged_into_main": self.merged_into_main,
            "merged_at": self.merged_at,
            "merged_as": self.merged_as.value if self.merged_as else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Branch:
        branch = cls(
            parent_turn_local_id=data["parent_turn_local_id"],
            parent_continuation_ref=data["parent_continuation_ref"],
            title=data.get("title", "Branch"),
            branch_id=data["id"],
            mode=Mode(data.get("mode", "fast")),
            created_at=data.get("created_at"),
        )
        branch.turns = [Turn.from_dict(t) for t in data.get("turns", [])]
        branch.continuation_token = data.get("continuation_token")
        branch.include_in_main = data.get("include_in_main", False)
        branch.include_mode = MergeMode(data.get("include_mode", "summary"))
        branch.merged_into_main = data.get("merged_into_main", False)
        branch.merged_at = data.get("merged_at")
        merged_as = data.get("merged_as")
        branch.merged_as = MergeMode(merged_as) if merged_as else None
        branch.updated_at = data.get("updated_at", branch.created_at)
        return branch

    def __repr__(self) -> str:
        return f"Branch(id={self.id[:8]!r}, title={self.title!r}, turns={len(self.turns)})"


@dataclass
class MergeResult:
    """Context produced by a merge, consumed once by the chain controller."""

    context_text: str
    new_continuation_token: str
