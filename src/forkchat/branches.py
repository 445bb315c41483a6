"""Branches: side conversations forked from an assistant turn.

A branch continues from its fork point's token until its first reply,
then from its own token. Branch sends bypass the ingestion queue because
they never touch the main chain; each branch admits one send at a time.
"""

from __future__ import annotations

import logging
from typing import Any

from forkchat.errors import BranchBusyError, BranchNotFoundError, ForkError
from forkchat.events import (
    EVENT_BRANCH_FORKED,
    EVENT_BRANCH_TURN_APPENDED,
    EventCollector,
)
from forkchat.gateway import RequestKind
from forkchat.models import Branch, MergeMode, Mode, Role, Turn

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 30


def title_from_text(text: str, max_chars: int = TITLE_MAX_CHARS) -> str:
    return text[:max_chars] + ("..." if len(text) > max_chars else "")


class BranchManager:
    """Creates branches and runs branch-local sends."""

    def __init__(self, gateway, *, events: EventCollector | None = None):
        self.gateway = gateway
        self.events = events or EventCollector()
        self._branches_by_parent: dict[str, list[Branch]] = {}
        self._in_flight: set[str] = set()

    def fork(self, parent_turn: Turn) -> Branch:
        """Fork a new branch from an assistant turn of the main chain."""
        if parent_turn.role is not Role.ASSISTANT or not parent_turn.continuation_ref:
            raise ForkError(
                f"Can only fork from an assistant turn with a response id "
                f"(got {parent_turn.role.value})"
            )

        siblings = self._branches_by_parent.setdefault(parent_turn.local_id, [])
        branch = Branch(
            parent_turn_local_id=parent_turn.local_id,
            parent_continuation_ref=parent_turn.continuation_ref,
            title=f"Branch {len(siblings) + 1}",
        )
        siblings.append(branch)

        logger.info(f"Forked {branch.title} from turn {parent_turn.local_id[:8]}")
        self.events.emit(
            EVENT_BRANCH_FORKED,
            f"{branch.title} forked",
            branch_id=branch.id,
            continuation_token=branch.parent_continuation_ref,
            metadata={"parent_turn_local_id": parent_turn.local_id},
        )
        return branch

    async def send_in_branch(self, branch: Branch, user_text: str) -> Turn:
        """Send a message inside a branch and return the assistant turn."""
        if branch.id in self._in_flight:
            raise BranchBusyError(f"{branch.title} already has a message in flight")

        self._in_flight.add(branch.id)
        try:
            user_turn = Turn.create(Role.USER, user_text)
            if not branch.turns:
                branch.title = title_from_text(user_text)
            branch.turns.append(user_turn)
            branch.touch()
            self._emit_turn(branch, user_turn)

            base = branch.continuation_base
            response = await self.gateway.complete(
                user_text,
                kind=RequestKind.for_mode(branch.mode),
                continuation_token=base,
            )

            assistant_turn = Turn.create(
                Role.ASSISTANT,
                response.output_text,
                continuation_ref=response.continuation_token,
            )
            branch.turns.append(assistant_turn)
            branch.continuation_token = response.continuation_token
            branch.touch()
            self._emit_turn(branch, assistant_turn)
            return assistant_turn
        finally:
            self._in_flight.discard(branch.id)

    def is_busy(self, branch: Branch) -> bool:
        return branch.id in self._in_flight

    def set_include(
        self,
        branch: Branch,
        include_in_main: bool,
        include_mode: MergeMode | None = None,
    ) -> None:
        branch.include_in_main = include_in_main
        if include_mode is not None:
            branch.include_mode = include_mode
        branch.touch()

    def set_mode(self, branch: Branch, mode: Mode) -> None:
        branch.mode = mode
        branch.touch()

    def get(self, branch_id: str) -> Branch:
        for branches in self._branches_by_parent.values():
            for branch in branches:
                if branch.id == branch_id or branch.id.startswith(branch_id):
                    return branch
        raise BranchNotFoundError(f"No branch {branch_id}")

    def branches_for(self, parent_local_id: str) -> list[Branch]:
        return list(self._branches_by_parent.get(parent_local_id, []))

    def all(self) -> list[Branch]:
        return [b for branches in self._branches_by_parent.values() for b in branches]

    def clear(self) -> None:
        self._branches_by_parent.clear()

    def _emit_turn(self, branch: Branch, turn: Turn) -> None:
        self.events.emit(
            EVENT_BRANCH_TURN_APPENDED,
            f"{branch.title}: {turn.role.value} turn appended",
            turn=turn.to_dict(),
            branch_id=branch.id,
        )

    def get_stats(self) -> dict[str, Any]:
        branches = self.all()
        return {
            "branches": len(branches),
            "merged": sum(1 for b in branches if b.merged_into_main),
            "in_flight": len(self._in_flight),
        }
