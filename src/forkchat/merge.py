"""Merge engine: folds a closed branch into the main chain as one context turn.

Close state machine:
    no turns / not included -> close without merge
    already merged          -> close without merge
    merge already running   -> close without merge
    otherwise               -> build content -> ingest at the live chain head
                               success: mark merged
                               failure: revert include_in_main, raise

Summary mode takes a local path for short branches: each turn becomes a
truncated bullet, formatted to read like the LLM summary, and no call is
made. Longer branches go through the summarizer under a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time

from forkchat.chain import ChainController
from forkchat.config import MergeConfig
from forkchat.errors import GatewayTimeout, MergeError, SummarizationTimeout
from forkchat.events import EVENT_BRANCH_MERGED, EVENT_MERGE_FAILED
from forkchat.models import Branch, CloseOutcome, MergeMode, MergeResult, Role, Turn
from forkchat.summarizer import Summarizer, build_transcript

logger = logging.getLogger(__name__)


def uses_llm_summary(turn_count: int, threshold: int = 10) -> bool:
    """Whether a summary merge of this many turns calls the summarizer."""
    return turn_count > threshold


def format_quick_summary(turns: list[Turn], max_chars: int = 150) -> str:
    lines = []
    for turn in turns:
        prefix = "User asked:" if turn.role is Role.USER else "Assistant:"
        text = turn.text
        if len(text) > max_chars:
            text = text[: max_chars - 3] + "..."
        lines.append(f"• {prefix} {text}")
    return "\n".join(lines)


def wrap_context(title: str, mode: MergeMode, body: str) -> str:
    label = "summary" if mode is MergeMode.SUMMARY else "full transcript"
    return f'Context from a side thread "{title}" ({label}):\n{body}'


def describe_merge_failure(error: BaseException) -> str:
    """User-facing message that tells a timeout apart from other failures."""
    if isinstance(error, MergeError) and error.timed_out:
        return "Summarization timed out. You can retry by toggling include again."
    return f"Failed to merge branch ({error}). You can retry by toggling include again."


class MergeEngine:
    """Produces exactly one main-chain context turn per merged branch."""

    def __init__(
        self,
        controller: ChainController,
        summarizer: Summarizer,
        config: MergeConfig | None = None,
    ):
        self.controller = controller
        self.summarizer = summarizer
        self.config = config or MergeConfig()
        self.last_merge: MergeResult | None = None
        self._merging: set[str] = set()

    async def build_content(self, branch: Branch, mode: MergeMode) -> str:
        """Context text for a branch in the given mode."""
        if mode is MergeMode.FULL:
            return wrap_context(branch.title, mode, build_transcript(branch.turns))

        if not uses_llm_summary(len(branch.turns), self.config.skip_summarization_threshold):
            bullets = format_quick_summary(branch.turns, self.config.quick_summary_max_chars)
        else:
            try:
                bullets = await asyncio.wait_for(
                    self.summarizer.summarize(branch.turns),
                    timeout=self.config.summarize_timeout,
                )
            except (asyncio.TimeoutError, GatewayTimeout) as e:
                raise SummarizationTimeout(
                    f"Summarization timed out after {self.config.summarize_timeout:.0f}s"
                ) from e
        return wrap_context(branch.title, mode, bullets)

    async def close_branch(
        self,
        branch: Branch,
        should_merge: bool | None = None,
        merge_mode: MergeMode | None = None,
    ) -> CloseOutcome:
        """Close a branch, merging it into the main chain when included.

        Raises:
            SummarizationTimeout: the summarizer exceeded its timeout
            MergeError: any other failure while merging
        """
        if not branch.turns:
            return CloseOutcome.EMPTY
        wants_merge = branch.include_in_main if should_merge is None else should_merge
        if not wants_merge or not branch.include_in_main:
            logger.info(f"{branch.title} kept separate from main")
            return CloseOutcome.KEPT_SEPARATE
        if branch.merged_into_main:
            return CloseOutcome.ALREADY_MERGED
        if branch.id in self._merging:
            logger.info(f"Merge of {branch.title} already running")
            return CloseOutcome.IN_PROGRESS

        mode = merge_mode or branch.include_mode
        self._merging.add(branch.id)
        try:
            content = await self.build_content(branch, mode)
            context_turn = await self.controller.ingest_context(
                content,
                meta={
                    "branch_id": branch.id,
                    "branch_title": branch.title,
                    "merge_type": mode.value,
                },
            )
        except Exception as e:
            self._revert(branch, e)
            if isinstance(e, MergeError):
                raise
            raise MergeError(str(e)) from e
        finally:
            self._merging.discard(branch.id)

        self.last_merge = MergeResult(
            context_text=context_turn.text,
            new_continuation_token=context_turn.continuation_ref,
        )
        branch.merged_into_main = True
        branch.merged_at = time.time()
        branch.merged_as = mode
        branch.touch()

        logger.info(f"Merged {branch.title} into main as {mode.value}")
        self.controller.events.emit(
            EVENT_BRANCH_MERGED,
            f"{branch.title} merged as {mode.value}",
            branch_id=branch.id,
            continuation_token=context_turn.continuation_ref,
            metadata={"merge_type": mode.value, "turn_local_id": context_turn.local_id},
        )
        return CloseOutcome.MERGED

    def _revert(self, branch: Branch, error: BaseException) -> None:
        branch.include_in_main = False
        branch.touch()
        logger.warning(f"Merge of {branch.title} failed: {error}")
        self.controller.events.emit(
            EVENT_MERGE_FAILED,
            describe_merge_failure(error),
            branch_id=branch.id,
            metadata={"timed_out": isinstance(error, MergeError) and error.timed_out},
        )
