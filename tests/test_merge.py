"""Tests for closing and merging branches into the main chain."""

import asyncio

import pytest

from conftest import FakeSummarizer, make_branch_turns
from forkchat.branches import BranchManager
from forkchat.chain import ChainController
from forkchat.config import MergeConfig
from forkchat.errors import GatewayTimeout, MergeError, RateLimited, SummarizationTimeout
from forkchat.events import EVENT_BRANCH_MERGED, EVENT_MERGE_FAILED
from forkchat.merge import (
    MergeEngine,
    describe_merge_failure,
    format_quick_summary,
    uses_llm_summary,
    wrap_context,
)
from forkchat.models import CloseOutcome, MergeMode, Role, Turn


@pytest.fixture
def controller(gateway, events):
    return ChainController(gateway, events=events)


@pytest.fixture
def summarizer():
    return FakeSummarizer(text="• decided on sqlite\n• kept it local")


@pytest.fixture
def engine(controller, summarizer):
    return MergeEngine(controller, summarizer, MergeConfig(summarize_timeout=0.5))


@pytest.fixture
def branch(gateway, events):
    manager = BranchManager(gateway, events=events)
    parent = Turn.create(Role.ASSISTANT, "main answer", continuation_ref="resp_main")
    b = manager.fork(parent)
    b.turns = make_branch_turns(4)
    b.include_in_main = True
    return b


def _context_turns(controller):
    return [t for t in controller.turns if t.role is Role.CONTEXT]


class TestThreshold:
    """Short branches skip the summarizer."""

    def test_threshold_is_inclusive(self):
        assert uses_llm_summary(0) is False
        assert uses_llm_summary(10) is False
        assert uses_llm_summary(11) is True

    def test_custom_threshold(self):
        assert uses_llm_summary(3, threshold=2) is True

    @pytest.mark.asyncio
    async def test_ten_turns_use_local_summary(self, engine, branch, summarizer):
        branch.turns = make_branch_turns(10)
        await engine.close_branch(branch)
        assert summarizer.calls == []

    @pytest.mark.asyncio
    async def test_eleven_turns_call_summarizer(self, engine, branch, summarizer, controller):
        branch.turns = make_branch_turns(11)
        await engine.close_branch(branch)
        assert len(summarizer.calls) == 1
        assert "• decided on sqlite" in _context_turns(controller)[0].text


class TestQuickSummary:
    """Local bullet formatting."""

    def test_bullet_prefixes(self):
        text = format_quick_summary(make_branch_turns(2))
        assert text == "• User asked: question 0\n• Assistant: answer 1"

    def test_long_text_truncated(self):
        turn = Turn.create(Role.USER, "a" * 200)
        line = format_quick_summary([turn])
        assert line == "• User asked: " + "a" * 147 + "..."

    def test_text_at_limit_kept(self):
        turn = Turn.create(Role.ASSISTANT, "b" * 150)
        assert format_quick_summary([turn]) == "• Assistant: " + "b" * 150

    def test_wrap_context_labels_mode(self):
        assert wrap_context("T", MergeMode.SUMMARY, "x").startswith(
            'Context from a side thread "T" (summary):'
        )
        assert "(full transcript)" in wrap_context("T", MergeMode.FULL, "x")


class TestCloseBranch:
    """Close state machine."""

    @pytest.mark.asyncio
    async def test_empty_branch(self, engine, branch, controller):
        branch.turns = []
        assert await engine.close_branch(branch) is CloseOutcome.EMPTY
        assert controller.turns == []

    @pytest.mark.asyncio
    async def test_not_included_kept_separate(self, engine, branch, controller):
        branch.include_in_main = False
        assert await engine.close_branch(branch) is CloseOutcome.KEPT_SEPARATE
        assert controller.turns == []

    @pytest.mark.asyncio
    async def test_should_merge_false_overrides(self, engine, branch, controller):
        assert await engine.close_branch(branch, should_merge=False) is CloseOutcome.KEPT_SEPARATE
        assert controller.turns == []

    @pytest.mark.asyncio
    async def test_summary_merge(self, engine, branch, controller, gateway, recorder):
        await controller.send("main question")

        outcome = await engine.close_branch(branch)

        assert outcome is CloseOutcome.MERGED
        context = _context_turns(controller)
        assert len(context) == 1
        assert context[0].text.startswith(f'Context from a side thread "{branch.title}" (summary):')
        assert "• User asked: question 0" in context[0].text
        assert context[0].meta["branch_id"] == branch.id
        assert context[0].meta["merge_type"] == "summary"
        # Ingested at the live main head, not the fork point
        assert gateway.calls[-1]["continuation_token"] == "resp_1"
        assert controller.continuation_token == context[0].continuation_ref

        assert branch.merged_into_main is True
        assert branch.merged_as is MergeMode.SUMMARY
        assert branch.merged_at is not None
        assert engine.last_merge.new_continuation_token == context[0].continuation_ref
        assert recorder.of_type(EVENT_BRANCH_MERGED)[0]["branch_id"] == branch.id

    @pytest.mark.asyncio
    async def test_full_merge_is_transcript(self, engine, branch, controller, summarizer):
        outcome = await engine.close_branch(branch, merge_mode=MergeMode.FULL)
        assert outcome is CloseOutcome.MERGED
        text = _context_turns(controller)[0].text
        assert "(full transcript)" in text
        assert "User: question 0\n\nAssistant: answer 1" in text
        assert summarizer.calls == []
        assert branch.merged_as is MergeMode.FULL

    @pytest.mark.asyncio
    async def test_merge_happens_once(self, engine, branch, controller):
        assert await engine.close_branch(branch) is CloseOutcome.MERGED
        assert await engine.close_branch(branch) is CloseOutcome.ALREADY_MERGED
        assert len(_context_turns(controller)) == 1

    @pytest.mark.asyncio
    async def test_overlapping_closes_merge_once(self, engine, branch, controller):
        outcomes = await asyncio.gather(
            engine.close_branch(branch),
            engine.close_branch(branch),
        )

        assert sorted(o.value for o in outcomes) == ["in_progress", "merged"]
        assert len(_context_turns(controller)) == 1
        assert await engine.close_branch(branch) is CloseOutcome.ALREADY_MERGED

    @pytest.mark.asyncio
    async def test_overlapping_closes_during_summarization(self, controller, branch):
        engine = MergeEngine(controller, FakeSummarizer(delay=0.01))
        branch.turns = make_branch_turns(12)

        outcomes = await asyncio.gather(
            engine.close_branch(branch),
            engine.close_branch(branch),
            engine.close_branch(branch),
        )

        assert [o for o in outcomes if o is CloseOutcome.MERGED] == [CloseOutcome.MERGED]
        assert len(_context_turns(controller)) == 1


class TestMergeFailure:
    """A failed merge reverts the include flag and leaves main untouched."""

    @pytest.mark.asyncio
    async def test_summarizer_timeout(self, controller, branch, recorder):
        engine = MergeEngine(
            controller,
            FakeSummarizer(delay=1.0),
            MergeConfig(summarize_timeout=0.01),
        )
        branch.turns = make_branch_turns(12)

        with pytest.raises(SummarizationTimeout) as exc_info:
            await engine.close_branch(branch)

        assert exc_info.value.timed_out is True
        assert branch.include_in_main is False
        assert branch.merged_into_main is False
        assert controller.turns == []
        failed = recorder.of_type(EVENT_MERGE_FAILED)
        assert failed[0]["metadata"]["timed_out"] is True
        assert failed[0]["summary"].startswith("Summarization timed out")

    @pytest.mark.asyncio
    async def test_gateway_timeout_counts_as_timeout(self, controller, branch):
        engine = MergeEngine(controller, FakeSummarizer(error=GatewayTimeout("read timed out")))
        branch.turns = make_branch_turns(12)
        with pytest.raises(SummarizationTimeout):
            await engine.close_branch(branch)

    @pytest.mark.asyncio
    async def test_summarizer_error(self, controller, branch):
        engine = MergeEngine(controller, FakeSummarizer(error=RateLimited("slow down")))
        branch.turns = make_branch_turns(12)

        with pytest.raises(MergeError) as exc_info:
            await engine.close_branch(branch)

        assert not isinstance(exc_info.value, SummarizationTimeout)
        assert isinstance(exc_info.value.__cause__, RateLimited)
        assert branch.include_in_main is False
        assert controller.turns == []

    @pytest.mark.asyncio
    async def test_ingestion_error_reverts(self, engine, branch, controller, gateway):
        gateway.script = [RateLimited("slow down", status_code=429)]
        with pytest.raises(MergeError):
            await engine.close_branch(branch)
        assert branch.include_in_main is False
        assert _context_turns(controller) == []

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, engine, branch, controller, gateway):
        gateway.script = [RateLimited("slow down", status_code=429)]
        with pytest.raises(MergeError):
            await engine.close_branch(branch)

        branch.include_in_main = True
        assert await engine.close_branch(branch) is CloseOutcome.MERGED
        assert len(_context_turns(controller)) == 1

    def test_describe_failure(self):
        assert describe_merge_failure(SummarizationTimeout("x")).startswith("Summarization timed out")
        assert describe_merge_failure(MergeError("boom")).startswith("Failed to merge branch (boom)")
