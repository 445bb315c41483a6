"""Chain controller: sole writer of the main conversation.

Every mutating operation runs through the ingestion queue, so the chain
head token an operation reads is always the one left by the operation
queued before it. The head is read when the operation is dequeued, never
captured when it was enqueued.

Recovery policy:
    continuation unknown -> clear token -> retry once unchained
    second failure       -> ChainResetRetryFailed, chain left as is
    any other failure    -> propagated, no mutation
"""

from __future__ import annotations

import logging
from typing import Any

from forkchat.errors import (
    ChainResetDuringOperation,
    ChainResetRetryFailed,
    GatewayError,
    is_continuation_broken,
)
from forkchat.events import (
    EVENT_CHAIN_ADVANCED,
    EVENT_CHAIN_RESET,
    EVENT_TURN_APPENDED,
    EventCollector,
)
from forkchat.gateway import GatewayResponse, RequestKind
from forkchat.models import ChainState, Mode, Role, Turn
from forkchat.queue import IngestionQueue

logger = logging.getLogger(__name__)

CHAIN_RESET_NOTICE = "Chain reset; continuing"


class ChainController:
    """Owns all reads and writes of the main ChainState."""

    def __init__(
        self,
        gateway,
        *,
        events: EventCollector | None = None,
        queue: IngestionQueue | None = None,
        state: ChainState | None = None,
        context_mode: Mode = Mode.DEEP,
    ):
        self.gateway = gateway
        self.events = events or EventCollector()
        self.queue = queue or IngestionQueue()
        self.state = state or ChainState()
        self.context_mode = context_mode
        self._epoch = 0
        self._reset_count = 0
        self._retry_count = 0

    @property
    def continuation_token(self) -> str | None:
        return self.state.continuation_token

    @property
    def turns(self) -> list[Turn]:
        return list(self.state.turns)

    # --- Operations ---

    async def send(self, user_text: str, mode: Mode = Mode.DEEP) -> Turn:
        """Send a user message on the main chain and return the assistant turn.

        The user turn shows up immediately as pending and is committed when
        the queued call starts. On failure the committed user turn stays,
        but no assistant turn is appended.
        """
        user_turn = Turn.create(Role.USER, user_text)
        self.state.add_pending(user_turn)
        epoch = self._epoch

        async def operation() -> Turn:
            if epoch != self._epoch:
                self.state.drop_pending(user_turn)
                raise ChainResetDuringOperation("Chain was reset before this message was sent")
            self.state.commit_pending(user_turn)
            self._emit_turn(user_turn)

            response = await self._call_with_recovery(
                user_text, RequestKind.for_mode(mode), epoch, source="user"
            )
            assistant_turn = Turn.create(
                Role.ASSISTANT,
                response.output_text,
                continuation_ref=response.continuation_token,
            )
            self._commit(assistant_turn)
            return assistant_turn

        return await self.queue.submit(operation)

    async def ingest_context(self, text: str, *, meta: dict[str, Any] | None = None) -> Turn:
        """Inject side-work context into the main chain; always queued.

        Appends exactly one context turn carrying the token the call
        produced.
        """
        epoch = self._epoch

        async def operation() -> Turn:
            if epoch != self._epoch:
                raise ChainResetDuringOperation("Chain was reset before context was ingested")
            response = await self._call_with_recovery(
                text, RequestKind.for_mode(self.context_mode), epoch, source="ingestion"
            )
            context_turn = Turn.create(
                Role.CONTEXT,
                text,
                continuation_ref=response.continuation_token,
                meta=meta,
            )
            self._commit(context_turn)
            return context_turn

        return await self.queue.submit(operation)

    def reset(self) -> None:
        """Clear the conversation. Operations already queued are discarded."""
        self._epoch += 1
        self.state.clear()
        self.events.emit(
            EVENT_CHAIN_RESET,
            "Chain cleared",
            metadata={"reason": "user"},
        )
        logger.info("Main chain reset by user")

    def restore(self, turns: list[Turn], continuation_token: str | None) -> None:
        """Load a stored conversation into the (empty) chain."""
        if self.state.turns or self.state.pending:
            raise ValueError("Cannot restore into a chain that already has turns")
        for turn in turns:
            self.state.append(turn)
        self.state.continuation_token = continuation_token

    # --- Internals ---

    async def _call_with_recovery(
        self,
        input_text: str,
        kind: RequestKind,
        epoch: int,
        source: str,
    ) -> GatewayResponse:
        """Call the gateway from the live head, resetting once if it is gone."""
        previous = self.state.continuation_token
        try:
            response = await self.gateway.complete(
                input_text, kind=kind, continuation_token=previous
            )
        except GatewayError as e:
            if not is_continuation_broken(e):
                logger.warning(f"[{source}] completion failed: {e}")
                raise
            self._check_epoch(epoch)
            self._reset_head(previous, str(e))
            try:
                response = await self.gateway.complete(
                    input_text, kind=kind, continuation_token=None
                )
            except GatewayError as retry_error:
                logger.error(f"[{source}] retry after chain reset failed: {retry_error}")
                raise ChainResetRetryFailed(retry_error) from retry_error
            self._retry_count += 1
            self._check_epoch(epoch)
            logger.info(f"[{source}] {CHAIN_RESET_NOTICE}")
            self.events.emit(
                EVENT_CHAIN_RESET,
                CHAIN_RESET_NOTICE,
                continuation_token=response.continuation_token,
                metadata={"reason": "retry_succeeded", "source": source},
            )
            return response

        self._check_epoch(epoch)
        logger.debug(
            f"[{source}] prev={(previous or 'none')[:8]} new={response.continuation_token[:8]}"
        )
        return response

    def _check_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise ChainResetDuringOperation("Chain was reset while the call was in flight")

    def _reset_head(self, previous: str | None, reason: str) -> None:
        self._reset_count += 1
        self.state.continuation_token = None
        logger.warning(
            f"Continuation {(previous or 'none')[:12]} not found, resetting chain: {reason}"
        )
        self.events.emit(
            EVENT_CHAIN_RESET,
            "Continuation not found; chain reset",
            metadata={"reason": "continuation_not_found", "previous": previous},
        )

    def _commit(self, turn: Turn) -> None:
        self.state.append(turn)
        self.state.continuation_token = turn.continuation_ref
        self._emit_turn(turn)
        self.events.emit(
            EVENT_CHAIN_ADVANCED,
            f"Chain head {turn.continuation_ref}",
            continuation_token=turn.continuation_ref,
        )

    def _emit_turn(self, turn: Turn) -> None:
        self.events.emit(
            EVENT_TURN_APPENDED,
            f"{turn.role.value} turn appended",
            turn=turn.to_dict(),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "turns": len(self.state.turns),
            "pending": len(self.state.pending),
            "continuation_token": self.state.continuation_token,
            "resets": self._reset_count,
            "successful_retries": self._retry_count,
            "queue": self.queue.get_stats(),
        }
