"""Bounded tool-call loop wrapped around the per-round splitter."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence

from .cancellation import CancellationToken
from .errors import StreamRelayError, ToolExecutionError, ToolLoopExhaustedError
from .events import EventSink, EventType, OrchestratorEvent, emit
from .message_builder import interleave_messages
from .tools import ToolExecutor
from .types import OrchestratorState, RequestMessage, ToolCallResult

__all__ = ["DEFAULT_MAX_TOOL_ROUNDS", "RoundRunner", "ToolLoopController"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 8

# Issues one completion request for ``state.transcript`` and consumes its stream.
RoundRunner = Callable[[OrchestratorState], Awaitable[None]]


class ToolLoopController:
    """Runs completion rounds until the answer requests no more tool calls.

    Every round after the first sees the previous transcript extended by the
    assistant's raw answer and one user message per tool result. The
    transcript only ever grows; earlier entries are never rewritten.

    Args:
        executor: Tool collaborator, or ``None`` to disable tool calls.
        sink: Event sink for tool error events.
        cancel: Request-scoped cancellation token.
        max_rounds: Maximum number of completion rounds, including the first.
        strict_alternation: Whether transcripts must alternate user/assistant.
    """

    def __init__(
        self,
        executor: ToolExecutor | None,
        *,
        sink: EventSink | None,
        cancel: CancellationToken,
        max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        strict_alternation: bool = False,
    ) -> None:
        self._executor = executor
        self._sink = sink
        self._cancel = cancel
        self._max_rounds = max(1, int(max_rounds))
        self._strict_alternation = strict_alternation

    @property
    def max_rounds(self) -> int:
        return self._max_rounds

    async def run(self, state: OrchestratorState, run_round: RoundRunner) -> int:
        """Drive rounds starting at zero and return how many were run.

        Raises:
            ToolLoopExhaustedError: When the answer still requests tools after
                ``max_rounds`` rounds.
        """
        round_index = 0
        while True:
            state.begin_round(round_index)
            await run_round(state)
            if state.paused:
                LOGGER.debug("Skipping tool scan for paused round %s", round_index)
                return round_index + 1

            results = await self._execute(state, round_index)
            if not results:
                return round_index + 1
            if round_index + 1 >= self._max_rounds:
                LOGGER.warning("Tool loop stopped after %s rounds", self._max_rounds)
                raise ToolLoopExhaustedError(
                    details={"pending_calls": [result.source_call_id for result in results]},
                    max_rounds=self._max_rounds,
                )

            state.tool_responses.extend(results)
            self._append_round(state, results)
            round_index += 1

    async def _execute(self, state: OrchestratorState, round_index: int) -> Sequence[ToolCallResult]:
        if self._executor is None:
            return ()
        answer = state.answer_text
        try:
            results = await self._cancel.guard(
                self._executor.execute(answer, tuple(state.tool_responses), round_index)
            )
        except ToolExecutionError as exc:
            LOGGER.warning("Tool executor failed in round %s: %s", round_index, exc)
            await self._emit_error(exc, round_index)
            return ()
        for result in results:
            if not result.succeeded:
                await self._emit_error(self._as_error(result), round_index)
        return list(results)

    def _append_round(self, state: OrchestratorState, results: Sequence[ToolCallResult]) -> None:
        state.extend_transcript(
            RequestMessage(role="assistant", content=state.answer_text),
            *(result.to_request_message() for result in results),
        )
        if self._strict_alternation:
            state.transcript = interleave_messages(state.transcript)

    @staticmethod
    def _as_error(result: ToolCallResult) -> StreamRelayError:
        if isinstance(result.error, StreamRelayError):
            return result.error
        return ToolExecutionError(
            message=str(result.error) or "Tool execution failed",
            tool_name=result.name,
            call_id=result.source_call_id,
        )

    async def _emit_error(self, error: StreamRelayError, round_index: int) -> None:
        await emit(self._sink, OrchestratorEvent(type=EventType.ERROR, round_index=round_index, error=error.to_dict()))
