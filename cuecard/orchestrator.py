"""
Suggestion orchestration: debounce context updates, run one streamed
generation at a time, and publish partial and final suggestions.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional, Set, Tuple

from cuecard.cancellation import CancellationToken
from cuecard.errors import GenerationCancelled, GenerationError
from cuecard.events import DisplaySink, NullSink
from cuecard.models import (
    ContextView,
    ErrorNotice,
    StatusUpdate,
    SuggestionFinal,
    SuggestionPartial,
    TopicChanged,
)
from cuecard.prompt import build_prompt, normalize_action_type
from cuecard.providers.base import GenerationProvider
from cuecard.schema import extract_partial, parse_strict

logger = logging.getLogger(__name__)


class InFlightPolicy(str, Enum):
    """What an ordinary trigger does while a generation is running."""
    CANCEL_AND_RESTART = "cancel"
    DEFER_UNTIL_DONE = "defer"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    GENERATING = "generating"


class SuggestionOrchestrator:
    def __init__(
        self,
        context=None,
        provider: Optional[GenerationProvider] = None,
        sink: Optional[DisplaySink] = None,
        *,
        policy: InFlightPolicy = InFlightPolicy.CANCEL_AND_RESTART,
        short_debounce_ms: int = 200,
        long_debounce_ms: int = 500,
        min_segments_for_short: int = 2,
        partial_min_chars: int = 100,
        max_label_words: int = 15,
        clock: Callable[[], float] = time.time,
    ):
        self.context = context
        self.provider = provider
        self.sink = sink or NullSink()
        self.policy = InFlightPolicy(policy)
        self.short_debounce_ms = short_debounce_ms
        self.long_debounce_ms = long_debounce_ms
        self.min_segments_for_short = min_segments_for_short
        self.partial_min_chars = partial_min_chars
        self.max_label_words = max_label_words
        self._clock = clock

        self._debounce: Optional[asyncio.TimerHandle] = None
        self._active: Optional[Tuple[int, CancellationToken, asyncio.Task]] = None
        self._tasks: Set[asyncio.Task] = set()
        self._last_view: Optional[ContextView] = None
        self._next_id = 0
        self._reset_counters()

    def _reset_counters(self):
        self.started = 0
        self.completed = 0
        self.cancelled = 0
        self.failed = 0
        self.skipped = 0

    # -------------------- state --------------------

    @property
    def state(self) -> OrchestratorState:
        if self._active is not None:
            return OrchestratorState.GENERATING
        if self._debounce is not None:
            return OrchestratorState.DEBOUNCING
        return OrchestratorState.IDLE

    @property
    def generating(self) -> bool:
        return self._active is not None

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "policy": self.policy.value,
            "provider": getattr(self.provider, "name", None),
            "provider_ready": bool(self.provider and self.provider.is_ready()),
            "started": self.started,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    # -------------------- triggers --------------------

    def debounce_ms_for(self, view: ContextView) -> int:
        if view.recent_count >= self.min_segments_for_short:
            return self.short_debounce_ms
        return self.long_debounce_ms

    def on_snapshot(self, view: ContextView) -> None:
        """Ordinary trigger: (re)arm the debounce timer."""
        self._last_view = view
        self._cancel_debounce()

        if self.generating and self.policy == InFlightPolicy.DEFER_UNTIL_DONE:
            logger.debug("[Suggest] Generation in flight, deferring snapshot trigger")
            return

        delay_ms = self.debounce_ms_for(view)
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(delay_ms / 1000.0, self._debounce_fired)
        logger.debug("[Suggest] Debounce armed (recent=%d, delay=%dms)", view.recent_count, delay_ms)

    def on_topic_change(self, view: ContextView, event: TopicChanged) -> None:
        """Topic changes preempt everything and start at once."""
        self._last_view = view
        self._cancel_debounce()
        logger.info("[Suggest] Topic change (%s), starting immediately", event.topic)
        self._start_generation("suggestion")

    def _debounce_fired(self) -> None:
        self._debounce = None
        if self.generating and self.policy == InFlightPolicy.DEFER_UNTIL_DONE:
            logger.debug("[Suggest] Debounce fired while generating, skipping")
            return
        self._start_generation("suggestion")

    async def generate_now(self, action_type: str = "suggestion") -> Optional[SuggestionFinal]:
        """Manual request from the display. Cancels and restarts, then waits."""
        self._cancel_debounce()
        task = self._start_generation(normalize_action_type(action_type))
        return await task

    # -------------------- cancellation --------------------

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _cancel_inflight(self) -> None:
        if self._active is None:
            return
        gen_id, token, _task = self._active
        self._active = None
        if not token.cancelled:
            token.cancel()
            self.cancelled += 1
            logger.info("[Suggest] Cancelled generation %d", gen_id)

    def cancel(self) -> None:
        self._cancel_debounce()
        self._cancel_inflight()

    def reset(self) -> None:
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._last_view = None
        self._reset_counters()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------- generation --------------------

    def _current_view(self) -> Optional[ContextView]:
        if self.context is not None:
            return self.context.get_context_for_generation()
        return self._last_view

    def _start_generation(self, action_type: str) -> asyncio.Task:
        # At most one generation in flight
        self._cancel_inflight()
        self._next_id += 1
        gen_id = self._next_id
        token = CancellationToken()
        task = asyncio.get_running_loop().create_task(self._run(gen_id, token, action_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._active = (gen_id, token, task)
        return task

    def _publish(self, token: CancellationToken, event) -> bool:
        if token.cancelled:
            return False
        self.sink.publish(event)
        return True

    async def _run(self, gen_id: int, token: CancellationToken, action_type: str) -> Optional[SuggestionFinal]:
        try:
            return await self._generate(gen_id, token, action_type)
        except GenerationCancelled:
            return None
        except GenerationError as e:
            if not token.cancelled:
                self.failed += 1
                logger.warning("[Suggest] Generation %d failed: %s", gen_id, e)
                self._publish(token, ErrorNotice("suggestions", str(e), fatal=False, ts=self._clock()))
            return None
        except Exception as e:
            if not token.cancelled:
                self.failed += 1
                logger.exception("[Suggest] Unexpected error in generation %d", gen_id)
                self._publish(token, ErrorNotice("suggestions", f"Suggestion error: {e}", fatal=False, ts=self._clock()))
            return None
        finally:
            if self._active is not None and self._active[0] == gen_id:
                self._active = None

    async def _generate(self, gen_id: int, token: CancellationToken, action_type: str) -> Optional[SuggestionFinal]:
        token.raise_if_cancelled()
        view = self._current_view()
        prompt = build_prompt(action_type, view) if view is not None else None
        if prompt is None:
            self.skipped += 1
            logger.debug("[Suggest] Not enough context for generation %d, skipping", gen_id)
            return None

        if self.provider is None or not self.provider.is_ready():
            name = getattr(self.provider, "name", None) or "none"
            self.skipped += 1
            logger.warning("[Suggest] Provider %s not ready, skipping generation %d", name, gen_id)
            self._publish(token, ErrorNotice(
                "suggestions", f"Suggestion provider '{name}' is not configured", ts=self._clock()))
            self._publish(token, StatusUpdate("suggestions", "not_ready", name, ts=self._clock()))
            return None

        token.raise_if_cancelled()
        self.started += 1
        logger.info("[Suggest] Generation %d started (%s, prompt=%d chars)", gen_id, action_type, len(prompt))

        text = ""
        partial_sent = False
        async for piece in self.provider.stream(prompt, token):
            token.raise_if_cancelled()
            text += piece
            if not partial_sent and len(text) >= self.partial_min_chars:
                items = extract_partial(text, max_label_words=self.max_label_words)
                if items:
                    partial_sent = self._publish(token, SuggestionPartial(
                        generation_id=gen_id,
                        action_type=action_type,
                        suggestions=items,
                        ts=self._clock(),
                    ))
        token.raise_if_cancelled()

        parsed = parse_strict(text, self.max_label_words)
        final = SuggestionFinal(
            generation_id=gen_id,
            action_type=action_type,
            suggestions=parsed.suggestions,
            insights=parsed.insights,
            ts=self._clock(),
        )
        if not self._publish(token, final):
            return None
        self.completed += 1
        logger.info(
            "[Suggest] Generation %d complete (%d suggestions, %d insights)",
            gen_id, len(parsed.suggestions), len(parsed.insights),
        )

        if self.context is not None:
            self.context.mark_recent_processed(view.segment_ids)
        return final
