# =============================================================================
# Guardrails — Iteration, Tool-Call and Wall-Clock Ceilings
# =============================================================================
#
# Every external call the search loop makes goes through Guardrails:
#
#   guardrails.call(timeout, fn, *args)   → counts one tool call
#   guardrails.bounded(timeout, fn, *args) → time-bounded, not counted
#
# A call is refused (GuardrailExceeded) when the tool-call budget or the
# runtime is already spent. A call that is cut short because the runtime
# ran out (rather than by its own timeout) also raises GuardrailExceeded,
# so the controller can tell "the request is out of time" apart from "this
# call timed out" (TimeoutError).
#
# DESIGN DECISION: Runtime excludes time suspended on a clarification.
# LoopState.elapsed_ms carries the runtime consumed before a suspension;
# the clock restarts when the loop resumes.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.models.search import LoopLimits, LoopState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GuardrailExceeded(Exception):
    """A per-request ceiling was reached."""

    def __init__(self, ceiling: str) -> None:
        super().__init__(f"Search guardrail reached: {ceiling}")
        self.ceiling = ceiling  # "iterations" | "tool_calls" | "runtime"


class Guardrails:
    def __init__(
        self,
        state: LoopState,
        limits: LoopLimits,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._state = state
        self._limits = limits
        self._clock = clock
        self._started = clock()
        self._elapsed_before = state.elapsed_ms

    # --- Ceiling checks ---

    def elapsed_ms(self) -> int:
        return self._elapsed_before + round((self._clock() - self._started) * 1000)

    def remaining_seconds(self) -> float:
        return (self._limits.max_runtime_ms - self.elapsed_ms()) / 1000

    def check(self) -> None:
        """Raise if the tool-call budget or the runtime is spent."""
        if self._state.tool_calls >= self._limits.max_tool_calls:
            raise GuardrailExceeded("tool_calls")
        if self.remaining_seconds() <= 0:
            raise GuardrailExceeded("runtime")

    def check_iteration(self) -> None:
        """Top-of-iteration check: all three ceilings."""
        if self._state.iteration >= self._limits.max_iterations:
            raise GuardrailExceeded("iterations")
        self.check()

    def checkpoint(self) -> None:
        """Fold the running clock into state before the loop suspends."""
        self._state.elapsed_ms = self.elapsed_ms()
        self._elapsed_before = self._state.elapsed_ms
        self._started = self._clock()

    # --- Budgeted execution ---

    async def call(
        self, timeout: float, fn: Callable[..., Awaitable[T]], *args, **kwargs,
    ) -> T:
        """Count one tool call, then run it under `timeout`."""
        self.check()
        self._state.tool_calls += 1
        return await self.bounded(timeout, fn, *args, **kwargs)

    async def bounded(
        self, timeout: float, fn: Callable[..., Awaitable[T]], *args, **kwargs,
    ) -> T:
        """Run under min(timeout, remaining runtime) without counting a call."""
        remaining = self.remaining_seconds()
        if remaining <= 0:
            raise GuardrailExceeded("runtime")
        if remaining < timeout:
            try:
                return await asyncio.wait_for(fn(*args, **kwargs), remaining)
            except TimeoutError as e:
                logger.info("Call cut off by runtime ceiling after %.1fs", remaining)
                raise GuardrailExceeded("runtime") from e
        return await asyncio.wait_for(fn(*args, **kwargs), timeout)
