from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .clock import Clock, SystemClock

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    initial_delay: float = 2.0
    interval: float = 4.0
    jitter: float = 1.0
    max_attempts: int = 60
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    request_timeout: float = 15.0

    def next_interval(self, rng: random.Random) -> float:
        if self.jitter <= 0:
            return self.interval
        return max(0.0, self.interval + rng.uniform(-self.jitter, self.jitter))

    def backoff(self, consecutive_errors: int) -> float:
        exponent = max(0, consecutive_errors - 1)
        return min(self.backoff_cap, self.backoff_base * (2 ** exponent))


@dataclass
class PollOutcome(Generic[T]):
    attempts: int
    result: Optional[T] = None
    terminal: bool = False
    last_error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return not self.terminal


class StatusPoller:
    """
    Bounded polling loop shared by every executor that can report status.

    Each attempt fetches once (with a timeout). Transport errors and timeouts
    use up an attempt and back off exponentially; successful non-terminal
    reads wait the jittered interval. Cancellation is never swallowed.
    """

    def __init__(
        self,
        policy: PollPolicy | None = None,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._policy = policy or PollPolicy()
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    async def run(
        self,
        fetch: Callable[[], Awaitable[T]],
        is_terminal: Callable[[T], bool],
        on_result: Callable[[T], Awaitable[None]],
        *,
        label: str = "",
    ) -> PollOutcome[T]:
        policy = self._policy
        outcome: PollOutcome[T] = PollOutcome(attempts=0)
        consecutive_errors = 0

        await self._clock.sleep(policy.initial_delay)

        while outcome.attempts < policy.max_attempts:
            outcome.attempts += 1
            try:
                result = await asyncio.wait_for(fetch(), timeout=policy.request_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                consecutive_errors += 1
                outcome.last_error = f"status read timed out after {policy.request_timeout:g}s"
                LOGGER.warning("poll %s attempt %d: %s", label, outcome.attempts, outcome.last_error)
                await self._backoff(outcome, consecutive_errors)
                continue
            except Exception as exc:
                consecutive_errors += 1
                outcome.last_error = str(exc) or type(exc).__name__
                LOGGER.warning(
                    "poll %s attempt %d failed: %s", label, outcome.attempts, outcome.last_error
                )
                await self._backoff(outcome, consecutive_errors)
                continue

            consecutive_errors = 0
            outcome.result = result
            await on_result(result)
            if is_terminal(result):
                outcome.terminal = True
                return outcome

            if outcome.attempts < policy.max_attempts:
                await self._clock.sleep(policy.next_interval(self._rng))

        LOGGER.warning("poll %s gave up after %d attempts", label, outcome.attempts)
        return outcome

    async def _backoff(self, outcome: PollOutcome[T], consecutive_errors: int) -> None:
        if outcome.attempts < self._policy.max_attempts:
            await self._clock.sleep(self._policy.backoff(consecutive_errors))
