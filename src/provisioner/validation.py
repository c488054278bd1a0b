"""Readiness polling for externally validated resources.

A DNS-validated certificate is created immediately but only becomes usable
once a third party has observed its validation records. The waiter models
this as a small state machine:

    PENDING --check ok--> VALIDATED
    PENDING --deadline or poll bound--> TIMED_OUT (ValidationTimeoutError)

Checks back off exponentially between polls. Waiting suspends only the task
that owns the resource; other changes keep running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .config import Config
from .errors import ValidationTimeoutError

logger = logging.getLogger(__name__)


class ValidationState(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class PollSchedule:
    """Bounds for one validation wait."""

    timeout_seconds: float
    initial_delay_seconds: float
    max_delay_seconds: float
    max_polls: int

    @classmethod
    def from_config(cls, config: Config) -> PollSchedule:
        return cls(
            timeout_seconds=config.validation_timeout_seconds,
            initial_delay_seconds=config.validation_poll_initial_seconds,
            max_delay_seconds=config.validation_poll_max_seconds,
            max_polls=config.validation_max_polls,
        )

    def delay(self, poll: int) -> float:
        """Delay after the ``poll``-th unsuccessful check (1-based)."""
        return min(self.initial_delay_seconds * (2 ** (poll - 1)), self.max_delay_seconds)


@dataclass
class ValidationOutcome:
    state: ValidationState
    polls: int
    waited_seconds: float


class ValidationWaiter:
    """Polls a readiness check until it succeeds or the schedule runs out."""

    def __init__(
        self,
        schedule: PollSchedule,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._schedule = schedule
        self._clock = clock

    async def wait(self, address: str, check: Callable[[], Awaitable[bool]]) -> ValidationOutcome:
        """Poll ``check`` for ``address``.

        Raises:
            ValidationTimeoutError: If the deadline or the poll bound is reached.
        """
        started = self._clock()
        polls = 0
        state = ValidationState.PENDING

        while state == ValidationState.PENDING:
            polls += 1
            if await check():
                state = ValidationState.VALIDATED
                break

            elapsed = self._clock() - started
            remaining = self._schedule.timeout_seconds - elapsed
            if polls >= self._schedule.max_polls or remaining <= 0:
                state = ValidationState.TIMED_OUT
                break

            delay = min(self._schedule.delay(polls), remaining)
            logger.info(
                "Waiting for validation",
                extra={"address": address, "poll": polls, "wait_seconds": round(delay, 2)},
            )
            await asyncio.sleep(delay)

        waited = self._clock() - started
        if state == ValidationState.TIMED_OUT:
            logger.error(
                "Validation timed out",
                extra={"address": address, "polls": polls, "waited_seconds": round(waited, 2)},
            )
            raise ValidationTimeoutError(address, waited, polls)

        logger.info(
            "Validation complete",
            extra={"address": address, "polls": polls, "waited_seconds": round(waited, 2)},
        )
        return ValidationOutcome(state=state, polls=polls, waited_seconds=waited)
