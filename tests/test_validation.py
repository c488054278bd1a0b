"""Tests for readiness polling."""

from __future__ import annotations

import itertools

import pytest

from provisioner.config import Config
from provisioner.errors import ValidationTimeoutError
from provisioner.validation import PollSchedule, ValidationState, ValidationWaiter


def schedule(**overrides: float) -> PollSchedule:
    values = {"timeout_seconds": 60.0, "initial_delay_seconds": 0.0, "max_delay_seconds": 0.0, "max_polls": 5}
    values.update(overrides)
    return PollSchedule(**values)  # type: ignore[arg-type]


class TestPollSchedule:
    """Tests for PollSchedule."""

    def test_exponential_backoff_capped(self) -> None:
        s = schedule(initial_delay_seconds=5, max_delay_seconds=30)
        assert [s.delay(i) for i in range(1, 6)] == [5, 10, 20, 30, 30]

    def test_from_config(self) -> None:
        config = Config(validation_timeout_seconds=900, validation_max_polls=7)
        s = PollSchedule.from_config(config)
        assert s.timeout_seconds == 900
        assert s.max_polls == 7


class TestValidationWaiter:
    """Tests for ValidationWaiter."""

    @pytest.mark.asyncio
    async def test_validated_after_polls(self) -> None:
        """Test that the waiter stops at the first successful check."""
        results = iter([False, False, True])

        async def check() -> bool:
            return next(results)

        outcome = await ValidationWaiter(schedule()).wait("certificate.site", check)

        assert outcome.state == ValidationState.VALIDATED
        assert outcome.polls == 3

    @pytest.mark.asyncio
    async def test_immediately_ready(self) -> None:
        async def check() -> bool:
            return True

        outcome = await ValidationWaiter(schedule()).wait("certificate.site", check)
        assert outcome.polls == 1

    @pytest.mark.asyncio
    async def test_poll_bound(self) -> None:
        """Test that exhausting the poll bound raises ValidationTimeoutError."""
        calls = 0

        async def check() -> bool:
            nonlocal calls
            calls += 1
            return False

        with pytest.raises(ValidationTimeoutError) as exc_info:
            await ValidationWaiter(schedule(max_polls=3)).wait("certificate.site", check)

        assert calls == 3
        assert exc_info.value.polls == 3
        assert exc_info.value.address == "certificate.site"
        assert exc_info.value.action == "validate"

    @pytest.mark.asyncio
    async def test_deadline(self) -> None:
        """Test that the deadline ends polling before the poll bound."""
        clock = itertools.chain([0.0, 5.0, 11.0], itertools.repeat(11.0))

        async def check() -> bool:
            return False

        waiter = ValidationWaiter(schedule(timeout_seconds=10, max_polls=100), clock=lambda: next(clock))
        with pytest.raises(ValidationTimeoutError, match="timed out after 11s") as exc_info:
            await waiter.wait("certificate.site", check)

        assert exc_info.value.polls == 2
