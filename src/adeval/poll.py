"""Bounded polling for long-running remote operations.

Every "wait for remote state" step in adeval goes through PollLoop: role
assignment propagation, setup script completion, encryption progress, VM
restart and post-restart completion.

Each cycle calls the query once and evaluates the predicates against its
result. A loop ends in exactly one PollOutcome: Succeeded, TimedOut after
max_cycles unsuccessful cycles, or Failed.

Usage:
    loop = PollLoop(interval=60, max_cycles=10, description="setup script")
    outcome = loop.run(
        query=lambda: runner.invoke(["storage", "blob", "exists", ...]),
        success=lambda result: contains_marker(result, '"exists": true'),
    )
"""

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from adeval.models import PollOutcome

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]


def payload_text(payload: Any) -> str:
    """Render a query result as text for marker search."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload)


def contains_marker(payload: Any, marker: str) -> bool:
    """True when ``marker`` appears anywhere in the query output."""
    return marker in payload_text(payload)


def contains_any_marker(payload: Any, markers: tuple[str, ...]) -> bool:
    text = payload_text(payload)
    return any(marker in text for marker in markers)


class PollLoop:
    """Repeatedly query remote state until a predicate holds or the budget runs out."""

    def __init__(
        self,
        interval: float,
        max_cycles: int,
        description: str = "operation",
        sleep: Callable[[float], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        """Initialize poll loop.

        Args:
            interval: Seconds to wait between unsuccessful cycles
            max_cycles: Number of query cycles before giving up
            description: Name used in log messages
            sleep: Sleep function (injectable for tests)
            cancel_event: Optional event that stops the loop between cycles;
                the outcome is TimedOut with ``cancelled`` set
        """
        if max_cycles < 1:
            raise ValueError(f"max_cycles must be at least 1, got {max_cycles}")
        if interval < 0:
            raise ValueError(f"interval must not be negative, got {interval}")
        self.interval = interval
        self.max_cycles = max_cycles
        self.description = description
        self._sleep = sleep or time.sleep
        self._cancel_event = cancel_event

    @property
    def budget_seconds(self) -> float:
        """Total wait the loop may spend sleeping."""
        return self.interval * self.max_cycles

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _cancel(self, cycle: int, last_result: Any) -> PollOutcome:
        logger.warning(f"{self.description}: cancelled after {cycle} checks")
        return PollOutcome.timed_out(cycle, result=last_result, cancelled=True)

    def run(
        self,
        query: Callable[[], Any],
        success: Predicate,
        failure: Predicate | None = None,
        on_retry: Callable[[Any], None] | None = None,
        tolerate: tuple[type[BaseException], ...] = (),
    ) -> PollOutcome:
        """Poll until success, failure or exhaustion of the cycle budget.

        Args:
            query: Zero-argument callable querying remote state
            success: Predicate over the query result that ends the loop successfully
            failure: Optional predicate that ends the loop as Failed
            on_retry: Called with the query result after each unsuccessful cycle
                that will be followed by another one
            tolerate: Exception types raised by the query that count as an
                unsuccessful cycle instead of ending the loop

        Returns:
            PollOutcome describing how the loop ended
        """
        last_result: Any = None

        for cycle in range(1, self.max_cycles + 1):
            try:
                last_result = query()
            except tolerate as e:
                logger.debug(f"{self.description}: cycle {cycle}/{self.max_cycles} not ready: {e}")
                last_result = None
            except Exception as e:
                logger.error(f"{self.description}: query failed on cycle {cycle}: {e}")
                return PollOutcome.failed(cycle, error=e)
            else:
                if success(last_result):
                    if cycle > 1:
                        logger.info(f"{self.description} completed after {cycle} checks")
                    return PollOutcome.succeeded(last_result, cycle)
                if failure is not None and failure(last_result):
                    logger.error(f"{self.description} reported failure on cycle {cycle}")
                    return PollOutcome.failed(cycle, result=last_result)

            if cycle == self.max_cycles:
                break

            if self._cancelled():
                return self._cancel(cycle, last_result)

            if on_retry is not None:
                on_retry(last_result)

            logger.debug(
                f"{self.description}: waiting {self.interval:g}s "
                f"(check {cycle}/{self.max_cycles})"
            )
            if self._cancel_event is not None:
                if self._cancel_event.wait(self.interval):
                    return self._cancel(cycle, last_result)
            else:
                self._sleep(self.interval)

        logger.warning(f"{self.description}: gave up after {self.max_cycles} checks")
        return PollOutcome.timed_out(self.max_cycles, result=last_result)


__all__ = ["PollLoop", "contains_any_marker", "contains_marker", "payload_text"]
