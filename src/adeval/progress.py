"""
Progress Display Module

Stage-based progress lines for phases that can run for hours: provisioning
steps, encryption waits, restarts and teardown.
"""

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TextIO

logger = logging.getLogger(__name__)


class ProgressStage(Enum):
    """Progress stage indicators."""

    STARTED = "started"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    WARNING = "warning"


@dataclass
class ProgressUpdate:
    """One line of progress output."""

    stage: ProgressStage
    message: str
    timestamp: float
    phase: str


class ProgressDisplay:
    """
    Progress output for a validation run.

    Each phase is started, receives any number of waiting updates, and is
    completed with its elapsed time appended.
    """

    SYMBOLS = {
        ProgressStage.STARTED: "►",
        ProgressStage.WAITING: "...",
        ProgressStage.COMPLETED: "✓",
        ProgressStage.FAILED: "✗",
        ProgressStage.WARNING: "⚠",
    }

    ASCII_SYMBOLS = {
        ProgressStage.STARTED: ">",
        ProgressStage.WAITING: "...",
        ProgressStage.COMPLETED: "OK",
        ProgressStage.FAILED: "FAIL",
        ProgressStage.WARNING: "WARN",
    }

    def __init__(
        self,
        use_unicode: bool = True,
        output_file: TextIO | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.use_unicode = use_unicode
        self.output_file = output_file or sys.stdout
        self.current_phase: str | None = None
        self.phase_started: float | None = None
        self.updates: list[ProgressUpdate] = []
        self._clock = clock

    def start_phase(self, name: str, budget_seconds: float | None = None) -> None:
        """Begin a phase, optionally announcing its wait budget."""
        self.current_phase = name
        self.phase_started = self._clock()

        message = name
        if budget_seconds:
            message += f" (up to {self.format_duration(budget_seconds)})"
        self.update(message, ProgressStage.STARTED)

    def waiting(self, cycle: int, max_cycles: int, detail: str | None = None) -> None:
        """Report one unsuccessful poll cycle."""
        message = f"[{time.strftime('%H:%M:%S')}] check {cycle}/{max_cycles}"
        if detail:
            message += f": {detail}"
        self.update(message, ProgressStage.WAITING)

    def warn(self, message: str) -> None:
        self.update(message, ProgressStage.WARNING)

    def complete(self, success: bool = True, message: str | None = None) -> None:
        """Finish the current phase and print its elapsed time."""
        stage = ProgressStage.COMPLETED if success else ProgressStage.FAILED
        final_message = message or f"{self.current_phase} {'done' if success else 'failed'}"

        if self.phase_started is not None:
            final_message += f" ({self.format_duration(self._clock() - self.phase_started)})"

        self.update(final_message, stage)
        self.current_phase = None
        self.phase_started = None

    def update(self, message: str, stage: ProgressStage = ProgressStage.WAITING) -> None:
        update = ProgressUpdate(
            stage=stage,
            message=message,
            timestamp=time.time(),
            phase=self.current_phase or "run",
        )
        self.updates.append(update)
        symbols = self.SYMBOLS if self.use_unicode else self.ASCII_SYMBOLS
        print(f"{symbols[stage]} {message}", file=self.output_file, flush=True)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format a duration such as ``45s``, ``12m 5s`` or ``6h 0m``."""
        if seconds < 60:
            return f"{seconds:.0f}s"
        if seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        return f"{int(seconds // 3600)}h {int(seconds % 3600 // 60)}m"


__all__ = ["ProgressDisplay", "ProgressStage", "ProgressUpdate"]
