"""One end-to-end validation run.

Sequences prerequisite checks, provisioning, encryption and teardown, and
renders the final report. Any failure after prerequisites triggers teardown
of whatever the run created before the error propagates.
"""

import logging
import threading
import time
from collections.abc import Callable

import click
from rich.console import Console
from rich.table import Table

from adeval.command_runner import AzureCliRunner, CommandRunner
from adeval.config import PollSettings, get_poll_settings
from adeval.exceptions import RunCancelledError
from adeval.models import (
    EncryptionState,
    PresuppliedResources,
    ResourceSet,
    RunReport,
    ValidationOptions,
)
from adeval.names import ResourceNames
from adeval.orchestrator import EncryptionOrchestrator
from adeval.prerequisites import PrerequisiteChecker
from adeval.progress import ProgressDisplay
from adeval.provisioning import ProvisioningPipeline
from adeval.teardown import TeardownManager

logger = logging.getLogger(__name__)


class ValidationRun:
    """Provision a VM, encrypt it, verify the result and clean up."""

    def __init__(
        self,
        options: ValidationOptions,
        runner: CommandRunner | None = None,
        presupplied: PresuppliedResources | None = None,
        names: ResourceNames | None = None,
        settings: PollSettings | None = None,
        progress: ProgressDisplay | None = None,
        console: Console | None = None,
        echo: Callable[[str], None] = click.echo,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: threading.Event | None = None,
    ):
        self.options = options
        self.settings = settings or get_poll_settings()
        self.runner = runner or AzureCliRunner(timeout=self.settings.command_timeout)
        self.presupplied = presupplied or PresuppliedResources()
        self.names = names or ResourceNames.random()
        self.progress = progress or ProgressDisplay()
        self.console = console or Console()
        self.echo = echo
        self._sleep = sleep
        self._clock = clock
        self.cancel_event = cancel_event

        self.resources = ResourceSet()
        self.teardown_manager = TeardownManager(self.runner, echo=echo)
        self.orchestrator = EncryptionOrchestrator(
            self.runner,
            self.resources,
            options,
            settings=self.settings,
            progress=self.progress,
            sleep=sleep,
            clock=clock,
            cancel_event=cancel_event,
        )

    def execute(self) -> RunReport:
        """Run the validation.

        Returns:
            RunReport of a successful run

        Raises:
            PreconditionError: If tooling or login is missing (nothing is created)
            AdevalError: Any failure after provisioning started, re-raised after teardown
            RunCancelledError: If the cancel event fires between stages

        Any other exception, KeyboardInterrupt included, also triggers teardown
        before it propagates.
        """
        account = PrerequisiteChecker.ensure_ready(self.runner)
        self.resources.subscription_id = account.subscription_id
        logger.info(f"Resource prefix for this run: {self.names.prefix}")

        pipeline = ProvisioningPipeline(
            self.runner,
            self.options,
            self.names,
            self.resources,
            presupplied=self.presupplied,
            settings=self.settings,
            progress=self.progress,
            on_identity_created=self.teardown_manager.print_delete_instructions,
            sleep=self._sleep,
            cancel_event=self.cancel_event,
        )
        started = self._clock()

        try:
            pipeline.run()
            self.teardown_manager.print_delete_instructions(self.resources)
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RunCancelledError("Cancelled after provisioning")
            report = self.orchestrator.run()
        except BaseException as e:
            description = _describe(e)
            logger.error(f"Validation failed: {description}")
            self.orchestrator.abort(description)
            report = self._failure_report(description, self._clock() - started)
            self.render(report)
            if self.options.auto_delete:
                self.teardown_manager.print_delete_instructions(self.resources)
            self.teardown_manager.teardown(self.resources, self.options.auto_delete)
            raise

        self.render(report)
        self.teardown_manager.teardown(self.resources, self.options.auto_delete)
        return report

    def _failure_report(self, message: str, elapsed: float) -> RunReport:
        if self.orchestrator.state.is_terminal:
            return self.orchestrator.report()
        return RunReport(
            status=EncryptionState.FAILED,
            total_seconds=elapsed,
            pre_reboot_seconds=self.orchestrator.pre_reboot_seconds,
            message=message,
        )

    def render(self, report: RunReport) -> None:
        """Print the run summary as a table."""
        status_style = "green" if report.succeeded else "red"

        table = Table(title="Disk Encryption Validation", show_header=True)
        table.add_column("Item", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")

        table.add_row("Status", f"[{status_style}]{report.status.value}[/{status_style}]")
        table.add_row("Image", self.options.image)
        table.add_row("Location", self.options.location)
        table.add_row("Volume type", self.options.volume_target.value)
        table.add_row("Single pass", "yes" if self.options.mode.single_pass else "no")
        table.add_row("Encrypt format all", "yes" if self.options.mode.encrypt_format_all else "no")
        if report.pre_reboot_seconds is not None:
            table.add_row("Pre-reboot encryption time", RunReport.format_duration(report.pre_reboot_seconds))
        table.add_row("Total encryption time", RunReport.format_duration(report.total_seconds))
        if report.message:
            table.add_row("Message", report.message)

        self.console.print(table)


def _describe(error: BaseException) -> str:
    if isinstance(error, KeyboardInterrupt):
        return "Interrupted"
    return str(error) or type(error).__name__


__all__ = ["ValidationRun"]
