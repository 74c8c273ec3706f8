"""Enable disk encryption on the run's VM and wait for it to finish.

The orchestrator is a small state machine:

    NotStarted -> Enabling -> AwaitingProgress                       (DATA)
    NotStarted -> Enabling -> AwaitingRestartPending -> Restarting
               -> AwaitingPostRestartSuccess                         (OS/ALL)

Any waiting state can end in TimedOut or Failed; a completed flow ends in
Succeeded. Every state visited is appended to ``history``.

For OS/ALL the extension either asks for a restart (VMRestartPending) or
reports completion directly. When completion is observed first the restart
phases are skipped.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from adeval.command_runner import CommandRunner
from adeval.config import PollSettings
from adeval.encryption_status import FIRST_DATA_DISK_INDEX, EncryptionStatus
from adeval.exceptions import CommandError, PollTimeoutError, RunCancelledError, VerificationError
from adeval.models import (
    EncryptionState,
    PollOutcome,
    ResourceSet,
    RunReport,
    ValidationOptions,
    VolumeTarget,
)
from adeval.poll import PollLoop
from adeval.progress import ProgressDisplay

logger = logging.getLogger(__name__)


class EncryptionOrchestrator:
    """Drive ``az vm encryption enable`` through to a verified terminal state."""

    def __init__(
        self,
        runner: CommandRunner,
        resources: ResourceSet,
        options: ValidationOptions,
        settings: PollSettings | None = None,
        progress: ProgressDisplay | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: threading.Event | None = None,
    ):
        """Initialize orchestrator.

        Args:
            runner: Azure CLI command runner
            resources: Provisioned resources (VM, key vault, KEK, identity)
            options: Volume target and provisioning mode of the run
            settings: Poll budgets
            progress: Progress output
            sleep: Sleep function for wait loops (injectable for tests)
            clock: Monotonic clock used for run timing
            cancel_event: Optional event that stops any wait loop early
        """
        self.runner = runner
        self.resources = resources
        self.options = options
        self.settings = settings or PollSettings()
        self.progress = progress or ProgressDisplay()
        self._sleep = sleep
        self._clock = clock
        self._cancel_event = cancel_event

        self.state = EncryptionState.NOT_STARTED
        self.history: list[EncryptionState] = [self.state]
        self.started_at: float | None = None
        self.pre_reboot_seconds: float | None = None
        self.message = ""

    @property
    def volume_target(self) -> VolumeTarget:
        return self.options.volume_target

    def _transition(self, state: EncryptionState) -> None:
        logger.debug(f"Encryption state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _loop(self, interval: float, max_cycles: int, description: str) -> PollLoop:
        return PollLoop(
            interval=interval,
            max_cycles=max_cycles,
            description=description,
            sleep=self._sleep,
            cancel_event=self._cancel_event,
        )

    def _vm_args(self) -> list[str]:
        return ["--name", self.resources.vm, "--resource-group", self.resources.resource_group]

    def enable_args(self) -> list[str]:
        """Arguments of the ``az vm encryption enable`` call for this run."""
        args = [
            "vm",
            "encryption",
            "enable",
            *self._vm_args(),
            "--disk-encryption-keyvault",
            self.resources.key_vault_id,
            "--key-encryption-key",
            self.resources.kek_uri,
            "--key-encryption-keyvault",
            self.resources.kek_id,
            "--volume-type",
            self.volume_target.value,
        ]
        if not self.options.mode.single_pass:
            args.extend(
                [
                    "--aad-client-id",
                    self.resources.app_id,
                    "--aad-client-secret",
                    self.resources.app_secret,
                ]
            )
        if self.options.mode.encrypt_format_all:
            args.append("--encrypt-format-all")
        return args

    def show_status(self) -> EncryptionStatus:
        payload = self.runner.invoke(["vm", "encryption", "show", *self._vm_args()])
        return EncryptionStatus.from_payload(payload)

    def is_complete(self, status: EncryptionStatus) -> bool:
        """Completion criterion for the OS volume under the run's credential mode."""
        if self.options.mode.single_pass:
            return status.os_volume_stamped
        return status.os_volume_succeeded

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at

    def report(self) -> RunReport:
        """Timing and status of the run so far."""
        return RunReport(
            status=self.state,
            total_seconds=self.elapsed(),
            pre_reboot_seconds=self.pre_reboot_seconds,
            message=self.message,
        )

    def _fail(self, message: str) -> VerificationError:
        self.message = message
        self._transition(EncryptionState.FAILED)
        logger.error(message)
        return VerificationError(message)

    def _time_out(self, phase: str, loop: PollLoop) -> PollTimeoutError:
        error = PollTimeoutError(phase, loop.budget_seconds)
        self.message = str(error)
        self._transition(EncryptionState.TIMED_OUT)
        logger.error(self.message)
        return error

    def _cancel(self, phase: str) -> RunCancelledError:
        self.message = f"Cancelled while waiting for {phase}"
        self._transition(EncryptionState.FAILED)
        logger.warning(self.message)
        return RunCancelledError(self.message)

    def abort(self, message: str) -> None:
        """Mark a started run Failed after an interruption outside the wait loops."""
        if self.state is EncryptionState.NOT_STARTED or self.state.is_terminal:
            return
        self.message = message
        self._transition(EncryptionState.FAILED)
        logger.error(message)

    def _check(self, outcome: PollOutcome, phase: str, loop: PollLoop) -> Any:
        """Turn a non-successful poll outcome into the matching terminal state."""
        if outcome.is_success:
            self.progress.complete()
            return outcome.result
        self.progress.complete(success=False)
        if outcome.is_failure:
            self.message = f"{phase} failed: {outcome.error}"
            self._transition(EncryptionState.FAILED)
            if isinstance(outcome.error, CommandError):
                raise outcome.error
            raise VerificationError(self.message) from outcome.error
        if outcome.cancelled:
            raise self._cancel(phase)
        raise self._time_out(phase, loop)

    def _report_progress(self, loop: PollLoop) -> Callable[[Any], None]:
        cycle = 0

        def report(status: EncryptionStatus) -> None:
            nonlocal cycle
            cycle += 1
            self.progress.waiting(cycle, loop.max_cycles, status.summary())

        return report

    def run(self) -> RunReport:
        """Enable encryption and wait for the volume target to complete.

        Returns:
            RunReport with status Succeeded

        Raises:
            CommandError: If enabling or a status query fails
            PollTimeoutError: If a wait budget runs out (state TimedOut)
            VerificationError: If metadata or restart checks fail (state Failed)
        """
        self.started_at = self._clock()
        try:
            self.enable()
            if self.volume_target is VolumeTarget.DATA:
                self._await_data_volumes()
                if self.options.mode.single_pass:
                    self._verify_data_metadata()
            else:
                status = self._await_restart_pending()
                if not self.is_complete(status):
                    self._restart_vm()
                    self._await_post_restart()
        except CommandError as e:
            if not self.state.is_terminal:
                self.message = str(e)
                self._transition(EncryptionState.FAILED)
            raise

        self.message = f"Encryption of {self.volume_target.value} volumes succeeded"
        self._transition(EncryptionState.SUCCEEDED)
        report = self.report()
        logger.info(f"Total encryption time: {RunReport.format_duration(report.total_seconds)}")
        return report

    def enable(self) -> None:
        self._transition(EncryptionState.ENABLING)
        self.progress.start_phase(f"Enabling encryption ({self.volume_target.value})")
        try:
            self.runner.invoke(self.enable_args())
        except CommandError:
            self.progress.complete(success=False)
            self.message = "az vm encryption enable failed"
            self._transition(EncryptionState.FAILED)
            raise
        self.progress.complete()

    def _await_data_volumes(self) -> None:
        self._transition(EncryptionState.AWAITING_PROGRESS)
        loop = self._loop(
            self.settings.data_encryption_interval,
            self.settings.data_encryption_max_cycles,
            "data volume encryption",
        )
        self.progress.start_phase("Waiting for data volume encryption", loop.budget_seconds)
        outcome = loop.run(
            query=self.show_status,
            success=lambda status: status.data_volumes_succeeded,
            on_retry=self._report_progress(loop),
        )
        self._check(outcome, "data volume encryption", loop)

    def _verify_data_metadata(self) -> None:
        """Check the data disk is stamped, then that disabling clears the stamp."""
        status = self.show_status()
        if status.disk_encryption_enabled(FIRST_DATA_DISK_INDEX) is not True:
            raise self._fail("Data disk did not get stamped even though extension reports success.")

        self.progress.start_phase("Disabling data volume encryption to check metadata clearing")
        self.runner.invoke(["vm", "encryption", "disable", *self._vm_args(), "--volume-type", "DATA"])
        self.progress.complete()

        loop = self._loop(
            self.settings.disable_check_interval,
            self.settings.disable_check_max_cycles,
            "metadata clearing",
        )
        self.progress.start_phase("Waiting for data disk metadata to clear", loop.budget_seconds)
        outcome = loop.run(
            query=self.show_status,
            success=lambda s: s.disk_encryption_enabled(FIRST_DATA_DISK_INDEX) is not True,
            on_retry=self._report_progress(loop),
        )
        if outcome.is_timeout and not outcome.cancelled:
            self.progress.complete(success=False)
            raise self._fail("Data disk did not get un-stamped even though extension reports success.")
        self._check(outcome, "metadata clearing", loop)

    def _await_restart_pending(self) -> EncryptionStatus:
        self._transition(EncryptionState.AWAITING_RESTART_PENDING)
        max_cycles = self.settings.os_encryption_max_cycles
        if self.volume_target is VolumeTarget.ALL and self.options.mode.encrypt_format_all:
            max_cycles = self.settings.format_all_encryption_max_cycles
        loop = self._loop(self.settings.os_encryption_interval, max_cycles, "OS volume encryption")
        self.progress.start_phase("Waiting for OS volume encryption", loop.budget_seconds)
        outcome = loop.run(
            query=self.show_status,
            success=lambda status: status.restart_pending or self.is_complete(status),
            on_retry=self._report_progress(loop),
        )
        status = self._check(outcome, "OS volume encryption", loop)
        self.pre_reboot_seconds = self.elapsed()
        logger.info(f"Pre-reboot encryption time: {RunReport.format_duration(self.pre_reboot_seconds)}")
        return status

    def _restart_vm(self) -> None:
        """Restart the VM, then restart again while the extension still reports a pending restart.

        At most ``restart_max_attempts`` restarts are issued, the first one
        unconditionally.
        """
        self._transition(EncryptionState.RESTARTING)
        attempts = 0

        def restart(_status: EncryptionStatus | None = None) -> None:
            nonlocal attempts
            attempts += 1
            self.progress.waiting(attempts, self.settings.restart_max_attempts, "restarting VM")
            self.runner.invoke(["vm", "restart", *self._vm_args()])

        loop = self._loop(
            self.settings.restart_interval,
            self.settings.restart_max_attempts,
            "VM restart",
        )
        self.progress.start_phase("Restarting VM to finish OS volume encryption")
        restart()
        outcome = loop.run(
            query=self.show_status,
            success=lambda status: not status.restart_pending,
            on_retry=restart,
        )
        if outcome.is_timeout and not outcome.cancelled:
            self.progress.complete(success=False)
            raise self._fail(
                "VM restart threshold expired - unable to reboot VM after multiple vm restart attempts"
            )
        self._check(outcome, "VM restart", loop)

    def _await_post_restart(self) -> None:
        self._transition(EncryptionState.AWAITING_POST_RESTART_SUCCESS)
        loop = self._loop(
            self.settings.post_restart_interval,
            self.settings.post_restart_max_cycles,
            "OS volume encryption after restart",
        )
        self.progress.start_phase("Waiting for OS volume encryption after restart", loop.budget_seconds)
        outcome = loop.run(
            query=self.show_status,
            success=self.is_complete,
            on_retry=self._report_progress(loop),
        )
        self._check(outcome, "OS disk encryption success message after restart", loop)


__all__ = ["EncryptionOrchestrator"]
