"""Tests for a complete validation run with a faked Azure CLI."""

import io
import threading
from unittest.mock import patch

import pytest
from rich.console import Console

from adeval.exceptions import PreconditionError, RunCancelledError, UsageError, VerificationError
from adeval.models import (
    EncryptionState,
    PresuppliedResources,
    ProvisioningMode,
    ValidationOptions,
    VolumeTarget,
)
from adeval.names import ResourceNames
from adeval.validation import ValidationRun
from tests.mocks.azure_cli import APP_ID

OS_SUCCEEDED = {"status": [{"message": "Encryption succeeded for OS volume"}]}


def data_show(second_disk_enabled):
    return {
        "status": [{"message": "Encryption succeeded for data volumes"}],
        "disks": [
            {"encryptionSettings": [{"enabled": True}]},
            {"encryptionSettings": [{"enabled": second_disk_enabled}]},
        ],
    }


@pytest.fixture
def az_installed():
    with patch("adeval.prerequisites.shutil.which", return_value="/usr/bin/az"):
        yield


def make_run(runner, quiet_progress, no_sleep, echoed, cancel_event=None, **option_overrides):
    options = {
        "image": "Canonical:UbuntuServer:18.04-LTS:latest",
        "location": "westus2",
    }
    options.update(option_overrides)
    return ValidationRun(
        ValidationOptions(**options),
        runner=runner,
        names=ResourceNames.from_prefix("adetest"),
        progress=quiet_progress,
        console=Console(file=io.StringIO(), width=120),
        echo=echoed.append,
        sleep=no_sleep,
        cancel_event=cancel_event,
    )


@pytest.mark.usefixtures("az_installed")
class TestValidationRun:
    """Tests for ValidationRun.execute."""

    def test_successful_os_run_deletes_created_resources(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("vm", "encryption", "show", result=OS_SUCCEEDED)
        echoed = []

        report = make_run(provisioning_runner, quiet_progress, no_sleep, echoed).execute()

        assert report.status is EncryptionState.SUCCEEDED
        assert provisioning_runner.calls_to("group", "delete") == [
            ["group", "delete", "-n", "adetestrg", "--no-wait", "--yes"]
        ]
        assert provisioning_runner.calls_to("ad", "app", "delete") == [["ad", "app", "delete", "--id", APP_ID]]
        assert "az group delete -n adetestrg --no-wait" in echoed

    def test_summary_table_is_rendered(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("vm", "encryption", "show", result=OS_SUCCEEDED)
        run = make_run(provisioning_runner, quiet_progress, no_sleep, [])

        run.execute()

        output = run.console.file.getvalue()
        assert "Disk Encryption Validation" in output
        assert "Succeeded" in output
        assert "westus2" in output

    def test_delete_instructions_printed_when_app_is_created(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("vm", "encryption", "show", result=OS_SUCCEEDED)
        echoed = []

        make_run(provisioning_runner, quiet_progress, no_sleep, echoed).execute()

        assert echoed[0] == "In case of test failure, resources can be deleted as follows:"
        assert f"az ad app delete --id {APP_ID}" in echoed

    def test_unstamped_data_disk_fails_and_tears_down(self, provisioning_runner, quiet_progress, no_sleep):
        """Single pass DATA with disks[1] enabled=false fails after cleanup."""
        provisioning_runner.on("vm", "encryption", "show", result=data_show(False))
        run = make_run(
            provisioning_runner,
            quiet_progress,
            no_sleep,
            [],
            volume_target=VolumeTarget.DATA,
            mode=ProvisioningMode.from_flags(singlepass=True),
        )

        with pytest.raises(VerificationError):
            run.execute()

        assert run.orchestrator.state is EncryptionState.FAILED
        assert provisioning_runner.called("group", "delete")
        assert not provisioning_runner.called("ad", "app", "create")
        assert "Failed" in run.console.file.getvalue()

    def test_interrupt_during_encryption_wait_tears_down(self, provisioning_runner, quiet_progress, no_sleep):
        """Ctrl+C while waiting on the extension still deletes the resource group."""
        provisioning_runner.on("vm", "encryption", "show", result=KeyboardInterrupt())
        run = make_run(provisioning_runner, quiet_progress, no_sleep, [])

        with pytest.raises(KeyboardInterrupt):
            run.execute()

        assert provisioning_runner.called("group", "delete")
        assert run.orchestrator.state is EncryptionState.FAILED
        assert run.orchestrator.message == "Interrupted"

    def test_unexpected_error_during_provisioning_tears_down(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("storage", "blob", "upload", result=OSError("No space left on device"))
        echoed = []
        run = make_run(provisioning_runner, quiet_progress, no_sleep, echoed, volume_target=VolumeTarget.DATA)

        with pytest.raises(OSError):
            run.execute()

        assert run.resources.vm == "adetestvm"
        assert provisioning_runner.called("group", "delete")
        assert "az group delete -n adetestrg --no-wait" in echoed
        assert "No space left on device" in run.console.file.getvalue()

    def test_cancel_after_provisioning_skips_encryption(self, provisioning_runner, quiet_progress, no_sleep):
        cancel_event = threading.Event()
        cancel_event.set()
        run = make_run(provisioning_runner, quiet_progress, no_sleep, [], cancel_event=cancel_event)

        with pytest.raises(RunCancelledError):
            run.execute()

        assert not provisioning_runner.called("vm", "encryption")
        assert provisioning_runner.called("group", "delete")

    def test_keep_resources_prints_instead_of_deleting(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("vm", "encryption", "show", result=OS_SUCCEEDED)
        echoed = []

        make_run(provisioning_runner, quiet_progress, no_sleep, echoed, auto_delete=False).execute()

        assert not provisioning_runner.called("group", "delete")
        assert not provisioning_runner.called("ad", "app", "delete")
        assert echoed.count("az group delete -n adetestrg --no-wait") == 3

    def test_partial_presupplied_fails_before_any_resource(self, provisioning_runner, quiet_progress, no_sleep):
        run = make_run(provisioning_runner, quiet_progress, no_sleep, [])
        run.presupplied = PresuppliedResources(app_name="existing")

        with pytest.raises(UsageError):
            run.execute()

        assert [call[:2] for call in provisioning_runner.calls] == [["account", "show"]]

    def test_not_logged_in(self, fake_runner, quiet_progress, no_sleep):
        with pytest.raises(PreconditionError, match="az login"):
            make_run(fake_runner, quiet_progress, no_sleep, []).execute()

        assert fake_runner.calls == [["account", "show"]]


class TestMissingAzureCli:
    """Tests for a machine without the Azure CLI."""

    def test_nothing_runs_without_az(self, provisioning_runner, quiet_progress, no_sleep):
        with patch("adeval.prerequisites.shutil.which", return_value=None):
            with pytest.raises(PreconditionError, match="Azure CLI 2.0 is not installed"):
                make_run(provisioning_runner, quiet_progress, no_sleep, []).execute()

        assert provisioning_runner.calls == []
