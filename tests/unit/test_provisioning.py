"""Tests for the provisioning pipeline."""

import threading
from unittest.mock import Mock

import pytest

from adeval.exceptions import CommandError, PollTimeoutError, RunCancelledError, UsageError
from adeval.models import (
    PresuppliedResources,
    ProvisioningMode,
    ResourceSet,
    ValidationOptions,
    VolumeTarget,
)
from adeval.names import ResourceNames
from adeval.provisioning import ProvisioningPipeline
from tests.mocks.azure_cli import APP_ID, KEK_URI, SP_OBJECT_ID, SUBSCRIPTION_ID, VAULT_ID, VAULT_URI

IDENTITY_PREFIXES = [("ad",), ("role",)]
VAULT_PREFIXES = [("keyvault",)]

BYO = PresuppliedResources(
    app_name="byoapp",
    app_secret="byo-secret",
    app_id="byo-app-id",
    key_vault_id="/subscriptions/s/vaults/byokv",
    key_vault_uri="https://byokv.vault.azure.net/",
    kek_id="/subscriptions/s/vaults/byokv",
    kek_uri="https://byokv.vault.azure.net/keys/kek/1",
)


def make_pipeline(runner, quiet_progress, no_sleep, target=VolumeTarget.OS, singlepass=False,
                  presupplied=None, cancel_event=None, **option_overrides):
    options = ValidationOptions(
        image="Canonical:UbuntuServer:18.04-LTS:latest",
        location="westus2",
        volume_target=target,
        mode=ProvisioningMode.from_flags(singlepass=singlepass),
        **option_overrides,
    )
    resources = ResourceSet(subscription_id=SUBSCRIPTION_ID)
    return ProvisioningPipeline(
        runner,
        options,
        ResourceNames.from_prefix("adetest"),
        resources,
        presupplied=presupplied,
        progress=quiet_progress,
        on_identity_created=Mock(),
        sleep=no_sleep,
        cancel_event=cancel_event,
    )


class TestServicePrincipalMode:
    """Tests for a full provisioning run creating every object."""

    def test_creates_everything_in_order(self, provisioning_runner, quiet_progress, no_sleep):
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep)

        resources = pipeline.run()

        commands = [" ".join(call[:3]) for call in provisioning_runner.calls]
        assert commands == [
            "group create --name",
            "ad app create",
            "ad app credential",
            "ad sp create",
            "role assignment create",
            "keyvault create --name",
            "keyvault set-policy --name",
            "keyvault update --name",
            "keyvault key create",
            "network vnet create",
            "network public-ip create",
            "network nsg create",
            "network nic create",
            "vm create --resource-group",
        ]
        assert resources.resource_group == "adetestrg"
        assert resources.resource_group_created is True
        assert resources.app_id == APP_ID
        assert resources.app_secret == "generated-secret"
        assert resources.app_created is True
        assert resources.sp_object_id == SP_OBJECT_ID
        assert resources.key_vault_id == VAULT_ID
        assert resources.key_vault_uri == VAULT_URI
        assert resources.kek_id == VAULT_ID
        assert resources.kek_uri == KEK_URI
        assert resources.vm == "adetestvm"

    def test_delete_instructions_callback_after_app_created(self, provisioning_runner, quiet_progress, no_sleep):
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep)

        pipeline.run()

        pipeline.on_identity_created.assert_called_once_with(pipeline.resources)

    def test_role_assignment_scope_and_assignee(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep).run()

        (call,) = provisioning_runner.calls_to("role", "assignment", "create")
        assert call[call.index("--assignee-object-id") + 1] == SP_OBJECT_ID
        assert call[call.index("--role") + 1] == "Reader"
        assert call[call.index("--scope") + 1] == f"/subscriptions/{SUBSCRIPTION_ID}/"

    def test_kek_is_hsm_protected_in_premium_vault(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep).run()

        (vault,) = provisioning_runner.calls_to("keyvault", "create")
        (key,) = provisioning_runner.calls_to("keyvault", "key", "create")
        assert vault[vault.index("--sku") + 1] == "premium"
        assert key[key.index("--protection") + 1] == "hsm"

    def test_role_assignment_retried_until_visible(self, provisioning_runner, quiet_progress, no_sleep):
        """Role assignment fails while the new service principal propagates, then succeeds."""
        provisioning_runner.on(
            "role",
            "assignment",
            "create",
            results=[CommandError("PrincipalNotFound"), CommandError("PrincipalNotFound"), {"id": "ra"}],
        )

        make_pipeline(provisioning_runner, quiet_progress, no_sleep).run()

        assert len(provisioning_runner.calls_to("role", "assignment", "create")) == 3
        assert no_sleep.call_count == 2
        no_sleep.assert_called_with(15.0)

    def test_role_assignment_budget_exhausted(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("role", "assignment", "create", result=CommandError("PrincipalNotFound"))
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep)

        with pytest.raises(PollTimeoutError, match="az role assignment"):
            pipeline.run()

        assert len(provisioning_runner.calls_to("role", "assignment", "create")) == 8
        assert not provisioning_runner.called("keyvault")
        assert pipeline.resources.app_created is True

    def test_cancelled_role_assignment_wait(self, provisioning_runner, quiet_progress, no_sleep):
        """A set cancel event ends the role assignment wait after one attempt."""
        provisioning_runner.on("role", "assignment", "create", result=CommandError("PrincipalNotFound"))
        cancel_event = threading.Event()
        cancel_event.set()
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep, cancel_event=cancel_event)

        with pytest.raises(RunCancelledError, match="role assignment"):
            pipeline.run()

        assert len(provisioning_runner.calls_to("role", "assignment", "create")) == 1
        no_sleep.assert_not_called()

    def test_step_failure_aborts_pipeline(self, provisioning_runner, quiet_progress, no_sleep):
        provisioning_runner.on("network", "nsg", "create", result=CommandError("quota"))
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep)

        with pytest.raises(CommandError):
            pipeline.run()

        assert not provisioning_runner.called("network", "nic")
        assert not provisioning_runner.called("vm")
        assert pipeline.resources.public_ip == "adetestpubip"
        assert pipeline.resources.nsg is None


class TestPresupplied:
    """Tests for pre-created identity and key vault objects."""

    def test_complete_presupplied_skips_identity_and_vault(self, provisioning_runner, quiet_progress, no_sleep):
        """Zero identity, vault and role assignment calls."""
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep, presupplied=BYO)

        resources = pipeline.run()

        for prefix in IDENTITY_PREFIXES + VAULT_PREFIXES:
            assert not provisioning_runner.called(*prefix)
        assert resources.app_id == "byo-app-id"
        assert resources.app_secret == "byo-secret"
        assert resources.kek_uri == BYO.kek_uri
        assert resources.app_created is False
        pipeline.on_identity_created.assert_not_called()

    def test_partial_presupplied_rejected_before_any_call(self, provisioning_runner, quiet_progress, no_sleep):
        partial = PresuppliedResources(key_vault_id="/subscriptions/s/vaults/kv", app_id="app")
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep, presupplied=partial)

        with pytest.raises(UsageError) as exc_info:
            pipeline.run()

        assert provisioning_runner.calls == []
        assert "ADE_KEK_URI" in str(exc_info.value)
        assert "ADE_ADAPP_SECRET" in str(exc_info.value)

    def test_single_pass_reuses_vault_fields_only(self, provisioning_runner, quiet_progress, no_sleep):
        vault_only = PresuppliedResources(
            key_vault_id=BYO.key_vault_id,
            key_vault_uri=BYO.key_vault_uri,
            kek_id=BYO.kek_id,
            kek_uri=BYO.kek_uri,
        )
        pipeline = make_pipeline(provisioning_runner, quiet_progress, no_sleep, singlepass=True, presupplied=vault_only)

        resources = pipeline.run()

        assert not provisioning_runner.called("keyvault")
        assert not provisioning_runner.called("ad")
        assert resources.app_id is None


class TestSinglePassMode:
    """Tests for single pass provisioning (no AD application)."""

    def test_no_identity_and_no_vault_policy(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep, singlepass=True).run()

        assert not provisioning_runner.called("ad")
        assert not provisioning_runner.called("role")
        assert not provisioning_runner.called("keyvault", "set-policy")
        assert provisioning_runner.called("keyvault", "key", "create")


class TestVmAndDataDisks:
    """Tests for VM creation and data disk preparation."""

    def test_os_target_has_no_data_disks_and_no_setup(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep).run()

        (vm_create,) = provisioning_runner.calls_to("vm", "create")
        assert "--data-disk-sizes-gb" not in vm_create
        assert not provisioning_runner.called("storage")
        assert not provisioning_runner.called("vm", "extension")

    @pytest.mark.parametrize("target", [VolumeTarget.DATA, VolumeTarget.ALL])
    def test_data_targets_attach_and_prepare_disks(self, target, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep, target=target).run()

        (vm_create,) = provisioning_runner.calls_to("vm", "create")
        index = vm_create.index("--data-disk-sizes-gb")
        assert vm_create[index + 1 : index + 3] == ["1", "1"]
        assert provisioning_runner.called("storage", "account", "create")
        assert provisioning_runner.called("vm", "extension", "set")

    def test_vm_defaults_and_override(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep, vm_size="Standard_E4s_v3").run()

        (vm_create,) = provisioning_runner.calls_to("vm", "create")
        assert vm_create[vm_create.index("--size") + 1] == "Standard_E4s_v3"
        assert vm_create[vm_create.index("--image") + 1] == "Canonical:UbuntuServer:18.04-LTS:latest"
        assert vm_create[vm_create.index("--nics") + 1] == "adetestnic"
        assert "--generate-ssh-keys" in vm_create

    def test_default_vm_size(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep).run()

        (vm_create,) = provisioning_runner.calls_to("vm", "create")
        assert vm_create[vm_create.index("--size") + 1] == "Standard_D2s_v3"

    def test_rhui_update_runs_script(self, provisioning_runner, quiet_progress, no_sleep):
        make_pipeline(provisioning_runner, quiet_progress, no_sleep, rhui=True).run()

        assert len(provisioning_runner.calls_to("vm", "extension", "set")) == 1
