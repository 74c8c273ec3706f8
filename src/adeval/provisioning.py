"""Provisioning of everything a disk encryption run needs.

This module creates, in dependency order:
- Resource group (root of everything except the AD application)
- AD application, service principal and Reader role assignment
  (service principal mode only)
- Key vault with a key encryption key (KEK)
- Virtual network, public IP, network security group and NIC
- The VM, with data disks when DATA or ALL volumes are targeted
- Formatted and mounted data disks (via a remote setup script)

Identity and key vault creation is skipped when their identifiers are
pre-supplied. A step failure aborts the pipeline; partially created
resources stay in the ResourceSet for the caller's teardown.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from adeval.command_runner import CommandRunner
from adeval.config import PollSettings
from adeval.exceptions import CommandError, PollTimeoutError, RunCancelledError, UsageError
from adeval.models import PresuppliedResources, ResourceSet, ValidationOptions
from adeval.names import ResourceNames
from adeval.poll import PollLoop
from adeval.progress import ProgressDisplay
from adeval.remote_script import RHUI_UPDATE_SCRIPT, RemoteScriptRunner, disk_setup_script

logger = logging.getLogger(__name__)

ROLE_NAME = "Reader"


class ProvisioningPipeline:
    """Create the resources required before encryption can be enabled."""

    def __init__(
        self,
        runner: CommandRunner,
        options: ValidationOptions,
        names: ResourceNames,
        resources: ResourceSet,
        presupplied: PresuppliedResources | None = None,
        settings: PollSettings | None = None,
        progress: ProgressDisplay | None = None,
        on_identity_created: Callable[[ResourceSet], None] | None = None,
        sleep: Callable[[float], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        """Initialize pipeline.

        Args:
            runner: Azure CLI command runner
            options: Image, location, volume target and modes
            names: Names derived from the run prefix
            resources: Record that receives every created identifier
            presupplied: Pre-created identity and key vault objects
            settings: Poll budgets and VM defaults
            progress: Progress output
            on_identity_created: Called as soon as the AD application exists
                (used to print manual delete instructions early)
            sleep: Sleep function for wait loops (injectable for tests)
            cancel_event: Optional event that stops role and script waits early
        """
        self.runner = runner
        self.options = options
        self.names = names
        self.resources = resources
        self.presupplied = presupplied or PresuppliedResources()
        self.settings = settings or PollSettings()
        self.progress = progress or ProgressDisplay()
        self.on_identity_created = on_identity_created
        self._sleep = sleep
        self._cancel_event = cancel_event
        self.scripts = RemoteScriptRunner(
            runner, resources, self.settings, self.progress, sleep, cancel_event=cancel_event
        )

    @property
    def credential_mode(self):
        return self.options.mode.credential

    def check_presupplied(self) -> bool:
        """Decide between reusing pre-supplied objects and creating new ones.

        Returns:
            True when every field the credential mode needs is present

        Raises:
            UsageError: When only some of the fields are present
        """
        mode = self.credential_mode
        if self.presupplied.is_empty(mode):
            return False
        missing = self.presupplied.missing(mode)
        if missing:
            raise UsageError(
                "Pre-created objects are incomplete; set all of them or none. "
                f"Missing: {', '.join(missing)}"
            )
        return True

    def run(self) -> ResourceSet:
        """Run every provisioning step in order.

        Raises:
            UsageError: On partially pre-supplied objects (before anything is created)
            CommandError: When any Azure CLI command fails
            PollTimeoutError: When role assignment or disk setup does not complete in time
        """
        reuse = self.check_presupplied()

        self.create_resource_group()

        if reuse:
            self.apply_presupplied()
        else:
            if not self.options.mode.single_pass:
                self.create_identity()
            self.create_key_vault()

        self.create_network()
        self.create_vm()

        if self.options.volume_target.includes_data:
            self.prepare_data_disks()
        if self.options.rhui:
            self.update_rhui_certificate()

        return self.resources

    def _step(self, name: str, action: Callable[[], Any]) -> Any:
        self.progress.start_phase(name)
        try:
            result = action()
        except Exception:
            self.progress.complete(success=False)
            raise
        self.progress.complete(success=True)
        return result

    def create_resource_group(self) -> None:
        def create() -> None:
            self.runner.invoke(
                [
                    "group",
                    "create",
                    "--name",
                    self.names.resource_group,
                    "--location",
                    self.options.location,
                ]
            )
            self.resources.resource_group = self.names.resource_group
            self.resources.location = self.options.location
            self.resources.resource_group_created = True

        self._step(f"Creating resource group {self.names.resource_group}", create)

    def apply_presupplied(self) -> None:
        """Record pre-created objects instead of creating them."""
        p = self.presupplied
        if not self.options.mode.single_pass:
            self.resources.app_name = p.app_name
            self.resources.app_secret = p.app_secret
            self.resources.app_id = p.app_id
        self.resources.key_vault_id = p.key_vault_id
        self.resources.key_vault_uri = p.key_vault_uri
        self.resources.kek_id = p.kek_id
        self.resources.kek_uri = p.kek_uri
        what = "KV objects" if self.options.mode.single_pass else "ADAPP and KV objects"
        self.progress.update(f"Using pre-created {what}")

    def create_identity(self) -> None:
        """Create the AD application, its service principal and a Reader role assignment."""
        self.progress.start_phase(f"Creating AD application {self.names.app}")

        app = self.runner.invoke(["ad", "app", "create", "--display-name", self.names.app])
        app_id = _require(app, "appId", "ad app create")
        self.resources.app_name = self.names.app
        self.resources.app_id = app_id
        self.resources.app_created = True
        if self.on_identity_created:
            self.on_identity_created(self.resources)

        credential = self.runner.invoke(
            ["ad", "app", "credential", "reset", "--id", app_id, "--display-name", "adeval"]
        )
        self.resources.app_secret = _require(credential, "password", "ad app credential reset")

        sp = self.runner.invoke(["ad", "sp", "create", "--id", app_id])
        object_id = (sp or {}).get("id") or (sp or {}).get("objectId")
        if not object_id:
            sp = self.runner.invoke(["ad", "sp", "show", "--id", app_id])
            object_id = _require(sp, "id", "ad sp show")
        self.resources.sp_object_id = object_id
        self.progress.complete()

        self.assign_role(object_id)

    def assign_role(self, object_id: str) -> None:
        assign_reader_role(
            self.runner,
            object_id,
            self.resources.subscription_id,
            self.settings,
            self.progress,
            sleep=self._sleep,
            cancel_event=self._cancel_event,
        )

    def create_key_vault(self) -> None:
        """Create a premium key vault and an HSM-protected key encryption key."""
        self.progress.start_phase(f"Creating key vault {self.names.key_vault}")
        vault = self.runner.invoke(
            [
                "keyvault",
                "create",
                "--name",
                self.names.key_vault,
                "--resource-group",
                self.resources.resource_group,
                "--location",
                self.options.location,
                "--sku",
                "premium",
                "--enable-rbac-authorization",
                "false",
            ]
        )
        self.resources.key_vault_name = self.names.key_vault
        self.resources.key_vault_id = _require(vault, "id", "keyvault create")
        self.resources.key_vault_uri = _require(
            (vault or {}).get("properties"), "vaultUri", "keyvault create"
        )

        if not self.options.mode.single_pass:
            self.runner.invoke(
                [
                    "keyvault",
                    "set-policy",
                    "--name",
                    self.names.key_vault,
                    "--resource-group",
                    self.resources.resource_group,
                    "--spn",
                    self.resources.app_id,
                    "--key-permissions",
                    "wrapKey",
                    "--secret-permissions",
                    "set",
                ]
            )

        self.runner.invoke(
            [
                "keyvault",
                "update",
                "--name",
                self.names.key_vault,
                "--resource-group",
                self.resources.resource_group,
                "--enabled-for-deployment",
                "true",
                "--enabled-for-disk-encryption",
                "true",
            ]
        )

        key = self.runner.invoke(
            [
                "keyvault",
                "key",
                "create",
                "--vault-name",
                self.names.key_vault,
                "--name",
                self.names.kek,
                "--protection",
                "hsm",
            ]
        )
        self.resources.kek_name = self.names.kek
        self.resources.kek_id = self.resources.key_vault_id
        self.resources.kek_uri = _require((key or {}).get("key"), "kid", "keyvault key create")
        self.progress.complete()

    def create_network(self) -> None:
        """Create vnet+subnet, public IP, NSG and NIC; each references the previous."""
        rg = self.resources.resource_group

        def vnet() -> None:
            self.runner.invoke(
                [
                    "network",
                    "vnet",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    self.names.vnet,
                    "--subnet-name",
                    self.names.subnet,
                ]
            )
            self.resources.vnet = self.names.vnet
            self.resources.subnet = self.names.subnet

        def public_ip() -> None:
            self.runner.invoke(
                ["network", "public-ip", "create", "--resource-group", rg, "--name", self.names.public_ip]
            )
            self.resources.public_ip = self.names.public_ip

        def nsg() -> None:
            self.runner.invoke(["network", "nsg", "create", "--resource-group", rg, "--name", self.names.nsg])
            self.resources.nsg = self.names.nsg

        def nic() -> None:
            self.runner.invoke(
                [
                    "network",
                    "nic",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    self.names.nic,
                    "--vnet-name",
                    self.resources.vnet,
                    "--subnet",
                    self.resources.subnet,
                    "--network-security-group",
                    self.resources.nsg,
                    "--public-ip-address",
                    self.resources.public_ip,
                ]
            )
            self.resources.nic = self.names.nic

        self._step(f"Creating virtual network {self.names.vnet}", vnet)
        self._step(f"Creating public IP {self.names.public_ip}", public_ip)
        self._step(f"Creating network security group {self.names.nsg}", nsg)
        self._step(f"Creating network interface {self.names.nic}", nic)

    def vm_create_args(self) -> list[str]:
        args = [
            "vm",
            "create",
            "--resource-group",
            self.resources.resource_group,
            "--name",
            self.names.vm,
            "--size",
            self.options.vm_size or self.settings.vm_size,
            "--nics",
            self.resources.nic,
            "--image",
            self.options.image,
            "--generate-ssh-keys",
        ]
        if self.options.volume_target.includes_data:
            sizes = [str(self.settings.data_disk_size_gb)] * self.settings.data_disk_count
            args.extend(["--data-disk-sizes-gb", *sizes])
        return args

    def create_vm(self) -> None:
        def create() -> None:
            self.runner.invoke(self.vm_create_args())
            self.resources.vm = self.names.vm

        self._step(f"Creating VM {self.names.vm} from {self.options.image}", create)

    def prepare_data_disks(self) -> None:
        """Format and mount the attached data disks so they hold a filesystem to encrypt."""

        def prepare() -> None:
            self.scripts.ensure_storage(self.names.storage_account)
            self.scripts.run(disk_setup_script(self.settings.data_disk_count), "data disk setup")

        self._step("Formatting and mounting data disks", prepare)

    def update_rhui_certificate(self) -> None:
        def update() -> None:
            self.scripts.ensure_storage(self.names.storage_account)
            self.scripts.run(RHUI_UPDATE_SCRIPT, "RHUI certificate update")

        self._step("Updating RHUI certificate", update)


def assign_reader_role(
    runner: CommandRunner,
    object_id: str,
    subscription_id: str | None,
    settings: PollSettings,
    progress: ProgressDisplay,
    sleep: Callable[[float], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> None:
    """Grant Reader on the subscription, retrying while the directory propagates.

    A new service principal is not visible to role assignment until the
    directory replicates it, so failures are retried within the budget.

    Raises:
        UsageError: If no subscription id is known
        PollTimeoutError: If the assignment never succeeds
        RunCancelledError: If ``cancel_event`` fires while waiting
    """
    if not subscription_id:
        raise UsageError("Subscription id is required for the role assignment scope")

    scope = f"/subscriptions/{subscription_id}/"
    loop = PollLoop(
        interval=settings.role_assignment_interval,
        max_cycles=settings.role_assignment_max_cycles,
        description="role assignment",
        sleep=sleep,
        cancel_event=cancel_event,
    )
    progress.start_phase("Assigning Reader role to service principal", loop.budget_seconds)
    outcome = loop.run(
        query=lambda: runner.invoke(
            [
                "role",
                "assignment",
                "create",
                "--assignee-object-id",
                object_id,
                "--assignee-principal-type",
                "ServicePrincipal",
                "--role",
                ROLE_NAME,
                "--scope",
                scope,
            ]
        ),
        success=lambda result: result is not None,
        tolerate=(CommandError,),
    )
    if not outcome.is_success:
        progress.complete(success=False)
        if outcome.is_failure:
            raise CommandError(f"Role assignment failed: {outcome.error}") from outcome.error
        if outcome.cancelled:
            raise RunCancelledError("Cancelled while waiting for the role assignment")
        raise PollTimeoutError("az role assignment", loop.budget_seconds)
    progress.complete()


def _require(payload: Any, key: str, command: str) -> Any:
    """Extract a required field from command output.

    Raises:
        CommandError: If the output lacks the field
    """
    value = payload.get(key) if isinstance(payload, dict) else None
    if not value:
        raise CommandError(f"'{key}' missing from output of az {command}")
    return value


__all__ = ["ProvisioningPipeline", "assign_reader_role"]
