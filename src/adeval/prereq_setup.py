"""One-time creation of reusable disk encryption prerequisites.

Creates (or reuses, when they already exist) a resource group, an AD
application with service principal and Reader role, a key vault enabled for
disk encryption, a key encryption key and optionally a self-signed
certificate. The result is saved as a TOML file that ``adeval validate
--config`` accepts, so repeated validation runs can skip identity and key
vault creation.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from adeval.command_runner import CommandRunner
from adeval.config import PollSettings
from adeval.config_manager import ConfigManager
from adeval.exceptions import CommandError, PollTimeoutError, UsageError
from adeval.models import PresuppliedResources
from adeval.names import ResourceNames
from adeval.poll import PollLoop
from adeval.progress import ProgressDisplay
from adeval.provisioning import assign_reader_role

logger = logging.getLogger(__name__)

DEFAULT_CERTIFICATE_SUBJECT = "CN=www.contoso.com"
KEK_PROTECTIONS = ("software", "hsm")


@dataclass(frozen=True)
class PrereqOptions:
    """What ``adeval prereq`` should create; unset names are generated from the prefix."""

    location: str
    subscription_id: str | None = None
    prefix: str | None = None
    resource_group: str | None = None
    key_vault: str | None = None
    app_name: str | None = None
    app_secret: str | None = field(default=None, repr=False)
    kek_name: str | None = None
    kek_protection: str = "software"
    certificate: bool = False
    certificate_name: str | None = None
    certificate_subject: str = DEFAULT_CERTIFICATE_SUBJECT


@dataclass
class PrereqResult:
    """Objects created or found by the prerequisite setup."""

    resources: PresuppliedResources
    details: dict[str, Any]
    config_path: str | None = None


class PrereqSetup:
    """Create reusable identity, key vault, KEK and certificate objects."""

    def __init__(
        self,
        runner: CommandRunner,
        options: PrereqOptions,
        settings: PollSettings | None = None,
        progress: ProgressDisplay | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        if options.kek_protection not in KEK_PROTECTIONS:
            raise UsageError(
                f"Invalid KEK protection: {options.kek_protection}. "
                f"Valid values: {', '.join(KEK_PROTECTIONS)}"
            )
        self.runner = runner
        self.options = options
        self.settings = settings or PollSettings()
        self.progress = progress or ProgressDisplay()
        self._sleep = sleep

        names = ResourceNames.from_prefix(options.prefix) if options.prefix else ResourceNames.random()
        self.resource_group = options.resource_group or names.resource_group
        self.key_vault = options.key_vault or names.key_vault
        self.app_name = options.app_name or names.app
        self.kek_name = options.kek_name or names.kek
        self.certificate_name = options.certificate_name or names.certificate

    def _show(self, args: list[str]) -> Any:
        """Run a show/list command, returning None when the object does not exist."""
        try:
            return self.runner.invoke(args)
        except CommandError as e:
            logger.debug(f"Not found: az {' '.join(args[:3])}: {e}")
            return None

    def _wait_for(self, description: str, query: Callable[[], Any], success: Callable[[Any], bool]) -> Any:
        loop = PollLoop(
            interval=self.settings.directory_interval,
            max_cycles=self.settings.directory_max_cycles,
            description=description,
            sleep=self._sleep,
        )
        outcome = loop.run(query=query, success=success, tolerate=(CommandError,))
        if outcome.is_failure:
            raise CommandError(f"{description} failed: {outcome.error}") from outcome.error
        if not outcome.is_success:
            raise PollTimeoutError(description, loop.budget_seconds)
        return outcome.result

    def run(self, config_path: str | None = None) -> PrereqResult:
        """Create every prerequisite and save them to ``config_path``.

        Raises:
            UsageError: If an existing app is named without its secret
            CommandError: When an Azure CLI command fails
            PollTimeoutError: When a new object never becomes visible
        """
        subscription_id = self.options.subscription_id
        if not subscription_id:
            raise UsageError("A subscription id is required")

        self.ensure_resource_group()
        app_id, app_secret = self.ensure_application()
        object_id = self.ensure_service_principal(app_id)
        assign_reader_role(
            self.runner, object_id, subscription_id, self.settings, self.progress, sleep=self._sleep
        )
        vault = self.ensure_key_vault(app_id)
        kek_uri = self.ensure_kek()

        details: dict[str, Any] = {
            "subscription_id": subscription_id,
            "resource_group": self.resource_group,
            "key_vault_name": self.key_vault,
            "kek_name": self.kek_name,
            "sp_object_id": object_id,
        }
        if self.options.certificate:
            details.update(self.ensure_certificate(app_id))

        resources = PresuppliedResources(
            app_name=self.app_name,
            app_secret=app_secret,
            app_id=app_id,
            key_vault_id=vault["id"],
            key_vault_uri=vault["properties"]["vaultUri"],
            kek_id=vault["id"],
            kek_uri=kek_uri,
        )
        path = ConfigManager.save_resources(resources, config_path, details)
        self.progress.update(f"Saved prerequisites to {path}")
        return PrereqResult(resources=resources, details=details, config_path=str(path))

    def ensure_resource_group(self) -> None:
        exists = self.runner.invoke(["group", "exists", "--name", self.resource_group])
        if exists is True:
            self.progress.update(f"Using existing resource group {self.resource_group}")
            return
        self.progress.start_phase(f"Creating resource group {self.resource_group}")
        self.runner.invoke(
            ["group", "create", "--name", self.resource_group, "--location", self.options.location]
        )
        self.progress.complete()

    def ensure_application(self) -> tuple[str, str]:
        """Find or create the AD application and return ``(app_id, secret)``."""
        found = self.runner.invoke(["ad", "app", "list", "--display-name", self.app_name]) or []
        if found:
            if not self.options.app_secret:
                raise UsageError(
                    f"AD application {self.app_name} already exists; its client secret must be supplied"
                )
            self.progress.update(f"Found application {self.app_name}")
            return found[0]["appId"], self.options.app_secret

        self.progress.start_phase(f"Creating AD application {self.app_name}")
        app = self.runner.invoke(["ad", "app", "create", "--display-name", self.app_name])
        app_id = app["appId"]
        self._wait_for(
            "AD application visibility",
            lambda: self.runner.invoke(["ad", "app", "show", "--id", app_id]),
            lambda result: bool(result),
        )
        credential = self.runner.invoke(
            ["ad", "app", "credential", "reset", "--id", app_id, "--display-name", "adeval"]
        )
        self.progress.complete()
        return app_id, credential["password"]

    def ensure_service_principal(self, app_id: str) -> str:
        """Find or create the service principal and return its object id."""
        sp = self._show(["ad", "sp", "show", "--id", app_id])
        if not sp:
            self.progress.start_phase("Creating service principal")
            sp = self._wait_for(
                "service principal creation",
                lambda: self.runner.invoke(["ad", "sp", "create", "--id", app_id]),
                lambda result: bool(result),
            )
            self.progress.complete()
        return sp["id"]

    def ensure_key_vault(self, app_id: str) -> dict[str, Any]:
        vault = self._show(["keyvault", "show", "--name", self.key_vault])
        if not vault:
            self.progress.start_phase(f"Creating key vault {self.key_vault}")
            vault = self.runner.invoke(
                [
                    "keyvault",
                    "create",
                    "--name",
                    self.key_vault,
                    "--resource-group",
                    self.resource_group,
                    "--location",
                    self.options.location,
                    "--sku",
                    "premium",
                    "--enable-rbac-authorization",
                    "false",
                ]
            )
            self.progress.complete()

        self.runner.invoke(
            [
                "keyvault",
                "set-policy",
                "--name",
                self.key_vault,
                "--spn",
                app_id,
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
                self.key_vault,
                "--enabled-for-deployment",
                "true",
                "--enabled-for-disk-encryption",
                "true",
            ]
        )
        return vault

    def ensure_kek(self) -> str:
        """Create the key encryption key once, then wait until it can be read back."""
        show_args = ["keyvault", "key", "show", "--vault-name", self.key_vault, "--name", self.kek_name]
        key = self._show(show_args)
        if not key:
            self.progress.start_phase(f"Creating key encryption key {self.kek_name}")
            self.runner.invoke(
                [
                    "keyvault",
                    "key",
                    "create",
                    "--vault-name",
                    self.key_vault,
                    "--name",
                    self.kek_name,
                    "--protection",
                    self.options.kek_protection,
                ]
            )
            key = self._wait_for(
                "key encryption key creation",
                lambda: self.runner.invoke(show_args),
                lambda result: isinstance(result, dict) and bool(result.get("key")),
            )
            self.progress.complete()
        return key["key"]["kid"]

    def ensure_certificate(self, app_id: str) -> dict[str, Any]:
        """Create a self-signed certificate and register it as an app credential.

        Returns:
            Certificate details (name, thumbprint, secret id)
        """
        vault_args = ["--vault-name", self.key_vault, "--name", self.certificate_name]
        existing = self._show(["keyvault", "certificate", "show", *vault_args])
        if not existing:
            policy = self.runner.invoke(["keyvault", "certificate", "get-default-policy"])
            policy["x509CertificateProperties"]["subject"] = self.options.certificate_subject
            policy["x509CertificateProperties"]["validityInMonths"] = 12
            self.runner.invoke(
                ["keyvault", "certificate", "create", *vault_args, "--policy", json.dumps(policy)]
            )

        loop = PollLoop(
            interval=self.settings.certificate_interval,
            max_cycles=self.settings.certificate_max_cycles,
            description="self-signed certificate",
            sleep=self._sleep,
        )
        self.progress.start_phase(f"Waiting for certificate {self.certificate_name}", loop.budget_seconds)
        outcome = loop.run(
            query=lambda: self.runner.invoke(["keyvault", "certificate", "show", *vault_args]),
            success=lambda cert: isinstance(cert, dict) and bool(cert.get("x509Thumbprint")),
            tolerate=(CommandError,),
        )
        if not outcome.is_success:
            self.progress.complete(success=False)
            if outcome.is_failure:
                raise CommandError(f"Certificate check failed: {outcome.error}") from outcome.error
            raise PollTimeoutError("self-signed certificate creation", loop.budget_seconds)
        self.progress.complete()
        cert = outcome.result

        self.runner.invoke(
            ["ad", "app", "credential", "reset", "--id", app_id, "--cert", cert["cer"], "--append"]
        )
        return {
            "certificate_name": self.certificate_name,
            "certificate_thumbprint": cert["x509Thumbprint"],
            "certificate_secret_id": cert.get("sid"),
        }


__all__ = ["DEFAULT_CERTIFICATE_SUBJECT", "PrereqOptions", "PrereqResult", "PrereqSetup"]
