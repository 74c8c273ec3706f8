"""adeval command line interface.

Commands:
    validate  Provision a VM from an image, encrypt it and verify the result
    prereq    Create reusable identity and key vault objects for later runs
"""

import logging
import signal
import sys
import threading
from collections.abc import Callable
from typing import Any

import click

from adeval import __version__
from adeval.command_runner import AzureCliRunner
from adeval.config import get_poll_settings
from adeval.config_manager import ConfigManager
from adeval.exceptions import AdevalError, UsageError
from adeval.models import PresuppliedResources, ProvisioningMode, ValidationOptions, VolumeTarget
from adeval.names import ResourceNames
from adeval.prereq_setup import DEFAULT_CERTIFICATE_SUBJECT, PrereqOptions, PrereqSetup
from adeval.prerequisites import PrerequisiteChecker
from adeval.validation import ValidationRun

logger = logging.getLogger(__name__)


class AdevalGroup(click.Group):
    """Click group that exits with status 1 on usage errors."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        kwargs["standalone_mode"] = False
        try:
            return super().main(*args, **kwargs)
        except click.ClickException as e:
            e.show()
            sys.exit(1)
        except click.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)


@click.group(cls=AdevalGroup, context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--verbose", "-v", is_flag=True, help="Show debug output (commands are logged with secrets masked)")
@click.version_option(version=__version__)
def main(verbose: bool) -> None:
    """adeval - end-to-end validation of Azure Disk Encryption.

    Provisions a VM from an image, enables disk encryption, waits for it to
    complete (restarting the VM when required), verifies the result and
    deletes everything it created.

    \b
    EXAMPLES:
        $ adeval validate Canonical:UbuntuServer:18.04-LTS:latest westus2
        $ adeval validate RedHat:RHEL:7.6:latest eastus DATA --singlepass
        $ adeval prereq --location westus2 --config ade.toml
        $ adeval validate RedHat:RHEL:7.6:latest eastus ALL --config ade.toml

    \b
    PRE-CREATED OBJECTS:
        ADE_ADAPP_NAME, ADE_ADAPP_SECRET, ADE_ADSP_APPID, ADE_KV_ID,
        ADE_KV_URI, ADE_KEK_ID and ADE_KEK_URI reuse an existing AD app and
        key vault. Set all of them or none (single pass needs only the
        four key vault values). Environment variables override --config.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")


@main.command()
@click.argument("image")
@click.argument("location")
@click.argument("volume_type", required=False, default="OS")
@click.option("--singlepass", is_flag=True, help="Encrypt without an AD application (single pass)")
@click.option(
    "--encrypt-format-all",
    is_flag=True,
    help="Format data disks while encrypting instead of encrypting existing data",
)
@click.option("--rhui", is_flag=True, help="Update the RHUI certificate on RHEL images first")
@click.option("--keep-resources", is_flag=True, help="Print delete commands instead of deleting resources")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="TOML file with pre-created objects (written by 'adeval prereq')",
)
@click.option("--prefix", help="Prefix for every resource name (default: 'ade' + random characters)")
@click.option("--vm-size", help="VM size (default: Standard_D2s_v3)")
def validate(
    image: str,
    location: str,
    volume_type: str,
    singlepass: bool,
    encrypt_format_all: bool,
    rhui: bool,
    keep_resources: bool,
    config_path: str | None,
    prefix: str | None,
    vm_size: str | None,
) -> None:
    """Validate disk encryption of IMAGE in LOCATION.

    IMAGE is passed to 'az vm create --image' unchanged (URN or alias).
    VOLUME_TYPE is OS (default), DATA or ALL.
    """
    try:
        target = VolumeTarget.parse(volume_type)
        names = _resource_names(prefix)
        saved = ConfigManager.load_resources(config_path) if config_path else PresuppliedResources()
        presupplied = PresuppliedResources.from_environment(base=saved)

        options = ValidationOptions(
            image=image,
            location=location,
            volume_target=target,
            mode=ProvisioningMode.from_flags(singlepass, encrypt_format_all),
            rhui=rhui,
            auto_delete=not keep_resources,
            vm_size=vm_size,
        )
        cancel_event = threading.Event()
        previous_handler = signal.signal(signal.SIGINT, _cancel_on_interrupt(cancel_event))
        try:
            ValidationRun(options, presupplied=presupplied, names=names, cancel_event=cancel_event).execute()
        finally:
            signal.signal(signal.SIGINT, previous_handler)
    except AdevalError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option("--location", required=True, help="Region of the key vault and the VMs to encrypt")
@click.option("--subscription-id", help="Subscription that owns the key vault (default: current)")
@click.option("--prefix", help="Prefix for generated names")
@click.option("--resource-group", help="Resource group (created if missing)")
@click.option("--key-vault", help="Key vault name (created if missing)")
@click.option("--app-name", help="AD application name (created if missing)")
@click.option(
    "--app-secret",
    envvar="ADE_ADAPP_SECRET",
    help="Client secret of an existing AD application",
)
@click.option("--kek-name", help="Key encryption key name (created if missing)")
@click.option(
    "--kek-protection",
    type=click.Choice(["software", "hsm"]),
    default="software",
    show_default=True,
    help="Protection of a new key encryption key",
)
@click.option("--certificate", is_flag=True, help="Also create a self-signed certificate for the app")
@click.option("--certificate-name", help="Name of the certificate in the key vault")
@click.option(
    "--certificate-subject",
    default=DEFAULT_CERTIFICATE_SUBJECT,
    show_default=True,
    help="Subject of the self-signed certificate",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help=f"Where to save the objects (default: {ConfigManager.DEFAULT_CONFIG_FILE})",
)
def prereq(
    location: str,
    subscription_id: str | None,
    prefix: str | None,
    resource_group: str | None,
    key_vault: str | None,
    app_name: str | None,
    app_secret: str | None,
    kek_name: str | None,
    kek_protection: str,
    certificate: bool,
    certificate_name: str | None,
    certificate_subject: str,
    config_path: str | None,
) -> None:
    """Create reusable AD application, key vault and KEK objects.

    The objects are saved to a TOML file; pass it to 'adeval validate
    --config' so validation runs reuse them instead of creating new ones.
    """
    try:
        if prefix:
            _resource_names(prefix)
        settings = get_poll_settings()
        runner = AzureCliRunner(timeout=settings.command_timeout)
        account = PrerequisiteChecker.ensure_ready(runner)

        options = PrereqOptions(
            location=location,
            subscription_id=subscription_id or account.subscription_id,
            prefix=prefix,
            resource_group=resource_group,
            key_vault=key_vault,
            app_name=app_name,
            app_secret=app_secret,
            kek_name=kek_name,
            kek_protection=kek_protection,
            certificate=certificate,
            certificate_name=certificate_name,
            certificate_subject=certificate_subject,
        )
        result = PrereqSetup(runner, options, settings=settings).run(config_path)
    except AdevalError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for key, value in result.resources.to_dict().items():
        if key == "app_secret":
            continue
        click.echo(f"{PresuppliedResources.ENV_VARS[key]}={value}")
    if result.details.get("certificate_thumbprint"):
        click.echo(f"Certificate thumbprint: {result.details['certificate_thumbprint']}")
    click.echo(f"\nSaved to {result.config_path}")
    click.echo(f"Use with: adeval validate IMAGE LOCATION --config {result.config_path}")


def _cancel_on_interrupt(cancel_event: threading.Event) -> Callable[[int, Any], None]:
    """SIGINT handler: the first Ctrl+C cancels the run, a second one stops immediately."""

    def handle(signum: int, frame: Any) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning(
            "Cancelling: resources are deleted once the current step ends. "
            "Press Ctrl+C again to stop immediately."
        )
        cancel_event.set()

    return handle


def _resource_names(prefix: str | None) -> ResourceNames:
    if not prefix:
        return ResourceNames.random()
    try:
        return ResourceNames.from_prefix(prefix)
    except ValueError as e:
        raise UsageError(str(e)) from e


if __name__ == "__main__":
    main()
