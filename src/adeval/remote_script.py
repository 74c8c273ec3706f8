"""Run generated shell scripts on the VM through the custom script extension.

A script is uploaded to a blob container, handed to the ``customScript``
extension through a read-only SAS URL, and given a second, writable SAS URL
as its only argument. The script uploads its result file to that URL when it
finishes; the appearance of that blob is the completion signal.

Scripts:
    disk_setup_script: Format, mount and persist the attached data disks
    RHUI_UPDATE_SCRIPT: Refresh the RHUI client certificate on RHEL 7 images
"""

import json
import logging
import tempfile
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from adeval.command_runner import CommandRunner
from adeval.config import PollSettings
from adeval.exceptions import CommandError, PollTimeoutError, RunCancelledError
from adeval.models import ResourceSet
from adeval.names import random_token
from adeval.poll import PollLoop
from adeval.progress import ProgressDisplay

logger = logging.getLogger(__name__)

CONTAINER_NAME = "container"
EXTENSION_NAME = "customScript"
EXTENSION_PUBLISHER = "Microsoft.Azure.Extensions"

_SCRIPT_HEADER = """#!/bin/sh
set -x
if ! [ -x "$(command -v curl)" ]; then
  echo 'Error: curl not installed, script cannot run' >&2
  exit 1
fi
if [ -z "$1" ]; then
  echo 'SAS URL missing, script cannot run' >&2
  exit 1
fi
"""

_UPLOAD_RESULT = 'curl -X PUT "$1" -T {path} -H "x-ms-blob-type: BlockBlob"\n'


def disk_setup_script(disk_count: int = 2) -> str:
    """Script that formats each data disk, records it in /etc/fstab and mounts it."""
    lines = [_SCRIPT_HEADER]
    for lun in range(disk_count):
        device = f"/dev/disk/azure/scsi1/lun{lun}"
        lines.append(f'echo "y" | mkfs.ext4 {device}\n')
        lines.append(f'UUID{lun}="$(blkid -s UUID -o value {device})"\n')
        lines.append(f"mkdir -p /data{lun}\n")
        lines.append(f'echo "UUID=$UUID{lun} /data{lun} ext4 defaults,nofail 0 0" >>/etc/fstab\n')
    lines.append("mount -a\n")
    lines.append("lsblk > /tmp/lsblk.txt\n")
    lines.append(_UPLOAD_RESULT.format(path="/tmp/lsblk.txt"))
    return "".join(lines)


RHUI_RPM_URL = (
    "https://rhui-1.microsoft.com/pulp/repos/microsoft-azure-rhel7/rhui-azure-rhel7-2.2-74.noarch.rpm"
)

RHUI_UPDATE_SCRIPT = (
    _SCRIPT_HEADER
    + f"curl -o azureclient.rpm {RHUI_RPM_URL} 2>&1 | tee -a /tmp/rhui.txt\n"
    + "rpm -U azureclient.rpm 2>&1 | tee -a /tmp/rhui.txt\n"
    + "yum clean all 2>&1 | tee -a /tmp/rhui.txt\n"
    + _UPLOAD_RESULT.format(path="/tmp/rhui.txt")
)


def sas_expiry(now: datetime | None = None) -> str:
    """Expiry for generated SAS tokens: 23:59 UTC tomorrow."""
    now = now or datetime.now(timezone.utc)
    tomorrow = (now.astimezone(timezone.utc) + timedelta(days=1)).date()
    return f"{tomorrow.isoformat()}T23:59Z"


class RemoteScriptRunner:
    """Execute generated scripts on the run's VM and collect their output."""

    def __init__(
        self,
        runner: CommandRunner,
        resources: ResourceSet,
        settings: PollSettings,
        progress: ProgressDisplay | None = None,
        sleep: Callable[[float], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.runner = runner
        self.resources = resources
        self.settings = settings
        self.progress = progress or ProgressDisplay()
        self._sleep = sleep
        self._cancel_event = cancel_event

    def _storage_args(self) -> list[str]:
        return [
            "--account-name",
            self.resources.storage_account,
            "--account-key",
            self.resources.storage_key,
            "--container-name",
            self.resources.container,
        ]

    def ensure_storage(self, account_name: str) -> None:
        """Create the storage account and container that carry scripts and results."""
        if self.resources.storage_account and self.resources.container:
            return

        logger.info(f"Creating storage account: {account_name}")
        self.runner.invoke(
            [
                "storage", "account", "create",
                "--name", account_name,
                "--resource-group", self.resources.resource_group,
                "--location", self.resources.location,
                "--sku", "Standard_LRS",
            ]
        )
        self.resources.storage_account = account_name

        keys = self.runner.invoke(
            [
                "storage", "account", "keys", "list",
                "--account-name", account_name,
                "--resource-group", self.resources.resource_group,
            ]
        )
        try:
            self.resources.storage_key = keys[0]["value"]
        except (TypeError, KeyError, IndexError) as e:
            raise CommandError(f"No access key returned for storage account {account_name}") from e

        self.runner.invoke(
            [
                "storage", "container", "create",
                "--name", CONTAINER_NAME,
                "--account-name", account_name,
                "--account-key", self.resources.storage_key,
            ]
        )
        self.resources.container = CONTAINER_NAME

    def signed_url(self, blob_name: str, permissions: str, expiry: str) -> str:
        """Blob URL with an appended SAS token."""
        url = self.runner.invoke(["storage", "blob", "url", *self._storage_args(), "--name", blob_name])
        token = self.runner.invoke(
            [
                "storage", "blob", "generate-sas",
                *self._storage_args(),
                "--name", blob_name,
                "--permissions", permissions,
                "--expiry", expiry,
            ]
        )
        url = str(url).strip('"')
        token = str(token).strip('"')
        return f"{url}?{token}"

    def _upload(self, script: str, script_name: str) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / script_name
            path.write_text(script)
            self.runner.invoke(
                ["storage", "blob", "upload", *self._storage_args(), "--file", str(path), "--name", script_name]
            )

    def _blob_exists(self, blob_name: str) -> Any:
        return self.runner.invoke(["storage", "blob", "exists", *self._storage_args(), "--name", blob_name])

    def _download(self, blob_name: str) -> str:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / blob_name
            self.runner.invoke(
                ["storage", "blob", "download", *self._storage_args(), "--name", blob_name, "--file", str(path)]
            )
            return path.read_text(errors="replace")

    def run(self, script: str, description: str) -> str:
        """Upload ``script``, run it on the VM and return the result it uploads.

        Raises:
            CommandError: If any storage or extension command fails
            PollTimeoutError: If the result blob does not appear within the budget
            RunCancelledError: If the cancel event fires while waiting
        """
        if not (self.resources.storage_account and self.resources.container):
            raise CommandError("Storage for remote scripts has not been created")

        script_prefix = random_token(12)
        script_name = f"{script_prefix}.sh"
        output_name = f"{script_prefix}.out"
        expiry = sas_expiry()

        self._upload(script, script_name)
        script_url = self.signed_url(script_name, "r", expiry)
        output_url = self.signed_url(output_name, "wracd", expiry)

        public_settings = {"fileUris": [script_url]}
        protected_settings = {"commandToExecute": f"sh {script_name} '{output_url}'"}

        logger.info(f"Running {description} on {self.resources.vm}")
        self.runner.invoke(
            [
                "vm", "extension", "set",
                "--resource-group", self.resources.resource_group,
                "--vm-name", self.resources.vm,
                "--name", EXTENSION_NAME,
                "--publisher", EXTENSION_PUBLISHER,
                "--settings", json.dumps(public_settings),
                "--protected-settings", json.dumps(protected_settings),
            ]
        )

        loop = PollLoop(
            interval=self.settings.setup_script_interval,
            max_cycles=self.settings.setup_script_max_cycles,
            description=description,
            sleep=self._sleep,
            cancel_event=self._cancel_event,
        )
        cycle = 0

        def report(_result: Any) -> None:
            nonlocal cycle
            cycle += 1
            self.progress.waiting(cycle, loop.max_cycles, f"waiting for {description} result")

        outcome = loop.run(
            query=lambda: self._blob_exists(output_name),
            success=lambda result: isinstance(result, dict) and result.get("exists") is True,
            on_retry=report,
        )
        if outcome.is_failure:
            raise CommandError(f"{description} status check failed: {outcome.error}") from outcome.error
        if outcome.cancelled:
            raise RunCancelledError(f"Cancelled while waiting for {description}")
        if not outcome.is_success:
            raise PollTimeoutError(description, loop.budget_seconds)

        output = self._download(output_name)
        logger.info(f"{description} output:\n{output}")
        return output


__all__ = [
    "RHUI_UPDATE_SCRIPT",
    "RemoteScriptRunner",
    "disk_setup_script",
    "sas_expiry",
]
