"""Azure CLI command execution.

Provides AzureCliRunner.invoke() - a thin wrapper around subprocess.run that
runs one ``az`` command, parses its JSON output and raises CommandError on any
failure. It is the only place adeval talks to Azure.

Commands are never retried here: every invocation may create, change or
delete a real resource. Loops that tolerate eventual consistency live in
adeval.poll.

Usage:
    from adeval.command_runner import AzureCliRunner

    runner = AzureCliRunner()
    group = runner.invoke(["group", "create", "--name", "rg", "--location", "eastus"])
"""

import json
import logging
import re
import subprocess
from collections.abc import Sequence
from typing import Any, Protocol

from adeval.exceptions import CommandError

logger = logging.getLogger(__name__)

MASK = "****"

# Flags whose following argument must never reach a log line
SECRET_FLAGS = frozenset(
    {
        "--password",
        "--aad-client-secret",
        "--account-key",
        "--protected-settings",
        "--client-secret",
        "--sas-token",
    }
)

_SAS_SIGNATURE = re.compile(r"(sig=)[^&\s\"']+", re.IGNORECASE)


class CommandRunner(Protocol):
    """Anything that can execute an Azure CLI command and return parsed JSON."""

    def invoke(self, args: Sequence[str], *, timeout: int | None = None) -> Any: ...


def mask_args(args: Sequence[str]) -> list[str]:
    """Return a copy of ``args`` with secret values replaced by a mask.

    Example:
        >>> mask_args(["ad", "app", "create", "--password", "hunter2"])
        ['ad', 'app', 'create', '--password', '****']
    """
    masked: list[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            masked.append(MASK)
            hide_next = False
            continue
        if "=" in arg and arg.split("=", 1)[0] in SECRET_FLAGS:
            masked.append(f"{arg.split('=', 1)[0]}={MASK}")
            continue
        if arg in SECRET_FLAGS:
            hide_next = True
        masked.append(mask_text(arg))
    return masked


def mask_text(text: str) -> str:
    """Mask SAS signatures embedded in URLs."""
    return _SAS_SIGNATURE.sub(rf"\g<1>{MASK}", text)


class AzureCliRunner:
    """Run Azure CLI commands and return their parsed JSON output."""

    def __init__(self, executable: str = "az", timeout: int = 1800):
        """Initialize runner.

        Args:
            executable: Azure CLI executable name or path
            timeout: Default per-command timeout in seconds. VM creation and
                encryption enable can legitimately take tens of minutes.
        """
        self.executable = executable
        self.timeout = timeout

    def build_command(self, args: Sequence[str]) -> list[str]:
        cmd = [self.executable, *args]
        if "--output" not in args and "-o" not in args:
            cmd.extend(["--output", "json"])
        return cmd

    def invoke(self, args: Sequence[str], *, timeout: int | None = None) -> Any:
        """Execute an Azure CLI command.

        Args:
            args: Arguments after ``az``, e.g. ["vm", "show", "--name", "vm1"]
            timeout: Override of the default timeout in seconds

        Returns:
            Parsed JSON output, or None when the command printed nothing

        Raises:
            CommandError: On nonzero exit, timeout, missing executable or
                output that is not valid JSON
        """
        cmd = self.build_command(args)
        display = " ".join(mask_args(cmd))
        logger.debug(f"Running: {display}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(
                f"Command not found: {self.executable}", command=display, returncode=127
            ) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(
                f"Command timed out after {e.timeout}s: {display}", command=display, returncode=-1
            ) from e

        if result.returncode != 0:
            stderr = mask_text(result.stderr.strip())
            raise CommandError(
                f"Command failed ({result.returncode}): {display}: {stderr}",
                command=display,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=stderr,
            )

        output = result.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise CommandError(
                f"Failed to parse output of {display}: {e}",
                command=display,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            ) from e


__all__ = ["AzureCliRunner", "CommandRunner", "mask_args", "mask_text"]
