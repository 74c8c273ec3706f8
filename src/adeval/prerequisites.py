"""Checks that must pass before a run creates anything.

adeval needs the Azure CLI on PATH and an active ``az login``. Both are
verified up front so a missing tool never leaves half-created resources.
"""

import logging
import platform
import shutil
from dataclasses import dataclass, field
from typing import ClassVar

from adeval.command_runner import CommandRunner
from adeval.exceptions import CommandError, PreconditionError

logger = logging.getLogger(__name__)


@dataclass
class PrerequisiteResult:
    """Which required executables were found on PATH."""

    platform_name: str
    available: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def all_available(self) -> bool:
        return not self.missing


@dataclass
class AccountInfo:
    """Subscription and identity of the current ``az login``."""

    subscription_id: str
    subscription_name: str | None = None
    tenant_id: str | None = None
    user: str | None = None


class PrerequisiteChecker:
    """Verify the Azure CLI is installed and logged in."""

    REQUIRED_TOOLS: ClassVar[list[str]] = ["az"]

    INSTALL_HINTS: ClassVar[dict[str, str]] = {
        "macos": "  brew install azure-cli",
        "linux": "  curl -sL https://aka.ms/InstallAzureCLIDeb | sudo bash",
        "windows": "  Download from: https://aka.ms/installazurecliwindows",
    }
    GENERIC_HINT: ClassVar[str] = "  See: https://docs.microsoft.com/cli/azure/install-azure-cli"

    @classmethod
    def check_tool(cls, tool_name: str) -> bool:
        path = shutil.which(tool_name)
        logger.debug(f"{tool_name}: {path or 'not on PATH'}")
        return path is not None

    @classmethod
    def check_all(cls) -> PrerequisiteResult:
        result = PrerequisiteResult(platform_name=cls.detect_platform())
        for tool in cls.REQUIRED_TOOLS:
            (result.available if cls.check_tool(tool) else result.missing).append(tool)
        if result.missing:
            logger.error(f"Not installed: {', '.join(result.missing)}")
        return result

    @classmethod
    def detect_platform(cls) -> str:
        """Map ``platform.system()`` to a key of INSTALL_HINTS, or ``unknown``."""
        return {"darwin": "macos", "linux": "linux", "windows": "windows"}.get(
            platform.system().lower(), "unknown"
        )

    @classmethod
    def format_missing_message(cls, missing: list[str], platform_name: str) -> str:
        if not missing:
            return "Azure CLI is installed."
        return "\n".join(
            [
                "Error: Azure CLI 2.0 is not installed.",
                "",
                f"Platform: {platform_name}",
                "",
                "Install Azure CLI:",
                cls.INSTALL_HINTS.get(platform_name, cls.GENERIC_HINT),
                "",
                "After installing, run 'az login' and then 'adeval' again.",
            ]
        )

    @classmethod
    def check_login(cls, runner: CommandRunner) -> AccountInfo:
        """Return the logged-in account.

        Raises:
            PreconditionError: If ``az account show`` fails or returns no subscription
        """
        try:
            account = runner.invoke(["account", "show"])
        except CommandError as e:
            raise PreconditionError(
                "Azure CLI is not logged in. Run 'az login' and try again."
            ) from e

        if not isinstance(account, dict) or not account.get("id"):
            raise PreconditionError("Azure CLI returned no active subscription. Run 'az login'.")

        user = account.get("user")
        info = AccountInfo(
            subscription_id=account["id"],
            subscription_name=account.get("name"),
            tenant_id=account.get("tenantId"),
            user=user.get("name") if isinstance(user, dict) else None,
        )
        logger.info(f"Using subscription {info.subscription_name or ''} ({info.subscription_id})")
        return info

    @classmethod
    def ensure_ready(cls, runner: CommandRunner) -> AccountInfo:
        """Check tooling, then login.

        Raises:
            PreconditionError: With installation or login instructions
        """
        result = cls.check_all()
        if not result.all_available:
            raise PreconditionError(cls.format_missing_message(result.missing, result.platform_name))
        return cls.check_login(runner)


__all__ = ["AccountInfo", "PrerequisiteChecker", "PrerequisiteResult"]
