"""Poll budgets and provisioning defaults.

This module provides the wait-loop budgets and VM defaults used during a
validation run. Defaults match how long ADE takes on current images; any
value can be overridden with an ADEVAL_<FIELD> environment variable.
"""

import logging
import os
from dataclasses import dataclass, fields

from adeval.exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "ADEVAL_"


@dataclass
class PollSettings:
    """Wait-loop budgets (interval in seconds, max cycles) and VM defaults."""

    # Role assignment retried until the new service principal is visible
    role_assignment_interval: float = 15.0
    role_assignment_max_cycles: int = 8

    # New AD application or service principal becoming visible in the directory
    directory_interval: float = 5.0
    directory_max_cycles: int = 24

    # Remote setup script uploads its output blob when done
    setup_script_interval: float = 60.0
    setup_script_max_cycles: int = 10

    # DATA volume encryption
    data_encryption_interval: float = 60.0
    data_encryption_max_cycles: int = 36

    # Metadata clearing check after "encryption disable"
    disable_check_interval: float = 60.0
    disable_check_max_cycles: int = 10

    # OS/ALL encryption until restart pending or completion (6 hours)
    os_encryption_interval: float = 600.0
    os_encryption_max_cycles: int = 36

    # ALL volumes with encrypt-format-all (20 hours)
    format_all_encryption_max_cycles: int = 120

    # Restart retries while the restart marker persists
    restart_interval: float = 300.0
    restart_max_attempts: int = 12

    # Completion after restart
    post_restart_interval: float = 60.0
    post_restart_max_cycles: int = 20

    # Self-signed certificate creation in the prereq setup
    certificate_interval: float = 5.0
    certificate_max_cycles: int = 60

    # VM defaults
    vm_size: str = "Standard_D2s_v3"
    data_disk_size_gb: int = 1
    data_disk_count: int = 2
    command_timeout: int = 1800

    @classmethod
    def from_environment(cls) -> "PollSettings":
        """Load settings, applying ``ADEVAL_<FIELD>`` overrides.

        Example:
            ADEVAL_OS_ENCRYPTION_MAX_CYCLES=48 raises the OS budget to 8 hours.

        Raises:
            ConfigError: If an override cannot be converted to the field's type
        """
        settings = cls()
        for f in fields(cls):
            var = ENV_PREFIX + f.name.upper()
            raw = os.getenv(var)
            if raw is None or raw == "":
                continue
            current = getattr(settings, f.name)
            try:
                value = type(current)(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {var}: {raw!r}") from e
            if isinstance(value, (int, float)) and value < 0:
                raise ConfigError(f"Invalid value for {var}: must not be negative")
            logger.debug(f"Override from environment: {f.name}={value}")
            setattr(settings, f.name, value)
        return settings


# Global settings instance (lazily loaded)
_settings: PollSettings | None = None


def get_poll_settings() -> PollSettings:
    """Get global poll settings (loaded from environment on first access)."""
    global _settings
    if _settings is None:
        _settings = PollSettings.from_environment()
    return _settings


def reset_poll_settings() -> None:
    """Reset global settings, forcing a reload from the environment on next access."""
    global _settings
    _settings = None


__all__ = ["PollSettings", "get_poll_settings", "reset_poll_settings"]
