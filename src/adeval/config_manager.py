"""Persistence of pre-created identity and key vault objects.

``adeval prereq`` writes the objects it creates to a TOML file; ``adeval
validate --config`` reads them back so repeated runs skip creating a new AD
application and key vault each time.

Security:
- File permissions: 0600 (owner read/write only), the file holds a client secret
- Atomic writes via temporary file and rename
"""

import logging
import os
from pathlib import Path
from typing import Any

import tomli
import tomlkit

from adeval.exceptions import ConfigError
from adeval.models import PresuppliedResources

logger = logging.getLogger(__name__)

RESOURCES_TABLE = "resources"
DETAILS_TABLE = "details"


class ConfigManager:
    """Load and save pre-created resources.

    The default location is ~/.adeval/resources.toml.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".adeval"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "resources.toml"

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        if custom_path:
            return Path(custom_path).expanduser().resolve()
        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def load_resources(cls, custom_path: str | None = None) -> PresuppliedResources:
        """Load pre-created resources.

        Returns an empty PresuppliedResources when the default file does not exist.

        Raises:
            ConfigError: If an explicitly given file is missing or unreadable
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            if custom_path:
                raise ConfigError(f"Config file not found: {config_path}")
            logger.debug("No saved resources found, nothing pre-supplied")
            return PresuppliedResources()

        mode = config_path.stat().st_mode & 0o777
        if mode & 0o077:
            logger.warning(
                f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
            )
            os.chmod(config_path, 0o600)

        try:
            with open(config_path, "rb") as f:
                data = tomli.load(f)
        except (OSError, tomli.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config {config_path}: {e}") from e

        table = data.get(RESOURCES_TABLE, {})
        if not isinstance(table, dict):
            raise ConfigError(f"[{RESOURCES_TABLE}] in {config_path} must be a table")

        unknown = set(table) - set(PresuppliedResources.ENV_VARS)
        if unknown:
            raise ConfigError(f"Unknown keys in [{RESOURCES_TABLE}]: {', '.join(sorted(unknown))}")

        logger.debug(f"Loaded pre-created resources from: {config_path}")
        return PresuppliedResources(**{k: str(v) for k, v in table.items()})

    @classmethod
    def save_resources(
        cls,
        resources: PresuppliedResources,
        custom_path: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Path:
        """Save pre-created resources atomically with 0600 permissions.

        Args:
            resources: Values to persist
            custom_path: Target file (default ~/.adeval/resources.toml)
            details: Informational values (resource group, certificate thumbprint...)

        Returns:
            Path of the written file

        Raises:
            ConfigError: If writing fails
        """
        config_path = cls.get_config_path(custom_path)
        temp_path = config_path.with_suffix(".tmp")

        doc = tomlkit.document()
        doc.add(tomlkit.comment("Written by adeval prereq; pass with: adeval validate --config"))
        table = tomlkit.table()
        for key, value in resources.to_dict().items():
            table[key] = value
        doc[RESOURCES_TABLE] = table
        if details:
            extra = tomlkit.table()
            for key, value in details.items():
                if value is not None:
                    extra[key] = value
            doc[DETAILS_TABLE] = extra

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                tomlkit.dump(doc, f)
            temp_path.replace(config_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config {config_path}: {e}") from e

        logger.debug(f"Saved pre-created resources to: {config_path}")
        return config_path


__all__ = ["ConfigManager"]
