"""Data model shared by the provisioning pipeline, orchestrator and teardown.

ResourceSet is the single record of everything a run provisions. It is
populated step by step and never shrinks; a populated field cannot be
reassigned to a different value.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar

from adeval.exceptions import UsageError


class CredentialMode(Enum):
    """How the encryption extension authenticates to the key vault."""

    SERVICE_PRINCIPAL = "service_principal"
    SINGLE_PASS = "single_pass"


class DiskFormatMode(Enum):
    """Whether data disks are encrypted in place or formatted while encrypting."""

    STANDARD = "standard"
    ENCRYPT_FORMAT_ALL = "encrypt_format_all"


@dataclass(frozen=True)
class ProvisioningMode:
    """Credential and disk strategy, fixed for the lifetime of a run."""

    credential: CredentialMode = CredentialMode.SERVICE_PRINCIPAL
    disk_format: DiskFormatMode = DiskFormatMode.STANDARD

    @classmethod
    def from_flags(cls, singlepass: bool = False, encrypt_format_all: bool = False) -> "ProvisioningMode":
        return cls(
            credential=CredentialMode.SINGLE_PASS if singlepass else CredentialMode.SERVICE_PRINCIPAL,
            disk_format=(
                DiskFormatMode.ENCRYPT_FORMAT_ALL if encrypt_format_all else DiskFormatMode.STANDARD
            ),
        )

    @property
    def single_pass(self) -> bool:
        return self.credential is CredentialMode.SINGLE_PASS

    @property
    def encrypt_format_all(self) -> bool:
        return self.disk_format is DiskFormatMode.ENCRYPT_FORMAT_ALL


class VolumeTarget(Enum):
    """Volumes targeted by encryption."""

    OS = "OS"
    DATA = "DATA"
    ALL = "ALL"

    @classmethod
    def parse(cls, value: str | None) -> "VolumeTarget":
        """Parse a volume type case-insensitively, defaulting to OS.

        Raises:
            UsageError: If the value is not OS, DATA or ALL
        """
        if not value:
            return cls.OS
        try:
            return cls(value.strip().upper())
        except ValueError as e:
            raise UsageError(
                f"Invalid volume type: {value}. Valid types: OS, DATA, ALL"
            ) from e

    @property
    def includes_data(self) -> bool:
        """True when data disks must be attached and prepared."""
        return self is not VolumeTarget.OS

    @property
    def includes_os(self) -> bool:
        return self is not VolumeTarget.DATA


class EncryptionState(Enum):
    """States of the encryption orchestrator."""

    NOT_STARTED = "NotStarted"
    ENABLING = "Enabling"
    AWAITING_PROGRESS = "AwaitingProgress"
    AWAITING_RESTART_PENDING = "AwaitingRestartPending"
    RESTARTING = "Restarting"
    AWAITING_POST_RESTART_SUCCESS = "AwaitingPostRestartSuccess"
    SUCCEEDED = "Succeeded"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EncryptionState.SUCCEEDED, EncryptionState.TIMED_OUT, EncryptionState.FAILED)


@dataclass
class ResourceSet:
    """Identifiers of everything provisioned during one run."""

    resource_group: str | None = None
    location: str | None = None
    subscription_id: str | None = None
    vnet: str | None = None
    subnet: str | None = None
    public_ip: str | None = None
    nsg: str | None = None
    nic: str | None = None
    vm: str | None = None
    storage_account: str | None = None
    storage_key: str | None = None
    container: str | None = None
    key_vault_name: str | None = None
    key_vault_id: str | None = None
    key_vault_uri: str | None = None
    kek_name: str | None = None
    kek_id: str | None = None
    kek_uri: str | None = None
    app_name: str | None = None
    app_id: str | None = None
    app_secret: str | None = field(default=None, repr=False)
    sp_object_id: str | None = None
    resource_group_created: bool = False
    app_created: bool = False

    _FLAGS: ClassVar[frozenset[str]] = frozenset({"resource_group_created", "app_created"})

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in self._FLAGS:
            current = getattr(self, name, None)
            if current is not None and value != current:
                raise ValueError(f"{name} is already set to {current!r} and cannot change")
        elif getattr(self, name, False) and not value:
            raise ValueError(f"{name} cannot be cleared once set")
        super().__setattr__(name, value)

    def populated(self) -> dict[str, Any]:
        """Return populated identifier fields, secrets excluded."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._FLAGS
            and f.name not in ("app_secret", "storage_key")
            and getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class PresuppliedResources:
    """Identity and key vault objects created ahead of time.

    Either all fields required by the credential mode are present (reuse) or
    none are (create). Any other combination is rejected.
    """

    app_name: str | None = None
    app_secret: str | None = field(default=None, repr=False)
    app_id: str | None = None
    key_vault_id: str | None = None
    key_vault_uri: str | None = None
    kek_id: str | None = None
    kek_uri: str | None = None

    ENV_VARS: ClassVar[dict[str, str]] = {
        "app_name": "ADE_ADAPP_NAME",
        "app_secret": "ADE_ADAPP_SECRET",
        "app_id": "ADE_ADSP_APPID",
        "key_vault_id": "ADE_KV_ID",
        "key_vault_uri": "ADE_KV_URI",
        "kek_id": "ADE_KEK_ID",
        "kek_uri": "ADE_KEK_URI",
    }
    IDENTITY_FIELDS: ClassVar[tuple[str, ...]] = ("app_name", "app_secret", "app_id")
    VAULT_FIELDS: ClassVar[tuple[str, ...]] = ("key_vault_id", "key_vault_uri", "kek_id", "kek_uri")

    @classmethod
    def from_environment(
        cls, environ: Mapping[str, str] | None = None, base: "PresuppliedResources | None" = None
    ) -> "PresuppliedResources":
        """Read ADE_* variables; set variables override values from ``base``."""
        env = os.environ if environ is None else environ
        values = {}
        for name, var in cls.ENV_VARS.items():
            value = env.get(var) or None
            if value is None and base is not None:
                value = getattr(base, name)
            values[name] = value
        return cls(**values)

    def required_fields(self, mode: CredentialMode) -> tuple[str, ...]:
        if mode is CredentialMode.SINGLE_PASS:
            return self.VAULT_FIELDS
        return self.IDENTITY_FIELDS + self.VAULT_FIELDS

    def is_empty(self, mode: CredentialMode) -> bool:
        return all(getattr(self, name) is None for name in self.required_fields(mode))

    def missing(self, mode: CredentialMode) -> list[str]:
        """Environment variable names of required fields that are not set."""
        return [
            self.ENV_VARS[name]
            for name in self.required_fields(mode)
            if getattr(self, name) is None
        ]

    def is_complete(self, mode: CredentialMode) -> bool:
        return not self.missing(mode)

    def to_dict(self) -> dict[str, str]:
        return {
            name: getattr(self, name)
            for name in self.ENV_VARS
            if getattr(self, name) is not None
        }


@dataclass(frozen=True)
class ValidationOptions:
    """What to validate: image, region, target volumes and modes."""

    image: str
    location: str
    volume_target: VolumeTarget = VolumeTarget.OS
    mode: ProvisioningMode = field(default_factory=ProvisioningMode)
    rhui: bool = False
    auto_delete: bool = True
    vm_size: str | None = None


class PollStatus(Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class PollOutcome:
    """Terminal result of a poll loop."""

    status: PollStatus
    cycles: int
    result: Any = None
    error: BaseException | None = None
    # Timed out because the cancel event fired, not because the budget ran out
    cancelled: bool = False

    @classmethod
    def succeeded(cls, result: Any, cycles: int) -> "PollOutcome":
        return cls(PollStatus.SUCCEEDED, cycles, result=result)

    @classmethod
    def timed_out(cls, cycles: int, result: Any = None, cancelled: bool = False) -> "PollOutcome":
        return cls(PollStatus.TIMED_OUT, cycles, result=result, cancelled=cancelled)

    @classmethod
    def failed(cls, cycles: int, error: BaseException | None = None, result: Any = None) -> "PollOutcome":
        return cls(PollStatus.FAILED, cycles, result=result, error=error)

    @property
    def is_success(self) -> bool:
        return self.status is PollStatus.SUCCEEDED

    @property
    def is_timeout(self) -> bool:
        return self.status is PollStatus.TIMED_OUT

    @property
    def is_failure(self) -> bool:
        return self.status is PollStatus.FAILED


@dataclass
class RunReport:
    """Timing and final status of one validation run."""

    status: EncryptionState
    total_seconds: float
    pre_reboot_seconds: float | None = None
    message: str = ""

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format seconds as ``Xh:Ym:Zs``."""
        total = int(seconds)
        return f"{total // 3600}h:{total % 3600 // 60}m:{total % 60}s"

    @property
    def succeeded(self) -> bool:
        return self.status is EncryptionState.SUCCEEDED


__all__ = [
    "CredentialMode",
    "DiskFormatMode",
    "EncryptionState",
    "PollOutcome",
    "PollStatus",
    "PresuppliedResources",
    "ProvisioningMode",
    "ResourceSet",
    "RunReport",
    "ValidationOptions",
    "VolumeTarget",
]
