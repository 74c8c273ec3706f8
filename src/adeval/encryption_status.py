"""Decoding of ``az vm encryption show`` output.

Structured fields (per-disk encryption settings, the OS/data state carried in
the substatus message) are decoded into typed values. Free-text status
messages have no stable schema, so completion is still detected by searching
for the marker strings below anywhere in the payload.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from adeval.poll import contains_any_marker, contains_marker

logger = logging.getLogger(__name__)

# Marker strings reported by the Azure Disk Encryption extension
RESTART_PENDING_MARKER = "VMRestartPending"
DATA_SUCCEEDED_MARKER = "Encryption succeeded for data volumes"
ALL_SUCCEEDED_MARKER = "Encryption succeeded for all volumes"
OS_SUCCEEDED_MARKER = "Encryption succeeded for OS volume"
OS_COMPLETION_MARKERS = (ALL_SUCCEEDED_MARKER, OS_SUCCEEDED_MARKER)
PROGRESS_FIELD = "progressMessage"

OS_DISK_INDEX = 0
FIRST_DATA_DISK_INDEX = 1


class VolumeEncryptionState(Enum):
    """Per-volume state reported by the extension."""

    ENCRYPTED = "Encrypted"
    NOT_ENCRYPTED = "NotEncrypted"
    ENCRYPTION_IN_PROGRESS = "EncryptionInProgress"
    VM_RESTART_PENDING = "VMRestartPending"
    DECRYPTION_IN_PROGRESS = "DecryptionInProgress"
    NOT_MOUNTED = "NotMounted"
    UNKNOWN = "Unknown"

    @classmethod
    def _missing_(cls, value: object) -> "VolumeEncryptionState":
        return cls.UNKNOWN


@dataclass(frozen=True)
class EncryptionStatus:
    """Typed view over one ``az vm encryption show`` result."""

    raw: Any

    @classmethod
    def from_payload(cls, payload: Any) -> "EncryptionStatus":
        return cls(raw=payload if payload is not None else {})

    def has_marker(self, marker: str) -> bool:
        return contains_marker(self.raw, marker)

    def _status_entries(self) -> list[dict[str, Any]]:
        if not isinstance(self.raw, dict):
            return []
        entries: list[dict[str, Any]] = []
        for key in ("status", "substatus"):
            value = self.raw.get(key) or []
            if isinstance(value, dict):
                value = [value]
            entries.extend(entry for entry in value if isinstance(entry, dict))
        return entries

    def _substatus_states(self) -> dict[str, str]:
        """Decode ``{"os": "...", "data": "..."}`` carried inside substatus messages."""
        states: dict[str, str] = {}
        for entry in self._status_entries():
            message = entry.get("message")
            if not isinstance(message, str) or not message.startswith("{"):
                continue
            try:
                decoded = json.loads(message)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON status message: {message[:80]}")
                continue
            if isinstance(decoded, dict):
                states.update({k: v for k, v in decoded.items() if isinstance(v, str)})
        return states

    def _volume_state(self, substatus_key: str, legacy_key: str) -> VolumeEncryptionState | None:
        value = self._substatus_states().get(substatus_key)
        if value is None and isinstance(self.raw, dict):
            value = self.raw.get(legacy_key)
        if value is None:
            return None
        return VolumeEncryptionState(value)

    @property
    def os_state(self) -> VolumeEncryptionState | None:
        return self._volume_state("os", "osDisk")

    @property
    def data_state(self) -> VolumeEncryptionState | None:
        return self._volume_state("data", "dataDisk")

    @property
    def progress_message(self) -> str | None:
        """Human-readable progress text, if the extension reported any."""
        if isinstance(self.raw, dict) and self.raw.get(PROGRESS_FIELD):
            return str(self.raw[PROGRESS_FIELD])
        for entry in self._status_entries():
            message = entry.get("message")
            if isinstance(message, str) and message and not message.startswith("{"):
                return message
        return None

    def disk_encryption_enabled(self, index: int) -> bool | None:
        """Value of ``disks[index].encryptionSettings[0].enabled``, None when absent."""
        if not isinstance(self.raw, dict):
            return None
        disks = self.raw.get("disks") or []
        if index >= len(disks) or not isinstance(disks[index], dict):
            return None
        settings = disks[index].get("encryptionSettings") or []
        if not settings or not isinstance(settings[0], dict):
            return None
        enabled = settings[0].get("enabled")
        return enabled if isinstance(enabled, bool) else None

    @property
    def restart_pending(self) -> bool:
        return (
            self.has_marker(RESTART_PENDING_MARKER)
            or self.os_state is VolumeEncryptionState.VM_RESTART_PENDING
        )

    @property
    def data_volumes_succeeded(self) -> bool:
        return self.has_marker(DATA_SUCCEEDED_MARKER)

    @property
    def os_volume_succeeded(self) -> bool:
        """Extension reports success for the OS volume (or all volumes)."""
        return contains_any_marker(self.raw, OS_COMPLETION_MARKERS)

    @property
    def os_volume_stamped(self) -> bool:
        """OS volume reported Encrypted and its disk metadata carries enabled=true."""
        return (
            self.os_state is VolumeEncryptionState.ENCRYPTED
            and self.disk_encryption_enabled(OS_DISK_INDEX) is True
        )

    def summary(self) -> str:
        parts = []
        if self.os_state is not None:
            parts.append(f"os={self.os_state.value}")
        if self.data_state is not None:
            parts.append(f"data={self.data_state.value}")
        if self.progress_message:
            parts.append(self.progress_message)
        return ", ".join(parts) or "no status reported"


__all__ = [
    "ALL_SUCCEEDED_MARKER",
    "DATA_SUCCEEDED_MARKER",
    "FIRST_DATA_DISK_INDEX",
    "OS_COMPLETION_MARKERS",
    "OS_DISK_INDEX",
    "OS_SUCCEEDED_MARKER",
    "PROGRESS_FIELD",
    "RESTART_PENDING_MARKER",
    "EncryptionStatus",
    "VolumeEncryptionState",
]
