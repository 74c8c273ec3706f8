"""Resource name generation.

Every resource created during one run shares a single prefix so a person can
find and bulk-delete all of them by searching for it.

Public API:
    generate: Join a prefix and a semantic suffix
    random_prefix: Fresh run prefix ("ade" + 6 random lowercase alphanumerics)
    ResourceNames: All names of one run derived from a prefix
"""

import re
import secrets
import string
from dataclasses import dataclass

DEFAULT_PREFIX_STEM = "ade"
RANDOM_PART_LENGTH = 6
NAME_ALPHABET = string.ascii_lowercase + string.digits

# Storage account names are the strictest consumer: 3-24 lowercase alphanumerics.
MAX_NAME_LENGTH = 24
LONGEST_SUFFIX = "subnet"
MAX_PREFIX_LENGTH = MAX_NAME_LENGTH - len(LONGEST_SUFFIX)

_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9]*$")


def generate(prefix: str, suffix: str) -> str:
    """Return the identifier for ``suffix`` within the run identified by ``prefix``."""
    return f"{prefix}{suffix}"


def random_token(length: int, alphabet: str = NAME_ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def random_prefix(stem: str = DEFAULT_PREFIX_STEM, length: int = RANDOM_PART_LENGTH) -> str:
    """Create a new run prefix such as ``adek3x9qa``."""
    return stem + random_token(length)


def validate_prefix(prefix: str) -> str:
    """Check a caller-supplied prefix.

    Raises:
        ValueError: If the prefix is not lowercase alphanumeric starting with a
            letter, or would push generated names past the storage account limit
    """
    if not _PREFIX_PATTERN.match(prefix):
        raise ValueError(
            f"Invalid prefix: {prefix!r}. Use lowercase letters and digits, starting with a letter"
        )
    if len(prefix) > MAX_PREFIX_LENGTH:
        raise ValueError(f"Prefix too long: {prefix!r} (max {MAX_PREFIX_LENGTH} characters)")
    return prefix


@dataclass(frozen=True)
class ResourceNames:
    """Names of every resource one run may create."""

    prefix: str
    resource_group: str
    vnet: str
    subnet: str
    public_ip: str
    nsg: str
    nic: str
    vm: str
    storage_account: str
    key_vault: str
    kek: str
    app: str
    certificate: str

    @classmethod
    def from_prefix(cls, prefix: str) -> "ResourceNames":
        validate_prefix(prefix)
        return cls(
            prefix=prefix,
            resource_group=generate(prefix, "rg"),
            vnet=generate(prefix, "vnet"),
            subnet=generate(prefix, "subnet"),
            public_ip=generate(prefix, "pubip"),
            nsg=generate(prefix, "nsg"),
            nic=generate(prefix, "nic"),
            vm=generate(prefix, "vm"),
            storage_account=generate(prefix, "stg"),
            key_vault=generate(prefix, "kv"),
            kek=generate(prefix, "kek"),
            app=generate(prefix, "adapp"),
            certificate=generate(prefix, "cert"),
        )

    @classmethod
    def random(cls) -> "ResourceNames":
        return cls.from_prefix(random_prefix())


__all__ = [
    "ResourceNames",
    "generate",
    "random_prefix",
    "random_token",
    "validate_prefix",
]
