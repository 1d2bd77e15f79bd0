"""Random file naming for uploads without a configured filename."""

import re
import secrets

from gridstream.errors import ConfigurationError

IDENTITY_BYTES = 16

# 16 random bytes rendered as lowercase hex
IDENTITY_PATTERN = re.compile(r"^[a-f0-9]{32}$")


def generate_identity(num_bytes: int = IDENTITY_BYTES) -> str:
    """Return a random lowercase hex token of ``2 * num_bytes`` characters."""
    return secrets.token_hex(num_bytes)


def check_entropy() -> None:
    """Verify the OS random source works.

    Called once when a storage engine is built so that a broken random
    source surfaces at startup instead of on every upload.

    Raises:
        ConfigurationError: If the random source cannot produce bytes.
    """
    try:
        secrets.token_bytes(1)
    except (OSError, NotImplementedError) as exc:
        raise ConfigurationError(f"No usable random source: {exc}") from exc
