"""
Identity Allocator

Produces collision-free resource names so parallel scenarios never touch
each other's resources.

Azure naming rules for the resources we create:
- API Management service: 1-50 chars, letters/digits/hyphens,
  must start with a letter and end with a letter or digit
- Resource group: 1-90 chars
"""

import logging
import random
import re
import string

logger = logging.getLogger(__name__)

# Lowercase only: API Management names are case-insensitive and become DNS labels
ALPHABET = string.ascii_lowercase + string.digits
TOKEN_LENGTH = 8
MAX_NAME_LENGTH = 50

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9-]*$")

# os.urandom backed; no state shared between callers
_random = random.SystemRandom()


class IdentityError(ValueError):
    """Raised when a prefix cannot produce a compliant resource name."""
    pass


def unique_id(length: int = TOKEN_LENGTH) -> str:
    """Return a random lowercase alphanumeric token."""
    return "".join(_random.choice(ALPHABET) for _ in range(length))


def allocate(prefix: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """
    Allocate a unique resource name.

    Args:
        prefix: Semantic prefix, e.g. "apim-test-"
        max_length: Provider limit for the full name

    Returns:
        prefix + random token

    Raises:
        IdentityError: If the prefix violates the naming charset or leaves
            no room for the token
    """
    if not _PREFIX_RE.match(prefix):
        raise IdentityError(
            f"Invalid prefix {prefix!r}: must start with a lowercase letter "
            f"and contain only lowercase letters, digits and hyphens"
        )
    if len(prefix) + TOKEN_LENGTH > max_length:
        raise IdentityError(
            f"Prefix {prefix!r} too long: {len(prefix) + TOKEN_LENGTH} > {max_length}"
        )

    identity = f"{prefix}{unique_id()}"
    logger.debug(f"Allocated identity {identity}")
    return identity
