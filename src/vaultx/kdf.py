"""
Password-based key derivation.

Turns a user password into a 256-bit AES key with PBKDF2-HMAC-SHA256.
The iteration count travels inside every envelope, so raising
DEFAULT_ITERATIONS later never strands older ciphertext.
"""

from __future__ import annotations

DEFAULT_ITERATIONS = 150_000
SALT_LENGTH = 16
KEY_LENGTH = 32
MAX_ITERATIONS = 0xFFFFFFFF


class CryptoError(Exception):
    """Base class for every codec and key-derivation failure."""


class InvalidInput(CryptoError, ValueError):
    """Raised for malformed arguments (empty password, bad salt length)."""


def validate_iterations(iterations: int) -> int:
    """Check an iteration count fits the envelope's uint32 field.

    Args:
        iterations: Requested PBKDF2 iteration count.

    Returns:
        The same count, unchanged.

    Raises:
        InvalidInput: If the count is not an integer in 1..2**32-1.
    """
    if isinstance(iterations, bool) or not isinstance(iterations, int):
        raise InvalidInput("Iterations must be an integer")
    if not 1 <= iterations <= MAX_ITERATIONS:
        raise InvalidInput(
            f"Iterations must be between 1 and {MAX_ITERATIONS}, got {iterations}"
        )
    return iterations


def derive_key(
    password: str,
    salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    """Derive a 32-byte key from a password using PBKDF2-HMAC-SHA256.

    Deterministic: the same password, salt and iteration count always
    yield the same key.

    Args:
        password: Non-empty user password.
        salt: Exactly SALT_LENGTH random bytes.
        iterations: PBKDF2 iteration count.

    Returns:
        Derived key bytes (KEY_LENGTH long).

    Raises:
        InvalidInput: If the password is empty or the salt has the wrong length.
    """
    from cryptography.hazmat.primitives.hashes import SHA256
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

    if not isinstance(password, str) or not password:
        raise InvalidInput("Password must be a non-empty string")
    if not isinstance(salt, (bytes, bytearray)) or len(salt) != SALT_LENGTH:
        raise InvalidInput(f"Salt must be exactly {SALT_LENGTH} bytes")
    validate_iterations(iterations)

    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=KEY_LENGTH,
        salt=bytes(salt),
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))
