"""
The Envelope -- self-describing AES-256-GCM ciphertext.

An envelope carries everything needed to decrypt it except the password:

    bytes 0..4     magic b"IIC1"
    byte  4        salt length (uint8)
    byte  5        IV length (uint8)
    bytes 6..10    PBKDF2 iterations (uint32, big-endian)
    salt           salt length bytes
    iv             IV length bytes
    ciphertext     variable
    tag            last 16 bytes (GCM authentication tag)

Salt and IV are freshly random for every encryption. Reusing an IV under
the same key breaks GCM, so callers only ever pass them explicitly for
known-answer testing.

File names get the same treatment but serialize to a URL-safe token:

    v1:<salt>:<iv>:<ciphertext>:<tag>:<iterations>      (base64url, no padding)
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
import struct
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from .kdf import (
    DEFAULT_ITERATIONS,
    MAX_ITERATIONS,
    SALT_LENGTH,
    CryptoError,
    InvalidInput,
    derive_key,
    validate_iterations,
)

logger = logging.getLogger("vaultx.envelope")

MAGIC = b"IIC1"
IV_LENGTH = 12
TAG_LENGTH = 16
MIN_IV_LENGTH = 8
MAX_IV_LENGTH = 128
PREFIX_LENGTH = len(MAGIC) + 1 + 1 + 4
CHUNK_SIZE = 256 * 1024  # 256 KB

NAME_TOKEN_VERSION = "v1"
NAME_TOKEN_SEPARATOR = ":"
NAME_TOKEN_PARTS = 6

_PREFIX = struct.Struct(">4sBBI")

PathLike = Union[str, os.PathLike]


class MalformedEnvelope(CryptoError):
    """Raised when a buffer is not a structurally valid envelope."""


class InvalidToken(CryptoError):
    """Raised when an encrypted name token cannot be parsed."""


class AuthenticationFailure(CryptoError):
    """Raised when the GCM tag does not verify.

    Deliberately says nothing about whether the password was wrong or
    the data was altered.
    """

    def __init__(self) -> None:
        super().__init__("Authentication failed: wrong password or corrupted data")


@dataclass(frozen=True)
class EnvelopeHeader:
    """Parsed envelope header."""

    salt: bytes
    iv: bytes
    iterations: int

    @property
    def length(self) -> int:
        """Total header size in bytes (fixed prefix + salt + IV)."""
        return PREFIX_LENGTH + len(self.salt) + len(self.iv)

    def to_bytes(self) -> bytes:
        """Serialize the header in wire order."""
        prefix = _PREFIX.pack(MAGIC, len(self.salt), len(self.iv), self.iterations)
        return prefix + self.salt + self.iv


# ---------------------------------------------------------------------------
# Header handling
# ---------------------------------------------------------------------------


def _unpack_prefix(prefix: bytes) -> tuple[int, int, int]:
    """Validate the fixed 10-byte prefix.

    Returns:
        (salt_length, iv_length, iterations)

    Raises:
        MalformedEnvelope: On short input, wrong magic, or unusable lengths.
    """
    if len(prefix) < PREFIX_LENGTH:
        raise MalformedEnvelope("Ciphertext too short")
    magic, salt_len, iv_len, iterations = _PREFIX.unpack(prefix[:PREFIX_LENGTH])
    if magic != MAGIC:
        raise MalformedEnvelope("Invalid ciphertext header")
    if salt_len != SALT_LENGTH:
        raise MalformedEnvelope(f"Unsupported salt length: {salt_len}")
    if not MIN_IV_LENGTH <= iv_len <= MAX_IV_LENGTH:
        raise MalformedEnvelope(f"Unsupported IV length: {iv_len}")
    if iterations == 0:
        raise MalformedEnvelope("Iteration count is zero")
    return salt_len, iv_len, iterations


def parse_header(envelope: bytes) -> EnvelopeHeader:
    """Parse and validate the header of an in-memory envelope.

    Args:
        envelope: Complete envelope bytes.

    Returns:
        EnvelopeHeader with salt, IV and iteration count.

    Raises:
        MalformedEnvelope: If the buffer cannot hold header and tag.
    """
    salt_len, iv_len, iterations = _unpack_prefix(envelope)
    salt_end = PREFIX_LENGTH + salt_len
    header_end = salt_end + iv_len
    if len(envelope) < header_end + TAG_LENGTH:
        raise MalformedEnvelope("Ciphertext malformed")
    return EnvelopeHeader(
        salt=bytes(envelope[PREFIX_LENGTH:salt_end]),
        iv=bytes(envelope[salt_end:header_end]),
        iterations=iterations,
    )


def _new_header(
    salt: Optional[bytes],
    iv: Optional[bytes],
    iterations: Optional[int],
) -> EnvelopeHeader:
    """Build a header, generating random salt and IV when not supplied."""
    salt = secrets.token_bytes(SALT_LENGTH) if salt is None else bytes(salt)
    iv = secrets.token_bytes(IV_LENGTH) if iv is None else bytes(iv)
    if not MIN_IV_LENGTH <= len(iv) <= MAX_IV_LENGTH:
        raise InvalidInput(
            f"IV must be between {MIN_IV_LENGTH} and {MAX_IV_LENGTH} bytes"
        )
    iterations = validate_iterations(
        DEFAULT_ITERATIONS if iterations is None else iterations
    )
    return EnvelopeHeader(salt=salt, iv=iv, iterations=iterations)


def _require_bytes(data: object, what: str) -> bytes:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInput(f"{what} must be bytes")
    return bytes(data)


# ---------------------------------------------------------------------------
# Buffers
# ---------------------------------------------------------------------------


def encrypt(
    password: str,
    plaintext: bytes,
    salt: Optional[bytes] = None,
    iv: Optional[bytes] = None,
    iterations: Optional[int] = None,
) -> bytes:
    """Encrypt a byte buffer into an envelope.

    Args:
        password: Encryption password.
        plaintext: Bytes to protect (may be empty).
        salt: Override the random salt (tests only).
        iv: Override the random IV (tests only).
        iterations: PBKDF2 iterations. Defaults to DEFAULT_ITERATIONS.

    Returns:
        Envelope bytes: header + ciphertext + tag.

    Raises:
        InvalidInput: On empty password or bad salt/IV/iteration values.
    """
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    plaintext = _require_bytes(plaintext, "Plaintext")
    header = _new_header(salt, iv, iterations)
    key = derive_key(password, header.salt, header.iterations)

    sealed = AESGCM(key).encrypt(header.iv, plaintext, None)
    return header.to_bytes() + sealed


def decrypt(password: str, envelope: bytes) -> bytes:
    """Verify and decrypt an envelope.

    Args:
        password: Decryption password.
        envelope: Envelope bytes produced by encrypt().

    Returns:
        The original plaintext.

    Raises:
        MalformedEnvelope: Wrong magic or truncated buffer.
        AuthenticationFailure: Wrong password or tampered data.
    """
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    envelope = _require_bytes(envelope, "Envelope")
    header = parse_header(envelope)
    key = derive_key(password, header.salt, header.iterations)

    try:
        return AESGCM(key).decrypt(header.iv, envelope[header.length:], None)
    except InvalidTag:
        raise AuthenticationFailure() from None


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@contextmanager
def _atomic_output(output_path: PathLike) -> Iterator[BinaryIO]:
    """Write to a sibling temp file and move it into place on success.

    On any exception the temp file is removed and the destination is
    left untouched.
    """
    target = Path(output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def encrypt_file(
    password: str,
    input_path: PathLike,
    output_path: PathLike,
    salt: Optional[bytes] = None,
    iv: Optional[bytes] = None,
    iterations: Optional[int] = None,
) -> Path:
    """Encrypt a file into an envelope file, streaming in CHUNK_SIZE pieces.

    The output is byte-for-byte what encrypt() would produce for the
    same inputs.

    Returns:
        Path to the written envelope.
    """
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    header = _new_header(salt, iv, iterations)
    key = derive_key(password, header.salt, header.iterations)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(header.iv)).encryptor()

    with open(input_path, "rb") as src, _atomic_output(output_path) as dst:
        dst.write(header.to_bytes())
        for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
            dst.write(encryptor.update(chunk))
        dst.write(encryptor.finalize())
        dst.write(encryptor.tag)

    logger.debug("Encrypted %s -> %s", input_path, output_path)
    return Path(output_path)


def decrypt_file(password: str, input_path: PathLike, output_path: PathLike) -> Path:
    """Decrypt an envelope file, streaming in CHUNK_SIZE pieces.

    Plaintext only reaches output_path after the tag verifies; a failed
    decryption leaves no partial output behind.

    Returns:
        Path to the written plaintext.

    Raises:
        MalformedEnvelope: Wrong magic or truncated file.
        AuthenticationFailure: Wrong password or tampered data.
    """
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

    with open(input_path, "rb") as src:
        total = os.fstat(src.fileno()).st_size
        prefix = src.read(PREFIX_LENGTH)
        salt_len, iv_len, iterations = _unpack_prefix(prefix)
        header_len = PREFIX_LENGTH + salt_len + iv_len
        if total < header_len + TAG_LENGTH:
            raise MalformedEnvelope("Ciphertext malformed")
        salt = src.read(salt_len)
        iv = src.read(iv_len)

        src.seek(total - TAG_LENGTH)
        tag = src.read(TAG_LENGTH)
        src.seek(header_len)

        key = derive_key(password, salt, iterations)
        decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()

        remaining = total - header_len - TAG_LENGTH
        try:
            with _atomic_output(output_path) as dst:
                while remaining > 0:
                    chunk = src.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        raise MalformedEnvelope("Ciphertext truncated while reading")
                    remaining -= len(chunk)
                    dst.write(decryptor.update(chunk))
                dst.write(decryptor.finalize())
        except InvalidTag:
            raise AuthenticationFailure() from None

    logger.debug("Decrypted %s -> %s", input_path, output_path)
    return Path(output_path)


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text + padding, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError):
        raise InvalidToken("Invalid encrypted name token") from None


def encrypt_name(
    password: str,
    name: str,
    salt: Optional[bytes] = None,
    iv: Optional[bytes] = None,
    iterations: Optional[int] = None,
) -> str:
    """Encrypt a file name into a URL- and path-safe token.

    Args:
        password: Encryption password.
        name: UTF-8 file name.

    Returns:
        Token of the form ``v1:salt:iv:ciphertext:tag:iterations``.
    """
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    if not isinstance(name, str):
        raise InvalidInput("Name must be a string")
    header = _new_header(salt, iv, iterations)
    key = derive_key(password, header.salt, header.iterations)

    sealed = AESGCM(key).encrypt(header.iv, name.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return NAME_TOKEN_SEPARATOR.join([
        NAME_TOKEN_VERSION,
        _b64url_encode(header.salt),
        _b64url_encode(header.iv),
        _b64url_encode(ciphertext),
        _b64url_encode(tag),
        str(header.iterations),
    ])


def decrypt_name(password: str, token: str) -> str:
    """Recover a file name from a token made by encrypt_name().

    Raises:
        InvalidToken: Wrong format tag, segment count, or encoding.
        AuthenticationFailure: Wrong password or tampered token.
    """
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    if not isinstance(token, str):
        raise InvalidToken("Invalid encrypted name token")
    parts = token.split(NAME_TOKEN_SEPARATOR)
    if len(parts) != NAME_TOKEN_PARTS or parts[0] != NAME_TOKEN_VERSION:
        raise InvalidToken("Invalid encrypted name token")

    salt, iv, ciphertext, tag = (_b64url_decode(p) for p in parts[1:5])
    if not (parts[5].isascii() and parts[5].isdigit()):
        raise InvalidToken("Invalid iteration count in name token")
    iterations = int(parts[5])
    if (
        len(salt) != SALT_LENGTH
        or not MIN_IV_LENGTH <= len(iv) <= MAX_IV_LENGTH
        or len(tag) != TAG_LENGTH
        or not 1 <= iterations <= MAX_ITERATIONS
    ):
        raise InvalidToken("Invalid encrypted name token")

    key = derive_key(password, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise AuthenticationFailure() from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidToken("Name token does not contain UTF-8 text") from None
