"""
smcrypt Encryption/Decryption Engine
====================================

Hybrid file encryption with the Chinese national-standard suite:
- SM2 public-key encryption wraps a fresh 16-byte session key
- SM4-CBC with PKCS7 padding encrypts the file body in a streaming fashion
- SM3 fingerprints input and output files

SM4 and SM3 come from the ``cryptography`` library; the SM2 curve
arithmetic lives in :mod:`sm2`.

Container format
----------------
::

    offset 0      int32 (big-endian)  envelope length N
    offset 4      bytes[N]            SM2-wrapped session key (C1 || C2 || C3)
    offset 4+N    bytes[16]           CBC initialization vector
    offset 20+N   bytes[...]          SM4-CBC/PKCS7 ciphertext body

The body is always a whole number of 16-byte blocks and is never empty:
a zero-byte plaintext still yields one block of padding.
"""

from __future__ import annotations

import io
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, NamedTuple, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

import sm2

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SESSION_KEY_SIZE: int = 16  # SM4 key
IV_SIZE: int = 16           # CBC IV
BLOCK_SIZE: int = 16        # SM4 block
DIGEST_SIZE: int = 32       # SM3 output
LENGTH_PREFIX_SIZE: int = 4
SCALAR_SIZE: int = sm2.FIELD_SIZE
COMPRESSED_POINT_SIZE: int = sm2.COMPRESSED_SIZE
UNCOMPRESSED_POINT_SIZE: int = sm2.UNCOMPRESSED_SIZE
WRAPPED_KEY_SIZE: int = sm2.UNCOMPRESSED_SIZE + SESSION_KEY_SIZE + sm2.HASH_SIZE
DEFAULT_CHUNK: int = 8 * 1024  # 8 KiB streaming chunk

_LENGTH_PREFIX = struct.Struct(">i")

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SMCryptError(Exception):
    """Base exception for all smcrypt errors."""


class FormatError(SMCryptError):
    """Text is not a valid hexadecimal encoding."""


class InvalidKeyFormat(SMCryptError):
    """Key, IV or session key has the wrong length or shape."""


class MalformedContainer(SMCryptError):
    """Header framing is inconsistent with the actual file content."""


class EmptyBody(MalformedContainer):
    """Container holds a header but no ciphertext."""


class EncryptionError(SMCryptError):
    """Session key could not be wrapped."""


class DecryptionError(SMCryptError):
    """Wrong private key or corrupted envelope."""


class IntegrityError(DecryptionError):
    """Padding check failed: wrong session key or corrupted body."""


class BackendUnavailable(SMCryptError):
    """The installed OpenSSL build lacks SM4 or SM3."""


# ---------------------------------------------------------------------------
# Backend check
# ---------------------------------------------------------------------------


def ensure_backend() -> None:
    """
    Verify that ``cryptography`` can run SM4-CBC and SM3.

    Call once at process start.  Holds no state; safe to call again.

    Raises
    ------
    BackendUnavailable
        If either primitive is missing from the linked OpenSSL.
    """
    zero = bytes(BLOCK_SIZE)
    try:
        Cipher(algorithms.SM4(zero), modes.CBC(zero)).encryptor()
        hashes.Hash(hashes.SM3())
    except UnsupportedAlgorithm as exc:
        raise BackendUnavailable(
            "This cryptography/OpenSSL build does not provide SM4-CBC and SM3."
        ) from exc


# ---------------------------------------------------------------------------
# Key codec
# ---------------------------------------------------------------------------


def encode_hex(data: bytes) -> str:
    """Encode bytes as lowercase hex."""
    return bytes(data).hex()


def decode_hex(text: str) -> bytes:
    """
    Decode hex text (case-insensitive, surrounding whitespace ignored).

    Raises
    ------
    FormatError
        If *text* is not hex or decodes to nothing.
    """
    if not isinstance(text, str):
        raise FormatError("Hex input must be a string.")
    try:
        data = bytes.fromhex(text.strip())
    except ValueError as exc:
        raise FormatError("Invalid hexadecimal text.") from exc
    if not data:
        raise FormatError("Hex text decodes to an empty byte string.")
    return data


def validate_public_key(public_key: bytes) -> None:
    """Accept only a 33- or 65-byte SM2 point that lies on the curve."""
    if not isinstance(public_key, (bytes, bytearray)):
        raise InvalidKeyFormat("Public key must be bytes.")
    if len(public_key) not in (COMPRESSED_POINT_SIZE, UNCOMPRESSED_POINT_SIZE):
        raise InvalidKeyFormat(
            f"Public key must be {COMPRESSED_POINT_SIZE} or "
            f"{UNCOMPRESSED_POINT_SIZE} bytes (got {len(public_key)})."
        )
    try:
        sm2.decode_point(bytes(public_key))
    except ValueError as exc:
        raise InvalidKeyFormat(f"Public key is not a valid SM2 point: {exc}.") from exc


def validate_private_key(private_key: bytes) -> None:
    if not isinstance(private_key, (bytes, bytearray)):
        raise InvalidKeyFormat("Private key must be bytes.")
    if len(private_key) != SCALAR_SIZE:
        raise InvalidKeyFormat(
            f"Private key must be exactly {SCALAR_SIZE} bytes (got {len(private_key)})."
        )


def public_key_from_hex(text: str) -> bytes:
    """Decode and validate a hex public key."""
    key = decode_hex(text)
    validate_public_key(key)
    return key


def private_key_from_hex(text: str) -> bytes:
    """Decode and validate a hex private key."""
    key = decode_hex(text)
    validate_private_key(key)
    return key


def normalize_private_key(raw: bytes) -> bytes:
    """
    Bring a big-integer style scalar encoding to exactly 32 bytes.

    Java's ``BigInteger.toByteArray`` prepends a ``00`` sign byte when the
    top bit is set and drops leading zero bytes; both are undone here.
    """
    if not isinstance(raw, (bytes, bytearray)) or not raw:
        raise InvalidKeyFormat("Private key must be non-empty bytes.")
    stripped = bytes(raw).lstrip(b"\x00")
    if len(stripped) > SCALAR_SIZE:
        raise InvalidKeyFormat(
            f"Private key does not fit in {SCALAR_SIZE} bytes (got {len(raw)})."
        )
    return stripped.rjust(SCALAR_SIZE, b"\x00")


# ---------------------------------------------------------------------------
# SM2 envelope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyPair:
    """An SM2 key pair in its fixed-length byte encodings."""

    public_key: bytes
    private_key: bytes

    @property
    def public_hex(self) -> str:
        return encode_hex(self.public_key)

    @property
    def private_hex(self) -> str:
        return encode_hex(self.private_key)

    def __repr__(self) -> str:
        # never render the private scalar
        return f"KeyPair(public_key={self.public_hex!r}, private_key=<redacted>)"


class SM2Envelope:
    """
    Key pair generation and session-key wrapping.

    All public methods are **static**; the class is a logical namespace.
    """

    @staticmethod
    def generate_keypair(compressed: bool = True) -> KeyPair:
        """Generate a fresh SM2 key pair from the OS CSPRNG."""
        d = sm2.generate_private_scalar()
        public = sm2.encode_point(sm2.public_point(d), compressed=compressed)
        try:
            private = d.to_bytes(SCALAR_SIZE, "big")
        except OverflowError as exc:
            raise RuntimeError("Generated scalar exceeds the field size.") from exc
        logger.debug(
            "Generated SM2 key pair (%s public key)",
            "compressed" if compressed else "uncompressed",
        )
        return KeyPair(public_key=public, private_key=private)

    @staticmethod
    def derive_public_key(private_key: bytes, compressed: bool = True) -> bytes:
        """Recompute the public point for *private_key*."""
        validate_private_key(private_key)
        try:
            pt = sm2.public_point(int.from_bytes(private_key, "big"))
        except ValueError as exc:
            raise InvalidKeyFormat("Private key is not a usable SM2 scalar.") from exc
        return sm2.encode_point(pt, compressed=compressed)

    @staticmethod
    def keys_match(public_key: bytes, private_key: bytes) -> bool:
        """True when *public_key* belongs to *private_key* (either encoding)."""
        validate_public_key(public_key)
        derived = SM2Envelope.derive_public_key(private_key, compressed=False)
        return sm2.decode_point(bytes(public_key)) == sm2.decode_point(derived)

    @staticmethod
    def wrap(public_key: bytes, session_key: bytes) -> bytes:
        """
        Encrypt *session_key* under *public_key*.

        Output is randomized: two calls with identical inputs differ.

        Raises
        ------
        InvalidKeyFormat
            If the public key is malformed.
        EncryptionError
            If the session key is empty or the SM2 operation fails.
        """
        validate_public_key(public_key)
        if not isinstance(session_key, (bytes, bytearray)) or not session_key:
            raise EncryptionError("Session key must be non-empty bytes.")
        try:
            return sm2.encrypt(sm2.decode_point(bytes(public_key)), bytes(session_key))
        except ValueError as exc:
            raise EncryptionError(f"SM2 encryption failed: {exc}.") from exc

    @staticmethod
    def unwrap(private_key: bytes, ciphertext: bytes) -> bytes:
        """
        Recover a session key wrapped by :meth:`wrap`.

        Raises
        ------
        InvalidKeyFormat
            If the private key has the wrong length.
        DecryptionError
            Wrong key or corrupted envelope; the two are not distinguished.
        """
        validate_private_key(private_key)
        if not ciphertext:
            raise DecryptionError("SM2 decryption failed: wrong key or corrupted data.")
        try:
            return sm2.decrypt(int.from_bytes(private_key, "big"), bytes(ciphertext))
        except ValueError:
            raise DecryptionError(
                "SM2 decryption failed: wrong key or corrupted data."
            ) from None


# ---------------------------------------------------------------------------
# SM4-CBC stream cipher
# ---------------------------------------------------------------------------


class CipherSession:
    """
    Incremental SM4-CBC/PKCS7 transform.

    ``update`` may be fed chunks of any size; output is identical to
    processing the whole input at once.  ``finish`` must be called exactly
    once and flushes (encrypt) or verifies and strips (decrypt) padding.
    """

    def __init__(self, key: bytes, iv: bytes, for_encryption: bool):
        if not isinstance(key, (bytes, bytearray)) or len(key) != SESSION_KEY_SIZE:
            raise InvalidKeyFormat(f"SM4 key must be exactly {SESSION_KEY_SIZE} bytes.")
        if not isinstance(iv, (bytes, bytearray)) or len(iv) != IV_SIZE:
            raise InvalidKeyFormat(f"IV must be exactly {IV_SIZE} bytes.")
        try:
            cipher = Cipher(algorithms.SM4(bytes(key)), modes.CBC(bytes(iv)))
            if for_encryption:
                self._ctx = cipher.encryptor()
                self._pad = sym_padding.PKCS7(BLOCK_SIZE * 8).padder()
            else:
                self._ctx = cipher.decryptor()
                self._pad = sym_padding.PKCS7(BLOCK_SIZE * 8).unpadder()
        except UnsupportedAlgorithm as exc:
            raise BackendUnavailable("SM4-CBC is not available.") from exc
        self.for_encryption = for_encryption
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def update(self, chunk: bytes) -> bytes:
        """Transform *chunk*, returning every complete block available."""
        if self._finished:
            raise RuntimeError("update() called on a finished cipher session.")
        if self.for_encryption:
            return self._ctx.update(self._pad.update(chunk))
        return self._pad.update(self._ctx.update(chunk))

    def finish(self) -> bytes:
        """
        Flush the final block.

        Raises
        ------
        IntegrityError
            On decrypt, if the padding is invalid or the ciphertext is not
            a whole number of blocks.
        """
        if self._finished:
            raise RuntimeError("finish() called twice on a cipher session.")
        self._finished = True
        if self.for_encryption:
            return self._ctx.update(self._pad.finalize()) + self._ctx.finalize()
        try:
            tail = self._pad.update(self._ctx.finalize())
            return tail + self._pad.finalize()
        except ValueError:
            raise IntegrityError(
                "Padding check failed: wrong key or corrupted data."
            ) from None


def open_cipher(key: bytes, iv: bytes, for_encryption: bool) -> CipherSession:
    """Open an SM4-CBC session keyed with *key* and *iv*."""
    return CipherSession(key, iv, for_encryption)


def generate_session_key() -> bytes:
    """Generate a fresh 128-bit SM4 session key."""
    return os.urandom(SESSION_KEY_SIZE)


def generate_iv() -> bytes:
    return os.urandom(IV_SIZE)


# ---------------------------------------------------------------------------
# SM3 digester
# ---------------------------------------------------------------------------


class DigestSession:
    """Incremental SM3 fingerprint."""

    def __init__(self) -> None:
        try:
            self._hash = hashes.Hash(hashes.SM3())
        except UnsupportedAlgorithm as exc:
            raise BackendUnavailable("SM3 is not available.") from exc
        self._digest: Optional[bytes] = None

    def update(self, chunk: bytes) -> None:
        if self._digest is not None:
            raise RuntimeError("update() called on a finished digest session.")
        self._hash.update(chunk)

    def finish(self) -> bytes:
        """Return the 32-byte digest; repeated calls return the same value."""
        if self._digest is None:
            self._digest = self._hash.finalize()
        return self._digest

    def hexdigest(self) -> str:
        return encode_hex(self.finish())


def open_digest() -> DigestSession:
    return DigestSession()


def digest_file(path: Union[str, Path], *, chunk_size: int = DEFAULT_CHUNK) -> bytes:
    """SM3 of the file at *path*, read in *chunk_size* pieces."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive.")
    session = open_digest()
    with open(path, "rb") as fin:
        for chunk in iter(lambda: fin.read(chunk_size), b""):
            session.update(chunk)
    return session.finish()


def digest_file_hex(path: Union[str, Path], *, chunk_size: int = DEFAULT_CHUNK) -> str:
    return encode_hex(digest_file(path, chunk_size=chunk_size))


# ---------------------------------------------------------------------------
# Container header
# ---------------------------------------------------------------------------


class ContainerHeader(NamedTuple):
    envelope: bytes
    iv: bytes
    body_offset: int  # relative to the start of the header


def write_header(stream: BinaryIO, envelope: bytes, iv: bytes) -> int:
    """
    Write ``length || envelope || iv`` to *stream*.

    Returns the number of header bytes written.
    """
    if not envelope:
        raise MalformedContainer("Envelope must not be empty.")
    if len(envelope) > 0x7FFFFFFF:
        raise MalformedContainer("Envelope too large for a 4-byte length prefix.")
    if len(iv) != IV_SIZE:
        raise MalformedContainer(f"IV must be exactly {IV_SIZE} bytes.")
    header = _LENGTH_PREFIX.pack(len(envelope)) + bytes(envelope) + bytes(iv)
    stream.write(header)
    return len(header)


def read_header(stream: BinaryIO) -> ContainerHeader:
    """
    Parse the header at the current position of *stream*.

    Leaves the stream positioned at the first body byte.

    Raises
    ------
    MalformedContainer
        If the stream ends early or the declared length is impossible.
    """
    raw_len = _read_exact(stream, LENGTH_PREFIX_SIZE)
    if len(raw_len) != LENGTH_PREFIX_SIZE:
        raise MalformedContainer("Truncated envelope length.")
    (length,) = _LENGTH_PREFIX.unpack(raw_len)
    if length < 0:
        raise MalformedContainer(f"Negative envelope length {length}.")
    remaining = _remaining(stream)
    if remaining is not None and length > remaining:
        raise MalformedContainer(
            f"Envelope length {length} exceeds the {remaining} bytes that follow."
        )
    envelope = _read_exact(stream, length)
    if len(envelope) != length:
        raise MalformedContainer("Truncated envelope.")
    iv = _read_exact(stream, IV_SIZE)
    if len(iv) != IV_SIZE:
        raise MalformedContainer("Truncated IV.")
    logger.debug("Parsed container header: envelope=%d bytes", length)
    return ContainerHeader(envelope, iv, LENGTH_PREFIX_SIZE + length + IV_SIZE)


def container_size(envelope_length: int, plaintext_length: int) -> int:
    """Exact size of a container for a plaintext of *plaintext_length* bytes."""
    body = (plaintext_length // BLOCK_SIZE + 1) * BLOCK_SIZE
    return LENGTH_PREFIX_SIZE + envelope_length + IV_SIZE + body


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = stream.read(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _remaining(stream: BinaryIO) -> Optional[int]:
    seekable = getattr(stream, "seekable", None)
    if seekable is None or not seekable():
        return None
    pos = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(pos)
    return end - pos


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

generate_keypair = SM2Envelope.generate_keypair
derive_public_key = SM2Envelope.derive_public_key
keys_match = SM2Envelope.keys_match
wrap = SM2Envelope.wrap
unwrap = SM2Envelope.unwrap
