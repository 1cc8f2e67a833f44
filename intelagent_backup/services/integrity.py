from __future__ import annotations

import hashlib
import os
import struct
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from intelagent_backup.core.errors import ConfigurationError, DecryptionError, IntegrityError


CHUNK_SIZE = 1024 * 1024
MAGIC = b"IABKENC2"
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
ITERATIONS_FIELD = struct.Struct(">I")
HEADER_SIZE = len(MAGIC) + ITERATIONS_FIELD.size + SALT_SIZE + NONCE_SIZE
DEFAULT_KDF_ITERATIONS = 200_000


def compute_digest(path: Path) -> str:
    # Compute streaming checksums for large backup archives.
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_encrypted(path: Path) -> bool:
    with path.open("rb") as handle:
        return handle.read(len(MAGIC)) == MAGIC


def _derive_key(secret: str | None, salt: bytes, iterations: int) -> bytes:
    if not secret:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY is required when encryption is enabled")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(secret.encode("utf-8"))


def _temp_sibling(path: Path, suffix: str) -> Path:
    return path.with_name(f".{path.name}.{suffix}")


def encrypt_file(path: Path, secret: str | None, *, iterations: int = DEFAULT_KDF_ITERATIONS) -> None:
    """Encrypt ``path`` in place with AES-256-GCM.

    Layout: ``MAGIC | iterations | salt | nonce | ciphertext | tag``. The KDF
    iteration count travels with the archive, so changing the setting later
    only affects new backups. The ciphertext is written to a temporary sibling
    that replaces ``path`` only once complete.
    """
    if iterations <= 0:
        raise ConfigurationError("BACKUP_KDF_ITERATIONS must be > 0")
    salt = os.urandom(SALT_SIZE)
    key = _derive_key(secret, salt, iterations)
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    temp_path = _temp_sibling(path, "enc")
    try:
        with path.open("rb") as input_handle, temp_path.open("wb") as output_handle:
            output_handle.write(MAGIC + ITERATIONS_FIELD.pack(iterations) + salt + nonce)
            for chunk in iter(lambda: input_handle.read(CHUNK_SIZE), b""):
                output_handle.write(encryptor.update(chunk))
            output_handle.write(encryptor.finalize())
            output_handle.write(encryptor.tag)
        os.replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)


def decrypt_file(path: Path, secret: str | None) -> None:
    """Decrypt ``path`` in place; plaintext replaces it only after the tag verifies."""
    if not secret:
        raise ConfigurationError("BACKUP_ENCRYPTION_KEY is required to decrypt backups")
    total_size = path.stat().st_size
    if total_size < HEADER_SIZE + TAG_SIZE:
        raise IntegrityError("encrypted archive is too small to contain header and tag")
    temp_path = _temp_sibling(path, "dec")
    try:
        with path.open("rb") as input_handle:
            if input_handle.read(len(MAGIC)) != MAGIC:
                raise IntegrityError("archive is not in the encrypted backup format")
            (iterations,) = ITERATIONS_FIELD.unpack(input_handle.read(ITERATIONS_FIELD.size))
            if iterations == 0:
                raise IntegrityError("encrypted archive header has no KDF iteration count")
            salt = input_handle.read(SALT_SIZE)
            nonce = input_handle.read(NONCE_SIZE)
            input_handle.seek(total_size - TAG_SIZE)
            tag = input_handle.read(TAG_SIZE)
            input_handle.seek(HEADER_SIZE)
            key = _derive_key(secret, salt, iterations)
            decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
            remaining = total_size - HEADER_SIZE - TAG_SIZE
            with temp_path.open("wb") as output_handle:
                while remaining > 0:
                    chunk = input_handle.read(min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    output_handle.write(decryptor.update(chunk))
                try:
                    output_handle.write(decryptor.finalize())
                except InvalidTag as exc:
                    raise DecryptionError("archive failed authentication; wrong key or tampered data") from exc
        os.replace(temp_path, path)
    finally:
        temp_path.unlink(missing_ok=True)
