"""
Authenticated encryption for backup artifacts.

Uses AES-256-GCM with a key derived from the configured backup secret.
Encrypted files have the layout:

    magic (4 bytes) | nonce (12 bytes) | ciphertext | tag (16 bytes)

Encryption and decryption both stream, so artifacts of any size are
processed with constant memory.
"""

import os
from typing import Iterable, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .artifacts import BackupError


MAGIC = b'PGK1'
NONCE_SIZE = 12
TAG_SIZE = 16
HEADER_SIZE = len(MAGIC) + NONCE_SIZE
CHUNK_SIZE = 1024 * 1024  # 1MB


class EncryptionFailed(BackupError):
    """Raised when encrypting fails or ciphertext is rejected."""
    pass


def derive_key(secret: str) -> bytes:
    """
    Derive a 32-byte AES key from the backup secret.

    A fixed salt is used since the secret itself is the only key material;
    the same secret must always yield the same key so old backups stay
    readable.
    """
    fixed_salt = b'pgkeeper_backup_key_salt_v1'  # Version tagged for future rotation

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=fixed_salt,
        iterations=100000,
    )
    return kdf.derive(secret.encode())


class FileCipher:
    """Streams AES-256-GCM encryption and decryption."""

    def __init__(self, secret: str):
        """
        Initialize the cipher.

        Args:
            secret: Backup encryption secret (BACKUP_ENCRYPTION_KEY)

        Raises:
            ValueError: If secret is empty
        """
        if not secret:
            raise ValueError("Encryption secret must not be empty")

        self._key = derive_key(secret)

    def encrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Encrypt a stream of plaintext chunks.

        Yields:
            Header, ciphertext chunks, then the authentication tag
        """
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()

        yield MAGIC + nonce

        for chunk in chunks:
            data = encryptor.update(chunk)
            if data:
                yield data

        tail = encryptor.finalize()
        if tail:
            yield tail
        yield encryptor.tag

    def decrypt_stream(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """
        Decrypt a stream produced by encrypt_stream.

        The last TAG_SIZE bytes are held back and only used once the
        stream ends, so plaintext is yielded before authentication
        completes. Callers writing to disk must discard the output when
        EncryptionFailed is raised (decrypt_file does).

        Raises:
            EncryptionFailed: On bad header, short input or tag mismatch
        """
        buffer = b''
        decryptor = None

        for chunk in chunks:
            buffer += chunk

            if decryptor is None:
                if len(buffer) < HEADER_SIZE:
                    continue
                if buffer[:len(MAGIC)] != MAGIC:
                    raise EncryptionFailed("Not an encrypted backup (bad header)")
                nonce = buffer[len(MAGIC):HEADER_SIZE]
                decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).decryptor()
                buffer = buffer[HEADER_SIZE:]

            if len(buffer) > TAG_SIZE:
                data = decryptor.update(buffer[:-TAG_SIZE])
                buffer = buffer[-TAG_SIZE:]
                if data:
                    yield data

        if decryptor is None:
            if buffer and buffer[:len(MAGIC)] != MAGIC[:len(buffer)]:
                raise EncryptionFailed("Not an encrypted backup (bad header)")
            raise EncryptionFailed("Encrypted data is too short to contain a header")

        if len(buffer) < TAG_SIZE:
            raise EncryptionFailed("Encrypted data is too short to contain an authentication tag")

        try:
            tail = decryptor.finalize_with_tag(buffer)
        except InvalidTag:
            raise EncryptionFailed("Authentication failed: wrong key or corrupted data")

        if tail:
            yield tail

    def encrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Encrypt a file.

        Returns:
            output_path

        Raises:
            EncryptionFailed: If encryption fails
        """
        return self._transform_file(self.encrypt_stream, input_path, output_path, 'encrypt')

    def decrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Decrypt a file, removing the partial output if it is rejected.

        Returns:
            output_path

        Raises:
            EncryptionFailed: If the file is not valid ciphertext for this key
        """
        return self._transform_file(self.decrypt_stream, input_path, output_path, 'decrypt')

    def _transform_file(self, transform, input_path: str, output_path: str, action: str) -> str:
        try:
            with open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
                for data in transform(iter(lambda: src.read(CHUNK_SIZE), b'')):
                    dst.write(data)
            return output_path
        except BaseException as e:
            if os.path.exists(output_path):
                os.remove(output_path)
            if isinstance(e, EncryptionFailed):
                raise
            if isinstance(e, Exception):
                raise EncryptionFailed(f"Failed to {action} {os.path.basename(input_path)}: {e}")
            raise
