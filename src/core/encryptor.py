"""AES-256-CBC encryption with the ENCRYPT1 file envelope"""

import hmac
import logging
import os
from hashlib import sha256
from pathlib import Path

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import BackupIOError, DecryptionError, EnvelopeError, NotEncryptedError, ValidationError

MAGIC = b"ENCRYPT1"
IV_SIZE = 16
HEADER_SIZE = len(MAGIC) + IV_SIZE
KEY_SIZE = 32
SALT_SIZE = 16
PBKDF2_ITERATIONS = 10000
BLOCK_SIZE_BITS = algorithms.AES.block_size
BLOCK_SIZE = BLOCK_SIZE_BITS // 8
CHUNK_SIZE = 16 * 1024

ENCRYPTION_METHOD = "AES-256-CBC"


def check_envelope(header: bytes) -> bytes:
    """Validate an envelope header and return its IV

    Called on the decrypt path, so any magic mismatch is corruption.

    Raises:
        EnvelopeError: If the magic tag does not match or the header is truncated
    """
    if header[: len(MAGIC)] != MAGIC:
        raise EnvelopeError(f"Bad encryption header: {header[: len(MAGIC)]!r}")
    if len(header) < HEADER_SIZE:
        raise EnvelopeError("Encryption envelope truncated before end of IV")
    return header[len(MAGIC) : HEADER_SIZE]


class StreamCipher:
    """Incremental encrypt/decrypt context with PKCS7 padding"""

    def __init__(self, key: bytes, iv: bytes, encrypt: bool):
        cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
        self.encrypt = encrypt
        self.processed = 0
        if encrypt:
            self._ctx = cipher.encryptor()
            self._pad = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        else:
            self._ctx = cipher.decryptor()
            self._pad = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()

    def update(self, data: bytes) -> bytes:
        self.processed += len(data)
        if self.encrypt:
            return self._ctx.update(self._pad.update(data))
        return self._pad.update(self._ctx.update(data))

    def finalize(self) -> bytes:
        if self.encrypt:
            return self._ctx.update(self._pad.finalize()) + self._ctx.finalize()

        if self.processed == 0:
            raise EnvelopeError("Encryption envelope holds no ciphertext")
        if self.processed % BLOCK_SIZE != 0:
            raise EnvelopeError("Ciphertext length is not a multiple of the AES block size")
        try:
            tail = self._ctx.finalize()
            return self._pad.update(tail) + self._pad.finalize()
        except ValueError as e:
            raise DecryptionError("Decryption failed: wrong key or corrupted data") from e


class Encryptor:
    """Holds one 32-byte key and applies it to buffers and files"""

    def __init__(self, key: bytes | None = None, chunk_size: int = CHUNK_SIZE):
        self.logger = logging.getLogger("TransformPipeline")
        self.chunk_size = chunk_size
        self._key: bytes | None = None
        if key is not None:
            self.set_key_bytes(key)

    @property
    def has_key(self) -> bool:
        return self._key is not None

    @property
    def key(self) -> bytes:
        if self._key is None:
            raise ValidationError("No encryption key set")
        return self._key

    @property
    def key_hex(self) -> str:
        return self.key.hex()

    def set_key(self, key: str) -> None:
        """Set the key from text

        A 64-character hex string is decoded; anything else is taken as UTF-8
        and padded with zero bytes or truncated to 32 bytes.
        """
        if not key:
            raise ValidationError("Encryption key must not be empty")

        if len(key) == KEY_SIZE * 2:
            try:
                self._key = bytes.fromhex(key)
                return
            except ValueError:
                pass

        raw = key.encode("utf-8")[:KEY_SIZE]
        self._key = raw.ljust(KEY_SIZE, b"\0")

    def set_key_bytes(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValidationError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._key = bytes(key)

    def generate_random_key(self) -> bytes:
        self._key = os.urandom(KEY_SIZE)
        return self._key

    @staticmethod
    def generate_salt() -> bytes:
        return os.urandom(SALT_SIZE)

    @staticmethod
    def derive_key_from_password(password: str, salt: bytes) -> bytes:
        """PBKDF2-HMAC-SHA256 with 10,000 iterations"""
        if not password:
            raise ValidationError("Password must not be empty")
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, iterations=PBKDF2_ITERATIONS)
        return kdf.derive(password.encode("utf-8"))

    def set_password(self, password: str, salt: bytes) -> None:
        self._key = self.derive_key_from_password(password, salt)

    def load_key_from_file(self, key_file: Path | str) -> None:
        try:
            with open(key_file, "rb") as f:
                self.set_key_bytes(f.read())
        except OSError as e:
            raise BackupIOError(f"Cannot read key file: {e}", str(key_file)) from e

    def save_key_to_file(self, key_file: Path | str) -> None:
        """Write the raw key, readable by the owner only"""
        try:
            fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, self.key)
            finally:
                os.close(fd)
        except OSError as e:
            raise BackupIOError(f"Cannot write key file: {e}", str(key_file)) from e

    def begin_encryption(self) -> tuple[bytes, StreamCipher]:
        """Start an encrypted payload

        Returns:
            Tuple of (envelope header to write first, cipher context)
        """
        iv = os.urandom(IV_SIZE)
        return MAGIC + iv, StreamCipher(self.key, iv, encrypt=True)

    def begin_decryption(self, header: bytes) -> StreamCipher:
        iv = check_envelope(header)
        return StreamCipher(self.key, iv, encrypt=False)

    def encrypt_data(self, data: bytes) -> bytes:
        header, cipher = self.begin_encryption()
        return header + cipher.update(data) + cipher.finalize()

    def decrypt_data(self, data: bytes) -> bytes:
        cipher = self.begin_decryption(data[:HEADER_SIZE])
        return cipher.update(data[HEADER_SIZE:]) + cipher.finalize()

    def encrypt_string(self, plaintext: str) -> str:
        return self.encrypt_data(plaintext.encode("utf-8")).hex()

    def decrypt_string(self, encrypted: str) -> str:
        try:
            data = bytes.fromhex(encrypted)
        except ValueError as e:
            raise EnvelopeError(f"Encrypted string is not valid hex: {e}") from e
        return self.decrypt_data(data).decode("utf-8")

    def encrypt_file(self, input_file: Path | str, output_file: Path | str) -> int:
        """Stream-encrypt a file into the ENCRYPT1 envelope

        Returns:
            Size of the envelope written
        """
        header, cipher = self.begin_encryption()
        written = 0
        try:
            with open(input_file, "rb") as src, open(output_file, "wb") as dest:
                dest.write(header)
                written += len(header)
                for chunk in iter(lambda: src.read(self.chunk_size), b""):
                    out = cipher.update(chunk)
                    dest.write(out)
                    written += len(out)
                tail = cipher.finalize()
                dest.write(tail)
                written += len(tail)
        except OSError as e:
            raise BackupIOError(f"Encryption failed: {e}", str(input_file)) from e
        return written

    def decrypt_file(self, input_file: Path | str, output_file: Path | str) -> int:
        """Stream-decrypt an ENCRYPT1 envelope into a plain file

        Returns:
            Size of the plaintext written
        """
        written = 0
        try:
            with open(input_file, "rb") as src:
                cipher = self.begin_decryption(src.read(HEADER_SIZE))
                with open(output_file, "wb") as dest:
                    for chunk in iter(lambda: src.read(self.chunk_size), b""):
                        out = cipher.update(chunk)
                        dest.write(out)
                        written += len(out)
                    tail = cipher.finalize()
                    dest.write(tail)
                    written += len(tail)
        except OSError as e:
            raise BackupIOError(f"Decryption failed: {e}", str(input_file)) from e
        return written

    @staticmethod
    def is_encrypted_data(data: bytes) -> bool:
        return data[: len(MAGIC)] == MAGIC

    def is_encrypted(self, file_path: Path | str) -> bool:
        """Check the 8-byte magic only"""
        try:
            with open(file_path, "rb") as f:
                return self.is_encrypted_data(f.read(len(MAGIC)))
        except OSError:
            return False

    def require_encrypted(self, file_path: Path | str) -> None:
        """Raise NotEncryptedError unless the file carries the envelope magic"""
        if not self.is_encrypted(file_path):
            raise NotEncryptedError("File is not encrypted (no ENCRYPT1 header)", str(file_path))

    def calculate_hmac(self, data: bytes) -> str:
        """HMAC-SHA256 of data keyed by the encryption key"""
        return hmac.new(self.key, data, sha256).hexdigest()

    def verify_hmac(self, data: bytes, tag: str) -> bool:
        return hmac.compare_digest(self.calculate_hmac(data), tag)
