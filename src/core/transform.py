"""Compress-then-encrypt pipeline applied to each backed up file"""

import hashlib
import logging
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from .compressor import CHUNK_SIZE, DEFAULT_COMPRESSION, Compressor, validate_level
from .encryptor import HEADER_SIZE, Encryptor
from .errors import BackupIOError, DecompressionError, ValidationError


@dataclass(frozen=True)
class TransformPolicy:
    """Which transforms to apply on write"""

    compress: bool = True
    compression_level: int = DEFAULT_COMPRESSION
    encrypt: bool = False


@dataclass(frozen=True)
class EncodeResult:
    """Outcome of encoding one file"""

    checksum: str  # SHA-256 of the plaintext read
    original_size: int
    stored_size: int
    compressed: bool
    encrypted: bool


class TransformPipeline:
    """Streams file bytes through compression and encryption

    Write order is fixed: compress, then encrypt. Read order is the reverse:
    decrypt, then decompress. Memory use is bounded by the chunk size.
    """

    def __init__(
        self,
        compressor: Compressor | None = None,
        encryptor: Encryptor | None = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.compressor = compressor or Compressor(chunk_size)
        self.encryptor = encryptor or Encryptor(chunk_size=chunk_size)
        self.chunk_size = chunk_size
        self.logger = logging.getLogger("TransformPipeline")

    def encode_file(self, source: Path | str, dest: Path | str, policy: TransformPolicy) -> EncodeResult:
        """Read a plaintext file and write its transformed payload

        Raises:
            ValidationError: On an invalid level or missing key
            BackupIOError: On read/write failure
        """
        if policy.compress:
            validate_level(policy.compression_level)
        if policy.encrypt and not self.encryptor.has_key:
            raise ValidationError("Encryption enabled but no key set")

        hasher = hashlib.sha256()
        compressor = zlib.compressobj(policy.compression_level) if policy.compress else None
        cipher = None
        original = 0
        compressed_total = 0
        stored = 0

        try:
            with open(source, "rb") as src, open(dest, "wb") as out:
                if policy.encrypt:
                    header, cipher = self.encryptor.begin_encryption()
                    out.write(header)
                    stored += len(header)

                for chunk in iter(lambda: src.read(self.chunk_size), b""):
                    hasher.update(chunk)
                    original += len(chunk)
                    data = compressor.compress(chunk) if compressor else chunk
                    compressed_total += len(data)
                    if cipher:
                        data = cipher.update(data)
                    out.write(data)
                    stored += len(data)

                tail = compressor.flush() if compressor else b""
                compressed_total += len(tail)
                if cipher:
                    tail = cipher.update(tail) + cipher.finalize()
                out.write(tail)
                stored += len(tail)
        except OSError as e:
            raise BackupIOError(f"Failed to write payload: {e}", str(source)) from e

        if compressor:
            self.compressor.record(original, compressed_total)

        return EncodeResult(
            checksum=hasher.hexdigest(),
            original_size=original,
            stored_size=stored,
            compressed=policy.compress,
            encrypted=policy.encrypt,
        )

    def decode_file(self, source: Path | str, dest: Path | str, compressed: bool, encrypted: bool) -> str:
        """Reverse the pipeline for one payload and write the plaintext

        Returns:
            SHA-256 of the plaintext written
        """
        try:
            with open(source, "rb") as src, open(dest, "wb") as out:
                return self._decode_stream(src, out, compressed, encrypted, str(source))
        except OSError as e:
            raise BackupIOError(f"Failed to restore payload: {e}", str(source)) from e

    def decode_to_checksum(self, source: Path | str, compressed: bool, encrypted: bool) -> str:
        """Reverse the pipeline without writing anything, returning the plaintext SHA-256"""
        try:
            with open(source, "rb") as src:
                return self._decode_stream(src, None, compressed, encrypted, str(source))
        except OSError as e:
            raise BackupIOError(f"Failed to read payload: {e}", str(source)) from e

    def _decode_stream(
        self, src: BinaryIO, out: BinaryIO | None, compressed: bool, encrypted: bool, label: str
    ) -> str:
        hasher = hashlib.sha256()
        decompressor = zlib.decompressobj() if compressed else None
        cipher = self.encryptor.begin_decryption(src.read(HEADER_SIZE)) if encrypted else None

        def emit(data: bytes) -> None:
            if decompressor:
                try:
                    data = decompressor.decompress(data)
                except zlib.error as e:
                    raise DecompressionError(f"Corrupt compressed data: {e}", label) from e
            if data:
                hasher.update(data)
                if out is not None:
                    out.write(data)

        for chunk in iter(lambda: src.read(self.chunk_size), b""):
            emit(cipher.update(chunk) if cipher else chunk)
        if cipher:
            emit(cipher.finalize())

        if decompressor:
            try:
                tail = decompressor.flush()
            except zlib.error as e:
                raise DecompressionError(f"Corrupt compressed data: {e}", label) from e
            if not decompressor.eof:
                raise DecompressionError("Truncated compressed data", label)
            if decompressor.unused_data:
                raise DecompressionError("Unexpected data after end of compressed stream", label)
            if tail:
                hasher.update(tail)
                if out is not None:
                    out.write(tail)

        return hasher.hexdigest()

    def encode_data(self, data: bytes, policy: TransformPolicy) -> bytes:
        """In-memory counterpart of encode_file"""
        if policy.compress:
            data = self.compressor.compress_data(data, policy.compression_level)
        if policy.encrypt:
            data = self.encryptor.encrypt_data(data)
        return data

    def decode_data(self, data: bytes, compressed: bool, encrypted: bool) -> bytes:
        if encrypted:
            data = self.encryptor.decrypt_data(data)
        if compressed:
            data = self.compressor.decompress_data(data)
        return data
