"""zlib compression for backup payloads"""

import logging
import zlib
from pathlib import Path

from .errors import BackupIOError, DecompressionError, ValidationError

CHUNK_SIZE = 16 * 1024

NO_COMPRESSION = 0
BEST_SPEED = 1
DEFAULT_COMPRESSION = 6
BEST_COMPRESSION = 9

# Second header byte for each zlib compression level family
ZLIB_MAGIC = 0x78
ZLIB_FLAG_BYTES = frozenset({0x01, 0x5E, 0x9C, 0xDA})


def validate_level(level: int) -> int:
    """Reject compression levels outside 0-9"""
    if not isinstance(level, int) or isinstance(level, bool) or not 0 <= level <= 9:
        raise ValidationError(f"Invalid compression level: {level!r} (expected 0-9)")
    return level


def is_compressed(data: bytes) -> bool:
    """Heuristic check for a zlib stream header"""
    return len(data) >= 2 and data[0] == ZLIB_MAGIC and data[1] in ZLIB_FLAG_BYTES


class Compressor:
    """Deflate/inflate buffers and files, keeping running totals"""

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size
        self.total_bytes_original = 0
        self.total_bytes_compressed = 0
        self.logger = logging.getLogger("TransformPipeline")

    def record(self, original: int, compressed: int) -> None:
        """Add one compression run to the running totals"""
        self.total_bytes_original += original
        self.total_bytes_compressed += compressed

    def compress_data(self, data: bytes, level: int = DEFAULT_COMPRESSION) -> bytes:
        """Compress a buffer into a zlib stream"""
        validate_level(level)
        compressed = zlib.compress(data, level)
        self.record(len(data), len(compressed))
        return compressed

    def decompress_data(self, data: bytes) -> bytes:
        """Inflate a complete zlib stream

        Raises:
            DecompressionError: If the stream is corrupt or truncated
        """
        decompressor = zlib.decompressobj()
        try:
            result = decompressor.decompress(data) + decompressor.flush()
        except zlib.error as e:
            raise DecompressionError(f"Corrupt compressed data: {e}") from e
        if not decompressor.eof:
            raise DecompressionError("Truncated compressed data")
        if decompressor.unused_data:
            raise DecompressionError("Unexpected data after end of compressed stream")
        return result

    def compress_file(self, input_file: Path | str, output_file: Path | str, level: int = DEFAULT_COMPRESSION) -> int:
        """Stream-compress one file into another

        Returns:
            Size of the compressed output in bytes
        """
        validate_level(level)
        compressor = zlib.compressobj(level)
        original = 0
        written = 0
        try:
            with open(input_file, "rb") as src, open(output_file, "wb") as dest:
                for chunk in iter(lambda: src.read(self.chunk_size), b""):
                    original += len(chunk)
                    out = compressor.compress(chunk)
                    dest.write(out)
                    written += len(out)
                tail = compressor.flush()
                dest.write(tail)
                written += len(tail)
        except OSError as e:
            raise BackupIOError(f"Compression failed: {e}", str(input_file)) from e

        self.record(original, written)
        return written

    def decompress_file(self, input_file: Path | str, output_file: Path | str) -> int:
        """Stream-decompress one file into another

        Returns:
            Size of the decompressed output in bytes
        """
        decompressor = zlib.decompressobj()
        written = 0
        try:
            with open(input_file, "rb") as src, open(output_file, "wb") as dest:
                for chunk in iter(lambda: src.read(self.chunk_size), b""):
                    out = decompressor.decompress(chunk)
                    dest.write(out)
                    written += len(out)
                tail = decompressor.flush()
                dest.write(tail)
                written += len(tail)
        except zlib.error as e:
            raise DecompressionError(f"Corrupt compressed data: {e}", str(input_file)) from e
        except OSError as e:
            raise BackupIOError(f"Decompression failed: {e}", str(input_file)) from e

        if not decompressor.eof:
            raise DecompressionError("Truncated compressed data", str(input_file))
        if decompressor.unused_data:
            raise DecompressionError("Unexpected data after end of compressed stream", str(input_file))
        return written

    def is_compressed_file(self, file_path: Path | str) -> bool:
        try:
            with open(file_path, "rb") as f:
                return is_compressed(f.read(2))
        except OSError:
            return False

    @staticmethod
    def get_compression_ratio(original_file: Path | str, compressed_file: Path | str) -> float:
        """Compressed size as a fraction of the original size"""
        original_size = Path(original_file).stat().st_size
        if original_size == 0:
            return 0.0
        return Path(compressed_file).stat().st_size / original_size

    def get_average_compression_ratio(self) -> float:
        if self.total_bytes_original == 0:
            return 0.0
        return self.total_bytes_compressed / self.total_bytes_original
