"""Error taxonomy for Strongbox"""


class BackupError(Exception):
    """Base class for every failure the backup engine reports"""

    kind = "backup"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} ({self.path})"
        return self.message


class ValidationError(BackupError):
    """Missing or invalid source, options or metadata"""

    kind = "validation"


class BackupIOError(BackupError):
    """Read, write or filesystem failure"""

    kind = "io"


class TransformError(BackupError):
    """Compression or encryption stream failure"""

    kind = "transform"


class NotEncryptedError(TransformError):
    """Payload carries no encryption envelope at all"""

    kind = "not_encrypted"


class EnvelopeError(TransformError):
    """Encryption envelope is present but structurally broken"""

    kind = "envelope"


class DecryptionError(TransformError):
    """Ciphertext could not be decrypted (wrong key or tampered data)"""

    kind = "decryption"


class DecompressionError(TransformError):
    """Compressed stream is corrupt or truncated"""

    kind = "decompression"


class IntegrityError(BackupError):
    """Checksum mismatch between recorded and actual content"""

    kind = "integrity"


class ChainError(BackupError):
    """Incremental parent chain cannot be resolved to a full backup"""

    kind = "chain"


class OperationCancelled(BackupError):
    """Caller cancelled a running operation"""

    kind = "cancelled"
