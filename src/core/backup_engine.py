"""Core Backup Engine for Strongbox"""

import logging
import os
import shutil
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .change_tracker import ChangeTracker, Snapshot, calculate_file_checksum
from .compressor import CHUNK_SIZE, DEFAULT_COMPRESSION, Compressor, validate_level
from .config_manager import ConfigManager
from .encryptor import ENCRYPTION_METHOD, Encryptor
from .errors import (
    BackupError,
    BackupIOError,
    IntegrityError,
    OperationCancelled,
    TransformError,
    ValidationError,
)
from .metadata_store import BackupRecord, FileBackedMetadataStore, FileEntry, MetadataStore, validate_record
from .transform import TransformPipeline, TransformPolicy

# On-disk layout
BACKUP_DIR_PREFIX = "backup_"
BACKUP_DIR_TIME_FORMAT = "%Y%m%d_%H%M%S"
METADATA_FILE = "backup_metadata.json"
STATE_FILE = "file_state.json"
CATALOG_FILE = "catalog.json"
RESERVED_FILES = frozenset({METADATA_FILE, STATE_FILE})

# Logging constants
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB max per log file
LOG_BACKUP_COUNT = 5  # Number of rotated log files to keep
COMPONENT_LOGGERS = ("BackupEngine", "ChangeTracker", "MetadataStore", "TransformPipeline")

ProgressCallback = Callable[[str, float], None]


@dataclass
class BackupOptions:
    """Options for one backup run"""

    source_path: str
    enable_compression: bool = True
    compression_level: int = DEFAULT_COMPRESSION
    enable_encryption: bool = False
    encryption_key: str | None = None
    password: str | None = None
    key_file: str | None = None
    incremental: bool = False


@dataclass
class OperationResult:
    """Definite success/failure signal returned by every engine operation"""

    success: bool
    message: str
    error_kind: str | None = None
    backup_path: Path | None = None
    backup_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def failure(cls, error: BackupError, message: str, **kwargs: Any) -> "OperationResult":
        return cls(False, f"{message}: {error}", error_kind=error.kind, **kwargs)


class CancellationToken:
    """Lets another thread ask a running operation to stop between files"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by caller")


class BackupEngine:
    """Backup orchestrator for one destination root

    Not safe for concurrent use against the same destination; callers such as
    the scheduler serialise runs.
    """

    def __init__(
        self,
        destination: str | Path,
        config: ConfigManager | None = None,
        store: MetadataStore | None = None,
        tracker: ChangeTracker | None = None,
    ):
        self.destination = Path(destination)
        self.config = config
        self.destination.mkdir(parents=True, exist_ok=True)

        # Set up logging
        self.logger = self._setup_logger()

        self.chunk_size = int(self._setting("backup.chunk_size", CHUNK_SIZE))
        self.tracker = tracker or ChangeTracker()
        self.compressor = Compressor(self.chunk_size)
        self.store = store if store is not None else FileBackedMetadataStore(self.destination / CATALOG_FILE)

        self._sync_catalog()

    def _setting(self, key: str, default: Any) -> Any:
        if self.config is None:
            return default
        return self.config.get_setting(key, default)

    def _setup_logger(self) -> logging.Logger:
        """Set up logging with automatic rotation"""
        from logging.handlers import RotatingFileHandler

        logger = logging.getLogger("BackupEngine")
        if logger.handlers:
            return logger

        level = getattr(logging, str(self._setting("logging.level", "INFO")).upper(), logging.INFO)
        log_dir = self.destination / "logs"
        log_dir.mkdir(exist_ok=True)

        # Rotating file handler (10MB max, keep 5 backup files)
        fh = RotatingFileHandler(
            log_dir / "backup.log",
            maxBytes=int(self._setting("logging.max_bytes", LOG_MAX_BYTES)),
            backupCount=int(self._setting("logging.backup_count", LOG_BACKUP_COUNT)),
            encoding="utf-8",
        )
        fh.setLevel(level)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.WARNING)

        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        for name in COMPONENT_LOGGERS:
            component = logging.getLogger(name)
            component.setLevel(level)
            if not component.handlers:
                component.addHandler(fh)
                component.addHandler(ch)

        return logger

    def _sync_catalog(self) -> None:
        """Add records of on-disk backups that the store does not know yet"""
        for backup_dir in self.list_backups():
            try:
                record = self._load_backup_record(backup_dir)
            except BackupError as e:
                self.logger.warning(f"Skipping unreadable backup {backup_dir.name}: {e}")
                continue
            if record.backup_id not in self.store:
                self.store.create(record)
                self.logger.info(f"Catalogued existing backup {backup_dir.name}")

    @staticmethod
    def _progress_reporter(progress: ProgressCallback | None, logger: logging.Logger) -> ProgressCallback:
        def report(operation: str, percentage: float) -> None:
            logger.debug(f"{operation} ({percentage:.0f}%)")
            if progress is None:
                return
            try:
                progress(operation, percentage)
            except Exception as e:
                logger.warning(f"Error in progress callback: {e}")

        return report

    def _validate_options(self, options: BackupOptions) -> Path:
        """Check the source and transform options before anything is written"""
        if not options.source_path:
            raise ValidationError("No source path given")

        source = Path(options.source_path)
        if not source.exists():
            raise ValidationError("Source path does not exist", str(source))
        if not source.is_dir():
            raise ValidationError("Source path is not a directory", str(source))

        resolved_source = source.resolve()
        resolved_dest = self.destination.resolve()
        if resolved_dest == resolved_source or resolved_source in resolved_dest.parents:
            raise ValidationError("Destination must not be inside the source tree", str(self.destination))

        if options.enable_compression:
            validate_level(options.compression_level)

        for name in RESERVED_FILES:
            if (source / name).exists():
                raise ValidationError(f"Source contains a file named like a control file: {name}", str(source))

        return source

    def _make_encryptor(
        self,
        key: str | None,
        password: str | None,
        key_file: str | None,
        salt_hex: str = "",
        allow_generate: bool = False,
    ) -> tuple[Encryptor, str, str | None]:
        """Resolve key material into an Encryptor

        Falls back to the configured key file or password when none is given.

        Returns:
            Tuple of (encryptor, salt hex used for a password key, generated key hex if any)
        """
        if not (key or password or key_file) and self.config is not None:
            key_file = self.config.get_setting("backup.encryption.key_file")
            password = self.config.get_encryption_password()

        encryptor = Encryptor(chunk_size=self.chunk_size)
        if key:
            encryptor.set_key(key)
            return encryptor, "", None
        if password:
            salt = bytes.fromhex(salt_hex) if salt_hex else Encryptor.generate_salt()
            encryptor.set_password(password, salt)
            return encryptor, salt.hex(), None
        if key_file:
            encryptor.load_key_from_file(key_file)
            return encryptor, "", None
        if allow_generate:
            encryptor.generate_random_key()
            self.logger.warning("No encryption key supplied, generated a random key; keep it to restore this backup")
            return encryptor, "", encryptor.key_hex
        raise ValidationError("Backup is encrypted but no key, password or key file was supplied")

    def _create_backup_directory(self) -> Path:
        """Create a timestamp-named backup directory, suffixed on same-second collisions"""
        base = f"{BACKUP_DIR_PREFIX}{datetime.now().strftime(BACKUP_DIR_TIME_FORMAT)}"
        candidate = self.destination / base
        suffix = 0
        while True:
            try:
                candidate.mkdir(parents=True)
                return candidate
            except FileExistsError:
                suffix += 1
                candidate = self.destination / f"{base}_{suffix:02d}"
            except OSError as e:
                raise BackupIOError(f"Failed to create backup directory: {e}", str(candidate)) from e

    def _load_backup_record(self, backup_dir: Path) -> BackupRecord:
        """Load the single record held in a backup directory's metadata document"""
        metadata_path = backup_dir / METADATA_FILE
        if not metadata_path.exists():
            raise ValidationError("Backup metadata not found", str(metadata_path))

        local = MetadataStore()
        local.import_from_json(metadata_path)
        records = local.list_all_backups()
        if len(records) != 1:
            raise ValidationError(f"Expected one backup record, found {len(records)}", str(metadata_path))
        record = local.get(records[0])
        assert record is not None
        return record

    def _commit(self, record: BackupRecord, backup_dir: Path, snapshot: Snapshot) -> None:
        """Persist the snapshot, the backup's metadata document and the catalog entry"""
        validate_record(record)
        self.tracker.save_state(backup_dir / STATE_FILE, snapshot)

        local = MetadataStore()
        local.create(record)
        local.export_to_json(backup_dir / METADATA_FILE)

        self.store.create(record)

    def create_backup(
        self,
        options: BackupOptions,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Run a full or incremental backup depending on options.incremental"""
        if options.incremental:
            return self.create_incremental_backup(options, progress, cancel)
        return self.create_full_backup(options, progress, cancel)

    def create_full_backup(
        self,
        options: BackupOptions,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Back up every regular file under the source"""
        return self._run_backup(options, False, progress, cancel)

    def create_incremental_backup(
        self,
        options: BackupOptions,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Back up files that are new or modified since the latest backup

        Falls back to a full backup when the destination holds none yet.
        """
        return self._run_backup(options, True, progress, cancel)

    def _run_backup(
        self,
        options: BackupOptions,
        incremental: bool,
        progress: ProgressCallback | None,
        cancel: CancellationToken | None,
    ) -> OperationResult:
        report = self._progress_reporter(progress, self.logger)
        label = "incremental backup" if incremental else "full backup"
        backup_dir: Path | None = None
        warnings: list[str] = []

        try:
            report(f"Starting {label}", 0.0)
            source = self._validate_options(options)

            parent: BackupRecord | None = None
            previous: Snapshot = {}
            if incremental:
                latest = self.get_latest_backup()
                if latest is None:
                    self.logger.info(f"No previous backup in {self.destination}, performing full backup")
                    incremental = False
                    label = "full backup"
                else:
                    parent = self._load_backup_record(latest)
                    if parent.source_path != str(source.resolve()):
                        self.logger.info(f"Latest backup {latest.name} is of another source, performing full backup")
                        parent = None
                        incremental = False
                        label = "full backup"
                    else:
                        previous = self.tracker.load_previous_state(latest / STATE_FILE)
                        self.logger.info(f"Starting incremental backup of {source} on top of {latest.name}")
            if not incremental:
                self.logger.info(f"Starting full backup of {source}")

            report("Scanning source directory", 10.0)
            current = self.tracker.snapshot(source)
            warnings = list(self.tracker.warnings)

            deleted: list[str] = []
            if incremental:
                changes = self.tracker.diff(current, previous)
                to_copy = [path for path in changes.changed if not current[path].is_directory]
                new_dirs = [path for path in changes.new if current[path].is_directory]
                deleted = changes.deleted
                if not to_copy:
                    report("No changes detected", 100.0)
                    self.logger.info("No changes detected. No backup needed.")
                    return OperationResult(
                        True,
                        "No changes detected. No backup needed.",
                        details={"files": 0, "deleted": len(deleted)},
                        warnings=warnings,
                    )
            else:
                to_copy = sorted(path for path, rec in current.items() if not rec.is_directory)
                new_dirs = sorted(path for path, rec in current.items() if rec.is_directory)

            generated_key = None
            encryptor = None
            salt_hex = ""
            if options.enable_encryption:
                # Links of one chain must share a key, so only a full backup may generate one
                encryptor, salt_hex, generated_key = self._make_encryptor(
                    options.encryption_key, options.password, options.key_file, allow_generate=not incremental
                )

            report("Creating backup metadata", 20.0)
            backup_dir = self._create_backup_directory()
            record = BackupRecord(
                backup_id=uuid.uuid4().hex,
                backup_type="incremental" if incremental else "full",
                timestamp=datetime.now(),
                source_path=str(source.resolve()),
                parent_backup_id=parent.backup_id if parent else "",
                encrypted=options.enable_encryption,
                encryption_method=ENCRYPTION_METHOD if options.enable_encryption else "",
                compression_method="zlib" if options.enable_compression else "none",
                compression_level=options.compression_level if options.enable_compression else 0,
                backup_dir=backup_dir.name,
                deleted_files=deleted,
                key_salt=salt_hex,
            )
            policy = TransformPolicy(
                compress=options.enable_compression,
                compression_level=options.compression_level,
                encrypt=options.enable_encryption,
            )
            pipeline = TransformPipeline(self.compressor, encryptor, self.chunk_size)

            for rel_dir in new_dirs:
                (backup_dir / rel_dir).mkdir(parents=True, exist_ok=True)

            report("Copying files", 30.0)
            for index, rel_path in enumerate(to_copy, start=1):
                if cancel is not None:
                    cancel.raise_if_cancelled()

                dest = backup_dir / rel_path
                dest.parent.mkdir(parents=True, exist_ok=True)
                encoded = pipeline.encode_file(source / rel_path, dest, policy)
                record.add_file(
                    FileEntry(
                        relative_path=rel_path,
                        checksum=encoded.checksum,
                        size=encoded.original_size,
                        last_modified=current[rel_path].last_modified,
                        compressed=encoded.compressed,
                        encrypted=encoded.encrypted,
                        compressed_size=encoded.stored_size,
                    )
                )
                report("Copying files", 30.0 + index * 60.0 / len(to_copy))

            report("Saving metadata", 95.0)
            self._commit(record, backup_dir, current)
            report("Backup completed", 100.0)

            size_mb = record.compressed_size / (1024 * 1024)
            self.logger.info(
                f"Successfully created {label} {backup_dir.name}: {len(record.files)} files, "
                f"{record.total_size} bytes original, {record.compressed_size} bytes stored"
            )
            details: dict[str, Any] = {
                "backup_type": record.backup_type,
                "files": len(record.files),
                "deleted": len(deleted),
                "total_size": record.total_size,
                "compressed_size": record.compressed_size,
                "compression_ratio": self.store.get_compression_ratio(record.backup_id),
                "parent_backup_id": record.parent_backup_id,
            }
            if generated_key:
                details["generated_key"] = generated_key

            return OperationResult(
                True,
                f"Backup successful: {backup_dir.name} ({len(record.files)} files, {size_mb:.2f} MB)",
                backup_path=backup_dir,
                backup_id=record.backup_id,
                details=details,
                warnings=warnings,
            )

        except BackupError as e:
            self.logger.error(f"Failed {label}: {e}")
            return OperationResult.failure(e, "Backup failed", backup_path=backup_dir, warnings=warnings)
        except OSError as e:
            self.logger.error(f"Failed {label}: {e}")
            return OperationResult.failure(
                BackupIOError(str(e), e.filename), "Backup failed", backup_path=backup_dir, warnings=warnings
            )

    @staticmethod
    def _payload_files(backup_dir: Path) -> tuple[list[str], list[str]]:
        """Relative payload files and directories of a backup, control files excluded"""
        files: list[str] = []
        dirs: list[str] = []
        for root, dir_names, file_names in os.walk(backup_dir):
            root_path = Path(root)
            for name in dir_names:
                dirs.append((root_path / name).relative_to(backup_dir).as_posix())
            for name in file_names:
                if root_path == backup_dir and name in RESERVED_FILES:
                    continue
                files.append((root_path / name).relative_to(backup_dir).as_posix())
        return sorted(files), sorted(dirs)

    def _restore_entry(
        self, pipeline: TransformPipeline, backup_dir: Path, entry: FileEntry, restore_root: Path
    ) -> None:
        """Reverse the recorded transforms of one entry and check the result"""
        dest = restore_root / entry.relative_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        checksum = pipeline.decode_file(
            backup_dir / entry.relative_path, dest, compressed=entry.compressed, encrypted=entry.encrypted
        )
        if checksum != entry.checksum:
            raise IntegrityError("Restored content does not match recorded checksum", entry.relative_path)
        os.utime(dest, (entry.last_modified, entry.last_modified))

    def _pipeline_for(
        self, record: BackupRecord, key: str | None, password: str | None, key_file: str | None
    ) -> TransformPipeline:
        encryptor = None
        if any(entry.encrypted for entry in record.files):
            encryptor, _, _ = self._make_encryptor(key, password, key_file, salt_hex=record.key_salt)
        return TransformPipeline(self.compressor, encryptor, self.chunk_size)

    def _restore_into(
        self,
        backup_dir: Path,
        record: BackupRecord,
        restore_root: Path,
        pipeline: TransformPipeline,
        report: ProgressCallback,
        cancel: CancellationToken | None,
        start: float = 20.0,
        span: float = 70.0,
    ) -> int:
        payload_files, payload_dirs = self._payload_files(backup_dir)
        for rel_dir in payload_dirs:
            (restore_root / rel_dir).mkdir(parents=True, exist_ok=True)

        for index, rel_path in enumerate(payload_files, start=1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            entry = record.find_file(rel_path)
            if entry is None:
                raise IntegrityError("Payload file has no metadata entry", rel_path)
            self._restore_entry(pipeline, backup_dir, entry, restore_root)
            report("Restoring files", start + index * span / len(payload_files))

        restored = set(payload_files)
        missing = [entry.relative_path for entry in record.files if entry.relative_path not in restored]
        if missing:
            raise IntegrityError(f"{len(missing)} recorded files are missing from the backup", missing[0])
        return len(payload_files)

    def restore_backup(
        self,
        backup_path: str | Path,
        restore_path: str | Path,
        key: str | None = None,
        password: str | None = None,
        key_file: str | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Restore every file of one backup, reversing its per-file transforms"""
        report = self._progress_reporter(progress, self.logger)
        backup_dir = Path(backup_path)
        restore_root = Path(restore_path)

        try:
            report("Starting restore", 0.0)
            if not backup_dir.is_dir():
                raise ValidationError("Backup path does not exist", str(backup_dir))
            record = self._load_backup_record(backup_dir)
            pipeline = self._pipeline_for(record, key, password, key_file)

            report("Creating restore directory", 10.0)
            restore_root.mkdir(parents=True, exist_ok=True)

            report("Restoring files", 20.0)
            count = self._restore_into(backup_dir, record, restore_root, pipeline, report, cancel)
            report("Restore completed", 100.0)

            self.logger.info(f"Restored {count} files from {backup_dir.name} to {restore_root}")
            return OperationResult(
                True,
                f"Restore completed: {count} files restored to {restore_root}",
                backup_path=backup_dir,
                backup_id=record.backup_id,
                details={"files": count},
            )

        except BackupError as e:
            self.logger.error(f"Failed to restore {backup_dir}: {e}")
            return OperationResult.failure(e, "Restore failed", backup_path=backup_dir)
        except OSError as e:
            self.logger.error(f"Failed to restore {backup_dir}: {e}")
            return OperationResult.failure(BackupIOError(str(e), e.filename), "Restore failed", backup_path=backup_dir)

    def restore_file(
        self,
        backup_path: str | Path,
        relative_path: str,
        restore_path: str | Path,
        key: str | None = None,
        password: str | None = None,
        key_file: str | None = None,
    ) -> OperationResult:
        """Restore a single file of a backup to the same relative path under restore_path"""
        backup_dir = Path(backup_path)
        try:
            record = self._load_backup_record(backup_dir)
            entry = record.find_file(Path(relative_path).as_posix())
            if entry is None:
                raise ValidationError("File is not part of this backup", relative_path)
            if not (backup_dir / entry.relative_path).is_file():
                raise IntegrityError("Recorded file is missing from the backup", entry.relative_path)

            pipeline = self._pipeline_for(record, key, password, key_file)
            self._restore_entry(pipeline, backup_dir, entry, Path(restore_path))
            self.logger.info(f"Restored {entry.relative_path} from {backup_dir.name}")
            return OperationResult(
                True, f"Restored {entry.relative_path}", backup_path=backup_dir, backup_id=record.backup_id
            )

        except BackupError as e:
            self.logger.error(f"Failed to restore {relative_path} from {backup_dir}: {e}")
            return OperationResult.failure(e, "Restore failed", backup_path=backup_dir)
        except OSError as e:
            self.logger.error(f"Failed to restore {relative_path} from {backup_dir}: {e}")
            return OperationResult.failure(BackupIOError(str(e), e.filename), "Restore failed", backup_path=backup_dir)

    def restore_backup_chain(
        self,
        backup_path: str | Path,
        restore_path: str | Path,
        key: str | None = None,
        password: str | None = None,
        key_file: str | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> OperationResult:
        """Rebuild the source tree as of a backup by replaying its whole chain

        The full backup is restored first, then each incremental in order:
        paths deleted since the parent are removed, then its files overlay the
        tree.
        """
        report = self._progress_reporter(progress, self.logger)
        backup_dir = Path(backup_path)
        restore_root = Path(restore_path)

        try:
            report("Starting chain restore", 0.0)
            record = self._load_backup_record(backup_dir)
            if record.backup_id not in self.store:
                self._sync_catalog()
            chain = self.store.resolve_chain(record.backup_id)

            restore_root.mkdir(parents=True, exist_ok=True)
            total = 0
            span = 90.0 / len(chain)
            for position, chain_id in enumerate(chain):
                link = self.store.get(chain_id)
                assert link is not None
                link_dir = self.destination / link.backup_dir
                if not link.backup_dir or not link_dir.is_dir():
                    raise IntegrityError(f"Backup directory for {chain_id} is missing", str(link_dir))

                self._apply_deletions(restore_root, link.deleted_files)
                pipeline = self._pipeline_for(link, key, password, key_file)
                total += self._restore_into(
                    link_dir, link, restore_root, pipeline, report, cancel, start=position * span, span=span
                )
            report("Chain restore completed", 100.0)

            self.logger.info(f"Restored chain of {len(chain)} backups ending at {backup_dir.name} to {restore_root}")
            return OperationResult(
                True,
                f"Restore completed: {len(chain)} backups replayed into {restore_root}",
                backup_path=backup_dir,
                backup_id=record.backup_id,
                details={"chain": chain, "files": total},
            )

        except BackupError as e:
            self.logger.error(f"Failed to restore chain for {backup_dir}: {e}")
            return OperationResult.failure(e, "Restore failed", backup_path=backup_dir)
        except OSError as e:
            self.logger.error(f"Failed to restore chain for {backup_dir}: {e}")
            return OperationResult.failure(BackupIOError(str(e), e.filename), "Restore failed", backup_path=backup_dir)

    @staticmethod
    def _apply_deletions(restore_root: Path, deleted: list[str]) -> None:
        # Deepest paths first so directories are emptied before removal
        for rel_path in sorted(deleted, key=lambda p: p.count("/"), reverse=True):
            target = restore_root / rel_path
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()

    def verify_backup(
        self,
        backup_path: str | Path,
        key: str | None = None,
        password: str | None = None,
        key_file: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> OperationResult:
        """Check every recorded file exists and decodes to its recorded plaintext checksum

        Returns:
            OperationResult whose details["failures"] lists each missing or
            mismatching entry
        """
        report = self._progress_reporter(progress, self.logger)
        backup_dir = Path(backup_path)

        try:
            report("Starting verification", 0.0)
            record = self._load_backup_record(backup_dir)
            pipeline = self._pipeline_for(record, key, password, key_file)

            report("Verifying file integrity", 20.0)
            failures: list[dict[str, str]] = []
            for index, entry in enumerate(record.files, start=1):
                reason = self._verify_entry(pipeline, backup_dir, entry)
                if reason:
                    failures.append({"path": entry.relative_path, "reason": reason})
                    self.logger.error(f"Verification failed for {entry.relative_path}: {reason}")
                report("Verifying files", 20.0 + index * 70.0 / len(record.files))
            report("Verification completed", 100.0)

        except BackupError as e:
            self.logger.error(f"Failed to verify backup {backup_dir}: {e}")
            return OperationResult.failure(e, "Verification failed", backup_path=backup_dir)

        details = {"files": len(record.files), "failures": failures}
        if failures:
            return OperationResult(
                False,
                f"✗ Backup corrupted! {len(failures)} of {len(record.files)} files failed verification",
                error_kind=IntegrityError.kind,
                backup_path=backup_dir,
                backup_id=record.backup_id,
                details=details,
            )

        self.logger.info(f"Verification successful for {backup_dir.name}")
        return OperationResult(
            True,
            f"✓ Backup verified successfully ({len(record.files)} files)",
            backup_path=backup_dir,
            backup_id=record.backup_id,
            details=details,
        )

    @staticmethod
    def _verify_entry(pipeline: TransformPipeline, backup_dir: Path, entry: FileEntry) -> str | None:
        payload = backup_dir / entry.relative_path
        if not payload.is_file():
            return "missing"
        try:
            stored_size = payload.stat().st_size
            if stored_size != entry.compressed_size:
                return f"size mismatch (expected {entry.compressed_size}, found {stored_size})"
            checksum = pipeline.decode_to_checksum(payload, entry.compressed, entry.encrypted)
        except (TransformError, BackupIOError, OSError) as e:
            return str(e)
        if checksum != entry.checksum:
            return "checksum mismatch"
        return None

    def verify_file(self, file_path: str | Path, expected_checksum: str) -> bool:
        try:
            return calculate_file_checksum(file_path) == expected_checksum
        except OSError as e:
            self.logger.warning(f"Could not checksum {file_path}: {e}")
            return False

    def list_backups(self) -> list[Path]:
        """Complete backups in the destination, oldest first

        Directories without a metadata document (e.g. failed runs) and those
        released from the catalog by a cleanup that kept files are ignored.
        """
        backups = [
            entry
            for entry in self._backup_dirs()
            if (entry / METADATA_FILE).exists() and not self.store.is_released(entry.name)
        ]
        return sorted(backups, key=lambda p: p.name)

    def _backup_dirs(self) -> list[Path]:
        if not self.destination.exists():
            return []
        return [
            entry
            for entry in self.destination.iterdir()
            if entry.is_dir() and entry.name.startswith(BACKUP_DIR_PREFIX)
        ]

    def get_backup_record(self, backup_path: str | Path) -> BackupRecord:
        """Record stored in a backup directory

        Raises:
            ValidationError: If the directory holds no readable metadata
        """
        return self._load_backup_record(Path(backup_path))

    def get_latest_backup(self) -> Path | None:
        backups = self.list_backups()
        return backups[-1] if backups else None

    @staticmethod
    def get_backup_size(backup_path: str | Path) -> int:
        total = 0
        for root, _dirs, files in os.walk(backup_path):
            for name in files:
                try:
                    total += (Path(root) / name).stat().st_size
                except OSError:
                    continue
        return total

    @staticmethod
    def get_backup_timestamp(backup_path: str | Path) -> datetime:
        """Timestamp encoded in the directory name, falling back to its mtime"""
        path = Path(backup_path)
        stamp = path.name[len(BACKUP_DIR_PREFIX) : len(BACKUP_DIR_PREFIX) + 15]
        if path.name.startswith(BACKUP_DIR_PREFIX):
            try:
                return datetime.strptime(stamp, BACKUP_DIR_TIME_FORMAT)
            except ValueError:
                pass
        return datetime.fromtimestamp(path.stat().st_mtime)

    def _backup_dirs_by_id(self) -> dict[str, str]:
        dirs = {}
        for backup_id in self.store.list_all_backups():
            record = self.store.get(backup_id)
            if record is not None:
                dirs[backup_id] = record.backup_dir
        return dirs

    def _remove_payload(self, backup_dirs: list[str]) -> list[str]:
        removed = []
        for name in backup_dirs:
            target = self.destination / name
            if name and target.is_dir():
                shutil.rmtree(target)
                removed.append(name)
                self.logger.info(f"Removed backup directory: {name}")
        return removed

    def _drop_payload(self, backup_dirs: list[str], delete_payload: bool) -> list[str]:
        """Delete the directories of removed records, or release them from the catalog"""
        if delete_payload:
            return self._remove_payload(backup_dirs)
        self.store.release(backup_dirs)
        return []

    def cleanup_old_backups(
        self, retention_days: int | None = None, delete_payload: bool = True, remove_orphans: bool = True
    ) -> OperationResult:
        """Drop backups older than the retention period

        Args:
            retention_days: Days to keep (defaults to retention.days setting)
            delete_payload: Also remove the backup directories from disk. When
                False the directories stay and are no longer listed or catalogued.
            remove_orphans: Also drop incrementals whose parent was removed
        """
        days = retention_days if retention_days is not None else int(self._setting("retention.days", 30))
        cutoff = datetime.now() - timedelta(days=days)

        try:
            dirs_by_id = self._backup_dirs_by_id()
            removed = self.store.remove_old_backups(cutoff)
            if remove_orphans:
                removed += self.store.cleanup_orphaned_entries()
            deleted_dirs = self._drop_payload([dirs_by_id[bid] for bid in removed], delete_payload)
        except (BackupError, OSError) as e:
            self.logger.error(f"Retention cleanup failed: {e}")
            error = e if isinstance(e, BackupError) else BackupIOError(str(e))
            return OperationResult.failure(error, "Cleanup failed")

        return OperationResult(
            True,
            f"Removed {len(removed)} backups older than {days} days",
            details={"removed": removed, "deleted_dirs": deleted_dirs},
        )

    def cleanup_orphans(self, delete_payload: bool = True) -> OperationResult:
        """Drop incremental backups whose parent no longer resolves

        With delete_payload, directories left behind by failed runs (no
        metadata document) are removed as well.
        """
        try:
            dirs_by_id = self._backup_dirs_by_id()
            removed = self.store.cleanup_orphaned_entries()
            deleted_dirs = self._drop_payload([dirs_by_id[bid] for bid in removed], delete_payload)
            incomplete = []
            if delete_payload:
                incomplete = sorted(e.name for e in self._backup_dirs() if not (e / METADATA_FILE).exists())
                deleted_dirs += self._remove_payload(incomplete)
        except (BackupError, OSError) as e:
            self.logger.error(f"Orphan cleanup failed: {e}")
            error = e if isinstance(e, BackupError) else BackupIOError(str(e))
            return OperationResult.failure(error, "Cleanup failed")

        return OperationResult(
            True,
            f"Removed {len(removed)} orphaned incremental backups and {len(incomplete)} incomplete directories",
            details={"removed": removed, "deleted_dirs": deleted_dirs, "incomplete": incomplete},
        )

    def get_compression_stats(self) -> dict[str, Any]:
        """Aggregate compression totals for everything this engine compressed"""
        return {
            "bytes_original": self.compressor.total_bytes_original,
            "bytes_compressed": self.compressor.total_bytes_compressed,
            "average_ratio": self.compressor.get_average_compression_ratio(),
        }
