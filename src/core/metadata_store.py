"""Backup records and the store that chains them together"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import BackupIOError, ChainError, ValidationError

SCHEMA_VERSION = 1
BACKUP_TYPES = ("full", "incremental")


@dataclass
class FileEntry:
    """One file stored inside a backup"""

    relative_path: str
    checksum: str  # SHA-256 of the original plaintext
    size: int
    last_modified: float
    compressed: bool = False
    encrypted: bool = False
    compressed_size: int = 0  # on-disk size after transform

    def to_dict(self) -> dict[str, Any]:
        return {
            "relative_path": self.relative_path,
            "checksum": self.checksum,
            "size": self.size,
            "last_modified": self.last_modified,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "compressed_size": self.compressed_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileEntry":
        return cls(
            relative_path=str(data["relative_path"]),
            checksum=str(data["checksum"]),
            size=int(data["size"]),
            last_modified=float(data["last_modified"]),
            compressed=bool(data.get("compressed", False)),
            encrypted=bool(data.get("encrypted", False)),
            compressed_size=int(data.get("compressed_size", 0)),
        )


@dataclass
class BackupRecord:
    """Persisted description of one backup run"""

    backup_id: str
    backup_type: str
    timestamp: datetime
    source_path: str
    parent_backup_id: str = ""
    files: list[FileEntry] = field(default_factory=list)
    total_size: int = 0
    compressed_size: int = 0
    encrypted: bool = False
    encryption_method: str = ""
    compression_method: str = "none"
    compression_level: int = 0
    backup_dir: str = ""
    deleted_files: list[str] = field(default_factory=list)
    key_salt: str = ""

    def add_file(self, entry: FileEntry) -> None:
        """Append an entry, keeping the size totals in step

        Raises:
            ValidationError: If the relative path is already recorded
        """
        if self.find_file(entry.relative_path) is not None:
            raise ValidationError(f"Duplicate file entry: {entry.relative_path}")
        self.files.append(entry)
        self.total_size += entry.size
        self.compressed_size += entry.compressed_size

    def remove_file(self, relative_path: str) -> bool:
        entry = self.find_file(relative_path)
        if entry is None:
            return False
        self.files.remove(entry)
        self.total_size -= entry.size
        self.compressed_size -= entry.compressed_size
        return True

    def find_file(self, relative_path: str) -> FileEntry | None:
        for entry in self.files:
            if entry.relative_path == relative_path:
                return entry
        return None

    @property
    def is_full(self) -> bool:
        return self.backup_type == "full"

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "backup_type": self.backup_type,
            "timestamp": self.timestamp.isoformat(),
            "source_path": self.source_path,
            "parent_backup_id": self.parent_backup_id,
            "backup_dir": self.backup_dir,
            "total_size": self.total_size,
            "compressed_size": self.compressed_size,
            "encrypted": self.encrypted,
            "encryption_method": self.encryption_method,
            "compression_method": self.compression_method,
            "compression_level": self.compression_level,
            "key_salt": self.key_salt,
            "deleted_files": list(self.deleted_files),
            "files": [entry.to_dict() for entry in self.files],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupRecord":
        """Build a record from its document form

        Totals are re-accumulated from the entries and must agree with the
        stored values.

        Raises:
            ValidationError: On a missing field or inconsistent totals
        """
        try:
            record = cls(
                backup_id=str(data["backup_id"]),
                backup_type=str(data["backup_type"]),
                timestamp=datetime.fromisoformat(data["timestamp"]),
                source_path=str(data["source_path"]),
                parent_backup_id=str(data.get("parent_backup_id") or ""),
                encrypted=bool(data.get("encrypted", False)),
                encryption_method=str(data.get("encryption_method") or ""),
                compression_method=str(data.get("compression_method") or "none"),
                compression_level=int(data.get("compression_level", 0)),
                backup_dir=str(data.get("backup_dir") or ""),
                deleted_files=[str(p) for p in data.get("deleted_files", [])],
                key_salt=str(data.get("key_salt") or ""),
            )
            for item in data.get("files", []):
                record.add_file(FileEntry.from_dict(item))
            stored_total = int(data.get("total_size", record.total_size))
            stored_compressed = int(data.get("compressed_size", record.compressed_size))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed backup record: {e!r}") from e

        if stored_total != record.total_size or stored_compressed != record.compressed_size:
            raise ValidationError(f"Size totals do not match file entries in backup {record.backup_id}")
        return record


def validate_record(record: BackupRecord) -> None:
    """Raise ValidationError unless the record is structurally acceptable"""
    if not record.backup_id:
        raise ValidationError("Backup record has no backup_id")
    if not record.backup_type:
        raise ValidationError(f"Backup {record.backup_id} has no type")
    if record.backup_type not in BACKUP_TYPES:
        raise ValidationError(f"Backup {record.backup_id} has invalid type '{record.backup_type}'")
    if not record.source_path:
        raise ValidationError(f"Backup {record.backup_id} has no source path")
    if record.backup_type == "incremental" and not record.parent_backup_id:
        raise ValidationError(f"Incremental backup {record.backup_id} has no parent")
    if record.backup_type == "full" and record.parent_backup_id:
        raise ValidationError(f"Full backup {record.backup_id} must not have a parent")


class MetadataStore:
    """In-memory store of backup records keyed by backup id"""

    def __init__(self):
        self.logger = logging.getLogger("MetadataStore")
        self._backups: dict[str, BackupRecord] = {}
        # Backup directories dropped from the catalog but kept on disk
        self._released: set[str] = set()

    def __len__(self) -> int:
        return len(self._backups)

    def __contains__(self, backup_id: object) -> bool:
        return backup_id in self._backups

    # Hook for persistent subclasses
    def _changed(self) -> None:
        pass

    def create(self, record: BackupRecord) -> None:
        validate_record(record)
        if record.backup_id in self._backups:
            raise ValidationError(f"Backup {record.backup_id} already exists")
        self._backups[record.backup_id] = record
        self._changed()

    def update(self, backup_id: str, record: BackupRecord) -> None:
        validate_record(record)
        if backup_id not in self._backups:
            raise ValidationError(f"Backup {backup_id} not found")
        if record.backup_id != backup_id:
            raise ValidationError(f"Record id {record.backup_id} does not match {backup_id}")
        self._backups[backup_id] = record
        self._changed()

    def get(self, backup_id: str) -> BackupRecord | None:
        return self._backups.get(backup_id)

    def delete(self, backup_id: str) -> bool:
        if self._backups.pop(backup_id, None) is None:
            return False
        self._changed()
        return True

    def add_file_entry(self, backup_id: str, entry: FileEntry) -> None:
        record = self._require(backup_id)
        record.add_file(entry)
        self._changed()

    def remove_file_entry(self, backup_id: str, relative_path: str) -> bool:
        record = self._require(backup_id)
        removed = record.remove_file(relative_path)
        if removed:
            self._changed()
        return removed

    def get_file_entries(self, backup_id: str) -> list[FileEntry]:
        record = self._backups.get(backup_id)
        return list(record.files) if record else []

    def get_file_entry(self, backup_id: str, relative_path: str) -> FileEntry | None:
        record = self._backups.get(backup_id)
        return record.find_file(relative_path) if record else None

    def _require(self, backup_id: str) -> BackupRecord:
        record = self._backups.get(backup_id)
        if record is None:
            raise ValidationError(f"Backup {backup_id} not found")
        return record

    def get_backup_chain(self, backup_id: str) -> list[str]:
        """Walk parent pointers from a backup towards its full backup

        Stops at the first missing parent or revisited id, returning the
        partial chain (newest first).
        """
        chain: list[str] = []
        visited: set[str] = set()
        current = backup_id

        while current and current not in visited:
            record = self._backups.get(current)
            if record is None:
                break
            chain.append(current)
            visited.add(current)
            current = record.parent_backup_id

        return chain

    def resolve_chain(self, backup_id: str) -> list[str]:
        """Chain from the full backup to the given backup, oldest first

        Raises:
            ChainError: If the walk does not end at a full backup
        """
        chain = self.get_backup_chain(backup_id)
        if not chain:
            raise ChainError(f"Backup {backup_id} not found")
        root = self._backups[chain[-1]]
        if not root.is_full:
            if root.parent_backup_id in chain:
                raise ChainError(f"Cyclic parent chain detected at backup {root.backup_id}")
            raise ChainError(f"Parent backup {root.parent_backup_id} of {root.backup_id} is missing")
        return list(reversed(chain))

    def get_full_backup_id(self, backup_id: str) -> str:
        for chain_id in reversed(self.get_backup_chain(backup_id)):
            if self._backups[chain_id].is_full:
                return chain_id
        return ""

    def get_incremental_backups(self, full_backup_id: str) -> list[str]:
        incrementals = [
            record
            for record in self._backups.values()
            if record.backup_type == "incremental" and self.get_full_backup_id(record.backup_id) == full_backup_id
        ]
        incrementals.sort(key=lambda r: r.timestamp)
        return [record.backup_id for record in incrementals]

    def verify_backup_integrity(self, backup_id: str) -> bool:
        """Structural check of one record; on-disk bytes are not read"""
        record = self._backups.get(backup_id)
        if record is None:
            return False
        try:
            validate_record(record)
        except ValidationError as e:
            self.logger.warning(f"Integrity check failed: {e}")
            return False
        if record.backup_type == "incremental" and record.parent_backup_id not in self._backups:
            return False
        return all(entry.relative_path and entry.checksum for entry in record.files)

    def calculate_backup_checksum(self, backup_id: str) -> str:
        record = self._backups.get(backup_id)
        if record is None:
            return ""
        hash_obj = hashlib.sha256()
        hash_obj.update(f"{record.backup_id}{record.backup_type}{record.source_path}".encode())
        for entry in record.files:
            hash_obj.update(f"{entry.relative_path}{entry.checksum}{entry.size}".encode())
        return hash_obj.hexdigest()

    def validate_file_checksums(self, backup_id: str) -> bool:
        record = self._backups.get(backup_id)
        return record is not None and all(entry.checksum for entry in record.files)

    def list_all_backups(self) -> list[str]:
        records = sorted(self._backups.values(), key=lambda r: r.timestamp)
        return [record.backup_id for record in records]

    def find_backups_containing_file(self, relative_path: str) -> list[str]:
        return [
            record.backup_id for record in self._backups.values() if record.find_file(relative_path) is not None
        ]

    def find_backups_by_date_range(self, start: datetime, end: datetime) -> list[str]:
        return [record.backup_id for record in self._backups.values() if start <= record.timestamp <= end]

    def get_total_backup_size(self, backup_id: str) -> int:
        record = self._backups.get(backup_id)
        return record.total_size if record else 0

    def get_file_count(self, backup_id: str) -> int:
        record = self._backups.get(backup_id)
        return len(record.files) if record else 0

    def get_compression_ratio(self, backup_id: str) -> float:
        record = self._backups.get(backup_id)
        if record is None or record.total_size == 0:
            return 0.0
        return record.compressed_size / record.total_size

    def to_document(self, backup_ids: list[str] | None = None) -> dict[str, Any]:
        ids = self.list_all_backups() if backup_ids is None else backup_ids
        document: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "exported_at": datetime.now().isoformat(),
            "backups": [self._require(backup_id).to_dict() for backup_id in ids],
        }
        if backup_ids is None and self._released:
            document["released"] = sorted(self._released)
        return document

    def export_to_json(self, filename: Path | str, backup_ids: list[str] | None = None) -> None:
        """Write the store (or a subset of it) as one JSON document

        The document is written to a temporary file and moved into place.
        """
        path = Path(filename)
        document = self.to_document(backup_ids)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            raise BackupIOError(f"Failed to export metadata: {e}", str(path)) from e

    def import_from_json(self, filename: Path | str, merge: bool = False) -> int:
        """Load a document written by export_to_json

        A nonexistent file leaves an empty store. A malformed document aborts
        the load without touching the current contents.

        Returns:
            Number of records loaded
        """
        path = Path(filename)
        if not path.exists():
            if not merge:
                self._backups = {}
                self._released = set()
            return 0

        try:
            with open(path) as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed metadata document: {e}", str(path)) from e
        except OSError as e:
            raise BackupIOError(f"Cannot read metadata document: {e}", str(path)) from e

        loaded = self._parse_document(document, str(path))
        released = document.get("released", [])
        if not isinstance(released, list) or not all(isinstance(item, str) for item in released):
            raise ValidationError("Metadata document has an invalid 'released' list", str(path))
        if merge:
            self._backups.update(loaded)
            self._released.update(released)
        else:
            self._backups = loaded
            self._released = set(released)
        self.logger.debug(f"Loaded {len(loaded)} backup records from {path}")
        return len(loaded)

    @staticmethod
    def _parse_document(document: Any, label: str) -> dict[str, BackupRecord]:
        if not isinstance(document, dict) or "backups" not in document:
            raise ValidationError("Metadata document has no 'backups' list", label)

        version = document.get("schema_version")
        if not isinstance(version, int):
            raise ValidationError(f"Metadata document has invalid schema_version {version!r}", label)
        if version > SCHEMA_VERSION:
            raise ValidationError(f"Metadata schema_version {version} is newer than supported {SCHEMA_VERSION}", label)

        loaded: dict[str, BackupRecord] = {}
        for item in document["backups"]:
            record = BackupRecord.from_dict(item)
            validate_record(record)
            loaded[record.backup_id] = record
        return loaded

    def cleanup_orphaned_entries(self) -> list[str]:
        """Remove incremental records whose parent no longer resolves

        Payload directories are left alone.
        """
        removed: list[str] = []
        while True:
            orphans = [
                record.backup_id
                for record in self._backups.values()
                if record.backup_type == "incremental" and record.parent_backup_id not in self._backups
            ]
            if not orphans:
                break
            for backup_id in orphans:
                del self._backups[backup_id]
            removed.extend(orphans)

        if removed:
            self.logger.info(f"Removed {len(removed)} orphaned backup records")
            self._changed()
        return removed

    def remove_old_backups(self, cutoff: datetime) -> list[str]:
        """Remove records older than the cutoff; payload directories are left alone"""
        removed = [record.backup_id for record in self._backups.values() if record.timestamp < cutoff]
        for backup_id in removed:
            del self._backups[backup_id]

        if removed:
            self.logger.info(f"Removed {len(removed)} backup records older than {cutoff.isoformat()}")
            self._changed()
        return removed

    def release(self, backup_dirs: list[str]) -> None:
        """Remember directories of removed records that stay on disk so they are not re-catalogued"""
        names = [name for name in backup_dirs if name]
        if names:
            self._released.update(names)
            self._changed()

    def is_released(self, backup_dir: str) -> bool:
        return backup_dir in self._released


class FileBackedMetadataStore(MetadataStore):
    """Store that loads from a JSON document and rewrites it after every change"""

    def __init__(self, path: Path | str):
        super().__init__()
        self.path = Path(path)
        self.import_from_json(self.path)

    def _changed(self) -> None:
        self.export_to_json(self.path)

    def reload(self) -> int:
        return self.import_from_json(self.path)
