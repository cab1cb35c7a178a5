"""Change tracking between directory snapshots"""

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import BackupIOError, ValidationError

CHECKSUM_CHUNK_SIZE = 64 * 1024
STATE_VERSION = "1.0"


@dataclass(frozen=True)
class FileRecord:
    """Descriptor of one path at snapshot time"""

    path: str
    size: int
    last_modified: float
    checksum: str = ""
    is_directory: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        try:
            return cls(
                path=str(data["path"]),
                size=int(data["size"]),
                last_modified=float(data["last_modified"]),
                checksum=str(data.get("checksum") or ""),
                is_directory=bool(data.get("is_directory", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed file record: {e}") from e


Snapshot = dict[str, FileRecord]


@dataclass
class ChangeSet:
    """Result of comparing two snapshots"""

    new: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[str]:
        """New and modified paths, each listed once"""
        return sorted(set(self.new) | set(self.modified))

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.modified or self.deleted)


def calculate_file_checksum(file_path: Path | str) -> str:
    """Calculate the SHA-256 of a file's full content

    Args:
        file_path: Path to file

    Returns:
        Lowercase hexadecimal checksum string
    """
    hash_obj = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHECKSUM_CHUNK_SIZE), b""):
            hash_obj.update(chunk)
    return hash_obj.hexdigest()


def records_match(current: FileRecord, previous: FileRecord) -> bool:
    """True when two records describe the same content"""
    if current.size != previous.size:
        return False
    if current.last_modified != previous.last_modified:
        return False
    # Directories have no checksum
    if current.is_directory:
        return True
    return current.checksum == previous.checksum


class ChangeTracker:
    """Snapshots directory trees and reports what changed between two of them"""

    def __init__(self):
        self.logger = logging.getLogger("ChangeTracker")
        self.current_state: Snapshot = {}
        self.previous_state: Snapshot = {}
        # Diagnostics channel: entries skipped during the last walk
        self.warnings: list[str] = []

    def snapshot(self, root: Path | str) -> Snapshot:
        """Walk a directory tree and build a record for every entry under it

        Args:
            root: Directory to scan

        Returns:
            Mapping of relative POSIX path to FileRecord

        Raises:
            BackupIOError: If the root is missing or unreadable
        """
        root_path = Path(root)
        self.warnings = []

        if not root_path.exists():
            raise BackupIOError("Source path does not exist", str(root_path))
        if not root_path.is_dir():
            raise BackupIOError("Source path is not a directory", str(root_path))

        try:
            entries = list(os.scandir(root_path))
        except OSError as e:
            raise BackupIOError(f"Cannot read source directory: {e}", str(root_path)) from e

        snapshot: Snapshot = {}
        self._walk(root_path, entries, snapshot)
        self.logger.debug(f"Scanned {len(snapshot)} entries under {root_path}")
        return snapshot

    def _walk(self, root: Path, entries: list[os.DirEntry], snapshot: Snapshot) -> None:
        pending = list(entries)
        while pending:
            entry = pending.pop()
            entry_path = Path(entry.path)
            rel_path = entry_path.relative_to(root).as_posix()
            try:
                if entry.is_symlink():
                    self._warn(f"Skipping symlink: {rel_path}")
                    continue

                stat = entry.stat(follow_symlinks=False)
                if entry.is_dir(follow_symlinks=False):
                    snapshot[rel_path] = FileRecord(
                        path=rel_path, size=0, last_modified=stat.st_mtime, is_directory=True
                    )
                    pending.extend(os.scandir(entry_path))
                elif entry.is_file(follow_symlinks=False):
                    snapshot[rel_path] = FileRecord(
                        path=rel_path,
                        size=stat.st_size,
                        last_modified=stat.st_mtime,
                        checksum=calculate_file_checksum(entry_path),
                    )
                else:
                    self._warn(f"Skipping special file: {rel_path}")
            except OSError as e:
                self._warn(f"Skipping unreadable entry {rel_path}: {e}")

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        self.logger.warning(message)

    def diff(self, current: Snapshot, previous: Snapshot) -> ChangeSet:
        """Compare two snapshots

        Args:
            current: The newer snapshot
            previous: The older snapshot (never mutated)

        Returns:
            ChangeSet with sorted path lists
        """
        changes = ChangeSet()
        for path, record in current.items():
            old = previous.get(path)
            if old is None:
                changes.new.append(path)
            elif old.is_directory != record.is_directory:
                # A file replaced by a directory (or the reverse) is a new entry
                # and the old one must be removed first
                changes.new.append(path)
                changes.deleted.append(path)
            elif records_match(record, old):
                changes.unchanged.append(path)
            else:
                changes.modified.append(path)

        changes.deleted.extend(path for path in previous if path not in current)

        for paths in (changes.new, changes.modified, changes.deleted, changes.unchanged):
            paths.sort()
        return changes

    def scan_directory(self, root: Path | str) -> Snapshot:
        """Snapshot a tree and keep it as the current state"""
        self.current_state = self.snapshot(root)
        return self.current_state

    def load_previous_state(self, state_file: Path | str) -> Snapshot:
        """Load a persisted snapshot as the previous state

        A missing state file means there is no previous snapshot.

        Raises:
            ValidationError: If the document is malformed
        """
        state_path = Path(state_file)
        if not state_path.exists():
            self.previous_state = {}
            return self.previous_state

        try:
            with open(state_path) as f:
                data = json.load(f)
            records = [FileRecord.from_dict(item) for item in data["files"]]
        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed snapshot document: {e}", str(state_path)) from e

        self.previous_state = {record.path: record for record in records}
        self.logger.debug(f"Loaded previous state with {len(self.previous_state)} entries")
        return self.previous_state

    def save_state(self, state_file: Path | str, snapshot: Snapshot | None = None) -> None:
        """Persist a snapshot (defaults to the current state)"""
        snapshot = self.current_state if snapshot is None else snapshot
        document = {
            "version": STATE_VERSION,
            "timestamp": datetime.now().isoformat(),
            "files": [snapshot[path].to_dict() for path in sorted(snapshot)],
        }
        try:
            with open(state_file, "w") as f:
                json.dump(document, f, indent=2)
        except OSError as e:
            raise BackupIOError(f"Failed to save snapshot: {e}", str(state_file)) from e

    def get_changes(self) -> ChangeSet:
        return self.diff(self.current_state, self.previous_state)

    def get_changed_files(self) -> list[str]:
        return self.get_changes().changed

    def get_new_files(self) -> list[str]:
        return self.get_changes().new

    def get_modified_files(self) -> list[str]:
        return self.get_changes().modified

    def get_deleted_files(self) -> list[str]:
        return self.get_changes().deleted

    def has_file_changed(self, path: str) -> bool:
        current = self.current_state.get(path)
        previous = self.previous_state.get(path)
        if current is None:
            return previous is not None
        if previous is None:
            return True
        return not records_match(current, previous)

    def get_file_info(self, path: str) -> FileRecord | None:
        return self.current_state.get(path)

    def update_file_info(self, path: str, record: FileRecord) -> None:
        # Records are immutable; replace rather than edit
        self.current_state[path] = record

    def remove_file(self, path: str) -> None:
        self.current_state.pop(path, None)

    def clear(self) -> None:
        self.current_state = {}
        self.previous_state = {}
        self.warnings = []

    def get_total_files(self) -> int:
        return len(self.current_state)

    def get_changed_files_count(self) -> int:
        return len(self.get_changed_files())

    def get_total_size(self) -> int:
        return sum(r.size for r in self.current_state.values() if not r.is_directory)
