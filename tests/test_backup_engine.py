"""End-to-end tests for the backup engine."""

import json
import os
from collections import Counter

import pytest

from src.core.backup_engine import (
    CATALOG_FILE,
    METADATA_FILE,
    STATE_FILE,
    BackupEngine,
    BackupOptions,
    CancellationToken,
)
from src.core.encryptor import Encryptor
from src.core.metadata_store import MetadataStore


def test_hello_compressed_round_trip(tmp_path, destination):
    """a.txt = "hello" is stored as a zlib stream and restored byte for byte."""
    source = tmp_path / "src"
    source.mkdir()
    (source / "a.txt").write_bytes(b"hello")
    engine = BackupEngine(destination)

    result = engine.create_full_backup(BackupOptions(str(source), compression_level=6))

    assert result.success, result.message
    payload = (result.backup_path / "a.txt").read_bytes()
    assert payload[0] == 0x78

    restored = tmp_path / "restored"
    assert engine.restore_backup(result.backup_path, restored).success
    assert (restored / "a.txt").read_bytes() == b"hello"


def test_hello_encrypted_envelope_and_wrong_key(tmp_path, destination):
    source = tmp_path / "src"
    source.mkdir()
    (source / "a.txt").write_bytes(b"hello")
    engine = BackupEngine(destination)

    result = engine.create_full_backup(BackupOptions(str(source), enable_encryption=True, encryption_key="K"))

    assert result.success, result.message
    payload = (result.backup_path / "a.txt").read_bytes()
    assert payload[:8] == b"ENCRYPT1"
    assert len(payload) > 24

    wrong = engine.restore_backup(result.backup_path, tmp_path / "wrong", key="not-K")
    assert not wrong.success
    assert wrong.error_kind in {"decryption", "decompression", "integrity"}

    right = engine.restore_backup(result.backup_path, tmp_path / "right", key="K")
    assert right.success, right.message
    assert (tmp_path / "right" / "a.txt").read_bytes() == b"hello"


@pytest.mark.parametrize(
    "compression,level,encryption",
    [(False, 6, False), (True, 0, False), (True, 1, True), (True, 9, False), (False, 6, True), (True, 6, True)],
)
def test_round_trip_across_policies(tmp_path, source_tree, destination, read_tree, compression, level, encryption):
    engine = BackupEngine(destination)
    options = BackupOptions(
        str(source_tree),
        enable_compression=compression,
        compression_level=level,
        enable_encryption=encryption,
        encryption_key="ab" * 32 if encryption else None,
    )

    result = engine.create_full_backup(options)
    assert result.success, result.message

    restored = tmp_path / "restored"
    outcome = engine.restore_backup(result.backup_path, restored, key=options.encryption_key)
    assert outcome.success, outcome.message
    assert read_tree(restored) == read_tree(source_tree)


def test_backup_directory_layout(engine, options):
    result = engine.create_full_backup(options())

    assert result.backup_path.name.startswith("backup_")
    assert (result.backup_path / METADATA_FILE).exists()
    assert (result.backup_path / STATE_FILE).exists()
    assert (result.backup_path / "empty").is_dir()
    document = json.loads((result.backup_path / METADATA_FILE).read_text())
    assert document["schema_version"] == 1
    assert document["backups"][0]["backup_type"] == "full"
    assert engine.list_backups() == [result.backup_path]


def test_unchanged_source_gives_identical_checksums(engine, options):
    first = engine.create_full_backup(options())
    second = engine.create_full_backup(options())

    records = [engine.get_backup_record(r.backup_path) for r in (first, second)]
    assert first.backup_path != second.backup_path
    assert records[0].backup_id != records[1].backup_id
    assert Counter(e.checksum for e in records[0].files) == Counter(e.checksum for e in records[1].files)


def test_incremental_contains_only_changes(engine, options, source_tree):
    full = engine.create_full_backup(options())
    (source_tree / "a.txt").write_text("hello again")
    (source_tree / "docs" / "new.txt").write_text("brand new")

    result = engine.create_incremental_backup(options())

    assert result.success, result.message
    record = engine.get_backup_record(result.backup_path)
    assert record.backup_type == "incremental"
    assert record.parent_backup_id == full.backup_id
    assert sorted(e.relative_path for e in record.files) == ["a.txt", "docs/new.txt"]


def test_incremental_without_changes_creates_nothing(engine, options):
    engine.create_full_backup(options())

    result = engine.create_incremental_backup(options())

    assert result.success
    assert result.backup_path is None
    assert "No changes" in result.message
    assert len(engine.list_backups()) == 1


def test_incremental_falls_back_to_full(engine, options):
    result = engine.create_incremental_backup(options())

    assert result.success
    assert engine.get_backup_record(result.backup_path).backup_type == "full"


def test_chain_restore_matches_live_tree(tmp_path, engine, options, source_tree, read_tree):
    engine.create_full_backup(options())

    (source_tree / "a.txt").write_text("version two")
    (source_tree / "zero.dat").unlink()
    engine.create_incremental_backup(options())

    (source_tree / "docs" / "nested" / "notes.txt").unlink()
    (source_tree / "docs" / "nested").rmdir()
    (source_tree / "fresh").mkdir()
    (source_tree / "fresh" / "file.txt").write_text("fresh file")
    last = engine.create_incremental_backup(options())
    assert last.success, last.message

    restored = tmp_path / "chain"
    result = engine.restore_backup_chain(last.backup_path, restored)

    assert result.success, result.message
    assert len(result.details["chain"]) == 3
    assert read_tree(restored) == read_tree(source_tree)


def test_chain_restore_when_file_becomes_directory(tmp_path, engine, options, source_tree, read_tree):
    engine.create_full_backup(options())
    (source_tree / "a.txt").unlink()
    (source_tree / "a.txt").mkdir()
    (source_tree / "a.txt" / "child.txt").write_text("child")
    last = engine.create_incremental_backup(options())
    assert last.success, last.message

    result = engine.restore_backup_chain(last.backup_path, tmp_path / "out")

    assert result.success, result.message
    assert read_tree(tmp_path / "out") == read_tree(source_tree)


def test_chain_restore_when_directory_becomes_file(tmp_path, engine, options, source_tree, read_tree):
    engine.create_full_backup(options())
    (source_tree / "docs" / "nested" / "notes.txt").unlink()
    (source_tree / "docs" / "nested").rmdir()
    (source_tree / "docs" / "nested").write_text("now a file")
    last = engine.create_incremental_backup(options())
    assert last.success, last.message

    result = engine.restore_backup_chain(last.backup_path, tmp_path / "out")

    assert result.success, result.message
    assert read_tree(tmp_path / "out") == read_tree(source_tree)


def test_chain_restore_with_password(tmp_path, engine, options, source_tree, read_tree):
    engine.create_full_backup(options(enable_encryption=True, password="s3cret"))
    (source_tree / "a.txt").write_text("changed")
    last = engine.create_incremental_backup(options(enable_encryption=True, password="s3cret"))

    result = engine.restore_backup_chain(last.backup_path, tmp_path / "out", password="s3cret")

    assert result.success, result.message
    assert read_tree(tmp_path / "out") == read_tree(source_tree)


def test_chain_restore_reports_broken_chain(tmp_path, destination, options, source_tree):
    engine = BackupEngine(destination, store=MetadataStore())
    full = engine.create_full_backup(options())
    (source_tree / "a.txt").write_text("changed")
    last = engine.create_incremental_backup(options())
    engine.store.delete(full.backup_id)

    result = engine.restore_backup_chain(last.backup_path, tmp_path / "out")

    assert not result.success
    assert result.error_kind == "chain"


def test_generated_key_is_reported(tmp_path, engine, options, read_tree, source_tree):
    result = engine.create_full_backup(options(enable_encryption=True))

    key = result.details["generated_key"]
    assert len(key) == 64
    assert engine.restore_backup(result.backup_path, tmp_path / "out", key=key).success
    assert read_tree(tmp_path / "out") == read_tree(source_tree)


def test_incremental_never_generates_its_own_key(tmp_path, engine, options, source_tree, read_tree):
    full = engine.create_full_backup(options(enable_encryption=True))
    key = full.details["generated_key"]
    (source_tree / "a.txt").write_text("changed")

    refused = engine.create_incremental_backup(options(enable_encryption=True))
    assert not refused.success
    assert refused.error_kind == "validation"
    assert refused.backup_path is None

    last = engine.create_incremental_backup(options(enable_encryption=True, encryption_key=key))
    assert last.success, last.message
    result = engine.restore_backup_chain(last.backup_path, tmp_path / "out", key=key)
    assert result.success, result.message
    assert read_tree(tmp_path / "out") == read_tree(source_tree)


def test_key_file(tmp_path, engine, options):
    key_file = tmp_path / "backup.key"
    encryptor = Encryptor()
    encryptor.generate_random_key()
    encryptor.save_key_to_file(key_file)

    result = engine.create_full_backup(options(enable_encryption=True, key_file=str(key_file)))

    assert result.success, result.message
    assert "generated_key" not in result.details
    assert engine.verify_backup(result.backup_path, key_file=str(key_file)).success


def test_encrypted_restore_without_key_fails(tmp_path, engine, options):
    result = engine.create_full_backup(options(enable_encryption=True, encryption_key="K"))

    outcome = engine.restore_backup(result.backup_path, tmp_path / "out")

    assert not outcome.success
    assert outcome.error_kind == "validation"


def test_restore_single_file(tmp_path, engine, options, source_tree):
    result = engine.create_full_backup(options())

    outcome = engine.restore_file(result.backup_path, "docs/nested/notes.txt", tmp_path / "one")

    assert outcome.success, outcome.message
    restored = tmp_path / "one" / "docs" / "nested" / "notes.txt"
    assert restored.read_bytes() == (source_tree / "docs" / "nested" / "notes.txt").read_bytes()
    assert not engine.restore_file(result.backup_path, "missing.txt", tmp_path / "one").success


def test_restore_preserves_mtime(tmp_path, engine, options, source_tree):
    result = engine.create_full_backup(options())
    engine.restore_backup(result.backup_path, tmp_path / "out")

    original = (source_tree / "docs" / "readme.md").stat().st_mtime
    assert (tmp_path / "out" / "docs" / "readme.md").stat().st_mtime == pytest.approx(original, abs=1e-3)


def test_verify_clean_backup(engine, options):
    result = engine.create_full_backup(options(enable_encryption=True, encryption_key="K"))

    verification = engine.verify_backup(result.backup_path, key="K")

    assert verification.success, verification.message
    assert verification.details["failures"] == []


def test_verify_detects_missing_and_tampered_files(engine, options):
    result = engine.create_full_backup(options(enable_compression=False))
    (result.backup_path / "a.txt").write_bytes(b"jello")
    (result.backup_path / "docs" / "readme.md").unlink()

    verification = engine.verify_backup(result.backup_path)

    assert not verification.success
    assert verification.error_kind == "integrity"
    failures = {f["path"]: f["reason"] for f in verification.details["failures"]}
    assert failures["docs/readme.md"] == "missing"
    assert failures["a.txt"] == "checksum mismatch"
    assert len(failures) == 2


def test_restore_of_tampered_backup_fails(tmp_path, engine, options):
    result = engine.create_full_backup(options(enable_compression=False))
    (result.backup_path / "a.txt").write_bytes(b"jello")

    outcome = engine.restore_backup(result.backup_path, tmp_path / "out")

    assert not outcome.success
    assert outcome.error_kind == "integrity"


def test_restore_with_damaged_envelope_header(tmp_path, engine, options):
    result = engine.create_full_backup(options(enable_encryption=True, password="pw"))
    payload = result.backup_path / "a.txt"
    payload.write_bytes(bytes(8) + payload.read_bytes()[8:])

    outcome = engine.restore_backup(result.backup_path, tmp_path / "out", password="pw")

    assert not outcome.success
    assert outcome.error_kind == "envelope"


def test_verify_file(engine, source_tree):
    from src.core.change_tracker import calculate_file_checksum

    checksum = calculate_file_checksum(source_tree / "a.txt")
    assert engine.verify_file(source_tree / "a.txt", checksum)
    assert not engine.verify_file(source_tree / "zero.dat", checksum)
    assert not engine.verify_file(source_tree / "missing", checksum)


@pytest.mark.parametrize(
    "overrides,kind",
    [
        ({"source_path": ""}, "validation"),
        ({"source_path": "/definitely/not/here"}, "validation"),
        ({"compression_level": 11}, "validation"),
    ],
)
def test_invalid_options(engine, source_tree, overrides, kind):
    options = BackupOptions(str(source_tree))
    for name, value in overrides.items():
        setattr(options, name, value)

    result = engine.create_full_backup(options)

    assert not result.success
    assert result.error_kind == kind
    assert engine.list_backups() == []


def test_destination_inside_source_rejected(source_tree):
    engine = BackupEngine(source_tree / "backups")

    result = engine.create_full_backup(BackupOptions(str(source_tree)))

    assert not result.success
    assert result.error_kind == "validation"


def test_progress_milestones(engine, options):
    seen = []

    engine.create_full_backup(options(), progress=lambda op, pct: seen.append(pct))

    assert seen[0] == 0.0
    assert seen[-1] == 100.0
    assert seen == sorted(seen)
    assert {10.0, 20.0, 30.0, 95.0} <= set(seen)


def test_progress_callback_errors_do_not_break_backup(engine, options):
    def explode(operation, percentage):
        raise RuntimeError("ui went away")

    assert engine.create_full_backup(options(), progress=explode).success


def test_cancellation_leaves_no_listed_backup(engine, options):
    token = CancellationToken()
    token.cancel()

    result = engine.create_full_backup(options(), cancel=token)

    assert not result.success
    assert result.error_kind == "cancelled"
    assert result.backup_path is not None
    assert engine.list_backups() == []


def test_catalog_rebuilt_from_backup_directories(destination, options):
    first = BackupEngine(destination)
    result = first.create_full_backup(options())
    (destination / CATALOG_FILE).unlink()

    second = BackupEngine(destination)

    assert result.backup_id in second.store


def test_cleanup_old_backups(engine, options, source_tree):
    full = engine.create_full_backup(options())
    (source_tree / "a.txt").write_text("changed")
    engine.create_incremental_backup(options())

    kept = engine.cleanup_old_backups(retention_days=1)
    assert kept.success
    assert kept.details["removed"] == []

    record = engine.store.get(full.backup_id)
    record.timestamp = record.timestamp.replace(year=record.timestamp.year - 1)
    result = engine.cleanup_old_backups(retention_days=30)

    assert result.success
    assert len(result.details["removed"]) == 2
    assert engine.list_backups() == []


def test_cleanup_keeping_files_survives_restart(destination, engine, options, source_tree):
    old = engine.create_full_backup(options())
    record = engine.store.get(old.backup_id)
    record.timestamp = record.timestamp.replace(year=record.timestamp.year - 1)

    result = engine.cleanup_old_backups(retention_days=30, delete_payload=False)

    assert result.details["removed"] == [old.backup_id]
    assert old.backup_path.is_dir()
    assert engine.list_backups() == []

    again = BackupEngine(destination)
    assert old.backup_id not in again.store
    assert again.list_backups() == []
    fresh = again.create_incremental_backup(options())
    assert again.get_backup_record(fresh.backup_path).backup_type == "full"


def test_cleanup_orphans_removes_incomplete_directories(engine, options, source_tree):
    kept = engine.create_full_backup(options())

    def remove_last_file(operation, percentage):
        if percentage == 30.0:
            (source_tree / "zero.dat").unlink()

    failed = engine.create_full_backup(options(), progress=remove_last_file)
    assert not failed.success

    result = engine.cleanup_orphans()

    assert result.success, result.message
    assert result.details["incomplete"] == [failed.backup_path.name]
    assert not failed.backup_path.exists()
    assert engine.list_backups() == [kept.backup_path]


def test_catalog_is_not_named_like_a_backup(engine, options, destination):
    engine.create_full_backup(options())

    assert (destination / CATALOG_FILE).exists()
    assert not CATALOG_FILE.startswith("backup_")


def test_backup_size_and_timestamp(engine, options):
    result = engine.create_full_backup(options())

    assert engine.get_backup_size(result.backup_path) > 0
    stamp = engine.get_backup_timestamp(result.backup_path)
    assert stamp.strftime("%Y%m%d_%H%M%S") in result.backup_path.name


def test_failed_run_keeps_partial_directory(engine, options, source_tree):
    """Files written before a failure stay put, but the run is not listed."""

    def remove_last_file(operation, percentage):
        if percentage == 30.0:
            (source_tree / "zero.dat").unlink()

    result = engine.create_full_backup(options(), progress=remove_last_file)

    assert not result.success
    assert result.error_kind == "io"
    assert (result.backup_path / "a.txt").exists()
    assert not (result.backup_path / METADATA_FILE).exists()
    assert engine.list_backups() == []


def test_unreadable_file_is_skipped_with_warning(engine, options, source_tree):
    locked = source_tree / "locked.txt"
    locked.write_text("secret")
    os.chmod(locked, 0)
    if os.access(locked, os.R_OK):
        pytest.skip("running with privileges that ignore file permissions")

    try:
        result = engine.create_full_backup(options())
    finally:
        os.chmod(locked, 0o644)

    assert result.success, result.message
    assert any("locked.txt" in warning for warning in result.warnings)
    assert engine.get_backup_record(result.backup_path).find_file("locked.txt") is None
