from __future__ import annotations

import os
from pathlib import Path

from driver_installer.backup_log import BackupSession, backup_slot_path, load_journal
from driver_installer.uninstall import sanity_check, validate_entries


def _fresh_install(tmp_path: Path):
    """A driver install that replaced a file and a symlink."""

    backup = tmp_path / "nvidia"
    lib = tmp_path / "lib"
    lib.mkdir()

    old_file = lib / "libGL.so.1"
    old_file.write_bytes(b"vendor libGL")
    link = lib / "libGL.so"
    os.symlink("libGL.so.1.vendor", link)
    new_lib = lib / "libGL.so.1.0.1"

    session = BackupSession(backup_dir=backup)
    session.init_backup("1.0-1", "Test Driver")

    session.do_backup(str(old_file))
    old_file.write_bytes(b"driver libGL")
    session.log_install_file(str(old_file))

    new_lib.write_bytes(b"driver libGL implementation")
    session.log_install_file(str(new_lib))

    session.do_backup(str(link))
    os.symlink("libGL.so.1.0.1", link)
    session.log_create_symlink(str(link), "libGL.so.1.0.1")

    return backup, lib


def test_untouched_installation_is_valid(tmp_path: Path) -> None:
    backup, _ = _fresh_install(tmp_path)
    j = load_journal(backup)

    assert validate_entries(j, backup) is True
    assert all(e.valid for e in j.entries)
    assert sanity_check(j, backup) is True


def test_validation_is_idempotent(tmp_path: Path) -> None:
    backup, lib = _fresh_install(tmp_path)
    (lib / "libGL.so.1.0.1").write_bytes(b"modified")
    j = load_journal(backup)

    first = validate_entries(j, backup)
    flags = [e.valid for e in j.entries]
    second = validate_entries(j, backup)

    assert first == second is False
    assert [e.valid for e in j.entries] == flags


def test_modified_installed_file_is_invalid(tmp_path: Path) -> None:
    backup, lib = _fresh_install(tmp_path)
    (lib / "libGL.so.1.0.1").write_bytes(b"someone else's library")
    j = load_journal(backup)

    assert validate_entries(j, backup) is False
    bad = [e for e in j.entries if not e.valid]
    assert [e.path for e in bad] == [str(lib / "libGL.so.1.0.1")]
    assert "different checksum" in (bad[0].problem or "")


def test_missing_installed_file_is_invalid(tmp_path: Path) -> None:
    backup, lib = _fresh_install(tmp_path)
    (lib / "libGL.so.1.0.1").unlink()
    j = load_journal(backup)

    assert validate_entries(j, backup) is False
    bad = [e for e in j.entries if not e.valid]
    assert len(bad) == 1 and "no longer exists" in (bad[0].problem or "")


def test_retargeted_symlink_invalidates_backed_up_symlink_at_same_path(tmp_path: Path) -> None:
    backup, lib = _fresh_install(tmp_path)
    link = lib / "libGL.so"
    link.unlink()
    os.symlink("libGL.so.other", link)
    j = load_journal(backup)

    assert validate_entries(j, backup) is False

    at_link = {e.kind: e.valid for e in j.entries if e.path == str(link)}
    assert at_link == {"installed_symlink": False, "backed_up_symlink": False}
    others = [e for e in j.entries if e.path != str(link)]
    assert all(e.valid for e in others)


def test_removed_symlink_does_not_cascade(tmp_path: Path) -> None:
    backup, lib = _fresh_install(tmp_path)
    (lib / "libGL.so").unlink()
    j = load_journal(backup)

    validate_entries(j, backup)

    at_link = {e.kind: e.valid for e in j.entries if e.path == str(lib / "libGL.so")}
    assert at_link == {"installed_symlink": False, "backed_up_symlink": True}


def test_corrupted_backup_store_is_invalid(tmp_path: Path) -> None:
    backup, _ = _fresh_install(tmp_path)
    j = load_journal(backup)
    backed_up = next(e for e in j.entries if e.kind == "backed_up_file")
    assert backed_up.slot is not None
    backup_slot_path(backup, backed_up.slot).write_bytes(b"corrupted")

    assert validate_entries(j, backup) is False
    assert backed_up.valid is False
    assert "saved as" in (backed_up.problem or "")


def test_missing_backup_store_file_is_invalid(tmp_path: Path) -> None:
    backup, _ = _fresh_install(tmp_path)
    j = load_journal(backup)
    backed_up = next(e for e in j.entries if e.kind == "backed_up_file")
    assert backed_up.slot is not None
    backup_slot_path(backup, backed_up.slot).unlink()

    assert sanity_check(j, backup) is False
    assert backed_up.valid is False
