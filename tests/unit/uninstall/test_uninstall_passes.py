from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from driver_installer.backup_log import BackupSession, JournalError, load_journal
from driver_installer.uninstall import (
    do_uninstall,
    report_driver_information,
    run_uninstall,
    sanity,
    uninstall_existing_driver,
)


def _session(tmp_path: Path) -> BackupSession:
    session = BackupSession(backup_dir=tmp_path / "nvidia")
    session.init_backup("1.0-4496", "Test Driver")
    return session


def test_symlink_installed_over_backed_up_file_is_replaced_by_the_file(tmp_path: Path) -> None:
    p = tmp_path / "libGLcore.so"
    p.write_bytes(b"original content")
    os.chmod(p, 0o600)

    session = _session(tmp_path)
    session.do_backup(str(p))
    os.symlink("libGLcore.so.1.0.4496", p)
    session.log_create_symlink(str(p), "libGLcore.so.1.0.4496")

    j = load_journal(session.backup_dir)
    # The backed up file precedes the symlink in the journal.
    assert [e.kind for e in j.entries] == ["backed_up_file", "installed_symlink"]

    result = run_uninstall(j, session.backup_dir)

    assert result.ok, result.failures
    assert not p.is_symlink()
    assert p.is_file()
    assert p.read_bytes() == b"original content"
    assert stat.S_IMODE(os.stat(p).st_mode) == 0o600
    assert not session.backup_dir.exists()


def test_full_uninstall_restores_previous_state(tmp_path: Path) -> None:
    lib = tmp_path / "lib"
    lib.mkdir()
    old = lib / "libGL.so.1"
    old.write_bytes(b"vendor")
    link = lib / "libGL.so"
    os.symlink("libGL.so.1.vendor", link)
    fresh = lib / "libnvidia-tls.so.1"

    session = _session(tmp_path)
    session.do_backup(str(old))
    old.write_bytes(b"driver")
    session.log_install_file(str(old))
    session.do_backup(str(link))
    os.symlink("libGL.so.1", link)
    session.log_create_symlink(str(link), "libGL.so.1")
    fresh.write_bytes(b"tls")
    session.log_install_file(str(fresh))

    result = do_uninstall(session.backup_dir)

    assert result.ok and not result.best_effort
    assert old.read_bytes() == b"vendor"
    assert os.readlink(link) == "libGL.so.1.vendor"
    assert not fresh.exists()
    assert sorted(result.removed) == sorted([str(old), str(link), str(fresh)])
    assert sorted(result.restored) == sorted([str(old), str(link)])


def test_invalid_entries_are_skipped_and_reported_best_effort(tmp_path: Path) -> None:
    lib = tmp_path / "lib"
    lib.mkdir()
    link = lib / "libGL.so"
    os.symlink("vendor", link)
    modified = lib / "libGL.so.1.0.1"

    session = _session(tmp_path)
    session.do_backup(str(link))
    os.symlink("libGL.so.1.0.1", link)
    session.log_create_symlink(str(link), "libGL.so.1.0.1")
    modified.write_bytes(b"driver")
    session.log_install_file(str(modified))

    # Another package took over both paths after installation.
    link.unlink()
    os.symlink("libGL.so.mesa", link)
    modified.write_bytes(b"mesa")

    result = do_uninstall(session.backup_dir)

    assert result.best_effort and not result.ok
    assert os.readlink(link) == "libGL.so.mesa"
    assert modified.read_bytes() == b"mesa"
    assert result.removed == [] and result.restored == []


def test_removal_failure_does_not_stop_the_pass(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.write_bytes(b"a")
    b.write_bytes(b"b")
    session = _session(tmp_path)
    session.log_install_file(str(a))
    session.log_install_file(str(b))
    j = load_journal(session.backup_dir)

    real_unlink = os.unlink

    def refuse_a(path, *args, **kwargs):
        if str(path) == str(a):
            raise PermissionError(1, "Operation not permitted")
        return real_unlink(path, *args, **kwargs)

    monkeypatch.setattr(os, "unlink", refuse_a)
    result = run_uninstall(j, session.backup_dir)
    monkeypatch.undo()

    assert not b.exists()
    assert a.exists()
    assert len(result.failures) == 1 and str(a) in result.failures[0]
    assert not result.ok


def test_tampered_permissions_still_uninstall_best_effort(tmp_path: Path) -> None:
    f = tmp_path / "installed"
    f.write_bytes(b"x")
    session = _session(tmp_path)
    session.log_install_file(str(f))
    os.chmod(session.backup_dir, 0o755)

    result = do_uninstall(session.backup_dir)

    assert result.best_effort
    assert not f.exists()


def test_no_backup_directory_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(JournalError, match="No driver backed up"):
        do_uninstall(tmp_path / "nowhere")


def test_uninstall_existing_driver_without_journal(tmp_path: Path) -> None:
    assert uninstall_existing_driver(tmp_path / "nowhere") is None


def test_report_and_sanity(tmp_path: Path) -> None:
    f = tmp_path / "installed"
    f.write_bytes(b"x")
    session = _session(tmp_path)
    session.log_install_file(str(f))

    assert report_driver_information(session.backup_dir) == (
        "The currently installed driver is: 'Test Driver' (version: 1.0-4496)."
    )
    assert sanity(session.backup_dir) is True

    f.write_bytes(b"changed")
    assert sanity(session.backup_dir) is False
    assert sanity(tmp_path / "nowhere") is False
    assert report_driver_information(tmp_path / "nowhere") is None
