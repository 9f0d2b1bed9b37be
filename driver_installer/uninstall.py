from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .backup_log import (
    Journal,
    JournalError,
    JournalTamperError,
    LogEntry,
    backup_slot_path,
    installed_driver_version_and_description,
    load_journal,
)
from .lib.crc import crc32_file
from .lib.files import move_file, remove_directory, symlink_target

logger = logging.getLogger(__name__)


EXISTING_INSTALLATION_ALTERED = (
    "Your driver installation has been altered since it was initially installed; "
    "this may happen, for example, if you have since installed the driver through "
    "a mechanism other than this installer (such as a distribution package).  "
    "The installer will attempt to uninstall as best it can."
)


@dataclass
class UninstallResult:
    ok: bool
    best_effort: bool
    removed: List[str] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


def _invalidate(entry: LogEntry, problem: str, level: int) -> None:
    entry.valid = False
    entry.problem = problem
    logger.log(level, "%s", problem)


def _check_installed_file(entry: LogEntry, level: int) -> None:
    if not os.path.exists(entry.path):
        _invalidate(entry, f"The installed file '{entry.path}' no longer exists.", level)
        return
    try:
        crc = crc32_file(entry.path)
    except OSError as e:
        _invalidate(entry, f"Unable to compute CRC for file '{entry.path}' ({e.strerror}).", level)
        return
    if crc != entry.checksum:
        _invalidate(
            entry,
            f"The installed file '{entry.path}' has a different checksum ({crc}) than "
            f"when it was installed ({entry.checksum}).",
            level,
        )


def _check_installed_symlink(entry: LogEntry, level: int) -> bool:
    """Returns True if the path is now occupied by something else."""

    if not os.path.lexists(entry.path):
        _invalidate(entry, f"The installed symbolic link '{entry.path}' no longer exists.", level)
        return False
    try:
        target = symlink_target(entry.path)
    except OSError as e:
        _invalidate(entry, f"Unable to read symbolic link '{entry.path}' ({e}).", level)
        return True
    if target != entry.target:
        _invalidate(
            entry,
            f"The installed symbolic link '{entry.path}' has target '{target}', but it was "
            f"installed with target '{entry.target}'.",
            level,
        )
        return True
    return False


def _check_backed_up_file(entry: LogEntry, backup_dir: Path, level: int) -> None:
    assert entry.slot is not None
    saved = backup_slot_path(backup_dir, entry.slot)
    if not saved.exists():
        _invalidate(
            entry, f"The backed up file '{entry.path}' (saved as '{saved}') no longer exists.", level
        )
        return
    try:
        crc = crc32_file(saved)
    except OSError as e:
        _invalidate(entry, f"Unable to compute CRC for file '{saved}' ({e.strerror}).", level)
        return
    if crc != entry.checksum:
        _invalidate(
            entry,
            f"Backed up file '{entry.path}' (saved as '{saved}') has a different checksum "
            f"({crc}) than when it was backed up ({entry.checksum}).",
            level,
        )


def validate_entries(journal: Journal, backup_dir: str | Path, *, level: int = logging.INFO) -> bool:
    """Cross-check every entry against the live filesystem.

    Sets ``valid``/``problem`` on each entry and returns True only if every
    entry is still valid. Flags are recomputed from scratch on each call.
    """

    d = Path(backup_dir)
    for e in journal.entries:
        e.valid = True
        e.problem = None

    backed_up_symlinks = journal.by_path("backed_up_symlink")

    for e in journal.entries:
        if e.kind == "installed_file":
            _check_installed_file(e, level)
        elif e.kind == "installed_symlink":
            if _check_installed_symlink(e, level):
                # Never restore an old link over a path someone else now owns.
                for other in backed_up_symlinks.get(e.path, []):
                    if other.valid:
                        _invalidate(
                            other,
                            f"Not restoring symbolic link '{other.path}' -> '{other.target}'; "
                            f"the path has changed since installation.",
                            level,
                        )
        elif e.kind == "backed_up_file":
            _check_backed_up_file(e, d, level)

    return all(e.valid for e in journal.entries)


def sanity_check(journal: Journal, backup_dir: str | Path) -> bool:
    """Validation only; reports every problem as an error."""
    return validate_entries(journal, backup_dir, level=logging.ERROR)


def _remove_installed(entry: LogEntry, result: UninstallResult) -> None:
    what = "file" if entry.kind == "installed_file" else "symlink"
    try:
        os.unlink(entry.path)
    except OSError as e:
        msg = f"Unable to remove installed {what} '{entry.path}' ({e.strerror})."
        logger.warning("%s", msg)
        result.failures.append(msg)
        return
    result.removed.append(entry.path)


def _restore_symlink(entry: LogEntry, result: UninstallResult, all_valid: bool) -> None:
    assert entry.target is not None
    try:
        os.symlink(entry.target, entry.path)
    except OSError as e:
        msg = f"Unable to restore symbolic link {entry.path} -> {entry.target} ({e.strerror})."
        # Expected noise once validation has already reported problems.
        logger.log(logging.WARNING if all_valid else logging.INFO, "%s", msg)
        result.failures.append(msg)
        return
    result.restored.append(entry.path)
    try:
        os.lchown(entry.path, entry.uid, entry.gid)
    except OSError as e:
        msg = (
            f"Unable to restore owner ({entry.uid}) and group ({entry.gid}) for symbolic "
            f"link '{entry.path}' ({e.strerror})."
        )
        logger.warning("%s", msg)
        result.failures.append(msg)


def _restore_file(entry: LogEntry, backup_dir: Path, result: UninstallResult) -> None:
    assert entry.slot is not None and entry.mode is not None
    saved = backup_slot_path(backup_dir, entry.slot)
    try:
        move_file(saved, entry.path)
    except OSError as e:
        msg = f"Unable to restore file '{entry.path}' ({e.strerror})."
        logger.warning("%s", msg)
        result.failures.append(msg)
        return
    result.restored.append(entry.path)
    try:
        os.chown(entry.path, entry.uid, entry.gid)
    except OSError as e:
        msg = (
            f"Unable to restore owner ({entry.uid}) and group ({entry.gid}) for file "
            f"'{entry.path}' ({e.strerror})."
        )
        logger.warning("%s", msg)
        result.failures.append(msg)
        return
    try:
        os.chmod(entry.path, stat.S_IMODE(entry.mode))
    except OSError as e:
        msg = f"Unable to restore permissions {stat.S_IMODE(entry.mode):04o} for file '{entry.path}' ({e.strerror})."
        logger.warning("%s", msg)
        result.failures.append(msg)


def run_uninstall(journal: Journal, backup_dir: str | Path, *, trusted: bool = True) -> UninstallResult:
    """Validate, then reverse the installation described by ``journal``.

    All removals happen before any restoration, so a path vacated by an
    installed file or link is free when a backed up file is moved back.
    """

    d = Path(backup_dir)
    all_valid = validate_entries(journal, d)
    if not all_valid or not trusted:
        logger.warning("%s", EXISTING_INSTALLATION_ALTERED)

    result = UninstallResult(ok=True, best_effort=not (all_valid and trusted))

    logger.info("Uninstalling %s (%s)", journal.description, journal.version)

    for e in journal.entries:
        if e.valid and e.kind in ("installed_file", "installed_symlink"):
            _remove_installed(e, result)

    for e in journal.entries:
        if not e.valid:
            continue
        if e.kind == "backed_up_symlink":
            _restore_symlink(e, result, all_valid)
        elif e.kind == "backed_up_file":
            _restore_file(e, d, result)

    try:
        remove_directory(d)
    except OSError as e:
        logger.warning("Unable to remove backup directory %s (%s).", d, e)

    result.ok = not result.failures and not result.best_effort
    logger.info(
        "Uninstall done: removed=%d restored=%d failures=%d best_effort=%s",
        len(result.removed),
        len(result.restored),
        len(result.failures),
        result.best_effort,
    )
    return result


def do_uninstall(backup_dir: str | Path) -> UninstallResult:
    """Load the journal in ``backup_dir`` and reverse it.

    Raises JournalError if there is no usable journal at all. Changed
    permission bits are reported and the uninstall continues best-effort.
    """

    d = Path(backup_dir)
    if not d.exists():
        raise JournalError("No driver backed up.")

    trusted = True
    try:
        journal = load_journal(d)
    except JournalTamperError as e:
        logger.warning("%s  Continuing with a best-effort uninstall.", e)
        trusted = False
        journal = load_journal(d, check_permissions=False)

    return run_uninstall(journal, d, trusted=trusted)


def uninstall_existing_driver(backup_dir: str | Path) -> Optional[UninstallResult]:
    """Uninstall whatever driver the journal describes; None if nothing is installed."""

    installed = installed_driver_version_and_description(backup_dir)
    if installed is None:
        logger.info("There is no driver currently installed.")
        return None

    version, descr = installed
    try:
        result = do_uninstall(backup_dir)
    except JournalError as e:
        logger.error("Uninstallation failed: %s", e)
        raise

    logger.info("Uninstallation of existing driver: %s (%s) is complete.", descr, version)
    return result


def report_driver_information(backup_dir: str | Path) -> Optional[str]:
    installed = installed_driver_version_and_description(backup_dir)
    if installed is None:
        logger.info("There is no driver currently installed.")
        return None
    version, descr = installed
    msg = f"The currently installed driver is: '{descr}' (version: {version})."
    logger.info("%s", msg)
    return msg


def sanity(backup_dir: str | Path) -> bool:
    """Check that a previous installation is still intact."""

    installed = installed_driver_version_and_description(backup_dir)
    if installed is None:
        logger.error(
            "Unable to find any installed driver.  The sanity check feature is only "
            "intended to be used with an existing driver installation."
        )
        return False

    version, descr = installed
    logger.info(
        "The currently installed driver is: '%s' (version: %s).  Checking that all "
        "installed files still exist.",
        descr,
        version,
    )

    journal = load_journal(backup_dir)
    if not sanity_check(journal, backup_dir):
        logger.error(
            "The '%s' installation has been altered since it was originally installed.  "
            "It is recommended that you reinstall.",
            descr,
        )
        return False

    logger.info("'%s' (version: %s) appears to be installed correctly.", descr, version)
    return True
