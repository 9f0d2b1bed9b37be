"""Backup log: the journal of every file an installation touched.

Layout of ``<backup_dir>/log``:

    <version string>
    <description string>
    <record>*

where each record is one of:

    1: <path>                       INSTALLED_FILE
    <crc>

    0: <path>                       INSTALLED_SYMLINK
    <target>

    2: <path>                       BACKED_UP_SYMLINK
    <target>
    <mode-octal> <uid> <gid>

    <slot>: <path>                  BACKED_UP_FILE (slot >= 100)
    <crc> <mode-octal> <uid> <gid>

A backed up file is stored as ``<backup_dir>/<slot>``.
"""

from __future__ import annotations

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, NamedTuple, Optional, Tuple

from .lib.crc import crc32_file
from .lib.files import make_private_directory, move_file, permission_bits, remove_directory

logger = logging.getLogger(__name__)


DEFAULT_BACKUP_DIR = "/var/lib/nvidia"
BACKUP_LOG_NAME = "log"

BACKUP_LOG_PERMS = stat.S_IRUSR | stat.S_IWUSR
BACKUP_DIRECTORY_PERMS = stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR

INSTALLED_SYMLINK = 0
INSTALLED_FILE = 1
BACKED_UP_SYMLINK = 2
BACKED_UP_FILE_BASE = 100

EntryKind = Literal["installed_file", "installed_symlink", "backed_up_symlink", "backed_up_file"]

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"

_FIRST_LINE_RE = re.compile(r"(\d+):\s*(.*)")
_CRC_RE = re.compile(r"(\d+)")
_MODE_UID_GID_RE = re.compile(r"([0-7]+) (\d+) (\d+)")
_CRC_MODE_UID_GID_RE = re.compile(r"(\d+) ([0-7]+) (\d+) (\d+)")
_VERSION_RE = re.compile(r"(\d+)\.(\d+)[.-](\d+)")


class JournalError(RuntimeError):
    pass


class JournalTamperError(JournalError):
    pass


class BackupError(RuntimeError):
    pass


class DriverVersion(NamedTuple):
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}-{self.patch}"


def parse_driver_version(text: str) -> Optional[DriverVersion]:
    """Parse ``MAJOR.MINOR-PATCH`` (or ``MAJOR.MINOR.PATCH``) from the start of ``text``."""
    m = _VERSION_RE.match(text.strip())
    if not m:
        return None
    return DriverVersion(int(m.group(1)), int(m.group(2)), int(m.group(3)))


@dataclass
class LogEntry:
    kind: EntryKind
    path: str
    target: Optional[str] = None
    checksum: Optional[int] = None
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    slot: Optional[int] = None
    # Set by validation; never written to the log.
    valid: bool = True
    problem: Optional[str] = None

    @classmethod
    def installed_file(cls, path: str, checksum: int) -> "LogEntry":
        return cls(kind="installed_file", path=path, checksum=checksum)

    @classmethod
    def installed_symlink(cls, path: str, target: str) -> "LogEntry":
        return cls(kind="installed_symlink", path=path, target=target)

    @classmethod
    def backed_up_symlink(cls, path: str, target: str, mode: int, uid: int, gid: int) -> "LogEntry":
        return cls(kind="backed_up_symlink", path=path, target=target, mode=mode, uid=uid, gid=gid)

    @classmethod
    def backed_up_file(
        cls, path: str, slot: int, checksum: int, mode: int, uid: int, gid: int
    ) -> "LogEntry":
        if slot < BACKED_UP_FILE_BASE:
            raise ValueError(f"Backup slot {slot} is below {BACKED_UP_FILE_BASE}")
        return cls(
            kind="backed_up_file",
            path=path,
            slot=slot,
            checksum=checksum,
            mode=mode,
            uid=uid,
            gid=gid,
        )

    @property
    def record_id(self) -> int:
        if self.kind == "installed_file":
            return INSTALLED_FILE
        if self.kind == "installed_symlink":
            return INSTALLED_SYMLINK
        if self.kind == "backed_up_symlink":
            return BACKED_UP_SYMLINK
        assert self.slot is not None
        return self.slot

    def render(self) -> str:
        for text in (self.path, self.target or ""):
            if "\n" in text or "\r" in text:
                raise ValueError(f"Cannot log a path or target containing a line break: {text!r}")
        lines = [f"{self.record_id}: {self.path}"]
        if self.kind == "installed_file":
            lines.append(f"{self.checksum}")
        elif self.kind == "installed_symlink":
            lines.append(f"{self.target}")
        elif self.kind == "backed_up_symlink":
            lines.append(f"{self.target}")
            lines.append(f"{self.mode:04o} {self.uid} {self.gid}")
        else:
            lines.append(f"{self.checksum} {self.mode:04o} {self.uid} {self.gid}")
        return "".join(ln + "\n" for ln in lines)


@dataclass
class Journal:
    version: str
    description: str
    entries: List[LogEntry] = field(default_factory=list)

    def by_path(self, kind: Optional[EntryKind] = None) -> Dict[str, List[LogEntry]]:
        index: Dict[str, List[LogEntry]] = {}
        for e in self.entries:
            if kind is None or e.kind == kind:
                index.setdefault(e.path, []).append(e)
        return index

    def max_slot(self) -> Optional[int]:
        slots = [e.slot for e in self.entries if e.slot is not None]
        return max(slots) if slots else None

    def render(self) -> str:
        return f"{self.version}\n{self.description}\n" + "".join(e.render() for e in self.entries)


def backup_log_path(backup_dir: str | Path) -> Path:
    return Path(backup_dir) / BACKUP_LOG_NAME


def backup_slot_path(backup_dir: str | Path, slot: int) -> Path:
    return Path(backup_dir) / str(slot)


def _split_lines(text: str) -> List[Tuple[int, str]]:
    # Lines end at \n or \r; blank lines between records carry no data.
    out: List[Tuple[int, str]] = []
    for n, ln in enumerate(re.split(r"\r\n|\r|\n", text), start=1):
        if ln:
            out.append((n, ln))
    return out


def parse_journal(text: str, *, source: str = "<journal>") -> Journal:
    """Parse a whole journal. Any malformed record aborts the parse."""

    lines = _split_lines(text)
    if len(lines) < 2:
        raise JournalError(f"Error while parsing '{source}': missing version/description header.")

    version = lines[0][1]
    description = lines[1][1]
    entries: List[LogEntry] = []

    pos = 2
    last_slot: Optional[int] = None

    def _next(first_line_no: int) -> Tuple[int, str]:
        nonlocal pos
        if pos >= len(lines):
            raise JournalError(
                f"Error while parsing line {first_line_no} of '{source}' (record is truncated)."
            )
        item = lines[pos]
        pos += 1
        return item

    def _bad(line_no: int, what: str) -> JournalError:
        return JournalError(f"Error while parsing line {line_no} of '{source}' ({what}).")

    while pos < len(lines):
        line_no, first = lines[pos]
        pos += 1

        m = _FIRST_LINE_RE.fullmatch(first)
        if not m or not m.group(2):
            raise _bad(line_no, "expected '<id>: <path>'")
        num = int(m.group(1))
        path = m.group(2)

        if num == INSTALLED_FILE:
            crc_no, ln = _next(line_no)
            cm = _CRC_RE.fullmatch(ln)
            if not cm or int(cm.group(1)) > 0xFFFFFFFF:
                raise _bad(crc_no, "bad checksum")
            entries.append(LogEntry.installed_file(path, int(cm.group(1))))

        elif num == INSTALLED_SYMLINK:
            _, target = _next(line_no)
            entries.append(LogEntry.installed_symlink(path, target))

        elif num == BACKED_UP_SYMLINK:
            _, target = _next(line_no)
            perm_no, ln = _next(line_no)
            mm = _MODE_UID_GID_RE.fullmatch(ln)
            if not mm:
                raise _bad(perm_no, "bad '<mode> <uid> <gid>'")
            entries.append(
                LogEntry.backed_up_symlink(
                    path, target, int(mm.group(1), 8), int(mm.group(2)), int(mm.group(3))
                )
            )

        elif num >= BACKED_UP_FILE_BASE:
            if last_slot is not None and num <= last_slot:
                raise _bad(line_no, f"backup slot {num} does not follow slot {last_slot}")
            last_slot = num
            perm_no, ln = _next(line_no)
            fm = _CRC_MODE_UID_GID_RE.fullmatch(ln)
            if not fm or int(fm.group(1)) > 0xFFFFFFFF:
                raise _bad(perm_no, "bad '<crc> <mode> <uid> <gid>'")
            entries.append(
                LogEntry.backed_up_file(
                    path,
                    num,
                    int(fm.group(1)),
                    int(fm.group(2), 8),
                    int(fm.group(3)),
                    int(fm.group(4)),
                )
            )

        else:
            raise _bad(line_no, f"unknown record id {num}")

    return Journal(version=version, description=description, entries=entries)


def _check_permissions(backup_dir: Path, log_path: Path) -> None:
    try:
        dir_perms = permission_bits(backup_dir)
    except OSError as e:
        raise JournalError(f"Unable to get properties of {backup_dir} ({e.strerror}).") from e
    if dir_perms != BACKUP_DIRECTORY_PERMS:
        raise JournalTamperError(
            f"The directory permissions of {backup_dir} have been changed since the "
            f"directory was created ({dir_perms:04o}, expected {BACKUP_DIRECTORY_PERMS:04o})."
        )

    try:
        log_perms = permission_bits(log_path)
    except OSError as e:
        raise JournalError(f"Failure getting file properties for {log_path} ({e.strerror}).") from e
    if log_perms != BACKUP_LOG_PERMS:
        raise JournalTamperError(
            f"The file permissions of {log_path} have been changed since the file was "
            f"written ({log_perms:04o}, expected {BACKUP_LOG_PERMS:04o})."
        )


def load_journal(backup_dir: str | Path, *, check_permissions: bool = True) -> Journal:
    """Load and parse the whole journal.

    With ``check_permissions`` the owner-only bits of the backup directory
    and the log are verified first; a mismatch raises JournalTamperError.
    """

    d = Path(backup_dir)
    log_path = backup_log_path(d)

    if check_permissions:
        _check_permissions(d, log_path)

    try:
        raw = log_path.read_bytes()
    except OSError as e:
        raise JournalError(f"Failure opening {log_path} ({e.strerror}).") from e

    journal = parse_journal(raw.decode(_ENCODING, _ERRORS), source=str(log_path))
    logger.info("Parsed %s: %d entries", log_path, len(journal.entries))
    return journal


def installed_driver_version_and_description(
    backup_dir: str | Path,
) -> Optional[Tuple[DriverVersion, str]]:
    """Version and description of the installed driver, from the log header only."""

    log_path = backup_log_path(backup_dir)
    try:
        raw = log_path.read_bytes()
    except OSError:
        return None

    lines = _split_lines(raw.decode(_ENCODING, _ERRORS))
    if len(lines) < 2:
        return None
    version = parse_driver_version(lines[0][1])
    if version is None:
        return None
    return version, lines[1][1]


def find_installed_file(journal: Journal, path: str) -> bool:
    return any(e.kind == "installed_file" and e.path == path for e in journal.entries)


@dataclass
class BackupSession:
    """Writer side of the journal for one installation run.

    ``next_slot`` is the next backup slot to hand out; it is only ever
    advanced, and a slot whose file already exists in the store is skipped.
    """

    backup_dir: Path
    next_slot: int = BACKED_UP_FILE_BASE

    @property
    def log_path(self) -> Path:
        return backup_log_path(self.backup_dir)

    @classmethod
    def resume(cls, backup_dir: str | Path) -> "BackupSession":
        """Continue appending to an existing journal."""

        d = Path(backup_dir)
        journal = load_journal(d, check_permissions=False)
        next_slot = BACKED_UP_FILE_BASE
        highest = journal.max_slot()
        if highest is not None:
            next_slot = max(next_slot, highest + 1)
        for child in d.iterdir():
            if child.name.isdigit():
                next_slot = max(next_slot, int(child.name) + 1)
        return cls(backup_dir=d, next_slot=next_slot)

    def init_backup(self, version: str, description: str) -> None:
        """Start a fresh journal, discarding any previous backup directory.

        Both header values must be non-empty single lines; anything else
        would produce a log that cannot be read back.
        """

        for what, text in (("version", version), ("description", description)):
            if not text.strip():
                raise ValueError(f"The driver {what} written to the backup log cannot be empty")
            if "\n" in text or "\r" in text:
                raise ValueError(f"The driver {what} cannot contain a line break: {text!r}")

        d = Path(self.backup_dir)
        try:
            if d.exists():
                remove_directory(d)
            make_private_directory(d, BACKUP_DIRECTORY_PERMS)
            with self.log_path.open("a", encoding=_ENCODING, errors=_ERRORS) as f:
                f.write(f"{version}\n{description}\n")
            os.chmod(self.log_path, BACKUP_LOG_PERMS)
        except OSError as e:
            raise JournalError(f"Unable to create backup log file '{self.log_path}' ({e.strerror}).") from e

        self.next_slot = BACKED_UP_FILE_BASE
        logger.info("Initialized backup log %s for %s (%s)", self.log_path, description, version)

    def append_entry(self, entry: LogEntry) -> None:
        try:
            with self.log_path.open("a", encoding=_ENCODING, errors=_ERRORS) as f:
                f.write(entry.render())
        except OSError as e:
            raise JournalError(f"Unable to write backup log file '{self.log_path}' ({e.strerror}).") from e
        logger.debug("Logged %s %s", entry.kind, entry.path)

    def log_install_file(self, path: str) -> LogEntry:
        try:
            crc = crc32_file(path)
        except OSError as e:
            raise JournalError(f"Unable to compute CRC for file '{path}' ({e.strerror}).") from e
        entry = LogEntry.installed_file(path, crc)
        self.append_entry(entry)
        return entry

    def log_create_symlink(self, path: str, target: str) -> LogEntry:
        entry = LogEntry.installed_symlink(path, target)
        self.append_entry(entry)
        return entry

    def _allocate_slot(self) -> int:
        slot = self.next_slot
        while backup_slot_path(self.backup_dir, slot).exists():
            slot += 1
        self.next_slot = slot + 1
        return slot

    def do_backup(self, path: str) -> Optional[LogEntry]:
        """Move ``path`` out of the way before it is overwritten.

        Returns the logged entry, or None if there was nothing at ``path``.
        """

        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackupError(f"Unable to determine properties for file '{path}' ({e.strerror}).") from e

        if stat.S_ISREG(st.st_mode):
            try:
                crc = crc32_file(path)
            except OSError as e:
                raise BackupError(f"Unable to compute CRC for file '{path}' ({e.strerror}).") from e
            slot = self._allocate_slot()
            try:
                move_file(path, backup_slot_path(self.backup_dir, slot))
            except OSError as e:
                raise BackupError(f"Unable to backup file '{path}' ({e.strerror}).") from e
            entry = LogEntry.backed_up_file(path, slot, crc, st.st_mode, st.st_uid, st.st_gid)

        elif stat.S_ISLNK(st.st_mode):
            try:
                target = os.readlink(path)
                os.unlink(path)
            except OSError as e:
                raise BackupError(f"Unable to remove symbolic link '{path}' ({e.strerror}).") from e
            entry = LogEntry.backed_up_symlink(path, target, st.st_mode, st.st_uid, st.st_gid)

        elif stat.S_ISDIR(st.st_mode):
            raise BackupError(f"Unable to backup directory '{path}'.")

        else:
            raise BackupError(
                f"Unable to backup file '{path}' (don't know how to deal with file type "
                f"{stat.S_IFMT(st.st_mode):o})."
            )

        self.append_entry(entry)
        return entry
