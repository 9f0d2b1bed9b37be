from __future__ import annotations

import pytest

from driver_installer.backup_log import (
    DriverVersion,
    Journal,
    JournalError,
    LogEntry,
    find_installed_file,
    parse_driver_version,
    parse_journal,
)


SAMPLE = (
    "1.0-4496\n"
    "Test Graphics Driver\n"
    "100: /usr/lib/libGL.so.1.2\n"
    "3735928559 100644 0 0\n"
    "2: /usr/lib/libGL.so.1\n"
    "libGL.so.1.2\n"
    "120777 0 0\n"
    "1: /usr/lib/libGL.so.1.0.4496\n"
    "12345\n"
    "0: /usr/lib/libGL.so\n"
    "libGL.so.1.0.4496\n"
)


def test_parse_every_record_form() -> None:
    j = parse_journal(SAMPLE)

    assert j.version == "1.0-4496"
    assert j.description == "Test Graphics Driver"
    assert [e.kind for e in j.entries] == [
        "backed_up_file",
        "backed_up_symlink",
        "installed_file",
        "installed_symlink",
    ]

    bf, bs, inf, ins = j.entries
    assert (bf.slot, bf.path, bf.checksum, bf.mode, bf.uid, bf.gid) == (
        100,
        "/usr/lib/libGL.so.1.2",
        3735928559,
        0o100644,
        0,
        0,
    )
    assert (bs.target, bs.mode) == ("libGL.so.1.2", 0o120777)
    assert (inf.path, inf.checksum) == ("/usr/lib/libGL.so.1.0.4496", 12345)
    assert (ins.path, ins.target) == ("/usr/lib/libGL.so", "libGL.so.1.0.4496")
    assert all(e.valid for e in j.entries)


def test_render_is_the_on_disk_layout() -> None:
    j = parse_journal(SAMPLE)
    assert j.render() == SAMPLE


def test_entry_render_layouts() -> None:
    assert LogEntry.installed_file("/a", 7).render() == "1: /a\n7\n"
    assert LogEntry.installed_symlink("/b", "t").render() == "0: /b\nt\n"
    assert LogEntry.backed_up_symlink("/c", "t", 0o120777, 1, 2).render() == "2: /c\nt\n120777 1 2\n"
    assert LogEntry.backed_up_file("/d", 101, 9, 0o644, 3, 4).render() == "101: /d\n9 0644 3 4\n"


def test_header_only_journal_has_no_entries() -> None:
    j = parse_journal("1.0-1\nDriver\n")
    assert j.entries == []


def test_blank_lines_and_carriage_returns_are_tolerated() -> None:
    j = parse_journal("1.0-1\r\nDriver\n\n1: /x\n\n5\n")
    assert len(j.entries) == 1
    assert j.entries[0].checksum == 5


@pytest.mark.parametrize(
    "body, line",
    [
        ("abc: /x\n5\n", 3),
        ("1 /x\n5\n", 3),
        ("1: /x\n", 3),
        ("1: /x\nnot-a-crc\n", 4),
        ("2: /x\ntarget\n", 3),
        ("2: /x\ntarget\n0777 root 0\n", 5),
        ("2: /x\ntarget\n0789 0 0\n", 5),
        ("100: /x\n5 0644 0\n", 4),
        ("50: /x\n5 0644 0 0\n", 3),
        ("1: /x\n99999999999\n", 4),
    ],
)
def test_malformed_records_abort_the_whole_parse(body: str, line: int) -> None:
    text = "1.0-1\nDriver\n1: /ok\n1\n" + body
    with pytest.raises(JournalError, match=f"line {line + 2}"):
        parse_journal(text)


def test_missing_header_is_rejected() -> None:
    with pytest.raises(JournalError, match="header"):
        parse_journal("1.0-1\n")


def test_backup_slots_must_increase() -> None:
    text = "1.0-1\nDriver\n101: /a\n1 0644 0 0\n101: /b\n1 0644 0 0\n"
    with pytest.raises(JournalError, match="does not follow"):
        parse_journal(text)


def test_line_breaks_in_paths_cannot_be_logged() -> None:
    with pytest.raises(ValueError):
        LogEntry.installed_symlink("/a\nb", "t").render()


def test_slot_below_base_is_rejected() -> None:
    with pytest.raises(ValueError):
        LogEntry.backed_up_file("/a", 5, 0, 0o644, 0, 0)


def test_driver_version_parsing() -> None:
    assert parse_driver_version("1.0-4496") == DriverVersion(1, 0, 4496)
    assert parse_driver_version("304.88.1") == DriverVersion(304, 88, 1)
    assert str(DriverVersion(1, 0, 4496)) == "1.0-4496"
    assert parse_driver_version("unknown") is None


def test_find_installed_file() -> None:
    j = parse_journal(SAMPLE)
    assert find_installed_file(j, "/usr/lib/libGL.so.1.0.4496")
    assert not find_installed_file(j, "/usr/lib/libGL.so")
    assert not find_installed_file(Journal("1", "d"), "/x")
