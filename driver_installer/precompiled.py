"""Precompiled kernel interface/module packages.

Container layout (every integer is a little-endian uint32, every string
and blob is ``<uint32 length><bytes>``):

    "\\aNVIDIA\\a"  format-version  version  description  target-kernel
    file-count
    repeated file-count times:
        "FILE"  seq  kind  attributes
        name  linked-module-name  core-object-name  target-directory
        crc  data  crc  linked-module-crc  signature  seq  "END."

The checksum and sequence number are each written twice; a reader rejects
the container when the copies disagree.
"""

from __future__ import annotations

import logging
import mmap
import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .lib.crc import crc32

logger = logging.getLogger(__name__)


PRECOMPILED_MAGIC = b"\aNVIDIA\a"
PRECOMPILED_PKG_VERSION = 1

FILE_MARKER = b"FILE"
END_MARKER = b"END."

FILE_KIND_INTERFACE = 0
FILE_KIND_MODULE = 1
FILE_KIND_NAMES = {FILE_KIND_INTERFACE: "interface", FILE_KIND_MODULE: "module"}

ATTR_DETACHED_SIGNATURE = 1 << 0
ATTR_LINKED_MODULE_CRC = 1 << 1
ATTR_EMBEDDED_SIGNATURE = 1 << 2
_KNOWN_ATTRS = ATTR_DETACHED_SIGNATURE | ATTR_LINKED_MODULE_CRC | ATTR_EMBEDDED_SIGNATURE

# magic + format version + three string lengths + file count
HEADER_MIN_LENGTH = 8 + 4 + 3 * 4 + 4
# markers, seq x2, kind, attrs, four string lengths, crc x2, data length,
# linked crc, signature length
FILE_RECORD_MIN_LENGTH = 4 + 4 + 4 + 4 + 4 * 4 + 4 + 4 + 4 + 4 + 4 + 4 + 4

_U32 = struct.Struct("<I")
_U32_MAX = 0xFFFFFFFF
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class ContainerFormatError(ValueError):
    pass


def _check_u32(value: int, what: str) -> None:
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"{what} {value} does not fit in an unsigned 32-bit field")


class ByteCursor:
    """Forward-only reader over a buffer that refuses to read past its end."""

    def __init__(self, buf, source: str = "<buffer>") -> None:
        self._view = memoryview(buf)
        self.source = source
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self._view) - self.offset

    def error(self, msg: str) -> ContainerFormatError:
        return ContainerFormatError(f"Invalid file '{self.source}' ({msg}).")

    def read_bytes(self, n: int, what: str) -> bytes:
        if n < 0 or n > self.remaining:
            raise self.error(
                f"bad {what} length {n} at offset {self.offset}; {self.remaining} bytes remain"
            )
        out = bytes(self._view[self.offset : self.offset + n])
        self.offset += n
        return out

    def read_u32(self, what: str) -> int:
        return _U32.unpack(self.read_bytes(4, what))[0]

    def read_blob(self, what: str) -> bytes:
        return self.read_bytes(self.read_u32(what), what)

    def read_string(self, what: str) -> str:
        return self.read_blob(what).decode(_ENCODING, _ERRORS)

    def expect(self, marker: bytes, what: str) -> None:
        got = self.read_bytes(len(marker), what)
        if got != marker:
            raise self.error(f"expected {what} {marker!r}, found {got!r}")

    def release(self) -> None:
        self._view.release()


class _ByteWriter:
    def __init__(self, size: int) -> None:
        self.buf = bytearray(size)
        self.offset = 0

    def write_bytes(self, data: bytes) -> None:
        end = self.offset + len(data)
        self.buf[self.offset : end] = data
        self.offset = end

    def write_u32(self, val: int) -> None:
        _U32.pack_into(self.buf, self.offset, val)
        self.offset += 4

    def write_blob(self, data: bytes) -> None:
        self.write_u32(len(data))
        self.write_bytes(data)

    def write_string(self, text: str) -> None:
        self.write_blob(text.encode(_ENCODING, _ERRORS))


def _encoded(text: str) -> bytes:
    return text.encode(_ENCODING, _ERRORS)


@dataclass
class FileRecord:
    kind: int
    name: str
    data: bytes
    attributes: int = 0
    linked_module_name: str = ""
    core_object_name: str = ""
    target_directory: str = ""
    checksum: Optional[int] = None
    linked_module_checksum: int = 0
    signature: bytes = b""

    def __post_init__(self) -> None:
        if self.kind not in FILE_KIND_NAMES:
            raise ValueError(f"Unknown file kind {self.kind}")
        if self.checksum is None:
            self.checksum = crc32(self.data)
        _check_u32(self.attributes, "Attributes")
        _check_u32(self.checksum, "Checksum")
        _check_u32(self.linked_module_checksum, "Linked module checksum")

    @property
    def kind_name(self) -> str:
        return FILE_KIND_NAMES[self.kind]

    def has_attribute(self, attr: int) -> bool:
        return bool(self.attributes & attr)

    def is_intact(self) -> bool:
        return crc32(self.data) == self.checksum

    def encoded_size(self) -> int:
        return (
            FILE_RECORD_MIN_LENGTH
            + len(_encoded(self.name))
            + len(_encoded(self.linked_module_name))
            + len(_encoded(self.core_object_name))
            + len(_encoded(self.target_directory))
            + len(self.data)
            + len(self.packed_signature)
        )

    @property
    def packed_signature(self) -> bytes:
        return self.signature if self.has_attribute(ATTR_DETACHED_SIGNATURE) else b""

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        kind: int = FILE_KIND_INTERFACE,
        name: Optional[str] = None,
        signature_path: Optional[str | Path] = None,
        linked_module_name: str = "",
        linked_module_checksum: Optional[int] = None,
        core_object_name: str = "",
        target_directory: str = "",
    ) -> "FileRecord":
        """Build a record from a file on disk, plus an optional detached signature."""

        p = Path(path)
        data = p.read_bytes()
        attributes = 0
        signature = b""
        if signature_path is not None:
            signature = Path(signature_path).read_bytes()
            attributes |= ATTR_DETACHED_SIGNATURE
        if linked_module_checksum is not None:
            attributes |= ATTR_LINKED_MODULE_CRC
        if kind == FILE_KIND_MODULE and (core_object_name or target_directory):
            raise ValueError("Module records carry no core object name or target directory")

        return cls(
            kind=kind,
            name=name or p.name,
            data=data,
            attributes=attributes,
            linked_module_name=linked_module_name,
            core_object_name=core_object_name,
            target_directory=target_directory,
            linked_module_checksum=linked_module_checksum or 0,
            signature=signature,
        )


@dataclass
class PackageContainer:
    version: str
    description: str
    target_kernel: str
    files: List[FileRecord] = field(default_factory=list)
    format_version: int = PRECOMPILED_PKG_VERSION

    def __post_init__(self) -> None:
        _check_u32(self.format_version, "Format version")

    def append(self, record: FileRecord) -> None:
        self.files.append(record)

    def find_file(self, name: str) -> Optional[FileRecord]:
        for f in self.files:
            if f.name == name:
                return f
        return None

    def missing_files(self, names: Iterable[str]) -> List[str]:
        present = {f.name for f in self.files}
        return [n for n in names if n not in present]

    def encoded_size(self) -> int:
        return (
            HEADER_MIN_LENGTH
            + len(_encoded(self.version))
            + len(_encoded(self.description))
            + len(_encoded(self.target_kernel))
            + sum(f.encoded_size() for f in self.files)
        )


def pack_container(container: PackageContainer) -> bytes:
    total = container.encoded_size()
    w = _ByteWriter(total)

    w.write_bytes(PRECOMPILED_MAGIC)
    w.write_u32(container.format_version)
    w.write_string(container.version)
    w.write_string(container.description)
    w.write_string(container.target_kernel)
    w.write_u32(len(container.files))

    for seq, f in enumerate(container.files):
        assert f.checksum is not None
        w.write_bytes(FILE_MARKER)
        w.write_u32(seq)
        w.write_u32(f.kind)
        w.write_u32(f.attributes)
        w.write_string(f.name)
        w.write_string(f.linked_module_name)
        w.write_string(f.core_object_name)
        w.write_string(f.target_directory)
        w.write_u32(f.checksum)
        w.write_blob(f.data)
        w.write_u32(f.checksum)
        w.write_u32(f.linked_module_checksum)
        w.write_blob(f.packed_signature)
        w.write_u32(seq)
        w.write_bytes(END_MARKER)

    if w.offset != total:
        raise RuntimeError(f"Encoded {w.offset} bytes, expected {total}")
    return bytes(w.buf)


def write_container(container: PackageContainer, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(pack_container(container))
    os.chmod(p, 0o644)
    logger.info("Wrote precompiled package %s (%d files)", p, len(container.files))
    return p


def _decode_file(cur: ByteCursor, index: int) -> FileRecord:
    cur.expect(FILE_MARKER, "file marker")
    seq = cur.read_u32("file sequence number")
    if seq != index:
        raise cur.error(f"file sequence number {seq} where {index} was expected")

    kind = cur.read_u32("file kind")
    if kind not in FILE_KIND_NAMES:
        raise cur.error(f"unknown file kind {kind} in file {index}")
    attributes = cur.read_u32("file attributes")
    if attributes & ~_KNOWN_ATTRS:
        logger.debug("%s: file %d has unknown attribute bits %#x", cur.source, index, attributes)

    name = cur.read_string("file name")
    linked_module_name = cur.read_string("linked module name")
    core_object_name = cur.read_string("core object name")
    target_directory = cur.read_string("target directory")

    checksum = cur.read_u32("file checksum")
    data = cur.read_blob("file data")
    checksum_copy = cur.read_u32("file checksum")
    if checksum != checksum_copy:
        raise cur.error(f"checksum mismatch for '{name}' ({checksum} != {checksum_copy})")

    linked_module_checksum = cur.read_u32("linked module checksum")
    signature = cur.read_blob("detached signature")

    seq_copy = cur.read_u32("file sequence number")
    if seq_copy != seq:
        raise cur.error(f"sequence number mismatch for '{name}' ({seq} != {seq_copy})")
    cur.expect(END_MARKER, "end marker")

    record = FileRecord(
        kind=kind,
        name=name,
        data=data,
        attributes=attributes,
        linked_module_name=linked_module_name,
        core_object_name=core_object_name,
        target_directory=target_directory,
        checksum=checksum,
        linked_module_checksum=linked_module_checksum,
        signature=signature,
    )
    if not record.is_intact():
        logger.warning(
            "%s: embedded file '%s' has checksum %d, but %d is recorded.",
            cur.source,
            name,
            crc32(data),
            checksum,
        )
    return record


def unpack_container_bytes(
    buf,
    *,
    expected_version: Optional[str] = None,
    expected_kernel: Optional[str] = None,
    source: str = "<buffer>",
) -> Optional[PackageContainer]:
    """Decode a container.

    Returns None when the container is well formed but built for another
    driver version or kernel. Structural problems raise ContainerFormatError.
    Files whose data fails its checksum are kept; check ``is_intact()``.
    """

    if len(buf) < HEADER_MIN_LENGTH:
        raise ContainerFormatError(f"File '{source}' appears to be too short.")

    cur = ByteCursor(buf, source)
    try:
        if cur.read_bytes(len(PRECOMPILED_MAGIC), "magic") != PRECOMPILED_MAGIC:
            raise ContainerFormatError(f"File '{source}': unrecognized file format.")

        format_version = cur.read_u32("format version")
        if format_version != PRECOMPILED_PKG_VERSION:
            raise ContainerFormatError(
                f"File '{source}': unsupported package format version {format_version} "
                f"(expected {PRECOMPILED_PKG_VERSION})."
            )

        version = cur.read_string("version string")
        description = cur.read_string("description string")
        target_kernel = cur.read_string("kernel version string")

        if expected_version is not None and version != expected_version:
            logger.info(
                "%s: package version '%s' does not match '%s'.", source, version, expected_version
            )
            return None
        if expected_kernel is not None and target_kernel != expected_kernel:
            logger.info("%s: built for a different kernel ('%s').", source, target_kernel)
            return None

        count = cur.read_u32("file count")
        if count * FILE_RECORD_MIN_LENGTH > cur.remaining:
            raise cur.error(f"file count {count} does not fit in {cur.remaining} bytes")

        container = PackageContainer(
            version=version,
            description=description,
            target_kernel=target_kernel,
            format_version=format_version,
        )
        for i in range(count):
            container.append(_decode_file(cur, i))

        if cur.remaining:
            raise cur.error(f"{cur.remaining} unexpected trailing bytes")
    finally:
        cur.release()

    return container


def unpack_container(
    path: str | Path,
    *,
    expected_version: Optional[str] = None,
    expected_kernel: Optional[str] = None,
) -> Optional[PackageContainer]:
    """mmap and decode the container at ``path``. OSError propagates."""

    p = Path(path)
    with p.open("rb") as f:
        size = os.fstat(f.fileno()).st_size
        if size < HEADER_MIN_LENGTH:
            raise ContainerFormatError(f"File '{p}' appears to be too short.")
        with mmap.mmap(f.fileno(), size, access=mmap.ACCESS_READ) as mm:
            return unpack_container_bytes(
                mm,
                expected_version=expected_version,
                expected_kernel=expected_kernel,
                source=str(p),
            )


def extract_file(record: FileRecord, output_dir: str | Path, *, mode: int = 0o644) -> Path:
    """Write an embedded file under ``output_dir``; refuses corrupt data."""

    if not record.is_intact():
        raise ContainerFormatError(
            f"Refusing to extract '{record.name}': checksum {crc32(record.data)} does not "
            f"match recorded {record.checksum}."
        )
    name = Path(record.name).name
    if not name or name in {".", ".."} or name != record.name:
        raise ContainerFormatError(f"Refusing to extract file with unsafe name '{record.name}'.")

    out = Path(output_dir) / name
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(record.data)
    os.chmod(out, mode)
    logger.debug("Extracted %s (%d bytes)", out, len(record.data))
    return out


def read_proc_version(proc_mount_point: str | Path = "/proc") -> Optional[str]:
    """First line of ``<proc>/version``, the running kernel's identity string."""

    p = Path(proc_mount_point) / "version"
    try:
        text = p.read_text(encoding=_ENCODING, errors=_ERRORS)
    except OSError as e:
        logger.warning("Unable to open the file '%s' (%s).", p, e.strerror)
        return None
    return text.split("\n", 1)[0]


def find_precompiled_package(
    directory: str | Path,
    *,
    version: str,
    kernel: str,
    required_files: Iterable[str] = (),
) -> Optional[Tuple[Path, PackageContainer]]:
    """Search ``directory`` for a container usable on this system."""

    d = Path(directory)
    required = list(required_files)
    try:
        candidates = sorted(c for c in d.iterdir() if c.is_file())
    except OSError as e:
        logger.info("Unable to read precompiled package directory %s (%s).", d, e.strerror)
        return None

    for candidate in candidates:
        try:
            container = unpack_container(candidate, expected_version=version, expected_kernel=kernel)
        except (OSError, ContainerFormatError) as e:
            logger.info("Skipping %s: %s", candidate, e)
            continue
        if container is None:
            continue

        missing = container.missing_files(required)
        if missing:
            logger.info("Skipping %s: missing %s", candidate, ", ".join(missing))
            continue

        logger.info(
            "A precompiled package for kernel '%s' has been found here: %s.",
            container.description,
            candidate,
        )
        return candidate, container

    return None
