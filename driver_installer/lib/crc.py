from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

# x^32 + x^26 + x^23 + x^22 + x^16 + x^12 + x^11 + x^10 + x^8 + x^7 +
# x^5 + x^4 + x^2 + x + 1, processed MSB first (the "cksum" table layout).
CRC_POLYNOMIAL = 0x04C11DB7
CRC_SEED = 0xFFFFFFFF

_MASK = 0xFFFFFFFF
_CHUNK_SIZE = 1 << 20

_table: Optional[List[int]] = None


def _crc_table() -> List[int]:
    global _table
    if _table is None:
        table = []
        for i in range(256):
            ans = i << 24
            for _ in range(8):
                if ans & 0x80000000:
                    ans = ((ans << 1) ^ CRC_POLYNOMIAL) & _MASK
                else:
                    ans = (ans << 1) & _MASK
            table.append(ans)
        _table = table
    return _table


def crc32_update(crc: int, data: bytes) -> int:
    """Fold ``data`` into a running checksum started from CRC_SEED."""

    table = _crc_table()
    for b in data:
        crc = table[b ^ (crc >> 24)] ^ ((crc << 8) & _MASK)
    return crc


def crc32(data: bytes) -> int:
    """Checksum of a whole buffer.

    Empty input yields 0 rather than the seed, so an empty file can be told
    apart from any checksum produced by reading actual bytes.
    """

    if not data:
        return 0
    return crc32_update(CRC_SEED, data)


def crc32_chunks(chunks: Iterable[bytes]) -> int:
    crc = CRC_SEED
    seen = False
    for chunk in chunks:
        if chunk:
            seen = True
            crc = crc32_update(crc, chunk)
    return crc if seen else 0


def crc32_file(path: str | Path) -> int:
    """Checksum of a file's contents. Raises OSError if it cannot be read."""

    def _chunks():
        with open(path, "rb") as f:
            while True:
                chunk = f.read(_CHUNK_SIZE)
                if not chunk:
                    return
                yield chunk

    return crc32_chunks(_chunks())
