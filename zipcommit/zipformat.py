from __future__ import annotations

import struct
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional, Tuple

from .constants import (
    LOCAL_FILE_HEADER_SIG,
    DATA_DESCRIPTOR_SIG,
    CENTRAL_DIR_HEADER_SIG,
    END_OF_CENTRAL_DIR_SIG,
    ZIP64_END_OF_CENTRAL_DIR_SIG,
    ZIP64_EOCD_LOCATOR_SIG,
    FLAG_UTF8,
    MAX_UINT16,
    MAX_UINT32,
    MAX_COMMENT_LEN,
)
from .errors import ArchiveFormatError


# Local file header (fixed 30 bytes)
#  sig u32, version_needed u16, flags u16, method u16, dos_time u16, dos_date u16,
#  crc32 u32, compressed_size u32, uncompressed_size u32, name_len u16, extra_len u16
_LOCAL_HDR_STRUCT = struct.Struct("<IHHHHHIIIHH")
# Data descriptor with its optional signature: sig u32, crc32 u32, csize u32, usize u32
_DATA_DESC_STRUCT = struct.Struct("<IIII")
# Central directory file header (fixed 46 bytes)
#  sig u32, version_made_by u16, version_needed u16, flags u16, method u16,
#  dos_time u16, dos_date u16, crc32 u32, csize u32, usize u32, name_len u16,
#  extra_len u16, comment_len u16, disk_start u16, internal_attr u16,
#  external_attr u32, local_header_offset u32
_CENTRAL_HDR_STRUCT = struct.Struct("<IHHHHHHIIIHHHHHII")
# End of central directory (fixed 22 bytes)
#  sig u32, disk u16, cd_disk u16, entries_on_disk u16, entries_total u16,
#  cd_size u32, cd_offset u32, comment_len u16
_EOCD_STRUCT = struct.Struct("<IHHHHIIH")
_ZIP64_LOCATOR_SIZE = 20

_EXTRA_HDR_STRUCT = struct.Struct("<HH")


@dataclass
class CentralRecord:
    """One central directory file header, as read from or written to an archive."""

    name: str
    flags: int
    method: int
    dos_time: int
    dos_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    local_header_offset: int = 0
    version_made_by: int = 0
    version_needed: int = 0
    internal_attr: int = 0
    external_attr: int = 0
    extra: bytes = b""
    comment: bytes = b""


@dataclass
class DirectoryInfo:
    records: List[CentralRecord] = field(default_factory=list)
    comment: bytes = b""


def read_exact(f: BinaryIO, n: int) -> bytes:
    b = f.read(n)
    if len(b) != n:
        raise ArchiveFormatError("Unexpected end of archive")
    return b


# -------- Timestamps --------

def dos_datetime(timestamp: Optional[float] = None) -> Tuple[int, int]:
    """Encode a POSIX timestamp as (dos_time, dos_date); DOS dates start in 1980."""
    t = time.localtime(time.time() if timestamp is None else timestamp)
    year = max(1980, min(2107, t.tm_year))
    dos_date = ((year - 1980) << 9) | (t.tm_mon << 5) | t.tm_mday
    dos_time = (t.tm_hour << 11) | (t.tm_min << 5) | (t.tm_sec // 2)
    return dos_time, dos_date


def date_time_tuple(dos_time: int, dos_date: int) -> Tuple[int, int, int, int, int, int]:
    return (
        (dos_date >> 9) + 1980,
        (dos_date >> 5) & 0x0F,
        dos_date & 0x1F,
        dos_time >> 11,
        (dos_time >> 5) & 0x3F,
        (dos_time & 0x1F) * 2,
    )


# -------- Extra fields --------

def parse_extra(extra: bytes) -> Dict[int, bytes]:
    fields: Dict[int, bytes] = {}
    pos = 0
    while pos + _EXTRA_HDR_STRUCT.size <= len(extra):
        header_id, size = _EXTRA_HDR_STRUCT.unpack_from(extra, pos)
        pos += _EXTRA_HDR_STRUCT.size
        if pos + size > len(extra):
            raise ArchiveFormatError("Extra field overruns its header")
        fields[header_id] = extra[pos : pos + size]
        pos += size
    return fields


def build_extra(fields: Dict[int, bytes]) -> bytes:
    out = bytearray()
    for header_id, data in fields.items():
        if len(data) > MAX_UINT16:
            raise ArchiveFormatError("Extra field too large")
        out += _EXTRA_HDR_STRUCT.pack(header_id, len(data)) + data
    return bytes(out)


def _decode_name(raw: bytes, flags: int) -> str:
    if flags & FLAG_UTF8:
        return raw.decode("utf-8")
    # Legacy archives use CP437 for names without the UTF-8 flag
    return raw.decode("cp437")


# -------- Writing --------

def write_local_header(f: BinaryIO, rec: CentralRecord, *, deferred_sizes: bool) -> int:
    """Write a local file header; return the number of bytes written."""
    name = rec.name.encode("utf-8")
    if deferred_sizes:
        crc, csize, usize = 0, 0, 0
    else:
        crc, csize, usize = rec.crc32, rec.compressed_size, rec.uncompressed_size
    hdr = _LOCAL_HDR_STRUCT.pack(
        LOCAL_FILE_HEADER_SIG,
        rec.version_needed,
        rec.flags,
        rec.method,
        rec.dos_time,
        rec.dos_date,
        crc,
        csize,
        usize,
        len(name),
        len(rec.extra),
    )
    f.write(hdr)
    f.write(name)
    f.write(rec.extra)
    return len(hdr) + len(name) + len(rec.extra)


def write_data_descriptor(f: BinaryIO, rec: CentralRecord) -> int:
    raw = _DATA_DESC_STRUCT.pack(DATA_DESCRIPTOR_SIG, rec.crc32, rec.compressed_size, rec.uncompressed_size)
    f.write(raw)
    return len(raw)


def write_central_directory(f: BinaryIO, records: List[CentralRecord], offset: int, comment: bytes = b"") -> int:
    """Write the central directory starting at ``offset`` plus the end record."""
    if len(records) >= MAX_UINT16:
        raise ArchiveFormatError("Too many entries for a non-ZIP64 archive")
    if len(comment) > MAX_COMMENT_LEN:
        raise ArchiveFormatError("Archive comment too long")
    cd_size = 0
    for rec in records:
        name = rec.name.encode("utf-8")
        hdr = _CENTRAL_HDR_STRUCT.pack(
            CENTRAL_DIR_HEADER_SIG,
            rec.version_made_by,
            rec.version_needed,
            rec.flags,
            rec.method,
            rec.dos_time,
            rec.dos_date,
            rec.crc32,
            rec.compressed_size,
            rec.uncompressed_size,
            len(name),
            len(rec.extra),
            len(rec.comment),
            0,
            rec.internal_attr,
            rec.external_attr,
            rec.local_header_offset,
        )
        f.write(hdr)
        f.write(name)
        f.write(rec.extra)
        f.write(rec.comment)
        cd_size += len(hdr) + len(name) + len(rec.extra) + len(rec.comment)
    if offset > MAX_UINT32 or cd_size > MAX_UINT32:
        raise ArchiveFormatError("Archive too large for a non-ZIP64 archive")
    eocd = _EOCD_STRUCT.pack(END_OF_CENTRAL_DIR_SIG, 0, 0, len(records), len(records), cd_size, offset, len(comment))
    f.write(eocd)
    f.write(comment)
    return cd_size + len(eocd) + len(comment)


# -------- Reading --------

def _locate_eocd(f: BinaryIO, file_size: int) -> Tuple[int, bytes]:
    """Find the end record by scanning backwards over the maximal comment window."""
    window = min(file_size, _EOCD_STRUCT.size + MAX_COMMENT_LEN)
    f.seek(file_size - window)
    tail = f.read(window)
    sig = struct.pack("<I", END_OF_CENTRAL_DIR_SIG)
    pos = tail.rfind(sig)
    while pos >= 0:
        if pos + _EOCD_STRUCT.size <= len(tail):
            comment_len = struct.unpack_from("<H", tail, pos + _EOCD_STRUCT.size - 2)[0]
            if pos + _EOCD_STRUCT.size + comment_len == len(tail):
                return file_size - window + pos, tail[pos : pos + _EOCD_STRUCT.size]
        pos = tail.rfind(sig, 0, pos)
    raise ArchiveFormatError("End of central directory record not found; not a ZIP archive")


def read_directory(f: BinaryIO) -> DirectoryInfo:
    """Parse the central directory of the archive in ``f``; an empty stream is an empty archive."""
    f.seek(0, 2)
    file_size = f.tell()
    if file_size == 0:
        return DirectoryInfo()
    eocd_offset, raw = _locate_eocd(f, file_size)
    _sig, disk, cd_disk, n_disk, n_total, cd_size, cd_offset, comment_len = _EOCD_STRUCT.unpack(raw)
    if disk != 0 or cd_disk != 0 or n_disk != n_total:
        raise ArchiveFormatError("Multi-disk archives are not supported")
    if eocd_offset >= _ZIP64_LOCATOR_SIZE:
        f.seek(eocd_offset - _ZIP64_LOCATOR_SIZE)
        if struct.unpack("<I", f.read(4))[0] == ZIP64_EOCD_LOCATOR_SIG:
            raise ArchiveFormatError("ZIP64 archives are not supported")
    if n_total == MAX_UINT16 or cd_size == MAX_UINT32 or cd_offset == MAX_UINT32:
        raise ArchiveFormatError("ZIP64 archives are not supported")
    if cd_offset + cd_size > eocd_offset:
        raise ArchiveFormatError("Central directory overlaps the end record")
    f.seek(eocd_offset + _EOCD_STRUCT.size)
    comment = read_exact(f, comment_len)

    f.seek(cd_offset)
    records: List[CentralRecord] = []
    for _ in range(n_total):
        fixed = read_exact(f, _CENTRAL_HDR_STRUCT.size)
        (
            sig, made_by, needed, flags, method, dos_time, dos_date, crc, csize, usize,
            name_len, extra_len, comment_len, _disk_start, int_attr, ext_attr, local_offset,
        ) = _CENTRAL_HDR_STRUCT.unpack(fixed)
        if sig != CENTRAL_DIR_HEADER_SIG:
            if sig == ZIP64_END_OF_CENTRAL_DIR_SIG:
                raise ArchiveFormatError("ZIP64 archives are not supported")
            raise ArchiveFormatError("Bad central directory header signature")
        name_raw = read_exact(f, name_len)
        extra = read_exact(f, extra_len)
        entry_comment = read_exact(f, comment_len)
        try:
            name = _decode_name(name_raw, flags)
        except UnicodeDecodeError as e:
            raise ArchiveFormatError(f"Entry name is not valid UTF-8: {e}") from e
        records.append(
            CentralRecord(
                name=name,
                flags=flags,
                method=method,
                dos_time=dos_time,
                dos_date=dos_date,
                crc32=crc,
                compressed_size=csize,
                uncompressed_size=usize,
                local_header_offset=local_offset,
                version_made_by=made_by,
                version_needed=needed,
                internal_attr=int_attr,
                external_attr=ext_attr,
                extra=extra,
                comment=entry_comment,
            )
        )
    return DirectoryInfo(records=records, comment=comment)


def payload_offset(f: BinaryIO, rec: CentralRecord) -> int:
    """Return the offset of an entry's stored data, skipping its local header."""
    f.seek(rec.local_header_offset)
    fixed = read_exact(f, _LOCAL_HDR_STRUCT.size)
    fields = _LOCAL_HDR_STRUCT.unpack(fixed)
    if fields[0] != LOCAL_FILE_HEADER_SIG:
        raise ArchiveFormatError(f"Bad local header signature for entry {rec.name!r}")
    name_len, extra_len = fields[9], fields[10]
    return rec.local_header_offset + _LOCAL_HDR_STRUCT.size + name_len + extra_len
