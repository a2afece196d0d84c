from __future__ import annotations

import io
import logging
import zlib
from dataclasses import replace
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from .codec import Codec
from .constants import (
    FLAG_ENCRYPTED,
    FLAG_DATA_DESCRIPTOR,
    FLAG_UTF8,
    EXTRA_ENCRYPTION_ID,
    METHOD_DEFLATE,
    MAX_UINT32,
    VERSION_MADE_BY,
    DEFAULT_FILE_MODE,
)
from .encryption import EncryptionContext, EncryptionParams, KdfParams
from .errors import ArchiveFormatError
from .pathutil import validate_entry_name
from .zipformat import (
    CentralRecord,
    build_extra,
    date_time_tuple,
    dos_datetime,
    parse_extra,
    payload_offset,
    read_directory,
    read_exact,
    write_central_directory,
    write_data_descriptor,
    write_local_header,
)

logger = logging.getLogger(__name__)


class Entry:
    """One named item of an :class:`Archive`.

    An entry is either *stored* (its payload lives in the archive's source
    stream and is copied verbatim on rewrite) or *pending* (its payload comes
    from a bound source stream and is encoded on first use).
    """

    def __init__(self, archive: "Archive", record: CentralRecord, *, stored: bool):
        self._archive = archive
        self._record = record
        self._stored = stored
        self._source: Optional[BinaryIO] = None
        self._codec = Codec(record.method)
        self._password: Optional[str] = None
        self._kdf: Optional[KdfParams] = None
        self._cipher: Optional[EncryptionContext] = None
        self._encoded: Optional[bytes] = None

    def __repr__(self) -> str:
        return f"<Entry {self.name!r} size={self.size} method={self._codec.name}>"

    # metadata
    @property
    def name(self) -> str:
        return self._record.name

    @property
    def compression_method(self) -> int:
        return self._record.method

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def crc32(self) -> int:
        self._materialize()
        return self._record.crc32

    @property
    def size(self) -> int:
        self._materialize()
        return self._record.uncompressed_size

    @property
    def compressed_size(self) -> int:
        self._materialize()
        return self._record.compressed_size

    @property
    def is_encrypted(self) -> bool:
        if self._stored:
            return bool(self._record.flags & FLAG_ENCRYPTED)
        return self._password is not None

    @property
    def uses_data_descriptor(self) -> bool:
        return bool(self._record.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def date_time(self) -> Tuple[int, int, int, int, int, int]:
        return date_time_tuple(self._record.dos_time, self._record.dos_date)

    @property
    def mode(self) -> Optional[int]:
        if self._record.version_made_by >> 8 != 3:
            return None
        return (self._record.external_attr >> 16) & 0o7777 or None

    @property
    def comment(self) -> bytes:
        return self._record.comment

    @property
    def is_dir(self) -> bool:
        return self.name.endswith("/")

    # bindings
    def set_password(self, password: str, kdf: Optional[KdfParams] = None) -> None:
        """Attach a password used to encrypt a pending payload or decrypt a stored one."""
        if not password:
            raise ValueError("Password must be a non-empty string")
        if not self._stored and self._encoded is not None:
            raise RuntimeError("Entry payload already materialized; set the password before it is written")
        self._password = password
        self._kdf = kdf
        self._cipher = None

    def use_data_descriptor(self) -> None:
        self._record.flags |= FLAG_DATA_DESCRIPTOR

    def set_date_time(self, timestamp: Optional[float]) -> None:
        self._record.dos_time, self._record.dos_date = dos_datetime(timestamp)

    def set_mode(self, st_mode: int) -> None:
        self._record.external_attr = (st_mode & 0xFFFF) << 16
        self._record.version_made_by = VERSION_MADE_BY

    def set_compression_stream(self, stream: BinaryIO, codec: Optional[Codec] = None) -> None:
        """Bind the entry's content to ``stream``; it is read once, when the payload is first needed."""
        codec = codec or Codec(METHOD_DEFLATE)
        codec.ensure_available()
        self._source = stream
        self._codec = codec
        self._stored = False
        self._encoded = None
        self._cipher = None
        self._record.method = codec.method
        self._record.version_needed = codec.version_needed
        fields = parse_extra(self._record.extra)
        fields.pop(EXTRA_ENCRYPTION_ID, None)
        self._record.extra = build_extra(fields)
        self._record.flags &= ~FLAG_ENCRYPTED

    def open_decoded_stream(self) -> Optional[BinaryIO]:
        """Return a stream over the decoded content, or None when the password is missing or wrong."""
        raw = self._raw_payload()
        if self._record.flags & FLAG_ENCRYPTED:
            compressed = self._decrypt(raw)
            if compressed is None:
                return None
        else:
            compressed = raw
        data = self._codec.decompress(compressed, self._record.uncompressed_size)
        if len(data) != self._record.uncompressed_size:
            raise ArchiveFormatError(f"Size mismatch for entry {self.name!r}; data corrupted")
        if zlib.crc32(data) != self._record.crc32:
            raise ArchiveFormatError(f"CRC mismatch for entry {self.name!r}; data corrupted")
        return io.BytesIO(data)

    # internals
    def _aad(self) -> bytes:
        return self.name.encode("utf-8")

    def _decrypt(self, raw: bytes) -> Optional[bytes]:
        if not self._password:
            return None
        fields = parse_extra(self._record.extra)
        params_raw = fields.get(EXTRA_ENCRYPTION_ID)
        if params_raw is None:
            raise ArchiveFormatError(f"Entry {self.name!r} uses an unsupported encryption scheme")
        params = EncryptionParams.unpack(params_raw)
        if self._cipher is None or self._cipher.export_params() != params:
            self._cipher = EncryptionContext.from_params(self._password, params)
        return self._cipher.decrypt(self._aad(), raw)

    def _raw_payload(self) -> bytes:
        if self._stored:
            return self._archive._read_stored(self._record)
        self._materialize()
        return self._encoded or b""

    def _materialize(self) -> None:
        if self._stored or self._encoded is not None:
            return
        data = self._source.read() if self._source is not None else b""
        compressed = self._codec.compress(data)
        self._record.crc32 = zlib.crc32(data)
        self._record.uncompressed_size = len(data)
        if self._password is not None:
            self._cipher = EncryptionContext.create(self._password, self._kdf)
            payload = self._cipher.encrypt(self._aad(), compressed)
            fields = parse_extra(self._record.extra)
            fields[EXTRA_ENCRYPTION_ID] = self._cipher.export_params().pack()
            self._record.extra = build_extra(fields)
            self._record.flags |= FLAG_ENCRYPTED
        else:
            payload = compressed
        self._record.compressed_size = len(payload)
        if len(data) > MAX_UINT32 or len(payload) > MAX_UINT32:
            raise ArchiveFormatError(f"Entry {self.name!r} too large for a non-ZIP64 archive")
        self._encoded = payload

    def _header_record(self) -> CentralRecord:
        self._materialize()
        # Names are always re-encoded as UTF-8 on rewrite
        return replace(self._record, flags=self._record.flags | FLAG_UTF8)


class Archive:
    """In-memory entry table of a ZIP archive.

    The archive borrows the stream it was parsed from and reads stored
    payloads from it lazily; it never closes that stream.
    """

    def __init__(self, stream: Optional[BinaryIO] = None, comment: bytes = b""):
        self._stream = stream
        self._entries: Dict[str, Entry] = {}
        self.comment = comment

    @classmethod
    def from_stream(cls, stream: BinaryIO) -> "Archive":
        directory = read_directory(stream)
        archive = cls(stream, comment=directory.comment)
        for rec in directory.records:
            if rec.name in archive._entries:
                logger.warning("Duplicate entry name %r in archive; keeping the last one", rec.name)
                del archive._entries[rec.name]
            archive._entries[rec.name] = Entry(archive, rec, stored=True)
        logger.debug("Loaded archive with %d entries", len(archive._entries))
        return archive

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries.values()))

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries.values())

    def names(self) -> List[str]:
        return list(self._entries)

    def get_entry(self, name: str) -> Optional[Entry]:
        return self._entries.get(name)

    def create_entry(self, name: str) -> Optional[Entry]:
        """Create an empty pending entry; return None if ``name`` is already present."""
        validate_entry_name(name)
        if name in self._entries:
            return None
        dos_time, dos_date = dos_datetime()
        codec = Codec(METHOD_DEFLATE)
        rec = CentralRecord(
            name=name,
            flags=FLAG_UTF8,
            method=codec.method,
            dos_time=dos_time,
            dos_date=dos_date,
            crc32=0,
            compressed_size=0,
            uncompressed_size=0,
            version_made_by=VERSION_MADE_BY,
            version_needed=codec.version_needed,
            external_attr=DEFAULT_FILE_MODE << 16,
        )
        entry = Entry(self, rec, stored=False)
        self._entries[name] = entry
        return entry

    def remove_entry(self, name: str) -> bool:
        """Remove ``name`` if present; removing an absent name is a no-op."""
        return self._entries.pop(name, None) is not None

    def write_to(self, out: BinaryIO) -> int:
        """Serialize every entry plus the central directory to ``out``; return bytes written.

        Offsets are tracked here, so ``out`` does not need to be seekable.
        """
        offset = 0
        records: List[CentralRecord] = []
        for entry in self._entries.values():
            payload = entry._raw_payload()
            rec = entry._header_record()
            if offset > MAX_UINT32:
                raise ArchiveFormatError("Archive too large for a non-ZIP64 archive")
            rec.local_header_offset = offset
            offset += write_local_header(out, rec, deferred_sizes=entry.uses_data_descriptor)
            out.write(payload)
            offset += len(payload)
            if entry.uses_data_descriptor:
                offset += write_data_descriptor(out, rec)
            records.append(rec)
        offset += write_central_directory(out, records, offset, self.comment)
        return offset

    def _read_stored(self, rec: CentralRecord) -> bytes:
        if self._stream is None:
            raise RuntimeError("Archive has no source stream")
        start = payload_offset(self._stream, rec)
        self._stream.seek(start)
        return read_exact(self._stream, rec.compressed_size)
