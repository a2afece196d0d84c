"""
zipcommit: crash-safe in-place editing of ZIP archives.

Every mutation is one transaction against a single archive path:

- Acquire: open the archive (creating an empty one if the path is missing)
- Mutate: add, replace or remove entries in memory
- Commit: rewrite the whole archive to ``<name>.tmp``, close the original,
  then swap the temp file into place, so the path never holds a half-written archive

Entries can be stored, deflated, bzip2- or zstd-compressed, and optionally
encrypted per entry with XChaCha20-Poly1305 under an Argon2id-derived key.
Extraction with a missing or wrong password raises AuthenticationError
instead of producing corrupted output.

Single writer, single process: concurrent writers to the same path are not
coordinated.
"""

from .archive import Archive, Entry
from .codec import Codec
from .config import ZipCommitConfig
from .constants import METHOD_STORED, METHOD_DEFLATE, METHOD_BZIP2, METHOD_ZSTD
from .encryption import KdfParams
from .errors import (
    ZipCommitError,
    ArchiveIOError,
    EntryNotFoundError,
    AuthenticationError,
    ArchiveFormatError,
    UnsupportedCompressionError,
)
from .store import (
    ArchiveHandle,
    EntryInfo,
    open_archive,
    save_and_close,
    save,
    transaction,
    is_in_archive,
    add_file,
    remove_entry,
    extract_file,
    list_entries,
)

__version__ = "0.1"

__all__ = [
    "Archive",
    "Entry",
    "Codec",
    "ZipCommitConfig",
    "KdfParams",
    "METHOD_STORED",
    "METHOD_DEFLATE",
    "METHOD_BZIP2",
    "METHOD_ZSTD",
    "ZipCommitError",
    "ArchiveIOError",
    "EntryNotFoundError",
    "AuthenticationError",
    "ArchiveFormatError",
    "UnsupportedCompressionError",
    "ArchiveHandle",
    "EntryInfo",
    "open_archive",
    "save_and_close",
    "save",
    "transaction",
    "is_in_archive",
    "add_file",
    "remove_entry",
    "extract_file",
    "list_entries",
]
