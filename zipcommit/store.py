from __future__ import annotations

import logging
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from .archive import Archive, Entry
from .codec import Codec
from .config import ZipCommitConfig
from .constants import COPY_BUFFER_SIZE
from .errors import (
    ArchiveIOError,
    AuthenticationError,
    EntryNotFoundError,
    ZipCommitError,
)
from .pathutil import PathLike, filename_from_path, temp_path_for

logger = logging.getLogger(__name__)

Compression = Union[Codec, str, None]


@dataclass(frozen=True)
class EntryInfo:
    name: str
    size: int
    compressed_size: int
    method: str
    encrypted: bool
    date_time: Tuple[int, int, int, int, int, int]
    mode: Optional[int]


class ArchiveHandle:
    """Exclusive owner of an archive's read stream and the :class:`Archive` parsed from it.

    The handle is the only object that closes the stream. It must be closed
    before the backing file is replaced, and must not be used afterwards.
    """

    def __init__(self, path: Path, stream: BinaryIO, archive: Archive):
        self.path = path
        self._stream: Optional[BinaryIO] = stream
        self._archive = archive

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"{len(self._archive)} entries"
        return f"<ArchiveHandle {str(self.path)!r} {state}>"

    @property
    def closed(self) -> bool:
        return self._stream is None

    @property
    def archive(self) -> Archive:
        if self._stream is None:
            raise ValueError(f"Archive handle for {self.path} is closed")
        return self._archive

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None


# -------- Acquisition --------

def open_archive(path: PathLike) -> ArchiveHandle:
    """Open the archive at ``path``, creating an empty file first if it cannot be opened.

    Raises:
        ArchiveIOError: the file can be neither opened nor created.
        ArchiveFormatError: the file exists but is not a readable archive.
    """
    p = Path(path)
    try:
        fh = open(p, "rb")
    except OSError:
        try:
            with open(p, "ab"):
                pass
            fh = open(p, "rb")
        except OSError as exc:
            raise ArchiveIOError(f"cannot open archive file {p}: {exc.strerror or exc}") from exc
        logger.debug("Created empty archive file %s", p)
    try:
        archive = Archive.from_stream(fh)
    except ZipCommitError:
        fh.close()
        raise
    except OSError as exc:
        fh.close()
        raise ArchiveIOError(f"cannot read archive file {p}: {exc.strerror or exc}") from exc
    return ArchiveHandle(p, fh, archive)


# -------- Commit --------

def _stage(archive: Archive, tmp: Path, *, fsync: bool) -> None:
    """Serialize ``archive`` into ``tmp``; on failure remove the partial temp file."""
    try:
        out = open(tmp, "wb")
    except OSError as exc:
        raise ArchiveIOError(f"cannot save archive: cannot open {tmp}: {exc.strerror or exc}") from exc
    try:
        with out:
            written = archive.write_to(out)
            out.flush()
            if fsync:
                os.fsync(out.fileno())
    except BaseException as exc:
        try:
            tmp.unlink()
        except OSError as cleanup_exc:
            logger.warning("Failed to remove partial temp file %s: %s", tmp, cleanup_exc)
        if isinstance(exc, OSError) and not isinstance(exc, ZipCommitError):
            raise ArchiveIOError(f"cannot save archive: writing {tmp} failed: {exc.strerror or exc}") from exc
        raise
    logger.debug("Staged %d bytes to %s", written, tmp)


def _swap(tmp: Path, target: Path) -> None:
    # Delete then rename; a crash between the two leaves only the temp file.
    try:
        os.remove(target)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not delete %s before replacing it: %s", target, exc)
    try:
        os.rename(tmp, target)
    except OSError as exc:
        raise ArchiveIOError(
            f"cannot move {tmp} onto {target}: {exc.strerror or exc}; the new archive content remains in {tmp}"
        ) from exc
    logger.debug("Committed %s", target)


def save_and_close(handle: ArchiveHandle, path: Optional[PathLike] = None, *, config: Optional[ZipCommitConfig] = None) -> None:
    """Durably replace the archive file with the handle's in-memory state.

    Steps: write ``<name>.tmp`` in the target directory, close the handle's
    read stream, delete the target (best effort) and rename the temp file
    onto it. The handle is closed even when staging fails; the original file
    is untouched in that case.

    Args:
        handle: Live handle whose archive holds the desired final content.
        path: Target path; defaults to the path the handle was opened from.
        config: Settings (fsync); defaults to ``ZipCommitConfig.from_env()``.
    """
    config = config or ZipCommitConfig.from_env()
    target = Path(path) if path is not None else handle.path
    tmp = temp_path_for(target)
    archive = handle.archive
    try:
        _stage(archive, tmp, fsync=config.fsync)
    finally:
        handle.close()
    _swap(tmp, target)


def save(handle: ArchiveHandle, path: Optional[PathLike] = None, *, config: Optional[ZipCommitConfig] = None) -> ArchiveHandle:
    """Commit like :func:`save_and_close`, then return a fresh handle on the saved file."""
    target = Path(path) if path is not None else handle.path
    save_and_close(handle, target, config=config)
    return open_archive(target)


@contextmanager
def transaction(path: PathLike, *, config: Optional[ZipCommitConfig] = None) -> Iterator[ArchiveHandle]:
    """Acquire a handle, yield it for mutation, and commit when the block exits normally.

    If the block raises, the handle is closed and nothing is written.
    """
    handle = open_archive(path)
    try:
        yield handle
    except BaseException:
        handle.close()
        raise
    save_and_close(handle, config=config)


# -------- Single-entry operations --------

def _resolve_codec(compression: Compression, config: ZipCommitConfig) -> Codec:
    if compression is None:
        return config.codec()
    if isinstance(compression, Codec):
        return compression
    return Codec.by_name(compression, config.compression_level)


def _open_source(source: PathLike) -> BinaryIO:
    try:
        return open(source, "rb")
    except OSError as exc:
        raise ArchiveIOError(f"cannot open input file {source}: {exc.strerror or exc}") from exc


def _create_or_replace(archive: Archive, name: str) -> Entry:
    entry = archive.create_entry(name)
    if entry is None:
        logger.debug("Entry %r already present; replacing it", name)
        archive.remove_entry(name)
        entry = archive.create_entry(name)
    return entry


def is_in_archive(path: PathLike, name: str) -> bool:
    with open_archive(path) as handle:
        return name in handle.archive


def add_file(
    path: PathLike,
    source: PathLike,
    in_archive_name: Optional[str] = None,
    password: Optional[str] = None,
    compression: Compression = None,
    *,
    config: Optional[ZipCommitConfig] = None,
) -> None:
    """Add ``source`` to the archive at ``path`` as one transaction, replacing any entry of the same name.

    Args:
        path: Archive path; created if missing.
        source: File whose bytes become the entry's content.
        in_archive_name: Entry name; defaults to the final component of ``source``.
        password: When given, the entry is encrypted and written with a data descriptor.
        compression: Codec or method name; defaults to the configured compression.
        config: Settings; defaults to ``ZipCommitConfig.from_env()``.
    """
    config = config or ZipCommitConfig.from_env()
    codec = _resolve_codec(compression, config)
    name = in_archive_name if in_archive_name is not None else filename_from_path(source)
    with open_archive(path) as handle, _open_source(source) as src:
        entry = _create_or_replace(handle.archive, name)
        if password:
            entry.set_password(password, config.kdf())
            entry.use_data_descriptor()
        try:
            st = os.fstat(src.fileno())
        except OSError as exc:
            raise ArchiveIOError(f"cannot stat input file {source}: {exc.strerror or exc}") from exc
        entry.set_date_time(st.st_mtime)
        entry.set_mode(st.st_mode)
        entry.set_compression_stream(src, codec)
        save_and_close(handle, config=config)
    logger.info("Added %s to %s as %r (%s%s)", source, path, name, codec.name, ", encrypted" if password else "")


def remove_entry(path: PathLike, name: str, *, config: Optional[ZipCommitConfig] = None) -> bool:
    """Remove ``name`` from the archive at ``path``; an absent name is not an error.

    Returns:
        True if an entry was removed.
    """
    with open_archive(path) as handle:
        removed = handle.archive.remove_entry(name)
        save_and_close(handle, config=config)
    if removed:
        logger.info("Removed %r from %s", name, path)
    else:
        logger.info("Entry %r not present in %s; nothing removed", name, path)
    return removed


def extract_file(
    path: PathLike,
    name: str,
    destination: Optional[PathLike] = None,
    password: Optional[str] = None,
) -> Path:
    """Decode entry ``name`` into ``destination`` (default: its file name in the current directory).

    Directory entries (names ending in ``/``) create a directory at the
    destination instead of a file.

    The destination is opened only after the entry has been found and
    decoded, so a missing entry or a wrong password never creates or
    truncates it. As a consequence the error precedence differs from
    opening the destination first: when the destination cannot be created
    *and* the entry is missing, ``EntryNotFoundError`` is raised rather than
    ``ArchiveIOError``.

    Raises:
        EntryNotFoundError: the entry is not contained in the archive.
        AuthenticationError: the entry is encrypted and the password is missing or wrong.
        ArchiveIOError: the destination cannot be created or written.
    """
    dest = Path(destination) if destination is not None else Path(filename_from_path(name))
    with open_archive(path) as handle:
        entry = handle.archive.get_entry(name)
        if entry is None:
            raise EntryNotFoundError(f"entry {name!r} is not contained in archive {path}")
        if entry.is_dir:
            try:
                dest.mkdir(exist_ok=True)
            except OSError as exc:
                raise ArchiveIOError(f"cannot create destination directory {dest}: {exc.strerror or exc}") from exc
            logger.info("Created directory %s for entry %r of %s", dest, name, path)
            return dest
        if password:
            entry.set_password(password)
        stream = entry.open_decoded_stream()
        if stream is None:
            raise AuthenticationError(f"wrong password for entry {name!r}")
    try:
        out = open(dest, "wb")
    except OSError as exc:
        raise ArchiveIOError(f"cannot create destination file {dest}: {exc.strerror or exc}") from exc
    with out, stream:
        try:
            shutil.copyfileobj(stream, out, COPY_BUFFER_SIZE)
            out.flush()
        except OSError as exc:
            raise ArchiveIOError(f"cannot write destination file {dest}: {exc.strerror or exc}") from exc
    logger.info("Extracted %r from %s to %s", name, path, dest)
    return dest


def list_entries(path: PathLike) -> List[EntryInfo]:
    with open_archive(path) as handle:
        return [
            EntryInfo(
                name=e.name,
                size=e.size,
                compressed_size=e.compressed_size,
                method=e.codec.name,
                encrypted=e.is_encrypted,
                date_time=e.date_time,
                mode=e.mode,
            )
            for e in handle.archive
        ]
