from __future__ import annotations

import argparse
import getpass as _getpass
import logging
import sys
import time
from typing import List, Optional

from zipcommit.codec import Codec
from zipcommit.config import ZipCommitConfig
from zipcommit.errors import (
    ZipCommitError,
    AuthenticationError,
    EntryNotFoundError,
    ArchiveFormatError,
)
from zipcommit.store import (
    add_file,
    extract_file,
    is_in_archive,
    list_entries,
    remove_entry,
)


def _resolve_password(password: Optional[str], ask: bool) -> Optional[str]:
    """Return ``password``, or prompt for one when ``ask`` is set and none was given."""
    if password is None and ask:
        return _getpass.getpass("Entry password: ")
    return password


def cmd_add(
    archive: str,
    source: str,
    *,
    name: Optional[str] = None,
    password: Optional[str] = None,
    method: Optional[str] = None,
    level: Optional[int] = None,
    config: Optional[ZipCommitConfig] = None,
) -> bool:
    """Add (or replace) one file in an archive.

    Args:
        archive: Archive path; created if missing.
        source: File to add.
        name: In-archive name (default: file name of ``source``).
        password: Encrypt the entry with this password.
        method: Compression method name (default from configuration).
        level: Compression level (default: codec default).
    """
    config = config or ZipCommitConfig.from_env()
    codec = Codec.by_name(method or config.compression, level if level is not None else config.compression_level)
    add_file(archive, source, name, password, codec, config=config)
    print(f"  adding: {name or source} ({codec.name}{', encrypted' if password else ''})")
    return True


def cmd_remove(archive: str, name: str, *, config: Optional[ZipCommitConfig] = None) -> bool:
    removed = remove_entry(archive, name, config=config)
    if removed:
        print(f"deleting: {name}")
    else:
        print(f"  absent: {name} (nothing to delete)")
    return removed


def cmd_extract(archive: str, name: str, *, output: Optional[str] = None, password: Optional[str] = None) -> bool:
    """Extract one entry.

    Args:
        archive: Archive path.
        name: Entry name.
        output: Destination path (default: entry file name in the current directory).
        password: Password for encrypted entries.
    """
    t0 = time.time()
    dest = extract_file(archive, name, output, password)
    dt = max(1e-6, time.time() - t0)
    print(f" inflating: {name} -> {dest} in {dt:.2f}s")
    return True


def cmd_list(archive: str) -> bool:
    entries = list_entries(archive)
    total = 0
    for e in entries:
        y, mo, d, h, mi, _s = e.date_time
        flag = "*" if e.encrypted else " "
        print(f"{e.size:>10}  {e.compressed_size:>10}  {e.method:<8}{flag} {y:04d}-{mo:02d}-{d:02d} {h:02d}:{mi:02d}  {e.name}")
        total += e.size
    print(f"{total:>10}  {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
    return True


def cmd_contains(archive: str, name: str) -> bool:
    present = is_in_archive(archive, name)
    print("present" if present else "absent")
    return present


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="zipcommit",
        description="Crash-safe ZIP archive editing",
        epilog=(
            "Every change rewrites the archive to <archive>.tmp and swaps it into place; "
            "the archive path never holds a half-written file."
        ),
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_add = sub.add_parser("add", help="Add or replace a file")
    ap_add.add_argument("archive", help="Archive path (created if missing)")
    ap_add.add_argument("source", help="File to add")
    ap_add.add_argument("--name", help="In-archive name (default: file name of source)")
    ap_add.add_argument("--password", help="Encrypt the entry with this password")
    ap_add.add_argument("--ask-password", action="store_true", help="Prompt for the encryption password")
    ap_add.add_argument(
        "--method",
        choices=["stored", "deflate", "bzip2", "zstd"],
        help="Compression method (default: ZIPCOMMIT_COMPRESSION or deflate)",
    )
    ap_add.add_argument("--level", type=int, help="Compression level")

    ap_remove = sub.add_parser("remove", help="Remove an entry (absent names are not an error)")
    ap_remove.add_argument("archive", help="Archive path")
    ap_remove.add_argument("name", help="Entry name")

    ap_extract = sub.add_parser("extract", help="Extract one entry")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("name", help="Entry name")
    ap_extract.add_argument("--output", "-o", help="Destination path (default: entry file name)")
    ap_extract.add_argument("--password", help="Entry password")
    ap_extract.add_argument("--ask-password", action="store_true", help="Prompt for the entry password")

    ap_list = sub.add_parser("list", help="List archive entries")
    ap_list.add_argument("archive", help="Archive path")

    ap_contains = sub.add_parser("contains", help="Exit 0 if the entry exists, 1 otherwise")
    ap_contains.add_argument("archive", help="Archive path")
    ap_contains.add_argument("name", help="Entry name")

    args = ap.parse_args(argv)
    try:
        config = ZipCommitConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    logging.basicConfig(level=config.logging_level, format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.cmd == "add":
            cmd_add(
                args.archive,
                args.source,
                name=args.name,
                password=_resolve_password(args.password, args.ask_password),
                method=args.method,
                level=args.level,
                config=config,
            )
        elif args.cmd == "remove":
            cmd_remove(args.archive, args.name, config=config)
        elif args.cmd == "extract":
            cmd_extract(
                args.archive,
                args.name,
                output=args.output,
                password=_resolve_password(args.password, args.ask_password),
            )
        elif args.cmd == "list":
            cmd_list(args.archive)
        elif args.cmd == "contains":
            sys.exit(0 if cmd_contains(args.archive, args.name) else 1)
        else:
            raise RuntimeError("Unknown command")
    except AuthenticationError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Hint: the entry is encrypted; pass --password or --ask-password.", file=sys.stderr)
        sys.exit(2)
    except EntryNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except ArchiveFormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Hint: the archive appears corrupted or uses unsupported features; it was not modified.", file=sys.stderr)
        sys.exit(2)
    except (ZipCommitError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
