from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from .constants import MAX_NAME_BYTES, TEMP_SUFFIX

PathLike = Union[str, "os.PathLike[str]"]


def filename_from_path(path: PathLike) -> str:
    """Return the final component of ``path``, treating both slash styles as separators."""
    name = os.fspath(path).replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
    if not name:
        raise ValueError(f"Path has no file name component: {path!r}")
    return name


def temp_path_for(path: PathLike) -> Path:
    """Sibling path used to stage a rewritten archive: ``<dir>/<name>.tmp``."""
    p = Path(path)
    return p.with_name(p.name + TEMP_SUFFIX)


def validate_entry_name(name: str) -> str:
    """Entry names are case-sensitive keys, stored verbatim.

    Rules:
    - Must be non-empty
    - Must not contain NUL
    - Must fit the 16-bit name length field once UTF-8 encoded
    """
    if not name:
        raise ValueError("Entry name cannot be empty")
    if "\x00" in name:
        raise ValueError("Entry name cannot contain NUL bytes")
    if len(name.encode("utf-8")) > MAX_NAME_BYTES:
        raise ValueError("Entry name too long")
    return name
