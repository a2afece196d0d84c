"""
Configuration for zipcommit.

Settings come from keyword arguments or environment variables; there are no
config files. Every setting has a default suitable for interactive use.

Environment variables:
    ZIPCOMMIT_COMPRESSION        stored | deflate | bzip2 | zstd (default deflate)
    ZIPCOMMIT_COMPRESSION_LEVEL  codec-specific level (default: codec default)
    ZIPCOMMIT_KDF_TIME_COST      Argon2id passes for new encrypted entries
    ZIPCOMMIT_KDF_MEMORY_KIB     Argon2id memory in KiB for new encrypted entries
    ZIPCOMMIT_KDF_PARALLELISM    Argon2id lanes for new encrypted entries
    ZIPCOMMIT_FSYNC              fsync the staged archive before the swap (default true)
    ZIPCOMMIT_LOG_LEVEL          logging level used by the CLI (default WARNING)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .codec import Codec
from .constants import (
    ARGON_TIME_COST,
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    DEFAULT_COMPRESSION,
)
from .encryption import KdfParams

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class ZipCommitConfig:
    """Defaults applied by the transaction layer when a call leaves them unset.

    Attributes:
        compression: Compression method name for new entries
        compression_level: Codec-specific level, or None for the codec default
        kdf_time_cost: Argon2id time cost for new encrypted entries
        kdf_memory_kib: Argon2id memory cost (KiB) for new encrypted entries
        kdf_parallelism: Argon2id parallelism for new encrypted entries
        fsync: Whether the staged archive is fsync'ed before it is swapped in
        log_level: Logging level name used by the CLI
    """

    compression: str = DEFAULT_COMPRESSION
    compression_level: Optional[int] = None
    kdf_time_cost: int = ARGON_TIME_COST
    kdf_memory_kib: int = ARGON_MEMORY_COST_KIB
    kdf_parallelism: int = ARGON_PARALLELISM
    fsync: bool = True
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        # Fail at construction rather than mid-transaction
        self.codec()
        self.kdf().validate()
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log level: {self.log_level}")

    @classmethod
    def from_env(cls) -> ZipCommitConfig:
        """Load configuration from environment variables."""
        return cls(
            compression=os.getenv("ZIPCOMMIT_COMPRESSION", DEFAULT_COMPRESSION),
            compression_level=_env_int("ZIPCOMMIT_COMPRESSION_LEVEL", None),
            kdf_time_cost=_env_int("ZIPCOMMIT_KDF_TIME_COST", ARGON_TIME_COST),
            kdf_memory_kib=_env_int("ZIPCOMMIT_KDF_MEMORY_KIB", ARGON_MEMORY_COST_KIB),
            kdf_parallelism=_env_int("ZIPCOMMIT_KDF_PARALLELISM", ARGON_PARALLELISM),
            fsync=_env_bool("ZIPCOMMIT_FSYNC", True),
            log_level=os.getenv("ZIPCOMMIT_LOG_LEVEL", "WARNING"),
        )

    def codec(self) -> Codec:
        return Codec.by_name(self.compression, self.compression_level)

    def kdf(self) -> KdfParams:
        return KdfParams(
            time_cost=self.kdf_time_cost,
            memory_cost_kib=self.kdf_memory_kib,
            parallelism=self.kdf_parallelism,
        )

    @property
    def logging_level(self) -> int:
        return logging.getLevelName(self.log_level.upper())
