import stat


# Record signatures
LOCAL_FILE_HEADER_SIG = 0x04034B50      # "PK\x03\x04"
DATA_DESCRIPTOR_SIG = 0x08074B50        # "PK\x07\x08"
CENTRAL_DIR_HEADER_SIG = 0x02014B50     # "PK\x01\x02"
END_OF_CENTRAL_DIR_SIG = 0x06054B50     # "PK\x05\x06"
ZIP64_END_OF_CENTRAL_DIR_SIG = 0x06064B50
ZIP64_EOCD_LOCATOR_SIG = 0x07064B50

# General purpose flags
FLAG_ENCRYPTED = 1 << 0
FLAG_DATA_DESCRIPTOR = 1 << 3
FLAG_UTF8 = 1 << 11

# Compression method IDs (APPNOTE 4.4.5)
METHOD_STORED = 0
METHOD_DEFLATE = 8
METHOD_BZIP2 = 12
METHOD_ZSTD = 93

METHOD_NAMES = {
    METHOD_STORED: "stored",
    METHOD_DEFLATE: "deflate",
    METHOD_BZIP2: "bzip2",
    METHOD_ZSTD: "zstd",
}

# Version needed to extract, per method
VERSION_DEFAULT = 20
VERSION_BZIP2 = 46
VERSION_ZSTD = 63
# Upper byte 3 = UNIX, lower byte = APPNOTE version 6.3
VERSION_MADE_BY = (3 << 8) | 63

# Classic (non-ZIP64) limits
MAX_UINT16 = 0xFFFF
MAX_UINT32 = 0xFFFFFFFF
MAX_COMMENT_LEN = MAX_UINT16
MAX_NAME_BYTES = MAX_UINT16

# Private extra field carrying per-entry key derivation parameters
EXTRA_ENCRYPTION_ID = 0x7A63
ENCRYPTION_VERSION = 1
KDF_ARGON2ID = 1

# Default Argon2id parameters for entry encryption
ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4
# Upper bound accepted from an archive being read
ARGON_MAX_MEMORY_COST_KIB = 1024 * 1024
ARGON_MAX_TIME_COST = 64
ARGON_MAX_PARALLELISM = 64

# Commit protocol
TEMP_SUFFIX = ".tmp"
COPY_BUFFER_SIZE = 1 << 20

DEFAULT_COMPRESSION = "deflate"
DEFAULT_FILE_MODE = stat.S_IFREG | 0o644
