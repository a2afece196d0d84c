class ZipCommitError(Exception):
    """Base class for zipcommit-specific errors."""


# Filesystem
class ArchiveIOError(ZipCommitError, OSError):
    """A filesystem object (archive, temp file, source or destination) could not be opened, read or written."""


# Entry table
class EntryNotFoundError(ZipCommitError, KeyError):
    """A required entry is not contained in the archive."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class AuthenticationError(ZipCommitError):
    """An entry could not be decoded because the password is missing or wrong."""


# Layout/consistency
class ArchiveFormatError(ZipCommitError, ValueError):
    pass


class UnsupportedCompressionError(ArchiveFormatError):
    pass
