from __future__ import annotations

from typing import Optional


class SheafError(Exception):
    """Base class for sheaf-specific errors."""


# Packing
class TraversalError(SheafError):
    """A filesystem node could not be statted, opened or read while packing."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class UnsupportedEntryError(SheafError):
    def __init__(self, path: str, description: str):
        super().__init__(f"{path}: unsupported entry type ({description})")
        self.path = path


# Stream / codec
class ArchiveFormatError(SheafError, ValueError):
    pass


class ChecksumMismatchError(ArchiveFormatError):
    pass


class AuthenticationError(ArchiveFormatError):
    pass


class EncryptedArchiveRequiresPassword(ArchiveFormatError):
    pass


# Size fidelity
class ShortTransferError(SheafError):
    """Declared entry size and transferred byte count disagree."""

    def __init__(self, path: str, expected: int, actual: int, detail: Optional[str] = None):
        msg = f"{path}: expected {expected} bytes, transferred {actual}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.path = path
        self.expected = expected
        self.actual = actual


# Unpacking
class PathConflictError(SheafError):
    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
