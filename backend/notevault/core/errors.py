"""Exception taxonomy shared by the vault engines and the HTTP layer."""


class NoteVaultError(Exception):
    """Base class for every error raised by notevault."""

    kind = "error"


class ValidationError(NoteVaultError):
    """Malformed input, rejected before any network or storage call."""

    kind = "validation"


class VerificationError(NoteVaultError):
    """The supplied vault code does not match the one on record."""

    kind = "verification"

    def __init__(self, message: str = "incorrect code"):
        super().__init__(message)


class DecryptionError(NoteVaultError):
    """An envelope failed authentication (wrong code or corrupted data)."""

    kind = "decryption"


class StorageError(NoteVaultError):
    """Download, upload, delete or persist failed against the item store."""

    kind = "storage"


class ItemNotFoundError(StorageError):
    kind = "not_found"


class OracleError(NoteVaultError):
    """The verification backend could not be reached or answered garbage."""

    kind = "oracle"


class MigrationError(NoteVaultError):
    """A visibility change was aborted; the item was left untouched."""

    kind = "migration"

    def __init__(self, message: str = "some files could not be migrated; nothing was changed", *, failed_files=None):
        super().__init__(message)
        self.failed_files = list(failed_files or [])


class RotationCancelled(NoteVaultError):
    kind = "cancelled"
