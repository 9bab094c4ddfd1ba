from __future__ import annotations
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
import copy
import time
import uuid


class VaultModel(BaseModel):
    # bytes travel as base64 in JSON (records on disk and HTTP payloads)
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")


# --- Enums ---

class CodeScope(str, Enum):
    WORKSPACE = "workspace"
    PRIVATE = "private"


class Visibility(str, Enum):
    PUBLIC = "public"
    VAULTED = "vaulted"


class Namespace(str, Enum):
    PLAINTEXT = "plaintext"
    CIPHERTEXT = "ciphertext"


class MigrationDirection(str, Enum):
    TO_PUBLIC = "to_public"
    TO_VAULTED = "to_vaulted"


# bucket names per (scope, namespace)
BUCKETS = {
    (CodeScope.PRIVATE, Namespace.PLAINTEXT): "private.public",
    (CodeScope.PRIVATE, Namespace.CIPHERTEXT): "private.vaulted",
    (CodeScope.WORKSPACE, Namespace.PLAINTEXT): "workspace.documents",
    (CodeScope.WORKSPACE, Namespace.CIPHERTEXT): "workspace.vaulted",
}


def bucket_for(scope: CodeScope, namespace: Namespace) -> str:
    return BUCKETS[(CodeScope(scope), Namespace(namespace))]


# --- Item records ---

class EncryptionEnvelope(VaultModel):
    ciphertext: bytes
    nonce: bytes
    # None marks a legacy envelope whose key was derived with the nonce as salt
    salt: Optional[bytes] = None


class FileDescriptor(VaultModel):
    name: str
    mime_type: str = "application/octet-stream"
    storage_path: str
    nonce: Optional[bytes] = None
    salt: Optional[bytes] = None

    @property
    def is_encrypted(self) -> bool:
        return bool(self.nonce)

    @property
    def namespace(self) -> Namespace:
        return Namespace.CIPHERTEXT if self.is_encrypted else Namespace.PLAINTEXT


class Space(VaultModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scope: CodeScope
    owner_id: str
    name: str = "Untitled"


class VaultedItem(VaultModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scope: CodeScope
    space_id: str
    owner_id: str
    title: str = "Untitled"
    tags: List[str] = []
    notes: str = ""  # always plaintext
    visibility: Visibility = Visibility.PUBLIC
    encrypted_note: Optional[EncryptionEnvelope] = None
    files: List[FileDescriptor] = []
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def is_vaulted(self) -> bool:
        return self.visibility == Visibility.VAULTED


class ItemPatch(VaultModel):
    """
    Field-level upsert. Only fields explicitly set on the patch are written,
    so ``ItemPatch(encrypted_note=None)`` clears the note while
    ``ItemPatch(files=[...])`` leaves it alone.
    """
    title: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    visibility: Optional[Visibility] = None
    encrypted_note: Optional[EncryptionEnvelope] = None
    files: Optional[List[FileDescriptor]] = None

    def apply(self, item: VaultedItem) -> VaultedItem:
        updated = item.model_copy(deep=True)
        for field in self.model_fields_set:
            setattr(updated, field, copy.deepcopy(getattr(self, field)))
        updated.updated_at = time.time()
        return updated


# --- Engine results ---

class Progress(VaultModel):
    done: int
    total: int
    item_id: Optional[str] = None


class RotationFailure(VaultModel):
    item_id: str
    error_kind: str
    message: str


class RotationReport(VaultModel):
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    cancelled: bool = False
    failures: List[RotationFailure] = []

    @property
    def complete(self) -> bool:
        return not self.cancelled and self.failed == 0 and self.succeeded == self.total


class MigrationResult(VaultModel):
    item: VaultedItem
    direction: Optional[MigrationDirection] = None
    migrated_files: int = 0
    dropped_files: List[str] = []


class OpenedFile(VaultModel):
    name: str
    mime_type: str
    data: Optional[bytes] = None
    error: Optional[str] = None


class OpenedItem(VaultModel):
    item: VaultedItem
    note: Optional[str] = None
    note_error: Optional[str] = None
    files: List[OpenedFile] = []


class NewFile(VaultModel):
    name: str
    mime_type: str = "application/octet-stream"
    data: bytes
