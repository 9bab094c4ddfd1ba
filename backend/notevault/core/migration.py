import asyncio
import logging
from enum import Enum
from typing import List, Optional, Tuple

from notevault.core.crypto import decrypt_file, encrypt_file, encrypt_text
from notevault.core.errors import MigrationError, NoteVaultError, StorageError
from notevault.core.storage import ItemStore, object_path
from notevault.core.verifier import VaultCodeVerifier, require_verified
from notevault.models import (
    FileDescriptor,
    ItemPatch,
    MigrationDirection,
    MigrationResult,
    Namespace,
    VaultedItem,
    Visibility,
)

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    ALL_OR_NOTHING = "all_or_nothing"
    BEST_EFFORT = "best_effort"


class VisibilityMigrator:
    """
    Moves one item's files between the plaintext and ciphertext namespaces
    when its visibility flips, then persists the new flag and descriptors.

    New objects are written first and the record is persisted second; the
    old objects are only removed once the record points at the new ones.
    """

    def __init__(
        self,
        store: ItemStore,
        verifier: VaultCodeVerifier,
        *,
        to_vaulted_policy: FailurePolicy = FailurePolicy.ALL_OR_NOTHING,
    ):
        self.store = store
        self.verifier = verifier
        self.to_vaulted_policy = FailurePolicy(to_vaulted_policy)

    async def set_visibility(
        self,
        item_id: str,
        visibility: Visibility,
        code: Optional[str],
        private_note: Optional[str] = None,
    ) -> MigrationResult:
        item = await self.store.get_item(item_id)
        target = Visibility(visibility)
        if item.visibility == target:
            return MigrationResult(item=item)
        if target == Visibility.PUBLIC:
            return await self.to_public(item, code)
        return await self.to_vaulted(item, code, private_note=private_note)

    async def _discard(self, item: VaultedItem, namespace: Namespace, paths: List[str]):
        if not paths:
            return
        try:
            await self.store.delete_objects(item.scope, namespace, paths)
        except StorageError as exc:
            # stray objects are harmless to the record; leave them for cleanup
            logger.error("could not delete %d object(s) for item %s: %s", len(paths), item.id, exc)

    # --- Vaulted -> Public ---
    async def _decrypt_to_plaintext(self, item: VaultedItem, fm: FileDescriptor, code: str) -> FileDescriptor:
        encrypted = await self.store.download_object(item.scope, Namespace.CIPHERTEXT, fm.storage_path)
        plain = await asyncio.to_thread(decrypt_file, encrypted, fm.nonce, code, fm.mime_type, fm.salt)
        path = object_path(item.space_id, fm.name)
        await self.store.upload_object(item.scope, Namespace.PLAINTEXT, path, plain.data, plain.mime_type, upsert=False)
        return FileDescriptor(name=fm.name, mime_type=plain.mime_type, storage_path=path)

    async def to_public(self, item: VaultedItem, code: Optional[str]) -> MigrationResult:
        code = await require_verified(self.verifier, item.scope, code)
        files: List[FileDescriptor] = []
        created: List[str] = []
        replaced: List[str] = []
        failed: List[str] = []
        for fm in item.files:
            if not fm.is_encrypted:
                files.append(fm)
                continue
            try:
                moved = await self._decrypt_to_plaintext(item, fm, code)
            except NoteVaultError as exc:
                logger.error("item %s: file %s could not be made public: %s", item.id, fm.name, exc)
                failed.append(fm.name)
                break
            created.append(moved.storage_path)
            replaced.append(fm.storage_path)
            files.append(moved)

        if failed:
            await self._discard(item, Namespace.PLAINTEXT, created)
            raise MigrationError(failed_files=failed)

        patch = ItemPatch(visibility=Visibility.PUBLIC, files=files, encrypted_note=None)
        try:
            updated = await self.store.persist(item.id, patch)
        except StorageError as exc:
            await self._discard(item, Namespace.PLAINTEXT, created)
            raise MigrationError() from exc
        await self._discard(item, Namespace.CIPHERTEXT, replaced)
        logger.info("item %s made public (%d file(s) decrypted)", item.id, len(created))
        return MigrationResult(item=updated, direction=MigrationDirection.TO_PUBLIC, migrated_files=len(created))

    # --- Public -> Vaulted ---
    async def _encrypt_to_ciphertext(self, item: VaultedItem, fm: FileDescriptor, code: str) -> FileDescriptor:
        plain = await self.store.download_object(item.scope, Namespace.PLAINTEXT, fm.storage_path)
        sealed = await asyncio.to_thread(encrypt_file, plain, code, None, fm.mime_type)
        path = object_path(item.space_id, fm.name)
        await self.store.upload_object(item.scope, Namespace.CIPHERTEXT, path, sealed.ciphertext, sealed.mime_type, upsert=False)
        return FileDescriptor(
            name=fm.name,
            mime_type=sealed.mime_type,
            storage_path=path,
            nonce=sealed.nonce,
            salt=sealed.salt,
        )

    async def _vault_files(self, item: VaultedItem, code: str) -> Tuple[List[FileDescriptor], List[str], List[str], List[str]]:
        files: List[FileDescriptor] = []
        created: List[str] = []
        replaced: List[str] = []
        failed: List[str] = []
        for fm in item.files:
            if fm.is_encrypted:
                files.append(fm)
                continue
            try:
                moved = await self._encrypt_to_ciphertext(item, fm, code)
            except NoteVaultError as exc:
                failed.append(fm.name)
                if self.to_vaulted_policy == FailurePolicy.ALL_OR_NOTHING:
                    logger.error("item %s: file %s could not be vaulted: %s", item.id, fm.name, exc)
                    break
                logger.warning("item %s: dropping file %s that could not be vaulted: %s", item.id, fm.name, exc)
                continue
            created.append(moved.storage_path)
            replaced.append(fm.storage_path)
            files.append(moved)
        return files, created, replaced, failed

    async def to_vaulted(self, item: VaultedItem, code: Optional[str], private_note: Optional[str] = None) -> MigrationResult:
        code = await require_verified(self.verifier, item.scope, code)
        files, created, replaced, failed = await self._vault_files(item, code)

        if failed and self.to_vaulted_policy == FailurePolicy.ALL_OR_NOTHING:
            await self._discard(item, Namespace.CIPHERTEXT, created)
            raise MigrationError(failed_files=failed)

        updates = {"visibility": Visibility.VAULTED, "files": files}
        if private_note:
            updates["encrypted_note"] = await asyncio.to_thread(encrypt_text, private_note, code)
        try:
            updated = await self.store.persist(item.id, ItemPatch(**updates))
        except StorageError as exc:
            await self._discard(item, Namespace.CIPHERTEXT, created)
            raise MigrationError() from exc
        await self._discard(item, Namespace.PLAINTEXT, replaced)
        logger.info(
            "item %s vaulted (%d file(s) encrypted, %d dropped)", item.id, len(created), len(failed)
        )
        return MigrationResult(
            item=updated,
            direction=MigrationDirection.TO_VAULTED,
            migrated_files=len(created),
            dropped_files=failed,
        )
