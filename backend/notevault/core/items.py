import asyncio
import logging
from typing import List, Optional

from notevault.core.code_cache import ExpiringCodeCache
from notevault.core.crypto import decrypt_file, decrypt_text, encrypt_file, encrypt_text
from notevault.core.errors import NoteVaultError, StorageError, ValidationError
from notevault.core.storage import ItemStore, object_path
from notevault.core.verifier import VaultCodeVerifier, require_verified
from notevault.models import (
    CodeScope,
    FileDescriptor,
    ItemPatch,
    Namespace,
    NewFile,
    OpenedFile,
    OpenedItem,
    VaultedItem,
    Visibility,
)

logger = logging.getLogger(__name__)


class ItemService:
    """Create, open, edit and delete items in either visibility."""

    def __init__(self, store: ItemStore, verifier: VaultCodeVerifier, code_cache: Optional[ExpiringCodeCache] = None):
        self.store = store
        self.verifier = verifier
        self.code_cache = code_cache

    def _resolve_code(self, item: VaultedItem, code: Optional[str], user_id: Optional[str]) -> Optional[str]:
        if code or self.code_cache is None or not user_id:
            return code
        return self.code_cache.recall(user_id, item.scope, item.id)

    async def _upload_files(self, scope: CodeScope, space_id: str, files: List[NewFile], code: Optional[str]) -> List[FileDescriptor]:
        uploaded: List[FileDescriptor] = []
        try:
            for nf in files:
                path = object_path(space_id, nf.name)
                if code:
                    sealed = await asyncio.to_thread(encrypt_file, nf.data, code, None, nf.mime_type)
                    await self.store.upload_object(scope, Namespace.CIPHERTEXT, path, sealed.ciphertext, sealed.mime_type, upsert=False)
                    uploaded.append(FileDescriptor(
                        name=nf.name, mime_type=sealed.mime_type, storage_path=path, nonce=sealed.nonce, salt=sealed.salt,
                    ))
                else:
                    await self.store.upload_object(scope, Namespace.PLAINTEXT, path, nf.data, nf.mime_type, upsert=False)
                    uploaded.append(FileDescriptor(name=nf.name, mime_type=nf.mime_type, storage_path=path))
        except NoteVaultError:
            await self._delete_objects(scope, uploaded)
            raise
        return uploaded

    async def _delete_objects(self, scope: CodeScope, files: List[FileDescriptor]):
        for namespace in (Namespace.PLAINTEXT, Namespace.CIPHERTEXT):
            paths = [f.storage_path for f in files if f.namespace == namespace and f.storage_path]
            if paths:
                await self.store.delete_objects(scope, namespace, paths)

    async def create_item(
        self,
        scope: CodeScope,
        space_id: str,
        owner_id: str,
        *,
        title: str = "Untitled",
        tags: Optional[List[str]] = None,
        notes: str = "",
        visibility: Visibility = Visibility.PUBLIC,
        private_note: Optional[str] = None,
        files: Optional[List[NewFile]] = None,
        code: Optional[str] = None,
    ) -> VaultedItem:
        scope = CodeScope(scope)
        visibility = Visibility(visibility)
        if not title.strip():
            raise ValidationError("title required")
        vault_code = None
        if visibility == Visibility.VAULTED:
            if not await self.verifier.has_code(scope):
                raise ValidationError("vault code not set")
            vault_code = await require_verified(self.verifier, scope, code)
        elif private_note:
            raise ValidationError("private notes require a vaulted item")

        descriptors = await self._upload_files(scope, space_id, list(files or []), vault_code)
        item = VaultedItem(
            scope=scope,
            space_id=space_id,
            owner_id=owner_id,
            title=title.strip(),
            tags=list(tags or []),
            notes=notes,
            visibility=visibility,
            files=descriptors,
        )
        if vault_code and private_note:
            item.encrypted_note = await asyncio.to_thread(encrypt_text, private_note, vault_code)
        try:
            created = await self.store.create_item(item)
        except StorageError:
            await self._delete_objects(scope, descriptors)
            raise
        logger.info("created %s item %s with %d file(s)", visibility.value, created.id, len(descriptors))
        return created

    async def open_item(
        self, item_id: str, code: Optional[str] = None, *, user_id: Optional[str] = None, remember: bool = False
    ) -> OpenedItem:
        """
        Return an item with its note and files readable. Vaulted items need a
        verified code; a file that fails to decrypt is reported on its own
        entry and does not stop the others.
        """
        item = await self.store.get_item(item_id)
        if not item.is_vaulted:
            opened = OpenedItem(item=item)
            for fm in item.files:
                try:
                    data = await self.store.download_object(item.scope, fm.namespace, fm.storage_path)
                    opened.files.append(OpenedFile(name=fm.name, mime_type=fm.mime_type, data=data))
                except StorageError as exc:
                    opened.files.append(OpenedFile(name=fm.name, mime_type=fm.mime_type, error=str(exc)))
            return opened

        code = await require_verified(self.verifier, item.scope, self._resolve_code(item, code, user_id))
        if remember and self.code_cache is not None and user_id:
            self.code_cache.remember(user_id, item.scope, code, item_id=item.id)

        opened = OpenedItem(item=item)
        if item.encrypted_note is not None:
            try:
                opened.note = await asyncio.to_thread(decrypt_text, item.encrypted_note, code)
            except NoteVaultError as exc:
                logger.warning("item %s: note decryption failed: %s", item.id, exc)
                opened.note_error = str(exc)
        for fm in item.files:
            try:
                data = await self.store.download_object(item.scope, fm.namespace, fm.storage_path)
                if fm.is_encrypted:
                    blob = await asyncio.to_thread(decrypt_file, data, fm.nonce, code, fm.mime_type, fm.salt)
                    data = blob.data
                opened.files.append(OpenedFile(name=fm.name, mime_type=fm.mime_type, data=data))
            except NoteVaultError as exc:
                logger.warning("item %s: file %s could not be opened: %s", item.id, fm.name, exc)
                opened.files.append(OpenedFile(name=fm.name, mime_type=fm.mime_type, error=str(exc)))
        return opened

    async def update_note(self, item_id: str, private_note: Optional[str], code: Optional[str]) -> VaultedItem:
        item = await self.store.get_item(item_id)
        if not item.is_vaulted:
            raise ValidationError("private notes require a vaulted item")
        code = await require_verified(self.verifier, item.scope, code)
        envelope = None
        if private_note:
            envelope = await asyncio.to_thread(encrypt_text, private_note, code)
        return await self.store.persist(item.id, ItemPatch(encrypted_note=envelope))

    async def add_files(self, item_id: str, files: List[NewFile], code: Optional[str] = None) -> VaultedItem:
        item = await self.store.get_item(item_id)
        vault_code = await require_verified(self.verifier, item.scope, code) if item.is_vaulted else None
        descriptors = await self._upload_files(item.scope, item.space_id, files, vault_code)
        try:
            return await self.store.persist(item.id, ItemPatch(files=item.files + descriptors))
        except StorageError:
            await self._delete_objects(item.scope, descriptors)
            raise

    async def remove_files(self, item_id: str, storage_paths: List[str]) -> VaultedItem:
        item = await self.store.get_item(item_id)
        doomed = [f for f in item.files if f.storage_path in set(storage_paths)]
        kept = [f for f in item.files if f.storage_path not in set(storage_paths)]
        updated = await self.store.persist(item.id, ItemPatch(files=kept))
        await self._delete_objects(item.scope, doomed)
        return updated

    async def delete_item(self, item_id: str):
        item = await self.store.get_item(item_id)
        try:
            await self._delete_objects(item.scope, item.files)
        except StorageError as exc:
            logger.error("item %s: storage cleanup failed, deleting record anyway: %s", item.id, exc)
        await self.store.delete_item(item.id)
        logger.info("deleted item %s", item.id)

    async def list_items(self, scope: CodeScope, owner_id: str, visibility: Optional[Visibility] = None) -> List[VaultedItem]:
        spaces = await self.store.list_owned_spaces(scope, owner_id)
        items = await self.store.list_items(scope, [s.id for s in spaces])
        if visibility is not None:
            items = [i for i in items if i.visibility == Visibility(visibility)]
        return items
