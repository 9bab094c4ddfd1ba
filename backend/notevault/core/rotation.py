import asyncio
import inspect
import logging
from enum import Enum
from typing import Dict, List, Optional

from notevault.core.crypto import decrypt_file, decrypt_text, encrypt_file, encrypt_text
from notevault.core.errors import StorageError, ValidationError
from notevault.core.storage import ItemStore
from notevault.core.tasks import CancelToken, OrderedTaskQueue, ProgressCallback, RetryPolicy
from notevault.core.verifier import VaultCodeVerifier, normalize_code, require_verified, validate_new_code
from notevault.models import (
    CodeScope,
    FileDescriptor,
    ItemPatch,
    Namespace,
    RotationFailure,
    RotationReport,
    VaultedItem,
)

logger = logging.getLogger(__name__)


class RotationState(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    ROTATING = "rotating"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RotationEngine:
    """
    Re-encrypts every vaulted note and file a user owns in one scope from
    ``old_code`` to ``new_code``.

    Items are processed one at a time through an :class:`OrderedTaskQueue`.
    A failing item is recorded and skipped; anything already overwritten for
    that item is put back so it stays readable with the old code.
    """

    def __init__(
        self,
        store: ItemStore,
        verifier: VaultCodeVerifier,
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.retry_policy = retry_policy or RetryPolicy()
        self.state = RotationState.IDLE
        self.progress = (0, 0)

    async def _collect_items(self, scope: CodeScope, owner_id: str) -> List[VaultedItem]:
        spaces = await self.store.list_owned_spaces(scope, owner_id)
        space_ids = [s.id for s in spaces]
        if not space_ids:
            return []
        return await self.store.list_vaulted_items(scope, space_ids)

    async def _rotate_file(
        self, scope: CodeScope, fm: FileDescriptor, old_code: str, new_code: str, originals: Dict[str, bytes]
    ) -> FileDescriptor:
        encrypted = await self.store.download_object(scope, Namespace.CIPHERTEXT, fm.storage_path)
        plain = await asyncio.to_thread(decrypt_file, encrypted, fm.nonce, old_code, fm.mime_type, fm.salt)
        rotated = await asyncio.to_thread(encrypt_file, plain.data, new_code, None, plain.mime_type)
        originals[fm.storage_path] = encrypted
        await self.store.upload_object(
            scope, Namespace.CIPHERTEXT, fm.storage_path, rotated.ciphertext, plain.mime_type, upsert=True
        )
        return fm.model_copy(update={"nonce": rotated.nonce, "salt": rotated.salt})

    async def _restore(self, scope: CodeScope, item: VaultedItem, originals: Dict[str, bytes]):
        for path, data in originals.items():
            try:
                await self.store.upload_object(scope, Namespace.CIPHERTEXT, path, data, "", upsert=True)
            except StorageError as exc:
                logger.error("could not restore %s for item %s: %s", path, item.id, exc)

    async def _rotate_item(self, item: VaultedItem, old_code: str, new_code: str) -> VaultedItem:
        scope = item.scope
        updates = {}
        if item.encrypted_note is not None:
            note = await asyncio.to_thread(decrypt_text, item.encrypted_note, old_code)
            updates["encrypted_note"] = await asyncio.to_thread(encrypt_text, note, new_code)

        originals: Dict[str, bytes] = {}
        files: List[FileDescriptor] = []
        try:
            for fm in item.files:
                if not fm.is_encrypted or not fm.storage_path:
                    files.append(fm)
                    continue
                files.append(await self._rotate_file(scope, fm, old_code, new_code, originals))
            updates["files"] = files
            return await self.store.persist(item.id, ItemPatch(**updates))
        except Exception:
            if originals:
                await self._restore(scope, item, originals)
            raise

    def _set_progress(self, done: int, total: int):
        self.progress = (done, total)

    async def rotate(
        self,
        scope: CodeScope,
        owner_id: str,
        old_code: str,
        new_code: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> RotationReport:
        scope = CodeScope(scope)
        old_code = normalize_code(old_code)
        new_code = normalize_code(new_code)
        if not old_code or not new_code:
            raise ValidationError("old and new vault codes required")

        async def progress(p):
            self._set_progress(p.done, p.total)
            if on_progress:
                ret = on_progress(p)
                if inspect.isawaitable(ret):
                    await ret

        self.state = RotationState.VERIFYING
        # any exception in here leaves the engine FAILED
        try:
            await require_verified(self.verifier, scope, old_code)
            items = await self._collect_items(scope, owner_id)
            total = len(items)
            self.state = RotationState.ROTATING
            self._set_progress(0, total)
            logger.info("rotating %d vaulted item(s) for user=%s scope=%s", total, owner_id, scope.value)

            queue = OrderedTaskQueue(on_progress=progress, cancel_token=cancel_token, retry_policy=self.retry_policy)
            for item in items:
                queue.add(item.id, lambda item=item: self._rotate_item(item, old_code, new_code))
            result = await queue.run()
        except Exception:
            self.state = RotationState.FAILED
            raise

        report = RotationReport(
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            total=total,
            cancelled=result.cancelled,
            failures=[
                RotationFailure(
                    item_id=o.key,
                    error_kind=getattr(o.error, "kind", type(o.error).__name__),
                    message=str(o.error),
                )
                for o in result.failed
            ],
        )
        self.state = RotationState.CANCELLED if report.cancelled else RotationState.DONE
        logger.info(
            "rotation finished for user=%s scope=%s: %d ok, %d failed, %d total%s",
            owner_id, scope.value, report.succeeded, report.failed, report.total,
            " (cancelled)" if report.cancelled else "",
        )
        return report


async def change_vault_code(
    engine: RotationEngine,
    scope: CodeScope,
    owner_id: str,
    old_code: str,
    new_code: str,
    confirm_code: Optional[str] = None,
    *,
    allow_partial: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancelToken] = None,
) -> RotationReport:
    """
    Full code-change flow: validate, rotate, then flip the stored hash.

    The hash only moves to ``new_code`` when every item rotated, unless
    ``allow_partial`` is set; otherwise items that failed would become
    unreadable with the code on record.
    """
    new_code = validate_new_code(new_code, confirm_code, current=old_code)
    report = await engine.rotate(
        scope, owner_id, old_code, new_code, on_progress=on_progress, cancel_token=cancel_token
    )
    if report.complete or (allow_partial and not report.cancelled):
        await engine.verifier.set_code(CodeScope(scope), new_code)
        logger.info("vault code switched for user=%s scope=%s", owner_id, CodeScope(scope).value)
    else:
        logger.warning(
            "vault code left unchanged for user=%s scope=%s: %d of %d item(s) not rotated",
            owner_id, CodeScope(scope).value, report.total - report.succeeded, report.total,
        )
    return report

