import asyncio
import json
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Any, Iterable, List, Optional, Protocol

from notevault.core.errors import ItemNotFoundError, StorageError
from notevault.models import (
    CodeScope,
    ItemPatch,
    Namespace,
    Space,
    VaultedItem,
    Visibility,
    bucket_for,
)

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.-]", re.ASCII)


def sanitize_file_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name or "") or "file"


def object_path(space_id: str, file_name: str, now: Optional[float] = None) -> str:
    """``{space_id}/{millis}-{sanitized name}``; the name part never carries a slash."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{space_id}/{millis}-{sanitize_file_name(file_name)}"


class ItemStore(Protocol):
    """Every database and object-storage call the engines make goes through here."""

    async def list_owned_spaces(self, scope: CodeScope, owner_id: str) -> List[Space]: ...

    async def list_items(self, scope: CodeScope, space_ids: Iterable[str]) -> List[VaultedItem]: ...

    async def list_vaulted_items(self, scope: CodeScope, space_ids: Iterable[str]) -> List[VaultedItem]: ...

    async def get_item(self, item_id: str) -> VaultedItem: ...

    async def create_item(self, item: VaultedItem) -> VaultedItem: ...

    async def persist(self, item_id: str, patch: ItemPatch) -> VaultedItem: ...

    async def delete_item(self, item_id: str) -> None: ...

    async def download_object(self, scope: CodeScope, namespace: Namespace, path: str) -> bytes: ...

    async def upload_object(
        self, scope: CodeScope, namespace: Namespace, path: str, data: bytes, mime_type: str, upsert: bool = True
    ) -> None: ...

    async def delete_objects(self, scope: CodeScope, namespace: Namespace, paths: Iterable[str]) -> None: ...


class FileSystemItemStore:
    """
    Item records as JSON files plus one directory per bucket for objects.

    Layout under ``base_dir``::

        spaces.json
        items/<item id>.json
        objects/<bucket>/<space id>/<millis>-<name>

    Writes go through a temp file + ``os.replace`` so a record is either the
    old or the new version, never half written. There is no transaction
    spanning objects and records.
    """

    def __init__(self, base_dir: str | Path | None = None):
        base_dir = base_dir or os.getenv("NOTEVAULT_DATA_DIR", "./vault-data")
        self.base_dir = Path(base_dir)
        self.items_dir = self.base_dir / "items"
        self.objects_dir = self.base_dir / "objects"
        self.items_dir.mkdir(parents=True, exist_ok=True)
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # --- Path helpers ---
    def _spaces_path(self) -> Path:
        return self.base_dir / "spaces.json"

    def _item_path(self, item_id: str) -> Path:
        if not item_id or "/" in item_id or item_id.startswith("."):
            raise ItemNotFoundError(f"item {item_id!r} not found")
        return self.items_dir / f"{item_id}.json"

    def _object_path(self, scope: CodeScope, namespace: Namespace, path: str) -> Path:
        parts = Path(path).parts
        if not parts or Path(path).is_absolute() or ".." in parts:
            raise StorageError(f"invalid object path {path!r}")
        return self.objects_dir / bucket_for(scope, namespace) / path

    def _atomic_write(self, target_path: Path, data: Any):
        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = target_path.with_name(target_path.name + ".tmp")
        if isinstance(data, (bytes, bytearray)):
            mode, payload, encoding = "wb", bytes(data), None
        elif hasattr(data, "model_dump_json"):
            mode, payload, encoding = "w", data.model_dump_json(indent=2), "utf-8"
        else:
            mode, payload, encoding = "w", json.dumps(data, indent=2), "utf-8"
        with open(tmp, mode, encoding=encoding) as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target_path)

    # --- Spaces ---
    def _load_spaces(self) -> List[Space]:
        path = self._spaces_path()
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return [Space.model_validate(s) for s in raw]

    def create_space(self, space: Space) -> Space:
        with self._lock:
            spaces = [s for s in self._load_spaces() if s.id != space.id]
            spaces.append(space)
            self._atomic_write(self._spaces_path(), [s.model_dump(mode="json") for s in spaces])
        return space

    def _list_owned_spaces(self, scope: CodeScope, owner_id: str) -> List[Space]:
        scope = CodeScope(scope)
        return [s for s in self._load_spaces() if s.scope == scope and s.owner_id == owner_id]

    # --- Records ---
    def _read_item(self, item_id: str) -> VaultedItem:
        path = self._item_path(item_id)
        if not path.exists():
            raise ItemNotFoundError(f"item {item_id!r} not found")
        return VaultedItem.model_validate_json(path.read_text(encoding="utf-8"))

    def _list_items(self, scope: CodeScope, space_ids: Iterable[str]) -> List[VaultedItem]:
        scope = CodeScope(scope)
        wanted = set(space_ids)
        items = []
        for path in self.items_dir.glob("*.json"):
            item = VaultedItem.model_validate_json(path.read_text(encoding="utf-8"))
            if item.scope == scope and item.space_id in wanted:
                items.append(item)
        items.sort(key=lambda i: (i.created_at, i.id))
        return items

    def _create_item(self, item: VaultedItem) -> VaultedItem:
        with self._lock:
            path = self._item_path(item.id)
            if path.exists():
                raise StorageError(f"item {item.id!r} already exists")
            self._atomic_write(path, item)
        return item

    def _persist(self, item_id: str, patch: ItemPatch) -> VaultedItem:
        with self._lock:
            updated = patch.apply(self._read_item(item_id))
            self._atomic_write(self._item_path(item_id), updated)
        return updated

    def _delete_item(self, item_id: str):
        with self._lock:
            path = self._item_path(item_id)
            if not path.exists():
                raise ItemNotFoundError(f"item {item_id!r} not found")
            path.unlink()

    # --- Objects ---
    def _download(self, scope: CodeScope, namespace: Namespace, path: str) -> bytes:
        target = self._object_path(scope, namespace, path)
        if not target.is_file():
            raise StorageError(f"object {path!r} not found in {bucket_for(scope, namespace)}")
        return target.read_bytes()

    def _upload(self, scope: CodeScope, namespace: Namespace, path: str, data: bytes, upsert: bool):
        target = self._object_path(scope, namespace, path)
        if target.exists() and not upsert:
            raise StorageError(f"object {path!r} already exists in {bucket_for(scope, namespace)}")
        self._atomic_write(target, data)

    def _delete_objects(self, scope: CodeScope, namespace: Namespace, paths: Iterable[str]):
        for path in paths:
            target = self._object_path(scope, namespace, path)
            if target.exists():
                target.unlink()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            raise
        except (OSError, ValueError) as exc:
            logger.error("item store operation %s failed: %s", fn.__name__, exc)
            raise StorageError(str(exc)) from exc

    # --- ItemStore protocol ---
    async def list_owned_spaces(self, scope: CodeScope, owner_id: str) -> List[Space]:
        return await self._run(self._list_owned_spaces, scope, owner_id)

    async def put_space(self, space: Space) -> Space:
        return await self._run(self.create_space, space)

    async def list_items(self, scope: CodeScope, space_ids: Iterable[str]) -> List[VaultedItem]:
        return await self._run(self._list_items, scope, list(space_ids))

    async def list_vaulted_items(self, scope: CodeScope, space_ids: Iterable[str]) -> List[VaultedItem]:
        items = await self.list_items(scope, space_ids)
        return [i for i in items if i.visibility == Visibility.VAULTED]

    async def get_item(self, item_id: str) -> VaultedItem:
        return await self._run(self._read_item, item_id)

    async def create_item(self, item: VaultedItem) -> VaultedItem:
        return await self._run(self._create_item, item)

    async def persist(self, item_id: str, patch: ItemPatch) -> VaultedItem:
        return await self._run(self._persist, item_id, patch)

    async def delete_item(self, item_id: str) -> None:
        await self._run(self._delete_item, item_id)

    async def download_object(self, scope: CodeScope, namespace: Namespace, path: str) -> bytes:
        return await self._run(self._download, scope, namespace, path)

    async def upload_object(
        self, scope: CodeScope, namespace: Namespace, path: str, data: bytes, mime_type: str, upsert: bool = True
    ) -> None:
        # content type is not kept on disk; descriptors carry it
        await self._run(self._upload, scope, namespace, path, data, upsert)

    async def delete_objects(self, scope: CodeScope, namespace: Namespace, paths: Iterable[str]) -> None:
        await self._run(self._delete_objects, scope, namespace, list(paths))
