import itertools
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from notevault.core.crypto import encrypt_file, encrypt_text
from notevault.core.errors import ItemNotFoundError, StorageError
from notevault.core.storage import object_path
from notevault.models import (
    CodeScope,
    FileDescriptor,
    ItemPatch,
    Namespace,
    Space,
    VaultedItem,
    Visibility,
)

OLD_CODE = "old-code-123"
NEW_CODE = "new-code-456"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeVerifier:
    """Accepts whatever code is on record; ``results`` forces answers in order."""

    def __init__(self, codes: Optional[Dict[CodeScope, str]] = None, results: Optional[List[bool]] = None):
        self.codes = dict(codes or {})
        self.results = list(results or [])
        self.verify_calls = []
        self.set_calls = []

    async def verify(self, scope, code):
        self.verify_calls.append((CodeScope(scope), code))
        if self.results:
            return self.results.pop(0)
        return self.codes.get(CodeScope(scope)) == code

    async def set_code(self, scope, code):
        self.set_calls.append((CodeScope(scope), code))
        self.codes[CodeScope(scope)] = code

    async def has_code(self, scope):
        return CodeScope(scope) in self.codes


class InMemoryItemStore:
    def __init__(self):
        self.spaces: List[Space] = []
        self.items: Dict[str, VaultedItem] = {}
        self.objects: Dict[tuple, bytes] = {}
        self.fail_downloads = set()
        self.fail_uploads = set()
        self.fail_persist = set()
        self.persist_calls = []

    def create_space(self, space: Space) -> Space:
        self.spaces.append(space)
        return space

    def put_object(self, scope, namespace, path, data):
        self.objects[(CodeScope(scope), Namespace(namespace), path)] = data

    def get_object(self, scope, namespace, path):
        return self.objects.get((CodeScope(scope), Namespace(namespace), path))

    def paths_in(self, scope, namespace):
        return sorted(p for (s, n, p) in self.objects if s == CodeScope(scope) and n == Namespace(namespace))

    async def list_owned_spaces(self, scope, owner_id):
        return [s for s in self.spaces if s.scope == CodeScope(scope) and s.owner_id == owner_id]

    async def list_items(self, scope, space_ids: Iterable[str]):
        wanted = set(space_ids)
        return [i.model_copy(deep=True) for i in self.items.values() if i.scope == CodeScope(scope) and i.space_id in wanted]

    async def list_vaulted_items(self, scope, space_ids):
        return [i for i in await self.list_items(scope, space_ids) if i.visibility == Visibility.VAULTED]

    async def get_item(self, item_id):
        if item_id not in self.items:
            raise ItemNotFoundError(item_id)
        return self.items[item_id].model_copy(deep=True)

    async def create_item(self, item):
        self.items[item.id] = item.model_copy(deep=True)
        return item

    async def persist(self, item_id, patch: ItemPatch):
        self.persist_calls.append((item_id, patch))
        if item_id in self.fail_persist:
            raise StorageError(f"persist failed for {item_id}")
        if item_id not in self.items:
            raise ItemNotFoundError(item_id)
        self.items[item_id] = patch.apply(self.items[item_id])
        return self.items[item_id].model_copy(deep=True)

    async def delete_item(self, item_id):
        if item_id not in self.items:
            raise ItemNotFoundError(item_id)
        del self.items[item_id]

    async def download_object(self, scope, namespace, path):
        if path in self.fail_downloads:
            raise StorageError(f"download failed for {path}")
        data = self.get_object(scope, namespace, path)
        if data is None:
            raise StorageError(f"object {path} not found")
        return data

    async def upload_object(self, scope, namespace, path, data, mime_type, upsert=True):
        if path in self.fail_uploads:
            raise StorageError(f"upload failed for {path}")
        key = (CodeScope(scope), Namespace(namespace), path)
        if key in self.objects and not upsert:
            raise StorageError(f"object {path} exists")
        self.objects[key] = bytes(data)

    async def delete_objects(self, scope, namespace, paths):
        for path in paths:
            self.objects.pop((CodeScope(scope), Namespace(namespace), path), None)


@pytest.fixture
def store():
    return InMemoryItemStore()


@pytest.fixture
def verifier():
    return FakeVerifier(codes={CodeScope.PRIVATE: OLD_CODE, CodeScope.WORKSPACE: OLD_CODE})


@pytest.fixture
def space(store):
    return store.create_space(Space(scope=CodeScope.PRIVATE, owner_id="user-1", name="Personal"))


@pytest.fixture
def seed(store):
    """Factory that writes an item and its objects straight into the fake store."""
    counter = itertools.count()

    def _seed(
        space: Space,
        files: Dict[str, bytes],
        code: Optional[str] = None,
        note: Optional[str] = None,
        title: str = "doc",
    ) -> VaultedItem:
        descriptors = []
        for name, data in files.items():
            path = object_path(space.id, name, now=1_700_000_000 + next(counter))
            if code:
                sealed = encrypt_file(data, code, mime_type="text/plain")
                store.put_object(space.scope, Namespace.CIPHERTEXT, path, sealed.ciphertext)
                descriptors.append(FileDescriptor(
                    name=name, mime_type="text/plain", storage_path=path, nonce=sealed.nonce, salt=sealed.salt,
                ))
            else:
                store.put_object(space.scope, Namespace.PLAINTEXT, path, data)
                descriptors.append(FileDescriptor(name=name, mime_type="text/plain", storage_path=path))
        item = VaultedItem(
            scope=space.scope,
            space_id=space.id,
            owner_id=space.owner_id,
            title=title,
            visibility=Visibility.VAULTED if code else Visibility.PUBLIC,
            encrypted_note=encrypt_text(note, code) if (code and note) else None,
            files=descriptors,
        )
        store.items[item.id] = item
        return item.model_copy(deep=True)

    return _seed
