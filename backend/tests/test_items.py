import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from notevault.core.code_cache import ExpiringCodeCache
from notevault.core.crypto import decrypt_text
from notevault.core.errors import ItemNotFoundError, StorageError, ValidationError, VerificationError
from notevault.core.items import ItemService
from notevault.models import CodeScope, Namespace, NewFile, Visibility

pytestmark = pytest.mark.anyio

CODE = "old-code-123"


def _files(**contents):
    return [NewFile(name=name.replace("_", "."), mime_type="text/plain", data=data) for name, data in contents.items()]


async def test_create_vaulted_item_encrypts_everything(store, verifier, space):
    service = ItemService(store, verifier)

    item = await service.create_item(
        space.scope, space.id, space.owner_id,
        title=" Passport ", visibility=Visibility.VAULTED, private_note="number 123",
        files=_files(scan_pdf=b"%PDF", back_png=b"\x89PNG"), code=CODE,
    )

    stored = store.items[item.id]
    assert stored.title == "Passport"
    assert decrypt_text(stored.encrypted_note, CODE) == "number 123"
    assert [f.name for f in stored.files] == ["scan.pdf", "back.png"]
    assert all(f.is_encrypted for f in stored.files)
    assert store.paths_in(space.scope, Namespace.PLAINTEXT) == []
    assert b"%PDF" not in store.get_object(space.scope, Namespace.CIPHERTEXT, stored.files[0].storage_path)


async def test_create_vaulted_item_needs_a_code_on_record(store, verifier, space):
    verifier.codes.clear()
    with pytest.raises(ValidationError, match="not set"):
        await ItemService(store, verifier).create_item(
            space.scope, space.id, space.owner_id, title="x", visibility=Visibility.VAULTED, code=CODE
        )


async def test_create_vaulted_item_with_wrong_code_uploads_nothing(store, verifier, space):
    with pytest.raises(VerificationError):
        await ItemService(store, verifier).create_item(
            space.scope, space.id, space.owner_id,
            title="x", visibility=Visibility.VAULTED, files=_files(a_txt=b"a"), code="wrong-code",
        )
    assert store.objects == {}
    assert store.items == {}


async def test_create_rejects_bad_input(store, verifier, space):
    service = ItemService(store, verifier)
    with pytest.raises(ValidationError):
        await service.create_item(space.scope, space.id, space.owner_id, title="   ")
    with pytest.raises(ValidationError):
        await service.create_item(space.scope, space.id, space.owner_id, title="x", private_note="secret")
    assert verifier.verify_calls == []


async def test_create_public_item_keeps_plaintext(store, verifier, space):
    item = await ItemService(store, verifier).create_item(
        space.scope, space.id, space.owner_id, title="Menu", notes="pizza", files=_files(menu_txt=b"pizza")
    )
    fm = store.items[item.id].files[0]
    assert not fm.is_encrypted
    assert store.get_object(space.scope, Namespace.PLAINTEXT, fm.storage_path) == b"pizza"
    assert verifier.verify_calls == []


async def test_failed_upload_removes_earlier_uploads(store, verifier, space):
    original = store.upload_object
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise StorageError("bucket unavailable")
        return await original(*args, **kwargs)

    store.upload_object = flaky
    with pytest.raises(StorageError):
        await ItemService(store, verifier).create_item(
            space.scope, space.id, space.owner_id, title="x", files=_files(a_txt=b"a", b_txt=b"b")
        )
    assert store.objects == {}
    assert store.items == {}


async def test_open_reports_file_errors_individually(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha", "b.txt": b"beta"}, code=CODE, note="hidden")
    broken = item.files[1].storage_path
    data = store.get_object(space.scope, Namespace.CIPHERTEXT, broken)
    store.put_object(space.scope, Namespace.CIPHERTEXT, broken, data[:-1] + bytes([data[-1] ^ 1]))

    opened = await ItemService(store, verifier).open_item(item.id, CODE)

    assert opened.note == "hidden"
    assert opened.files[0].data == b"alpha" and opened.files[0].error is None
    assert opened.files[1].data is None and opened.files[1].error


async def test_open_vaulted_requires_code(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha"}, code=CODE)
    service = ItemService(store, verifier)
    with pytest.raises(ValidationError):
        await service.open_item(item.id)
    with pytest.raises(VerificationError):
        await service.open_item(item.id, "wrong-code")


async def test_open_public_needs_no_code(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha"})
    opened = await ItemService(store, verifier).open_item(item.id)
    assert opened.files[0].data == b"alpha"
    assert verifier.verify_calls == []


async def test_remembered_code_is_reused_until_forgotten(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha"}, code=CODE)
    cache = ExpiringCodeCache(ttl_seconds=60)
    service = ItemService(store, verifier, code_cache=cache)

    await service.open_item(item.id, CODE, user_id="user-1", remember=True)
    again = await service.open_item(item.id, user_id="user-1")
    assert again.files[0].data == b"alpha"

    cache.forget_user("user-1")
    with pytest.raises(ValidationError):
        await service.open_item(item.id, user_id="user-1")


async def test_code_is_not_cached_without_opt_in(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha"}, code=CODE)
    cache = ExpiringCodeCache(ttl_seconds=60)
    await ItemService(store, verifier, code_cache=cache).open_item(item.id, CODE, user_id="user-1")
    assert len(cache) == 0


async def test_update_note_replaces_and_clears(store, verifier, space, seed):
    item = seed(space, {}, code=CODE, note="first")
    service = ItemService(store, verifier)

    updated = await service.update_note(item.id, "second", CODE)
    assert decrypt_text(updated.encrypted_note, CODE) == "second"

    cleared = await service.update_note(item.id, None, CODE)
    assert cleared.encrypted_note is None


async def test_update_note_on_public_item_is_rejected(store, verifier, space, seed):
    item = seed(space, {})
    with pytest.raises(ValidationError):
        await ItemService(store, verifier).update_note(item.id, "secret", CODE)


async def test_add_and_remove_files(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha"}, code=CODE)
    service = ItemService(store, verifier)

    updated = await service.add_files(item.id, _files(b_txt=b"beta"), CODE)
    assert [f.name for f in updated.files] == ["a.txt", "b.txt"]
    assert updated.files[1].is_encrypted

    first = updated.files[0].storage_path
    trimmed = await service.remove_files(item.id, [first])
    assert [f.name for f in trimmed.files] == ["b.txt"]
    assert store.get_object(space.scope, Namespace.CIPHERTEXT, first) is None


async def test_delete_item_removes_objects_and_record(store, verifier, space, seed):
    item = seed(space, {"a.txt": b"alpha", "b.txt": b"beta"}, code=CODE)
    service = ItemService(store, verifier)

    await service.delete_item(item.id)

    assert item.id not in store.items
    assert store.paths_in(space.scope, Namespace.CIPHERTEXT) == []
    with pytest.raises(ItemNotFoundError):
        await service.open_item(item.id, CODE)


async def test_list_items_by_visibility(store, verifier, space, seed):
    public = seed(space, {"a.txt": b"a"})
    vaulted = seed(space, {"b.txt": b"b"}, code=CODE)
    service = ItemService(store, verifier)

    assert {i.id for i in await service.list_items(CodeScope.PRIVATE, "user-1")} == {public.id, vaulted.id}
    assert [i.id for i in await service.list_items(CodeScope.PRIVATE, "user-1", Visibility.VAULTED)] == [vaulted.id]
    assert await service.list_items(CodeScope.WORKSPACE, "user-1") == []
