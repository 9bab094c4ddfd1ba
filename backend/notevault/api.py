import base64
import binascii
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from pydantic import BaseModel

from notevault.core.errors import (
    ItemNotFoundError,
    MigrationError,
    NoteVaultError,
    OracleError,
    ValidationError,
    VerificationError,
)
from notevault.core.rotation import change_vault_code
from notevault.core.verifier import validate_new_code
from notevault.models import (
    CodeScope,
    MigrationResult,
    NewFile,
    OpenedItem,
    RotationReport,
    Space,
    VaultedItem,
    Visibility,
)
from notevault.services import Services, get_services

router = APIRouter()


# --- Payloads ---

class FilePayload(BaseModel):
    name: str
    mime_type: str = "application/octet-stream"
    data: str  # base64


class CreateItemPayload(BaseModel):
    scope: CodeScope
    space_id: str
    title: str = "Untitled"
    tags: List[str] = []
    notes: str = ""
    visibility: Visibility = Visibility.PUBLIC
    private_note: Optional[str] = None
    code: Optional[str] = None
    files: List[FilePayload] = []


class VisibilityPayload(BaseModel):
    visibility: Visibility
    code: Optional[str] = None
    private_note: Optional[str] = None


class RotatePayload(BaseModel):
    old: str
    new: str
    confirm: Optional[str] = None
    allow_partial: bool = False


# --- Helpers ---

def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="not signed in")
    return x_user_id


def _http_error(exc: NoteVaultError) -> HTTPException:
    if isinstance(exc, VerificationError):
        return HTTPException(status_code=401, detail="incorrect code")
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ItemNotFoundError):
        return HTTPException(status_code=404, detail="item not found")
    if isinstance(exc, MigrationError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, OracleError):
        return HTTPException(status_code=502, detail="vault code service unavailable")
    return HTTPException(status_code=500, detail=str(exc) or exc.kind)


def _decode_files(files: List[FilePayload]) -> List[NewFile]:
    decoded = []
    for f in files:
        try:
            data = base64.b64decode(f.data, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail=f"file {f.name!r} is not valid base64") from None
        decoded.append(NewFile(name=f.name, mime_type=f.mime_type, data=data))
    return decoded


async def _owned_item(svc: Services, item_id: str, user_id: str) -> VaultedItem:
    try:
        item = await svc.store.get_item(item_id)
    except NoteVaultError as exc:
        raise _http_error(exc)
    if item.owner_id != user_id:
        raise HTTPException(status_code=404, detail="item not found")
    return item


# --- Spaces ---
@router.get("/spaces", response_model=List[Space])
async def list_spaces(scope: CodeScope, user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    return await svc.store.list_owned_spaces(scope, user_id)


@router.post("/spaces", response_model=Space)
async def create_space(payload: Dict[str, Any] = Body(...), user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    try:
        scope = CodeScope(payload.get("scope"))
    except ValueError:
        raise HTTPException(status_code=400, detail="scope must be 'private' or 'workspace'")
    space = Space(scope=scope, owner_id=user_id, name=payload.get("name") or "Untitled")
    try:
        return await svc.store.put_space(space)
    except NoteVaultError as exc:
        raise _http_error(exc)


# --- Items ---
@router.get("/items", response_model=List[VaultedItem])
async def list_items(
    scope: CodeScope,
    visibility: Optional[Visibility] = None,
    user_id: str = Depends(current_user),
    svc: Services = Depends(get_services),
):
    return await svc.items(user_id).list_items(scope, user_id, visibility)


@router.post("/items", response_model=VaultedItem)
async def create_item(payload: CreateItemPayload, user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    owned = {s.id for s in await svc.store.list_owned_spaces(payload.scope, user_id)}
    if payload.space_id not in owned:
        raise HTTPException(status_code=404, detail="space not found")
    files = _decode_files(payload.files)
    try:
        return await svc.items(user_id).create_item(
            payload.scope,
            payload.space_id,
            user_id,
            title=payload.title,
            tags=payload.tags,
            notes=payload.notes,
            visibility=payload.visibility,
            private_note=payload.private_note,
            files=files,
            code=payload.code,
        )
    except NoteVaultError as exc:
        raise _http_error(exc)


@router.get("/items/{item_id}", response_model=VaultedItem)
async def get_item(item_id: str, user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    return await _owned_item(svc, item_id, user_id)


@router.post("/items/{item_id}/open", response_model=OpenedItem)
async def open_item(
    item_id: str,
    payload: Dict[str, Any] = Body(default={}),
    user_id: str = Depends(current_user),
    svc: Services = Depends(get_services),
):
    await _owned_item(svc, item_id, user_id)
    try:
        return await svc.items(user_id).open_item(
            item_id,
            (payload or {}).get("code"),
            user_id=user_id,
            remember=bool((payload or {}).get("remember")),
        )
    except NoteVaultError as exc:
        raise _http_error(exc)


@router.post("/items/{item_id}/visibility", response_model=MigrationResult)
async def set_visibility(
    item_id: str, payload: VisibilityPayload, user_id: str = Depends(current_user), svc: Services = Depends(get_services)
):
    await _owned_item(svc, item_id, user_id)
    try:
        return await svc.migrator(user_id).set_visibility(item_id, payload.visibility, payload.code, payload.private_note)
    except NoteVaultError as exc:
        raise _http_error(exc)


@router.post("/items/{item_id}/note", response_model=VaultedItem)
async def update_note(
    item_id: str,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
    svc: Services = Depends(get_services),
):
    await _owned_item(svc, item_id, user_id)
    try:
        return await svc.items(user_id).update_note(item_id, payload.get("private_note"), payload.get("code"))
    except NoteVaultError as exc:
        raise _http_error(exc)


@router.delete("/items/{item_id}")
async def delete_item(item_id: str, user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    await _owned_item(svc, item_id, user_id)
    try:
        await svc.items(user_id).delete_item(item_id)
    except NoteVaultError as exc:
        raise _http_error(exc)
    return {"status": "ok"}


# --- Vault codes ---
@router.get("/codes/{scope}")
async def get_code_status(scope: CodeScope, user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    try:
        has = await svc.verifier_for(user_id).has_code(scope)
    except NoteVaultError as exc:
        raise _http_error(exc)
    return {"scope": scope.value, "has_code": has}


@router.post("/codes/{scope}")
async def set_initial_code(
    scope: CodeScope,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(current_user),
    svc: Services = Depends(get_services),
):
    """First-time setup only; changing an existing code goes through /rotate."""
    verifier = svc.verifier_for(user_id)
    try:
        code = validate_new_code(str(payload.get("code") or ""), payload.get("confirm"))
        if await verifier.has_code(scope):
            raise HTTPException(status_code=409, detail="vault code already set")
        await verifier.set_code(scope, code)
    except NoteVaultError as exc:
        raise _http_error(exc)
    return {"status": "ok"}


@router.post("/codes/{scope}/rotate", response_model=RotationReport)
async def rotate_code(
    scope: CodeScope, payload: RotatePayload, user_id: str = Depends(current_user), svc: Services = Depends(get_services)
):
    engine = svc.rotation(user_id)
    try:
        report = await change_vault_code(
            engine, scope, user_id, payload.old, payload.new, payload.confirm, allow_partial=payload.allow_partial
        )
    except NoteVaultError as exc:
        raise _http_error(exc)
    svc.forget_codes(user_id)
    return report


@router.post("/session/lock")
async def lock_codes(user_id: str = Depends(current_user), svc: Services = Depends(get_services)):
    """Drop every code this user asked to have remembered."""
    svc.forget_codes(user_id)
    return {"status": "ok"}
