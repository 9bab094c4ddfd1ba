import asyncio
import base64
import hmac
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx
import jmespath

from notevault.core.crypto import derive_key, generate_salt
from notevault.core.errors import OracleError, ValidationError, VerificationError
from notevault.models import CodeScope

logger = logging.getLogger(__name__)

MIN_CODE_LEN = 6


class VaultCodeVerifier(Protocol):
    """Opaque oracle bound to one signed-in user."""

    async def verify(self, scope: CodeScope, code: str) -> bool: ...

    async def set_code(self, scope: CodeScope, code: str) -> None: ...

    async def has_code(self, scope: CodeScope) -> bool: ...


# --- Input rules ---

def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip()


def validate_new_code(new_code: str, confirm: Optional[str] = None, current: Optional[str] = None) -> str:
    """
    Apply the account-screen rules to a candidate code before anything is
    sent over the wire. Returns the normalized code.
    """
    code = normalize_code(new_code)
    if len(code) < MIN_CODE_LEN:
        raise ValidationError(f"vault code must be at least {MIN_CODE_LEN} characters")
    if any(ch.isspace() for ch in code):
        raise ValidationError("vault code must not contain whitespace")
    if confirm is not None and normalize_code(confirm) != code:
        raise ValidationError("vault codes do not match")
    if current is not None and normalize_code(current) == code:
        raise ValidationError("new vault code must differ from the current one")
    return code


async def require_verified(verifier: VaultCodeVerifier, scope: CodeScope, code: Optional[str]) -> str:
    candidate = normalize_code(code)
    if not candidate:
        raise ValidationError("vault code required")
    ok = await verifier.verify(CodeScope(scope), candidate)
    if not ok:
        logger.info("vault code verification failed for scope=%s", CodeScope(scope).value)
        raise VerificationError()
    return candidate


# --- Remote oracle ---

class RemoteVaultCodeVerifier:
    """
    Talks to an RPC backend that stores only salted hashes. Each call is a
    POST to ``{base_url}/rpc/{function}`` with a JSON body of ``p_*``
    arguments; the boolean answer is pulled out of the response with a
    JMESPath expression so wrapped payloads like ``{"data": true}`` work too.

    Workspace checks go to ``verify_workspace_code``, which also takes the
    workspace id (``p_workspace``). The backend has a single
    ``set_user_vault_code`` function for both scopes. ``has_user_vault_code``
    is not part of that backend; point ``rpc_names["has"]`` at whatever
    function answers it there.
    """

    RPC_NAMES = {
        "verify_private": "verify_user_private_code",
        "verify_workspace": "verify_workspace_code",
        "set_private": "set_user_vault_code",
        "set_workspace": "set_user_vault_code",
        "has": "has_user_vault_code",
    }

    def __init__(
        self,
        base_url: str,
        token: str = "",
        result_path: str = "@",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        *,
        workspace_id: Optional[str] = None,
        rpc_names: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.result_path = jmespath.compile(result_path or "@")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self.workspace_id = workspace_id
        self.rpc_names = {**self.RPC_NAMES, **(rpc_names or {})}

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _call(self, function: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/rpc/{function}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("vault code oracle call %s failed: %s", function, exc)
            raise OracleError(f"{function} failed") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise OracleError(f"{function} returned invalid JSON") from exc

    def _as_bool(self, function: str, body: Any) -> bool:
        value = self.result_path.search(body)
        if not isinstance(value, bool):
            raise OracleError(f"{function} returned a non-boolean result")
        return value

    async def verify(self, scope: CodeScope, code: str) -> bool:
        scope = CodeScope(scope)
        if scope == CodeScope.WORKSPACE:
            function = self.rpc_names["verify_workspace"]
            payload = {"p_workspace": self.workspace_id, "p_code": code}
        else:
            function = self.rpc_names["verify_private"]
            payload = {"p_code": code}
        return self._as_bool(function, await self._call(function, payload))

    async def set_code(self, scope: CodeScope, code: str) -> None:
        await self._call(self.rpc_names[f"set_{CodeScope(scope).value}"], {"p_code": code})

    async def has_code(self, scope: CodeScope) -> bool:
        function = self.rpc_names["has"]
        body = await self._call(function, {"p_scope": CodeScope(scope).value})
        return self._as_bool(function, body)


# --- Local oracle ---

class LocalCodeRegistry:
    """
    Server-side record of vault code hashes for the bundled service.
    Only ``{salt, hash}`` pairs are kept; plaintext codes never touch disk.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Dict[str, str]]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _atomic_write(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    @staticmethod
    def _key(user_id: str, scope: CodeScope) -> str:
        return f"{user_id}:{CodeScope(scope).value}"

    def set_code(self, user_id: str, scope: CodeScope, code: str):
        salt = generate_salt()
        digest = derive_key(code, salt)
        with self._lock:
            data = self._load()
            data[self._key(user_id, scope)] = {
                "salt": base64.b64encode(salt).decode("utf-8"),
                "hash": base64.b64encode(digest).decode("utf-8"),
            }
            self._atomic_write(data)
        logger.info("vault code updated for user=%s scope=%s", user_id, CodeScope(scope).value)

    def has_code(self, user_id: str, scope: CodeScope) -> bool:
        with self._lock:
            return self._key(user_id, scope) in self._load()

    def verify(self, user_id: str, scope: CodeScope, code: str) -> bool:
        with self._lock:
            record = self._load().get(self._key(user_id, scope))
        if not record or not code:
            return False
        salt = base64.b64decode(record["salt"])
        expected = base64.b64decode(record["hash"])
        return hmac.compare_digest(derive_key(code, salt), expected)


class RegistryVerifier:
    """Binds a :class:`LocalCodeRegistry` to one user behind the async protocol."""

    def __init__(self, registry: LocalCodeRegistry, user_id: str):
        self.registry = registry
        self.user_id = user_id

    async def verify(self, scope: CodeScope, code: str) -> bool:
        return await asyncio.to_thread(self.registry.verify, self.user_id, scope, code)

    async def set_code(self, scope: CodeScope, code: str) -> None:
        await asyncio.to_thread(self.registry.set_code, self.user_id, scope, code)

    async def has_code(self, scope: CodeScope) -> bool:
        return await asyncio.to_thread(self.registry.has_code, self.user_id, scope)
