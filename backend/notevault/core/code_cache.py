import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from notevault.models import CodeScope

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60


@dataclass
class CachedCode:
    value: str
    expires_at: float


class ExpiringCodeCache:
    """
    Opt-in, time-boxed memory of a vault code per (user, scope, item).

    Entries are checked for expiry on every read and evicted when stale.
    Nothing is ever written to disk; instances are created per session and
    injected where needed.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CachedCode] = {}

    @staticmethod
    def key_for(user_id: str, scope: CodeScope, item_id: Optional[str] = None) -> str:
        scope = CodeScope(scope)
        return f"{scope.value}_vault_code:{user_id}:item:{item_id or '*'}"

    def remember(self, user_id: str, scope: CodeScope, code: str, item_id: Optional[str] = None, ttl_seconds: Optional[float] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        key = self.key_for(user_id, scope, item_id)
        self._entries[key] = CachedCode(value=code, expires_at=self._clock() + ttl)

    def recall(self, user_id: str, scope: CodeScope, item_id: Optional[str] = None) -> Optional[str]:
        key = self.key_for(user_id, scope, item_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            logger.debug("vault code cache entry expired: %s", key)
            del self._entries[key]
            return None
        return entry.value

    def forget(self, user_id: str, scope: CodeScope, item_id: Optional[str] = None):
        self._entries.pop(self.key_for(user_id, scope, item_id), None)

    def forget_user(self, user_id: str):
        marker = f":{user_id}:item:"
        for key in [k for k in self._entries if marker in k]:
            del self._entries[key]

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for e in self._entries.values() if e.expires_at >= now)
