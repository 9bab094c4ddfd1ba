from pathlib import Path
from typing import Dict, Optional

from notevault.config import Settings
from notevault.core.code_cache import ExpiringCodeCache
from notevault.core.items import ItemService
from notevault.core.migration import FailurePolicy, VisibilityMigrator
from notevault.core.rotation import RotationEngine
from notevault.core.storage import FileSystemItemStore
from notevault.core.verifier import LocalCodeRegistry, RegistryVerifier, RemoteVaultCodeVerifier


class Services:
    """Wires the store, the oracle and the engines for one data directory."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = FileSystemItemStore(settings.data_dir)
        self.registry = LocalCodeRegistry(Path(settings.data_dir) / "codes.json")
        # one cache per signed-in user, dropped on rotation; never written to disk
        self._code_caches: Dict[str, ExpiringCodeCache] = {}

    def code_cache_for(self, user_id: str) -> ExpiringCodeCache:
        cache = self._code_caches.get(user_id)
        if cache is None:
            cache = ExpiringCodeCache(ttl_seconds=self.settings.code_ttl_seconds)
            self._code_caches[user_id] = cache
        return cache

    def forget_codes(self, user_id: str):
        cache = self._code_caches.pop(user_id, None)
        if cache is not None:
            cache.clear()

    def verifier_for(self, user_id: str):
        if self.settings.oracle_url:
            return RemoteVaultCodeVerifier(
                self.settings.oracle_url,
                token=self.settings.oracle_token,
                result_path=self.settings.oracle_result_path,
                workspace_id=self.settings.oracle_workspace_id or None,
                rpc_names={"has": self.settings.oracle_has_rpc},
            )
        return RegistryVerifier(self.registry, user_id)

    def items(self, user_id: str) -> ItemService:
        return ItemService(self.store, self.verifier_for(user_id), code_cache=self.code_cache_for(user_id))

    def migrator(self, user_id: str) -> VisibilityMigrator:
        return VisibilityMigrator(
            self.store,
            self.verifier_for(user_id),
            to_vaulted_policy=FailurePolicy(self.settings.to_vaulted_policy),
        )

    def rotation(self, user_id: str) -> RotationEngine:
        return RotationEngine(self.store, self.verifier_for(user_id))


services: Optional[Services] = None


def get_services() -> Services:
    global services
    if services is None:
        services = Services(Settings.from_env())
    return services


def swap_services(settings: Settings) -> Services:
    """
    Replace the global services with ones built from new settings
    (e.g. pointing at another data directory).
    """
    global services
    services = Services(settings)
    return services
