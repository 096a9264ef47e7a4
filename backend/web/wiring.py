"""
Adapter wiring and the per-browser resolver registry.

Why:
    The resolver is a per-browser object: it holds one identity-provider
    session and reads one local store. The web app keeps one resolver per
    client cookie and builds the shared adapters (document store, driver
    directory, provider factory) once at startup from settings.

Security:
    The Supabase service role key only backs the server-side document store.
    Per-browser auth clients use the anon key.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable
import threading

import structlog

from shuttle_identity.config import Settings
from shuttle_identity.drivers import DriverDirectory
from shuttle_identity.memory import InMemoryAccounts, InMemoryDocumentStore, InMemoryIdentityProvider
from shuttle_identity.passwords import BcryptHasher
from shuttle_identity.ports import DocumentStore, IdentityProvider, LocalStore
from shuttle_identity.resolver import SessionResolver
from shuttle_identity.stores import FileLocalStore, MemoryLocalStore

logger = structlog.get_logger("shuttle_identity.web")


@dataclass
class Adapters:
    provider_factory: Callable[[], IdentityProvider]
    documents: DocumentStore
    drivers: DriverDirectory


def build_adapters(settings: Settings) -> Adapters:
    """Wire adapters for the configured backend (`memory` or `supabase`)."""
    hasher = BcryptHasher(rounds=settings.bcrypt_rounds)
    if settings.backend == "supabase":
        # Lazy import keeps the supabase client out of memory-backed runs.
        from shuttle_identity.supabase_adapters import (
            SupabaseDocumentStore,
            SupabaseIdentityProvider,
            make_client,
        )

        url = (settings.supabase_url or "").strip()
        anon = (settings.supabase_anon_key or "").strip()
        service = (settings.supabase_service_role_key or "").strip()
        if not url or not anon or not service:
            raise SystemExit("Supabase backend requires SHUTTLE_SUPABASE_URL, _ANON_KEY and _SERVICE_ROLE_KEY.")
        documents: DocumentStore = SupabaseDocumentStore(make_client(url, service, timeout=settings.supabase_timeout))

        def provider_factory() -> IdentityProvider:
            return SupabaseIdentityProvider(make_client(url, anon, timeout=settings.supabase_timeout))

        logger.info("adapters_wired", backend="supabase")
        return Adapters(provider_factory, documents, DriverDirectory(documents, hasher))

    accounts = InMemoryAccounts()
    documents = InMemoryDocumentStore()
    logger.info("adapters_wired", backend="memory")
    return Adapters(lambda: InMemoryIdentityProvider(accounts), documents, DriverDirectory(documents, hasher))


class ResolverRegistry:
    """Started SessionResolvers keyed by client id, least recently used first.

    Resolvers are created on first use by a route that needs one. Past
    `settings.max_resolvers` the oldest is closed and dropped; its client
    gets a fresh resolver (restored from its local store) on the next request.
    """

    def __init__(self, adapters: Adapters, settings: Settings):
        self.adapters = adapters
        self._settings = settings
        self._resolvers: OrderedDict[str, SessionResolver] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._resolvers)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._resolvers

    def _local_store(self, client_id: str) -> LocalStore:
        base = self._settings.local_store_dir
        if base is None:
            return MemoryLocalStore()
        return FileLocalStore(base / f"{client_id}.json")

    def get(self, client_id: str) -> SessionResolver:
        with self._lock:
            resolver = self._resolvers.get(client_id)
            if resolver is not None:
                self._resolvers.move_to_end(client_id)
                return resolver
            resolver = SessionResolver(
                self.adapters.provider_factory(),
                self.adapters.documents,
                self._local_store(client_id),
                drivers=self.adapters.drivers,
            )
            self._resolvers[client_id] = resolver
            resolver.resolve()
            while len(self._resolvers) > self._settings.max_resolvers:
                _, evicted = self._resolvers.popitem(last=False)
                evicted.close()
                logger.debug("resolver_evicted", live=len(self._resolvers))
            return resolver

    def close(self) -> None:
        with self._lock:
            for resolver in self._resolvers.values():
                resolver.close()
            self._resolvers.clear()


__all__ = ["Adapters", "ResolverRegistry", "build_adapters"]
