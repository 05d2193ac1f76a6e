# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

"""
DiscoveryClient component for fetching and caching OIDC discovery documents and JWKS, per issuer.
"""

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import anyio
import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from authlib.jose.rfc7517 import Key
from pydantic import ValidationError

from coreason_auth_broker.exceptions import (
    AuthBrokerError,
    DiscoveryError,
    IssuerMismatchError,
    UnknownSigningKeyError,
)
from coreason_auth_broker.models_internal import DiscoveryDocument
from coreason_auth_broker.transport import DEFAULT_MAX_RESPONSE_BYTES, safe_json_fetch
from coreason_auth_broker.utils.logger import logger

DISCOVERY_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class JWKSet:
    """
    Public keys of one issuer, indexed by key id. Replaced wholesale on every refresh.

    Attributes:
        keys (Mapping[str, Key]): Keys that carry a `kid`.
        anonymous (tuple[Key, ...]): Keys without a `kid`.
    """

    keys: Mapping[str, Key] = field(default_factory=dict)
    anonymous: tuple[Key, ...] = ()

    @classmethod
    def from_dict(cls, jwks: Mapping[str, Any]) -> "JWKSet":
        """
        Imports a JWKS document. Encryption keys and keys that fail to import are skipped.

        Raises:
            DiscoveryError: If the document has no `keys` list.
        """
        raw_keys = jwks.get("keys")
        if not isinstance(raw_keys, list):
            raise DiscoveryError("JWKS document does not contain a 'keys' list")

        keys: dict[str, Key] = {}
        anonymous: list[Key] = []
        for raw in raw_keys:
            if not isinstance(raw, dict) or raw.get("use") == "enc":
                continue
            try:
                key = JsonWebKey.import_key(raw)
            except (JoseError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unusable JWK (kid={raw.get('kid')!r}): {e}")
                continue
            kid = raw.get("kid")
            if isinstance(kid, str) and kid:
                keys[kid] = key
            else:
                anonymous.append(key)
        return cls(keys=keys, anonymous=tuple(anonymous))

    def find(self, key_id: str | None) -> Key | None:
        """
        Returns the key for `key_id`. A token without a key id only matches a set holding exactly one key.
        """
        if key_id:
            return self.keys.get(key_id)
        candidates = [*self.keys.values(), *self.anonymous]
        return candidates[0] if len(candidates) == 1 else None

    def __len__(self) -> int:
        return len(self.keys) + len(self.anonymous)


@dataclass
class _IssuerCache:
    lock: anyio.Lock
    document: DiscoveryDocument | None = None
    jwks: JWKSet | None = None
    fetched_at: float = 0.0
    last_forced_refresh: float = -math.inf
    last_failure: float = -math.inf
    attempts: int = 0
    last_error: AuthBrokerError | None = None


class DiscoveryClient:
    """
    Fetches and caches each issuer's discovery document and JWKS.

    Every issuer has its own lock, so refreshing one provider never blocks another. Concurrent
    callers for the same issuer wait on that lock and are served by the single fetch it guards.

    Attributes:
        client (httpx.AsyncClient): The HTTP client for provider calls.
        cache_ttl (float): Lifetime in seconds of cached material.
        refresh_cooldown (float): Minimum seconds between key-id-miss refreshes, and between retries
            of a failed refresh while stale material is served.
        timeout (float | None): Deadline in seconds for each outbound call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache_ttl: float = 12 * 60 * 60,
        refresh_cooldown: float = 60.0,
        timeout: float | None = None,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes
        self._clock = clock
        self._issuers: dict[str, _IssuerCache] = {}

    def _cache_for(self, issuer: str) -> _IssuerCache:
        # Called from async code only; dict insertion does not yield to the event loop
        cache = self._issuers.get(issuer)
        if cache is None:
            cache = _IssuerCache(lock=anyio.Lock())
            self._issuers[issuer] = cache
        return cache

    async def _fetch_discovery(self, issuer: str) -> DiscoveryDocument:
        """
        Fetches the discovery document and checks that it belongs to `issuer`.

        Raises:
            ProviderUnreachableError: If the document cannot be fetched.
            DiscoveryError: If the document is invalid.
            IssuerMismatchError: If the document names another issuer.
        """
        url = f"{issuer.rstrip('/')}{DISCOVERY_PATH}"
        data = await safe_json_fetch(self.client, url, timeout=self.timeout, max_bytes=self.max_response_bytes)
        try:
            document = DiscoveryDocument(**data)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid OIDC configuration from {url}: {e}") from e

        if document.issuer != issuer:
            raise IssuerMismatchError(
                f"Discovery document at {url} names issuer {document.issuer!r}, expected {issuer!r}"
            )
        return document

    async def _fetch_jwks(self, jwks_uri: str) -> JWKSet:
        data = await safe_json_fetch(self.client, jwks_uri, timeout=self.timeout, max_bytes=self.max_response_bytes)
        return JWKSet.from_dict(data)

    async def _refresh_critical_section(
        self, issuer: str, cache: _IssuerCache, force_refresh: bool, seen_attempts: int
    ) -> JWKSet:
        """
        Critical section for refreshing an issuer's material.
        Must be called while holding the issuer's lock.

        `seen_attempts` is the attempt counter observed before waiting for the lock. If a fetch
        completed in the meantime, its outcome is shared instead of fetching again.
        """
        if cache.attempts != seen_attempts:
            if cache.jwks is not None:
                return cache.jwks
            if cache.last_error is not None:
                raise cache.last_error

        now = self._clock()
        has_cache = cache.jwks is not None

        # Double check inside lock: another task may have refreshed while we waited
        if not force_refresh and has_cache and (now - cache.fetched_at) < self.cache_ttl:
            return cache.jwks  # type: ignore[return-value]

        if has_cache:
            if force_refresh and (now - cache.last_forced_refresh) < self.refresh_cooldown:
                logger.debug(f"JWKS refresh cooldown active for {issuer}. Returning cached keys.")
                return cache.jwks  # type: ignore[return-value]
            if not force_refresh and (now - cache.last_failure) < self.refresh_cooldown:
                return cache.jwks  # type: ignore[return-value]

        if force_refresh:
            cache.last_forced_refresh = now

        cache.last_error = None
        try:
            document = await self._fetch_discovery(issuer)
            jwks = await self._fetch_jwks(document.jwks_uri)
        except IssuerMismatchError as e:
            # Trust in the issuer is gone: cached keys are dropped, not served
            cache.document = None
            cache.jwks = None
            cache.last_error = e
            logger.error(f"Issuer mismatch while refreshing {issuer}, dropping cached keys: {e}")
            raise
        except AuthBrokerError as e:
            cache.last_error = e
            if not has_cache:
                raise
            cache.last_failure = now
            logger.warning(f"Refreshing discovery data for {issuer} failed, serving cached keys: {e}")
            return cache.jwks  # type: ignore[return-value]
        finally:
            # Tasks queued on the lock share this outcome instead of fetching again
            cache.attempts += 1

        cache.document = document
        cache.jwks = jwks
        cache.fetched_at = now
        logger.info(f"Loaded {len(jwks)} signing keys for {issuer}")
        return jwks

    async def get_jwks(self, issuer: str, force_refresh: bool = False) -> JWKSet:
        """
        Returns the issuer's JWKS, using the cache if valid.

        Args:
            issuer: The configured issuer URL.
            force_refresh: Bypass the TTL (still subject to the refresh cooldown).

        Returns:
            JWKSet: The issuer's public keys.

        Raises:
            ProviderUnreachableError: If the first fetch for the issuer fails on the network.
            DiscoveryError: If the first fetch returns invalid or foreign data.
        """
        cache = self._cache_for(issuer)

        # Double-checked locking pattern optimization (Check 1: No lock)
        if not force_refresh and cache.jwks is not None and (self._clock() - cache.fetched_at) < self.cache_ttl:
            return cache.jwks

        seen_attempts = cache.attempts
        async with cache.lock:
            return await self._refresh_critical_section(issuer, cache, force_refresh, seen_attempts)

    async def get_discovery(self, issuer: str) -> DiscoveryDocument:
        """
        Returns the issuer's discovery document, fetching it (together with the JWKS) if needed.
        """
        await self.get_jwks(issuer)
        document = self._cache_for(issuer).document
        if document is None:
            # Unreachable when get_jwks succeeds
            raise DiscoveryError(f"Failed to load OIDC configuration for {issuer}")
        return document

    async def get_signing_key(self, issuer: str, key_id: str | None) -> Key:
        """
        Resolves the public key for a token's key id, refreshing the JWKS once on a miss.

        Raises:
            UnknownSigningKeyError: If the key id is absent even after a refresh.
        """
        jwks = await self.get_jwks(issuer)
        key = jwks.find(key_id)
        if key is None:
            logger.info(f"Key id {key_id!r} not in cached JWKS for {issuer}, refreshing")
            jwks = await self.get_jwks(issuer, force_refresh=True)
            key = jwks.find(key_id)
        if key is None:
            raise UnknownSigningKeyError(f"No signing key with id {key_id!r} published by {issuer}")
        return key

    def invalidate(self, issuer: str | None = None) -> None:
        """Drops cached material for one issuer, or for all of them."""
        if issuer is None:
            self._issuers.clear()
        else:
            self._issuers.pop(issuer, None)
