"""Auth signers: per-provider request credentials.

Two strategies exist: a static API key fetched once from a credential store,
and a short-lived HS256 token minted locally from an access/secret key pair.
Both cache in memory only and regenerate under a per-signer lock, so
concurrent callers never race each other into the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import jwt

from segue.errors import AuthError, ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from segue.credentials import CredentialStore

log = logging.getLogger(__name__)

TOKEN_TTL_S = 1800
TOKEN_REFRESH_MARGIN_S = 300
TOKEN_NOT_BEFORE_SKEW_S = 5


@runtime_checkable
class AuthSigner(Protocol):
    """Produces the headers an adapter attaches to each provider call."""

    async def headers(self) -> dict[str, str]:
        """Return authentication headers, refreshing credentials if needed."""
        ...

    def invalidate(self) -> None:
        """Forget any cached credential so the next call re-acquires it."""
        ...


class StaticKeySigner:
    """API key fetched once from a credential store and held for the process.

    The key is never written to disk and never appears in ``repr()``.
    """

    def __init__(
        self,
        store: CredentialStore,
        name: str,
        *,
        header: str = "x-api-key",
        scheme: str | None = None,
    ) -> None:
        self._store = store
        self._name = name
        self._header = header
        self._scheme = scheme
        self._key: str | None = None
        self._lock = asyncio.Lock()

    async def _key_value(self) -> str:
        if self._key is not None:
            return self._key
        async with self._lock:
            if self._key is None:
                log.debug("Fetching %s credential", self._name)
                self._key = await self._store.get_credential(self._name)
            return self._key

    async def headers(self) -> dict[str, str]:
        key = await self._key_value()
        value = f"{self._scheme} {key}" if self._scheme else key
        return {self._header: value}

    def invalidate(self) -> None:
        self._key = None

    def __repr__(self) -> str:
        return (
            f"StaticKeySigner(name={self._name!r}, header={self._header!r}, "
            "key=[REDACTED])"
        )


class JWTSigner:
    """HS256 bearer token: ``iss`` = access key, 30 min lifetime, 5 s skew.

    Tokens are reused until they are within five minutes of expiry.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        *,
        ttl_s: int = TOKEN_TTL_S,
        refresh_margin_s: int = TOKEN_REFRESH_MARGIN_S,
        not_before_skew_s: int = TOKEN_NOT_BEFORE_SKEW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_key or not secret_key:
            raise ConfigurationError(
                "Token signing needs both an access key and a secret key",
                hint="Set KLING_ACCESS_KEY and KLING_SECRET_KEY.",
            )
        if refresh_margin_s >= ttl_s:
            raise ConfigurationError(
                "refresh_margin_s must be smaller than ttl_s",
                hint="Otherwise every call would mint a fresh token.",
            )
        self._access_key = access_key
        self._secret_key = secret_key
        self._ttl_s = ttl_s
        self._refresh_margin_s = refresh_margin_s
        self._skew_s = not_before_skew_s
        self._clock = clock
        # Replaced as a pair so readers never see a token with another's expiry.
        self._cached: tuple[str, float] | None = None
        self._lock = asyncio.Lock()
        self.mint_count = 0

    def _fresh(self, now: float) -> str | None:
        cached = self._cached
        if cached is None:
            return None
        token, expires_at = cached
        if expires_at - now > self._refresh_margin_s:
            return token
        return None

    def _mint(self, now: float) -> tuple[str, float]:
        issued = int(now)
        expires_at = issued + self._ttl_s
        claims = {
            "iss": self._access_key,
            "exp": expires_at,
            "nbf": issued - self._skew_s,
        }
        try:
            token = jwt.encode(
                claims,
                self._secret_key,
                algorithm="HS256",
                headers={"typ": "JWT"},
            )
        except jwt.PyJWTError as e:
            raise AuthError("Failed to sign provider token", phase="auth") from e
        self.mint_count += 1
        log.debug("Minted provider token (expires in %ds)", self._ttl_s)
        return token, float(expires_at)

    async def token(self) -> str:
        """Return a token valid for at least the refresh margin."""
        token = self._fresh(self._clock())
        if token is not None:
            return token
        async with self._lock:
            # Another caller may have refreshed while we waited.
            now = self._clock()
            token = self._fresh(now)
            if token is None:
                self._cached = self._mint(now)
                token = self._cached[0]
            return token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.token()}"}

    def invalidate(self) -> None:
        self._cached = None

    def __repr__(self) -> str:
        return "JWTSigner(access_key=[REDACTED], secret_key=[REDACTED])"


class CredentialCache:
    """Explicitly constructed holder of one signer per provider.

    Injected into the orchestrator instead of living in module globals, so
    its lifetime is the owner's lifetime.
    """

    def __init__(self, signers: dict[str, AuthSigner] | None = None) -> None:
        self._signers: dict[str, AuthSigner] = dict(signers or {})

    def register(self, provider: str, signer: AuthSigner) -> None:
        self._signers[provider] = signer

    def signer_for(self, provider: str) -> AuthSigner:
        signer = self._signers.get(provider)
        if signer is None:
            raise ConfigurationError(
                f"No credentials configured for provider {provider!r}",
                hint="Register a signer for this provider or check Config.",
            )
        return signer

    def __contains__(self, provider: object) -> bool:
        return provider in self._signers

    def clear(self) -> None:
        """Drop every cached credential; signers re-acquire on next use."""
        for signer in self._signers.values():
            signer.invalidate()
