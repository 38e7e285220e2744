"""Credential stores: where provider secrets come from."""

from __future__ import annotations

import logging
import os
from typing import Protocol, runtime_checkable

import httpx

from segue._http import DEFAULT_TIMEOUT_S
from segue.errors import AuthError, CredentialNotFoundError, TransientError

log = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    """Remote or local source of provider secrets."""

    async def get_credential(self, name: str) -> str:
        """Return the secret registered for *name*.

        Raises:
            CredentialNotFoundError: When no secret exists for *name*.
        """
        ...


def _env_var_for(name: str) -> str:
    return f"SEGUE_{name.upper().replace('-', '_')}_API_KEY"


class EnvKeyStore:
    """Read secrets from ``SEGUE_<NAME>_API_KEY`` environment variables.

    An explicit mapping takes precedence over the environment.
    """

    def __init__(self, overrides: dict[str, str] | None = None) -> None:
        self._overrides = {k.lower(): v for k, v in (overrides or {}).items() if v}

    async def get_credential(self, name: str) -> str:
        key = name.lower()
        if key in self._overrides:
            return self._overrides[key]
        env_var = _env_var_for(name)
        value = os.environ.get(env_var)
        if not value:
            raise CredentialNotFoundError(
                f"No credential configured for {name}",
                hint=f"Set {env_var} or pass the key in Config.",
            )
        return value

    def __repr__(self) -> str:
        return f"EnvKeyStore(overrides={sorted(self._overrides)})"


class SupabaseKeyStore:
    """Fetch secrets from an ``api_keys`` table behind a Supabase REST endpoint.

    Shape: ``GET {url}/rest/v1/api_keys?service=eq.<name>&select=key`` returning
    ``[{"key": "..."}]``. Caching is the signer's job; this class always asks
    the remote store.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._client = client
        self._timeout_s = timeout_s

    async def get_credential(self, name: str) -> str:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._anon_key}",
            "Content-Type": "application/json",
        }
        params = {"service": f"eq.{name}", "select": "key"}
        endpoint = f"{self._url}/rest/v1/api_keys"
        try:
            if self._client is not None:
                response = await self._client.get(endpoint, headers=headers, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.get(endpoint, headers=headers, params=params)
        except httpx.TransportError as e:
            raise TransientError(
                f"Key store unreachable while fetching {name} key: {e}",
                provider=name,
                phase="credentials",
            ) from e

        if response.status_code in (401, 403):
            raise AuthError(
                f"Key store rejected the anon key (status={response.status_code})",
                hint="Check SEGUE_KEY_STORE_ANON_KEY.",
                status_code=response.status_code,
                provider=name,
                phase="credentials",
            )
        if response.status_code != 200:
            raise TransientError(
                f"Key store returned status {response.status_code} for {name}",
                status_code=response.status_code,
                provider=name,
                phase="credentials",
            )

        try:
            rows = response.json()
        except ValueError as e:
            raise TransientError(
                f"Key store returned non-JSON body for {name}",
                provider=name,
                phase="credentials",
            ) from e

        if isinstance(rows, list):
            for row in rows:
                if isinstance(row, dict) and isinstance(row.get("key"), str) and row["key"]:
                    log.debug("Fetched %s key from key store", name)
                    return row["key"]
        raise CredentialNotFoundError(
            f"No API key found for service {name!r}",
            hint="Check that the api_keys table has a row for this service.",
        )

    def __repr__(self) -> str:
        return f"SupabaseKeyStore(url={self._url!r}, anon_key=[REDACTED])"
