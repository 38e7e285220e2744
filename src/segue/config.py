"""Configuration: Frozen Config with explicit provider requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from segue._http import DEFAULT_TIMEOUT_S
from segue.errors import ConfigurationError
from segue.poll import PollPolicy
from segue.providers.base import DEFAULT_CLIP_SECONDS
from segue.retry import RetryPolicy

if TYPE_CHECKING:
    from segue.models import DurationMode, ProviderName

load_dotenv()

_PROVIDERS: tuple[str, ...] = ("kling", "pollo", "mock")

# Environment variable names for fields resolved when left as None.
_ENV_VARS: dict[str, str] = {
    "kling_access_key": "KLING_ACCESS_KEY",
    "kling_secret_key": "KLING_SECRET_KEY",
    "pollo_api_key": "POLLO_API_KEY",
    "key_store_url": "SEGUE_KEY_STORE_URL",
    "key_store_anon_key": "SEGUE_KEY_STORE_ANON_KEY",
}

_SECRET_FIELDS = (
    "kling_access_key",
    "kling_secret_key",
    "pollo_api_key",
    "key_store_anon_key",
)


def _default_cache_dir() -> Path:
    return Path(os.environ.get("SEGUE_CACHE_DIR") or Path.home() / ".cache" / "segue")


@dataclass(frozen=True)
class Config:
    """Immutable configuration for Segue orchestration.

    The provider is required. Segue does not pick one for you. Credentials are
    auto-resolved from standard environment variables (``.env`` is loaded at
    import).

    Example:
        config = Config(provider="kling")
        # keys come from KLING_ACCESS_KEY / KLING_SECRET_KEY
    """

    provider: ProviderName
    use_mock: bool = False
    cache_dir: Path = field(default_factory=_default_cache_dir)
    #: Complete clips beyond this many bytes are evicted oldest-first.
    cache_budget_bytes: int | None = None
    #: Defaults to ``<cache_dir>/tasks.json``.
    journal_path: Path | None = None
    request_concurrency: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll: PollPolicy = field(default_factory=PollPolicy)
    #: Per-provider duration policy; unlisted providers use ``round_up``.
    duration_modes: dict[str, DurationMode] = field(default_factory=dict)
    clip_seconds: int = DEFAULT_CLIP_SECONDS
    kling_access_key: str | None = None
    kling_secret_key: str | None = None
    pollo_api_key: str | None = None
    key_store_url: str | None = None
    key_store_anon_key: str | None = None
    #: Override provider base URLs (e.g. a regional Kling endpoint).
    base_urls: dict[str, str] = field(default_factory=dict)
    http_timeout_s: float = DEFAULT_TIMEOUT_S

    def __post_init__(self) -> None:
        """Auto-resolve credentials and validate configuration."""
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint="Supported providers: 'kling', 'pollo', 'mock'",
            )

        if self.request_concurrency < 1:
            raise ConfigurationError(
                f"request_concurrency must be ≥ 1, got {self.request_concurrency}",
                hint="This bounds how many generations run at once.",
            )
        if self.cache_budget_bytes is not None and self.cache_budget_bytes < 0:
            raise ConfigurationError(
                f"cache_budget_bytes must be ≥ 0, got {self.cache_budget_bytes}",
                hint="Use None for an unbounded cache.",
            )
        if self.http_timeout_s <= 0:
            raise ConfigurationError(
                f"http_timeout_s must be > 0, got {self.http_timeout_s}"
            )
        for name, mode in self.duration_modes.items():
            if mode not in ("round_up", "fixed_clip"):
                raise ConfigurationError(
                    f"Unknown duration mode {mode!r} for {name}",
                    hint="Use 'round_up' or 'fixed_clip'.",
                )

        object.__setattr__(self, "cache_dir", Path(self.cache_dir).expanduser())
        if self.journal_path is None:
            object.__setattr__(self, "journal_path", self.cache_dir / "tasks.json")
        else:
            object.__setattr__(self, "journal_path", Path(self.journal_path).expanduser())

        for attr, env_var in _ENV_VARS.items():
            if getattr(self, attr) is None:
                object.__setattr__(self, attr, os.environ.get(env_var) or None)

        if self.mock_only:
            return
        has_kling_keys = bool(self.kling_access_key and self.kling_secret_key)
        if self.provider == "kling" and not has_kling_keys:
            raise ConfigurationError(
                "Kling needs an access key and a secret key",
                hint="Set KLING_ACCESS_KEY and KLING_SECRET_KEY or pass them to Config.",
            )
        if self.provider == "pollo" and not (
            self.pollo_api_key or (self.key_store_url and self.key_store_anon_key)
        ):
            raise ConfigurationError(
                "Pollo needs an API key or a key store",
                hint=(
                    "Set POLLO_API_KEY, or SEGUE_KEY_STORE_URL and "
                    "SEGUE_KEY_STORE_ANON_KEY."
                ),
            )

    @property
    def mock_only(self) -> bool:
        """True when no real provider will be contacted."""
        return self.use_mock or self.provider == "mock"

    def duration_mode_for(self, provider: str) -> DurationMode:
        return self.duration_modes.get(provider, "round_up")

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        secrets = ", ".join(
            f"{name}={'[REDACTED]' if getattr(self, name) else None}"
            for name in _SECRET_FIELDS
        )
        return (
            f"Config(provider={self.provider!r}, use_mock={self.use_mock}, "
            f"cache_dir={str(self.cache_dir)!r}, {secrets})"
        )

    __repr__ = __str__
