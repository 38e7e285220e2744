"""Configuration boundary tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from segue.config import Config
from segue.errors import ConfigurationError
from segue.models import GenerationRequest, QualityTier
from segue.policy import BillingPolicy, DemoBilling, NoBilling

pytestmark = pytest.mark.unit


def test_config_creation_with_mock_mode(tmp_path: Path) -> None:
    """Mock mode needs no credentials at all."""
    cfg = Config(provider="kling", use_mock=True, cache_dir=tmp_path)
    assert cfg.mock_only
    assert cfg.journal_path == tmp_path / "tasks.json"


def test_config_auto_resolves_kling_keys_from_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """Kling keys should be auto-resolved from environment."""
    monkeypatch.setenv("KLING_ACCESS_KEY", "env-ak")
    monkeypatch.setenv("KLING_SECRET_KEY", "env-sk")

    cfg = Config(provider="kling", cache_dir=tmp_path)

    assert cfg.kling_access_key == "env-ak"
    assert cfg.kling_secret_key == "env-sk"


def test_explicit_key_takes_precedence(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """An explicit key should override env."""
    monkeypatch.setenv("POLLO_API_KEY", "env-key")

    cfg = Config(provider="pollo", pollo_api_key="explicit-key", cache_dir=tmp_path)

    assert cfg.pollo_api_key == "explicit-key"


def test_missing_kling_keys_raise_clear_error(tmp_path: Path) -> None:
    """Kling without both keys fails at construction with a hint."""
    with pytest.raises(ConfigurationError) as exc_info:
        Config(provider="kling", kling_access_key="ak", cache_dir=tmp_path)
    assert exc_info.value.hint is not None
    assert "KLING_SECRET_KEY" in exc_info.value.hint


def test_pollo_accepts_a_key_store_instead_of_a_key(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """Pollo can resolve its key remotely."""
    monkeypatch.setenv("SEGUE_KEY_STORE_URL", "https://keys.example.test")
    monkeypatch.setenv("SEGUE_KEY_STORE_ANON_KEY", "anon")

    cfg = Config(provider="pollo", cache_dir=tmp_path)

    assert cfg.pollo_api_key is None
    assert cfg.key_store_url == "https://keys.example.test"


def test_missing_pollo_credentials_raise(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Pollo"):
        Config(provider="pollo", cache_dir=tmp_path)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"provider": "runway"},
        {"provider": "mock", "request_concurrency": 0},
        {"provider": "mock", "cache_budget_bytes": -1},
        {"provider": "mock", "http_timeout_s": 0},
        {"provider": "mock", "duration_modes": {"kling": "stretch"}},
    ],
)
def test_invalid_values_are_rejected(kwargs: dict, tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        Config(cache_dir=tmp_path, **kwargs)


def test_cache_dir_defaults_to_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv("SEGUE_CACHE_DIR", str(tmp_path / "clips"))
    cfg = Config(provider="mock")
    assert cfg.cache_dir == tmp_path / "clips"
    assert cfg.journal_path == tmp_path / "clips" / "tasks.json"


def test_duration_mode_is_per_provider(tmp_path: Path) -> None:
    cfg = Config(
        provider="mock", duration_modes={"pollo": "fixed_clip"}, cache_dir=tmp_path
    )
    assert cfg.duration_mode_for("pollo") == "fixed_clip"
    assert cfg.duration_mode_for("kling") == "round_up"


def test_str_and_repr_redact_secrets(tmp_path: Path) -> None:
    """Secrets never appear in the string forms."""
    cfg = Config(
        provider="kling",
        kling_access_key="ak-very-secret",
        kling_secret_key="sk-very-secret",
        cache_dir=tmp_path,
    )
    for rendered in (str(cfg), repr(cfg)):
        assert "very-secret" not in rendered
        assert "[REDACTED]" in rendered


def test_billing_policies() -> None:
    assert isinstance(NoBilling(), BillingPolicy)
    assert NoBilling().should_bypass() is False
    assert DemoBilling().should_bypass() is True


def test_request_validation() -> None:
    """Requests reject blank prompts and non-positive durations."""
    with pytest.raises(ConfigurationError):
        GenerationRequest("   ")
    with pytest.raises(ConfigurationError):
        GenerationRequest("p", duration_seconds=0)
    assert GenerationRequest("p", quality_tier="Pro").quality_tier is QualityTier.PRO
