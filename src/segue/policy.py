"""Billing policy: the one place that decides whether real providers are billed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class BillingPolicy(Protocol):
    """Injected capability consulted before any provider is chosen."""

    def should_bypass(self) -> bool:
        """True to route every request to the mock adapter."""
        ...


@dataclass(frozen=True)
class NoBilling:
    """Real providers, real billing."""

    def should_bypass(self) -> bool:
        return False


@dataclass(frozen=True)
class DemoBilling:
    """Demo mode: never reach a paid provider."""

    def should_bypass(self) -> bool:
        return True
