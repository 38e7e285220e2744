"""Small HTTP-related constants shared across Segue.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Body fragments that turn an HTTP 400 into an authentication problem.
AUTH_HINT_FRAGMENTS: tuple[str, ...] = (
    "api key",
    "api_key",
    "apikey",
    "invalid key",
    "endpoint",
)

DEFAULT_TIMEOUT_S = 60.0
