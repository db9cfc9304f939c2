"""
Credentials: one opaque secret, two header styles.

A key starting with ``rsk_`` is an API key sent as ``x-api-key``; anything
else is a legacy JWT sent as ``Authorization: Bearer``. The style is chosen
once, when the credential is loaded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

API_KEY_PREFIX = "rsk_"


@dataclass(frozen=True)
class ApiKey:
    secret: str

    style = "api_key"

    def headers(self) -> Dict[str, str]:
        return {"x-api-key": self.secret}


@dataclass(frozen=True)
class Bearer:
    secret: str

    style = "bearer"

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret}"}


Credentials = ApiKey | Bearer


def load_credentials(raw: str | None) -> Credentials:
    """Build the credential variant from its prefix. Raises ValueError if empty."""
    secret = (raw or "").strip()
    if not secret:
        raise ValueError("No credentials. Set REFINORE_API_KEY (or legacy REFINORE_AUTH_TOKEN)")
    if secret.startswith(API_KEY_PREFIX):
        return ApiKey(secret)
    return Bearer(secret)


def redact(text: str, creds: Credentials | None, keep: int = 4) -> str:
    """Replace the secret (if present) in text with a short masked form."""
    if not text or creds is None:
        return text
    masked = creds.secret[:keep] + "***"
    return text.replace(creds.secret, masked)
