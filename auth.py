from __future__ import annotations

import hashlib
import hmac
from typing import Any

import requests


class AuthProviderError(RuntimeError):
    """Raised when the auth provider cannot be reached or answers unexpectedly."""


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA512 of the raw request body, as Paystack signs it."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check a Paystack signature header against the untouched request bytes."""
    if not signature or not secret:
        return False
    signature = signature.strip()
    # A hex digest is pure ASCII; compare_digest refuses non-ASCII str.
    if not signature.isascii():
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected, signature)


def bearer_token(header: str | None) -> str | None:
    if not header or not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def fetch_auth_user(
    token: str,
    *,
    supabase_url: str,
    service_key: str,
    timeout: float = 10,
) -> dict[str, Any] | None:
    """Resolve an access token to its Supabase user, or None if the token is rejected."""
    try:
        resp = requests.get(
            f"{supabase_url.rstrip('/')}/auth/v1/user",
            headers={"apikey": service_key, "Authorization": f"Bearer {token}"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise AuthProviderError("Auth provider unavailable.") from exc

    if resp.status_code in {401, 403}:
        return None
    if resp.status_code >= 400:
        raise AuthProviderError(f"Auth provider error: {resp.status_code}")

    user = resp.json()
    if not isinstance(user, dict) or not user.get("id"):
        return None
    return user
