from __future__ import annotations

import time
from typing import Any

import jwt

REFRESH_SKEW_SECONDS = 10.0
FALLBACK_TOKEN_LIFETIME_SECONDS = 15 * 60


def read_unverified_claims(token: str) -> dict[str, Any]:
    decoded = jwt.decode(token, options={"verify_signature": False})
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    return decoded


def token_expiry(token: str) -> float | None:
    try:
        claims = read_unverified_claims(token)
    except (jwt.PyJWTError, ValueError):
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return float(exp)
    return None


def compute_expires_at(access_token: str, expires_in: Any, *, now: float | None = None) -> float:
    current = time.time() if now is None else now
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool) and expires_in > 0:
        return current + float(expires_in)
    from_claims = token_expiry(access_token)
    if from_claims is not None:
        return from_claims
    return current + FALLBACK_TOKEN_LIFETIME_SECONDS


def needs_refresh(expires_at: float, *, now: float | None = None) -> bool:
    current = time.time() if now is None else now
    return expires_at - current <= REFRESH_SKEW_SECONDS
