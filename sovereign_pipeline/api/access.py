"""Origin allowlist, shared access code and CORS headers for the HTTP API."""

from __future__ import annotations

import hmac

ACCESS_CODE_HEADER = "X-OMEGA-CODE"


def cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "POST,OPTIONS,GET",
        "Access-Control-Allow-Headers": f"Content-Type,{ACCESS_CODE_HEADER}",
        "Access-Control-Max-Age": "86400",
        "Vary": "Origin",
    }


def pick_origin(origin: str | None, allowed: list[str]) -> str | None:
    """
    Resolve the origin to echo back, or None if the request must be refused.

    Non-browser callers (no Origin header) are always allowed as "*". An
    empty allowlist accepts any browser origin.
    """
    if not origin:
        return "*"
    if not allowed or origin in allowed:
        return origin
    return None


def access_code_valid(provided: str | None, expected: str) -> bool:
    if not expected:
        return True
    return hmac.compare_digest((provided or "").encode(), expected.encode())
