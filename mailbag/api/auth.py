"""
Optional API key check for the mail and contact routes.

When API_KEY is unset the API is open, which is how the web client runs in
local development. Once set, every router requires a matching X-API-Key.
"""
import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from mailbag.core.config import get_settings

API_KEY_HEADER = "X-API-Key"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _key_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def verify_api_key(presented: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """
    Router dependency enforcing the configured API key.

    Returns:
        The accepted key, or None when the API is running without one

    Raises:
        HTTPException: 401 without a key, 403 with the wrong one
    """
    expected = get_settings().api_key
    if not expected:
        return None

    if not presented:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{API_KEY_HEADER} header required",
        )
    if not _key_matches(presented, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="API key not accepted")
    return presented
