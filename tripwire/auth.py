"""API key authentication for the admin endpoints via the x-api-key header."""

import hmac
import os

from fastapi import Security, HTTPException, status
from fastapi.security import APIKeyHeader
from dotenv import load_dotenv

load_dotenv()

API_KEY_NAME = "x-api-key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)
ADMIN_API_KEY: str = os.getenv("API_KEY", "")


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """Validate x-api-key. 401 if missing, 403 if wrong or no key is configured."""
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Please provide the 'x-api-key' header.",
        )

    if not ADMIN_API_KEY or not hmac.compare_digest(api_key.encode("utf-8"), ADMIN_API_KEY.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )

    return api_key
