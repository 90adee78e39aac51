"""Fixed-window rate limiter keyed by hashed IP.

Runs before any classification. A store outage lets requests through:
nothing in the countermeasure pipeline may answer 5xx to a request that
has not been classified hostile.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi.responses import JSONResponse

from tripwire.store import KVStore

load_dotenv()

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "tripwire:rl:"
RATE_LIMIT_MAX: int = int(os.getenv("RATE_LIMIT_MAX", "30"))
RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "10"))


async def apply_rate_limit(
    store: KVStore,
    hashed_ip: str,
    limit: int = RATE_LIMIT_MAX,
    window: int = RATE_LIMIT_WINDOW,
) -> Optional[JSONResponse]:
    """Return a 429 response when over the limit, else None."""
    key = f"{RATE_LIMIT_PREFIX}{hashed_ip}"
    try:
        count = await store.incrby(key, 1)
        # Also repairs a counter whose first expire failed
        if count == 1 or await store.ttl(key) == -1:
            await store.expire(key, window)
    except Exception as exc:
        logger.error(f"Rate limit check failed, allowing request: {exc}")
        return None

    if count > limit:
        logger.warning(f"[{hashed_ip[:8]}] Rate limit exceeded ({count}/{limit} in {window}s)")
        return JSONResponse(
            status_code=429,
            content={
                "error": "Too Many Requests",
                "message": "Rate limit exceeded. Please try again in a few seconds.",
            },
            headers={"Retry-After": str(window)},
        )
    return None
