"""Client identity helpers: client address extraction and salted IP hashing.

Raw addresses are never persisted; every stored record is keyed by the
salted SHA-256 of the address instead.
"""

import hashlib
import os
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SALT = "tripwire-default-salt-change-me"
SALT: str = os.getenv("RATE_LIMIT_SALT", DEFAULT_SALT)

# A public default salt lets anyone rebuild the hash table for IPv4
if SALT == DEFAULT_SALT and os.getenv("TRIPWIRE_ENV", "").lower() == "production":
    raise RuntimeError(
        "RATE_LIMIT_SALT is not set. A unique random salt is required in production."
    )

FALLBACK_IP = "127.0.0.1"


def hash_ip(ip: str) -> str:
    """One-way hash of a client address."""
    return hashlib.sha256(f"{SALT}{ip}".encode("utf-8")).hexdigest()


def get_client_ip(headers: Optional[Mapping[str, Any]], client_host: Optional[str] = None) -> str:
    """First hop of X-Forwarded-For, else the socket peer, else loopback."""
    forwarded = None
    if headers is not None:
        try:
            forwarded = headers.get("x-forwarded-for")
        except AttributeError:
            forwarded = None
    if isinstance(forwarded, str) and forwarded.strip():
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if client_host:
        return client_host
    return FALLBACK_IP
