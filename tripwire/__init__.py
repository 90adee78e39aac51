"""
Tripwire: Deception & Intrusion Countermeasures
===============================================

Core modules:
    - main.py        : FastAPI application and countermeasure pipeline middleware
    - auth.py        : API key authentication for the admin endpoints
    - models.py      : Pydantic settings, token, alert and threat schemas
    - settings.py    : Feature gate, loads SecuritySettings per request (fails safe)
    - store.py       : Async key-value store (in-memory or Redis)
    - ringlog.py     : Fixed-capacity alert log on top of the store
    - identity.py    : Client IP extraction and salted IP hashing
    - ratelimit.py   : Fixed-window rate limiter
    - detector.py    : SQL injection and scanner User-Agent classifier
    - threat.py      : Threat score ledger, levels, flagged and blocked IPs
    - incidents.py   : Per-attacker profiles and canary forensic data
    - alerting.py    : Deduplicated webhook alerts with background retry
    - backfire.py    : SQL backfire responses for hostile requests
    - canary.py      : Canary documents and their phone-home callbacks
    - poison.py      : Selective log poisoning for flagged attackers
    - honeytokens.py : Decoy store keys that raise a silent alarm
"""

__version__ = "1.0.0"
