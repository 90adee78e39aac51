"""Feature gate: loads SecuritySettings from the store once per request.

The stored document is merged over DEFAULT_SETTINGS. If the store cannot be
reached or holds garbage, every countermeasure is reported disabled; an
uncertain state never turns deception on.
"""

import logging
from typing import Any, Dict

from pydantic import ValidationError

from tripwire.models import SecuritySettings, SecuritySettingsUpdate
from tripwire.store import KVStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "tripwire:security-settings"

DEFAULT_SETTINGS: Dict[str, Any] = SecuritySettings().model_dump()


async def load_settings(store: KVStore) -> SecuritySettings:
    try:
        stored = await store.get_json(SETTINGS_KEY)
    except Exception as exc:
        logger.warning(f"Settings store unavailable, countermeasures disabled: {exc}")
        return SecuritySettings.disabled()

    if stored is None:
        return SecuritySettings()
    if not isinstance(stored, dict):
        logger.warning("Stored settings are not an object, countermeasures disabled")
        return SecuritySettings.disabled()

    try:
        return SecuritySettings(**{**DEFAULT_SETTINGS, **stored})
    except ValidationError as exc:
        logger.warning(f"Stored settings invalid, countermeasures disabled: {exc.error_count()} errors")
        return SecuritySettings.disabled()


async def save_settings(store: KVStore, update: SecuritySettingsUpdate) -> SecuritySettings:
    """Merge a partial update over the stored settings and persist the result.

    Raises StoreError if the store is unreachable and ValidationError if the
    merged document is inconsistent.
    """
    stored = await store.get_json(SETTINGS_KEY)
    if not isinstance(stored, dict):
        stored = {}
    changes = update.model_dump(exclude_none=True)
    merged = SecuritySettings(**{**DEFAULT_SETTINGS, **stored, **changes})
    await store.set_json(SETTINGS_KEY, merged.model_dump())
    logger.info(f"Security settings updated: {sorted(changes)}")
    return merged
