"""
admin/settings.py -- Read and update the admin-configurable AuthSettings.

Stored as one JSON object under the "auth_settings" key. Reads merge the
stored object over the defaults, so a setting added in a later release picks
up its default on existing databases, and a malformed stored value degrades
to the defaults instead of breaking login.
"""

from __future__ import annotations

import logging

from admin.models import AuthSettings
from admin.store import AdminStore

logger = logging.getLogger("gatekeeper.admin.settings")

AUTH_SETTINGS_KEY = "auth_settings"


def get_auth_settings(store: AdminStore) -> AuthSettings:
    stored = store.get_setting(AUTH_SETTINGS_KEY)
    if stored is None:
        return AuthSettings()
    if not isinstance(stored, dict):
        logger.warning("Stored %s is not an object; using defaults", AUTH_SETTINGS_KEY)
        return AuthSettings()
    known = AuthSettings.field_names()
    merged = {k: bool(v) for k, v in stored.items() if k in known}
    return AuthSettings(**merged)


def update_auth_settings(store: AdminStore, changes: dict[str, bool], updated_by: int | None) -> AuthSettings:
    """Merge changes over the current settings and persist the result.

    Raises ValueError on an unknown setting name.
    """
    unknown = set(changes) - AuthSettings.field_names()
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)!r}")
    current = get_auth_settings(store).to_dict()
    current.update(changes)
    store.upsert_setting(AUTH_SETTINGS_KEY, current, updated_by=updated_by)
    logger.info("Auth settings updated by user_id=%s: %s", updated_by, sorted(changes))
    return AuthSettings(**current)
