"""
admin/maintenance.py -- Housekeeping shared by the API and the CLI.

purge_expired() runs from the API's background loop (api/main.py) and from
`python main.py purge`. Callers decide how to report the counts.
"""

from __future__ import annotations

import logging

from admin.store import AdminStore
from auth.store import UserStore

logger = logging.getLogger("gatekeeper.admin.maintenance")


def purge_expired(user_store: UserStore, admin_store: AdminStore) -> tuple[int, int]:
    """Delete expired refresh tokens and unused expired invites.

    Returns (tokens_deleted, invites_deleted).
    """
    tokens = user_store.purge_expired_refresh_tokens()
    invites = admin_store.purge_expired_invites()
    logger.info("Purged %d expired refresh token(s) and %d expired invite(s)", tokens, invites)
    return tokens, invites
