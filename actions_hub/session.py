# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Who is signed in, and what their tier allows."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .models import UserInfo
from .storage import CacheStore
from .workflow_cache import PersistentCache, UserSessionCache, logout

_logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(self, api: Any, durable_store: CacheStore, session_store: CacheStore):
        self.api = api
        self.durable_store = durable_store
        self.session_store = session_store
        self.user_cache = UserSessionCache(session_store)

    def current_user(self) -> UserInfo:
        """Session slot first; falls back to the auth endpoint (and caches an authenticated answer)."""
        cached = self.user_cache.get()
        if cached is not None and cached.authenticated:
            return cached
        return self.refresh_user()

    def refresh_user(self) -> UserInfo:
        """Re-fetch identity. A changed billing tier wipes every workflow cache and the user slot."""
        previous = self.user_cache.get()
        user = self.api.get_user_info()

        prev_tier = previous.billing_config.user_tier if previous and previous.billing_config else None
        new_tier = user.billing_config.user_tier if user.billing_config else None
        if prev_tier is not None and new_tier is not None and prev_tier != new_tier:
            _logger.info("subscription tier changed (%s -> %s), clearing caches", prev_tier, new_tier)
            removed = PersistentCache(self.durable_store).clear_all()
            self.user_cache.clear()
            _logger.debug("removed %d workflow cache slot(s)", removed)

        self.user_cache.save(user)
        return user

    def logout(self) -> int:
        return logout(self.durable_store, self.session_store)

    def username(self) -> Optional[str]:
        user = self.current_user()
        return user.username if user.authenticated else None
