# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Workflows API error types.

No imports from the rest of the package; loaders and pollers catch these
(e.g. the 403 date-range contract) without pulling in the client.
"""

from __future__ import annotations

from typing import Optional


class ActionsHubAPIError(Exception):
    def __init__(self, *, status_code: int, endpoint: str, message: str):
        super().__init__(message)
        self.status_code = int(status_code)
        self.endpoint = str(endpoint or "")


class AuthError(ActionsHubAPIError):
    pass


class BatchRangeForbiddenError(ActionsHubAPIError):
    """403 from the batch endpoint: requested window is longer than the tier allows.

    `error`, `max_days` and `user_tier` are kept verbatim from the response body so they
    can be shown to the user unchanged.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        error: str,
        max_days: Optional[int] = None,
        user_tier: Optional[str] = None,
    ):
        super().__init__(status_code=403, endpoint=endpoint, message=error)
        self.error = str(error or "")
        self.max_days = max_days
        self.user_tier = user_tier


class NotFoundError(ActionsHubAPIError):
    pass


class RequestError(ActionsHubAPIError):
    pass


class RerunRequestError(ActionsHubAPIError):
    pass


class EmptyPayloadError(Exception):
    """A conditional fetch kept returning an empty body, even after one cache-bypassing retry."""

    def __init__(self, *, endpoint: str):
        super().__init__(
            "Unable to load workflow data. The workflow may not exist or there may be a "
            "caching issue. Please refresh manually."
        )
        self.endpoint = str(endpoint or "")
