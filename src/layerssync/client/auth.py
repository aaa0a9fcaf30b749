"""Authenticated identity used to scope sync.

This module provides:
- Identity: The signed-in user and the token sent to the backend
- IdentityProvider: Holder of the current identity with change subscribers

The sync provider suspends dispatch while no identity is set; the queue
keeps accepting writes and is flushed once an identity becomes available.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from layerssync.client.sync.types import Unsubscribe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Signed-in user.

    Attributes:
        user_id: Stable user identifier (scopes queue entries).
        access_token: Bearer token for backend requests.
    """

    user_id: str
    access_token: str = field(repr=False)


IdentityCallback = Callable[["Identity | None"], None]


class IdentityProvider:
    """Current identity with change notifications."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity
        self._callbacks: list[IdentityCallback] = []

    @property
    def identity(self) -> Identity | None:
        """The signed-in identity, or None."""
        return self._identity

    @property
    def user_id(self) -> str | None:
        """User id of the signed-in identity, or None."""
        return self._identity.user_id if self._identity else None

    def set_identity(self, identity: Identity | None) -> None:
        """Sign in (identity) or out (None), notifying subscribers on change."""
        if identity == self._identity:
            return
        self._identity = identity
        if identity is None:
            logger.info("Signed out, sync suspended")
        else:
            logger.info("Signed in as %s", identity.user_id)
        for callback in list(self._callbacks):
            try:
                callback(identity)
            except Exception:
                logger.exception("Identity callback failed")

    def on_identity_change(self, callback: IdentityCallback) -> Unsubscribe:
        """Register a callback invoked when the identity changes.

        Returns:
            Function removing the callback.
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe
