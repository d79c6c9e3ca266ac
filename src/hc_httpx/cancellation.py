"""Keyed cancellation tokens.

A token is attached to a request through ``RequestConfig.cancel_token``. The
engine refuses to dispatch a request whose token is already cancelled and
aborts an in-flight dispatch when the token fires.

Typical usage:
    registry = CancellationRegistry()
    token = registry.create("search")
    await client.get("/search", params={"q": "a"}, cancel_token=token)

    # a newer search supersedes the previous one
    token = registry.create("search")
"""

from __future__ import annotations

import asyncio
import logging

from hc_httpx.exceptions import RequestCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal."""

    def __init__(self, key: str | None = None) -> None:
        self.key = key
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "cancelled"
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    def error(self) -> RequestCancelledError:
        return RequestCancelledError(
            message=f"Request cancelled: {self.reason}",
            data={"key": self.key, "reason": self.reason},
        )


class CancellationRegistry:
    """Tokens keyed by a caller-supplied string."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancelToken] = {}

    def create(self, key: str) -> CancelToken:
        """Create a token under ``key``, cancelling any token already stored there."""
        self.cancel(key, reason="superseded")
        token = CancelToken(key)
        self._tokens[key] = token
        return token

    def cancel(self, key: str, reason: str | None = None) -> bool:
        """Cancel and forget the token under ``key``. Returns True if one existed."""
        token = self._tokens.pop(key, None)
        if token is None:
            return False
        token.cancel(reason)
        logger.debug("Cancelled token %s", key)
        return True

    def cancel_all(self, reason: str | None = None) -> int:
        tokens = list(self._tokens.values())
        self._tokens.clear()
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    def get(self, key: str) -> CancelToken | None:
        return self._tokens.get(key)

    def keys(self) -> list[str]:
        return list(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)
