"""One-way stream of completed actions and errors for presentation layers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .ledger import LedgerEntry


@dataclass(frozen=True)
class ActionCompleted:
    """An action finished and was recorded in the ledger."""

    entry: LedgerEntry


@dataclass(frozen=True)
class ActionUndone:
    """An earlier action was reversed."""

    entry: LedgerEntry


@dataclass(frozen=True)
class ActionFailed:
    """An action or a watched root failed."""

    path: Path
    error: str
    kind: str
    retryable: bool = False


Notification = ActionCompleted | ActionUndone | ActionFailed


class Subscription:
    """Bounded queue of notifications for one subscriber."""

    def __init__(self, notifier: Notifier, maxsize: int) -> None:
        self._notifier = notifier
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)

    def _offer(self, event: Notification) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self, timeout: float | None = None) -> Notification | None:
        """Wait for the next notification.

        Args:
            timeout: Maximum time to wait.

        Returns:
            The notification, or None on timeout.

        """
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._queue.get(), timeout=timeout)
            return await self._queue.get()
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[Notification]:
        """Return every notification queued so far without waiting."""
        events: list[Notification] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._notifier.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Notification:
        return await self._queue.get()


class Notifier:
    """Fans notifications out to subscribers without ever waiting on them."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[Notification], None]] = []

    def subscribe(self, maxsize: int = 256) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[Notification], None]) -> None:
        """Register a synchronous callback, called on the event loop thread."""
        self._listeners.append(listener)

    def publish(self, event: Notification) -> None:
        for subscription in list(self._subscriptions):
            if not subscription._offer(event):
                self.logger.warning("Notification queue full, dropping %s", type(event).__name__)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("Notification listener failed")
