# medcycle/services/notification_dispatch.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Protocol

from medcycle.schemas.schema_event import EventOut

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(self, event: EventOut, recipients: List[str]) -> None:
        ...


class LoggingDispatcher:
    """Used when no push provider is configured (local dev, Firebase key missing)."""

    def dispatch(self, event: EventOut, recipients: List[str]) -> None:
        logger.info(
            "[dispatch] %s command=%s at=%s -> %s",
            event.event_type, event.command_id, event.scheduled_date_time, ",".join(recipients),
        )


class BackgroundDispatcher:
    """
    Fire-and-forget wrapper: dispatch() returns immediately, delivery runs on
    a small thread pool, and a failing delivery is only logged.
    Called after commit, so nothing here can affect a workflow result.
    """

    def __init__(self, delegate: NotificationDispatcher, max_workers: int = 4):
        self.delegate = delegate
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

    def dispatch(self, event: EventOut, recipients: List[str]) -> None:
        try:
            self._pool.submit(self._deliver, event, list(recipients))
        except RuntimeError:
            # pool already shut down (app exiting)
            logger.warning("[dispatch] dropped %s for %s: dispatcher closed", event.event_type, event.command_id)

    def _deliver(self, event: EventOut, recipients: List[str]) -> None:
        try:
            self.delegate.dispatch(event, recipients)
        except Exception:
            logger.exception(
                "[dispatch] delivery failed event=%s command=%s", event.event_type, event.command_id
            )

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def dispatch_safely(dispatcher: NotificationDispatcher, event: EventOut, recipients: List[str]) -> bool:
    """Post-commit hand-off. Never raises; returns whether the hand-off was accepted."""
    try:
        dispatcher.dispatch(event, recipients)
        return True
    except Exception:
        logger.exception("[dispatch] hand-off failed event=%s command=%s", event.event_type, event.command_id)
        return False
