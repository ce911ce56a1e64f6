"""Post-commit domain events.

Operations queue events on the session they write through. The queue is
dispatched to subscribers after the session commits and dropped when it
rolls back, so listeners (notifications, audit feeds) never observe a write
that did not persist and never run inside the scoring path. Rolling back a
savepoint drops only the events queued since the savepoint began.

Example:
    def on_award(payload: dict[str, Any]) -> None:
        notify(payload["user_id"], payload["achievement_name"])

    event_bus.listen(ACHIEVEMENT_AWARDED, on_award)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

ACTIVITY_LOGGED = "activity_logged"
ACTIVITY_EDITED = "activity_edited"
ACTIVITY_DELETED = "activity_deleted"
ACTIVITY_RESTORED = "activity_restored"
ACHIEVEMENT_AWARDED = "achievement_awarded"
ADMIN_EDIT = "admin_edit"

_PENDING_KEY = "challenge_tracker_pending_events"
_SAVEPOINT_KEY = "challenge_tracker_savepoint_marks"

Listener = Callable[[dict[str, Any]], Any]


class EventBus:
    """In-process registry of event listeners."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def listen(self, event_name: str, callback: Listener) -> Callable[[], None]:
        """Subscribe ``callback`` to ``event_name``.

        Returns:
            Callable that removes the subscription
        """
        self._listeners[event_name].append(callback)
        logger.debug(f"Listener {getattr(callback, '__name__', callback)} subscribed to '{event_name}'")

        def unsubscribe() -> None:
            if callback in self._listeners[event_name]:
                self._listeners[event_name].remove(callback)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    def dispatch(self, event_name: str, payload: dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event_name, [])):
            try:
                callback(payload)
            except Exception as e:
                # Listener errors are logged and never reach the committed write
                logger.exception(f"Listener for '{event_name}' failed: {e}")


event_bus = EventBus()


def emit(session: AsyncSession, event_name: str, **payload: Any) -> None:
    """Queue an event to be dispatched once ``session`` commits."""
    pending = session.sync_session.info.setdefault(_PENDING_KEY, [])
    pending.append((event_name, payload))
    logger.debug(f"Queued event '{event_name}' with payload keys: {list(payload.keys())}")


def pending_events(session: AsyncSession) -> list[tuple[str, dict[str, Any]]]:
    return list(session.sync_session.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_transaction_create")
def _mark_savepoint(session: Session, transaction) -> None:
    if transaction.nested:
        marks = session.info.setdefault(_SAVEPOINT_KEY, {})
        marks[transaction] = len(session.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    session.info.pop(_SAVEPOINT_KEY, None)
    pending = session.info.pop(_PENDING_KEY, [])
    for event_name, payload in pending:
        event_bus.dispatch(event_name, payload)


@event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session: Session, previous_transaction) -> None:
    """Drop events queued inside the rolled back transaction or savepoint."""
    if previous_transaction.nested:
        mark = session.info.get(_SAVEPOINT_KEY, {}).pop(previous_transaction, None)
        pending = session.info.get(_PENDING_KEY, [])
        if mark is None or len(pending) <= mark:
            return
        dropped = pending[mark:]
        del pending[mark:]
    else:
        session.info.pop(_SAVEPOINT_KEY, None)
        dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.info(f"Discarded {len(dropped)} queued events after rollback")
