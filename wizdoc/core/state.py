"""Observable application state.

:class:`AppState` is created once per session and passed explicitly to the
components that need it. Readers take an immutable :class:`AppSnapshot` or
subscribe for change notifications; writers are the pipeline controller
(processing flag, published cards) and the auth collaborator (user id).

Listeners are called synchronously, after the mutation is complete, with the
new snapshot and the names of the fields that changed. A publish is a single
mutation, so a listener never sees ``current_card`` without the matching
``archive`` entry.
"""

import threading
from dataclasses import dataclass, replace
from typing import Callable, FrozenSet, List, Optional, Tuple

from loguru import logger

from .models import Card


@dataclass(frozen=True)
class AppSnapshot:
    user_id: Optional[str] = None
    is_processing: bool = False
    current_card: Optional[Card] = None
    archive: Tuple[Card, ...] = ()


StateListener = Callable[[AppSnapshot, FrozenSet[str]], None]


class AppState:
    """Thread-safe state container with explicit subscriptions."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._lock = threading.RLock()
        self._snapshot = AppSnapshot(user_id=user_id)
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> AppSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def user_id(self) -> Optional[str]:
        return self.snapshot().user_id

    @property
    def is_processing(self) -> bool:
        return self.snapshot().is_processing

    @property
    def current_card(self) -> Optional[Card]:
        return self.snapshot().current_card

    @property
    def archive(self) -> Tuple[Card, ...]:
        return self.snapshot().archive

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for every future change.

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_user_id(self, user_id: Optional[str]) -> None:
        """Assign the signed-in user (auth collaborator)."""
        self._update(user_id=user_id)

    def set_processing(self, is_processing: bool) -> None:
        self._update(is_processing=is_processing)

    def publish(self, card: Card) -> None:
        """Make *card* current, append it to the archive and end processing."""
        with self._lock:
            archive = self._snapshot.archive + (card,)
            self._apply(current_card=card, archive=archive, is_processing=False)
        logger.info(f"Published card {card.id}: {card.title!r}")

    def _update(self, **changes) -> None:
        with self._lock:
            self._apply(**changes)

    def _apply(self, **changes) -> None:
        # Caller holds the lock; listeners run under it so notifications
        # arrive in mutation order.
        changed = frozenset(
            name for name, value in changes.items()
            if getattr(self._snapshot, name) != value
        )
        if not changed:
            return
        self._snapshot = replace(self._snapshot, **changes)
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot, changed)
            except Exception as error:
                logger.warning(f"State listener failed: {error}")
