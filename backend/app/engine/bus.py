from __future__ import annotations

from typing import Callable

from loguru import logger

from app.domain.models import CollectionView


Subscriber = Callable[[CollectionView], None]


class NotificationBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; the returned callable removes it again."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, view: CollectionView) -> None:
        for callback in list(self._subscribers):
            try:
                callback(view)
            except Exception:
                logger.exception("Collection subscriber {} raised", getattr(callback, "__name__", callback))

    def __len__(self) -> int:
        return len(self._subscribers)
