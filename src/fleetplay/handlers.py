"""Handler notification tracking.

Tasks that report `changed` notify handlers by name or by a `listen`
topic. Each handler runs at most once per host per play, after the host's
regular tasks, in the order the handlers are declared (not the order they
were notified in).
"""

import logging
from typing import Iterable

from .playbook import Handler

logger = logging.getLogger(__name__)


class NotificationQueue:
    """Pending handler notifications for one host in one play.

    Example:
        >>> queue = NotificationQueue(play.handlers)
        >>> queue.notify(["restart nginx"])
        >>> queue.notify(["restart nginx"])
        >>> [h.name for h in queue.pending()]
        ['restart nginx']
    """

    def __init__(self, handlers: Iterable[Handler]) -> None:
        self.handlers = list(handlers)
        self._notified: set[int] = set()

    def notify(self, topics: Iterable[str]) -> list[Handler]:
        """Mark every handler answering to one of the topics.

        Returns:
            Handlers that were newly notified by this call
        """
        newly = []
        for topic in topics:
            matched = False
            for position, handler in enumerate(self.handlers):
                if handler.answers_to(topic):
                    matched = True
                    if position not in self._notified:
                        self._notified.add(position)
                        newly.append(handler)
            if not matched:
                logger.warning(f"Notification '{topic}' matches no handler")
        return newly

    def is_notified(self, handler: Handler) -> bool:
        return any(h is handler for i, h in enumerate(self.handlers) if i in self._notified)

    def pending(self) -> list[Handler]:
        """Notified handlers in declaration order."""
        return [h for i, h in enumerate(self.handlers) if i in self._notified]

    def positions(self) -> list[int]:
        """Declaration positions of the notified handlers, in order."""
        return sorted(self._notified)

    def clear(self) -> None:
        self._notified.clear()

    def __len__(self) -> int:
        return len(self._notified)
