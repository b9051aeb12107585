"""
Actions interrupted by an expired session, kept for replay after login
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class PendingAction:
    """A user command to replay once the session is valid again"""

    action: str  # e.g. "place_bet"
    payload: dict[str, Any]
    redirect_to: str = "/login"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "payload": {k: str(v) for k, v in self.payload.items()},
            "path": self.redirect_to,
            "created_at": self.created_at,
        }


class PendingActionQueue:
    """Bounded FIFO of PendingAction; the oldest entry is dropped when full."""

    def __init__(self, max_size: int = 5):
        self._items: deque[PendingAction] = deque(maxlen=max_size)

    def enqueue(self, action: PendingAction) -> PendingAction:
        if len(self._items) == self._items.maxlen:
            logger.warning(f"Pending action queue full, dropping {self._items[0].action}")
        self._items.append(action)
        logger.info(f"Queued '{action.action}' until the session is renewed")
        return action

    def drain(self) -> list[PendingAction]:
        items = list(self._items)
        self._items.clear()
        return items

    def peek(self) -> list[PendingAction]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
