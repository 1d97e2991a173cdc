from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
MILESTONE_CROSSED = "milestone_crossed"
OFFLINE_REWARDS_AVAILABLE = "offline_rewards_available"
OFFLINE_REWARDS_CLAIMED = "offline_rewards_claimed"
UPGRADE_PURCHASED = "upgrade_purchased"
MINING_STARTED = "mining_started"
MINING_STOPPED = "mining_stopped"
HIGH_SCORE = "high_score"
SAVE_STATUS = "save_status"
RECOVERED_FROM_BACKUP = "recovered_from_backup"


class EventBus:
    """Publish/subscribe sink for notifications the core emits.

    Handlers run synchronously in subscription order. Delivery and rendering
    belong to whoever subscribes.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

    def subscribe(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[event]

    def clear(self) -> None:
        self._handlers.clear()

    def emit(self, event: str, **payload: Any) -> None:
        handlers = list(self._handlers.get(event, []))
        logger.debug("Emitting '%s' to %d handlers", event, len(handlers))
        for handler in handlers:
            try:
                handler(**payload)
            except Exception:
                # A broken subscriber must not stop the tick that emitted.
                logger.exception("Error in handler %s for event '%s'", handler, event)
