"""In-process event bus for SSE subscribers.

Uses thread-safe queues so publishers on the event loop and readers in
worker threads (TestClient, to_thread) can share it.
"""

import logging
import queue
import threading
from datetime import datetime, timezone

from protocol import EVENT_BALANCE_CHANGE, EVENT_REFUND_COMPLETED, EVENT_STATUS_CHANGE, MAX_SSE_SUBSCRIBERS
from pledge.errors import CapacityError

logger = logging.getLogger(__name__)


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class Subscription:
    """One subscriber's queue plus the goal/wallet it listens to (None = everything)."""

    def __init__(self, goal_id: str | None = None, wallet_id: str | None = None, maxsize: int = 256):
        self.goal_id = goal_id
        self.wallet_id = wallet_id
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def matches(self, payload: dict) -> bool:
        if self.goal_id and payload.get("goalId") != self.goal_id:
            return False
        if self.wallet_id and payload.get("walletId") != self.wallet_id:
            return False
        return True

    def get(self, timeout: float | None = None) -> dict:
        """Block for the next event. Raises queue.Empty on timeout."""
        return self.queue.get(timeout=timeout)


class EventBus:

    def __init__(self, max_subscribers: int = MAX_SSE_SUBSCRIBERS):
        self.max_subscribers = max_subscribers
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, goal_id: str | None = None, wallet_id: str | None = None) -> Subscription:
        sub = Subscription(goal_id=goal_id, wallet_id=wallet_id)
        with self._lock:
            if len(self._subscribers) >= self.max_subscribers:
                raise CapacityError("Too many SSE subscribers")
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type: str, data: dict):
        """Push an event to all matching subscribers. Full queues are dropped."""
        payload = {"event": event_type, **data}
        with self._lock:
            dead = []
            for sub in self._subscribers:
                if not sub.matches(payload):
                    continue
                try:
                    sub.queue.put_nowait(payload)
                except queue.Full:
                    dead.append(sub)
            for sub in dead:
                self._subscribers.remove(sub)
        if dead:
            logger.warning(f"Dropped {len(dead)} slow SSE subscribers")

    # --- Typed helpers ---

    def balance_change(self, wallet: dict, balance: str, ts: float):
        self.publish(EVENT_BALANCE_CHANGE, {
            "walletId": wallet["id"],
            "goalId": wallet["goal_id"],
            "balance": balance,
            "timestamp": iso(ts),
        })

    def status_change(self, goal: dict, previous: str, ts: float):
        self.publish(EVENT_STATUS_CHANGE, {
            "goalId": goal["id"],
            "previous": previous,
            "status": goal["status"],
            "tier": goal["tier"],
            "timestamp": iso(ts),
        })

    def refund_completed(self, goal: dict, summary: dict, ts: float):
        self.publish(EVENT_REFUND_COMPLETED, {
            "goalId": goal["id"],
            "userId": goal["owner_id"],
            "summary": summary,
            "timestamp": iso(ts),
        })
