"""Balance monitor: time-boxed polling of custodial wallets.

Each monitored wallet has at most one polling task. Starting again cancels
the running task and arms a replacement with a fresh 30 minute window, so
repeated starts extend monitoring instead of stacking timers.

Sessions are process-local. A restart drops them; clients start again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal

from protocol import MONITOR_DURATION, MONITOR_INTERVAL, GoalStatus, Network
from pledge.errors import ExternalServiceError, NotFoundError, RateLimited
from pledge.events import EventBus, iso
from pledge.keystore import CustodialKeyStore
from pledge.store import GoalStore

logger = logging.getLogger(__name__)


@dataclass
class MonitoringSession:
    wallet_id: str
    goal_id: str
    started_at: float
    expires_at: float
    poll_interval: float

    def to_dict(self) -> dict:
        return {
            "walletId": self.wallet_id,
            "goalId": self.goal_id,
            "startedAt": iso(self.started_at),
            "expiresAt": iso(self.expires_at),
            "pollIntervalSeconds": self.poll_interval,
        }


class BalanceMonitor:

    def __init__(self, store: GoalStore, keystore: CustodialKeyStore, bus: EventBus | None = None,
                 clock=time.time, duration: float = MONITOR_DURATION, interval: float = MONITOR_INTERVAL,
                 restart_cooldown: float = 0, sleep=asyncio.sleep):
        self.store = store
        self.keystore = keystore
        self.bus = bus
        self.clock = clock
        self.duration = duration
        self.interval = interval
        self.restart_cooldown = restart_cooldown
        self._sleep = sleep
        self._sessions: dict[str, MonitoringSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def session(self, wallet_id: str) -> MonitoringSession | None:
        return self._sessions.get(wallet_id)

    def active_sessions(self) -> list[MonitoringSession]:
        return list(self._sessions.values())

    def active_task_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def start(self, wallet_id: str) -> MonitoringSession:
        """Start or reset monitoring for a wallet whose goal is ACTIVE."""
        wallet = self.store.get_wallet(wallet_id)
        goal = self.store.get_goal(wallet["goal_id"]) if wallet else None
        if not goal or goal["status"] != GoalStatus.ACTIVE.value:
            raise NotFoundError("Wallet not found or goal is not active")

        now = self.clock()
        existing = self._sessions.get(wallet_id)
        if existing and self.restart_cooldown and now - existing.started_at < self.restart_cooldown:
            wait = self.restart_cooldown - (now - existing.started_at)
            raise RateLimited(f"Monitoring restarted too often. Wait {wait:.1f}s", retry_after_seconds=wait)

        old = self._tasks.pop(wallet_id, None)
        if old is not None:
            old.cancel()

        session = MonitoringSession(
            wallet_id=wallet_id,
            goal_id=goal["id"],
            started_at=now,
            expires_at=now + self.duration,
            poll_interval=self.interval,
        )
        self._sessions[wallet_id] = session
        self._tasks[wallet_id] = asyncio.get_running_loop().create_task(self._run(session))
        logger.info(f"Monitoring {'reset' if existing else 'started'}", extra={"wallet_id": wallet_id})
        return session

    async def stop(self, wallet_id: str) -> bool:
        task = self._tasks.pop(wallet_id, None)
        self._sessions.pop(wallet_id, None)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def shutdown(self):
        """Cancel every polling task. Called on app shutdown."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._sessions.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info(f"Stopped {len(tasks)} monitoring sessions")

    async def _run(self, session: MonitoringSession):
        task = asyncio.current_task()
        try:
            while True:
                await self._sleep(session.poll_interval)
                if self.clock() >= session.expires_at:
                    logger.info("Monitoring expired", extra={"wallet_id": session.wallet_id})
                    break
                try:
                    await self.check_once(session.wallet_id)
                except NotFoundError:
                    logger.info("Monitored wallet disappeared", extra={"wallet_id": session.wallet_id})
                    break
                except ExternalServiceError as e:
                    logger.warning(f"Balance poll failed: {e.message}", extra={"wallet_id": session.wallet_id})
        finally:
            # Only release the slot if a newer session has not replaced us
            if self._tasks.get(session.wallet_id) is task:
                del self._tasks[session.wallet_id]
                self._sessions.pop(session.wallet_id, None)

    async def check_once(self, wallet_id: str, touch: bool = False) -> bool:
        """Read the live balance and persist/publish it if it changed.

        touch=True also stamps an unchanged balance with the current time.
        """
        wallet = self.store.get_wallet(wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        balance = await self.keystore.get_balance(wallet["address"], Network(wallet["network"]))
        previous = wallet["last_balance"]
        now = self.clock()
        if previous is not None and Decimal(previous) == balance:
            if touch:
                self.store.update_balance(wallet_id, previous, now)
            return False

        self.store.update_balance(wallet_id, str(balance), now)
        if self.bus:
            self.bus.balance_change(wallet, str(balance), now)
        logger.info(f"Balance changed {previous} -> {balance}", extra={"wallet_id": wallet_id})
        return True

    async def refresh(self, wallet_id: str) -> dict:
        """Manual balance update. Races with poll ticks are last-write-wins."""
        await self.check_once(wallet_id, touch=True)
        return self.store.get_wallet(wallet_id)
