import sys
import os
import asyncio
import time

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from protocol import GoalStatus, GoalTier, Network, TaskStatus
from pledge.chain import SimEscrowGateway
from pledge.events import EventBus
from pledge.keystore import SimKeyStore
from pledge.prices import StaticPriceOracle
from pledge.store import GoalStore


OWNER = 7
OTHER_OWNER = 8
DAY = 86400
CLOCK_START = 1_750_000_000.0  # 2025-06-15, a Sunday

REFUND_ADDR = "0x" + "ab" * 20
REFUND_ADDR_2 = "0x" + "cd" * 20

APPROVE = '{"canMarkComplete": true, "reason": "All milestones done", "confidence": "high", "suggestions": []}'
REJECT = ('{"canMarkComplete": false, "reason": "Half the tasks are still open", '
          '"confidence": "high", "suggestions": ["Finish the long runs"]}')


class FakeClock:
    """Injectable clock: tests move time explicitly."""

    def __init__(self, start: float = CLOCK_START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def fast_sleep(clock: FakeClock):
    """asyncio.sleep replacement that moves the fake clock instead of waiting."""
    async def _sleep(seconds):
        clock.advance(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = GoalStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def keystore():
    return SimKeyStore(":memory:")


@pytest.fixture
def gateway():
    return SimEscrowGateway()


@pytest.fixture
def prices():
    return StaticPriceOracle()


@pytest.fixture
def bus():
    return EventBus()


def make_goal(store, owner_id=OWNER, status: GoalStatus | None = None, tier: GoalTier | None = None,
              title="Run a marathon", deadline=None) -> str:
    """Create a goal and force status/tier directly (bypasses the state machine)."""
    goal_id = store.create_goal(owner_id, title, "Finish a full marathon under 4 hours",
                                deadline or CLOCK_START + 30 * DAY)
    if status or tier:
        store.db.execute(
            "UPDATE goals SET tier = COALESCE(?, tier), status = COALESCE(?, status) WHERE id = ?",
            (tier.value if tier else None, status.value if status else None, goal_id),
        )
        store.db.commit()
    return goal_id


async def add_wallet(store, keystore, goal_id, network=Network.POLYGON, fund=None,
                     cached=None, refund_address=None) -> dict:
    """Generate a custodial wallet, optionally funding it on the sim ledger and/or the cache."""
    kp = await keystore.generate(network)
    wallet_id = store.add_wallet(goal_id, network.value, kp.address, kp.key_ref)
    if fund is not None:
        keystore.fund(kp.address, network, fund)
    if cached is not None:
        store.update_balance(wallet_id, str(cached), time.time())
    if refund_address:
        store.set_refund_address(wallet_id, refund_address)
    return store.get_wallet(wallet_id)


def add_tasks(store, goal_id, total: int, completed: int):
    for i in range(total):
        status = TaskStatus.COMPLETED if i < completed else TaskStatus.TODO
        store.add_task(goal_id, f"Task {i + 1}", status.value)


def drain_events(sub) -> list[dict]:
    events = []
    while not sub.queue.empty():
        events.append(sub.queue.get_nowait())
    return events
