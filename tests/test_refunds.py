"""Tests for pledge/refunds.py: per-wallet refund estimates and payouts."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import asyncio
from decimal import Decimal

import pytest

from protocol import GoalStatus, Network
from pledge.errors import InvalidTransition, NotFoundError, ValidationError
from pledge.refunds import RefundDistributor
from conftest import REFUND_ADDR, REFUND_ADDR_2, add_wallet, drain_events, make_goal

FEE = Decimal("0.0001")


@pytest.fixture
def refunds(store, keystore, bus, clock):
    return RefundDistributor(store, keystore, bus=bus, clock=clock)


def completed_goal(store):
    return make_goal(store, status=GoalStatus.COMPLETED)


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_counts_and_estimates(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, Network.POLYGON, fund="10", refund_address=REFUND_ADDR)
        await add_wallet(store, keystore, goal_id, Network.BSC, fund="1")

        status = await refunds.get_status(goal_id)

        assert status.total_wallets == 2
        assert status.wallets_with_refund_address == 1
        assert status.eligible is True
        assert status.estimated_refund_amount == Decimal("10") - FEE
        estimate = status.wallet_estimates[0]
        assert estimate.gas_fee == FEE
        assert estimate.max_sendable == Decimal("10") - FEE
        assert estimate.has_insufficient_balance is False

    @pytest.mark.asyncio
    async def test_dust_is_not_eligible(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="0.00005", refund_address=REFUND_ADDR)

        status = await refunds.get_status(goal_id)

        assert status.eligible is False
        assert status.wallet_estimates[0].max_sendable == 0
        assert status.wallet_estimates[0].to_dict()["hasInsufficientBalance"] is True

    @pytest.mark.asyncio
    async def test_read_failure_is_per_wallet(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        broken = await add_wallet(store, keystore, goal_id, Network.POLYGON, fund="3", refund_address=REFUND_ADDR)
        await add_wallet(store, keystore, goal_id, Network.BSC, fund="2", refund_address=REFUND_ADDR_2)
        keystore.fail_reads.add(broken["address"])

        status = await refunds.get_status(goal_id)

        by_network = {e.network: e for e in status.wallet_estimates}
        assert by_network["POLYGON"].error_message
        assert by_network["BSC"].error_message is None
        assert status.eligible is True
        assert status.estimated_refund_amount == Decimal("2") - FEE

    @pytest.mark.asyncio
    async def test_status_is_read_only(self, refunds, store, keystore):
        goal_id = make_goal(store, status=GoalStatus.ACTIVE)
        wallet = await add_wallet(store, keystore, goal_id, fund="5", refund_address=REFUND_ADDR)
        await refunds.get_status(goal_id)
        assert keystore.balance_of(wallet["address"], Network.POLYGON) == Decimal("5")

    @pytest.mark.asyncio
    async def test_missing_goal(self, refunds):
        with pytest.raises(NotFoundError):
            await refunds.get_status("missing")


class TestExecute:
    @pytest.mark.asyncio
    async def test_only_wallets_with_refund_address(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, Network.POLYGON, fund="10", refund_address=REFUND_ADDR)
        await add_wallet(store, keystore, goal_id, Network.BSC, fund="1")

        summary = await refunds.execute(goal_id)

        assert summary.total_refunds == 1
        assert summary.successful_refunds == 1
        result = summary.results[0]
        assert result.amount == Decimal("10") - FEE
        assert result.tx_hash.startswith("0x")
        assert keystore.balance_of(REFUND_ADDR, Network.POLYGON) == Decimal("10") - FEE

    @pytest.mark.asyncio
    async def test_goal_locks_are_released(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="10", refund_address=REFUND_ADDR)

        await asyncio.gather(refunds.execute(goal_id), refunds.execute(goal_id))
        assert refunds._locks == {}

        empty_goal = completed_goal(store)
        with pytest.raises(ValidationError):
            await refunds.execute(empty_goal)
        assert refunds._locks == {}

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        bad = await add_wallet(store, keystore, goal_id, Network.POLYGON, fund="10", refund_address=REFUND_ADDR)
        await add_wallet(store, keystore, goal_id, Network.BSC, fund="2", refund_address=REFUND_ADDR_2)
        keystore.fail_transfers[bad["address"]] = "node rejected tx"

        summary = await refunds.execute(goal_id)

        assert summary.total_refunds == 2
        assert summary.successful_refunds == 1
        assert summary.failed_refunds == 1
        assert summary.successful_refunds + summary.failed_refunds == summary.total_refunds
        by_network = {r.network: r for r in summary.results}
        assert by_network["POLYGON"].success is False
        assert by_network["POLYGON"].error == "node rejected tx"
        assert by_network["POLYGON"].error_code == "TRANSFER_FAILED"
        assert by_network["BSC"].success is True
        # Nothing rolled back
        assert keystore.balance_of(REFUND_ADDR_2, Network.BSC) == Decimal("2") - FEE

    @pytest.mark.asyncio
    async def test_balance_read_failure_is_isolated(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        bad = await add_wallet(store, keystore, goal_id, Network.POLYGON, fund="10", refund_address=REFUND_ADDR)
        await add_wallet(store, keystore, goal_id, Network.BSC, fund="2", refund_address=REFUND_ADDR_2)
        keystore.fail_reads.add(bad["address"])

        summary = await refunds.execute(goal_id)
        assert summary.successful_refunds == 1
        assert summary.failed_refunds == 1

    @pytest.mark.asyncio
    async def test_second_run_pays_nothing(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="10", refund_address=REFUND_ADDR)

        first = await refunds.execute(goal_id)
        second = await refunds.execute(goal_id)

        assert first.successful_refunds == 1
        assert second.successful_refunds == 0
        assert second.results[0].error_code == "INSUFFICIENT_BALANCE"
        assert keystore.balance_of(REFUND_ADDR, Network.POLYGON) == Decimal("10") - FEE

    @pytest.mark.asyncio
    async def test_concurrent_runs_pay_once(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="10", refund_address=REFUND_ADDR)

        a, b = await asyncio.gather(refunds.execute(goal_id), refunds.execute(goal_id))

        assert a.successful_refunds + b.successful_refunds == 1
        assert keystore.balance_of(REFUND_ADDR, Network.POLYGON) == Decimal("10") - FEE

    @pytest.mark.asyncio
    async def test_success_zeroes_cache_and_publishes(self, refunds, store, keystore, bus):
        goal_id = completed_goal(store)
        wallet = await add_wallet(store, keystore, goal_id, fund="10", cached="10", refund_address=REFUND_ADDR)
        sub = bus.subscribe(goal_id=goal_id)

        summary = await refunds.execute(goal_id)

        assert store.get_wallet(wallet["id"])["last_balance"] == "0"
        events = drain_events(sub)
        assert [e["event"] for e in events] == ["balance-change", "refund-completed"]
        assert events[1]["userId"] == 7
        assert events[1]["summary"]["successfulRefunds"] == summary.successful_refunds

    @pytest.mark.asyncio
    async def test_audit_log(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="10", refund_address=REFUND_ADDR)
        await refunds.execute(goal_id)
        await refunds.execute(goal_id)
        history = store.refund_history(goal_id)
        assert [h["successful_refunds"] for h in history] == [1, 0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [GoalStatus.PENDING, GoalStatus.ACTIVE, GoalStatus.FAILED])
    async def test_goal_must_be_completed(self, refunds, store, keystore, status):
        goal_id = make_goal(store, status=status)
        await add_wallet(store, keystore, goal_id, fund="10", refund_address=REFUND_ADDR)
        with pytest.raises(InvalidTransition):
            await refunds.execute(goal_id)

    @pytest.mark.asyncio
    async def test_no_refund_addresses(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="10")
        with pytest.raises(ValidationError):
            await refunds.execute(goal_id)

    @pytest.mark.asyncio
    async def test_summary_dict(self, refunds, store, keystore):
        goal_id = completed_goal(store)
        await add_wallet(store, keystore, goal_id, fund="1", refund_address=REFUND_ADDR)
        body = (await refunds.execute(goal_id)).to_dict()
        assert body["totalRefunds"] == 1
        assert body["results"][0]["refundAddress"] == REFUND_ADDR
        assert body["completedAt"].startswith("2025-06-15")
