"""Tests for pledge/oracle.py: custodial ledger vs escrow contract funding."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from protocol import GoalTier, Network
from pledge.chain import goal_id_hash
from pledge.errors import ExternalServiceError
from pledge.oracle import CustodialLedgerOracle, EscrowContractOracle, FundingOracleSelector
from pledge.prices import StaticPriceOracle


def goal(tier=GoalTier.EASY):
    return {"id": "g1", "owner_id": 7, "tier": tier.value}


def wallet(balance, network=Network.POLYGON):
    return {"id": "w", "network": network.value, "last_balance": balance}


class TestCustodialLedgerOracle:
    @pytest.mark.asyncio
    async def test_any_wallet_above_epsilon(self, prices):
        oracle = CustodialLedgerOracle(prices)
        assert await oracle.is_funded(goal(), [wallet("0"), wallet("0.01", Network.BSC)])

    @pytest.mark.asyncio
    async def test_empty_and_unknown_balances(self, prices):
        oracle = CustodialLedgerOracle(prices)
        assert not await oracle.is_funded(goal(), [])
        assert not await oracle.is_funded(goal(), [wallet(None), wallet("0")])

    @pytest.mark.asyncio
    async def test_epsilon_is_exclusive(self):
        # 0.0001 units at $1 is exactly the threshold
        oracle = CustodialLedgerOracle(StaticPriceOracle({Network.POLYGON: Decimal("1")}))
        assert not await oracle.is_funded(goal(), [wallet("0.0001")])
        assert await oracle.is_funded(goal(), [wallet("0.00011")])

    def test_zero_balance_skips_price_lookup(self):
        oracle = CustodialLedgerOracle(StaticPriceOracle({}))
        assert oracle.usd_value(wallet("0")) == 0

    def test_missing_price_surfaces(self):
        oracle = CustodialLedgerOracle(StaticPriceOracle({}))
        with pytest.raises(ExternalServiceError):
            oracle.usd_value(wallet("1"))

    @pytest.mark.asyncio
    async def test_unpriced_wallet_does_not_hide_funded_one(self):
        oracle = CustodialLedgerOracle(StaticPriceOracle({Network.POLYGON: Decimal("0.5")}))
        wallets = [wallet("1", Network.METIS), wallet("10", Network.POLYGON)]
        assert await oracle.is_funded(goal(), wallets)

    @pytest.mark.asyncio
    async def test_unpriced_wallet_raises_when_nothing_else_funds(self):
        oracle = CustodialLedgerOracle(StaticPriceOracle({Network.POLYGON: Decimal("0.5")}))
        wallets = [wallet("1", Network.METIS), wallet("0", Network.POLYGON)]
        with pytest.raises(ExternalServiceError, match="METIS"):
            await oracle.is_funded(goal(), wallets)

    @pytest.mark.asyncio
    async def test_open_stake_matches_funding(self, prices):
        oracle = CustodialLedgerOracle(prices)
        assert await oracle.has_open_stake(goal(), [wallet("1")])
        assert not await oracle.has_open_stake(goal(), [wallet("0")])


class TestEscrowContractOracle:
    @pytest.mark.asyncio
    async def test_amount_decides(self, gateway):
        oracle = EscrowContractOracle(gateway)
        g = goal(GoalTier.MEDIUM)
        assert not await oracle.is_funded(g, [])
        await gateway.commit(goal_id_hash(7, "g1"), Decimal("0.2"), 0, "0x" + "00" * 20)
        assert await oracle.is_funded(g, [])

    @pytest.mark.asyncio
    async def test_completed_escrow_is_funded_but_not_open(self, prices, gateway):
        selector = FundingOracleSelector(CustodialLedgerOracle(prices), EscrowContractOracle(gateway))
        g = goal(GoalTier.HARD)
        await gateway.commit(goal_id_hash(7, "g1"), Decimal("0.2"), 0, "0x" + "00" * 20)
        assert await selector.has_open_stake(g, [])

        gateway.records[goal_id_hash(7, "g1")].completed = True
        assert await selector.is_funded(g, [])
        assert not await selector.has_open_stake(g, [])

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_wrapped(self):
        gw = AsyncMock()
        gw.read_escrow.side_effect = TimeoutError("rpc timeout")
        with pytest.raises(ExternalServiceError, match="rpc timeout"):
            await EscrowContractOracle(gw).read(goal(GoalTier.HARD))


class TestFundingOracleSelector:
    @pytest.mark.parametrize("tier,kind", [
        (GoalTier.UNSET, CustodialLedgerOracle),
        (GoalTier.EASY, CustodialLedgerOracle),
        (GoalTier.MEDIUM, EscrowContractOracle),
        (GoalTier.HARD, EscrowContractOracle),
        (GoalTier.HARDCORE, EscrowContractOracle),
    ])
    def test_routing(self, prices, gateway, tier, kind):
        selector = FundingOracleSelector(CustodialLedgerOracle(prices), EscrowContractOracle(gateway))
        assert isinstance(selector.for_goal(goal(tier)), kind)

    @pytest.mark.asyncio
    async def test_escrow_goal_ignores_wallets(self, prices, gateway):
        selector = FundingOracleSelector(CustodialLedgerOracle(prices), EscrowContractOracle(gateway))
        assert not await selector.is_funded(goal(GoalTier.MEDIUM), [wallet("100")])
