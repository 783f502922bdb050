"""Funding oracles: is a goal's pledge real?

Two sources of truth, picked by tier:
- UNSET/EASY goals are backed by custodial wallets. Funded iff any wallet's
  cached balance is worth more than FUNDED_EPSILON_USD. Cached only -- keeping
  balances fresh is the BalanceMonitor's job.
- MEDIUM/HARD/HARDCORE goals are backed by the escrow contract. Funded iff
  the on-chain record holds a positive amount.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

from protocol import ESCROW_TIERS, FUNDED_EPSILON_USD, GoalTier, Network
from pledge.chain import BlockchainGateway, EscrowRecord, goal_id_hash
from pledge.errors import ExternalServiceError
from pledge.prices import PriceOracle

logger = logging.getLogger(__name__)


class FundingOracle(ABC):

    @abstractmethod
    async def is_funded(self, goal: dict, wallets: list[dict]) -> bool:
        ...

    async def has_open_stake(self, goal: dict, wallets: list[dict]) -> bool:
        """Funded and still open to change. Gates realism re-evaluation."""
        return await self.is_funded(goal, wallets)


class CustodialLedgerOracle(FundingOracle):

    def __init__(self, prices: PriceOracle):
        self.prices = prices

    def usd_value(self, wallet: dict) -> Decimal:
        balance = Decimal(wallet.get("last_balance") or "0")
        if balance <= 0:
            return Decimal(0)
        return balance * self.prices.price(Network(wallet["network"]))

    async def is_funded(self, goal: dict, wallets: list[dict]) -> bool:
        """Any wallet over the epsilon funds the goal.

        A wallet whose network has no price is skipped; its error is raised
        only when no other wallet clears the threshold.
        """
        price_error = None
        for wallet in wallets:
            try:
                if self.usd_value(wallet) > FUNDED_EPSILON_USD:
                    return True
            except ExternalServiceError as e:
                logger.warning(f"Skipping wallet in funding check: {e.message}",
                               extra={"goal_id": goal["id"], "wallet_id": wallet["id"]})
                price_error = price_error or e
        if price_error:
            raise price_error
        return False


class EscrowContractOracle(FundingOracle):

    def __init__(self, gateway: BlockchainGateway):
        self.gateway = gateway

    async def read(self, goal: dict) -> EscrowRecord:
        """Escrow record for a goal. Gateway failures surface as ExternalServiceError."""
        try:
            return await self.gateway.read_escrow(goal_id_hash(goal["owner_id"], goal["id"]))
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Escrow read failed: {e}", service="blockchain") from e

    async def is_funded(self, goal: dict, wallets: list[dict]) -> bool:
        record = await self.read(goal)
        return record.amount > 0

    async def has_open_stake(self, goal: dict, wallets: list[dict]) -> bool:
        # completed or claimed escrows still hold an amount
        record = await self.read(goal)
        return record.active


class FundingOracleSelector(FundingOracle):
    """Routes each goal to the oracle for its tier."""

    def __init__(self, ledger: CustodialLedgerOracle, escrow: EscrowContractOracle):
        self.ledger = ledger
        self.escrow = escrow

    def for_goal(self, goal: dict) -> FundingOracle:
        if GoalTier(goal["tier"]) in ESCROW_TIERS:
            return self.escrow
        return self.ledger

    async def is_funded(self, goal: dict, wallets: list[dict]) -> bool:
        return await self.for_goal(goal).is_funded(goal, wallets)

    async def has_open_stake(self, goal: dict, wallets: list[dict]) -> bool:
        return await self.for_goal(goal).has_open_stake(goal, wallets)
