"""Refund distribution for completed goals.

Each custodial wallet with a refund address is paid out independently:
sendable = balance - network fee. One wallet failing never stops the
others and nothing is rolled back; the summary carries per-wallet results.

Re-running after a successful payout is safe because the drained wallets
have nothing sendable left and fail with InsufficientBalance.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal

from protocol import GoalStatus, Network
from pledge.errors import InsufficientBalance, InvalidTransition, NotFoundError, PledgeError, ValidationError
from pledge.events import EventBus, iso
from pledge.keystore import CustodialKeyStore
from pledge.store import GoalStore

logger = logging.getLogger(__name__)


@dataclass
class WalletEstimate:
    wallet_id: str
    network: str
    refund_address: str
    current_balance: Decimal = Decimal(0)
    gas_fee: Decimal = Decimal(0)
    max_sendable: Decimal = Decimal(0)
    error_message: str | None = None

    @property
    def has_insufficient_balance(self) -> bool:
        return self.max_sendable <= 0

    def to_dict(self) -> dict:
        return {
            "walletId": self.wallet_id,
            "network": self.network,
            "refundAddress": self.refund_address,
            "currentBalance": str(self.current_balance),
            "gasFee": str(self.gas_fee),
            "maxSendableAmount": str(self.max_sendable),
            "hasInsufficientBalance": self.has_insufficient_balance,
            "errorMessage": self.error_message,
        }


@dataclass
class RefundStatus:
    eligible: bool
    wallets_with_refund_address: int
    total_wallets: int
    estimated_refund_amount: Decimal
    wallet_estimates: list[WalletEstimate] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "walletsWithRefundAddress": self.wallets_with_refund_address,
            "totalWallets": self.total_wallets,
            "estimatedRefundAmount": str(self.estimated_refund_amount),
            "walletEstimates": [e.to_dict() for e in self.wallet_estimates],
        }


@dataclass
class RefundResult:
    wallet_id: str
    network: str
    success: bool
    refund_address: str
    amount: Decimal = Decimal(0)
    tx_hash: str | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "walletId": self.wallet_id,
            "network": self.network,
            "success": self.success,
            "txHash": self.tx_hash,
            "error": self.error,
            "errorCode": self.error_code,
            "amount": str(self.amount),
            "refundAddress": self.refund_address,
        }


@dataclass
class RefundSummary:
    results: list[RefundResult]
    completed_at: float

    @property
    def total_refunds(self) -> int:
        return len(self.results)

    @property
    def successful_refunds(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_refunds(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict:
        return {
            "totalRefunds": self.total_refunds,
            "successfulRefunds": self.successful_refunds,
            "failedRefunds": self.failed_refunds,
            "results": [r.to_dict() for r in self.results],
            "completedAt": iso(self.completed_at),
        }


class RefundDistributor:

    def __init__(self, store: GoalStore, keystore: CustodialKeyStore, bus: EventBus | None = None,
                 clock=time.time):
        self.store = store
        self.keystore = keystore
        self.bus = bus
        self.clock = clock
        self._locks: dict[str, list] = {}  # goal_id -> [lock, users]

    @asynccontextmanager
    async def _goal_lock(self, goal_id: str):
        """Serialise refunds per goal. The entry is dropped when its last user leaves."""
        entry = self._locks.setdefault(goal_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[goal_id]

    def _goal(self, goal_id: str) -> dict:
        goal = self.store.get_goal(goal_id)
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    async def _sendable(self, wallet: dict) -> tuple[Decimal, Decimal, Decimal]:
        network = Network(wallet["network"])
        balance = await self.keystore.get_balance(wallet["address"], network)
        fee = await self.keystore.estimate_fee(network, wallet["address"], wallet["refund_address"])
        return balance, fee, max(Decimal(0), balance - fee)

    async def _estimate(self, wallet: dict) -> WalletEstimate:
        estimate = WalletEstimate(
            wallet_id=wallet["id"],
            network=wallet["network"],
            refund_address=wallet["refund_address"],
        )
        try:
            estimate.current_balance, estimate.gas_fee, estimate.max_sendable = await self._sendable(wallet)
        except PledgeError as e:
            logger.warning(f"Refund estimate failed: {e.message}", extra={"wallet_id": wallet["id"]})
            estimate.error_message = e.message
        return estimate

    async def get_status(self, goal_id: str) -> RefundStatus:
        """Per-wallet payout preview. Reads only."""
        self._goal(goal_id)
        wallets = self.store.wallets_for(goal_id)
        targets = [w for w in wallets if w["refund_address"]]
        estimates = list(await asyncio.gather(*(self._estimate(w) for w in targets)))
        return RefundStatus(
            eligible=any(e.max_sendable > 0 for e in estimates),
            wallets_with_refund_address=len(targets),
            total_wallets=len(wallets),
            estimated_refund_amount=sum((e.max_sendable for e in estimates), Decimal(0)),
            wallet_estimates=estimates,
        )

    async def execute(self, goal_id: str) -> RefundSummary:
        """Pay every refundable wallet of a COMPLETED goal. Partial failure is a normal result."""
        goal = self._goal(goal_id)
        if goal["status"] != GoalStatus.COMPLETED.value:
            raise InvalidTransition("Refunds are only available for completed goals")

        async with self._goal_lock(goal_id):
            targets = [w for w in self.store.wallets_for(goal_id) if w["refund_address"]]
            if not targets:
                raise ValidationError("No wallets have a refund address set", field="refund_address")

            results = list(await asyncio.gather(*(self._refund_wallet(w) for w in targets)))
            summary = RefundSummary(results=results, completed_at=self.clock())
            payload = summary.to_dict()
            self.store.log_refund(goal_id, payload)

        logger.info(
            f"Refunds: {summary.successful_refunds}/{summary.total_refunds} succeeded",
            extra={"goal_id": goal_id},
        )
        if self.bus:
            self.bus.refund_completed(goal, payload, summary.completed_at)
        return summary

    async def _refund_wallet(self, wallet: dict) -> RefundResult:
        result = RefundResult(
            wallet_id=wallet["id"],
            network=wallet["network"],
            success=False,
            refund_address=wallet["refund_address"],
        )
        try:
            balance, fee, sendable = await self._sendable(wallet)
            result.amount = sendable
            if sendable <= 0:
                raise InsufficientBalance(f"Balance {balance} does not cover the {fee} network fee")
            result.tx_hash = await self.keystore.transfer(
                wallet["key_ref"], wallet["refund_address"], sendable, Network(wallet["network"]),
            )
        except Exception as e:
            # One wallet's failure must not affect the others
            result.error = e.message if isinstance(e, PledgeError) else str(e)
            result.error_code = e.code if isinstance(e, PledgeError) else "TRANSFER_FAILED"
            logger.warning(f"Refund failed: {result.error}", extra={"wallet_id": wallet["id"]})
            return result

        result.success = True
        now = self.clock()
        self.store.update_balance(wallet["id"], "0", now)
        if self.bus:
            self.bus.balance_change(wallet, "0", now)
        logger.info("Refund sent", extra={"wallet_id": wallet["id"], "tx_hash": result.tx_hash})
        return result
