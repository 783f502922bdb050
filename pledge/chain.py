"""Blockchain gateway for the goal escrow contract.

MEDIUM+ goals stake funds in an on-chain escrow keyed by
keccak256("{owner_id}-{goal_id}"). The gateway reads that record and
lets the platform (as contract owner) mark a goal completed.

- SimEscrowGateway: in-memory records, for development and tests
- Web3EscrowGateway: the deployed contract, via web3 in a thread executor
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3

from protocol import CONTRACT_OWNER_KEY, ESCROW_ADDRESS, ESCROW_NETWORK, NETWORKS, Network
from pledge.errors import ExternalServiceError

logger = logging.getLogger(__name__)

WEI_PER_UNIT = Decimal(10) ** 18


def goal_id_hash(owner_id: int | str, goal_id: str) -> str:
    """Deterministic escrow key for a goal, 0x-prefixed hex."""
    return "0x" + bytes(Web3.keccak(text=f"{owner_id}-{goal_id}")).hex()


@dataclass
class EscrowRecord:
    """On-chain escrow state for one goal."""
    exists: bool
    amount: Decimal = Decimal(0)
    completed: bool = False
    claimed: bool = False
    deadline: int = 0
    validated_by_ai: bool = False
    user: str = ""
    recipient: str = ""

    @property
    def active(self) -> bool:
        """Staked and still open: counts as funded for re-evaluation."""
        return self.exists and self.amount > 0 and not self.completed and not self.claimed


class BlockchainGateway(ABC):
    """Abstract escrow contract access."""

    @abstractmethod
    async def read_escrow(self, goal_hash: str) -> EscrowRecord:
        ...

    @abstractmethod
    async def commit(self, goal_hash: str, amount: Decimal, deadline: int, recipient: str) -> str:
        """Stake `amount` against the goal. Returns tx hash."""
        ...

    @abstractmethod
    async def mark_completed(self, goal_hash: str, by_ai: bool) -> str:
        """Mark the goal completed on chain. Returns tx hash."""
        ...


class SimEscrowGateway(BlockchainGateway):
    """In-memory escrow contract.

    Failure injection:
        gw.unreachable = True     # every call raises ExternalServiceError
        gw.fail_writes = True     # reads work, writes raise
    """

    def __init__(self):
        self.records: dict[str, EscrowRecord] = {}
        self.calls: list[dict] = []  # log of writes for test assertions
        self.unreachable = False
        self.fail_writes = False

    def _check(self, write: bool = False):
        if self.unreachable:
            raise ExternalServiceError("Escrow contract unreachable", service="blockchain")
        if write and self.fail_writes:
            raise ExternalServiceError("Escrow transaction reverted", service="blockchain")

    def _tx_hash(self, *parts) -> str:
        seed = ":".join(str(p) for p in (len(self.calls), *parts))
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    async def read_escrow(self, goal_hash: str) -> EscrowRecord:
        self._check()
        return self.records.get(goal_hash, EscrowRecord(exists=False))

    async def commit(self, goal_hash: str, amount: Decimal, deadline: int, recipient: str) -> str:
        self._check(write=True)
        record = self.records.get(goal_hash)
        if record and record.exists:
            raise ExternalServiceError("Goal already committed", service="blockchain")
        self.records[goal_hash] = EscrowRecord(
            exists=True, amount=Decimal(amount), deadline=deadline, recipient=recipient,
        )
        tx_hash = self._tx_hash("commit", goal_hash, amount)
        self.calls.append({"fn": "commit", "goal_hash": goal_hash, "amount": str(amount), "tx_hash": tx_hash})
        return tx_hash

    async def mark_completed(self, goal_hash: str, by_ai: bool) -> str:
        self._check(write=True)
        record = self.records.get(goal_hash)
        if not record or not record.exists:
            raise ExternalServiceError("Goal does not exist on chain", service="blockchain")
        record.completed = True
        record.validated_by_ai = by_ai
        tx_hash = self._tx_hash("markCompleted", goal_hash, by_ai)
        self.calls.append({"fn": "markCompleted", "goal_hash": goal_hash, "by_ai": by_ai, "tx_hash": tx_hash})
        return tx_hash


# Minimal ABI: only the functions we call
ESCROW_ABI = [
    {
        "inputs": [{"name": "goalId", "type": "bytes32"}],
        "name": "getGoal",
        "outputs": [
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "completed", "type": "bool"},
            {"name": "validatedByAI", "type": "bool"},
            {"name": "recipient", "type": "address"},
            {"name": "claimed", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "goalId", "type": "bytes32"}],
        "name": "goalExists",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "goalId", "type": "bytes32"},
            {"name": "deadline", "type": "uint256"},
            {"name": "recipient", "type": "address"},
        ],
        "name": "commitGoal",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "goalId", "type": "bytes32"},
            {"name": "byAI", "type": "bool"},
        ],
        "name": "markCompleted",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class Web3EscrowGateway(BlockchainGateway):
    """Deployed escrow contract.

    Writes are signed with the contract owner key (PLEDGE_CONTRACT_OWNER_KEY).
    Reads work without it.
    """

    def __init__(self, rpc_url: str | None = None, contract_address: str | None = None,
                 owner_key: str | None = None, network: Network | None = None):
        network = network or ESCROW_NETWORK
        self.chain_id = NETWORKS[network]["chain_id"]
        self.w3 = Web3(Web3.HTTPProvider(rpc_url or NETWORKS[network]["rpc"], request_kwargs={"timeout": 30}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address or ESCROW_ADDRESS),
            abi=ESCROW_ABI,
        )
        self._owner_key = owner_key if owner_key is not None else CONTRACT_OWNER_KEY
        self._owner_address = self.w3.eth.account.from_key(self._owner_key).address if self._owner_key else ""

    async def _run(self, fn):
        try:
            return await asyncio.get_running_loop().run_in_executor(None, fn)
        except ExternalServiceError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Escrow contract call failed: {e}", service="blockchain") from e

    async def read_escrow(self, goal_hash: str) -> EscrowRecord:
        key = Web3.to_bytes(hexstr=goal_hash)

        def _read():
            if not self.contract.functions.goalExists(key).call():
                return EscrowRecord(exists=False)
            user, amount, deadline, completed, by_ai, recipient, claimed = (
                self.contract.functions.getGoal(key).call()
            )
            return EscrowRecord(
                exists=True,
                amount=Decimal(amount) / WEI_PER_UNIT,
                completed=completed,
                claimed=claimed,
                deadline=deadline,
                validated_by_ai=by_ai,
                user=user,
                recipient=recipient,
            )

        return await self._run(_read)

    def _send(self, tx_fn, value: int = 0) -> str:
        if not self._owner_key:
            raise ExternalServiceError("Contract owner key not configured", service="blockchain")
        tx = tx_fn.build_transaction({
            "from": self._owner_address,
            "value": value,
            "nonce": self.w3.eth.get_transaction_count(self._owner_address),
            "gasPrice": self.w3.eth.gas_price,
            "chainId": self.chain_id,
        })
        signed = self.w3.eth.account.sign_transaction(tx, self._owner_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt["status"] != 1:
            raise ExternalServiceError("Escrow transaction reverted", service="blockchain")
        hex_hash = tx_hash.hex()
        return hex_hash if hex_hash.startswith("0x") else "0x" + hex_hash

    async def commit(self, goal_hash: str, amount: Decimal, deadline: int, recipient: str) -> str:
        key = Web3.to_bytes(hexstr=goal_hash)
        value = int(Decimal(amount) * WEI_PER_UNIT)
        fn = self.contract.functions.commitGoal(key, deadline, Web3.to_checksum_address(recipient))
        tx_hash = await self._run(lambda: self._send(fn, value=value))
        logger.info("Escrow commit confirmed", extra={"tx_hash": tx_hash})
        return tx_hash

    async def mark_completed(self, goal_hash: str, by_ai: bool) -> str:
        key = Web3.to_bytes(hexstr=goal_hash)
        fn = self.contract.functions.markCompleted(key, by_ai)
        tx_hash = await self._run(lambda: self._send(fn))
        logger.info("Escrow markCompleted confirmed", extra={"tx_hash": tx_hash})
        return tx_hash
