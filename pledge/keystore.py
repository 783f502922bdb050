"""Custodial key stores for goal wallets.

A key store generates keypairs, reads balances, estimates fees and signs
transfers. Private keys never leave it: callers get an address plus an
opaque key_ref, and hand the key_ref back when they want to send.

Two implementations:
- SimKeyStore: SQLite ledger for development and tests (no chain access)
- EvmKeyStore: real EVM accounts via eth_account/web3, keys Fernet-encrypted at rest
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import os
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account
from web3 import Web3

from protocol import NATIVE_TRANSFER_GAS, NETWORKS, Network
from pledge.errors import ExternalServiceError, InsufficientBalance, TransferError

logger = logging.getLogger(__name__)

WEI_PER_UNIT = Decimal(10) ** 18


@dataclass(frozen=True)
class Keypair:
    """Public half of a generated keypair. The private key stays in the store."""
    address: str
    key_ref: str


class CustodialKeyStore(ABC):
    """Abstract key store. The platform injects one into the app and the refund engine."""

    @abstractmethod
    async def generate(self, network: Network) -> Keypair:
        ...

    @abstractmethod
    async def get_balance(self, address: str, network: Network) -> Decimal:
        """Live native balance of an address, in whole units."""
        ...

    @abstractmethod
    async def estimate_fee(self, network: Network, from_address: str | None = None,
                           to_address: str | None = None) -> Decimal:
        """Fee for one plain transfer on the network, in whole units.

        With both addresses the gas limit is estimated for that route;
        without them a plain L1 value transfer is assumed.
        """
        ...

    @abstractmethod
    async def transfer(self, key_ref: str, to_address: str, amount: Decimal, network: Network) -> str:
        """Sign and broadcast a transfer. Returns the tx hash.

        Raises InsufficientBalance or TransferError; never a bare exception.
        """
        ...

    @abstractmethod
    def forget(self, key_ref: str):
        """Drop key material for a deleted wallet."""
        ...


class SimKeyStore(CustodialKeyStore):
    """Simulated key store for development/integration testing.

    Tracks balances per (network, address) in SQLite. Enforces:
    - No zero-amount transfers
    - Insufficient balance errors (amount + fee must be covered)
    - Full transaction log with deterministic hashes

    Failure injection for tests:
        sim.fail_transfers[address] = "node rejected tx"
        sim.fail_reads.add(address)

    Usage:
        sim = SimKeyStore()
        kp = await sim.generate(Network.POLYGON)
        sim.fund(kp.address, Network.POLYGON, "10")
        await sim.transfer(kp.key_ref, "0x...", Decimal("9.9"), Network.POLYGON)
    """

    DEFAULT_FEE = Decimal("0.0001")

    def __init__(self, db_path: str = ":memory:", fees: dict[Network, Decimal] | None = None):
        self.fees = dict(fees or {})
        self.fail_transfers: dict[str, str] = {}
        self.fail_reads: set[str] = set()
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_keys (
                key_ref TEXT PRIMARY KEY,
                address TEXT NOT NULL,
                network TEXT NOT NULL
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                network TEXT NOT NULL,
                address TEXT NOT NULL,
                balance TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (network, address)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                network TEXT NOT NULL,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                fee TEXT NOT NULL,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance(self, address: str, network: Network) -> Decimal:
        row = self._db.execute(
            "SELECT balance FROM sim_accounts WHERE network = ? AND address = ?",
            (network.value, address.lower()),
        ).fetchone()
        return Decimal(row["balance"]) if row else Decimal(0)

    def _set_balance(self, address: str, network: Network, balance: Decimal):
        self._db.execute(
            "INSERT INTO sim_accounts (network, address, balance) VALUES (?, ?, ?) "
            "ON CONFLICT(network, address) DO UPDATE SET balance = excluded.balance",
            (network.value, address.lower(), str(balance)),
        )

    def _record_tx(self, network: Network, from_acc: str, to_acc: str,
                   amount: Decimal, fee: Decimal, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = "0x" + hashlib.sha256(
            f"{self._tx_counter}:{network.value}:{from_acc}:{to_acc}:{amount}".encode()
        ).hexdigest()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, network, from_account, to_account, amount, fee, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, network.value, from_acc, to_acc, str(amount), str(fee), tx_type, time.time()),
        )
        return tx_hash

    # --- CustodialKeyStore interface ---

    async def generate(self, network: Network) -> Keypair:
        account = Account.create()
        key_ref = uuid.uuid4().hex
        with self._lock:
            self._db.execute(
                "INSERT INTO sim_keys (key_ref, address, network) VALUES (?, ?, ?)",
                (key_ref, account.address, network.value),
            )
            self._db.commit()
        return Keypair(address=account.address, key_ref=key_ref)

    async def get_balance(self, address: str, network: Network) -> Decimal:
        if address in self.fail_reads:
            raise ExternalServiceError(f"{network.value} node unreachable", service="blockchain")
        with self._lock:
            return self._get_balance(address, network)

    async def estimate_fee(self, network: Network, from_address: str | None = None,
                           to_address: str | None = None) -> Decimal:
        return self.fees.get(network, self.DEFAULT_FEE)

    async def transfer(self, key_ref: str, to_address: str, amount: Decimal, network: Network) -> str:
        amount = Decimal(amount)
        if amount <= 0:
            raise InsufficientBalance("Nothing to send after network fees")
        fee = await self.estimate_fee(network)

        with self._lock:
            row = self._db.execute(
                "SELECT address FROM sim_keys WHERE key_ref = ?",
                (key_ref,),
            ).fetchone()
            if not row:
                raise TransferError("Unknown key reference")
            from_address = row["address"]
            if from_address in self.fail_transfers:
                raise TransferError(self.fail_transfers[from_address])

            balance = self._get_balance(from_address, network)
            if balance < amount + fee:
                raise InsufficientBalance(
                    f"Insufficient balance: have {balance}, need {amount} + {fee} fee on {network.value}"
                )

            # Atomic transfer
            self._set_balance(from_address, network, balance - amount - fee)
            to_balance = self._get_balance(to_address, network)
            self._set_balance(to_address, network, to_balance + amount)
            tx_hash = self._record_tx(network, from_address, to_address, amount, fee, "transfer")
            self._db.commit()
            return tx_hash

    def forget(self, key_ref: str):
        with self._lock:
            self._db.execute("DELETE FROM sim_keys WHERE key_ref = ?", (key_ref,))
            self._db.commit()

    # --- SimKeyStore-only methods (for test setup) ---

    def fund(self, address: str, network: Network, amount: str | Decimal):
        """Credit an address (simulates an external deposit)."""
        amount = Decimal(amount)
        with self._lock:
            balance = self._get_balance(address, network)
            self._set_balance(address, network, balance + amount)
            self._record_tx(network, "faucet", address, amount, Decimal(0), "fund")
            self._db.commit()

    def balance_of(self, address: str, network: Network) -> Decimal:
        with self._lock:
            return self._get_balance(address, network)

    def get_transactions(self, network: Network | None = None) -> list[dict]:
        with self._lock:
            if network:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE network = ? ORDER BY id",
                    (network.value,),
                ).fetchall()
            else:
                rows = self._db.execute("SELECT * FROM sim_transactions ORDER BY id").fetchall()
            return [dict(r) for r in rows]


class EvmKeyStore(CustodialKeyStore):
    """EVM key store: eth_account keys, web3 reads and sends.

    Private keys are Fernet-encrypted in SQLite. The Fernet key is derived
    from PLEDGE_KEY_SECRET with HMAC-SHA256, so the database alone is not
    enough to move funds.

    Sync web3 calls run in the default executor.
    """

    def __init__(self, secret: str | None = None, db_path: str = ":memory:",
                 rpc_urls: dict[Network, str] | None = None):
        secret = secret or os.environ.get("PLEDGE_KEY_SECRET", "")
        if not secret:
            raise ValueError("Key store secret required: set PLEDGE_KEY_SECRET env var or pass secret=")
        derived = hmac.new(secret.encode(), b"custodial-wallet-keys", hashlib.sha256).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))
        self._rpc_urls = rpc_urls or {n: cfg["rpc"] for n, cfg in NETWORKS.items()}
        self._w3: dict[Network, Web3] = {}

        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS custodial_keys (
                key_ref TEXT PRIMARY KEY,
                address TEXT NOT NULL,
                network TEXT NOT NULL,
                encrypted_key BLOB NOT NULL,
                created_at REAL NOT NULL
            )
        """)
        self._db.commit()

    def _web3(self, network: Network) -> Web3:
        w3 = self._w3.get(network)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(self._rpc_urls[network], request_kwargs={"timeout": 30}))
            self._w3[network] = w3
        return w3

    def _private_key(self, key_ref: str) -> tuple[str, str]:
        with self._lock:
            row = self._db.execute(
                "SELECT address, encrypted_key FROM custodial_keys WHERE key_ref = ?",
                (key_ref,),
            ).fetchone()
        if not row:
            raise TransferError("Unknown key reference")
        try:
            return row["address"], self._fernet.decrypt(row["encrypted_key"]).decode()
        except InvalidToken as e:
            raise TransferError("Key material could not be decrypted") from e

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def generate(self, network: Network) -> Keypair:
        account = Account.create()
        key_ref = uuid.uuid4().hex
        encrypted = self._fernet.encrypt(account.key.hex().encode())
        with self._lock:
            self._db.execute(
                "INSERT INTO custodial_keys (key_ref, address, network, encrypted_key, created_at) VALUES (?, ?, ?, ?, ?)",
                (key_ref, account.address, network.value, encrypted, time.time()),
            )
            self._db.commit()
        logger.info("Generated custodial wallet", extra={"network": network.value})
        return Keypair(address=account.address, key_ref=key_ref)

    async def get_balance(self, address: str, network: Network) -> Decimal:
        w3 = self._web3(network)
        try:
            wei = await self._run(w3.eth.get_balance, Web3.to_checksum_address(address))
        except Exception as e:
            raise ExternalServiceError(f"Balance read failed on {network.value}: {e}", service="blockchain") from e
        return Decimal(wei) / WEI_PER_UNIT

    @staticmethod
    def _gas_limit(w3, from_address: str, to_address: str) -> int:
        # value 0 so an almost-drained wallet can still be estimated
        return w3.eth.estimate_gas({
            "from": Web3.to_checksum_address(from_address),
            "to": Web3.to_checksum_address(to_address),
            "value": 0,
        })

    async def estimate_fee(self, network: Network, from_address: str | None = None,
                           to_address: str | None = None) -> Decimal:
        w3 = self._web3(network)

        def _read():
            gas = NATIVE_TRANSFER_GAS
            if from_address and to_address:
                gas = self._gas_limit(w3, from_address, to_address)
            return w3.eth.gas_price * gas

        try:
            fee_wei = await self._run(_read)
        except Exception as e:
            raise ExternalServiceError(f"Fee estimate failed on {network.value}: {e}", service="blockchain") from e
        return Decimal(fee_wei) / WEI_PER_UNIT

    async def transfer(self, key_ref: str, to_address: str, amount: Decimal, network: Network) -> str:
        from_address, private_key = self._private_key(key_ref)
        value = int(Decimal(amount) * WEI_PER_UNIT)
        if value <= 0:
            raise InsufficientBalance("Nothing to send after network fees")
        w3 = self._web3(network)
        chain_id = NETWORKS[network]["chain_id"]

        def _send():
            balance = w3.eth.get_balance(from_address)
            gas_price = w3.eth.gas_price
            gas = self._gas_limit(w3, from_address, to_address)
            if balance < value + gas_price * gas:
                raise InsufficientBalance(
                    f"Insufficient balance: have {Decimal(balance) / WEI_PER_UNIT}, "
                    f"need {amount} plus fees on {network.value}"
                )
            tx = {
                "to": Web3.to_checksum_address(to_address),
                "value": value,
                "gas": gas,
                "gasPrice": gas_price,
                "nonce": w3.eth.get_transaction_count(from_address),
                "chainId": chain_id,
            }
            signed = w3.eth.account.sign_transaction(tx, private_key)
            return w3.eth.send_raw_transaction(signed.raw_transaction).hex()

        try:
            tx_hash = await self._run(_send)
        except TransferError:
            raise
        except Exception as e:
            raise TransferError(f"Transfer failed on {network.value}: {e}") from e
        if not tx_hash.startswith("0x"):
            tx_hash = "0x" + tx_hash
        logger.info("Custodial transfer broadcast", extra={"network": network.value, "tx_hash": tx_hash})
        return tx_hash

    def forget(self, key_ref: str):
        with self._lock:
            self._db.execute("DELETE FROM custodial_keys WHERE key_ref = ?", (key_ref,))
            self._db.commit()
