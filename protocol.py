"""Shared constants and enums for the pledge funding service.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum

# --- Funding / settlement constants ---

# A custodial wallet counts as funded once its cached balance is worth more than this
FUNDED_EPSILON_USD = Decimal("0.0001")

# Completion requests: one attempt per goal per cooldown window
COMPLETION_COOLDOWN = 24 * 3600  # seconds
FALLBACK_COMPLETION_RATE = 80  # % of tasks done to complete without the AI validator
PARSE_FALLBACK_COMPLETION_RATE = 70  # % used when the validator's reply is unreadable

# Balance monitoring
MONITOR_DURATION = 30 * 60  # seconds a session lives after (re)start
MONITOR_INTERVAL = 30  # seconds between polls
MONITOR_RESTART_COOLDOWN = float(os.environ.get("PLEDGE_MONITOR_RESTART_COOLDOWN", "10"))

# Price cache
PRICE_REFRESH_INTERVAL = 10 * 60
PRICE_MAX_RETRIES = 5
PRICE_RETRY_BASE_DELAY = 1.0  # doubled after each failed attempt
COINGECKO_API_URL = "https://api.coingecko.com/api/v3/simple/price"
COINGECKO_PRO_API_URL = "https://pro-api.coingecko.com/api/v3/simple/price"
COINGECKO_API_KEY = os.environ.get("COINGECKO_API_KEY", "")

# AI validator
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_AI_MODEL = os.environ.get("PLEDGE_AI_MODEL", "openai/gpt-4o-mini")

# SSE
MAX_SSE_SUBSCRIBERS = 1000
SSE_KEEPALIVE_SECONDS = 15.0

# Event names pushed to subscribers
EVENT_BALANCE_CHANGE = "balance-change"
EVENT_REFUND_COMPLETED = "refund-completed"
EVENT_STATUS_CHANGE = "status-change"


# --- Goal lifecycle ---

class GoalStatus(Enum):
    PENDING = "PENDING"
    FUNDED = "FUNDED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class GoalTier(Enum):
    UNSET = "UNSET"
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"
    HARDCORE = "HARDCORE"


class TaskStatus(Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


# Valid status transitions: current -> set of valid next statuses
STATUS_TRANSITIONS = {
    GoalStatus.PENDING: {GoalStatus.PENDING, GoalStatus.FUNDED},
    GoalStatus.FUNDED: {GoalStatus.FUNDED, GoalStatus.ACTIVE},
    GoalStatus.ACTIVE: {GoalStatus.FUNDED, GoalStatus.COMPLETED, GoalStatus.FAILED},  # unpublish or close
    GoalStatus.COMPLETED: set(),
    GoalStatus.FAILED: set(),
}

# Edges that are only taken while the funding oracle reports the goal as funded
FUNDING_REQUIRED = {
    (GoalStatus.PENDING, GoalStatus.FUNDED),
    (GoalStatus.FUNDED, GoalStatus.ACTIVE),
    (GoalStatus.ACTIVE, GoalStatus.COMPLETED),
    (GoalStatus.ACTIVE, GoalStatus.FAILED),
}

# Custodial wallets back these tiers; the escrow contract backs the rest
LEDGER_TIERS = {GoalTier.UNSET, GoalTier.EASY}
ESCROW_TIERS = {GoalTier.MEDIUM, GoalTier.HARD, GoalTier.HARDCORE}


# --- Networks ---

class Network(Enum):
    ERC20 = "ERC20"
    ARBITRUM = "ARBITRUM"
    OPTIMISM = "OPTIMISM"
    POLYGON = "POLYGON"
    BSC = "BSC"
    METIS = "METIS"


def _rpc(network: str, default: str) -> str:
    return os.environ.get(f"PLEDGE_RPC_{network}", default)


NETWORKS = {
    Network.ERC20: {
        "rpc": _rpc("ERC20", "https://mainnet.infura.io/v3/" + os.environ.get("INFURA_PROJECT_ID", "")),
        "chain_id": 1,
        "coingecko_id": "ethereum",
        "symbol": "ETH",
    },
    Network.ARBITRUM: {
        "rpc": _rpc("ARBITRUM", "https://arb1.arbitrum.io/rpc"),
        "chain_id": 42161,
        "coingecko_id": "ethereum",
        "symbol": "ETH",
    },
    Network.OPTIMISM: {
        "rpc": _rpc("OPTIMISM", "https://mainnet.optimism.io"),
        "chain_id": 10,
        "coingecko_id": "ethereum",
        "symbol": "ETH",
    },
    Network.POLYGON: {
        "rpc": _rpc("POLYGON", "https://polygon-rpc.com"),
        "chain_id": 137,
        "coingecko_id": "matic-network",
        "symbol": "POL",
    },
    Network.BSC: {
        "rpc": _rpc("BSC", "https://bsc-dataseed.binance.org/"),
        "chain_id": 56,
        "coingecko_id": "binancecoin",
        "symbol": "BNB",
    },
    Network.METIS: {
        "rpc": _rpc("METIS", "https://hyperion-testnet.metisdevops.link"),
        "chain_id": 133717,
        "coingecko_id": "metis-token",
        "symbol": "METIS",
    },
}

# Gas for a plain L1 value transfer; fee previews without a destination use it
NATIVE_TRANSFER_GAS = 21_000

# Escrow contract -- set via env vars, defaults to the Hyperion testnet deployment
ESCROW_NETWORK = Network(os.environ.get("PLEDGE_ESCROW_NETWORK", "METIS"))
ESCROW_ADDRESS = os.environ.get("PLEDGE_ESCROW_ADDRESS", "0x9001F31c94d4bf96D30f05467aEB09686EF945c1")
CONTRACT_OWNER_KEY = os.environ.get("PLEDGE_CONTRACT_OWNER_KEY", "")
