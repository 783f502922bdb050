#!/usr/bin/env python3
"""Pledge server.

Configuration comes from env vars (never in code):
  PLEDGE_DB                 SQLite path for goals/wallets
  PLEDGE_KEYS_DB            SQLite path for encrypted custodial keys
  PLEDGE_KEY_SECRET         secret the key encryption key is derived from
  PLEDGE_CONTRACT_OWNER_KEY escrow contract owner key (markCompleted)
  OPENROUTER_API_KEY        AI validator
  PLEDGE_SIMULATE=1         simulated chain, keys and prices (development)
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import logging

import uvicorn
from pledge.app import create_app
from pledge.chain import SimEscrowGateway, Web3EscrowGateway
from pledge.keystore import EvmKeyStore, SimKeyStore
from pledge.observability import setup_logging
from pledge.prices import CoinGeckoPriceOracle, StaticPriceOracle
from pledge.store import GoalStore
from pledge.validator import AIValidator

DB_PATH = os.environ.get("PLEDGE_DB", "/var/lib/pledge/pledge.db")
KEYS_DB_PATH = os.environ.get("PLEDGE_KEYS_DB", "/var/lib/pledge/keys.db")
HOST = os.environ.get("PLEDGE_HOST", "0.0.0.0")
PORT = int(os.environ.get("PLEDGE_PORT", "8000"))
LOG_LEVEL = os.environ.get("PLEDGE_LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("PLEDGE_LOG_FORMAT", "json")
SIMULATE = os.environ.get("PLEDGE_SIMULATE", "") == "1"

logger = logging.getLogger("pledge.server")


def build_app():
    store = GoalStore(DB_PATH)
    jobs = []
    if SIMULATE:
        keystore = SimKeyStore(KEYS_DB_PATH)
        gateway = SimEscrowGateway()
        prices = StaticPriceOracle()
        logger.warning("Running in simulation mode: no real chain access")
    else:
        if not os.environ.get("PLEDGE_KEY_SECRET"):
            print("PLEDGE_KEY_SECRET env var required (or PLEDGE_SIMULATE=1)", file=sys.stderr)
            sys.exit(1)
        keystore = EvmKeyStore(db_path=KEYS_DB_PATH)
        gateway = Web3EscrowGateway()
        prices = CoinGeckoPriceOracle()
        jobs.append(prices.run_forever)
    if not os.environ.get("OPENROUTER_API_KEY"):
        logger.warning("OPENROUTER_API_KEY not set: completions fall back to task completion rate")

    return create_app(
        store=store,
        keystore=keystore,
        gateway=gateway,
        prices=prices,
        validator=AIValidator(),
        background_jobs=jobs,
    )


def main():
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    for path in (DB_PATH, KEYS_DB_PATH):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    app = build_app()
    logger.info(f"Pledge server on {HOST}:{PORT} (simulate={SIMULATE})")
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
