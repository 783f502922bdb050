# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the pledge service (FastAPI).

Endpoints for the funding lifecycle: create goal, set difficulty, publish,
mark complete, refund, wallet management, balance monitoring and a
per-goal SSE event stream.

Caller identity comes from the X-User-Id header (set by the auth proxy in
front of this service). Goals and wallets owned by someone else are 404.
"""

import sys
import os
import time
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import logging
import queue as _queue_mod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from web3 import Web3

from pledge.chain import BlockchainGateway, SimEscrowGateway, goal_id_hash
from pledge.errors import AuthError, InvalidTransition, NotFoundError, PledgeError, ValidationError
from pledge.events import EventBus
from pledge.keystore import CustodialKeyStore, SimKeyStore
from pledge.machine import GoalStateMachine
from pledge.monitor import BalanceMonitor
from pledge.oracle import CustodialLedgerOracle, EscrowContractOracle, FundingOracleSelector
from pledge.prices import PriceOracle, StaticPriceOracle
from pledge.refunds import RefundDistributor
from pledge.store import GoalStore
from pledge.validator import AIValidator
from protocol import (
    MONITOR_DURATION, MONITOR_INTERVAL, MONITOR_RESTART_COOLDOWN, SSE_KEEPALIVE_SECONDS,
    GoalStatus, GoalTier, Network,
)

logger = logging.getLogger(__name__)


# --- Request models ---

class CreateGoalRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    deadline: float  # unix seconds
    network: Network  # first custodial wallet

class StatusRequest(BaseModel):
    status: GoalStatus

class DifficultyRequest(BaseModel):
    difficulty: GoalTier

class WalletRequest(BaseModel):
    network: Network

class RefundAddressRequest(BaseModel):
    wallet_id: str = Field(validation_alias=AliasChoices("wallet_id", "walletId"))
    refund_address: str = Field(validation_alias=AliasChoices("refund_address", "refundAddress"))


def _start_of_tomorrow(now: float) -> float:
    today = datetime.fromtimestamp(now, timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return (today + timedelta(days=1)).timestamp()


def _wallet_view(wallet: dict) -> dict:
    """Wallet as returned over HTTP. The key reference stays server-side."""
    return {k: v for k, v in wallet.items() if k != "key_ref"}


def _goal_view(goal: dict, wallets: list[dict]) -> dict:
    return {
        **goal,
        "goal_hash": goal_id_hash(goal["owner_id"], goal["id"]),
        "wallets": [_wallet_view(w) for w in wallets],
    }


def _caller(request: Request) -> int:
    raw = request.headers.get("X-User-Id", "")
    try:
        return int(raw)
    except ValueError:
        raise AuthError("Authentication required (X-User-Id header)") from None


# --- Error handlers ---

def register_error_handlers(app: FastAPI) -> None:
    """Domain errors, request validation (400 with field details), and a catch-all 500."""

    @app.exception_handler(PledgeError)
    async def pledge_error_handler(request: Request, exc: PledgeError):
        level = logging.ERROR if exc.http_status >= 500 else logging.INFO
        logger.log(level, f"{exc.code}: {exc.message}", extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "code": ValidationError.code,
                    "message": "Invalid request data",
                    "details": [
                        {
                            "field": ".".join(str(loc) for loc in e["loc"]),
                            "message": e["msg"],
                            "type": e["type"],
                        }
                        for e in exc.errors()
                    ],
                },
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
        )


# --- App factory ---

def create_app(
    store: GoalStore | None = None,
    keystore: CustodialKeyStore | None = None,
    gateway: BlockchainGateway | None = None,
    prices: PriceOracle | None = None,
    validator: AIValidator | None = None,
    bus: EventBus | None = None,
    clock=None,
    monitor_duration: float = MONITOR_DURATION,
    monitor_interval: float = MONITOR_INTERVAL,
    restart_cooldown: float = MONITOR_RESTART_COOLDOWN,
    background_jobs: list | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Defaults are fully simulated (in-memory store, SimKeyStore,
    SimEscrowGateway, static prices). background_jobs are zero-arg
    coroutine functions run for the app's lifetime (e.g. price refresh).
    """

    # Defaults
    _clock = clock or time.time
    _store = store or GoalStore()
    _keystore = keystore or SimKeyStore()
    _gateway = gateway or SimEscrowGateway()
    _prices = prices or StaticPriceOracle()
    _validator = validator or AIValidator()
    _bus = bus or EventBus()

    _oracle = FundingOracleSelector(CustodialLedgerOracle(_prices), EscrowContractOracle(_gateway))
    _machine = GoalStateMachine(_store, _oracle, _validator, _gateway, bus=_bus, clock=_clock)
    _monitor = BalanceMonitor(
        _store, _keystore, bus=_bus, clock=_clock,
        duration=monitor_duration, interval=monitor_interval, restart_cooldown=restart_cooldown,
    )
    _refunds = RefundDistributor(_store, _keystore, bus=_bus, clock=_clock)
    _jobs = list(background_jobs or [])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop = asyncio.get_running_loop()
        running = [loop.create_task(job()) for job in _jobs]
        try:
            yield
        finally:
            await _monitor.shutdown()
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)

    app = FastAPI(title="Pledge", version="1.0", lifespan=lifespan)
    register_error_handlers(app)

    # Expose for testing
    app.state.store = _store
    app.state.keystore = _keystore
    app.state.gateway = _gateway
    app.state.prices = _prices
    app.state.bus = _bus
    app.state.machine = _machine
    app.state.monitor = _monitor
    app.state.refunds = _refunds

    # --- Helpers ---

    def _owned_goal(goal_id: str, owner_id: int) -> dict:
        goal = _store.get_goal(goal_id)
        if not goal or goal["owner_id"] != owner_id:
            raise NotFoundError("Goal not found")
        return goal

    def _owned_wallet(wallet_id: str, owner_id: int) -> tuple[dict, dict]:
        wallet = _store.get_wallet(wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        goal = _store.get_goal(wallet["goal_id"])
        if not goal or goal["owner_id"] != owner_id:
            raise NotFoundError("Wallet not found")
        return wallet, goal

    async def _provision_wallet(goal_id: str, network: Network) -> dict:
        if _store.has_wallet(goal_id, network.value):
            raise ValidationError(f"Goal already has a {network.value} wallet", field="network")
        keypair = await _keystore.generate(network)
        try:
            wallet_id = _store.add_wallet(goal_id, network.value, keypair.address, keypair.key_ref)
        except ValueError as e:
            _keystore.forget(keypair.key_ref)
            raise ValidationError(str(e), field="network") from e
        return _store.get_wallet(wallet_id)

    def _view(goal_id: str) -> dict:
        return _goal_view(_store.get_goal(goal_id), _store.wallets_for(goal_id))

    # --- Goals ---

    @app.post("/goals", status_code=201)
    async def create_goal(req: CreateGoalRequest, request: Request):
        owner = _caller(request)
        if req.deadline < _start_of_tomorrow(_clock()):
            raise ValidationError("Deadline must be tomorrow or later", field="deadline")
        goal_id = _store.create_goal(owner, req.title.strip(), req.description, req.deadline)
        try:
            await _provision_wallet(goal_id, req.network)
        except PledgeError:
            _store.delete_goal(goal_id)
            raise
        logger.info("Goal created", extra={"goal_id": goal_id, "network": req.network.value})
        return _view(goal_id)

    @app.get("/goals")
    async def list_goals(request: Request):
        owner = _caller(request)
        goals = _store.list_goals(owner)
        return {"goals": [_goal_view(g, _store.wallets_for(g["id"])) for g in goals]}

    @app.get("/goals/{goal_id}")
    async def get_goal(goal_id: str, request: Request):
        _owned_goal(goal_id, _caller(request))
        return _view(goal_id)

    @app.delete("/goals/{goal_id}", status_code=204)
    async def delete_goal(goal_id: str, request: Request):
        _owned_goal(goal_id, _caller(request))
        wallets = _machine.delete(goal_id)
        for w in wallets:
            await _monitor.stop(w["id"])
            _keystore.forget(w["key_ref"])
        return Response(status_code=204)

    @app.patch("/goals/{goal_id}/status")
    async def update_status(goal_id: str, req: StatusRequest, request: Request):
        _owned_goal(goal_id, _caller(request))
        await _machine.transition(goal_id, req.status)
        return _view(goal_id)

    @app.patch("/goals/{goal_id}/difficulty")
    async def update_difficulty(goal_id: str, req: DifficultyRequest, request: Request):
        _owned_goal(goal_id, _caller(request))
        await _machine.set_tier(goal_id, req.difficulty)
        return _view(goal_id)

    @app.post("/goals/{goal_id}/mark-complete")
    async def mark_complete(goal_id: str, request: Request):
        """AI-validated completion. 429 within 24h of the last attempt.

        Response: {goal, aiValidation, completionStats, blockchain}
        """
        _owned_goal(goal_id, _caller(request))
        outcome = await _machine.request_completion(goal_id)
        body = outcome.to_dict()
        body["goal"] = _view(goal_id)
        return body

    @app.post("/goals/{goal_id}/evaluate")
    async def evaluate_goal(goal_id: str, request: Request):
        _owned_goal(goal_id, _caller(request))
        evaluation = await _machine.evaluate(goal_id)
        return evaluation.to_dict()

    # --- Wallets ---

    @app.post("/goals/{goal_id}/wallets", status_code=201)
    async def add_wallet(goal_id: str, req: WalletRequest, request: Request):
        _owned_goal(goal_id, _caller(request))
        wallet = await _provision_wallet(goal_id, req.network)
        return _wallet_view(wallet)

    @app.patch("/goals/{goal_id}/refund-address")
    async def set_refund_address(goal_id: str, req: RefundAddressRequest, request: Request):
        goal = _owned_goal(goal_id, _caller(request))
        if goal["status"] == GoalStatus.FAILED.value:
            raise InvalidTransition("Cannot set a refund address on a failed goal")
        wallet = _store.get_wallet(req.wallet_id)
        if not wallet or wallet["goal_id"] != goal_id:
            raise NotFoundError("Wallet not found")
        if not Web3.is_address(req.refund_address):
            raise ValidationError("Refund address is not a valid EVM address", field="refund_address")
        _store.set_refund_address(req.wallet_id, Web3.to_checksum_address(req.refund_address))
        return _wallet_view(_store.get_wallet(req.wallet_id))

    @app.post("/wallets/{wallet_id}/update-balance")
    async def update_balance(wallet_id: str, request: Request):
        """Fetch the live balance now. Custodial PENDING goals advance to FUNDED once it is positive."""
        wallet, goal = _owned_wallet(wallet_id, _caller(request))
        wallet = await _monitor.refresh(wallet_id)
        goal = await _machine.sync_funding(goal["id"])
        return {"wallet": _wallet_view(wallet), "goalStatus": goal["status"]}

    @app.get("/wallets/{wallet_id}/monitoring-status")
    async def monitoring_status(wallet_id: str, request: Request):
        """Start (or reset) a 30 minute polling session for a wallet of an ACTIVE goal."""
        _owned_wallet(wallet_id, _caller(request))
        resetting = _monitor.session(wallet_id) is not None
        session = await _monitor.start(wallet_id)
        return {
            "message": "Wallet monitoring reset" if resetting else "Wallet monitoring started",
            "duration": f"{_monitor.duration / 60:g} minutes",
            "interval": f"{_monitor.interval:g} seconds",
            "walletId": session.wallet_id,
            "goalId": session.goal_id,
            "expiresAt": session.to_dict()["expiresAt"],
        }

    # --- Refunds ---

    @app.get("/goals/{goal_id}/refund-status")
    async def refund_status(goal_id: str, request: Request):
        _owned_goal(goal_id, _caller(request))
        result = await _refunds.get_status(goal_id)
        return result.to_dict()

    @app.post("/goals/{goal_id}/refund")
    async def refund(goal_id: str, request: Request):
        """Pay out every wallet with a refund address. Partial failure is still 200."""
        _owned_goal(goal_id, _caller(request))
        summary = await _refunds.execute(goal_id)
        return summary.to_dict()

    # --- Events ---

    @app.get("/goals/{goal_id}/events")
    async def stream_goal_events(goal_id: str, request: Request):
        """SSE stream of balance-change, status-change and refund-completed events for one goal.

        Usage:
            curl -N -H 'X-User-Id: 1' http://localhost:8000/goals/<id>/events
        """
        _owned_goal(goal_id, _caller(request))
        sub = _bus.subscribe(goal_id=goal_id)

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.to_thread(sub.get, SSE_KEEPALIVE_SECONDS)
                        yield f"event: {event['event']}\ndata: {json_mod.dumps(event)}\n\n"
                    except _queue_mod.Empty:
                        yield ": keepalive\n\n"
            finally:
                _bus.unsubscribe(sub)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "monitoredWallets": len(_monitor.active_sessions())}

    return app
