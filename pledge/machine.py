"""Goal state machine.

Owns every status and tier change. Status follows STATUS_TRANSITIONS;
edges in FUNDING_REQUIRED are only taken when the funding oracle for the
goal's tier says the pledge is real. Tiers only move up, and once a goal
is escrow-backed (MEDIUM+) its tier is frozen.

Completion goes through the AI validator with a 24h cooldown per goal.
If the validator is down, goals with >= 80% of tasks done complete anyway
(flagged as fallback); the rest get ServiceUnavailable.
"""

import logging
import math
import time
from dataclasses import dataclass

from protocol import (
    COMPLETION_COOLDOWN, ESCROW_TIERS, FALLBACK_COMPLETION_RATE, FUNDING_REQUIRED, LEDGER_TIERS,
    STATUS_TRANSITIONS, GoalStatus, GoalTier,
)
from pledge.chain import BlockchainGateway, goal_id_hash
from pledge.errors import (
    CompletionRejected, ExternalServiceError, InvalidTransition, NotFoundError, NotFunded,
    RateLimited, ServiceUnavailable, TierLocked, ValidationError,
)
from pledge.events import EventBus, iso
from pledge.oracle import FundingOracleSelector
from pledge.store import GoalStore
from pledge.validator import AIValidator, CompletionVerdict, GoalSnapshot, RealismEvaluation

logger = logging.getLogger(__name__)


def completion_cooldown(now: float, last_attempt: float | None,
                        cooldown: float = COMPLETION_COOLDOWN) -> int | None:
    """Hours left before another completion attempt, or None if allowed now."""
    if last_attempt is None:
        return None
    elapsed = now - last_attempt
    if elapsed >= cooldown:
        return None
    return math.ceil((cooldown - elapsed) / 3600)


@dataclass
class CompletionOutcome:
    """Result of a successful completion request."""
    goal: dict
    verdict: CompletionVerdict
    snapshot: GoalSnapshot
    blockchain: dict

    def to_dict(self) -> dict:
        stats = self.snapshot.stats()
        stats["completedAt"] = iso(self.goal["completed_at"]) if self.goal.get("completed_at") else None
        return {
            "goal": self.goal,
            "aiValidation": self.verdict.to_dict(),
            "completionStats": stats,
            "blockchain": self.blockchain,
        }


def _parse(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", field=field) from None


class GoalStateMachine:

    def __init__(self, store: GoalStore, oracle: FundingOracleSelector, validator: AIValidator,
                 gateway: BlockchainGateway, bus: EventBus | None = None, clock=time.time):
        self.store = store
        self.oracle = oracle
        self.validator = validator
        self.gateway = gateway
        self.bus = bus
        self.clock = clock

    def _goal(self, goal_id: str) -> dict:
        goal = self.store.get_goal(goal_id)
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    async def is_funded(self, goal: dict) -> bool:
        return await self.oracle.is_funded(goal, self.store.wallets_for(goal["id"]))

    def _publish_status(self, goal: dict, previous: str):
        if self.bus and goal["status"] != previous:
            self.bus.status_change(goal, previous, self.clock())

    # --- Status ---

    async def transition(self, goal_id: str, new_status: GoalStatus | str) -> dict:
        """Move a goal to new_status. Raises InvalidTransition / NotFunded."""
        goal = self._goal(goal_id)
        current = GoalStatus(goal["status"])
        target = _parse(GoalStatus, new_status, "status")

        if target not in STATUS_TRANSITIONS[current]:
            raise InvalidTransition(f"Invalid status transition: {current.value} -> {target.value}")
        if (current, target) in FUNDING_REQUIRED and not await self.is_funded(goal):
            raise NotFunded(f"Goal must be funded to move from {current.value} to {target.value}")
        if target == current:
            return goal

        if not self.store.set_status(goal_id, target.value, expected=current.value, now=self.clock()):
            raise InvalidTransition("Goal status changed concurrently, retry")
        updated = self._goal(goal_id)
        logger.info(f"Goal {current.value} -> {target.value}", extra={"goal_id": goal_id})
        self._publish_status(updated, current.value)
        return updated

    async def sync_funding(self, goal_id: str) -> dict:
        """Advance a custodial PENDING goal to FUNDED once its wallets hold value."""
        goal = self._goal(goal_id)
        if GoalTier(goal["tier"]) not in LEDGER_TIERS or goal["status"] != GoalStatus.PENDING.value:
            return goal
        if not await self.is_funded(goal):
            return goal
        if self.store.set_status(goal_id, GoalStatus.FUNDED.value,
                                 expected=GoalStatus.PENDING.value, now=self.clock()):
            logger.info("Goal auto-funded from wallet balance", extra={"goal_id": goal_id})
            goal = self._goal(goal_id)
            self._publish_status(goal, GoalStatus.PENDING.value)
        return goal

    # --- Tier ---

    async def set_tier(self, goal_id: str, new_tier: GoalTier | str) -> dict:
        """Change difficulty. Tiers only move up; MEDIUM+ is frozen."""
        goal = self._goal(goal_id)
        current = GoalTier(goal["tier"])
        target = _parse(GoalTier, new_tier, "difficulty")
        status = GoalStatus(goal["status"])

        if current in ESCROW_TIERS and target != current:
            raise TierLocked(f"Difficulty {current.value} is locked to the escrow contract")
        if current == GoalTier.EASY and target == GoalTier.UNSET:
            raise InvalidTransition("Cannot reset difficulty of an EASY goal")

        new_status = status
        if target == GoalTier.EASY and status in (GoalStatus.PENDING, GoalStatus.FUNDED):
            # EASY has no separate publish step
            new_status = GoalStatus.ACTIVE

        if target == current and new_status == status:
            return goal
        if not self.store.set_tier(goal_id, target.value, new_status.value,
                                   expected_tier=current.value, expected_status=status.value):
            raise InvalidTransition("Goal changed concurrently, retry")
        updated = self._goal(goal_id)
        logger.info(f"Goal tier {current.value} -> {target.value}", extra={"goal_id": goal_id})
        self._publish_status(updated, status.value)
        return updated

    # --- Completion ---

    async def request_completion(self, goal_id: str) -> CompletionOutcome:
        """Ask the AI validator to close a goal as COMPLETED.

        The attempt is recorded before the validator runs, so a rejected
        request still starts the cooldown.
        """
        goal = self._goal(goal_id)
        status = GoalStatus(goal["status"])
        if status == GoalStatus.COMPLETED:
            raise InvalidTransition("Goal is already marked as completed")
        if status == GoalStatus.FAILED:
            raise InvalidTransition("Cannot complete a failed goal")
        if status == GoalStatus.PENDING:
            raise InvalidTransition("Goal must be funded before it can be completed")

        now = self.clock()
        last = goal["last_completion_attempt_at"]
        hours = completion_cooldown(now, last)
        if hours is not None:
            raise RateLimited(
                "Completion can only be requested once every 24 hours",
                hours_remaining=hours,
                next_attempt_at=last + COMPLETION_COOLDOWN,
            )

        if not await self.is_funded(goal):
            raise NotFunded("Goal has no funds backing it and cannot be completed")

        self.store.set_completion_attempt(goal_id, now)
        snapshot = GoalSnapshot.from_goal(goal, self.store.tasks_for(goal_id), now=now)

        try:
            verdict = await self.validator.validate_completion(snapshot)
        except ExternalServiceError as e:
            verdict = self._fallback_verdict(goal_id, snapshot, e)

        if not verdict.can_complete:
            raise CompletionRejected(
                verdict.reason,
                suggestions=verdict.suggestions,
                validation_details={
                    **snapshot.stats(),
                    "hasAIEvaluation": goal["achievability_score"] is not None,
                    "achievabilityScore": goal["achievability_score"],
                },
            )

        if not self.store.set_status(goal_id, GoalStatus.COMPLETED.value, expected=status.value, now=now):
            raise InvalidTransition("Goal status changed concurrently, retry")
        updated = self._goal(goal_id)
        logger.info("Goal completed" + (" (fallback)" if verdict.fallback else ""), extra={"goal_id": goal_id})
        self._publish_status(updated, status.value)

        blockchain = await self._sync_completion(updated, by_ai=not verdict.fallback)
        return CompletionOutcome(goal=updated, verdict=verdict, snapshot=snapshot, blockchain=blockchain)

    def _fallback_verdict(self, goal_id: str, snapshot: GoalSnapshot, error: ExternalServiceError) -> CompletionVerdict:
        rate = snapshot.completion_rate
        logger.warning(f"AI validator unavailable ({error.message}), completion rate {rate:.1f}%",
                       extra={"goal_id": goal_id})
        if rate < FALLBACK_COMPLETION_RATE:
            raise ServiceUnavailable(
                "AI validation service unavailable and task completion rate is too low",
                completion_rate=rate,
                minimum_required=FALLBACK_COMPLETION_RATE,
            ) from error
        return CompletionVerdict(
            can_complete=True,
            reason=f"AI validation unavailable; completed on {rate:.1f}% task completion rate",
            confidence="low",
            fallback=True,
        )

    async def _sync_completion(self, goal: dict, by_ai: bool) -> dict:
        """Mirror COMPLETED to the escrow contract. Failure never rolls back the status."""
        if GoalTier(goal["tier"]) not in ESCROW_TIERS:
            return {"called": False, "reason": "Goal is not backed by the escrow contract"}
        try:
            tx_hash = await self.gateway.mark_completed(goal_id_hash(goal["owner_id"], goal["id"]), by_ai)
        except ExternalServiceError as e:
            logger.warning(f"markCompleted failed: {e.message}", extra={"goal_id": goal["id"]})
            return {"called": True, "success": False, "txHash": None, "error": e.message}
        logger.info("markCompleted sent", extra={"goal_id": goal["id"], "tx_hash": tx_hash})
        return {"called": True, "success": True, "txHash": tx_hash, "error": None}

    # --- Evaluation / deletion ---

    async def evaluate(self, goal_id: str) -> RealismEvaluation:
        """Re-run the realism evaluation. Only for goals with money behind them."""
        goal = self._goal(goal_id)
        if not await self.oracle.has_open_stake(goal, self.store.wallets_for(goal_id)):
            raise NotFunded("Goal must be funded before it can be evaluated")

        snapshot = GoalSnapshot.from_goal(goal, self.store.tasks_for(goal_id), now=self.clock())
        evaluation = await self.validator.evaluate_realism(snapshot)
        self.store.set_evaluation(goal_id, evaluation.score, evaluation.summary)
        return evaluation

    def delete(self, goal_id: str) -> list[dict]:
        """Delete a custodial goal. Returns the wallets that went with it."""
        goal = self._goal(goal_id)
        tier = GoalTier(goal["tier"])
        if tier in ESCROW_TIERS:
            raise InvalidTransition("Escrow-backed goals are permanent and cannot be deleted")
        if tier != GoalTier.EASY and goal["status"] != GoalStatus.PENDING.value:
            raise InvalidTransition("Only pending goals can be deleted")
        wallets = self.store.wallets_for(goal_id)
        if not self.store.delete_goal(goal_id):
            raise InvalidTransition("Goal changed concurrently, retry")
        logger.info("Goal deleted", extra={"goal_id": goal_id})
        return wallets
