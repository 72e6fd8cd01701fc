# coordination_gateway/resolution/engine.py
"""
Conflict Resolution Engine

Runs one strategy per request. Voting strategies pass a quorum gate first;
every strategy runs in a worker thread bounded by the request's time budget,
and a budget overrun falls back to a quick decision instead of waiting.
Critical-severity conflicts are never decided here: they are escalated for
manual intervention.
"""

import asyncio
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..models import Severity, new_id
from ..monitoring import CoordinationMonitor
from ..settings import settings
from . import strategies
from .types import (
    ITERATIVE_STRATEGIES,
    MANUAL_INTERVENTION,
    VOTING_STRATEGIES,
    Decision,
    ResolutionRequest,
    ResolutionStrategy,
)

StrategyHandler = Callable[[ResolutionRequest], Decision]


def _default_handlers() -> Dict[ResolutionStrategy, StrategyHandler]:
    return {
        ResolutionStrategy.MAJORITY_VOTE: lambda r: strategies.majority_vote(r.final_votes()),
        ResolutionStrategy.WEIGHTED_VOTE: lambda r: strategies.weighted_vote(r.final_votes()),
        ResolutionStrategy.EXPERT_AUTHORITY: lambda r: strategies.expert_authority(r.positions),
        ResolutionStrategy.CONSENSUS_BUILDING: lambda r: strategies.consensus_building(r.vote_rounds(), r.threshold),
        ResolutionStrategy.COLLABORATIVE_NEGOTIATION: lambda r: strategies.collaborative_negotiation(r.vote_rounds(), r.threshold),
        ResolutionStrategy.EVIDENCE_BASED: lambda r: strategies.evidence_based(r.evidence),
        ResolutionStrategy.AUTOMATED_COMPROMISE: lambda r: strategies.automated_compromise(r.requirements),
        ResolutionStrategy.ESCALATION_HIERARCHY: lambda r: strategies.escalation_hierarchy(r.vote_rounds(), r.tiers, r.current_level),
    }


class ConflictResolutionEngine:
    def __init__(
        self,
        monitor: Optional[CoordinationMonitor] = None,
        budget: Optional[float] = None,
        quorum: Optional[float] = None,
        history_limit: int = 500,
    ):
        self.monitor = monitor
        self.budget = budget or settings.RESOLUTION_BUDGET
        self.quorum = settings.DEFAULT_QUORUM if quorum is None else quorum
        self.history_limit = history_limit
        self._handlers = _default_handlers()
        self._history: List[Dict[str, Any]] = []
        self._stats: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"attempts": 0, "resolved": 0, "escalated": 0, "timeouts": 0, "total_duration": 0.0}
        )

    def register_strategy(self, strategy: ResolutionStrategy, handler: StrategyHandler) -> None:
        """Swap the handler for a strategy (used for custom policies and in tests)."""
        self._handlers[strategy] = handler

    async def resolve(self, request: ResolutionRequest) -> Decision:
        resolution_id = new_id("resolution")
        started = time.monotonic()
        if self.monitor:
            self.monitor.start(resolution_id, "conflict-resolution", len({v.agent_id for v in request.final_votes()}))

        decision = await self._decide(request)
        decision.duration = time.monotonic() - started
        self._record(resolution_id, request, decision)

        if self.monitor:
            self.monitor.record_step(resolution_id, success=decision.resolved, latency_ms=decision.duration * 1000)
            self.monitor.stop(resolution_id, "completed" if decision.resolved or decision.escalated else "failed")
        return decision

    async def _decide(self, request: ResolutionRequest) -> Decision:
        if request.severity == Severity.CRITICAL:
            logger.warning(f"🚨 Critical conflict in {request.conversation_id or 'n/a'} escalated to manual intervention")
            return Decision(
                resolved=False,
                strategy=request.strategy,
                escalated=True,
                escalation_level=MANUAL_INTERVENTION,
                reason="critical-severity",
            )

        if request.strategy in VOTING_STRATEGIES and request.eligible_participants:
            # Distinct voters across all rounds; copies taken before any await
            voters = {v.agent_id for r in request.vote_rounds() for v in r}
            quorum = strategies.check_quorum(
                request.eligible_participants,
                min(len(voters), request.eligible_participants),
                self.quorum if request.quorum is None else request.quorum,
            )
            if not quorum.quorum_met:
                logger.info(f"🗳️ Quorum not met for {request.strategy.value}: {quorum.reason}")
                return Decision(resolved=False, strategy=request.strategy, reason="quorum-not-met", quorum=quorum)
        else:
            quorum = None

        budget = request.budget or self.budget
        handler = self._handlers[request.strategy]
        try:
            decision = await asyncio.wait_for(asyncio.to_thread(handler, request), timeout=budget)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ {request.strategy.value} exceeded its {budget}s budget, falling back")
            decision = self._fallback(request)

        if quorum is not None:
            decision.quorum = quorum

        if not decision.resolved and not decision.escalated and request.strategy in ITERATIVE_STRATEGIES:
            decision = self._escalate(request, decision)
        return decision

    def _fallback(self, request: ResolutionRequest) -> Decision:
        fallback = self._handlers[request.fallback_strategy]
        decision = fallback(request) if request.fallback_strategy != request.strategy else None
        if decision is None or not decision.resolved:
            options = request.options()
            if not options:
                return Decision(resolved=False, strategy=request.strategy, timed_out=True, reason="timeout")
            decision = Decision(
                resolved=True,
                strategy=request.strategy,
                value=options[0],
                reason="fastest-available",
            )
        else:
            decision.reason = f"fallback:{request.fallback_strategy.value}"
        decision.timed_out = True
        return decision

    def _escalate(self, request: ResolutionRequest, unresolved: Decision) -> Decision:
        escalation = strategies.escalation_hierarchy(request.vote_rounds(), request.tiers, request.current_level)
        level = escalation.escalation_level or strategies.next_tier(request.tiers, request.current_level)
        reason = escalation.reason if escalation.escalated else unresolved.reason
        logger.info(f"⬆️ {request.strategy.value} unresolved, escalating to {level}")
        return unresolved.model_copy(update={
            "escalated": True,
            "escalation_level": level,
            "reason": reason,
            "details": {**unresolved.details, "escalation_steps": 1, "higher_authority_invoked": True},
        })

    def _record(self, resolution_id: str, request: ResolutionRequest, decision: Decision) -> None:
        stats = self._stats[request.strategy.value]
        stats["attempts"] += 1
        stats["resolved"] += int(decision.resolved)
        stats["escalated"] += int(decision.escalated)
        stats["timeouts"] += int(decision.timed_out)
        stats["total_duration"] += decision.duration
        self._history.append({
            "resolution_id": resolution_id,
            "conversation_id": request.conversation_id,
            "strategy": request.strategy.value,
            "resolved": decision.resolved,
            "escalated": decision.escalated,
            "value": decision.value,
            "timestamp": time.time(),
        })
        del self._history[:-self.history_limit]

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def system_metrics(self) -> Dict[str, Any]:
        per_strategy = {}
        for name, stats in self._stats.items():
            attempts = stats["attempts"] or 1
            per_strategy[name] = {
                "attempts": int(stats["attempts"]),
                "success_rate": stats["resolved"] / attempts,
                "escalation_rate": stats["escalated"] / attempts,
                "timeouts": int(stats["timeouts"]),
                "average_duration": stats["total_duration"] / attempts,
            }
        total = sum(int(s["attempts"]) for s in self._stats.values())
        resolved = sum(int(s["resolved"]) for s in self._stats.values())
        return {
            "total_resolutions": total,
            "resolution_rate": resolved / total if total else 0.0,
            "strategies": per_strategy,
        }
