# coordination_gateway/resolution/strategies.py
"""
Conflict resolution strategies.

Every strategy is a plain function from its inputs to a Decision. They hold
no state and never block, so the engine can run them under a time budget
and tests can call them directly.
"""

from collections import Counter, defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import ValidationFailure
from ..settings import settings
from .types import (
    DEFAULT_TIERS,
    Decision,
    EvidencePackage,
    Position,
    QuorumResult,
    Requirement,
    ResolutionStrategy,
    Vote,
)

# Options below this share of final support are left out of a hybrid solution
HYBRID_MIN_SHARE = 0.2


def _ranked(tally: Dict[str, float]) -> List[Tuple[str, float]]:
    return sorted(tally.items(), key=lambda item: item[1], reverse=True)


def _is_tie(ranking: List[Tuple[str, float]]) -> bool:
    return len(ranking) > 1 and abs(ranking[0][1] - ranking[1][1]) < 1e-9


def check_quorum(total_participants: int, actual_participants: int, requirement: float) -> QuorumResult:
    """Participation gate run before any vote is counted."""
    if total_participants <= 0:
        raise ValidationFailure("Quorum needs at least one eligible participant")
    if actual_participants < 0 or actual_participants > total_participants:
        raise ValidationFailure(
            "Actual participants must be between 0 and the eligible total",
            total=total_participants, actual=actual_participants,
        )
    rate = actual_participants / total_participants
    met = rate + 1e-9 >= requirement
    reason = None
    if not met:
        reason = f"Participation {rate:.0%} is below the required {requirement:.0%}"
    return QuorumResult(
        quorum_met=met,
        participation_rate=round(rate, 6),
        required=requirement,
        total_participants=total_participants,
        actual_participants=actual_participants,
        retry_recommended=not met,
        reason=reason,
    )


def majority_vote(votes: Sequence[Vote]) -> Decision:
    strategy = ResolutionStrategy.MAJORITY_VOTE
    if not votes:
        return Decision(resolved=False, strategy=strategy, reason="no-votes")

    tally = Counter(vote.option for vote in votes)
    ranking = tally.most_common()
    total = len(votes)
    winner, winning = ranking[0]
    runner_up = ranking[1][1] if len(ranking) > 1 else 0
    details = {
        "tally": dict(tally),
        "total_votes": total,
        "winning_votes": winning,
        "losing_votes": total - winning,
        "margin": round((winning - runner_up) / total, 6),
    }
    if winning == runner_up:
        return Decision(resolved=False, strategy=strategy, details=details, reason="tie")
    return Decision(resolved=True, strategy=strategy, value=winner, score=winning / total, details=details)


def weighted_vote(votes: Sequence[Vote]) -> Decision:
    strategy = ResolutionStrategy.WEIGHTED_VOTE
    if not votes:
        return Decision(resolved=False, strategy=strategy, reason="no-votes")

    tally: Dict[str, float] = defaultdict(float)
    for vote in votes:
        tally[vote.option] += vote.weight
    ranking = _ranked(tally)
    winner, score = ranking[0]
    details = {
        "scores": dict(tally),
        "total_weight": sum(tally.values()),
        "weighted_score": score,
    }
    if _is_tie(ranking):
        return Decision(resolved=False, strategy=strategy, details=details, reason="tie")
    return Decision(resolved=True, strategy=strategy, value=winner, score=score, details=details)


def expert_authority(positions: Sequence[Position]) -> Decision:
    strategy = ResolutionStrategy.EXPERT_AUTHORITY
    if not positions:
        return Decision(resolved=False, strategy=strategy, reason="no-positions")

    expert = max(positions, key=lambda p: p.authority)
    return Decision(
        resolved=True,
        strategy=strategy,
        value=expert.option,
        score=expert.authority,
        details={
            "expert": expert.agent_id,
            "expertise": expert.expertise,
            "authority": expert.authority,
            "rationale": expert.rationale,
        },
    )


def agreement_strength(votes: Sequence[Vote]) -> Tuple[Optional[str], float, Dict[str, float]]:
    """Leading option and its share of the confidence-weighted support."""
    support: Dict[str, float] = defaultdict(float)
    for vote in votes:
        support[vote.option] += vote.weight * vote.confidence
    total = sum(support.values())
    if not support or total <= 0:
        return None, 0.0, dict(support)
    leader, leading = _ranked(support)[0]
    return leader, leading / total, dict(support)


def consensus_building(rounds: Sequence[Sequence[Vote]], threshold: Optional[float] = None) -> Decision:
    strategy = ResolutionStrategy.CONSENSUS_BUILDING
    threshold = settings.CONSENSUS_THRESHOLD if threshold is None else threshold
    rounds = list(rounds)[:settings.MAX_NEGOTIATION_ROUNDS] if rounds else []
    strengths: List[float] = []
    leader = None

    for number, votes in enumerate(rounds, start=1):
        leader, strength, support = agreement_strength(votes)
        strengths.append(round(strength, 6))
        if leader is not None and strength >= threshold:
            return Decision(
                resolved=True,
                strategy=strategy,
                value=leader,
                score=strength,
                rounds=number,
                details={"strengths": strengths, "support": support, "threshold": threshold},
            )

    return Decision(
        resolved=False,
        strategy=strategy,
        rounds=len(rounds),
        score=strengths[-1] if strengths else 0.0,
        reason="no-consensus",
        details={"strengths": strengths, "leading_option": leader, "threshold": threshold},
    )


def collaborative_negotiation(rounds: Sequence[Sequence[Vote]], threshold: Optional[float] = None) -> Decision:
    """
    Like consensus building, but tracks concessions between rounds.

    When the rounds run out without reaching the threshold and agreement has
    been improving, the outcome is a hybrid of every option that kept a
    meaningful share of support. Satisfaction is the share of support the
    hybrid covers.
    """
    strategy = ResolutionStrategy.COLLABORATIVE_NEGOTIATION
    threshold = settings.CONSENSUS_THRESHOLD if threshold is None else threshold
    rounds = list(rounds)[:settings.MAX_NEGOTIATION_ROUNDS] if rounds else []
    strengths: List[float] = []
    concessions = []
    previous: Dict[str, str] = {}
    support: Dict[str, float] = {}

    for number, votes in enumerate(rounds, start=1):
        for vote in votes:
            before = previous.get(vote.agent_id)
            if before is not None and before != vote.option:
                concessions.append({"agent_id": vote.agent_id, "from": before, "to": vote.option, "round": number})
            previous[vote.agent_id] = vote.option

        leader, strength, support = agreement_strength(votes)
        strengths.append(round(strength, 6))
        if leader is not None and strength >= threshold:
            return Decision(
                resolved=True,
                strategy=strategy,
                value=leader,
                score=strength,
                rounds=number,
                details={"strengths": strengths, "concessions": concessions, "satisfaction": strength},
            )

    improving = len(strengths) >= 2 and strengths[-1] > strengths[0]
    total = sum(support.values())
    if improving and total > 0:
        shares = {option: amount / total for option, amount in _ranked(support)}
        components = [option for option, share in shares.items() if share >= HYBRID_MIN_SHARE]
        satisfaction = sum(shares[option] for option in components)
        return Decision(
            resolved=True,
            strategy=strategy,
            value={"type": "hybrid", "components": components, "weights": {o: round(shares[o], 6) for o in components}},
            score=satisfaction,
            rounds=len(rounds),
            details={"strengths": strengths, "concessions": concessions, "satisfaction": round(satisfaction, 6)},
        )

    return Decision(
        resolved=False,
        strategy=strategy,
        rounds=len(rounds),
        score=strengths[-1] if strengths else 0.0,
        reason="no-consensus",
        details={"strengths": strengths, "concessions": concessions},
    )


def evidence_based(packages: Sequence[EvidencePackage]) -> Decision:
    strategy = ResolutionStrategy.EVIDENCE_BASED
    scores: Dict[str, float] = defaultdict(float)
    weights: Dict[str, float] = defaultdict(float)
    credibility: Dict[str, List[float]] = defaultdict(list)

    for package in packages:
        for item in package.evidence:
            scores[package.option] += item.credibility * item.weight
            weights[package.option] += item.weight
            credibility[package.option].append(item.credibility)

    if not scores:
        return Decision(resolved=False, strategy=strategy, reason="no-evidence")

    ranking = _ranked(scores)
    winner, score = ranking[0]
    details = {
        "scores": {option: round(value, 6) for option, value in scores.items()},
        "evidence_strength": round(score / weights[winner], 6) if weights[winner] else 0.0,
        "credibility_score": round(sum(credibility[winner]) / len(credibility[winner]), 6),
    }
    if _is_tie(ranking):
        return Decision(resolved=False, strategy=strategy, details=details, reason="tie")
    return Decision(resolved=True, strategy=strategy, value=winner, score=score, details=details)


def automated_compromise(requirements: Sequence[Requirement]) -> Decision:
    """
    Weighted blend of conflicting numeric requirements, per parameter.

    The balance score is the weighted mean of how close the blend lands to
    each requirement, relative to that requirement's magnitude.
    """
    strategy = ResolutionStrategy.AUTOMATED_COMPROMISE
    if not requirements:
        return Decision(resolved=False, strategy=strategy, reason="no-requirements")

    grouped: Dict[str, List[Requirement]] = defaultdict(list)
    for requirement in requirements:
        grouped[requirement.parameter].append(requirement)

    solution: Dict[str, float] = {}
    closeness = 0.0
    total_weight = 0.0
    for parameter, group in grouped.items():
        weight = sum(r.weight for r in group)
        blend = sum(r.value * r.weight for r in group) / weight
        solution[parameter] = round(blend, 6)
        for r in group:
            scale = max(abs(r.value), abs(blend)) or 1.0
            closeness += r.weight * (1.0 - min(1.0, abs(blend - r.value) / scale))
            total_weight += r.weight

    balance = closeness / total_weight
    return Decision(
        resolved=True,
        strategy=strategy,
        value=solution,
        score=balance,
        details={
            "balance_score": round(balance, 6),
            "parameters": sorted(grouped),
            "requirements_considered": len(requirements),
        },
    )


def detect_deadlock(rounds: Sequence[Sequence[Vote]]) -> bool:
    """A tie in the latest round, or tallies that stopped moving between rounds."""
    if not rounds:
        return False
    latest = Counter(v.option for v in rounds[-1])
    ranking = latest.most_common()
    if len(ranking) > 1 and ranking[0][1] == ranking[1][1]:
        return True
    if len(rounds) >= 2 and Counter(v.option for v in rounds[-2]) == latest:
        return ranking[0][1] * 2 <= sum(latest.values())
    return False


def next_tier(tiers: Sequence[str], current_level: Optional[str] = None) -> str:
    tiers = list(tiers) or DEFAULT_TIERS
    if current_level in tiers:
        return tiers[min(tiers.index(current_level) + 1, len(tiers) - 1)]
    return tiers[0]


def escalation_hierarchy(
    rounds: Sequence[Sequence[Vote]],
    tiers: Sequence[str] = DEFAULT_TIERS,
    current_level: Optional[str] = None,
) -> Decision:
    strategy = ResolutionStrategy.ESCALATION_HIERARCHY
    rounds = list(rounds)
    if detect_deadlock(rounds):
        level = next_tier(tiers, current_level)
        return Decision(
            resolved=False,
            strategy=strategy,
            escalated=True,
            escalation_level=level,
            reason="deadlock-detected",
            rounds=len(rounds),
            details={"escalation_steps": 1, "from_level": current_level, "higher_authority_invoked": True},
        )

    decision = majority_vote(rounds[-1] if rounds else [])
    return decision.model_copy(update={"strategy": strategy, "rounds": len(rounds)})
