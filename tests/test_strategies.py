import pytest

from coordination_gateway.errors import ValidationFailure
from coordination_gateway.resolution import strategies
from coordination_gateway.resolution.types import EvidenceItem, EvidencePackage, Position, Requirement, Vote


def votes(*options, weights=None, confidences=None):
    weights = weights or [1.0] * len(options)
    confidences = confidences or [1.0] * len(options)
    return [
        Vote(agent_id=f"agent-{i}", option=o, weight=w, confidence=c)
        for i, (o, w, c) in enumerate(zip(options, weights, confidences))
    ]


def test_majority_vote_counts_and_margin():
    decision = strategies.majority_vote(votes("A", "B", "A", "A", "B"))
    assert decision.resolved
    assert decision.value == "A"
    assert decision.details["winning_votes"] == 3
    assert decision.details["losing_votes"] == 2
    assert decision.details["margin"] == pytest.approx(0.2)


def test_majority_vote_tie_has_no_decision():
    decision = strategies.majority_vote(votes("A", "B"))
    assert not decision.resolved
    assert decision.reason == "tie"


def test_majority_vote_without_votes():
    assert strategies.majority_vote([]).reason == "no-votes"


def test_weighted_vote_sums_declared_weights():
    decision = strategies.weighted_vote(votes("A", "A", "B", "B", weights=[2.0, 1.5, 0.8, 0.8]))
    assert decision.value == "A"
    assert decision.details["weighted_score"] == pytest.approx(3.5)
    assert decision.details["weighted_score"] >= 3.0
    assert decision.details["scores"]["B"] == pytest.approx(1.6)


def test_weighted_vote_tie():
    assert not strategies.weighted_vote(votes("A", "B", weights=[1.5, 1.5])).resolved


def test_expert_authority_picks_highest_authority():
    decision = strategies.expert_authority([
        Position(agent_id="dev", option="Simple Solution", authority=1.0),
        Position(agent_id="architect", option="Expert Solution", authority=2.5, expertise="architecture"),
        Position(agent_id="qa", option="Safe Solution", authority=1.5),
    ])
    assert decision.resolved
    assert decision.value == "Expert Solution"
    assert decision.details["expert"] == "architect"


def test_consensus_building_converges_in_second_round():
    rounds = [
        votes("A", "B", "C", "A"),
        votes("A", "A", "A", "B"),
    ]
    decision = strategies.consensus_building(rounds, threshold=0.75)
    assert decision.resolved
    assert decision.value == "A"
    assert decision.rounds == 2
    assert decision.score >= 0.7
    assert decision.details["strengths"] == [0.5, 0.75]


def test_consensus_building_without_convergence():
    decision = strategies.consensus_building([votes("A", "B"), votes("A", "B")])
    assert not decision.resolved
    assert decision.reason == "no-consensus"


def test_negotiation_produces_hybrid_when_agreement_improves():
    rounds = [
        votes("Feature A", "Feature B", "Feature B", "Feature A"),
        votes("Feature A", "Feature A", "Feature B", "Feature A", confidences=[1.0, 0.6, 1.0, 1.0]),
    ]
    decision = strategies.collaborative_negotiation(rounds, threshold=0.75)
    assert decision.resolved
    assert decision.rounds >= 2
    assert decision.value["type"] == "hybrid"
    assert decision.value["components"] == ["Feature A", "Feature B"]
    assert decision.details["satisfaction"] >= 0.7
    assert decision.details["concessions"] == [
        {"agent_id": "agent-1", "from": "Feature B", "to": "Feature A", "round": 2}
    ]


def test_negotiation_without_progress_is_unresolved():
    decision = strategies.collaborative_negotiation([votes("A", "B"), votes("A", "B")])
    assert not decision.resolved


def test_evidence_based_scores_credibility_times_weight():
    packages = [
        EvidencePackage(agent_id="a1", option="Approach A", evidence=[
            EvidenceItem(description="benchmark", credibility=0.9, weight=1.0),
            EvidenceItem(description="case study", credibility=0.8, weight=0.8),
        ]),
        EvidencePackage(agent_id="a2", option="Approach B", evidence=[
            EvidenceItem(description="opinion", credibility=0.6, weight=0.7),
            EvidenceItem(description="anecdote", credibility=0.5, weight=0.3),
        ]),
    ]
    decision = strategies.evidence_based(packages)
    assert decision.value == "Approach A"
    assert decision.details["scores"]["Approach A"] == pytest.approx(1.54)
    assert decision.details["scores"]["Approach B"] == pytest.approx(0.57)
    assert decision.details["evidence_strength"] >= 0.8
    assert decision.details["credibility_score"] >= 0.75


def test_automated_compromise_blends_numeric_requirements():
    decision = strategies.automated_compromise([
        Requirement(agent_id="perf", parameter="performance", value=95, weight=1.2),
        Requirement(agent_id="cost", parameter="performance", value=80, weight=1.0),
        Requirement(agent_id="pm", parameter="timeline", value=60, weight=1.1),
    ])
    assert decision.resolved
    assert decision.value["performance"] == pytest.approx((95 * 1.2 + 80) / 2.2, rel=1e-4)
    assert 80 < decision.value["performance"] < 95
    assert decision.value["timeline"] == 60
    assert decision.details["balance_score"] >= 0.8
    assert decision.details["requirements_considered"] == 3


def test_escalation_on_deadlock():
    decision = strategies.escalation_hierarchy([votes("A", "A", "B", "B")])
    assert decision.escalated
    assert decision.reason == "deadlock-detected"
    assert decision.escalation_level == "team-lead"
    assert decision.details["escalation_steps"] >= 1
    assert decision.details["higher_authority_invoked"]


def test_escalation_moves_to_next_tier():
    decision = strategies.escalation_hierarchy(
        [votes("A", "B"), votes("A", "B")], current_level="architecture-board"
    )
    assert decision.escalation_level == "senior-management"


def test_escalation_stays_at_top_tier():
    assert strategies.next_tier(["team-lead", "senior-management"], "senior-management") == "senior-management"


def test_no_deadlock_resolves_by_majority():
    decision = strategies.escalation_hierarchy([votes("A", "A", "B")])
    assert not decision.escalated
    assert decision.value == "A"


def test_quorum_met_at_exact_requirement():
    result = strategies.check_quorum(10, 7, 0.7)
    assert result.quorum_met
    assert result.participation_rate == pytest.approx(0.7)
    assert not result.retry_recommended


def test_quorum_not_met_recommends_retry():
    result = strategies.check_quorum(10, 3, 0.8)
    assert not result.quorum_met
    assert result.participation_rate == pytest.approx(0.3)
    assert result.retry_recommended
    assert result.reason


def test_quorum_rejects_impossible_counts():
    with pytest.raises(ValidationFailure):
        strategies.check_quorum(0, 0, 0.5)
    with pytest.raises(ValidationFailure):
        strategies.check_quorum(3, 4, 0.5)
