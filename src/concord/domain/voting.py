"""
Voting rules for collaborative decisions.

Each rule takes the full vote set and returns a Tally, whose ``winner``
is None when the rule cannot pick an option (threshold not met, tie, or
no eligible voters).
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from concord.domain.decision import AgentVote, DecisionType
from concord.domain.models import Agent

COUNT_THRESHOLDS = {
    DecisionType.MAJORITY: 0.5,
    DecisionType.SUPERMAJORITY: 0.66,
    DecisionType.UNANIMOUS: 1.0,
}
REQUIRED_PARTICIPANT_BONUS = 1.2
EXPERT_THRESHOLD = 0.8
TIE_EPSILON = 1e-9


@dataclass(frozen=True)
class Tally:
    winner: str | None
    scores: dict[str, float]
    agreement: float  # percent of votes for the winner
    rationale: str


def _agreement(votes: list[AgentVote], winner: str | None) -> float:
    if not votes or winner is None:
        return 0.0
    backing = sum(1 for v in votes if v.option_id == winner)
    return round(100.0 * backing / len(votes), 2)


def _valid_votes(votes: Iterable[AgentVote], option_ids: Iterable[str]) -> list[AgentVote]:
    allowed = set(option_ids)
    return [v for v in votes if v.option_id in allowed]


# =============================================================================
# COUNT RULES
# =============================================================================


def count_rule(
    votes: Iterable[AgentVote],
    option_ids: Iterable[str],
    participant_count: int,
    threshold: float,
) -> Tally:
    """
    Raw count against the participant count.

    An option wins when its share of participants reaches ``threshold``.
    Several options at the threshold is a tie and yields no winner.
    """
    option_ids = list(option_ids)
    counted = _valid_votes(votes, option_ids)
    scores = {option: 0.0 for option in option_ids}
    for vote in counted:
        scores[vote.option_id] += 1.0

    if participant_count <= 0:
        return Tally(None, scores, 0.0, "no participants")

    reaching = [o for o in option_ids if scores[o] / participant_count >= threshold]
    if len(reaching) != 1:
        reason = "tie at threshold" if reaching else "threshold not reached"
        return Tally(None, scores, 0.0, f"{reason} ({threshold:.0%})")

    winner = reaching[0]
    return Tally(
        winner,
        scores,
        _agreement(counted, winner),
        f"{int(scores[winner])}/{participant_count} votes "
        f"(threshold {threshold:.0%})",
    )


# =============================================================================
# WEIGHTED AND EXPERT RULES
# =============================================================================


def voter_weight(agent: Agent, domain: str, required: bool) -> float:
    """Un-normalized weight: expertise × authority × required bonus."""
    bonus = REQUIRED_PARTICIPANT_BONUS if required else 1.0
    return agent.expertise(domain) * agent.authority_score * bonus


def normalized_weights(
    agents: Iterable[Agent], domain: str, required: Iterable[str] = ()
) -> dict[str, float]:
    """Voter weights summing to 1 (equal weights when every raw weight is 0)."""
    agents = list(agents)
    if not agents:
        return {}
    required = set(required)
    raw = {a.agent_id: voter_weight(a, domain, a.agent_id in required) for a in agents}
    total = sum(raw.values())
    if total <= 0:
        return {agent_id: 1.0 / len(raw) for agent_id in raw}
    return {agent_id: weight / total for agent_id, weight in raw.items()}


def weighted_rule(
    votes: Iterable[AgentVote],
    option_ids: Iterable[str],
    agents: Mapping[str, Agent],
    domain: str,
    required: Iterable[str] = (),
) -> Tally:
    """
    Highest Σ(weight × confidence) wins.

    Ties within TIE_EPSILON go to the option whose strongest supporter
    carries the highest weight, then to option order.
    """
    option_ids = list(option_ids)
    counted = [v for v in _valid_votes(votes, option_ids) if v.agent_id in agents]
    scores = {option: 0.0 for option in option_ids}
    if not counted:
        return Tally(None, scores, 0.0, "no eligible votes")

    weights = normalized_weights((agents[v.agent_id] for v in counted), domain, required)
    strongest = {option: 0.0 for option in option_ids}
    for vote in counted:
        weight = weights[vote.agent_id]
        scores[vote.option_id] += weight * vote.confidence
        strongest[vote.option_id] = max(strongest[vote.option_id], weight)

    best = max(scores.values())
    leaders = [o for o in option_ids if best - scores[o] <= TIE_EPSILON]
    winner = max(leaders, key=lambda o: (strongest[o], -option_ids.index(o)))
    rationale = f"weighted score {scores[winner]:.3f}"
    if len(leaders) > 1:
        rationale += f" (tie broken by strongest supporter weight {strongest[winner]:.3f})"
    return Tally(winner, scores, _agreement(counted, winner), rationale)


def expert_rule(
    votes: Iterable[AgentVote],
    option_ids: Iterable[str],
    agents: Mapping[str, Agent],
    domain: str,
    required: Iterable[str] = (),
    threshold: float = EXPERT_THRESHOLD,
) -> Tally | None:
    """
    Weighted tally restricted to domain experts.

    Returns None when no expert voted, so the caller can fall back to
    the plain weighted rule.
    """
    experts = {
        agent_id: agent
        for agent_id, agent in agents.items()
        if agent.expertise(domain) >= threshold
    }
    expert_votes = [v for v in votes if v.agent_id in experts]
    if not expert_votes:
        return None
    tally = weighted_rule(expert_votes, option_ids, experts, domain, required)
    return Tally(
        tally.winner,
        tally.scores,
        tally.agreement,
        f"{len(expert_votes)} expert vote(s), {tally.rationale}",
    )


# =============================================================================
# ORCHESTRATOR RULE
# =============================================================================


def orchestrator_rule(
    votes: Iterable[AgentVote], option_ids: Iterable[str], orchestrator_id: str
) -> Tally:
    """The orchestrator's vote is authoritative regardless of the others."""
    option_ids = list(option_ids)
    counted = _valid_votes(votes, option_ids)
    scores = {option: 0.0 for option in option_ids}
    for vote in counted:
        scores[vote.option_id] += 1.0
    for vote in counted:
        if vote.agent_id == orchestrator_id:
            return Tally(
                vote.option_id,
                scores,
                _agreement(counted, vote.option_id),
                f"orchestrator {orchestrator_id} decided",
            )
    return Tally(None, scores, 0.0, "orchestrator has not voted")
