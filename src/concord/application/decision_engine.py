"""
Decision Engine: formal multi-agent decisions.

Consensus building runs first (broadcast, positions, proposals,
feedback, compromise). If it does not converge the decision falls back
to its voting rule. Unresolved or expired decisions escalate to the
orchestrator, whose resolution always decides. Rounds opened for a
conflict that fail this way go back to the Conflict Engine for
arbitration.
"""

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from concord.application.agent_registry import AgentRegistry
from concord.application.event_emitter import CoordinationEventEmitter
from concord.domain.conflict import Conflict, ConflictSeverity
from concord.domain.coordination_event import Component
from concord.domain.decision import (
    AgentVote,
    CollaborativeDecision,
    DecisionAuditEntry,
    DecisionConfig,
    DecisionOption,
    DecisionOutcome,
    DecisionStage,
    DecisionType,
    Proposal,
)
from concord.domain.exceptions import AuthorizationError, ValidationError
from concord.domain.models import Priority, new_id, utc_now
from concord.domain.voting import (
    COUNT_THRESHOLDS,
    EXPERT_THRESHOLD,
    Tally,
    count_rule,
    expert_rule,
    orchestrator_rule,
    weighted_rule,
)

logger = logging.getLogger(__name__)

DecisionListener = Callable[[CollaborativeDecision], None]
FeedbackSource = Callable[[tuple[Proposal, ...]], Mapping[str, str]]
CompromiseSource = Callable[[Proposal], Mapping[str, bool]]
RoundArbiter = Callable[[CollaborativeDecision], str | None]

POSITION_CONFIDENCE = 0.5  # weight of an unvoted position in forced resolution

_SEVERITY_PRIORITY = {
    ConflictSeverity.LOW: Priority.LOW,
    ConflictSeverity.MEDIUM: Priority.MEDIUM,
    ConflictSeverity.HIGH: Priority.HIGH,
    ConflictSeverity.CRITICAL: Priority.CRITICAL,
}


class DecisionEngine:
    """
    Runs collaborative decisions.

    Decisions are stored immutably and replaced on every transition.
    Vote casting is serialized per decision_id. Listeners are notified
    outside the lock when a decision is decided or cancelled.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        emitter: CoordinationEventEmitter | None = None,
        expert_threshold: float = EXPERT_THRESHOLD,
        quorum: float = 0.5,
        feedback_delta: float = 0.1,
        conflict_round_s: float = 300.0,
        default_deadline_s: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            registry: Agent registry (weights, authority, orchestrator)
            emitter: Monitoring sink
            expert_threshold: Minimum domain weight of an expert voter
            quorum: Default share of participants that must vote
            feedback_delta: Authority shift applied by record_feedback
            conflict_round_s: Deadline of decisions opened for conflicts
            default_deadline_s: Deadline of decisions created without one
            clock: Time source
        """
        self._registry = registry
        self._emitter = emitter or CoordinationEventEmitter()
        self._expert_threshold = expert_threshold
        self._quorum = quorum
        self._feedback_delta = feedback_delta
        self._conflict_round = timedelta(seconds=conflict_round_s)
        self._default_deadline = timedelta(seconds=default_deadline_s)
        self._clock = clock

        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._decisions: dict[str, CollaborativeDecision] = {}
        self._listeners: list[DecisionListener] = []
        self._round_arbiter: RoundArbiter | None = None

    def add_listener(self, listener: DecisionListener) -> None:
        self._listeners.append(listener)

    def set_round_arbiter(self, arbiter: RoundArbiter) -> None:
        """Pick the winning option of forced conflict rounds with ``arbiter``."""
        self._round_arbiter = arbiter

    def _lock_for(self, decision_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(decision_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[decision_id] = lock
            return lock

    def _notify(self, decision: CollaborativeDecision) -> None:
        for listener in list(self._listeners):
            listener(decision)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, decision_id: str) -> CollaborativeDecision:
        decision = self._decisions.get(decision_id)
        if decision is None:
            raise ValidationError(f"Unknown decision: {decision_id}")
        return decision

    def get_outcome(self, decision_id: str) -> DecisionOutcome | None:
        return self.get(decision_id).outcome

    def list_decisions(self, open_only: bool = False) -> list[CollaborativeDecision]:
        decisions = sorted(self._decisions.values(), key=lambda d: d.started_at)
        if open_only:
            return [d for d in decisions if not d.is_terminal]
        return decisions

    # =========================================================================
    # STATE
    # =========================================================================

    def _update(
        self,
        decision: CollaborativeDecision,
        actor: str,
        action: str,
        details: dict[str, Any] | None = None,
        **changes: Any,
    ) -> CollaborativeDecision:
        """Replace the stored decision with an audit entry appended."""
        entry = DecisionAuditEntry(
            at=self._clock().isoformat(), actor=actor, action=action, details=details or {}
        )
        updated = replace(decision, audit_trail=decision.audit_trail + (entry,), **changes)
        self._decisions[decision.decision_id] = updated
        self._emitter.emit(
            Component.DECISION,
            decision.decision_id,
            action,
            actor=actor,
            stage=updated.stage.value,
            **(details or {}),
        )
        self._emitter.record("decision", decision.decision_id, updated, updated.is_terminal)
        return updated

    def _open(self, decision_id: str) -> CollaborativeDecision:
        decision = self.get(decision_id)
        if decision.is_terminal:
            raise ValidationError(f"Decision {decision_id} is {decision.stage.value}")
        return decision

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(self, config: DecisionConfig) -> CollaborativeDecision:
        """
        Open a decision. Without an explicit deadline the default one
        applies, so every decision eventually closes.

        Raises:
            ValidationError: Unknown agents, missing or duplicate options,
                or an orchestrator decision that is neither critical nor
                escalated
        """
        if not config.participants:
            raise ValidationError("A decision needs participants")
        if not config.options:
            raise ValidationError("A decision needs at least one option")
        option_ids = [o.option_id for o in config.options]
        if len(set(option_ids)) != len(option_ids):
            raise ValidationError("Option ids must be unique")
        if len(set(config.participants)) != len(config.participants):
            raise ValidationError("Participants must be unique")
        for agent_id in (config.initiator, *config.participants):
            self._registry.get(agent_id)
        missing = set(config.required_participants) - set(config.participants)
        if missing:
            raise ValidationError(
                f"Required participants are not participants: {sorted(missing)}"
            )
        if (
            config.decision_type is DecisionType.ORCHESTRATOR
            and config.priority is not Priority.CRITICAL
            and not config.escalated
        ):
            raise ValidationError(
                "Orchestrator decisions are reserved for critical priority or escalations"
            )
        if not 0.0 < config.quorum <= 1.0:
            raise ValidationError(f"quorum must be in (0, 1], got {config.quorum}")

        decision = CollaborativeDecision(
            decision_id=new_id(),
            decision_type=config.decision_type,
            priority=config.priority,
            title=config.title,
            domain=config.domain,
            initiator=config.initiator,
            participants=tuple(config.participants),
            options=tuple(config.options),
            stage=DecisionStage.INITIATED,
            started_at=self._clock().isoformat(),
            criteria=tuple(config.criteria),
            required_participants=tuple(config.required_participants),
            deadline=config.deadline or self._clock() + self._default_deadline,
            fallback_type=config.fallback_type,
            quorum=config.quorum,
            escalated=config.escalated,
            conflict_id=config.conflict_id,
            description=config.description,
        )
        with self._lock_for(decision.decision_id):
            decision = self._update(
                decision,
                config.initiator,
                "decision_created",
                {"type": config.decision_type.value, "options": option_ids},
            )
        logger.info(
            "Decision %s created (%s, %d participants)",
            decision.decision_id, decision.decision_type.value, len(decision.participants),
        )
        return decision

    def open_for_conflict(self, conflict: Conflict) -> str:
        """Open a consensus round whose options are the conflict's positions."""
        options = tuple(
            DecisionOption(
                option_id=f"position-{i + 1}",
                title=f"Position of {p.agent_id}",
                proposed_by=p.agent_id,
                description=p.reasoning,
                supporters=(p.agent_id,),
                value=p.value,
            )
            for i, p in enumerate(conflict.positions)
        )
        participants = tuple(dict.fromkeys(conflict.agents_involved))
        initiator = self._registry.orchestrator_id or participants[0]
        decision = self.create(
            DecisionConfig(
                title=conflict.title or f"Resolve conflict {conflict.conflict_id}",
                domain=conflict.domain,
                initiator=initiator,
                participants=participants,
                options=options,
                decision_type=DecisionType.CONSENSUS,
                priority=_SEVERITY_PRIORITY[conflict.severity],
                deadline=self._clock() + self._conflict_round,
                fallback_type=DecisionType.WEIGHTED,
                quorum=self._quorum,
                conflict_id=conflict.conflict_id,
            )
        )
        self.open_deliberation(decision.decision_id)
        for option in options:
            self.submit_position(decision.decision_id, option.proposed_by, option.option_id)
        return decision.decision_id

    # =========================================================================
    # CONSENSUS PROTOCOL
    # =========================================================================

    def open_deliberation(self, decision_id: str) -> CollaborativeDecision:
        """Step 1: broadcast options and criteria to the participants."""
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            if decision.stage is not DecisionStage.INITIATED:
                return decision
            return self._update(
                decision,
                decision.initiator,
                "options_broadcast",
                {
                    "participants": list(decision.participants),
                    "options": list(decision.option_ids),
                    "criteria": [c.name for c in decision.criteria],
                },
                stage=DecisionStage.DELIBERATING,
            )

    def _require_participant(self, decision: CollaborativeDecision, agent_id: str) -> None:
        if agent_id not in decision.participants:
            raise AuthorizationError(
                f"{agent_id} is not a participant of {decision.decision_id}"
            )

    def _require_option(self, decision: CollaborativeDecision, option_id: str) -> None:
        if decision.option(option_id) is None:
            raise ValidationError(f"Unknown option {option_id} in {decision.decision_id}")

    def submit_position(
        self, decision_id: str, agent_id: str, option_id: str, reasoning: str = ""
    ) -> CollaborativeDecision:
        """Step 2: record a participant's free-form position."""
        self.open_deliberation(decision_id)
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            self._require_participant(decision, agent_id)
            self._require_option(decision, option_id)
            return self._update(
                decision,
                agent_id,
                "position_submitted",
                {"option_id": option_id, "reasoning": reasoning},
                positions={**decision.positions, agent_id: option_id},
            )

    def _proposals_for(self, decision: CollaborativeDecision) -> tuple[Proposal, ...]:
        proposals: list[Proposal] = []
        for option in decision.options:
            supporters = tuple(
                agent_id
                for agent_id in decision.participants
                if decision.positions.get(agent_id) == option.option_id
            )
            opponents = tuple(a for a in decision.participants if a not in supporters)
            proposals.append(
                Proposal(
                    proposal_id=f"proposal-{option.option_id}",
                    title=option.title,
                    option_ids=(option.option_id,),
                    supporters=supporters,
                    opponents=opponents,
                    is_compromise=option.option_id.startswith("compromise-"),
                )
            )
        return tuple(proposals)

    def build_proposals(self, decision_id: str) -> tuple[Proposal, ...]:
        """Step 3: one candidate per option with its supporter/opponent split."""
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            proposals = self._proposals_for(decision)
            self._update(
                decision,
                decision.initiator,
                "proposals_built",
                {
                    p.proposal_id: {"supporters": len(p.supporters), "opponents": len(p.opponents)}
                    for p in proposals
                },
                stage=DecisionStage.CONSENSUS_BUILDING,
                proposals=proposals,
            )
            return proposals

    def apply_feedback(
        self, decision_id: str, feedback: Mapping[str, str]
    ) -> tuple[Proposal, ...]:
        """
        Step 4: move persuaded participants to the option they now support.

        Args:
            feedback: agent_id -> option_id
        """
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            moved: dict[str, str] = {}
            for agent_id, option_id in feedback.items():
                self._require_participant(decision, agent_id)
                self._require_option(decision, option_id)
                if decision.positions.get(agent_id) != option_id:
                    moved[agent_id] = option_id
            decision = self._update(
                decision,
                decision.initiator,
                "feedback_applied",
                {"moved": moved},
                positions={**decision.positions, **moved},
            )
            proposals = self._proposals_for(decision)
            self._update(
                decision, decision.initiator, "proposals_updated", proposals=proposals
            )
            return proposals

    def check_consensus(self, decision_id: str) -> CollaborativeDecision:
        """Step 5: decide if any proposal has no opponents."""
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            for proposal in self._proposals_for(decision):
                if proposal.unanimous:
                    decision = self._decide(
                        decision,
                        Tally(
                            winner=proposal.option_ids[0],
                            scores={
                                o: float(o == proposal.option_ids[0])
                                for o in decision.option_ids
                            },
                            agreement=100.0,
                            rationale="unanimous support after deliberation",
                        ),
                        method=DecisionType.CONSENSUS,
                        decided_by="participants",
                    )
                    break
        if decision.is_terminal:
            self._notify(decision)
        return decision

    def propose_compromise(
        self, decision_id: str, acceptance: Mapping[str, bool] | None = None
    ) -> CollaborativeDecision:
        """
        Step 6: add a compromise combining the common elements of the
        supported options and decide on it if every participant accepts.
        """
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            supported = [
                decision.option(o)
                for o in dict.fromkeys(decision.positions.values())
                if decision.option(o) is not None
            ]
            if len(supported) < 2:
                return decision
            option = _compromise_option(decision, supported)
            proposal = Proposal(
                proposal_id=f"proposal-{option.option_id}",
                title=option.title,
                option_ids=tuple(o.option_id for o in supported),
                supporters=tuple(a for a, ok in (acceptance or {}).items() if ok),
                opponents=tuple(
                    a for a in decision.participants if not (acceptance or {}).get(a, False)
                ),
                is_compromise=True,
            )
            decision = self._update(
                decision,
                decision.initiator,
                "compromise_proposed",
                {"option_id": option.option_id, "combines": list(proposal.option_ids)},
                options=decision.options + (option,),
                proposals=decision.proposals + (proposal,),
            )
            if proposal.unanimous:
                decision = self._update(
                    decision,
                    decision.initiator,
                    "compromise_accepted",
                    positions={a: option.option_id for a in decision.participants},
                )
                decision = self._decide(
                    decision,
                    Tally(
                        winner=option.option_id,
                        scores={o: float(o == option.option_id) for o in decision.option_ids},
                        agreement=100.0,
                        rationale="compromise accepted by every participant",
                    ),
                    method=DecisionType.CONSENSUS,
                    decided_by="participants",
                )
        if decision.is_terminal:
            self._notify(decision)
        return decision

    def fall_back_to_vote(self, decision_id: str) -> CollaborativeDecision:
        """Step 7: switch a consensus decision to its configured voting rule."""
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            if decision.stage is DecisionStage.VOTING:
                return decision
            method = decision.decision_type
            if method is DecisionType.CONSENSUS:
                method = decision.fallback_type
            decision = self._update(
                decision,
                decision.initiator,
                "fallback_to_vote",
                {"rule": method.value},
                stage=DecisionStage.VOTING,
                decision_type=method,
            )
            decision = self._finalize_if_ready(decision)
        if decision.is_terminal:
            self._notify(decision)
        return decision

    def run_consensus(
        self,
        decision_id: str,
        positions: Mapping[str, str],
        feedback: FeedbackSource | None = None,
        compromise: CompromiseSource | None = None,
        rounds: int = 1,
    ) -> CollaborativeDecision:
        """
        Drive the consensus protocol.

        Args:
            positions: agent_id -> option_id
            feedback: Called with the proposals each round; returns the
                agents persuaded to a different option
            compromise: Called with the compromise proposal; returns each
                agent's acceptance
            rounds: Feedback rounds before trying a compromise

        Returns:
            The decision, decided by consensus or moved to voting
        """
        self.open_deliberation(decision_id)
        for agent_id, option_id in positions.items():
            self.submit_position(decision_id, agent_id, option_id)

        proposals = self.build_proposals(decision_id)
        decision = self.check_consensus(decision_id)
        for _ in range(max(rounds, 0)):
            if decision.is_terminal or feedback is None:
                break
            proposals = self.apply_feedback(decision_id, feedback(proposals))
            decision = self.check_consensus(decision_id)
        if decision.is_terminal:
            return decision

        if compromise is not None:
            pending = self.propose_compromise(decision_id, {})
            offered = pending.proposals[-1] if pending.proposals else None
            if offered is not None and offered.is_compromise and not pending.is_terminal:
                decision = self._accept_compromise(decision_id, offered, compromise(offered))
            if decision.is_terminal:
                return decision

        return self.fall_back_to_vote(decision_id)

    def _accept_compromise(
        self, decision_id: str, proposal: Proposal, acceptance: Mapping[str, bool]
    ) -> CollaborativeDecision:
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            option_id = proposal.proposal_id.removeprefix("proposal-")
            accepted = [a for a in decision.participants if acceptance.get(a, False)]
            decision = self._update(
                decision,
                decision.initiator,
                "compromise_feedback",
                {"accepted": accepted},
            )
            if len(accepted) != len(decision.participants):
                return decision
            decision = self._update(
                decision,
                decision.initiator,
                "compromise_accepted",
                positions={a: option_id for a in decision.participants},
            )
            decision = self._decide(
                decision,
                Tally(
                    winner=option_id,
                    scores={o: float(o == option_id) for o in decision.option_ids},
                    agreement=100.0,
                    rationale="compromise accepted by every participant",
                ),
                method=DecisionType.CONSENSUS,
                decided_by="participants",
            )
        self._notify(decision)
        return decision

    # =========================================================================
    # VOTING
    # =========================================================================

    def cast_vote(self, decision_id: str, vote: AgentVote) -> CollaborativeDecision:
        """
        Record a vote and run the finalization check.

        A participant's later vote replaces its earlier one. The
        orchestrator may vote on orchestrator decisions it is not a
        participant of.

        Raises:
            AuthorizationError: Voter is not a participant
            ValidationError: Unknown option or terminal decision
        """
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            orchestrator_vote = (
                decision.decision_type is DecisionType.ORCHESTRATOR
                and vote.agent_id == self._registry.orchestrator_id
            )
            if not orchestrator_vote:
                self._require_participant(decision, vote.agent_id)
            self._require_option(decision, vote.option_id)
            if not vote.timestamp:
                vote = replace(vote, timestamp=self._clock().isoformat())

            previous = decision.vote_of(vote.agent_id)
            votes = tuple(v for v in decision.votes if v.agent_id != vote.agent_id) + (vote,)
            stage = decision.stage
            if stage in (DecisionStage.INITIATED, DecisionStage.DELIBERATING):
                stage = DecisionStage.VOTING
            decision = self._update(
                decision,
                vote.agent_id,
                "vote_changed" if previous else "vote_cast",
                {"option_id": vote.option_id, "confidence": vote.confidence},
                votes=votes,
                stage=stage,
            )
            decision = self._finalize_if_ready(decision)
        if decision.is_terminal:
            self._notify(decision)
        return decision

    def _voting_rule(self, decision: CollaborativeDecision) -> DecisionType:
        if decision.decision_type is DecisionType.CONSENSUS:
            return decision.fallback_type
        return decision.decision_type

    def _tally(self, decision: CollaborativeDecision, rule: DecisionType) -> Tally:
        votes = decision.votes
        options = decision.option_ids
        if rule in COUNT_THRESHOLDS:
            return count_rule(votes, options, len(decision.participants), COUNT_THRESHOLDS[rule])
        voters = self._registry.subset(v.agent_id for v in votes)
        if rule is DecisionType.EXPERT:
            tally = expert_rule(
                votes, options, voters, decision.domain,
                decision.required_participants, self._expert_threshold,
            )
            if tally is not None:
                return tally
            logger.info("No expert voted on %s; using weighted rule", decision.decision_id)
            return weighted_rule(votes, options, voters, decision.domain, decision.required_participants)
        if rule is DecisionType.ORCHESTRATOR:
            return orchestrator_rule(votes, options, self._registry.orchestrator_id or "")
        return weighted_rule(votes, options, voters, decision.domain, decision.required_participants)

    def _all_voted(self, decision: CollaborativeDecision) -> bool:
        voted = {v.agent_id for v in decision.votes}
        return all(p in voted for p in decision.participants)

    def _finalize_if_ready(self, decision: CollaborativeDecision) -> CollaborativeDecision:
        """Decide once the rule can be applied. Caller holds the lock."""
        if decision.stage is DecisionStage.CONSENSUS_BUILDING:
            return decision
        rule = self._voting_rule(decision)
        if rule is DecisionType.ORCHESTRATOR:
            tally = self._tally(decision, rule)
            if tally.winner is None:
                return decision
            return self._decide(
                decision, tally, method=rule,
                decided_by=self._registry.orchestrator_id or "orchestrator",
            )
        if not self._all_voted(decision):
            return decision
        tally = self._tally(decision, rule)
        if tally.winner is not None:
            return self._decide(decision, tally, method=rule, decided_by="participants")
        return self._escalate(decision, tally.rationale)

    def _escalate(self, decision: CollaborativeDecision, reason: str) -> CollaborativeDecision:
        if decision.conflict_id is not None:
            return self._force(decision, reason)
        logger.info("Decision %s escalated to orchestrator: %s", decision.decision_id, reason)
        decision = self._update(
            decision,
            decision.initiator,
            "escalated_to_orchestrator",
            {"reason": reason},
            decision_type=DecisionType.ORCHESTRATOR,
            escalated=True,
            stage=DecisionStage.VOTING,
        )
        tally = self._tally(decision, DecisionType.ORCHESTRATOR)
        if tally.winner is not None:
            return self._decide(
                decision, tally, method=DecisionType.ORCHESTRATOR,
                decided_by=self._registry.orchestrator_id or "orchestrator",
            )
        return decision

    def _decide(
        self,
        decision: CollaborativeDecision,
        tally: Tally,
        method: DecisionType,
        decided_by: str,
        forced: bool = False,
    ) -> CollaborativeDecision:
        now = self._clock().isoformat()
        outcome = DecisionOutcome(
            decision_id=decision.decision_id,
            winning_option_id=tally.winner or decision.option_ids[0],
            scores=dict(tally.scores),
            agreement=tally.agreement,
            method=method,
            decided_by=decided_by,
            decided_at=now,
            rationale=tally.rationale,
            forced=forced,
        )
        logger.info(
            "Decision %s decided: %s (%s, %.0f%% agreement)",
            decision.decision_id, outcome.winning_option_id, method.value, outcome.agreement,
        )
        return self._update(
            decision,
            decided_by,
            "decision_decided",
            {
                "winning_option_id": outcome.winning_option_id,
                "method": method.value,
                "agreement": outcome.agreement,
                "forced": forced,
            },
            stage=DecisionStage.DECIDED,
            outcome=outcome,
            completed_at=now,
        )

    # =========================================================================
    # DEADLINES AND FORCED RESOLUTION
    # =========================================================================

    def force_orchestrator_resolution(
        self, decision_id: str, reason: str = "forced"
    ) -> CollaborativeDecision:
        """
        Decide immediately on the orchestrator's authority.

        Uses the deciding agent's vote if cast, otherwise a weighted tally
        of the votes, otherwise of the recorded positions, otherwise the
        first option. Rounds opened for a conflict are decided by the
        conflict's arbiter (the deputy when the orchestrator is a party),
        and the Conflict Engine settles them by arbitration.
        """
        with self._lock_for(decision_id):
            decision = self._force(self._open(decision_id), reason)
        self._notify(decision)
        return decision

    def _forcing_agent(self, decision: CollaborativeDecision) -> str:
        if decision.conflict_id is None:
            return self._registry.orchestrator_id or "orchestrator"
        arbiter = self._registry.arbiter_for(decision.participants)
        return arbiter.agent_id if arbiter else "tie-break"

    def _force(self, decision: CollaborativeDecision, reason: str) -> CollaborativeDecision:
        """Forced resolution. Caller holds the lock."""
        decided_by = self._forcing_agent(decision)
        tally = self._arbitrated_tally(decision, decided_by)
        if tally is None:
            tally = orchestrator_rule(decision.votes, decision.option_ids, decided_by)
        if tally.winner is None:
            tally = self._forced_tally(decision)
        decision = self._update(
            decision,
            decided_by,
            "forced_resolution",
            {"reason": reason},
            decision_type=DecisionType.ORCHESTRATOR,
            escalated=True,
        )
        return self._decide(
            decision, tally, method=DecisionType.ORCHESTRATOR,
            decided_by=decided_by, forced=True,
        )

    def _arbitrated_tally(
        self, decision: CollaborativeDecision, decided_by: str
    ) -> Tally | None:
        if decision.conflict_id is None or self._round_arbiter is None:
            return None
        option_id = self._round_arbiter(decision)
        if option_id is None or decision.option(option_id) is None:
            return None
        backing = sum(1 for o in decision.positions.values() if o == option_id)
        return Tally(
            winner=option_id,
            scores={o: float(o == option_id) for o in decision.option_ids},
            agreement=100.0 * backing / len(decision.participants),
            rationale=f"consensus failed; arbitrated by {decided_by}",
        )

    def _forced_tally(self, decision: CollaborativeDecision) -> Tally:
        votes = list(decision.votes)
        if not votes:
            votes = [
                AgentVote(agent_id=a, option_id=o, confidence=POSITION_CONFIDENCE)
                for a, o in decision.positions.items()
            ]
        if votes:
            voters = self._registry.subset(v.agent_id for v in votes)
            tally = weighted_rule(
                votes, decision.option_ids, voters, decision.domain,
                decision.required_participants,
            )
            if tally.winner is not None:
                return tally
        first = decision.option_ids[0]
        return Tally(
            winner=first,
            scores={o: 0.0 for o in decision.option_ids},
            agreement=0.0,
            rationale="no votes before the deadline; first option selected",
        )

    def check_deadlines(self, now: datetime | None = None) -> list[CollaborativeDecision]:
        """
        Close every open decision whose deadline has passed.

        With quorum and a clear result the decision's own rule decides;
        otherwise the orchestrator resolves it. An expired conflict round
        is always forced: a partial vote is not consensus.
        """
        now = now or self._clock()
        closed: list[CollaborativeDecision] = []
        for decision in self.list_decisions(open_only=True):
            if decision.deadline is None or decision.deadline > now:
                continue
            with self._lock_for(decision.decision_id):
                current = self.get(decision.decision_id)
                if current.is_terminal:
                    continue
                rule = self._voting_rule(current)
                tally = None
                if current.conflict_id is None and current.has_quorum:
                    tally = self._tally(current, rule)
                if tally is not None and tally.winner is not None:
                    current = self._decide(current, tally, method=rule, decided_by="participants")
            if current.is_terminal:
                self._notify(current)
                closed.append(current)
                continue
            logger.warning(
                "Decision %s passed its deadline without a result", decision.decision_id
            )
            closed.append(
                self.force_orchestrator_resolution(decision.decision_id, "deadline expired")
            )
        return closed

    # =========================================================================
    # CANCELLATION AND FEEDBACK
    # =========================================================================

    def cancel(self, decision_id: str, agent_id: str, reason: str = "") -> CollaborativeDecision:
        """
        Cancel an open decision (initiator only).

        Raises:
            AuthorizationError: If ``agent_id`` is not the initiator
        """
        with self._lock_for(decision_id):
            decision = self._open(decision_id)
            if agent_id != decision.initiator:
                raise AuthorizationError(
                    f"Only {decision.initiator} may cancel {decision_id}"
                )
            decision = self._update(
                decision,
                agent_id,
                "decision_cancelled",
                {"reason": reason},
                stage=DecisionStage.CANCELLED,
                completed_at=self._clock().isoformat(),
            )
        logger.info("Decision %s cancelled by %s", decision_id, agent_id)
        self._notify(decision)
        return decision

    def record_feedback(self, decision_id: str, successful: bool) -> dict[str, float]:
        """
        Adjust authority from the observed outcome.

        Voters for the winner gain (or lose, if unsuccessful) authority;
        the other voters move the opposite way.

        Returns:
            agent_id -> new authority score
        """
        decision = self.get(decision_id)
        if decision.outcome is None:
            raise ValidationError(f"Decision {decision_id} has no outcome")
        delta = self._feedback_delta if successful else -self._feedback_delta
        scores: dict[str, float] = {}
        for vote in decision.votes:
            if vote.agent_id not in self._registry:
                continue
            shift = delta if vote.option_id == decision.outcome.winning_option_id else -delta
            scores[vote.agent_id] = self._registry.adjust_authority(vote.agent_id, shift)
        with self._lock_for(decision_id):
            self._update(
                self.get(decision_id),
                "system",
                "feedback_recorded",
                {"successful": successful, "authority": scores},
            )
        return scores


def _compromise_option(
    decision: CollaborativeDecision, supported: list[DecisionOption]
) -> DecisionOption:
    """Option holding what every supported option has in common."""
    values = [o.value for o in supported]
    if all(isinstance(v, dict) for v in values):
        common = {
            k: v for k, v in values[0].items() if all(other.get(k) == v for other in values[1:])
        }
    else:
        common = values[0] if all(v == values[0] for v in values) else None
    pros = tuple(p for p in supported[0].pros if all(p in o.pros for o in supported[1:]))
    index = sum(1 for o in decision.options if o.option_id.startswith("compromise-")) + 1
    return DecisionOption(
        option_id=f"compromise-{index}",
        title="Compromise: " + " + ".join(o.title for o in supported),
        proposed_by=decision.initiator,
        description="Common elements of " + ", ".join(o.option_id for o in supported),
        supporters=(),
        pros=pros,
        value=common,
    )
