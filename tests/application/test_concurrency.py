"""Threaded tests for the engines' per-entity locking."""

import threading
from datetime import timedelta

import pytest

from concord.application.context_store import ContextStore
from concord.application.decision_engine import DecisionEngine
from concord.domain.context import Change
from concord.domain.decision import AgentVote, DecisionConfig, DecisionOption, DecisionStage
from concord.domain.exceptions import ConflictError
from concord.domain.models import utc_now

THREADS = 8


def _run_together(targets) -> None:
    """Start every target behind one barrier and wait for all of them."""
    barrier = threading.Barrier(len(targets))

    def wrap(target):
        def run():
            barrier.wait()
            target()

        return run

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not any(thread.is_alive() for thread in threads)


@pytest.fixture
def store(version_store, emitter, registry) -> ContextStore:
    return ContextStore(version_store, emitter, registry)


@pytest.fixture
def decisions(registry, emitter) -> DecisionEngine:
    return DecisionEngine(registry, emitter)


class TestConcurrentWrites:
    """Writers racing on one context."""

    def test_same_path_from_same_base(self, store):
        genesis = store.create_context("project", {"performance": {"budgets": {"lcp": 2500}}})
        results = []
        errors = []

        def writer(agent_id: str, value: int):
            def run():
                try:
                    results.append(store.write(
                        "project", genesis.version_id,
                        [Change.replace("/performance/budgets/lcp", value)], agent_id,
                    ))
                except ConflictError as e:
                    errors.append(e)

            return run

        _run_together([writer("performance", 2400), writer("design", 2600)])

        assert len(results) == 1
        assert len(errors) == 1
        assert errors[0].conflict.ancestor_values == {"/performance/budgets/lcp": 2500}
        head = store.head("project")
        assert head == results[0].version_id
        assert store.verify("project", head)
        assert len(store.history("project")) == 2
        assert len(store.pending_writes("project")) == 1

    def test_disjoint_paths_all_land(self, store):
        store.create_context("project", {"design": {}})
        failures = []

        def writer(index: int):
            def run():
                try:
                    store.write(
                        "project", store.head("project"),
                        [Change.add(f"/design/k{index}", index)], "design",
                    )
                except ConflictError as e:
                    failures.append(e)

            return run

        _run_together([writer(i) for i in range(THREADS)])

        assert failures == []
        tree = store.read("project").tree
        assert tree["design"] == {f"k{i}": i for i in range(THREADS)}
        assert all(store.verify("project", v.version_id) for v in store.history("project"))


class TestConcurrentSubscriptions:
    """Subscribers joining while versions are written."""

    def test_subscribe_during_writes(self, store):
        store.create_context("project", {"design": {}})
        received: dict[str, list] = {}
        errors = []

        def subscriber():
            events: list = []
            try:
                sub_id = store.subscribe("project", events.append)
            except Exception as e:
                errors.append(e)
                return
            received[sub_id] = events

        def writer():
            for index in range(20):
                try:
                    store.write(
                        "project", store.head("project"),
                        [Change.add(f"/design/k{index}", index)], "design",
                    )
                except Exception as e:
                    errors.append(e)

        _run_together([writer] + [subscriber] * THREADS)

        assert errors == []
        assert len(received) == THREADS
        for sub_id, events in received.items():
            sequences = [e.sequence for e in events]
            assert sequences == sorted(set(sequences))
            assert store.undelivered(sub_id) == 0

        late = []
        store.subscribe("project", late.append)
        store.write("project", store.head("project"), [Change.add("/design/last", 1)], "design")
        assert len(late) == 1
        assert all(events[-1].version_id == late[0].version_id for events in received.values())


class TestConcurrentVotes:
    """Participants voting at the same time."""

    def test_one_decision_from_racing_votes(self, decisions):
        closed = []
        decisions.add_listener(closed.append)
        decision = decisions.create(DecisionConfig(
            title="Image strategy",
            domain="performance",
            initiator="orchestrator",
            participants=("performance", "accessibility", "design"),
            options=(
                DecisionOption("fast", "Lazy loading", "performance"),
                DecisionOption("rich", "Eager images", "design"),
            ),
            deadline=utc_now() + timedelta(hours=1),
        ))

        def voter(agent_id: str, option_id: str):
            return lambda: decisions.cast_vote(
                decision.decision_id, AgentVote(agent_id, option_id, 0.8)
            )

        _run_together([
            voter("performance", "fast"),
            voter("accessibility", "fast"),
            voter("design", "rich"),
        ])

        final = decisions.get(decision.decision_id)
        assert final.stage is DecisionStage.DECIDED
        assert len(final.votes) == 3
        assert final.outcome.winning_option_id == "fast"
        assert [d.decision_id for d in closed] == [decision.decision_id]
