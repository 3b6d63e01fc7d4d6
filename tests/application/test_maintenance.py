"""Tests for MaintenanceSweeper."""

import time
from datetime import timedelta

import pytest

from concord.application.context_store import ContextStore
from concord.application.decision_engine import DecisionEngine
from concord.application.maintenance import MaintenanceSweeper, SweepReport
from concord.application.tool_arbiter import ToolArbiter
from concord.domain.context import Change
from concord.domain.decision import DecisionConfig, DecisionOption
from concord.domain.models import utc_now
from concord.domain.tools import Tool, ToolCategory


@pytest.fixture
def contexts(version_store, emitter, registry) -> ContextStore:
    return ContextStore(version_store, emitter, registry)


@pytest.fixture
def tools(registry, emitter) -> ToolArbiter:
    return ToolArbiter([Tool("lighthouse", ToolCategory.EXCLUSIVE)], registry, emitter)


@pytest.fixture
def decisions(registry, emitter) -> DecisionEngine:
    return DecisionEngine(registry, emitter)


class RecordingHandoffs:
    """Stand-in that records each prune cutoff."""

    def __init__(self) -> None:
        self.cutoffs = []

    def prune(self, older_than):
        self.cutoffs.append(older_than)
        return 3


class FlakyContexts:
    """Stand-in whose garbage collection always fails."""

    def __init__(self) -> None:
        self.calls = 0

    def collect_garbage(self, now=None):
        self.calls += 1
        raise RuntimeError("store offline")


class TestRunOnce:
    """Tests for a single synchronous sweep."""

    def test_sweeps_every_component(self, contexts, tools, decisions, emitter, audit_store):
        genesis = contexts.create_context("project", {"design": {}})
        contexts.write("project", genesis.version_id, [Change.add("/design/grid", 12)], "design")
        tools.request("lighthouse", "performance", "audit")
        decisions.create(
            DecisionConfig(
                title="Grid",
                domain="design",
                initiator="orchestrator",
                participants=("design", "performance"),
                options=(DecisionOption("twelve", "12 columns", "design", value=12),),
                deadline=utc_now() + timedelta(days=1),
            )
        )
        sweeper = MaintenanceSweeper(
            contexts=contexts,
            tools=tools,
            decisions=decisions,
            emitter=emitter,
            audit_retention_s=0,
        )

        report = sweeper.run_once(utc_now() + timedelta(days=8))

        assert report.collected_versions == 1
        assert report.expired_locks == 1
        assert report.deadlocks == 0
        assert report.forced_decisions == 1
        assert report.purged_records >= 2
        assert not any(r.terminal for r in audit_store.list_records())

    def test_prunes_handoffs(self):
        handoffs = RecordingHandoffs()
        sweeper = MaintenanceSweeper(handoffs=handoffs, handoff_retention_s=3600)
        now = utc_now()

        report = sweeper.run_once(now)

        assert report == SweepReport(pruned_handoffs=3)
        assert handoffs.cutoffs == [now - timedelta(hours=1)]

    def test_handoffs_kept_without_retention(self):
        handoffs = RecordingHandoffs()

        assert MaintenanceSweeper(handoffs=handoffs).run_once() == SweepReport()
        assert handoffs.cutoffs == []

    def test_nothing_to_do(self, contexts, tools):
        sweeper = MaintenanceSweeper(contexts=contexts, tools=tools)

        assert sweeper.run_once() == SweepReport()

    def test_without_components(self):
        assert MaintenanceSweeper().run_once() == SweepReport()


class TestBackgroundLoop:
    """Tests for start() and stop()."""

    def test_start_and_stop(self, contexts):
        sweeper = MaintenanceSweeper(contexts=contexts, interval_s=0.01)

        sweeper.start()
        assert sweeper.running
        sweeper.start()

        sweeper.stop(timeout_s=2)
        assert not sweeper.running

    def test_failed_sweep_keeps_looping(self):
        flaky = FlakyContexts()
        sweeper = MaintenanceSweeper(contexts=flaky, interval_s=0.01)

        sweeper.start()
        deadline = time.monotonic() + 2
        while flaky.calls < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        sweeper.stop(timeout_s=2)

        assert flaky.calls >= 2
