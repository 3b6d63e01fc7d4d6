"""Periodic housekeeping across components."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from concord.application.context_store import ContextStore
from concord.application.decision_engine import DecisionEngine
from concord.application.event_emitter import CoordinationEventEmitter
from concord.application.handoff_coordinator import HandoffCoordinator
from concord.application.tool_arbiter import ToolArbiter
from concord.domain.models import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    collected_versions: int = 0
    expired_locks: int = 0
    deadlocks: int = 0
    forced_decisions: int = 0
    purged_records: int = 0
    pruned_handoffs: int = 0


class MaintenanceSweeper:
    """
    Runs context GC, lock expiry, deadlock detection, decision deadline
    checks, audit retention and handoff pruning on a daemon thread.
    """

    def __init__(
        self,
        contexts: ContextStore | None = None,
        tools: ToolArbiter | None = None,
        decisions: DecisionEngine | None = None,
        handoffs: HandoffCoordinator | None = None,
        emitter: CoordinationEventEmitter | None = None,
        interval_s: float = 5.0,
        audit_retention_s: float | None = None,
        handoff_retention_s: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._contexts = contexts
        self._tools = tools
        self._decisions = decisions
        self._handoffs = handoffs
        self._emitter = emitter
        self._interval = interval_s
        self._audit_retention = audit_retention_s
        self._handoff_retention = handoff_retention_s
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, now: datetime | None = None) -> SweepReport:
        """One synchronous pass over every component."""
        now = now or self._clock()
        collected = 0
        if self._contexts is not None:
            collected = len(self._contexts.collect_garbage(now))
        expired = deadlocks = 0
        if self._tools is not None:
            expired = len(self._tools.expire_locks(now))
            deadlocks = len(self._tools.detect_deadlocks(now))
        forced = 0
        if self._decisions is not None:
            forced = len(self._decisions.check_deadlines(now))
        purged = 0
        if self._emitter is not None and self._audit_retention is not None:
            purged = self._emitter.purge_records(now - timedelta(seconds=self._audit_retention))
        pruned = 0
        if self._handoffs is not None and self._handoff_retention is not None:
            pruned = self._handoffs.prune(now - timedelta(seconds=self._handoff_retention))

        report = SweepReport(collected, expired, deadlocks, forced, purged, pruned)
        if report != SweepReport():
            logger.info("Maintenance sweep: %s", report)
        return report

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Maintenance sweep failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="concord-maintenance", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout_s)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
