"""
Context Store: versioned shared state with optimistic concurrency.

Every accepted write appends an immutable ContextVersion. A write is
accepted directly when its base is still the head; otherwise it is
compared three-way against the head. Disjoint writes merge into a new
head, overlapping ones raise a context-value Conflict and are held until
the conflict is settled.
"""

import copy
import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from concord.application.agent_registry import AgentRegistry
from concord.application.event_emitter import CoordinationEventEmitter
from concord.domain.conflict import (
    Conflict,
    ConflictCategory,
    ConflictPosition,
    ConflictStatus,
    StatusChange,
    severity_from_confidence,
)
from concord.domain.context import (
    MISSING,
    Change,
    ContextChangeEvent,
    ContextStatus,
    ContextVersion,
    Overlap,
    PendingWrite,
    SharedContext,
    analyze_concurrent_write,
    apply_change_set,
    change_for_value,
    compute_checksum,
    genesis_change_set,
    paths_overlap,
    section_of,
)
from concord.domain.coordination_event import Component
from concord.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from concord.domain.interfaces import ContextVersionStoreInterface
from concord.domain.models import new_id, utc_now
from concord.domain.predicates import Predicate, select_changes

logger = logging.getLogger(__name__)

DEFAULT_WRITE_CONFIDENCE = 0.6
DEFAULT_WRITE_PRIORITY = 5

ChangeCallback = Callable[[ContextChangeEvent], None]
ConflictHandler = Callable[[Conflict], None]


@dataclass
class _Subscription:
    subscription_id: str
    context_id: str
    callback: ChangeCallback
    predicate: Predicate | None
    pending: deque[ContextChangeEvent] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    delivered: int = 0


@dataclass(frozen=True)
class _WriteMeta:
    confidence: float
    priority: int


class ContextStore:
    """
    Versioned, shared project state.

    Writes are serialized per context_id; the head pointer only moves by
    compare-and-set against the head the write was validated on. Reads
    never take the write lock.
    """

    def __init__(
        self,
        version_store: ContextVersionStoreInterface,
        emitter: CoordinationEventEmitter | None = None,
        registry: AgentRegistry | None = None,
        retention_s: float = 7 * 24 * 3600.0,
    ):
        """
        Args:
            version_store: Append-only version log
            emitter: Monitoring sink (events are dropped if None)
            registry: Validates authors when given
            retention_s: Age after which unreferenced versions may be collected
        """
        self._store = version_store
        self._emitter = emitter or CoordinationEventEmitter()
        self._registry = registry
        self._retention = timedelta(seconds=retention_s)

        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._heads: dict[str, str] = {}
        self._status: dict[str, ContextStatus] = {}
        self._sequence: dict[str, int] = {}
        self._write_meta: dict[str, _WriteMeta] = {}
        self._pins: dict[tuple[str, str], int] = {}
        self._pending: dict[str, PendingWrite] = {}  # conflict_id -> held write
        self._settled: dict[str, ContextVersion] = {}  # write_id -> resulting version
        self._settled_conflicts: dict[str, PendingWrite] = {}  # conflict_id -> applied write
        self._subscriptions: dict[str, _Subscription] = {}
        self._conflict_handler: ConflictHandler | None = None

        self._load_existing()

    def _load_existing(self) -> None:
        for context_id in self._store.context_ids():
            versions = self._store.list_versions(context_id)
            if not versions:
                continue
            head = max(versions, key=lambda v: v.sequence)
            self._heads[context_id] = head.version_id
            self._sequence[context_id] = head.sequence
            self._status[context_id] = self._store.get_status(context_id) or ContextStatus.ACTIVE
            logger.debug(
                "Loaded context %s at %s (%s)",
                context_id, head.version_id, self._status[context_id].value,
            )

    def _lock_for(self, context_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(context_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[context_id] = lock
            return lock

    def attach_conflict_handler(self, handler: ConflictHandler) -> None:
        """Route context-value conflicts to ``handler`` (the Conflict Engine)."""
        self._conflict_handler = handler

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create_context(
        self, context_id: str, initial_tree: dict | None = None, author: str = "system"
    ) -> ContextVersion:
        """
        Create a context with a genesis version.

        Raises:
            ValidationError: If the context already exists
        """
        if not context_id:
            raise ValidationError("context_id must not be empty")
        tree = copy.deepcopy(initial_tree or {})
        with self._lock_for(context_id):
            if context_id in self._heads:
                raise ValidationError(f"Context already exists: {context_id}")
            version = self._append(
                context_id,
                parent_version_id=None,
                author=author,
                change_set=genesis_change_set(tree),
                tree=tree,
            )
            self._status[context_id] = ContextStatus.ACTIVE
        self._emitter.emit(
            Component.CONTEXT, context_id, "context_created", version_id=version.version_id
        )
        logger.info("Created context %s", context_id)
        return version

    def _set_status(self, context_id: str, status: ContextStatus) -> None:
        with self._lock_for(context_id):
            current = self.status(context_id)
            if current is ContextStatus.ARCHIVED and status is not ContextStatus.ARCHIVED:
                raise AuthorizationError(f"Context {context_id} is archived")
            self._store.save_status(context_id, status)
            self._status[context_id] = status
        self._emitter.emit(
            Component.CONTEXT, context_id, "status_changed", status=status.value
        )
        logger.info("Context %s is now %s", context_id, status.value)

    def archive(self, context_id: str) -> None:
        self._set_status(context_id, ContextStatus.ARCHIVED)

    def lock(self, context_id: str) -> None:
        self._set_status(context_id, ContextStatus.LOCKED)

    def unlock(self, context_id: str) -> None:
        self._set_status(context_id, ContextStatus.ACTIVE)

    def status(self, context_id: str) -> ContextStatus:
        self._require_context(context_id)
        return self._status[context_id]

    def context_ids(self) -> list[str]:
        return sorted(self._heads)

    # =========================================================================
    # READ
    # =========================================================================

    def _require_context(self, context_id: str) -> str:
        head = self._heads.get(context_id)
        if head is None:
            raise ValidationError(f"Unknown context: {context_id}")
        return head

    def head(self, context_id: str) -> str:
        """Current head version id."""
        return self._require_context(context_id)

    def has_version(self, context_id: str, version_id: str) -> bool:
        try:
            self._store.get_version(context_id, version_id)
        except KeyError:
            return False
        return True

    def get_version(self, context_id: str, version_id: str) -> ContextVersion:
        self._require_context(context_id)
        try:
            return self._store.get_version(context_id, version_id)
        except KeyError:
            raise ValidationError(
                f"Unknown version {version_id} of context {context_id}"
            ) from None

    def read(self, context_id: str, version_id: str | None = None) -> SharedContext:
        """The context at ``version_id`` (head if omitted). Never blocks."""
        head = self._require_context(context_id)
        version = self.get_version(context_id, version_id or head)
        return SharedContext(
            context_id=context_id,
            current_version_id=version.version_id,
            checksum=version.checksum,
            status=self._status[context_id],
            tree=self._store.get_tree(context_id, version.version_id),
            version=version,
        )

    def history(self, context_id: str) -> list[ContextVersion]:
        """Stored versions in creation order."""
        self._require_context(context_id)
        return sorted(self._store.list_versions(context_id), key=lambda v: v.sequence)

    def verify(self, context_id: str, version_id: str) -> bool:
        """
        Replay a version's change-set over its parent and compare checksums.

        Genesis versions, and versions whose parent was collected, are
        checked against their own stored tree.
        """
        version = self.get_version(context_id, version_id)
        stored = self._store.get_tree(context_id, version_id)
        if compute_checksum(stored) != version.checksum:
            return False
        if version.parent_version_id is None:
            replayed, _ = apply_change_set({}, version.change_set)
            return compute_checksum(replayed) == version.checksum
        if not self.has_version(context_id, version.parent_version_id):
            return True
        parent_tree = self._store.get_tree(context_id, version.parent_version_id)
        try:
            replayed, _ = apply_change_set(parent_tree, version.change_set)
        except ValidationError:
            return False
        return compute_checksum(replayed) == version.checksum

    def pending_writes(self, context_id: str | None = None) -> list[PendingWrite]:
        with self._guard:
            held = list(self._pending.values())
        return [p for p in held if context_id is None or p.context_id == context_id]

    # =========================================================================
    # WRITE
    # =========================================================================

    def _append(
        self,
        context_id: str,
        parent_version_id: str | None,
        author: str,
        change_set: tuple[Change, ...],
        tree: dict,
        merge_base_id: str | None = None,
        meta: _WriteMeta | None = None,
    ) -> ContextVersion:
        """Persist a version and move the head. Caller holds the context lock."""
        sequence = self._sequence.get(context_id, 0) + 1
        version = ContextVersion(
            version_id=new_id(),
            context_id=context_id,
            parent_version_id=parent_version_id,
            author_agent_id=author,
            change_set=change_set,
            checksum=compute_checksum(tree),
            created_at=utc_now().isoformat(),
            sequence=sequence,
            merge_base_id=merge_base_id,
        )
        self._store.append(version, tree)
        if not self._compare_and_set_head(context_id, parent_version_id, version.version_id):
            raise ValidationError(
                f"Head of {context_id} moved during write of {version.version_id}"
            )
        self._sequence[context_id] = sequence
        self._write_meta[version.version_id] = meta or _WriteMeta(
            DEFAULT_WRITE_CONFIDENCE, DEFAULT_WRITE_PRIORITY
        )
        self._emitter.emit(
            Component.CONTEXT,
            context_id,
            "version_created",
            version_id=version.version_id,
            parent_version_id=parent_version_id,
            merge_base_id=merge_base_id,
            author=author,
            paths=[c.path for c in change_set],
        )
        self._enqueue_notifications(version)
        return version

    def _compare_and_set_head(
        self, context_id: str, expected: str | None, new_head: str
    ) -> bool:
        with self._guard:
            if self._heads.get(context_id) != expected:
                return False
            self._heads[context_id] = new_head
            return True

    def _validate_write(self, context_id: str, change_set: list[Change], author: str) -> None:
        if not change_set:
            raise ValidationError("change_set must not be empty")
        if not author:
            raise ValidationError("author_agent_id must not be empty")
        if self._registry is not None:
            self._registry.get(author)
        status = self.status(context_id)
        if status is not ContextStatus.ACTIVE:
            raise AuthorizationError(f"Context {context_id} is {status.value}")

    def write(
        self,
        context_id: str,
        base_version_id: str,
        change_set: Iterable[Change],
        author_agent_id: str,
        confidence: float = DEFAULT_WRITE_CONFIDENCE,
        priority: int = DEFAULT_WRITE_PRIORITY,
    ) -> ContextVersion:
        """
        Apply ``change_set`` written against ``base_version_id``.

        Returns:
            The new head version (direct or merged). If the write only
            repeats changes the head already made, the head itself.

        Raises:
            ValidationError: Malformed change-set or unknown base version
            AuthorizationError: Context is locked or archived
            ConflictError: The write overlaps a concurrent one; it is held
                until the conflict is settled
        """
        changes = list(change_set)
        self._validate_write(context_id, changes, author_agent_id)
        meta = _WriteMeta(confidence, priority)

        with self._lock_for(context_id):
            head_id = self._require_context(context_id)
            base = self.get_version(context_id, base_version_id)

            if base.version_id == head_id:
                tree, normalized = apply_change_set(
                    self._store.get_tree(context_id, head_id), changes
                )
                version = self._append(
                    context_id, head_id, author_agent_id, normalized, tree, meta=meta
                )
                self._drain_all(context_id)
                return version

            ancestor_tree = self._store.get_tree(context_id, base.version_id)
            apply_change_set(ancestor_tree, changes)  # must fit its own base
            head_tree = self._store.get_tree(context_id, head_id)
            analysis = analyze_concurrent_write(ancestor_tree, head_tree, changes)

            if analysis.clean:
                version = self._merge_clean(
                    context_id, head_id, base.version_id, author_agent_id,
                    analysis.rebased, head_tree, meta,
                )
                self._drain_all(context_id)
                return version

            pending, conflict = self._hold(
                context_id, base.version_id, head_id, changes,
                author_agent_id, meta, analysis.overlaps,
            )

        self._drain_all(context_id)
        if self._conflict_handler is not None:
            self._conflict_handler(conflict)
        settled = self._settled.get(pending.write_id)
        if settled is not None:
            return settled
        raise ConflictError(conflict, pending_write_id=pending.write_id)

    def _merge_clean(
        self,
        context_id: str,
        head_id: str,
        base_id: str,
        author: str,
        rebased: tuple[Change, ...],
        head_tree: dict,
        meta: _WriteMeta,
    ) -> ContextVersion:
        if not rebased:
            logger.debug("Write on %s only repeats head changes", context_id)
            return self._store.get_version(context_id, head_id)
        tree, normalized = apply_change_set(head_tree, rebased)
        version = self._append(
            context_id, head_id, author, normalized, tree,
            merge_base_id=base_id, meta=meta,
        )
        logger.info(
            "Merged concurrent write on %s (base %s) into %s",
            context_id, base_id, version.version_id,
        )
        return version

    # =========================================================================
    # HELD WRITES
    # =========================================================================

    def _head_side_author(
        self, context_id: str, head_id: str, base_id: str, overlaps: tuple[Overlap, ...]
    ) -> ContextVersion:
        """Most recent version between base and head touching an overlapping path."""
        current: str | None = head_id
        newest = self._store.get_version(context_id, head_id)
        while current and current != base_id:
            version = self._store.get_version(context_id, current)
            if any(
                paths_overlap(c.path, o.path) for c in version.change_set for o in overlaps
            ):
                return version
            current = version.parent_version_id
            if current is not None and not self.has_version(context_id, current):
                break
        return newest

    def _hold(
        self,
        context_id: str,
        base_id: str,
        head_id: str,
        changes: list[Change],
        author: str,
        meta: _WriteMeta,
        overlaps: tuple[Overlap, ...],
    ) -> tuple[PendingWrite, Conflict]:
        rival = self._head_side_author(context_id, head_id, base_id, overlaps)
        rival_meta = self._write_meta.get(
            rival.version_id, _WriteMeta(DEFAULT_WRITE_CONFIDENCE, DEFAULT_WRITE_PRIORITY)
        )
        positions = (
            ConflictPosition(
                agent_id=rival.author_agent_id,
                value={o.path: o.head_value for o in overlaps},
                confidence=rival_meta.confidence,
                priority=rival_meta.priority,
                reasoning=f"head version {head_id}",
            ),
            ConflictPosition(
                agent_id=author,
                value={o.path: o.write_value for o in overlaps},
                confidence=meta.confidence,
                priority=meta.priority,
                reasoning=f"write against {base_id}",
            ),
        )
        now = utc_now().isoformat()
        conflict = Conflict(
            conflict_id=new_id(),
            category=ConflictCategory.CONTEXT_VALUE,
            severity=severity_from_confidence(positions),
            domain=section_of(overlaps[0].path),
            agents_involved=tuple(dict.fromkeys(p.agent_id for p in positions)),
            positions=positions,
            status=ConflictStatus.DETECTED,
            detected_at=now,
            title=f"Concurrent writes to {', '.join(o.path for o in overlaps)}",
            scope=context_id,
            context_id=context_id,
            base_version_id=base_id,
            head_version_id=head_id,
            ancestor_values={o.path: o.ancestor_value for o in overlaps},
            history=(StatusChange(ConflictStatus.DETECTED, now),),
        )
        pending = PendingWrite(
            write_id=new_id(),
            context_id=context_id,
            base_version_id=base_id,
            change_set=tuple(changes),
            author_agent_id=author,
            conflict_id=conflict.conflict_id,
            confidence=meta.confidence,
            priority=meta.priority,
            created_at=now,
        )
        with self._guard:
            self._pending[conflict.conflict_id] = pending
        self._emitter.emit(
            Component.CONTEXT,
            context_id,
            "write_held",
            write_id=pending.write_id,
            conflict_id=conflict.conflict_id,
            paths=[o.path for o in overlaps],
        )
        logger.warning(
            "Write by %s on %s clashes with %s; held as %s",
            author, context_id, rival.author_agent_id, pending.write_id,
        )
        return pending, conflict

    def settle_conflict(self, conflict: Conflict) -> ContextVersion | None:
        """
        Apply or discard the write held for a terminal conflict.

        Resolved conflicts apply the winning values plus the held write's
        non-overlapping changes as a new head. Dismissed conflicts discard
        the write. Non-context or unknown conflicts are ignored.
        """
        if conflict.category is not ConflictCategory.CONTEXT_VALUE or not conflict.is_terminal:
            return None
        with self._guard:
            pending = self._pending.pop(conflict.conflict_id, None)
        if pending is None:
            return self._reapply(conflict)

        if conflict.status is ConflictStatus.DISMISSED or conflict.resolution is None:
            self._emitter.emit(
                Component.CONTEXT,
                pending.context_id,
                "write_discarded",
                write_id=pending.write_id,
                conflict_id=conflict.conflict_id,
            )
            logger.info("Discarded held write %s", pending.write_id)
            return None

        winning = conflict.resolution.winning_value or {}
        contested = set(conflict.ancestor_values)
        context_id = pending.context_id
        with self._lock_for(context_id):
            head_id = self._require_context(context_id)
            head_tree = self._store.get_tree(context_id, head_id)
            ancestor_tree = self._store.get_tree(context_id, pending.base_version_id)
            remaining = [c for c in pending.change_set if c.path not in contested]
            analysis = analyze_concurrent_write(ancestor_tree, head_tree, remaining)

            changes: list[Change] = []
            for path in sorted(contested):
                change = change_for_value(path, winning.get(path, MISSING), head_tree)
                if change is not None:
                    changes.append(change)
            changes.extend(analysis.rebased)
            for overlap in analysis.overlaps:
                logger.warning(
                    "Held write %s superseded at %s by a later head",
                    pending.write_id, overlap.path,
                )

            if changes:
                tree, normalized = apply_change_set(head_tree, changes)
                version = self._append(
                    context_id, head_id, pending.author_agent_id, normalized, tree,
                    merge_base_id=pending.base_version_id,
                    meta=_WriteMeta(pending.confidence, pending.priority),
                )
            else:
                version = self._store.get_version(context_id, head_id)
            self._settled[pending.write_id] = version
            self._settled_conflicts[conflict.conflict_id] = pending

        self._drain_all(context_id)
        self._emitter.emit(
            Component.CONTEXT,
            context_id,
            "write_settled",
            write_id=pending.write_id,
            conflict_id=conflict.conflict_id,
            version_id=version.version_id,
        )
        logger.info(
            "Settled held write %s as %s", pending.write_id, version.version_id
        )
        return version

    def _reapply(self, conflict: Conflict) -> ContextVersion | None:
        """Write the new winning values of a re-opened, re-resolved conflict."""
        applied = self._settled_conflicts.get(conflict.conflict_id)
        if applied is None or conflict.resolution is None:
            return None
        winning = conflict.resolution.winning_value or {}
        author = conflict.resolution.winner or applied.author_agent_id
        context_id = applied.context_id
        with self._lock_for(context_id):
            head_id = self._require_context(context_id)
            head_tree = self._store.get_tree(context_id, head_id)
            changes: list[Change] = []
            for path in sorted(conflict.ancestor_values):
                change = change_for_value(path, winning.get(path, MISSING), head_tree)
                if change is not None:
                    changes.append(change)
            if not changes:
                return self._store.get_version(context_id, head_id)
            tree, normalized = apply_change_set(head_tree, changes)
            version = self._append(context_id, head_id, author, normalized, tree)
        self._drain_all(context_id)
        logger.info(
            "Re-applied resolution of %s as %s", conflict.conflict_id, version.version_id
        )
        return version

    def settled_version(self, write_id: str) -> ContextVersion | None:
        return self._settled.get(write_id)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(
        self,
        context_id: str,
        callback: ChangeCallback,
        predicate: Predicate | None = None,
    ) -> str:
        """
        Register ``callback`` for new versions with a matching change.

        Delivery is at-least-once and ordered by version creation.
        """
        self._require_context(context_id)
        subscription = _Subscription(
            subscription_id=new_id(),
            context_id=context_id,
            callback=callback,
            predicate=predicate,
        )
        with self._lock_for(context_id):
            self._subscriptions[subscription.subscription_id] = subscription
        self._emitter.emit(
            Component.CONTEXT,
            context_id,
            "subscribed",
            subscription_id=subscription.subscription_id,
        )
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        self._emitter.emit(
            Component.CONTEXT,
            subscription.context_id,
            "unsubscribed",
            subscription_id=subscription_id,
            undelivered=len(subscription.pending),
        )
        return True

    def _enqueue_notifications(self, version: ContextVersion) -> None:
        """Queue events for matching subscribers. Caller holds the context lock."""
        for subscription in list(self._subscriptions.values()):
            if subscription.context_id != version.context_id:
                continue
            changes = select_changes(version, subscription.predicate)
            if not changes:
                continue
            subscription.pending.append(
                ContextChangeEvent(
                    subscription_id=subscription.subscription_id,
                    context_id=version.context_id,
                    version_id=version.version_id,
                    changes=changes,
                    author=version.author_agent_id,
                    timestamp=version.created_at,
                    sequence=version.sequence,
                )
            )

    def _drain(self, subscription: _Subscription) -> int:
        delivered = 0
        with subscription.lock:
            while subscription.pending:
                if subscription.subscription_id not in self._subscriptions:
                    return delivered
                event = subscription.pending[0]
                try:
                    subscription.callback(event)
                except Exception as e:
                    logger.warning(
                        "Subscriber %s failed on version %s (will redeliver): %s",
                        subscription.subscription_id, event.version_id, e,
                    )
                    return delivered
                subscription.pending.popleft()
                subscription.delivered += 1
                delivered += 1
        return delivered

    def _drain_all(self, context_id: str) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.context_id == context_id:
                self._drain(subscription)

    def redeliver(self, subscription_id: str | None = None) -> int:
        """Retry undelivered events (one subscriber, or all)."""
        if subscription_id is not None:
            subscription = self._subscriptions.get(subscription_id)
            return self._drain(subscription) if subscription else 0
        return sum(self._drain(s) for s in list(self._subscriptions.values()))

    def undelivered(self, subscription_id: str) -> int:
        subscription = self._subscriptions.get(subscription_id)
        return len(subscription.pending) if subscription else 0

    # =========================================================================
    # RETENTION
    # =========================================================================

    def pin(self, context_id: str, version_id: str) -> None:
        """Protect a version (and its ancestors) from collection."""
        self.get_version(context_id, version_id)
        with self._guard:
            key = (context_id, version_id)
            self._pins[key] = self._pins.get(key, 0) + 1

    def unpin(self, context_id: str, version_id: str) -> None:
        with self._guard:
            key = (context_id, version_id)
            count = self._pins.get(key, 0) - 1
            if count > 0:
                self._pins[key] = count
            else:
                self._pins.pop(key, None)

    def _protected(self, context_id: str, versions: list[ContextVersion]) -> set[str]:
        by_id = {v.version_id: v for v in versions}
        parents = {v.parent_version_id for v in versions if v.parent_version_id}
        protected = {v.version_id for v in versions if v.version_id not in parents}
        protected.add(self._heads[context_id])

        with self._guard:
            roots = {vid for (cid, vid) in self._pins if cid == context_id}
            roots |= {
                p.base_version_id for p in self._pending.values() if p.context_id == context_id
            }
        stack = list(roots)
        while stack:
            version_id = stack.pop()
            if version_id in protected and version_id not in roots:
                continue
            protected.add(version_id)
            version = by_id.get(version_id)
            if version is None:
                continue
            for ancestor in (version.parent_version_id, version.merge_base_id):
                if ancestor and ancestor not in protected:
                    stack.append(ancestor)
        return protected

    def collect_garbage(self, now: datetime | None = None) -> list[str]:
        """
        Delete versions older than the retention window.

        Branch heads, pinned versions, bases of held writes and all of
        their ancestors are kept.

        Returns:
            Ids of the deleted versions
        """
        cutoff = (now or utc_now()) - self._retention
        removed: list[str] = []
        for context_id in self.context_ids():
            with self._lock_for(context_id):
                versions = self._store.list_versions(context_id)
                protected = self._protected(context_id, versions)
                doomed = {
                    v.version_id
                    for v in versions
                    if v.version_id not in protected
                    and datetime.fromisoformat(v.created_at) < cutoff
                }
                if not doomed:
                    continue
                self._store.delete(context_id, doomed)
            for version_id in doomed:
                self._write_meta.pop(version_id, None)
            removed.extend(sorted(doomed))
            self._emitter.emit(
                Component.CONTEXT, context_id, "versions_collected", count=len(doomed)
            )
            logger.info("Collected %d versions of %s", len(doomed), context_id)
        return removed
