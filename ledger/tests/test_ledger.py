"""
Unit Tests for the Ledger Service

Tests cover:
1. Append validation
2. Aggregate consistency and levels
3. Soft delete and reversal
4. Replay and reconciliation
5. Concurrent commits
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest

from ledger.exceptions import (
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    VersionConflictError,
)
from ledger.models import (
    RelatedEntity,
    TransactionCategory,
    TransactionDraft,
    TransactionFilters,
    TransactionKind,
)
from ledger.storage import DEMO_STUDENT_IDS, DEMO_TENANT_ID, copy_row


TENANT_ID = DEMO_TENANT_ID
STUDENT_ID, OTHER_STUDENT_ID = DEMO_STUDENT_IDS


def draft(actor, **overrides):
    values = dict(
        student_id=STUDENT_ID,
        tenant_id=TENANT_ID,
        kind=TransactionKind.EARNED,
        points_delta=10,
        coins_delta=1,
        reason="Homework done",
        category=TransactionCategory.HOMEWORK,
        awarded_by=actor.id,
    )
    values.update(overrides)
    return TransactionDraft(**values)


class TestAppend:
    """Tests for appending transactions."""

    def test_commit_updates_aggregate(self, engine, teacher):
        """A committed transaction moves the cached aggregate by its deltas."""
        transaction = engine.ledger.commit_one(draft(teacher))

        aggregate = engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID)
        assert transaction.points_delta == 10
        assert aggregate.total_points == 10
        assert aggregate.available_coins == 1
        assert aggregate.version == 1

    def test_empty_reason_rejected(self, engine, teacher):
        """Every transaction needs a reason."""
        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, reason="   "))

        assert engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID) == []

    def test_zero_delta_with_reason_allowed(self, engine, teacher):
        """A zero-delta entry is a valid note in the history."""
        transaction = engine.ledger.commit_one(draft(teacher, points_delta=0, coins_delta=0))

        assert transaction.points_delta == 0
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 0

    def test_unknown_student_rejected(self, engine, teacher):
        """Transactions must reference a student of the tenant."""
        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, student_id=uuid4()))

    def test_sign_must_match_kind(self, engine, teacher):
        """Earned entries cannot be negative and deductions cannot be positive."""
        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, points_delta=-5))
        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, kind=TransactionKind.DEDUCTED, points_delta=5))

    def test_points_cannot_go_negative(self, engine, teacher):
        """A deduction larger than the balance is refused and nothing is written."""
        engine.ledger.commit_one(draft(teacher, points_delta=5, coins_delta=0))

        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, kind=TransactionKind.DEDUCTED, points_delta=-6, coins_delta=0))

        assert len(engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID)) == 1
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 5

    def test_coins_cannot_go_negative(self, engine, teacher):
        """Coins never drop below zero."""
        with pytest.raises(InsufficientBalanceError):
            engine.ledger.commit_one(draft(teacher, kind=TransactionKind.DEDUCTED, points_delta=0, coins_delta=-1))

    def test_history_in_append_order(self, engine, teacher):
        """list_by_student returns entries in the order they were appended."""
        for points in (1, 2, 3):
            engine.ledger.commit_one(draft(teacher, points_delta=points))

        entries = engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID)
        assert [e.points_delta for e in entries] == [1, 2, 3]
        assert entries[0].sequence < entries[1].sequence < entries[2].sequence

    def test_history_filters(self, engine, teacher):
        """Filters narrow the history by category."""
        engine.ledger.commit_one(draft(teacher))
        engine.ledger.commit_one(draft(teacher, category=TransactionCategory.ATTENDANCE))

        entries = engine.ledger.store.list_by_student(
            TENANT_ID, STUDENT_ID, TransactionFilters(category=TransactionCategory.ATTENDANCE)
        )
        assert len(entries) == 1
        assert entries[0].category == TransactionCategory.ATTENDANCE


class TestLevels:
    """Tests for level computation."""

    @pytest.mark.parametrize("points,level", [(0, 1), (99, 1), (100, 2), (250, 3)])
    def test_compute_level(self, engine, points, level):
        assert engine.ledger.aggregator.compute_level(points) == level

    def test_level_follows_points(self, engine, teacher):
        engine.ledger.commit_one(draft(teacher, points_delta=120))

        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).current_level == 2


class TestSoftDelete:
    """Tests for soft deletion."""

    def test_soft_delete_excludes_from_replay(self, engine, teacher, admin):
        """A deleted entry drops out of history and the aggregate follows."""
        kept = engine.ledger.commit_one(draft(teacher, points_delta=10))
        removed = engine.ledger.commit_one(draft(teacher, points_delta=20))

        deleted = engine.ledger.soft_delete(admin, removed.id)

        assert deleted.is_deleted
        assert deleted.deleted_by == admin.id
        entries = engine.ledger.store.list_by_student(TENANT_ID, STUDENT_ID)
        assert [e.id for e in entries] == [kept.id]
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 10
        assert engine.ledger.replay(TENANT_ID, STUDENT_ID).total_points == 10

    def test_soft_delete_keeps_row(self, engine, teacher, admin):
        """Deleted rows stay visible when explicitly requested."""
        removed = engine.ledger.commit_one(draft(teacher))
        engine.ledger.soft_delete(admin, removed.id)

        entries = engine.ledger.store.list_by_student(
            TENANT_ID, STUDENT_ID, TransactionFilters(include_deleted=True)
        )
        assert len(entries) == 1

    def test_soft_delete_twice_fails(self, engine, teacher, admin):
        removed = engine.ledger.commit_one(draft(teacher))
        engine.ledger.soft_delete(admin, removed.id)

        with pytest.raises(NotFoundError):
            engine.ledger.soft_delete(admin, removed.id)

    def test_soft_delete_requires_elevated_actor(self, engine, teacher):
        removed = engine.ledger.commit_one(draft(teacher))

        with pytest.raises(PermissionDeniedError):
            engine.ledger.soft_delete(teacher, removed.id)

    def test_soft_delete_cannot_overdraw_coins(self, engine, teacher, admin):
        """Deleting the credit that funded a later debit is refused."""
        credit = engine.ledger.commit_one(draft(teacher, points_delta=0, coins_delta=5))
        engine.ledger.commit_one(draft(teacher, kind=TransactionKind.DEDUCTED, points_delta=0, coins_delta=-5))

        with pytest.raises(InsufficientBalanceError):
            engine.ledger.soft_delete(admin, credit.id)

        assert not engine.ledger.get_transaction(credit.id).is_deleted


class TestReversal:
    """Tests for compensating reversals."""

    def test_reverse_appends_opposite_entry(self, engine, teacher, admin):
        original = engine.ledger.commit_one(draft(teacher, points_delta=30, coins_delta=3))

        reversal = engine.ledger.reverse_transaction(admin, original.id, "Awarded by mistake")

        assert reversal.kind == TransactionKind.DEDUCTED
        assert reversal.points_delta == -30
        assert reversal.coins_delta == -3
        assert reversal.related_entity_type == RelatedEntity.TRANSACTION
        assert reversal.related_entity_id == original.id
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 0
        assert not engine.ledger.get_transaction(original.id).is_deleted

    def test_reverse_only_once(self, engine, teacher, admin):
        original = engine.ledger.commit_one(draft(teacher))
        engine.ledger.reverse_transaction(admin, original.id, "Mistake")

        with pytest.raises(ConflictError):
            engine.ledger.reverse_transaction(admin, original.id, "Mistake again")

    def test_reversal_cannot_be_reversed(self, engine, teacher, admin):
        original = engine.ledger.commit_one(draft(teacher))
        reversal = engine.ledger.reverse_transaction(admin, original.id, "Mistake")

        with pytest.raises(ConflictError):
            engine.ledger.reverse_transaction(admin, reversal.id, "Undo the undo")

    def test_reverse_requires_reason(self, engine, teacher, admin):
        original = engine.ledger.commit_one(draft(teacher))

        with pytest.raises(ValidationError):
            engine.ledger.reverse_transaction(admin, original.id, "")


class TestReconcile:
    """Tests for aggregate replay and reconciliation."""

    def test_consistent_tenant_has_no_divergence(self, engine, teacher, admin):
        engine.ledger.commit_one(draft(teacher))
        engine.ledger.commit_one(draft(teacher, student_id=OTHER_STUDENT_ID))

        assert engine.ledger.reconcile(admin, TENANT_ID) == []

    def test_reconcile_detects_and_repairs(self, engine, storage, teacher, admin):
        engine.ledger.commit_one(draft(teacher, points_delta=40))
        key = (TENANT_ID, STUDENT_ID)
        storage.tables["aggregates"][key] = copy_row(storage.tables["aggregates"][key], total_points=999)

        divergences = engine.ledger.reconcile(admin, TENANT_ID, repair=True)

        assert len(divergences) == 1
        assert divergences[0].cached.total_points == 999
        assert divergences[0].replayed.total_points == 40
        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 40
        assert engine.ledger.reconcile(admin, TENANT_ID) == []

    def test_reconcile_requires_same_tenant(self, engine, outsider):
        with pytest.raises(PermissionDeniedError):
            engine.ledger.reconcile(outsider, TENANT_ID)


class TestConcurrency:
    """Tests for concurrent commits against one student."""

    def test_concurrent_awards_both_land(self, engine, teacher):
        """Two simultaneous +5 awards leave the student at exactly +10."""
        barrier = threading.Barrier(2)

        def commit():
            barrier.wait()
            return engine.ledger.commit_one(draft(teacher, points_delta=5, coins_delta=0))

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [f.result() for f in [pool.submit(commit) for _ in range(2)]]

        assert len(results) == 2
        aggregate = engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID)
        assert aggregate.total_points == 10
        assert aggregate.version == 2

    def test_many_concurrent_awards(self, engine, teacher):
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [
                pool.submit(engine.ledger.commit_one, draft(teacher, points_delta=1, coins_delta=1))
                for _ in range(50)
            ]
            for future in futures:
                future.result()

        aggregate = engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID)
        assert aggregate.total_points == 50
        assert aggregate.available_coins == 50
        assert engine.ledger.replay(TENANT_ID, STUDENT_ID).transaction_count == 50

    def test_atomic_retries_version_conflicts(self, engine, settings):
        attempts = []

        def work(uow):
            attempts.append(uow)
            if len(attempts) <= settings.AGGREGATE_MAX_RETRIES:
                raise VersionConflictError("stale aggregate")
            return "done"

        assert engine.ledger.atomic([("student", STUDENT_ID)], work) == "done"
        assert len(attempts) == settings.AGGREGATE_MAX_RETRIES + 1

    def test_atomic_gives_up_after_retries(self, engine, settings):
        attempts = []

        def work(uow):
            attempts.append(uow)
            raise VersionConflictError("stale aggregate")

        with pytest.raises(VersionConflictError):
            engine.ledger.atomic([("student", STUDENT_ID)], work)

        assert len(attempts) == settings.AGGREGATE_MAX_RETRIES + 1


class TestEvents:
    """Tests for post-commit event delivery."""

    def test_event_published_after_commit(self, engine, teacher):
        received = []
        engine.ledger.events.subscribe(received.append)

        transaction = engine.ledger.commit_one(draft(teacher))

        assert len(received) == 1
        assert received[0].payload["transaction_id"] == str(transaction.id)

    def test_failed_commit_publishes_nothing(self, engine, teacher):
        received = []
        engine.ledger.events.subscribe(received.append)

        with pytest.raises(ValidationError):
            engine.ledger.commit_one(draft(teacher, reason=""))

        assert received == []

    def test_failing_subscriber_does_not_break_commit(self, engine, teacher):
        def broken(event):
            raise RuntimeError("notifier down")

        engine.ledger.events.subscribe(broken)
        engine.ledger.commit_one(draft(teacher))

        assert engine.ledger.get_aggregate(TENANT_ID, STUDENT_ID).total_points == 10
