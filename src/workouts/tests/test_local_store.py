"""Tests for LocalStore writes, last-writer-wins merge and change notifications."""

from __future__ import annotations

import itertools
from datetime import timedelta
from pathlib import Path

import pytest

from src.models.workouts import Origin
from src.workouts.errors import StoreUnavailableError
from src.workouts.events import ChangeBus, DataChanged
from src.workouts.local_store import LocalStore, MergeOutcome

from src.workouts.tests.conftest import RECORD_A, RECORD_B, TEST_TIME, make_record


class TestWrite:
    def test_first_write_gets_revision_one(self, store: LocalStore) -> None:
        rev = store.write(make_record(revision=0))
        assert rev == 1
        assert store.read(RECORD_A).revision == 1

    def test_write_assigns_next_revision(self, store: LocalStore) -> None:
        store.write(make_record(revision=0))
        rev = store.write(make_record(revision=1, duration=50.0))
        assert rev == 2
        assert store.read(RECORD_A).duration_seconds == 50.0

    def test_identical_rewrite_is_noop(self, store: LocalStore) -> None:
        """Same id + revision + content returns the stored revision unchanged."""
        store.write(make_record(revision=0))
        generation = store.generation
        rev = store.write(make_record(revision=1))
        assert rev == 1
        assert store.generation == generation

    def test_read_after_write(self, store: LocalStore) -> None:
        assert store.read(RECORD_A) is None
        store.write(make_record())
        assert store.read(RECORD_A) is not None

    def test_list_all_most_recent_first(self, store: LocalStore) -> None:
        store.write(make_record(RECORD_A, occurred_at=TEST_TIME))
        store.write(make_record(RECORD_B, occurred_at=TEST_TIME + timedelta(hours=1)))
        assert [r.id for r in store.list_all()] == [RECORD_B, RECORD_A]

    def test_list_all_can_hide_tombstones(self, store: LocalStore) -> None:
        store.write(make_record(RECORD_A))
        store.write(make_record(RECORD_B, tombstone=True))
        assert [r.id for r in store.list_all(include_deleted=False)] == [RECORD_A]
        assert len(store.list_all()) == 2

    def test_state_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "device" / "workouts.sqlite3"
        first = LocalStore(path)
        first.write(make_record())
        first.close()

        second = LocalStore(path)
        assert second.read(RECORD_A).duration_seconds == 42.0
        assert [r.id for r in second.pending_push()] == [RECORD_A]
        second.close()

    def test_unopenable_store_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        with pytest.raises(StoreUnavailableError):
            LocalStore(blocker / "workouts.sqlite3")


class TestMerge:
    def test_merge_into_empty_is_accepted(self, store: LocalStore) -> None:
        assert store.merge(make_record()) is MergeOutcome.ACCEPTED
        assert store.read(RECORD_A).revision == 1

    def test_merge_is_idempotent(self, store: LocalStore) -> None:
        """merge(r); merge(r) leaves the store exactly as merge(r)."""
        record = make_record(revision=3)
        store.merge(record)
        snapshot = store.list_all()
        generation = store.generation

        assert store.merge(record) is MergeOutcome.REJECTED
        assert store.list_all() == snapshot
        assert store.generation == generation

    def test_stale_revision_rejected(self, store: LocalStore) -> None:
        store.merge(make_record(revision=3, duration=30.0))
        assert store.merge(make_record(revision=2, duration=99.0)) is MergeOutcome.REJECTED
        assert store.read(RECORD_A).duration_seconds == 30.0

    def test_higher_revision_wins_regardless_of_order(self) -> None:
        versions = [
            make_record(revision=1, duration=10.0),
            make_record(revision=2, duration=20.0, origin=Origin.PRIMARY),
            make_record(revision=3, duration=30.0),
        ]
        for ordering in itertools.permutations(versions):
            s = LocalStore()
            for record in ordering:
                s.merge(record)
            final = s.read(RECORD_A)
            assert final.revision == 3
            assert final.duration_seconds == 30.0
            s.close()

    def test_equal_revision_primary_wins(self, store: LocalStore) -> None:
        companion = make_record(revision=1, origin=Origin.COMPANION)
        primary = make_record(revision=1, origin=Origin.PRIMARY)

        store.merge(companion)
        assert store.merge(primary) is MergeOutcome.CONFLICT_RESOLVED
        assert store.read(RECORD_A).origin is Origin.PRIMARY
        # The other order converges on the same winner.
        assert store.merge(companion) is MergeOutcome.REJECTED
        assert store.read(RECORD_A).origin is Origin.PRIMARY

    def test_equal_revision_companion_tombstone_beats_primary_live(
        self, store: LocalStore
    ) -> None:
        store.merge(make_record(revision=2, origin=Origin.PRIMARY))
        outcome = store.merge(make_record(revision=2, origin=Origin.COMPANION, tombstone=True))
        assert outcome is MergeOutcome.CONFLICT_RESOLVED
        final = store.read(RECORD_A)
        assert final.tombstone
        assert final.origin is Origin.COMPANION

    def test_equal_revision_primary_tombstone_beats_companion_live(self) -> None:
        tombstone = make_record(revision=2, origin=Origin.PRIMARY, tombstone=True)
        live = make_record(revision=2, origin=Origin.COMPANION)
        for ordering in ((tombstone, live), (live, tombstone)):
            s = LocalStore()
            for record in ordering:
                s.merge(record)
            final = s.read(RECORD_A)
            assert final.tombstone
            assert final.origin is Origin.PRIMARY
            s.close()

    def test_equal_revision_same_origin_converges(self) -> None:
        """Content hash breaks the last tie identically on every device."""
        x = make_record(revision=1, duration=10.0)
        y = make_record(revision=1, duration=11.0)
        left, right = LocalStore(), LocalStore()
        left.merge(x)
        left.merge(y)
        right.merge(y)
        right.merge(x)
        assert left.read(RECORD_A) == right.read(RECORD_A)
        left.close()
        right.close()

    def test_tombstone_not_resurrected_by_lower_revision(self, store: LocalStore) -> None:
        store.merge(make_record(revision=2, tombstone=True))
        assert store.merge(make_record(revision=1)) is MergeOutcome.REJECTED
        assert store.read(RECORD_A).tombstone

    def test_delete_then_recreate_with_higher_revision(self, store: LocalStore) -> None:
        """Tombstone at rev 2, then a live write at rev 3, is visible again."""
        store.merge(make_record(revision=1))
        store.merge(make_record(revision=2, tombstone=True))
        assert store.list_all(include_deleted=False) == []

        assert store.merge(make_record(revision=3)) is MergeOutcome.ACCEPTED
        visible = store.list_all(include_deleted=False)
        assert [r.id for r in visible] == [RECORD_A]
        assert not visible[0].tombstone
        assert visible[0].revision == 3

    def test_duplicate_delivery_yields_one_record(self, store: LocalStore) -> None:
        record = make_record()
        outcomes = [store.merge(record) for _ in range(5)]
        assert outcomes[0] is MergeOutcome.ACCEPTED
        assert all(o is MergeOutcome.REJECTED for o in outcomes[1:])
        assert len(store.list_all()) == 1


class TestBookkeeping:
    def test_pending_push_until_marked(self, store: LocalStore) -> None:
        store.write(make_record())
        assert [r.id for r in store.pending_push()] == [RECORD_A]
        store.mark_pushed(RECORD_A, 1)
        assert store.pending_push() == []

    def test_new_revision_is_pending_again(self, store: LocalStore) -> None:
        store.write(make_record())
        store.mark_pushed(RECORD_A, 1)
        store.write(make_record(revision=1, duration=60.0))
        assert [r.revision for r in store.pending_push()] == [2]

    def test_marks_never_move_backwards(self, store: LocalStore) -> None:
        store.merge(make_record(revision=3))
        store.mark_relayed(RECORD_A, 3)
        store.mark_relayed(RECORD_A, 1)
        assert store.pending_relay() == []

    def test_reset_drops_everything(self, store: LocalStore) -> None:
        store.write(make_record(RECORD_A))
        store.write(make_record(RECORD_B))
        store.reset()
        assert store.list_all() == []
        assert store.pending_push() == []


class TestChangeNotifications:
    def test_generation_increases_per_commit(self) -> None:
        events: list[DataChanged] = []
        s = LocalStore(on_change=events.append)
        s.write(make_record(RECORD_A))
        s.merge(make_record(RECORD_B))
        s.merge(make_record(RECORD_B))  # rejected, no event
        s.reset()
        assert [e.generation for e in events] == [1, 2, 3]
        assert [e.reason for e in events] == ["write", "merge", "reset"]
        assert events[0].record_id == RECORD_A
        assert events[2].record_id is None
        s.close()

    def test_bus_delivers_and_unsubscribes(self) -> None:
        bus = ChangeBus()
        s = LocalStore(on_change=bus.publish)
        seen: list[int] = []

        with bus.subscribed(lambda e: seen.append(e.generation)) as sub:
            s.write(make_record(RECORD_A))
            assert not sub.missed()
        s.write(make_record(RECORD_B))

        assert seen == [1]
        assert len(bus) == 0
        s.close()

    def test_failing_handler_does_not_block_others(self) -> None:
        bus = ChangeBus()
        seen: list[int] = []

        def broken(event: DataChanged) -> None:
            raise RuntimeError("view gone")

        bus.subscribe(broken)
        bus.subscribe(lambda e: seen.append(e.generation))
        bus.publish(DataChanged(generation=1, record_id=RECORD_A, reason="write"))
        assert seen == [1]

    def test_subscription_detects_missed_generation(self) -> None:
        bus = ChangeBus()
        sub = bus.subscribe(lambda e: None)
        sub.unsubscribe()
        bus.publish(DataChanged(generation=4, record_id=None, reason="reset"))
        assert sub.missed()
