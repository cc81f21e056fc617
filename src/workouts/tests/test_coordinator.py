"""End-to-end tests for SyncCoordinator across a companion and a primary device."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest
import pytest_asyncio

from src.models.workouts import Origin
from src.workouts.events import DataChanged
from src.workouts.link import LinkChannel
from src.workouts.local_store import MergeOutcome

from src.workouts.tests.conftest import (
    RECORD_A,
    TEST_TIME,
    InMemoryRemoteStore,
    RecordingTransport,
    make_record,
)


@pytest_asyncio.fixture
async def devices(make_coordinator):
    """A started primary and a companion whose link forwards to it."""
    primary = make_coordinator(Origin.PRIMARY, device_model="iPhone16,1")
    transport = RecordingTransport(peer=primary.link)
    companion = make_coordinator(Origin.COMPANION, link=LinkChannel(transport))
    await primary.start()
    await companion.start()
    await _settle(companion, primary)
    yield companion, primary, transport
    await companion.shutdown()
    await primary.shutdown()


async def _settle(*coordinators) -> None:
    for _ in range(2):
        for coordinator in coordinators:
            await coordinator.drain()


class TestSubmit:
    @pytest.mark.asyncio
    async def test_local_write_is_immediately_visible(self, devices) -> None:
        companion, primary, _ = devices
        record = companion.submit_record(TEST_TIME, 42.0)

        assert record.revision == 1
        assert record.origin is Origin.COMPANION
        assert companion.list_records() == [record]
        await _settle(companion, primary)

    @pytest.mark.asyncio
    async def test_companion_record_reaches_primary_and_remote(
        self, devices, remote: InMemoryRemoteStore
    ) -> None:
        companion, primary, transport = devices
        record = companion.submit_record(TEST_TIME, 42.0)
        await _settle(companion, primary)

        assert primary.get_record(record.id) == record
        assert remote.rows[record.id].record == record
        assert len(transport.sent) == 1
        assert companion.store.pending_relay() == []
        assert companion.store.pending_push() == []

    @pytest.mark.asyncio
    async def test_primary_never_relays(self, devices) -> None:
        companion, primary, transport = devices
        primary.submit_record(TEST_TIME, 30.0)
        await _settle(companion, primary)
        assert transport.sent == []
        assert primary.status().pending_relay == 0

    @pytest.mark.asyncio
    async def test_data_changed_notifies_subscribers(self, devices) -> None:
        companion, primary, _ = devices
        events: list[DataChanged] = []

        with companion.on_data_changed(events.append):
            record = companion.submit_record(TEST_TIME, 42.0)
        companion.submit_record(TEST_TIME, 10.0)

        assert [e.record_id for e in events] == [record.id]
        await _settle(companion, primary)


class TestConcurrentCreation:
    @pytest.mark.asyncio
    async def test_equal_revision_converges_on_primary(
        self, make_coordinator, remote: InMemoryRemoteStore
    ) -> None:
        """Companion and primary both create id A at rev 1; everyone ends on the Primary copy."""
        primary = make_coordinator(Origin.PRIMARY)
        transport = RecordingTransport(peer=primary.link)
        companion = make_coordinator(
            Origin.COMPANION, link=LinkChannel(transport, reachable=False)
        )
        await primary.start()
        await companion.start()
        await _settle(companion, primary)

        companion.submit_record(TEST_TIME, 42.0, record_id=RECORD_A)
        primary.submit_record(TEST_TIME, 42.0, record_id=RECORD_A)
        await _settle(companion, primary)
        assert transport.sent == []

        await companion.set_link_reachable(True)
        await companion.manual_sync()
        await _settle(companion, primary)

        for device in (companion, primary):
            final = device.get_record(RECORD_A)
            assert final.origin is Origin.PRIMARY
            assert final.duration_seconds == 42.0
            assert len(device.list_records()) == 1
        assert remote.rows[RECORD_A].record.origin is Origin.PRIMARY

        await companion.shutdown()
        await primary.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_link_delivery_yields_one_record(self, make_coordinator) -> None:
        primary = make_coordinator(Origin.PRIMARY)
        record = make_record()

        outcomes = [primary.apply_inbound(record) for _ in range(4)]
        await primary.drain()

        assert outcomes[0] is MergeOutcome.ACCEPTED
        assert set(outcomes[1:]) == {MergeOutcome.REJECTED}
        assert len(primary.list_records()) == 1


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_writes_tombstone_everywhere(
        self, devices, remote: InMemoryRemoteStore
    ) -> None:
        companion, primary, _ = devices
        record = companion.submit_record(TEST_TIME, 42.0)
        await _settle(companion, primary)

        tombstone = companion.delete_record(record.id)
        await _settle(companion, primary)

        assert tombstone.tombstone and tombstone.revision == 2
        assert companion.list_records() == []
        assert companion.list_records(include_deleted=True) == [tombstone]
        assert primary.get_record(record.id).tombstone
        assert remote.rows[record.id].record.tombstone

    @pytest.mark.asyncio
    async def test_delete_twice_is_noop(self, devices) -> None:
        companion, primary, _ = devices
        record = companion.submit_record(TEST_TIME, 42.0)
        first = companion.delete_record(record.id)
        second = companion.delete_record(record.id)
        assert first == second
        await _settle(companion, primary)

    @pytest.mark.asyncio
    async def test_delete_unknown_raises(self, devices) -> None:
        companion, _, _ = devices
        with pytest.raises(KeyError):
            companion.delete_record(RECORD_A)


class TestAudio:
    @pytest.mark.asyncio
    async def test_audio_is_archived_and_linked(
        self, devices, archive_root: Path, remote: InMemoryRemoteStore
    ) -> None:
        companion, primary, _ = devices
        scratch = companion.scratch_path_for(TEST_TIME)
        scratch.write_bytes(b"voice note")

        record = companion.submit_record(TEST_TIME, 42.0, audio_file=scratch)
        await _settle(companion, primary)

        final = companion.get_record(record.id)
        assert final.audio_artifact_ref == scratch.name
        assert final.revision == 2
        assert (archive_root / scratch.name).read_bytes() == b"voice note"
        assert not scratch.exists()
        assert primary.get_record(record.id).audio_artifact_ref == scratch.name
        assert remote.rows[record.id].record.audio_artifact_ref == scratch.name

    @pytest.mark.asyncio
    async def test_deleted_record_is_not_relinked(self, devices, archive_root: Path) -> None:
        companion, primary, _ = devices
        scratch = companion.scratch_path_for(TEST_TIME)
        scratch.write_bytes(b"voice note")

        record = companion.submit_record(TEST_TIME, 42.0, audio_file=scratch)
        companion.delete_record(record.id)
        await _settle(companion, primary)

        final = companion.get_record(record.id)
        assert final.tombstone
        assert final.audio_artifact_ref is None
        # The audio itself is still archived, never lost.
        assert (archive_root / scratch.name).exists()

    @pytest.mark.asyncio
    async def test_sweep_right_after_submit_keeps_the_link(
        self, devices, archive_root: Path
    ) -> None:
        companion, primary, _ = devices
        scratch = companion.scratch_path_for(TEST_TIME)
        scratch.write_bytes(b"voice note")

        record = companion.submit_record(TEST_TIME, 42.0, audio_file=scratch)
        report = await companion.sweep_orphans()
        await _settle(companion, primary)

        assert report.skipped == [scratch.name]
        assert report.failed == {}
        assert not scratch.exists()
        assert (archive_root / scratch.name).read_bytes() == b"voice note"
        assert companion.get_record(record.id).audio_artifact_ref == scratch.name
        assert companion.status().last_error is None

    @pytest.mark.asyncio
    async def test_failed_archive_is_recovered_by_sweep(
        self, devices, archive_root: Path
    ) -> None:
        companion, primary, _ = devices
        shutil.rmtree(archive_root)
        scratch = companion.scratch_path_for(TEST_TIME)
        scratch.write_bytes(b"voice note")

        record = companion.submit_record(TEST_TIME, 42.0, audio_file=scratch)
        await _settle(companion, primary)

        assert scratch.exists()
        assert companion.get_record(record.id).audio_artifact_ref is None
        assert "pending" in companion.status().last_error

        archive_root.mkdir()
        report = await companion.sweep_orphans()
        await _settle(companion, primary)

        assert len(report.archived) == 1
        assert not scratch.exists()
        assert companion.get_record(record.id).audio_artifact_ref == scratch.name


class TestManualSync:
    @pytest.mark.asyncio
    async def test_offline_writes_sync_when_remote_returns(
        self, make_coordinator, remote: InMemoryRemoteStore
    ) -> None:
        primary = make_coordinator(Origin.PRIMARY)
        remote.fail_upsert = True
        remote.fail_fetch = True

        record = primary.submit_record(TEST_TIME, 20.0)
        await primary.drain()
        report = await primary.manual_sync()

        assert not report.ok
        assert primary.status().pending_push == 1
        assert record.id not in remote.rows

        remote.fail_upsert = False
        remote.fail_fetch = False
        report = await primary.manual_sync()

        assert report.ok
        assert report.pushed == 1
        assert primary.status().pending_push == 0
        assert remote.rows[record.id].record == record

    @pytest.mark.asyncio
    async def test_manual_sync_pulls_other_devices_records(
        self, make_coordinator, remote: InMemoryRemoteStore
    ) -> None:
        primary = make_coordinator(Origin.PRIMARY)
        remote.seed(make_record(origin=Origin.PRIMARY, revision=3))

        report = await primary.manual_sync()

        assert report.pulled == 1
        assert report.merged == 1
        assert primary.get_record(RECORD_A).revision == 3
        # Pulled records are neither pushed back nor relayed.
        assert primary.status().pending_push == 0

    @pytest.mark.asyncio
    async def test_reset_local_store_refetches_from_remote(
        self, make_coordinator, remote: InMemoryRemoteStore
    ) -> None:
        primary = make_coordinator(Origin.PRIMARY)
        primary.submit_record(TEST_TIME, 20.0)
        await primary.manual_sync()
        assert primary.status().cursor > 0

        primary.reset_local_store()
        assert primary.list_records() == []
        assert primary.status().cursor == 0

        await primary.manual_sync()
        assert len(primary.list_records()) == 1
        await primary.drain()

    @pytest.mark.asyncio
    async def test_status_snapshot(self, make_coordinator) -> None:
        companion = make_coordinator(Origin.COMPANION)
        companion.submit_record(TEST_TIME, 20.0)

        status = companion.status()

        assert status.device_role == "companion"
        assert status.pending_relay == 1
        assert status.pending_push == 1
        assert status.link_reachable is False
        assert status.generation == 1
        await companion.drain()
