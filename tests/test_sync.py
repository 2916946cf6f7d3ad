"""Tests for the sync orchestrator against an in-memory database."""

import json
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy.exc import OperationalError

from album_listens.models.db import Album, AlbumListen, SyncLog, Track
from album_listens.services.spotify import SpotifyAPI
from album_listens.services.storage import SYNC_STATUS_FAILED, SYNC_STATUS_PENDING, SYNC_STATUS_PROCESSED
from album_listens.sync import SyncOrchestrator

USER = "user-1"
START_MS = 1_709_294_400_000
HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def spotify(make_album) -> MagicMock:
    """Spotify client whose albums have twelve tracks."""
    client = MagicMock(spec=SpotifyAPI)
    client.get_album.side_effect = lambda album_id: make_album(album_id, total_tracks=12, name=f"Album {album_id}")
    return client


@pytest.fixture
def orchestrator(storage, spotify) -> SyncOrchestrator:
    return SyncOrchestrator(storage, spotify, USER)


class TestProcessBatch:
    """Tests for processing a fetched batch."""

    def test_first_sync_records_listen(self, orchestrator, storage, spotify, album_pass) -> None:
        """Test that a full pass through a new album is stored and recorded."""
        items = album_pass("album-1", list(range(1, 11)), start_ms=START_MS)

        result = orchestrator.process_batch(items)

        assert result.success
        assert result.error is None
        assert result.tracks_from_api == 10
        assert result.unique_tracks_from_api == 10
        assert result.new_tracks_added == 10
        assert result.existing_tracks_updated == 0
        assert result.unique_albums_from_api == 1
        assert result.new_albums_discovered == 1
        assert result.new_album_names == ["Album album-1"]
        assert result.tracks_backfilled_from_albums == 2
        assert result.albums_checked_for_listens == 1
        assert result.album_listens_recorded == 1
        assert result.recorded_listen_album_names == ["Album album-1"]

        listen = storage.session.query(AlbumListen).one()
        assert listen.source == "manual_sync"
        assert listen.earliest_played_at == START_MS
        assert len(storage.get_tracks_by_album(USER, "album-1")) == 12

    def test_second_sync_of_same_batch_records_nothing(self, orchestrator, storage, spotify, album_pass) -> None:
        """Test that re-processing a batch is idempotent for listens."""
        items = album_pass("album-1", list(range(1, 11)), start_ms=START_MS)
        orchestrator.process_batch(items)

        result = orchestrator.process_batch(items)

        assert result.success
        assert result.album_listens_recorded == 0
        assert result.albums_already_in_db == 1
        assert result.new_albums_discovered == 0
        assert result.existing_tracks_updated == 10
        assert result.new_tracks_added == 0
        spotify.get_album.assert_called_once_with("album-1")
        album_id = storage.get_album_by_spotify_id("album-1").id
        assert storage.get_aggregate(USER, album_id).listen_count == 1

    def test_later_pass_is_a_second_listen(self, orchestrator, storage, album_pass) -> None:
        """Test that a pass in a later batch adds to the aggregate."""
        orchestrator.process_batch(album_pass("album-1", list(range(1, 11)), start_ms=START_MS))
        result = orchestrator.process_batch(album_pass("album-1", list(range(1, 11)), start_ms=START_MS + 2 * HOUR_MS))

        assert result.album_listens_recorded == 1
        aggregate = storage.get_aggregate(USER, storage.get_album_by_spotify_id("album-1").id)
        assert aggregate.listen_count == 2
        assert aggregate.first_listened_at == START_MS
        assert aggregate.last_listened_at == START_MS + 2 * HOUR_MS + 9 * 60 * 1000

    def test_interleaved_albums(self, orchestrator, album_pass) -> None:
        """Test that two albums played alternately are both recorded."""
        a = album_pass("album-a", list(range(1, 11)), start_ms=START_MS)
        b = album_pass("album-b", list(range(1, 11)), start_ms=START_MS + 30 * 1000)
        items = [item for pair in zip(a, b) for item in pair]

        result = orchestrator.process_batch(items)

        assert result.album_listens_recorded == 2
        assert result.recorded_listen_album_names == ["Album album-a", "Album album-b"]
        assert result.albums_checked_for_listens == 2

    def test_partial_listen_is_not_recorded(self, orchestrator, storage, album_pass) -> None:
        """Test that a few tracks of an album store tracks but no listen."""
        result = orchestrator.process_batch(album_pass("album-1", [1, 2, 3], start_ms=START_MS))

        assert result.success
        assert result.new_albums_discovered == 1
        assert result.album_listens_recorded == 0
        assert storage.session.query(AlbumListen).count() == 0

    def test_known_album_uses_stored_metadata(self, orchestrator, storage, spotify, make_album, album_pass) -> None:
        """Test that a stored album is not fetched and its name comes from the batch."""
        storage.upsert_album(make_album("album-1", total_tracks=10, name="Stored Name"))

        result = orchestrator.process_batch(
            album_pass("album-1", list(range(1, 11)), start_ms=START_MS, album_name="Batch Name")
        )

        spotify.get_album.assert_not_called()
        assert result.albums_already_in_db == 1
        assert result.recorded_listen_album_names == ["Batch Name"]

    def test_album_fetch_failure_is_counted(self, orchestrator, spotify, album_pass) -> None:
        """Test that a failed album fetch skips the album without failing the sync."""
        spotify.get_album.side_effect = requests.exceptions.HTTPError("404 Not Found")

        result = orchestrator.process_batch(album_pass("album-1", list(range(1, 11)), start_ms=START_MS))

        assert result.success
        assert result.albums_fetch_failed == 1
        assert result.album_listens_recorded == 0
        assert result.new_tracks_added == 10

    def test_sync_log_and_run_are_saved(self, orchestrator, storage, album_pass) -> None:
        """Test that a successful batch is archived, marked processed and summarised."""
        items = album_pass("album-1", list(range(1, 11)), start_ms=START_MS)
        orchestrator.process_batch(items)

        log = storage.session.query(SyncLog).one()
        assert log.status == SYNC_STATUS_PROCESSED
        assert log.sync_type == "recently_played"
        assert json.loads(log.raw_response) == items

        runs = storage.get_recent_sync_runs(USER)
        assert len(runs) == 1
        assert runs[0].status == "success"
        assert runs[0].source == "manual"
        assert runs[0].album_listens_recorded == 1

    def test_malformed_timestamp_fails_the_sync(self, orchestrator, storage, make_item) -> None:
        """Test that an unparseable played_at fails the batch and marks its log failed."""
        items = [make_item("album-1", 1, START_MS)]
        items[0]["played_at"] = "not-a-date"

        result = orchestrator.process_batch(items)

        assert not result.success
        assert "not-a-date" in result.error
        assert result.tracks_from_api == 1
        log = storage.session.query(SyncLog).one()
        assert log.status == SYNC_STATUS_FAILED
        assert "not-a-date" in log.error
        runs = storage.get_recent_sync_runs(USER)
        assert [run.status for run in runs] == ["failed"]
        assert runs[0].error == result.error

    def test_storage_error_keeps_earlier_writes(self, orchestrator, storage, album_pass, monkeypatch) -> None:
        """Test that a database error while recording fails the sync but keeps stored tracks and albums."""
        monkeypatch.setattr(storage, "record_album_listen", MagicMock(
            side_effect=OperationalError("INSERT INTO album_listens", {}, Exception("database is locked"))
        ))

        result = orchestrator.process_batch(album_pass("album-1", list(range(1, 11)), start_ms=START_MS))

        assert not result.success
        assert "database is locked" in result.error
        assert result.new_albums_discovered == 1
        assert result.new_tracks_added == 10
        assert result.album_listens_recorded == 0
        assert storage.session.query(Album).count() == 1
        assert storage.session.query(Track).filter(Track.last_played_at.isnot(None)).count() == 10
        assert storage.session.query(AlbumListen).count() == 0
        assert storage.session.query(SyncLog).one().status == SYNC_STATUS_FAILED
        assert [run.status for run in storage.get_recent_sync_runs(USER)] == ["failed"]

    def test_failed_log_update_still_saves_run(self, orchestrator, storage, make_item, monkeypatch) -> None:
        """Test that a sync log that cannot be marked failed does not hide the result."""
        items = [make_item("album-1", 1, START_MS)]
        items[0]["played_at"] = "not-a-date"
        monkeypatch.setattr(storage, "update_sync_log_status", MagicMock(
            side_effect=OperationalError("UPDATE sync_logs", {}, Exception("connection lost"))
        ))

        result = orchestrator.process_batch(items)

        assert not result.success
        assert "not-a-date" in result.error
        assert [run.status for run in storage.get_recent_sync_runs(USER)] == ["failed"]

    def test_failure_bookkeeping_errors_return_result(self, orchestrator, storage, make_item, monkeypatch) -> None:
        """Test that a result comes back even when no failure record can be written."""
        items = [make_item("album-1", 1, START_MS)]
        items[0]["played_at"] = "not-a-date"
        db_down = OperationalError("UPDATE", {}, Exception("connection lost"))
        monkeypatch.setattr(storage, "update_sync_log_status", MagicMock(side_effect=db_down))
        monkeypatch.setattr(storage, "save_sync_run", MagicMock(side_effect=db_down))

        result = orchestrator.process_batch(items)

        assert not result.success
        assert result.tracks_from_api == 1
        storage.save_sync_run.assert_called_once()

    def test_empty_batch(self, orchestrator, storage) -> None:
        """Test that an empty batch succeeds with zero counts."""
        result = orchestrator.process_batch([])

        assert result.success
        assert result.tracks_from_api == 0
        assert result.albums_checked_for_listens == 0
        assert storage.session.query(SyncLog).one().status == SYNC_STATUS_PROCESSED


class TestSync:
    """Tests for fetching and processing in one call."""

    def test_sync_fetches_recently_played(self, storage, spotify, album_pass) -> None:
        """Test that sync pulls the configured page size and records with its source."""
        spotify.get_recently_played.return_value = album_pass("album-1", list(range(1, 11)), start_ms=START_MS)
        orchestrator = SyncOrchestrator(storage, spotify, USER, source="cron", recently_played_limit=25)

        result = orchestrator.sync()

        spotify.get_recently_played.assert_called_once_with(limit=25)
        assert result.success
        assert storage.session.query(AlbumListen).one().source == "cron_sync"
        assert storage.get_recent_sync_runs(USER)[0].source == "cron"

    def test_fetch_failure_leaves_no_sync_log(self, orchestrator, storage, spotify) -> None:
        """Test that a failed fetch records a failed run but no batch."""
        spotify.get_recently_played.side_effect = requests.exceptions.ConnectionError("connection refused")

        result = orchestrator.sync()

        assert not result.success
        assert result.error == "connection refused"
        assert storage.session.query(SyncLog).count() == 0
        assert [run.status for run in storage.get_recent_sync_runs(USER)] == ["failed"]

    def test_user_id_is_required(self, storage, spotify) -> None:
        with pytest.raises(ValueError):
            SyncOrchestrator(storage, spotify, "")


class TestReplayPending:
    """Tests for re-processing archived batches."""

    def test_pending_log_is_replayed(self, orchestrator, storage, album_pass) -> None:
        """Test that a pending batch is processed in place without a new log."""
        items = album_pass("album-1", list(range(1, 11)), start_ms=START_MS)
        log_id = storage.create_sync_log(USER, "recently_played", json.dumps(items))
        storage.create_sync_log("someone-else", "recently_played", json.dumps(items))

        results = orchestrator.replay_pending()

        assert len(results) == 1
        assert results[0].success
        assert results[0].album_listens_recorded == 1
        assert storage.session.get(SyncLog, log_id).status == SYNC_STATUS_PROCESSED
        assert storage.session.query(SyncLog).count() == 2
        assert [log.user_id for log in storage.get_pending_sync_logs()] == ["someone-else"]

    def test_unreadable_log_is_marked_failed(self, orchestrator, storage) -> None:
        """Test that a log with broken JSON fails on its own."""
        log_id = storage.create_sync_log(USER, "recently_played", "{not json")

        results = orchestrator.replay_pending()

        assert not results[0].success
        assert storage.session.get(SyncLog, log_id).status == SYNC_STATUS_FAILED

    def test_nothing_pending(self, orchestrator) -> None:
        assert orchestrator.replay_pending() == []

    def test_replay_is_not_archived(self, storage, spotify, album_pass) -> None:
        """Test that replayed batches are not uploaded again."""
        archive = MagicMock()
        orchestrator = SyncOrchestrator(storage, spotify, USER, archive=archive)
        storage.create_sync_log(USER, "recently_played", json.dumps(album_pass("album-1", [1, 2, 3])))

        orchestrator.replay_pending()

        archive.upload.assert_not_called()
        assert storage.get_pending_sync_logs(USER) == []


class TestArchiveMirror:
    """Tests for the optional S3 mirror of raw batches."""

    def test_batch_is_uploaded(self, storage, spotify, album_pass) -> None:
        """Test that a new batch is mirrored under its sync log id."""
        archive = MagicMock()
        orchestrator = SyncOrchestrator(storage, spotify, USER, archive=archive)
        items = album_pass("album-1", [1, 2, 3], start_ms=START_MS)

        orchestrator.process_batch(items)

        log_id = storage.session.query(SyncLog).one().id
        archive.upload.assert_called_once_with(USER, log_id, items)

    def test_upload_failure_does_not_fail_sync(self, storage, spotify, album_pass) -> None:
        """Test that the sync carries on when the mirror is unavailable."""
        archive = MagicMock()
        archive.upload.side_effect = RuntimeError("bucket unavailable")
        orchestrator = SyncOrchestrator(storage, spotify, USER, archive=archive)

        result = orchestrator.process_batch(album_pass("album-1", list(range(1, 11)), start_ms=START_MS))

        assert result.success
        assert result.album_listens_recorded == 1
        assert storage.session.query(SyncLog).one().status == SYNC_STATUS_PROCESSED
