"""Listening history sync: from a recently played batch to recorded album listens"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from album_listens.detection import detect_album_listen_sessions, group_plays_by_album
from album_listens.models.listening import PlayEvent
from album_listens.models.sync import SyncResult, SyncStats
from album_listens.services.archive import RawBatchArchive
from album_listens.services.spotify import SpotifyAPI, format_artists, get_image_url, to_epoch_ms, to_play_events
from album_listens.services.storage import (
    StorageService, SYNC_STATUS_FAILED, SYNC_STATUS_PROCESSED
)
from album_listens.utils import timestamps
from album_listens.utils.json_encoder import json_dumps

logger = logging.getLogger(__name__)

SYNC_TYPE_RECENTLY_PLAYED = "recently_played"

@dataclass
class ResolvedAlbum:
    """Stored album a batch's plays can be checked against"""
    db_id: int
    name: str
    total_tracks: int

class SyncOrchestrator:
    """Turns fetched play batches into stored tracks, albums and recorded listens"""

    def __init__(self, storage: StorageService, spotify: SpotifyAPI, user_id: str,
                 source: str = "manual", archive: Optional[RawBatchArchive] = None,
                 recently_played_limit: int = 50):
        if not user_id:
            raise ValueError("user_id is required")
        self.storage = storage
        self.spotify = spotify
        self.user_id = user_id
        self.source = source
        self.archive = archive
        self.recently_played_limit = recently_played_limit

    @property
    def listen_source(self) -> str:
        return f"{self.source}_sync"

    def sync(self) -> SyncResult:
        """Fetch the latest recently played page and process it"""
        return self._run(lambda: self.spotify.get_recently_played(limit=self.recently_played_limit))

    def process_batch(self, items: List[Dict[str, Any]], sync_log_id: Optional[int] = None) -> SyncResult:
        """
        Process an already fetched batch of recently played items.

        With sync_log_id the batch is a replay of that archived sync log and is
        not archived again.
        """
        return self._run(lambda: items, sync_log_id=sync_log_id)

    def replay_pending(self) -> List[SyncResult]:
        """Re-process every archived batch of this user still marked pending"""
        results = []
        for sync_log in self.storage.get_pending_sync_logs(self.user_id):
            logger.info(f"Replaying sync log {sync_log.id}")
            raw_response = sync_log.raw_response
            results.append(self._run(lambda raw=raw_response: json.loads(raw), sync_log_id=sync_log.id))
        return results

    def _run(self, load_batch: Callable[[], List[Dict[str, Any]]],
             sync_log_id: Optional[int] = None) -> SyncResult:
        started_at = timestamps.now_ms()
        stats = SyncStats()

        try:
            # --- Stage 1: Load and archive the raw batch ---
            items = load_batch()
            if sync_log_id is None:
                sync_log_id = self.storage.create_sync_log(
                    self.user_id, SYNC_TYPE_RECENTLY_PLAYED, json_dumps(items)
                )
                self._mirror_to_archive(sync_log_id, items)

            # --- Stage 2: Batch statistics ---
            unique_track_ids = list(dict.fromkeys(item['track']['id'] for item in items))
            unique_album_ids = {item['track']['album']['id'] for item in items}
            stats.tracks_from_api = len(items)
            stats.unique_tracks_from_api = len(unique_track_ids)
            stats.unique_albums_from_api = len(unique_album_ids)
            logger.info(
                f"Processing {stats.tracks_from_api} plays "
                f"({stats.unique_tracks_from_api} tracks, {stats.unique_albums_from_api} albums)"
            )

            # --- Stage 3: Classify tracks as new or known ---
            for track_id in unique_track_ids:
                if self.storage.track_exists(self.user_id, track_id):
                    stats.existing_tracks_updated += 1
                else:
                    stats.new_tracks_added += 1

            # --- Stage 4: Track bookkeeping ---
            self.storage.upsert_tracks_from_recently_played(
                self.user_id, [self._to_track_item(item) for item in items]
            )

            # --- Stages 5-8: Album resolution, detection and reconciliation ---
            self._detect_album_listens(items, stats)

            self.storage.update_sync_log_status(sync_log_id, SYNC_STATUS_PROCESSED)
            completed_at = timestamps.now_ms()
            self.storage.save_sync_run(
                self.user_id, self.source, "success", started_at, completed_at, stats
            )
            logger.info(
                f"Sync complete: {stats.album_listens_recorded} album listens recorded, "
                f"{stats.new_albums_discovered} new albums"
            )
            return SyncResult(success=True, duration_ms=completed_at - started_at, **stats.model_dump())

        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            logger.exception(f"Sync failed for user {self.user_id}: {error_message}")
            completed_at = self._record_failure(sync_log_id, started_at, stats, error_message)
            return SyncResult(
                success=False,
                duration_ms=completed_at - started_at,
                error=error_message,
                **stats.model_dump()
            )

    def _record_failure(self, sync_log_id: Optional[int], started_at: int, stats: SyncStats,
                        error_message: str) -> int:
        """Mark the sync log failed and save a failed run; returns the completion time"""
        if sync_log_id is not None:
            try:
                self.storage.update_sync_log_status(sync_log_id, SYNC_STATUS_FAILED, error_message)
            except SQLAlchemyError as e:
                logger.error(f"Could not mark sync log {sync_log_id} failed: {e}")
        completed_at = timestamps.now_ms()
        try:
            self.storage.save_sync_run(
                self.user_id, self.source, "failed", started_at, completed_at, stats, error=error_message
            )
        except SQLAlchemyError as e:
            logger.error(f"Could not save failed sync run for user {self.user_id}: {e}")
        return completed_at

    def _mirror_to_archive(self, sync_log_id: int, items: List[Dict[str, Any]]) -> None:
        if self.archive is None:
            return
        try:
            self.archive.upload(self.user_id, sync_log_id, items)
        except Exception as e:
            # The sync log already holds the batch
            logger.warning(f"Raw batch {sync_log_id} not mirrored to S3: {e}")

    @staticmethod
    def _to_track_item(item: Dict[str, Any]) -> Dict[str, Any]:
        track = item['track']
        album = track['album']
        return {
            'track_id': track['id'],
            'track_name': track.get('name', ''),
            'artist_name': format_artists(track.get('artists')),
            'album_name': album.get('name'),
            'album_image_url': get_image_url(album.get('images', [])),
            'spotify_album_id': album['id'],
            'track_data': track,
            'played_at': to_epoch_ms(item['played_at'])
        }

    def _detect_album_listens(self, items: List[Dict[str, Any]], stats: SyncStats) -> None:
        plays_by_album = group_plays_by_album(to_play_events(items))
        batch_album_names: Dict[str, str] = {}
        for item in items:
            album = item['track']['album']
            batch_album_names.setdefault(album['id'], album.get('name') or "Unknown Album")

        stats.albums_checked_for_listens = len(plays_by_album)

        # First pass: make sure every album is stored and knows its track count
        resolved: Dict[str, ResolvedAlbum] = {}
        for spotify_album_id in plays_by_album:
            album = self._resolve_album(spotify_album_id, batch_album_names[spotify_album_id], stats)
            if album is not None:
                resolved[spotify_album_id] = album

        # Second pass: detect and record listen sessions
        for spotify_album_id, plays in plays_by_album.items():
            album = resolved.get(spotify_album_id)
            if album is None:
                continue
            self._record_sessions(album, plays, stats)

    def _resolve_album(self, spotify_album_id: str, batch_album_name: str,
                       stats: SyncStats) -> Optional[ResolvedAlbum]:
        existing = self.storage.get_album_by_spotify_id(spotify_album_id)
        if existing is not None:
            stats.albums_already_in_db += 1
            return ResolvedAlbum(db_id=existing.id, name=batch_album_name, total_tracks=existing.total_tracks)

        try:
            details = self.spotify.get_album(spotify_album_id)
        except Exception as e:
            logger.warning(f"Failed to fetch album {spotify_album_id}: {e}")
            stats.albums_fetch_failed += 1
            return None

        album = self.storage.upsert_album(details)
        added_count = self.storage.backfill_tracks_from_album(self.user_id, details)
        stats.new_albums_discovered += 1
        stats.new_album_names.append(details.name)
        stats.tracks_backfilled_from_albums += added_count
        logger.info(f"Discovered album '{details.name}' ({details.total_tracks} tracks, {added_count} backfilled)")
        return ResolvedAlbum(db_id=album.id, name=details.name, total_tracks=details.total_tracks)

    def _record_sessions(self, album: ResolvedAlbum, plays: List[PlayEvent], stats: SyncStats) -> None:
        for session in detect_album_listen_sessions(plays, album.total_tracks):
            result = self.storage.record_album_listen(self.user_id, album.db_id, session, self.listen_source)
            if result.recorded:
                stats.album_listens_recorded += 1
                stats.recorded_listen_album_names.append(album.name)
                logger.info(f"Recorded listen of '{album.name}' ({len(session.track_ids)} tracks)")
            else:
                logger.info(f"Skipped listen of '{album.name}': {result.reason}")
