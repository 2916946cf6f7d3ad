"""Database storage service for tracks, albums, recorded listens and sync history

The sync orchestrator uses the track, album, listen recording and sync log
methods. add_manual_listen, delete_album_listen, get_user_album_listens and
get_user_albums are not used by a sync; they are for callers embedding the
library, such as a web backend editing a user's listening history.
"""
import logging
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from album_listens.models.db import Album, AlbumListen, SyncLog, SyncRun, Track, UserAlbum
from album_listens.models.listening import (
    AlbumAggregate, AlbumDetails, ListenSession, RecordListenResult
)
from album_listens.models.sync import SyncStats
from album_listens.utils import timestamps

logger = logging.getLogger(__name__)

SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_PROCESSED = "processed"
SYNC_STATUS_FAILED = "failed"

class AlbumNotFoundError(LookupError):
    """Raised when a listen refers to an album that was never stored"""

class StorageService:
    """Handles all database operations

    Every public method that writes commits its own transaction, so a failure
    later in a sync leaves earlier writes in place. insert_listen and
    upsert_aggregate only flush; record_album_listen commits them together.
    """

    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------------
    # Sync logs
    # ------------------------------------------------------------------

    def create_sync_log(self, user_id: str, sync_type: str, raw_response: str) -> int:
        """Archive a raw API batch as a pending sync log and return its id"""
        try:
            sync_log = SyncLog(
                user_id=user_id,
                sync_type=sync_type,
                raw_response=raw_response,
                status=SYNC_STATUS_PENDING,
                created_at=timestamps.now_ms()
            )
            self.session.add(sync_log)
            self.session.commit()
            logger.info(f"Archived {sync_type} batch as sync log {sync_log.id}")
            return sync_log.id
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error creating sync log for user {user_id}: {e}")
            raise

    def update_sync_log_status(self, sync_log_id: int, status: str, error: Optional[str] = None) -> None:
        """Move a sync log to processed or failed"""
        try:
            sync_log = self.session.get(SyncLog, sync_log_id)
            if sync_log is None:
                logger.warning(f"Sync log {sync_log_id} not found, status {status} not recorded")
                return
            sync_log.status = status
            sync_log.processed_at = timestamps.now_ms()
            if error:
                sync_log.error = error
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error updating sync log {sync_log_id}: {e}")
            raise

    def get_pending_sync_logs(self, user_id: Optional[str] = None) -> List[SyncLog]:
        """Sync logs still waiting to be processed, oldest first"""
        query = self.session.query(SyncLog).filter(SyncLog.status == SYNC_STATUS_PENDING)
        if user_id is not None:
            query = query.filter(SyncLog.user_id == user_id)
        return query.order_by(SyncLog.created_at, SyncLog.id).all()

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    def get_track(self, user_id: str, track_id: str) -> Optional[Track]:
        return self.session.query(Track).filter_by(user_id=user_id, track_id=track_id).first()

    def track_exists(self, user_id: str, track_id: str) -> bool:
        return self.get_track(user_id, track_id) is not None

    def get_tracks_by_album(self, user_id: str, spotify_album_id: str) -> List[Track]:
        return (
            self.session.query(Track)
            .filter_by(user_id=user_id, spotify_album_id=spotify_album_id)
            .all()
        )

    def upsert_tracks_from_recently_played(self, user_id: str, items: List[Dict[str, Any]]) -> None:
        """
        Insert or refresh track rows for every play of a batch.

        Each item carries track_id, track_name, artist_name, album_name,
        album_image_url, spotify_album_id, track_data and played_at (ms).
        Play timestamps only ever move forward, so replaying an older batch
        never moves last_played_at or last_seen_at back.
        """
        try:
            now = timestamps.now_ms()
            for item in items:
                existing = self.get_track(user_id, item['track_id'])
                if existing:
                    new_last_played_at = max(existing.last_played_at or 0, item['played_at'])
                    existing.track_name = item['track_name']
                    existing.artist_name = item['artist_name']
                    existing.album_name = item.get('album_name')
                    existing.album_image_url = item.get('album_image_url')
                    existing.spotify_album_id = item.get('spotify_album_id')
                    existing.track_data = item.get('track_data')
                    existing.last_played_at = new_last_played_at
                    existing.last_seen_at = max(existing.last_seen_at, new_last_played_at)
                else:
                    self.session.add(Track(
                        user_id=user_id,
                        track_id=item['track_id'],
                        track_name=item['track_name'],
                        artist_name=item['artist_name'],
                        album_name=item.get('album_name'),
                        album_image_url=item.get('album_image_url'),
                        spotify_album_id=item.get('spotify_album_id'),
                        track_data=item.get('track_data'),
                        first_seen_at=now,
                        last_seen_at=item['played_at'],
                        last_played_at=item['played_at']
                    ))
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error upserting tracks for user {user_id}: {e}")
            raise

    def backfill_tracks_from_album(self, user_id: str, album: AlbumDetails) -> int:
        """
        Add placeholder rows for album tracks the user has never played.

        Known tracks are left alone, except that a missing album id is attached.
        Returns the number of rows added.
        """
        try:
            now = timestamps.now_ms()
            added_count = 0
            for track in album.tracks:
                existing = self.get_track(user_id, track.track_id)
                if existing is None:
                    self.session.add(Track(
                        user_id=user_id,
                        track_id=track.track_id,
                        track_name=track.name,
                        artist_name=track.artist_name,
                        album_name=album.name,
                        album_image_url=album.image_url,
                        spotify_album_id=album.album_id,
                        first_seen_at=now,
                        last_seen_at=now
                    ))
                    added_count += 1
                elif not existing.spotify_album_id:
                    existing.spotify_album_id = album.album_id
            self.session.commit()
            return added_count
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error backfilling tracks of album {album.album_id}: {e}")
            raise

    # ------------------------------------------------------------------
    # Albums
    # ------------------------------------------------------------------

    def get_album_by_spotify_id(self, spotify_album_id: str) -> Optional[Album]:
        return self.session.query(Album).filter_by(spotify_album_id=spotify_album_id).first()

    def upsert_album(self, details: AlbumDetails) -> Album:
        """Store fetched album metadata, refreshing an existing row"""
        try:
            now = timestamps.now_ms()
            album = self.get_album_by_spotify_id(details.album_id)
            if album is None:
                album = Album(spotify_album_id=details.album_id, created_at=now)
                self.session.add(album)
            album.name = details.name
            album.artist_name = details.artist_name
            album.image_url = details.image_url
            album.release_date = details.release_date
            album.total_tracks = details.total_tracks
            album.genres = details.genres
            album.raw_data = details.raw_data
            album.updated_at = now
            self.session.commit()
            return album
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error storing album {details.album_id}: {e}")
            raise

    # ------------------------------------------------------------------
    # Recorded listens and aggregates
    # ------------------------------------------------------------------

    def find_overlapping(self, user_id: str, album_id: int, earliest: int, latest: int) -> bool:
        """True if a recorded listen intersects [earliest, latest]; touching bounds count"""
        overlapping = (
            self.session.query(AlbumListen.id)
            .filter(
                AlbumListen.user_id == user_id,
                AlbumListen.album_id == album_id,
                AlbumListen.earliest_played_at <= latest,
                AlbumListen.latest_played_at >= earliest
            )
            .first()
        )
        return overlapping is not None

    def insert_listen(self, user_id: str, album_id: int, listened_at: int, earliest_played_at: int,
                      latest_played_at: int, track_ids: List[str], source: str) -> AlbumListen:
        listen = AlbumListen(
            user_id=user_id,
            album_id=album_id,
            listened_at=listened_at,
            earliest_played_at=earliest_played_at,
            latest_played_at=latest_played_at,
            track_ids=list(track_ids),
            source=source
        )
        self.session.add(listen)
        self.session.flush()
        return listen

    def get_aggregate(self, user_id: str, album_id: int) -> Optional[AlbumAggregate]:
        user_album = self._get_user_album(user_id, album_id)
        if user_album is None:
            return None
        return AlbumAggregate(
            listen_count=user_album.listen_count,
            first_listened_at=user_album.first_listened_at,
            last_listened_at=user_album.last_listened_at
        )

    def upsert_aggregate(self, user_id: str, album_id: int, first_listened_at: int,
                         last_listened_at: int) -> UserAlbum:
        """Count one more listen and widen the first/last listened bounds"""
        user_album = self._get_user_album(user_id, album_id, lock=True)
        if user_album is None:
            user_album = UserAlbum(
                user_id=user_id,
                album_id=album_id,
                listen_count=1,
                first_listened_at=first_listened_at,
                last_listened_at=last_listened_at
            )
            self.session.add(user_album)
        else:
            user_album.listen_count += 1
            user_album.first_listened_at = min(user_album.first_listened_at, first_listened_at)
            user_album.last_listened_at = max(user_album.last_listened_at, last_listened_at)
        self.session.flush()
        return user_album

    def record_album_listen(self, user_id: str, album_id: int, session: ListenSession,
                            source: str) -> RecordListenResult:
        """
        Record a detected listen unless it overlaps one already recorded.

        The overlap check, the insert and the aggregate update share one
        transaction with the aggregate row locked, so concurrent syncs for the
        same user and album cannot both record the same listen.
        """
        try:
            self._get_user_album(user_id, album_id, lock=True)
            if self.find_overlapping(user_id, album_id, session.earliest_played_at, session.latest_played_at):
                self.session.rollback()
                return RecordListenResult(recorded=False, reason="overlapping_listen")

            self.insert_listen(
                user_id=user_id,
                album_id=album_id,
                listened_at=timestamps.now_ms(),
                earliest_played_at=session.earliest_played_at,
                latest_played_at=session.latest_played_at,
                track_ids=session.track_ids,
                source=source
            )
            self.upsert_aggregate(user_id, album_id, session.earliest_played_at, session.latest_played_at)
            self.session.commit()
            return RecordListenResult(recorded=True)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error recording listen of album {album_id} for user {user_id}: {e}")
            raise

    def add_manual_listen(self, user_id: str, spotify_album_id: str, listened_at: int) -> RecordListenResult:
        """
        Record a listen entered by the user at a given time.

        The album must already be stored. A second manual listen at exactly the
        same time is rejected as a duplicate.
        """
        album = self.get_album_by_spotify_id(spotify_album_id)
        if album is None:
            raise AlbumNotFoundError(
                f"Album not found in database: {spotify_album_id}. Please ensure album is fetched first."
            )

        try:
            self._get_user_album(user_id, album.id, lock=True)
            duplicate = (
                self.session.query(AlbumListen.id)
                .filter_by(user_id=user_id, album_id=album.id, listened_at=listened_at)
                .first()
            )
            if duplicate is not None:
                self.session.rollback()
                return RecordListenResult(recorded=False, reason="duplicate_listen", album_name=album.name)

            self.insert_listen(
                user_id=user_id,
                album_id=album.id,
                listened_at=listened_at,
                earliest_played_at=listened_at,
                latest_played_at=listened_at,
                track_ids=[],
                source="manual"
            )
            self.upsert_aggregate(user_id, album.id, listened_at, listened_at)
            self.session.commit()
            return RecordListenResult(recorded=True, album_name=album.name)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error adding manual listen of {spotify_album_id} for user {user_id}: {e}")
            raise

    def delete_album_listen(self, listen_id: int) -> None:
        """
        Delete a recorded listen and bring the aggregate back in line.

        The aggregate is removed with its last listen; otherwise the first and
        last listened bounds are recomputed over the listens that remain.
        """
        try:
            listen = self.session.get(AlbumListen, listen_id)
            if listen is None:
                return
            user_id, album_id = listen.user_id, listen.album_id
            self.session.delete(listen)
            self.session.flush()

            user_album = self._get_user_album(user_id, album_id, lock=True)
            if user_album is not None:
                new_count = user_album.listen_count - 1
                if new_count <= 0:
                    self.session.delete(user_album)
                else:
                    first, last = (
                        self.session.query(
                            func.min(AlbumListen.earliest_played_at),
                            func.max(AlbumListen.latest_played_at)
                        )
                        .filter_by(user_id=user_id, album_id=album_id)
                        .one()
                    )
                    user_album.listen_count = new_count
                    if first is not None:
                        user_album.first_listened_at = first
                        user_album.last_listened_at = last
            self.session.commit()
            logger.info(f"Deleted album listen {listen_id}")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error deleting album listen {listen_id}: {e}")
            raise

    def get_user_album_listens(self, user_id: str, limit: Optional[int] = None) -> List[AlbumListen]:
        """Recorded listens, most recently recorded first"""
        query = (
            self.session.query(AlbumListen)
            .filter_by(user_id=user_id)
            .order_by(AlbumListen.listened_at.desc(), AlbumListen.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_user_albums(self, user_id: str, limit: Optional[int] = None) -> List[UserAlbum]:
        """Listened albums, most recently listened first"""
        query = (
            self.session.query(UserAlbum)
            .filter_by(user_id=user_id)
            .order_by(UserAlbum.last_listened_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def _get_user_album(self, user_id: str, album_id: int, lock: bool = False) -> Optional[UserAlbum]:
        query = self.session.query(UserAlbum).filter_by(user_id=user_id, album_id=album_id)
        if lock:
            # Rendered as SELECT ... FOR UPDATE where the backend supports it
            query = query.with_for_update()
        return query.first()

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    def save_sync_run(self, user_id: str, source: str, status: str, started_at: int, completed_at: int,
                      stats: SyncStats, error: Optional[str] = None) -> int:
        """Save the statistics of one sync invocation"""
        try:
            sync_run = SyncRun(
                user_id=user_id,
                source=source,
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=completed_at - started_at,
                error=error,
                **stats.model_dump(include=set(SyncStats.model_fields))
            )
            self.session.add(sync_run)
            self.session.commit()
            return sync_run.id
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error saving sync run for user {user_id}: {e}")
            raise

    def get_recent_sync_runs(self, user_id: str, limit: Optional[int] = None) -> List[SyncRun]:
        query = (
            self.session.query(SyncRun)
            .filter_by(user_id=user_id)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()
