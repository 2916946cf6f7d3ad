"""SQLAlchemy database models for album listening history"""
from sqlalchemy import (
    Column, Integer, String, Text, BigInteger, JSON, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

class Album(Base):
    """
    Album metadata resolved from Spotify.
    Shared by all users; keyed by Spotify's album id.
    """
    __tablename__ = 'albums'

    id = Column(Integer, primary_key=True)
    spotify_album_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    artist_name = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    release_date = Column(String, nullable=True)
    total_tracks = Column(Integer, nullable=False)
    genres = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=True)  # Full Spotify album response
    created_at = Column(BigInteger, nullable=False, index=True)
    updated_at = Column(BigInteger, nullable=False)

class Track(Base):
    """
    Per-user track bookkeeping.
    Rows backfilled from an album have no last_played_at.
    """
    __tablename__ = 'tracks'
    __table_args__ = (UniqueConstraint('user_id', 'track_id', name='uq_tracks_user_track'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    track_id = Column(String, nullable=False)
    track_name = Column(String, nullable=False)
    artist_name = Column(String, nullable=False)
    album_name = Column(String, nullable=True)
    album_image_url = Column(String, nullable=True)
    spotify_album_id = Column(String, nullable=True, index=True)
    track_data = Column(JSON, nullable=True)
    first_seen_at = Column(BigInteger, nullable=False)
    last_seen_at = Column(BigInteger, nullable=False)
    last_played_at = Column(BigInteger, nullable=True)

class AlbumListen(Base):
    """
    One recorded listen of an album, detected or entered manually.
    Never updated after creation.
    """
    __tablename__ = 'album_listens'

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    album_id = Column(Integer, ForeignKey('albums.id'), nullable=False, index=True)
    listened_at = Column(BigInteger, nullable=False, index=True)  # When the listen was recorded
    earliest_played_at = Column(BigInteger, nullable=False)
    latest_played_at = Column(BigInteger, nullable=False)
    track_ids = Column(JSON, nullable=False, default=list)
    source = Column(String, nullable=False)  # e.g. "manual_sync", "cron_sync", "manual"

    album = relationship(Album)

class UserAlbum(Base):
    """
    Per (user, album) aggregate of recorded listens.
    The unique constraint serializes concurrent first-time listens.
    """
    __tablename__ = 'user_albums'
    __table_args__ = (UniqueConstraint('user_id', 'album_id', name='uq_user_albums_user_album'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    album_id = Column(Integer, ForeignKey('albums.id'), nullable=False)
    listen_count = Column(Integer, nullable=False, default=0)
    first_listened_at = Column(BigInteger, nullable=False)
    last_listened_at = Column(BigInteger, nullable=False, index=True)
    rating = Column(Integer, nullable=True)  # 1-15 tier scale, owned by the ranking UI

    album = relationship(Album)

class SyncLog(Base):
    """
    Raw API batch archived before processing, for audit and replay.
    """
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    sync_type = Column(String, nullable=False)  # "recently_played"
    raw_response = Column(Text, nullable=False)  # JSON blob of the API response
    status = Column(String, nullable=False, index=True)  # "pending" | "processed" | "failed"
    error = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    processed_at = Column(BigInteger, nullable=True)

class SyncRun(Base):
    """
    Statistics of one sync invocation, saved whether it succeeded or not.
    """
    __tablename__ = 'sync_runs'

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)  # "manual" | "cron"
    status = Column(String, nullable=False)  # "success" | "failed"
    started_at = Column(BigInteger, nullable=False, index=True)
    completed_at = Column(BigInteger, nullable=False)
    duration_ms = Column(BigInteger, nullable=False)
    error = Column(Text, nullable=True)

    # Track stats
    tracks_from_api = Column(Integer, nullable=False, default=0)
    unique_tracks_from_api = Column(Integer, nullable=False, default=0)
    new_tracks_added = Column(Integer, nullable=False, default=0)
    existing_tracks_updated = Column(Integer, nullable=False, default=0)

    # Album stats
    unique_albums_from_api = Column(Integer, nullable=False, default=0)
    albums_already_in_db = Column(Integer, nullable=False, default=0)
    new_albums_discovered = Column(Integer, nullable=False, default=0)
    albums_fetch_failed = Column(Integer, nullable=False, default=0)

    # Listen detection stats
    albums_checked_for_listens = Column(Integer, nullable=False, default=0)
    album_listens_recorded = Column(Integer, nullable=False, default=0)

    # Backfill stats
    tracks_backfilled_from_albums = Column(Integer, nullable=False, default=0)

    new_album_names = Column(JSON, nullable=True)
    recorded_listen_album_names = Column(JSON, nullable=True)
