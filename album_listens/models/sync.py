"""SyncStats and SyncResult model definitions"""
from typing import List, Optional
from pydantic import BaseModel, Field

class SyncStats(BaseModel):
    """
    Counters gathered while a batch of plays is processed.

    Track attributes:
        tracks_from_api: Plays returned by the API
        unique_tracks_from_api: Distinct track ids in the batch
        new_tracks_added: Distinct tracks the user had no record of
        existing_tracks_updated: Distinct tracks already on record

    Album attributes:
        unique_albums_from_api: Distinct album ids in the batch
        albums_already_in_db: Albums resolved from stored metadata
        new_albums_discovered: Albums fetched and stored during this sync
        albums_fetch_failed: Albums whose metadata could not be fetched
        tracks_backfilled_from_albums: Placeholder tracks added from new albums

    Listen attributes:
        albums_checked_for_listens: Albums evaluated by the detector
        album_listens_recorded: Detected sessions that were not duplicates
    """
    tracks_from_api: int = 0
    unique_tracks_from_api: int = 0
    new_tracks_added: int = 0
    existing_tracks_updated: int = 0
    unique_albums_from_api: int = 0
    albums_already_in_db: int = 0
    new_albums_discovered: int = 0
    albums_fetch_failed: int = 0
    albums_checked_for_listens: int = 0
    album_listens_recorded: int = 0
    tracks_backfilled_from_albums: int = 0
    new_album_names: List[str] = Field(default_factory=list)
    recorded_listen_album_names: List[str] = Field(default_factory=list)

class SyncResult(SyncStats):
    """Statistics of a finished sync plus its outcome"""
    success: bool
    duration_ms: int
    error: Optional[str] = None
