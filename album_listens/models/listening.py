"""Domain models for album listening history"""
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

@dataclass(frozen=True)
class PlayEvent:
    """One track play; played_at is epoch milliseconds"""
    track_id: str
    track_number: int
    played_at: int
    album_id: str

@dataclass
class ListenSession:
    """A validated single listen of an album"""
    album_id: str
    track_ids: List[str]
    earliest_played_at: int
    latest_played_at: int

@dataclass
class AlbumTrack:
    """A track as listed on an album"""
    track_id: str
    name: str
    artist_name: str
    track_number: int

@dataclass
class AlbumDetails:
    """Full album metadata fetched from the provider"""
    album_id: str
    name: str
    artist_names: List[str]
    total_tracks: int
    release_date: Optional[str]
    image_url: Optional[str]
    genres: List[str]
    tracks: List[AlbumTrack]
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def artist_name(self) -> str:
        return ", ".join(self.artist_names)

@dataclass
class AlbumAggregate:
    """Listen count and first/last listen bounds for one user and album"""
    listen_count: int
    first_listened_at: int
    last_listened_at: int

@dataclass
class RecordListenResult:
    """Outcome of recording a listen"""
    recorded: bool
    reason: Optional[str] = None  # "overlapping_listen" | "duplicate_listen"
    album_name: Optional[str] = None
