"""Shared fixtures for album listen tests"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from album_listens.db import Database
from album_listens.models.listening import AlbumDetails, AlbumTrack
from album_listens.services.storage import StorageService

# 2024-03-01T12:00:00Z
BASE_TIME_MS = 1709294400000
MINUTE_MS = 60 * 1000


def iso_from_ms(ms: int) -> str:
    """Spotify style played_at string for an epoch millisecond timestamp"""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@pytest.fixture
def database():
    """In-memory database with all tables created."""
    db = Database("sqlite://")
    db.init()
    yield db
    db.dispose()


@pytest.fixture
def storage(database: Database):
    """Storage service bound to a fresh session."""
    session = database.get_session()
    yield StorageService(session)
    session.close()


@pytest.fixture
def make_album():
    """Factory for album details with tracks t1..tN."""
    def _make_album(album_id: str = "album-1", total_tracks: int = 10, name: str = "Test Album",
                    track_prefix: Optional[str] = None) -> AlbumDetails:
        prefix = track_prefix if track_prefix is not None else f"{album_id}-t"
        tracks = [
            AlbumTrack(track_id=f"{prefix}{n}", name=f"Track {n}", artist_name="Test Artist", track_number=n)
            for n in range(1, total_tracks + 1)
        ]
        return AlbumDetails(
            album_id=album_id,
            name=name,
            artist_names=["Test Artist"],
            total_tracks=total_tracks,
            release_date="2020-01-01",
            image_url="https://i.scdn.co/image/cover",
            genres=[],
            tracks=tracks,
            raw_data={"id": album_id, "name": name, "total_tracks": total_tracks}
        )
    return _make_album


@pytest.fixture
def make_item():
    """Factory for a recently played item as returned by the Spotify API."""
    def _make_item(album_id: str, track_number: int, played_at_ms: int,
                   album_name: str = "Test Album", track_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "track": {
                "id": track_id or f"{album_id}-t{track_number}",
                "name": f"Track {track_number}",
                "track_number": track_number,
                "artists": [{"id": "artist-1", "name": "Test Artist"}],
                "album": {
                    "id": album_id,
                    "name": album_name,
                    "images": [{"url": "https://i.scdn.co/image/cover", "height": 640, "width": 640}]
                },
                "duration_ms": 200000
            },
            "played_at": iso_from_ms(played_at_ms)
        }
    return _make_item


@pytest.fixture
def album_pass(make_item):
    """Factory for one straight pass through an album, one play per minute."""
    def _album_pass(album_id: str, track_numbers: List[int], start_ms: int = BASE_TIME_MS,
                    album_name: str = "Test Album") -> List[Dict[str, Any]]:
        return [
            make_item(album_id, n, start_ms + i * MINUTE_MS, album_name=album_name)
            for i, n in enumerate(track_numbers)
        ]
    return _album_pass
