"""Spotify API integration service"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any
import time

import requests

from album_listens.models.listening import AlbumDetails, AlbumTrack, PlayEvent

logger = logging.getLogger(__name__)

# --- Constants for Fetching Control ---
# Spotify returns at most 50 recently played items per request
MAX_RECENTLY_PLAYED_LIMIT = 50
# Base delay in seconds for retries on rate limit
RATE_LIMIT_RETRY_BASE_DELAY = 2
# Upper bound for a server-provided Retry-After
MAX_RETRY_AFTER_SECONDS = 60
# ------------------------------------

def get_image_url(images_list: List[Dict], preferred_index: int = 0) -> Optional[str]:
    """Safely extracts an image URL from Spotify's image list."""
    if not images_list or not isinstance(images_list, list):
        return None
    if len(images_list) > preferred_index and isinstance(images_list[preferred_index], dict):
        return images_list[preferred_index].get('url')
    for img in images_list:
        if isinstance(img, dict) and img.get('url'):
            return img.get('url')
    return None

def _get_artist_names(artists_list: Optional[List[Dict]]) -> List[str]:
    """Safely extracts artist names in credit order."""
    if not isinstance(artists_list, list):
        return []
    return [a['name'] for a in artists_list if isinstance(a, dict) and a.get('name')]

def format_artists(artists_list: Optional[List[Dict]]) -> str:
    """Artist credit as displayed, e.g. "Artist A, Artist B"."""
    return ", ".join(_get_artist_names(artists_list))

def parse_spotify_datetime(datetime_str: str) -> Optional[datetime]:
    """Parse Spotify datetime string to timezone-aware datetime object"""
    if not datetime_str or not isinstance(datetime_str, str):
        return None
    try:
        # Handle both 'Z' and '+00:00' formats, and potentially naive timestamps
        if datetime_str.endswith('Z'):
            dt = datetime.fromisoformat(datetime_str.replace('Z', '+00:00'))
        else:
            dt = datetime.fromisoformat(datetime_str)
        if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not parse datetime value: {datetime_str}. Error: {e}")
        return None

def to_epoch_ms(datetime_str: str) -> int:
    """Convert a Spotify played_at string to epoch milliseconds"""
    dt = parse_spotify_datetime(datetime_str)
    if dt is None:
        raise ValueError(f"Invalid played_at timestamp: {datetime_str!r}")
    return int(round(dt.timestamp() * 1000))

def to_play_events(items: List[Dict[str, Any]]) -> List[PlayEvent]:
    """Convert recently played items to play events"""
    return [
        PlayEvent(
            track_id=item['track']['id'],
            track_number=item['track']['track_number'],
            played_at=to_epoch_ms(item['played_at']),
            album_id=item['track']['album']['id']
        )
        for item in items
    ]


class SpotifyAPI:
    """Handles all Spotify API interactions with consistent formatting"""

    def __init__(self, token: str, base_url: str = "https://api.spotify.com/v1",
                 timeout: float = 15, retries: int = 3):
        """
        Initialize with Spotify access token
        """
        if not token:
            raise ValueError("Spotify token cannot be empty")
        self.token = token
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json'
        })

    def get_recently_played(self, limit: int = MAX_RECENTLY_PLAYED_LIMIT) -> List[Dict[str, Any]]:
        """
        Get the most recently played tracks

        Args:
            limit: Number of plays to fetch (max 50 per Spotify API docs)
        """
        actual_limit = max(1, min(limit, MAX_RECENTLY_PLAYED_LIMIT))
        logger.info(f"Fetching recently played tracks (limit: {actual_limit})...")
        response_data = self._make_request(f'me/player/recently-played?limit={actual_limit}')
        items = response_data.get('items')
        if not isinstance(items, list):
            raise ValueError(f"Unexpected response format for recently played: {response_data}")

        valid_items = []
        for entry in items:
            track = entry.get('track') if isinstance(entry, dict) else None
            if not (isinstance(track, dict) and track.get('id') and entry.get('played_at')
                    and isinstance(track.get('album'), dict) and track['album'].get('id')):
                logger.warning(f"Skipping invalid recently played entry: {entry}")
                continue
            valid_items.append(entry)
        logger.info(f"Fetched {len(valid_items)} recently played tracks.")
        return valid_items

    def get_album(self, album_id: str) -> AlbumDetails:
        """
        Get full album details, following track pagination for long albums

        Raises:
            requests.exceptions.RequestException: If the album cannot be fetched
        """
        logger.info(f"Fetching album {album_id}...")
        album = self._make_request(f'albums/{album_id}')
        if not album.get('id'):
            raise ValueError(f"Unexpected response format for album {album_id}: {album}")

        track_page = album.get('tracks') or {}
        track_items = list(track_page.get('items') or [])
        next_url = track_page.get('next')
        while next_url:
            track_page = self._make_request(next_url)
            track_items.extend(track_page.get('items') or [])
            next_url = track_page.get('next')

        tracks = [
            AlbumTrack(
                track_id=t['id'],
                name=t.get('name', ''),
                artist_name=format_artists(t.get('artists')),
                track_number=t.get('track_number', 0)
            )
            for t in track_items
            if isinstance(t, dict) and t.get('id')
        ]

        return AlbumDetails(
            album_id=album['id'],
            name=album.get('name', 'Unknown Album'),
            artist_names=_get_artist_names(album.get('artists')),
            total_tracks=album.get('total_tracks', len(tracks)),
            release_date=album.get('release_date'),
            image_url=get_image_url(album.get('images', [])),
            genres=album.get('genres') or [],
            tracks=tracks,
            raw_data=album
        )

    def _make_request(self, endpoint: str) -> Dict:
        """Make authenticated request to Spotify API with retries"""
        url = endpoint if endpoint.startswith('http') else f'{self.base_url}/{endpoint}'
        attempt = 0
        last_exception = None

        while attempt < self.retries:
            attempt += 1
            try:
                logger.debug(f"Attempt {attempt}/{self.retries}: Making request to {url}")
                response = self.session.get(url, timeout=self.timeout)
                response.raise_for_status()  # Raises HTTPError for bad responses (4xx or 5xx)
                logger.debug(f"Request successful (Status: {response.status_code}) to {url}")
                if response.status_code == 204:
                    return {}
                json_response = response.json()
                return json_response if isinstance(json_response, dict) else {}
            except requests.exceptions.HTTPError as e:
                last_exception = e
                response = e.response
                logger.warning(f"HTTP Error on attempt {attempt} for {url}: {e}")
                if response.status_code == 401:
                    logger.error(f"Spotify token is invalid or expired (401) for {url}. Cannot proceed.")
                    raise
                elif response.status_code == 403:
                    logger.error(f"Forbidden access (403) to Spotify endpoint {url}. Check scopes/permissions.")
                    raise
                elif response.status_code == 429:
                    default_delay = RATE_LIMIT_RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    try:
                        retry_after = int(response.headers.get('Retry-After', default_delay))
                    except ValueError:
                        retry_after = default_delay
                    retry_after = max(1, min(retry_after, MAX_RETRY_AFTER_SECONDS))
                    if attempt < self.retries:
                        logger.warning(f"Rate limit hit (429) for {url}. Retrying after {retry_after} seconds...")
                        time.sleep(retry_after)
                    continue
                elif response.status_code >= 500:
                    logger.warning(f"Spotify server error ({response.status_code}) for {url}. Retrying...")
                else:
                    logger.error(f"Client error ({response.status_code}) for {url}. Aborting request.")
                    raise
            except requests.exceptions.RequestException as e:
                last_exception = e
                logger.warning(f"Request Error on attempt {attempt} for {url}: {e}. Retrying...")
            if attempt < self.retries:
                sleep_time = RATE_LIMIT_RETRY_BASE_DELAY * (1.5 ** (attempt - 1)) + (0.5 * attempt)
                logger.info(f"Waiting {sleep_time:.2f}s before next retry for {url}...")
                time.sleep(sleep_time)

        logger.error(f"Request failed after {self.retries} attempts for {url}.")
        raise last_exception or requests.exceptions.RetryError(f"Request failed after {self.retries} attempts for {url}")
