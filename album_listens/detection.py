"""Album listen detection from track play events

Detects "straight through" album listens. Back-to-back listens are separated by
track number restarts, and shuffled or scattered plays are rejected by requiring
mostly ascending track order.
"""
import math
from typing import Dict, Iterable, List, Mapping

from album_listens.models.listening import ListenSession, PlayEvent

# --- Detection thresholds ---
MAJORITY_THRESHOLD = 0.7  # Share of the album's tracks a session must cover
ASCENDING_THRESHOLD = 0.7  # Share of consecutive pairs that must not go backwards
MAX_SESSION_DURATION_MS = 4 * 60 * 60 * 1000
RESTART_FROM_TRACK = 3  # A jump back to tracks 1-3 ...
RESTART_AFTER_TRACK_PERCENT = 0.7  # ... from the last 30% of the album is a restart
MIN_ALBUM_TRACKS = 4  # Singles and EPs never count as album listens
# ----------------------------

def group_plays_by_album(plays: Iterable[PlayEvent]) -> Dict[str, List[PlayEvent]]:
    """Group plays by album id, keeping first-seen album order and play order."""
    by_album: Dict[str, List[PlayEvent]] = {}
    for play in plays:
        by_album.setdefault(play.album_id, []).append(play)
    return by_album

def is_restart(prev_track_number: int, curr_track_number: int, total_tracks: int) -> bool:
    """True when playback jumps from a late track back to an early one"""
    restart_after_track = math.ceil(total_tracks * RESTART_AFTER_TRACK_PERCENT)
    return (
        prev_track_number >= restart_after_track
        and curr_track_number <= RESTART_FROM_TRACK
    )

def split_into_sessions(plays: List[PlayEvent], total_tracks: int) -> List[List[PlayEvent]]:
    """
    Split plays into candidate sessions at every restart.

    Plays are sorted by played_at first. The sort is stable, so plays sharing a
    timestamp keep their input order.
    """
    if not plays:
        return []

    ordered = sorted(plays, key=lambda play: play.played_at)
    sessions = []
    current = [ordered[0]]

    for prev, curr in zip(ordered, ordered[1:]):
        if is_restart(prev.track_number, curr.track_number, total_tracks):
            sessions.append(current)
            current = [curr]
        else:
            current.append(curr)

    sessions.append(current)
    return sessions

def is_mostly_ascending(plays: List[PlayEvent]) -> bool:
    """Check that enough consecutive pairs keep or advance the track number"""
    if len(plays) <= 1:
        return True

    pairs = list(zip(plays, plays[1:]))
    ascending = sum(1 for prev, curr in pairs if curr.track_number >= prev.track_number)
    return ascending / len(pairs) >= ASCENDING_THRESHOLD

def is_valid_session(session: List[PlayEvent], total_tracks: int) -> bool:
    """
    Validate a candidate session.

    A session counts as a listen when:
    - its distinct tracks cover at least 70% of the album
    - it spans no more than 4 hours
    - at least 70% of its consecutive pairs are in ascending track order
    """
    if not session:
        return False

    unique_track_ids = {play.track_id for play in session}
    if len(unique_track_ids) < total_tracks * MAJORITY_THRESHOLD:
        return False

    played_at = [play.played_at for play in session]
    if max(played_at) - min(played_at) > MAX_SESSION_DURATION_MS:
        return False

    return is_mostly_ascending(session)

def detect_album_listen_sessions(plays: List[PlayEvent], total_tracks: int) -> List[ListenSession]:
    """
    Detect valid listen sessions among the plays of a single album.

    Args:
        plays: Play events, all for the same album, in any order
        total_tracks: Number of tracks on the album

    Returns:
        Valid sessions in chronological order; invalid candidates are dropped
    """
    if not plays or total_tracks < MIN_ALBUM_TRACKS:
        return []

    listens = []
    for session in split_into_sessions(plays, total_tracks):
        if not is_valid_session(session, total_tracks):
            continue
        played_at = [play.played_at for play in session]
        listens.append(ListenSession(
            album_id=session[0].album_id,
            track_ids=list(dict.fromkeys(play.track_id for play in session)),
            earliest_played_at=min(played_at),
            latest_played_at=max(played_at)
        ))
    return listens

def detect_all_album_listens(plays: List[PlayEvent], album_total_tracks: Mapping[str, int]) -> List[ListenSession]:
    """Detect listen sessions for every album in a mixed batch of plays.

    Albums missing from album_total_tracks (metadata unavailable) are skipped.
    Sessions are grouped per album in first-seen album order.
    """
    listens: List[ListenSession] = []
    for album_id, album_plays in group_plays_by_album(plays).items():
        total_tracks = album_total_tracks.get(album_id)
        if not total_tracks:
            continue
        listens.extend(detect_album_listen_sessions(album_plays, total_tracks))
    return listens
