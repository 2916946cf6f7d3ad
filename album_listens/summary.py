"""Human-readable summary of a sync run"""
from typing import List

from album_listens.models.sync import SyncResult

def format_sync_summary(result: SyncResult) -> str:
    """Render counts and album names of a sync, including partial progress of a failed one"""
    lines: List[str] = []
    if not result.success:
        lines.extend([f"Sync failed: {result.error or 'Unknown error'}", ""])

    lines.extend([
        f"Completed in {result.duration_ms / 1000:.1f}s",
        "",
        "Tracks:",
        f"  - {result.tracks_from_api} from API ({result.unique_tracks_from_api} unique)",
        f"  - {result.new_tracks_added} new, {result.existing_tracks_updated} updated",
        "",
        "Albums:",
        f"  - {result.unique_albums_from_api} unique in batch",
        f"  - {result.albums_already_in_db} already known",
        f"  - {result.new_albums_discovered} newly discovered",
    ])
    if result.albums_fetch_failed > 0:
        lines.append(f"  - {result.albums_fetch_failed} failed to fetch")
    if result.tracks_backfilled_from_albums > 0:
        lines.append(f"  - {result.tracks_backfilled_from_albums} tracks backfilled")

    lines.extend([
        "",
        "Listens:",
        f"  - {result.albums_checked_for_listens} albums checked",
        f"  - {result.album_listens_recorded} listens recorded",
    ])

    if result.new_album_names:
        lines.extend(["", "New albums:", *(f"  - {name}" for name in result.new_album_names)])
    if result.recorded_listen_album_names:
        lines.extend(["", "Listened to:", *(f"  - {name}" for name in result.recorded_listen_album_names)])

    return "\n".join(lines)
