"""Entry point for a listening history sync"""
import json
import logging
import os
import sys

from album_listens.config import settings
from album_listens.db import Database
from album_listens.services.archive import RawBatchArchive
from album_listens.services.spotify import SpotifyAPI
from album_listens.services.storage import StorageService
from album_listens.summary import format_sync_summary
from album_listens.sync import SyncOrchestrator
from album_listens.utils.json_encoder import json_dumps

logging.basicConfig(level=settings.LOG_LEVEL, format='%(message)s')
logger = logging.getLogger(__name__)

def run() -> None:
    """Run one sync (or replay pending batches) and write the results."""
    if not settings.SPOTIFY_TOKEN:
        raise ValueError("SPOTIFY_TOKEN is required")
    if not settings.USER_ID:
        raise ValueError("USER_ID is required")

    # Log config (excluding sensitive data)
    logger.info("Using configuration:")
    safe_config = settings.model_dump(exclude={'SPOTIFY_TOKEN', 'DATABASE_URL'})
    logger.info(json.dumps(safe_config, indent=2))

    database = Database(settings.DATABASE_URL)
    database.init()
    try:
        with database.session() as session:
            archive_settings = settings.archive_settings
            orchestrator = SyncOrchestrator(
                storage=StorageService(session),
                spotify=SpotifyAPI(
                    token=settings.SPOTIFY_TOKEN,
                    base_url=settings.SPOTIFY_API_URL,
                    timeout=settings.REQUEST_TIMEOUT_SECONDS,
                    retries=settings.REQUEST_RETRIES
                ),
                user_id=settings.USER_ID,
                source=settings.SYNC_SOURCE,
                archive=RawBatchArchive(archive_settings) if archive_settings else None,
                recently_played_limit=settings.RECENTLY_PLAYED_LIMIT
            )

            if settings.REPLAY_PENDING:
                results = orchestrator.replay_pending()
                logger.info(f"Replayed {len(results)} pending sync logs")
            else:
                results = [orchestrator.sync()]
    finally:
        database.dispose()

    for result in results:
        logger.info(format_sync_summary(result))

    os.makedirs(settings.OUTPUT_DIR, exist_ok=True)
    output_path = os.path.join(settings.OUTPUT_DIR, "results.json")
    with open(output_path, 'w') as f:
        f.write(json_dumps(results, indent=2))
    logger.info(f"Results written to {output_path}")

    if not all(result.success for result in results):
        sys.exit(1)

if __name__ == "__main__":
    try:
        run()
    except Exception as e:
        logger.exception(f"Error during sync: {e}")
        sys.exit(1)
