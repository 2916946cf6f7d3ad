"""S3 mirror of raw listening history batches"""
import hashlib
import logging
from typing import Any, Dict, List, Optional

import boto3

from album_listens.config import ArchiveSettings
from album_listens.utils.json_encoder import json_dumps

logger = logging.getLogger(__name__)

class RawBatchArchive:
    """Uploads each raw batch next to its sync log so it can be replayed elsewhere"""

    def __init__(self, settings: ArchiveSettings, s3_client: Optional[Any] = None):
        self.bucket = settings.bucket
        self.s3_client = s3_client or boto3.client('s3', region_name=settings.region)

    @staticmethod
    def object_key(user_id: str, sync_log_id: int) -> str:
        user_hash = hashlib.sha256(user_id.encode()).hexdigest()
        return f"recently_played/{user_hash}/{sync_log_id}.json"

    def upload(self, user_id: str, sync_log_id: int, items: List[Dict[str, Any]]) -> str:
        """
        Upload a raw batch and return its SHA256 checksum.

        Raises:
            botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError
        """
        body = json_dumps(items).encode('utf-8')
        checksum = hashlib.sha256(body).hexdigest()
        key = self.object_key(user_id, sync_log_id)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType='application/json',
                Metadata={'sha256': checksum}
            )
        except Exception as e:
            logger.error(f"Failed to upload raw batch to S3 (s3://{self.bucket}/{key}): {e}")
            raise
        logger.info(f"Uploaded raw batch to s3://{self.bucket}/{key}")
        return checksum
