"""JSON encoding for archived batches and result files"""
import json
from datetime import datetime, timezone

from pydantic import BaseModel

class ListeningHistoryEncoder(json.JSONEncoder):
    """Encodes datetimes the way Spotify writes played_at, and pydantic models as dicts"""
    def default(self, obj):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        if isinstance(obj, BaseModel):
            return obj.model_dump()
        return super().default(obj)

def json_dumps(obj, **kwargs) -> str:
    return json.dumps(obj, cls=ListeningHistoryEncoder, **kwargs)
