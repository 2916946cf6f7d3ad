"""Application configuration and environment settings"""
from typing import Literal, Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class ArchiveSettings(BaseModel):
    """S3 raw batch archive settings"""
    bucket: str = Field(..., description="S3 bucket receiving raw batches")
    region: str = Field(..., description="AWS region")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Required by the entry point, validated there
    SPOTIFY_TOKEN: Optional[str] = Field(None, description="Spotify API access token")
    USER_ID: Optional[str] = Field(None, description="User whose listening history is synced")

    SPOTIFY_API_URL: str = Field("https://api.spotify.com/v1", description="Spotify Web API base URL")
    DATABASE_URL: str = Field("sqlite:///album_listens.db", description="SQLAlchemy database URL")

    # Sync behaviour
    SYNC_SOURCE: Literal["manual", "cron"] = Field("manual", description="What triggered the sync")
    RECENTLY_PLAYED_LIMIT: int = Field(50, ge=1, le=50, description="Plays fetched per sync (API max 50)")
    REPLAY_PENDING: bool = Field(False, description="Re-process pending sync logs instead of fetching")
    REQUEST_TIMEOUT_SECONDS: float = Field(15, description="Per-request HTTP timeout")
    REQUEST_RETRIES: int = Field(3, ge=1, description="Attempts per Spotify request")

    # Optional S3 mirror of raw batches
    ARCHIVE_S3_BUCKET: Optional[str] = Field(None, description="Bucket for raw batch archives")
    AWS_REGION: str = Field(default="us-east-1", description="AWS region")

    OUTPUT_DIR: str = Field("/output", description="Directory for output files")
    LOG_LEVEL: str = Field("INFO", description="Root log level")

    @property
    def archive_settings(self) -> Optional[ArchiveSettings]:
        """Get archive settings as a separate model, None when archiving is off"""
        if not self.ARCHIVE_S3_BUCKET:
            return None
        return ArchiveSettings(
            bucket=self.ARCHIVE_S3_BUCKET,
            region=self.AWS_REGION
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

settings = Settings()
