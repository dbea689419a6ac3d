"""Configuration data models for the match stream recorder."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StreamSourceConfig(BaseModel):
    """Configuration model for a single named stream source."""

    url: str = Field(..., min_length=1, description="Stream URL for the source")
    name: Optional[str] = Field(None, description="Human readable source name")

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL scheme."""
        if not v.startswith(('http://', 'https://', 'rtmp://', 'rtmps://', 'rtsp://')):
            raise ValueError("Stream URL must use http, https, rtmp, rtmps or rtsp")
        return v


class StorageConfig(BaseModel):
    """S3-compatible object storage settings."""

    model_config = ConfigDict(populate_by_name=True)

    endpoint_url: Optional[str] = Field(None, description="S3-compatible endpoint URL")
    bucket: str = Field(default="", description="Target bucket")
    region: str = Field(default="us-east-1", description="Bucket region")
    access_key_id: Optional[str] = Field(None, description="Access key")
    secret_access_key: Optional[str] = Field(None, description="Secret key")
    key_prefix: str = Field(default="recordings", description="Prefix for recording object keys")

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)


class RecorderConfig(BaseModel):
    """Application configuration model."""

    recordings_dir: str = Field(default="/tmp/recordings", description="Local capture output directory")
    config_dir: str = Field(default="./config", description="Directory holding config_streams.json")
    database_path: str = Field(default="./data/recorder.db", description="SQLite database file")
    log_dir: str = Field(default="./logs", description="Log file directory")
    port: int = Field(default=8000, ge=1, le=65535, description="API server port")

    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg binary")
    ffprobe_path: str = Field(default="ffprobe", description="ffprobe binary")
    max_duration_seconds: float = Field(default=7200, description="Maximum capture length (2 hours)")
    stop_grace_seconds: float = Field(default=10, description="Wait for graceful exit before kill")
    watchdog_interval_seconds: float = Field(default=5, description="Duration watchdog poll interval")
    min_free_disk_mb: int = Field(default=500, ge=0, description="Refuse to start below this free space (0 disables)")
    default_quality: str = Field(default="best")
    default_format: str = Field(default="mp4")

    tick_interval_seconds: float = Field(default=60, description="Dispatcher poll interval")
    lookahead_seconds: float = Field(default=300, description="Dispatch window ahead of now")
    auto_schedule_interval_seconds: float = Field(default=3600, description="Auto-schedule scan interval")
    auto_schedule_lead_seconds: float = Field(default=300, ge=0, description="Start this long before kickoff")
    auto_schedule_tail_seconds: float = Field(default=7200, description="Stop this long after kickoff")
    presigned_url_ttl_seconds: int = Field(default=3600, gt=0)

    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator(
        'max_duration_seconds',
        'stop_grace_seconds',
        'watchdog_interval_seconds',
        'tick_interval_seconds',
        'lookahead_seconds',
        'auto_schedule_interval_seconds',
        'auto_schedule_tail_seconds',
    )
    @classmethod
    def validate_positive(cls, v):
        """Durations and intervals must be positive."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator('recordings_dir', 'config_dir', 'database_path')
    @classmethod
    def validate_paths(cls, v):
        if not v:
            raise ValueError("Path cannot be empty")
        return v
