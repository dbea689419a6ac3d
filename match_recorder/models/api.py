"""API request and response models for the match stream recorder."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class RecordingRequest(BaseModel):
    """Request model for creating, or creating and starting, a recording."""

    title: str = Field(..., min_length=1, max_length=255, description="Recording title")
    description: Optional[str] = Field(None, description="Free-form description")
    stream_url: Optional[str] = Field(None, description="Raw stream URL to capture")
    source: Optional[str] = Field(None, description="Stream source key from config_streams.json")
    quality: Optional[str] = Field(None, description="Capture quality preset, passed through")
    format: Optional[str] = Field(None, description="Container format, passed through")

    @model_validator(mode='after')
    def check_stream(self):
        """Exactly one of stream_url or source must be given."""
        if bool(self.stream_url) == bool(self.source):
            raise ValueError("Provide exactly one of 'stream_url' or 'source'")
        return self


class StartRecordingResponse(BaseModel):
    """Response model for recording start requests."""

    success: bool = Field(..., description="Whether the capture was started")
    message: str = Field(..., description="Status or error message")
    recording_id: Optional[str] = Field(None, description="Unique identifier for the recording")


class StopRecordingRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Reason recorded on the stopped recording")


class ActiveRecording(BaseModel):
    """One entry of the active capture snapshot."""

    recording_id: str
    title: str
    started_at: datetime
    elapsed_seconds: float


class ActiveRecordingsResponse(BaseModel):
    count: int
    recordings: List[ActiveRecording]


class MatchRequest(BaseModel):
    """Request model for adding or updating a match."""

    home_team: str = Field(..., min_length=1, max_length=255)
    away_team: str = Field(..., min_length=1, max_length=255)
    match_date: datetime = Field(..., description="Kickoff time, UTC when no offset is given")
    competition: Optional[str] = None
    external_id: Optional[str] = Field(None, description="Identifier in the upstream fixture feed")
    stream_url: Optional[str] = Field(None, description="Raw stream URL for the match")
    source: Optional[str] = Field(None, description="Stream source key from config_streams.json")
    auto_record: bool = Field(False, description="Schedule a recording automatically")

    @model_validator(mode='after')
    def check_stream(self):
        if self.stream_url and self.source:
            raise ValueError("Provide at most one of 'stream_url' or 'source'")
        return self


class AutoRecordRequest(BaseModel):
    auto_record: bool


class CreateScheduleRequest(BaseModel):
    """Request model for creating a schedule."""

    match_id: Optional[str] = Field(None, description="Match to record")
    recording_id: Optional[str] = Field(None, description="Existing recording to start")
    scheduled_start: datetime = Field(..., description="When to start the capture")
    scheduled_end: Optional[datetime] = Field(None, description="When to stop the capture")


class PresignedUrlResponse(BaseModel):
    recording_id: str
    url: str
    expires_in: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Health status")
    timestamp: datetime = Field(..., description="Current timestamp")
    version: str = Field(..., description="Application version")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[str] = Field(None, description="Additional error details")
