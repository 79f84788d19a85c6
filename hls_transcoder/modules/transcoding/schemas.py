"""Pydantic schemas for the transcode intake endpoint."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

VIDEO_ID_REQUIRED = "videoId is required"


class TranscodeRequest(BaseModel):
    """Request body for POST /transcode."""

    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(..., alias="videoId", description="ID of the video row to transcode")

    @field_validator("video_id")
    @classmethod
    def validate_video_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError(VIDEO_ID_REQUIRED)
        return v


class TranscodeAcceptedResponse(BaseModel):
    """Response for an accepted transcode request."""

    message: str


class ErrorResponse(BaseModel):
    """Error response body."""

    error: str
