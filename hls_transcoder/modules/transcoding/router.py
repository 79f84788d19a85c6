"""Transcode intake API.

POST /transcode acknowledges immediately and hands the run to the
background backend; pipeline outcomes are visible only in the videos table.
"""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from hls_transcoder.core.logging import log_warning
from hls_transcoder.modules.transcoding.schemas import (
    VIDEO_ID_REQUIRED,
    ErrorResponse,
    TranscodeAcceptedResponse,
    TranscodeRequest,
)
from hls_transcoder.modules.transcoding.tasks import dispatch_transcode

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transcoding"])


def _video_id_required() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": VIDEO_ID_REQUIRED},
    )


@router.post(
    "/transcode",
    response_model=TranscodeAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={400: {"model": ErrorResponse}},
    summary="Start transcoding a video",
    description="Queue an HLS transcode for an uploaded video and return immediately.",
)
async def start_transcode(request: Request):
    """Accept a transcode request.

    The body is parsed by hand so that an empty, non-JSON or malformed
    body gets the same 400 as a missing videoId.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    try:
        payload = TranscodeRequest.model_validate(body or {})
    except ValidationError:
        log_warning(logger, "Rejected transcode request without videoId")
        return _video_id_required()

    dispatch_transcode(payload.video_id)

    return TranscodeAcceptedResponse(
        message=f"Accepted. Processing video: {payload.video_id}"
    )
