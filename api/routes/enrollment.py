"""
Enrollment API Routes

This module drives the process-wide EnrollmentSession over REST. The
client runs the detector itself and posts one detection per frame to
POST /enrollment/detection; each response says whether the embedding was
captured and, if not, why.

Session notifications are queued and returned in order by
GET /enrollment/events.
"""

import base64
import binascii
import logging
from typing import List, Optional

import cv2
import numpy as np
from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_enrollment_session, get_match_index, get_store
from api.schemas import (
    AdmissionResponse,
    DetectionRequest,
    EnrollmentCompleteResponse,
    EnrollmentEventResponse,
    EnrollmentStatusResponse,
    Progress,
    StartEnrollmentRequest,
    UndoResponse,
)
from faceid.enrollment import (
    CaptureEvent,
    Detection,
    EnrollmentEvent,
    EnrollmentSession,
    EnrollmentState,
    EventRecorder,
)
from faceid.errors import EnrollmentStateError, InsufficientSamplesError, InvalidInputError
from faceid.matching import MatchIndex
from faceid.template_store import IdentityTemplate, TemplateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/enrollment", tags=["enrollment"])


def decode_frame(frame_b64: str) -> Optional[np.ndarray]:
    """
    Decode a base64-encoded JPEG image to numpy array.

    Accepts raw base64 or a data URL.

    Returns:
        BGR numpy array or None if decoding fails.
    """
    if "," in frame_b64 and frame_b64.startswith("data:"):
        frame_b64 = frame_b64.split(",", 1)[1]

    try:
        img_bytes = base64.b64decode(frame_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode frame: {e}")
        return None

    np_arr = np.frombuffer(img_bytes, np.uint8)
    if np_arr.size == 0:
        return None
    return cv2.imdecode(np_arr, cv2.IMREAD_COLOR)


def _progress(session: EnrollmentSession) -> Progress:
    p = session.get_progress()
    return Progress(current=p.current, total=p.total, percentage=p.percentage)


def _status(session: EnrollmentSession) -> EnrollmentStatusResponse:
    return EnrollmentStatusResponse(
        state=session.state.value,
        user_id=session.user_id,
        user_name=session.user_name,
        progress=_progress(session),
        thumbnails=session.thumbnails,
    )


def _complete(template: IdentityTemplate) -> EnrollmentCompleteResponse:
    return EnrollmentCompleteResponse(
        user_id=template.user_id,
        user_name=template.user_name,
        capture_count=template.capture_count,
        embedding_dim=template.embedding_dim,
        registered_at=template.registered_at,
    )


def _event_to_response(event: EnrollmentEvent) -> EnrollmentEventResponse:
    payload = event.payload
    data = {}

    if event.kind == "state_change":
        old_state, new_state = payload
        data = {"old_state": old_state.value, "new_state": new_state.value}
    elif event.kind == "progress":
        data = {"current": payload.current, "total": payload.total, "percentage": payload.percentage}
    elif event.kind == "capture" and isinstance(payload, CaptureEvent):
        data = {"index": payload.index, "thumbnail": payload.thumbnail}
    elif event.kind == "complete":
        data = {
            "user_id": payload.user_id,
            "user_name": payload.user_name,
            "capture_count": payload.capture_count,
        }
    elif event.kind == "error":
        data = {"message": str(payload)}

    return EnrollmentEventResponse(kind=event.kind, data=data)


@router.get("", response_model=EnrollmentStatusResponse)
async def get_status(session: EnrollmentSession = Depends(get_enrollment_session)):
    """Current state, identity and progress of the enrollment session."""
    return _status(session)


@router.post("/start", response_model=EnrollmentStatusResponse)
async def start_enrollment(
    request: StartEnrollmentRequest,
    session: EnrollmentSession = Depends(get_enrollment_session),
):
    """
    Begin collecting embeddings for a user.

    Raises:
        409: If an enrollment is already in progress.
    """
    if not session.start(request.user_id or "", request.user_name):
        raise HTTPException(
            status_code=409,
            detail=f"Enrollment already in progress (state={session.state.value})",
        )

    logger.info(f"Enrollment started for {session.user_name} (id={session.user_id})")
    return _status(session)


@router.post("/detection", response_model=AdmissionResponse)
async def submit_detection(
    request: DetectionRequest,
    session: EnrollmentSession = Depends(get_enrollment_session),
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
):
    """
    Submit one detection to the admission pipeline.

    When the capture fills the sample set the session finalizes in the
    same call and the match index is reloaded.

    Raises:
        400: If the embedding length differs from earlier captures.
    """
    frame = decode_frame(request.frame) if request.frame else None
    detection = Detection(
        confidence=request.confidence,
        bbox=tuple(request.bbox) if request.bbox else None,
        embedding=request.embedding,
    )

    try:
        result = session.process_detection(detection, frame)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.accepted and session.state == EnrollmentState.SAVED:
        match_index.load_from_storage(store)

    return AdmissionResponse(
        accepted=result.accepted,
        reason=result.reason.value if result.reason else None,
        count=result.count,
        progress=Progress(**vars(result.progress)) if result.progress else None,
        distance=result.distance,
        state=session.state.value,
    )


@router.post("/undo", response_model=UndoResponse)
async def undo_last(session: EnrollmentSession = Depends(get_enrollment_session)):
    """Remove the most recent capture."""
    undone = session.undo_last()
    return UndoResponse(undone=undone, progress=_progress(session))


@router.post("/finish", response_model=EnrollmentCompleteResponse)
async def finish_enrollment(
    session: EnrollmentSession = Depends(get_enrollment_session),
    store: TemplateStore = Depends(get_store),
    match_index: MatchIndex = Depends(get_match_index),
):
    """
    Finalize with the captures collected so far.

    Raises:
        409: If fewer than the minimum captures exist or no session is active.
        500: If the template could not be saved (session is now in error).
    """
    try:
        template = session.finish_early()
    except (InsufficientSamplesError, EnrollmentStateError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    if template is None:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to save template: {session.last_error}",
        )

    match_index.load_from_storage(store)
    return _complete(template)


@router.post("/cancel", response_model=EnrollmentStatusResponse)
async def cancel_enrollment(session: EnrollmentSession = Depends(get_enrollment_session)):
    """Discard the session and its checkpoint."""
    session.cancel()
    return _status(session)


@router.post("/restart", response_model=EnrollmentStatusResponse)
async def restart_enrollment(session: EnrollmentSession = Depends(get_enrollment_session)):
    """Discard captures and start again for the same user."""
    session.restart()
    return _status(session)


@router.post("/pause", response_model=EnrollmentStatusResponse)
async def pause_enrollment(session: EnrollmentSession = Depends(get_enrollment_session)):
    session.pause()
    return _status(session)


@router.post("/resume", response_model=EnrollmentStatusResponse)
async def resume_enrollment(session: EnrollmentSession = Depends(get_enrollment_session)):
    session.resume()
    return _status(session)


@router.get("/events", response_model=List[EnrollmentEventResponse])
async def drain_events(session: EnrollmentSession = Depends(get_enrollment_session)):
    """Return queued session notifications in order and clear the queue."""
    if not isinstance(session.observer, EventRecorder):
        return []
    return [_event_to_response(event) for event in session.observer.drain()]
