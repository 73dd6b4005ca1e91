"""
Enrollment Session Module

This module turns a stream of detections into an enrolled identity. The
caller runs its own per-frame loop: for each frame it hands the detector's
output to EnrollmentSession.process_detection(), which decides whether the
embedding counts toward the identity's sample set.

State flow:
    IDLE -> COLLECTING -> COMPUTING -> SAVED
      ^                       |
      |                       +-> ERROR
      +-- cancel() / restart() from any state

Each candidate passes through an ordered admission pipeline; the first
failing gate rejects it:
    1. rate         too_fast        elapsed since last capture < interval
    2. quality      no_detection    nothing detected in the frame
                    low_confidence  detector score < threshold
    3. descriptor   no_descriptor   detection carries no embedding
    4. novelty      too_similar     nearest accepted embedding too close
    5. consistency  inconsistent    farthest accepted embedding too far

Gates 4 and 5 only run once at least one embedding has been accepted.

Usage:
    from faceid.enrollment import EnrollmentSession, Detection, EventRecorder
    from faceid.template_store import get_template_store

    events = EventRecorder()
    session = EnrollmentSession(config, storage=get_template_store(), observer=events)
    session.start("usr_abc123", "Alice")

    # In your capture loop:
    result = session.process_detection(Detection(confidence=0.93, bbox=box, embedding=vec), frame)
    if not result.accepted:
        show_hint(result.reason)

    for event in events.drain():
        handle(event)
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from faceid.errors import (
    EnrollmentStateError,
    InsufficientSamplesError,
    PersistenceError,
)
from faceid.template_store import (
    IdentityTemplate,
    TemplateStorage,
    generate_user_id,
    now_ms,
)
from faceid.thumbnails import decode_thumbnail, make_thumbnail
from faceid.vector_ops import distances_to, mean_embedding, to_embedding

logger = logging.getLogger(__name__)


class EnrollmentState(str, Enum):
    """Lifecycle states of an enrollment session."""

    IDLE = "idle"
    COLLECTING = "collecting"
    COMPUTING = "computing"
    SAVED = "saved"
    ERROR = "error"


class RejectReason(str, Enum):
    """Why a detection was not admitted into the sample set."""

    NOT_COLLECTING = "not_collecting"
    CAPACITY_REACHED = "capacity_reached"
    TOO_FAST = "too_fast"
    NO_DETECTION = "no_detection"
    LOW_CONFIDENCE = "low_confidence"
    NO_DESCRIPTOR = "no_descriptor"
    TOO_SIMILAR = "too_similar"
    INCONSISTENT = "inconsistent"


DEFAULT_CONFIG: Dict[str, Any] = {
    "max_captures": 20,
    "capture_interval_ms": 500,
    "similarity_threshold": 0.15,
    "quality_score_threshold": 0.5,
    "consistency_threshold": 0.4,
    "min_captures_to_finish": 3,
    "auto_save_progress": True,
    "thumbnail_size": 64,
    "thumbnail_quality": 70,
}


@dataclass
class Detection:
    """
    One detector output for a single frame.

    Attributes:
        confidence: Detection confidence score (0.0 to 1.0).
        bbox: Face bounding box (x1, y1, x2, y2) in pixels. Only used
              to crop the thumbnail.
        embedding: Identity embedding of length L, or None if the
                   detector produced no descriptor.
    """

    confidence: float
    bbox: Optional[Tuple[float, float, float, float]] = None
    embedding: Optional[Sequence[float]] = None


@dataclass
class EnrollmentProgress:
    """Capture progress: current / total and a rounded percentage."""

    current: int
    total: int
    percentage: int


@dataclass
class AdmissionResult:
    """
    Outcome of process_detection().

    Attributes:
        accepted: True if the embedding was added to the sample set.
        reason: Rejection reason (None when accepted).
        count: Number of accepted embeddings after this call.
        progress: Progress after this call.
        distance: For too_similar / inconsistent, the distance that
                  failed the gate.
        state: Session state after this call. An accepted capture that
               fills the set leaves the session SAVED (or ERROR).
    """

    accepted: bool
    reason: Optional[RejectReason] = None
    count: int = 0
    progress: Optional[EnrollmentProgress] = None
    distance: Optional[float] = None
    state: Optional[EnrollmentState] = None


@dataclass
class CaptureEvent:
    """Payload of the capture notification."""

    index: int
    thumbnail: Optional[str]
    progress: EnrollmentProgress


class EnrollmentObserver:
    """
    Receives session notifications, in the order they happen.

    Subclass and override the hooks you need; every hook is a no-op here.
    """

    def on_state_change(self, old_state: EnrollmentState, new_state: EnrollmentState) -> None:
        pass

    def on_progress(self, progress: EnrollmentProgress) -> None:
        pass

    def on_capture(self, event: CaptureEvent) -> None:
        pass

    def on_complete(self, template: IdentityTemplate) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass

    def on_pause(self) -> None:
        pass

    def on_resume(self) -> None:
        pass


@dataclass
class EnrollmentEvent:
    """One queued notification: kind is the hook name without "on_"."""

    kind: str
    payload: Any = None


class EventRecorder(EnrollmentObserver):
    """Observer that queues every notification for the caller to drain."""

    def __init__(self):
        self._events: List[EnrollmentEvent] = []

    def on_state_change(self, old_state, new_state):
        self._events.append(EnrollmentEvent("state_change", (old_state, new_state)))

    def on_progress(self, progress):
        self._events.append(EnrollmentEvent("progress", progress))

    def on_capture(self, event):
        self._events.append(EnrollmentEvent("capture", event))

    def on_complete(self, template):
        self._events.append(EnrollmentEvent("complete", template))

    def on_error(self, error):
        self._events.append(EnrollmentEvent("error", error))

    def on_pause(self):
        self._events.append(EnrollmentEvent("pause"))

    def on_resume(self):
        self._events.append(EnrollmentEvent("resume"))

    def drain(self) -> List[EnrollmentEvent]:
        """Return all queued events in order and empty the queue."""
        events, self._events = self._events, []
        return events


Thumbnailer = Callable[[Any, Optional[Sequence[float]]], Optional[str]]


class EnrollmentSession:
    """
    State machine that collects embeddings for one identity.

    The session owns its capture data exclusively. It has no timer: it
    only advances when the caller invokes process_detection(), so pausing
    means the caller stops feeding it frames.

    Attributes:
        config: Snapshot of the enrollment configuration.
        storage: Optional TemplateStorage for checkpoints and the final
                 template.
        observer: Receives notifications (defaults to a no-op observer).
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        storage: Optional[TemplateStorage] = None,
        observer: Optional[EnrollmentObserver] = None,
        clock: Callable[[], float] = time.time,
        thumbnailer: Optional[Thumbnailer] = None,
    ):
        """
        Initialize the session, resuming a saved checkpoint if one exists.

        Args:
            config: Enrollment settings; missing keys fall back to DEFAULT_CONFIG.
            storage: Persistence for progress checkpoints and templates.
            observer: Notification sink.
            clock: Returns the current time in seconds.
            thumbnailer: Callable (frame, bbox) -> data URL or None. Defaults
                         to an OpenCV crop at the configured size.
        """
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.storage = storage
        self.observer = observer or EnrollmentObserver()
        self._clock = clock
        self._thumbnailer = thumbnailer or self._default_thumbnailer

        self._state = EnrollmentState.IDLE
        self._user_id = ""
        self._user_name = ""
        self._embeddings: List[np.ndarray] = []
        self._thumbnails: List[Optional[str]] = []
        self._mean: Optional[np.ndarray] = None
        self._template: Optional[IdentityTemplate] = None
        self._last_error: Optional[Exception] = None
        self._last_capture_time: Optional[float] = None

        if self.storage is not None and self.config["auto_save_progress"]:
            self._load_progress()

        logger.info(f"EnrollmentSession initialized (state={self._state.value}, "
                    f"captures={len(self._embeddings)})")

    # ============================================================
    # State machine control
    # ============================================================

    def start(self, user_id: str, user_name: str) -> bool:
        """
        Begin collecting for an identity.

        Valid from IDLE or SAVED. Resets all capture state.

        Args:
            user_id: Identity id; a new one is generated if empty.
            user_name: Display name.

        Returns:
            True if the session moved to COLLECTING, False if a session
            is already in progress.
        """
        if self._state not in (EnrollmentState.IDLE, EnrollmentState.SAVED):
            logger.warning(f"Cannot start: enrollment already in progress (state={self._state.value})")
            return False

        self._user_id = user_id or generate_user_id()
        self._user_name = user_name or self._user_id
        self._reset_captures()

        self._set_state(EnrollmentState.COLLECTING)
        return True

    def pause(self) -> None:
        """Signal a pause; capture simply stops while no frames arrive."""
        logger.info("Enrollment paused")
        self.observer.on_pause()

    def resume(self) -> None:
        """Signal a resume."""
        logger.info("Enrollment resumed")
        self.observer.on_resume()

    def cancel(self) -> None:
        """Discard all capture data and the saved checkpoint, back to IDLE."""
        self._reset_captures()
        self._clear_saved_progress()
        self._set_state(EnrollmentState.IDLE)

    def restart(self) -> bool:
        """cancel() then start() again with the same identity."""
        user_id, user_name = self._user_id, self._user_name
        self.cancel()
        return self.start(user_id, user_name)

    # ============================================================
    # Admission pipeline
    # ============================================================

    def process_detection(self, detection: Optional[Detection], frame: Any = None) -> AdmissionResult:
        """
        Run one detection through the admission gates.

        Args:
            detection: Detector output for the frame, or None if nothing
                       was detected.
            frame: Optional source frame used to build the thumbnail.

        Returns:
            AdmissionResult. Rejections are normal and recoverable: retry
            with the next frame.

        Raises:
            InvalidInputError: If the embedding length differs from the
                               embeddings already accepted.
        """
        if self._state != EnrollmentState.COLLECTING:
            return self._reject(RejectReason.NOT_COLLECTING)

        if len(self._embeddings) >= self.config["max_captures"]:
            return self._reject(RejectReason.CAPACITY_REACHED)

        now = self._clock()
        if self._last_capture_time is not None:
            elapsed_ms = (now - self._last_capture_time) * 1000.0
            if elapsed_ms < self.config["capture_interval_ms"]:
                return self._reject(RejectReason.TOO_FAST)

        if detection is None:
            return self._reject(RejectReason.NO_DETECTION)

        if (detection.confidence or 0.0) < self.config["quality_score_threshold"]:
            return self._reject(RejectReason.LOW_CONFIDENCE)

        if detection.embedding is None or len(detection.embedding) == 0:
            return self._reject(RejectReason.NO_DESCRIPTOR)

        embedding = to_embedding(detection.embedding)

        if self._embeddings:
            distances = distances_to(embedding, np.stack(self._embeddings))

            min_distance = float(distances.min())
            if min_distance < self.config["similarity_threshold"]:
                return self._reject(RejectReason.TOO_SIMILAR, distance=min_distance)

            max_distance = float(distances.max())
            if max_distance > self.config["consistency_threshold"]:
                return self._reject(RejectReason.INCONSISTENT, distance=max_distance)

        # Accepted
        thumbnail = self._build_thumbnail(frame, detection.bbox) if frame is not None else None
        self._embeddings.append(embedding)
        self._thumbnails.append(thumbnail)
        self._last_capture_time = now

        count = len(self._embeddings)
        logger.debug(f"Captured embedding {count}/{self.config['max_captures']}")

        if self.config["auto_save_progress"]:
            self._save_progress()

        progress = self.get_progress()
        self.observer.on_capture(CaptureEvent(index=count, thumbnail=thumbnail, progress=progress))
        self.observer.on_progress(progress)

        if count >= self.config["max_captures"]:
            self._finalize()

        return AdmissionResult(
            accepted=True,
            count=count,
            progress=progress,
            state=self._state,
        )

    def undo_last(self) -> bool:
        """
        Drop the most recently accepted embedding and its thumbnail.

        Returns:
            True if a capture was removed, False if there was nothing to
            undo or the session is not collecting.
        """
        if self._state != EnrollmentState.COLLECTING or not self._embeddings:
            return False

        self._embeddings.pop()
        self._thumbnails.pop()

        if self.config["auto_save_progress"]:
            self._save_progress()

        self.observer.on_progress(self.get_progress())
        return True

    def finish_early(self) -> Optional[IdentityTemplate]:
        """
        Finalize before max_captures is reached.

        Returns:
            The saved IdentityTemplate, or None if persisting it failed
            (the session is then in ERROR).

        Raises:
            EnrollmentStateError: If the session is not collecting.
            InsufficientSamplesError: If fewer than min_captures_to_finish
                                      embeddings were accepted. No state
                                      change happens.
        """
        if self._state not in (EnrollmentState.COLLECTING, EnrollmentState.COMPUTING):
            raise EnrollmentStateError(f"Cannot finish enrollment in state {self._state.value}")

        required = self.config["min_captures_to_finish"]
        if len(self._embeddings) < required:
            raise InsufficientSamplesError(len(self._embeddings), required)

        return self._finalize()

    # ============================================================
    # Finalization
    # ============================================================

    def _finalize(self) -> Optional[IdentityTemplate]:
        """
        Compute the mean embedding and persist the identity template.

        Persistence failure is fatal to the session: state goes to ERROR
        and stays there until cancel() or restart().
        """
        self._set_state(EnrollmentState.COMPUTING)

        self._mean = mean_embedding(self._embeddings)
        template = IdentityTemplate(
            user_id=self._user_id,
            user_name=self._user_name,
            descriptors=np.stack(self._embeddings),
            mean_descriptor=self._mean,
            registered_at=now_ms(),
        )

        if self.storage is not None:
            try:
                self.storage.save_user(template)
                self.storage.clear_progress()
            except Exception as e:
                error = e if isinstance(e, PersistenceError) else PersistenceError(str(e))
                logger.error(f"Failed to save template for {self._user_id}: {e}")
                self._last_error = error
                self._set_state(EnrollmentState.ERROR)
                self.observer.on_error(error)
                return None

        self._template = template
        self._set_state(EnrollmentState.SAVED)
        logger.info(f"Enrollment complete for {self._user_name} (id={self._user_id}, "
                    f"captures={template.capture_count})")

        self.observer.on_complete(template)
        return template

    # ============================================================
    # Queries
    # ============================================================

    @property
    def state(self) -> EnrollmentState:
        return self._state

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def user_name(self) -> str:
        return self._user_name

    @property
    def capture_count(self) -> int:
        return len(self._embeddings)

    @property
    def embeddings(self) -> List[np.ndarray]:
        """Copies of the accepted embeddings, in capture order."""
        return [e.copy() for e in self._embeddings]

    @property
    def thumbnails(self) -> List[Optional[str]]:
        return list(self._thumbnails)

    @property
    def mean_descriptor(self) -> Optional[np.ndarray]:
        """Mean embedding computed at finalize, or None before that."""
        return self._mean

    @property
    def template(self) -> Optional[IdentityTemplate]:
        """The template saved by the last successful finalize."""
        return self._template

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    def get_progress(self) -> EnrollmentProgress:
        current = len(self._embeddings)
        total = self.config["max_captures"]
        percentage = int(current * 100 / total + 0.5) if total else 0
        return EnrollmentProgress(current=current, total=total, percentage=percentage)

    def get_registration_data(self) -> IdentityTemplate:
        """
        Export the current session as an IdentityTemplate.

        Returns the saved template after a successful finalize; otherwise
        builds one from the captures so far.

        Raises:
            EnrollmentStateError: If nothing has been captured.
        """
        if self._template is not None and self._state == EnrollmentState.SAVED:
            return self._template

        if not self._embeddings:
            raise EnrollmentStateError("No captures to export")

        return IdentityTemplate(
            user_id=self._user_id or generate_user_id(),
            user_name=self._user_name,
            descriptors=np.stack(self._embeddings),
            mean_descriptor=mean_embedding(self._embeddings),
        )

    # ============================================================
    # Internals
    # ============================================================

    def _reject(self, reason: RejectReason, distance: Optional[float] = None) -> AdmissionResult:
        return AdmissionResult(
            accepted=False,
            reason=reason,
            count=len(self._embeddings),
            progress=self.get_progress(),
            distance=distance,
            state=self._state,
        )

    def _reset_captures(self) -> None:
        self._embeddings = []
        self._thumbnails = []
        self._mean = None
        self._template = None
        self._last_error = None
        self._last_capture_time = None

    def _set_state(self, new_state: EnrollmentState) -> None:
        old_state = self._state
        self._state = new_state

        logger.info(f"Enrollment state: {old_state.value} -> {new_state.value}")
        self.observer.on_state_change(old_state, new_state)

    def _default_thumbnailer(self, frame, bbox) -> Optional[str]:
        return make_thumbnail(
            frame,
            bbox,
            size=self.config["thumbnail_size"],
            quality=self.config["thumbnail_quality"],
        )

    def _build_thumbnail(self, frame, bbox) -> Optional[str]:
        try:
            return self._thumbnailer(frame, bbox)
        except Exception as e:
            logger.warning(f"Thumbnail generation failed: {e}")
            return None

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "user_id": self._user_id,
            "user_name": self._user_name,
            "embeddings": [e.tolist() for e in self._embeddings],
            "thumbnails": list(self._thumbnails),
            "state": self._state.value,
        }

    def _save_progress(self) -> None:
        """Best-effort checkpoint; failure never affects the capture."""
        if self.storage is None:
            return

        try:
            self.storage.save_progress(self._snapshot())
        except Exception as e:
            logger.warning(f"Failed to save enrollment progress: {e}")

    def _clear_saved_progress(self) -> None:
        if self.storage is None:
            return

        try:
            self.storage.clear_progress()
        except Exception as e:
            logger.warning(f"Failed to clear enrollment progress: {e}")

    def _load_progress(self) -> None:
        """Restore captures from a saved checkpoint, if there is one."""
        try:
            progress = self.storage.load_progress()
            if not progress or not progress.get("embeddings"):
                return

            embeddings = [to_embedding(e) for e in progress["embeddings"]]
            mean_embedding(embeddings)  # rejects mixed lengths
        except Exception as e:
            logger.warning(f"Failed to load saved progress: {e}")
            return

        embeddings = embeddings[:self.config["max_captures"]]
        # Previews that no longer decode are dropped, the captures are kept
        thumbnails = [
            t if decode_thumbnail(t) is not None else None
            for t in list(progress.get("thumbnails") or [])[:len(embeddings)]
        ]
        thumbnails += [None] * (len(embeddings) - len(thumbnails))

        self._user_id = progress.get("user_id") or ""
        self._user_name = progress.get("user_name") or ""
        self._embeddings = embeddings
        self._thumbnails = thumbnails

        if progress.get("state") == EnrollmentState.COLLECTING.value:
            self._state = EnrollmentState.COLLECTING
            if not self._user_id:
                self._user_id = generate_user_id()

        logger.info(f"Loaded {len(self._embeddings)} saved captures")
        self.observer.on_progress(self.get_progress())
