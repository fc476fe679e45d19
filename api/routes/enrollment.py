"""
Enrollment API Routes

Reference implementation of the remote enrollment authority:

- POST /start-enrollment        open a session
- POST /enroll-frame            upload one frame for a pose bucket (multipart)
- POST /complete                finalize a session once every pose is held
- POST /cancel-enrollment       abandon a session
- GET  /enrollment-status/{id}  inspect a session

Sessions live in memory and expire after a configurable TTL. Uploaded images
are decoded to check that they are real images and are then discarded.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import cv2
import numpy as np
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from api.schemas import (
    AckResponse,
    EnrollmentStatusResponse,
    FrameUploadResponse,
    SessionRequest,
    StartEnrollmentRequest,
    StartEnrollmentResponse,
)
from core.config import get_server_config
from core.pose_classifier import REQUIRED_BUCKETS

# Setup logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["enrollment"])

REQUIRED_POSES = [bucket.value for bucket in REQUIRED_BUCKETS]


def generate_session_id() -> str:
    """
    Generate a unique session ID.

    Format: "enr_" followed by 12 random hex characters.
    """
    return f"enr_{uuid.uuid4().hex[:12]}"


@dataclass
class EnrollmentSession:
    """
    Server-side state for a single enrollment session.

    Attributes:
        session_id: Opaque identifier handed to the client.
        child_id: Identifier of the person being enrolled.
        name: Display name.
        created_at: Creation time (seconds, store clock).
        status: 'active', 'completed', 'cancelled' or 'expired'.
        captured: Accepted pose bucket -> reported quality.
    """

    session_id: str
    child_id: str
    name: str
    created_at: float
    updated_at: float
    status: str = "active"
    captured: Dict[str, float] = field(default_factory=dict)

    @property
    def progress(self) -> float:
        return len(self.captured) / len(REQUIRED_POSES) * 100.0

    @property
    def is_complete(self) -> bool:
        return all(pose in self.captured for pose in REQUIRED_POSES)

    def to_status(self) -> EnrollmentStatusResponse:
        return EnrollmentStatusResponse(
            session_id=self.session_id,
            child_id=self.child_id,
            required_poses=list(REQUIRED_POSES),
            status=self.status,
            progress=self.progress,
            captured_poses=[pose for pose in REQUIRED_POSES if pose in self.captured],
        )


class EnrollmentSessionStore:
    """
    In-memory session registry with TTL expiry.

    All acceptance rules live here so the route handlers stay thin.
    """

    def __init__(
        self,
        session_ttl_sec: float = 900.0,
        min_quality: float = 0.85,
        clock: Callable[[], float] = time.time,
    ):
        self.session_ttl_sec = session_ttl_sec
        self.min_quality = min_quality
        self._clock = clock
        self._sessions: Dict[str, EnrollmentSession] = {}

    def create(self, child_id: str, name: Optional[str] = None) -> EnrollmentSession:
        now = self._clock()
        session = EnrollmentSession(
            session_id=generate_session_id(),
            child_id=child_id,
            name=name or f"Child {child_id}",
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.session_id] = session
        logger.info(f"Enrollment session {session.session_id} started for {child_id}")
        return session

    def get(self, session_id: str) -> Optional[EnrollmentSession]:
        """Look up a session, flipping it to 'expired' once its TTL has passed."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        if session.status == "active" and self._clock() - session.created_at > self.session_ttl_sec:
            session.status = "expired"
            logger.info(f"Enrollment session {session_id} expired")

        return session

    @property
    def active_count(self) -> int:
        return sum(1 for session_id in list(self._sessions) if self.get(session_id).status == "active")

    def record_frame(
        self,
        session: EnrollmentSession,
        pose_bucket: str,
        quality: float,
        image_bytes: bytes,
    ) -> FrameUploadResponse:
        """
        Decide whether an uploaded frame fills its pose bucket.

        Args:
            session: Session the frame belongs to.
            pose_bucket: Bucket named by the client.
            quality: Client-side quality score.
            image_bytes: Encoded image; decoded for validation only.

        Returns:
            FrameUploadResponse describing the verdict.
        """
        if session.status != "active":
            return FrameUploadResponse(
                success=False,
                pose=pose_bucket,
                progress=session.progress,
                message=f"Session is {session.status}",
            )

        def reject(message: str) -> FrameUploadResponse:
            logger.info(f"Session {session.session_id}: rejected {pose_bucket} ({message})")
            return FrameUploadResponse(
                success=True,
                accepted=False,
                pose=pose_bucket,
                progress=session.progress,
                completed=session.is_complete,
                quality=quality,
                message=message,
            )

        if pose_bucket not in REQUIRED_POSES:
            return reject(f"Unknown pose bucket: {pose_bucket}")

        image = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            return reject("Invalid image data")

        if quality < self.min_quality:
            return reject(f"Image quality too low ({quality:.2f} < {self.min_quality:.2f})")

        if pose_bucket in session.captured:
            return reject(f"{pose_bucket} pose already captured")

        session.captured[pose_bucket] = quality
        session.updated_at = self._clock()

        logger.info(
            f"Session {session.session_id}: accepted {pose_bucket} "
            f"({len(session.captured)}/{len(REQUIRED_POSES)}, quality={quality:.2f})"
        )

        return FrameUploadResponse(
            success=True,
            accepted=True,
            pose=pose_bucket,
            progress=session.progress,
            completed=session.is_complete,
            quality=quality,
            message=f"{pose_bucket} pose captured",
        )

    def complete(self, session: EnrollmentSession) -> AckResponse:
        if session.status == "completed":
            return AckResponse(success=True, message="Enrollment already completed")
        if session.status != "active":
            return AckResponse(success=False, message=f"Session is {session.status}")
        if not session.is_complete:
            missing = [pose for pose in REQUIRED_POSES if pose not in session.captured]
            return AckResponse(success=False, message=f"Missing poses: {', '.join(missing)}")

        session.status = "completed"
        session.updated_at = self._clock()
        logger.info(f"Enrollment session {session.session_id} completed")
        return AckResponse(success=True, message="Enrollment completed")

    def cancel(self, session: EnrollmentSession) -> AckResponse:
        if session.status == "completed":
            return AckResponse(success=False, message="Enrollment already completed")
        if session.status == "cancelled":
            return AckResponse(success=True, message="Enrollment already cancelled")

        session.status = "cancelled"
        session.captured.clear()
        session.updated_at = self._clock()
        logger.info(f"Enrollment session {session.session_id} cancelled")
        return AckResponse(success=True, message="Enrollment cancelled")


# Global store instance
_session_store: Optional[EnrollmentSessionStore] = None


def get_session_store() -> EnrollmentSessionStore:
    """Get or create the global session store."""
    global _session_store
    if _session_store is None:
        server_config = get_server_config()
        _session_store = EnrollmentSessionStore(
            session_ttl_sec=server_config["session_ttl_sec"],
            min_quality=server_config["min_quality"],
        )
    return _session_store


def reset_session_store() -> None:
    """Drop every session (used by tests and on shutdown)."""
    global _session_store
    _session_store = None


def _require_session(store: EnrollmentSessionStore, session_id: str) -> EnrollmentSession:
    session = store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.post("/start-enrollment", response_model=StartEnrollmentResponse)
async def start_enrollment(
    request: StartEnrollmentRequest,
    store: EnrollmentSessionStore = Depends(get_session_store),
):
    """Open a new enrollment session."""
    session = store.create(request.child_id, request.name)
    return StartEnrollmentResponse(
        success=True,
        session_id=session.session_id,
        message="Enrollment session started",
    )


@router.post("/enroll-frame", response_model=FrameUploadResponse)
async def enroll_frame(
    image: UploadFile = File(...),
    session_id: str = Form(..., alias="sessionId"),
    pose_bucket: str = Form(..., alias="poseBucket"),
    quality: float = Form(...),
    store: EnrollmentSessionStore = Depends(get_session_store),
):
    """
    Upload one captured frame for a pose bucket.

    Rejections (duplicate pose, low quality, undecodable image) answer
    ``success=true, accepted=false`` with a reason in ``message``.

    Raises:
        404: If the session is unknown.
    """
    session = _require_session(store, session_id)
    image_bytes = await image.read()
    return store.record_frame(session, pose_bucket, quality, image_bytes)


@router.post("/complete", response_model=AckResponse)
async def complete_enrollment(
    request: SessionRequest,
    store: EnrollmentSessionStore = Depends(get_session_store),
):
    """Finalize a session. Fails unless every required pose was accepted."""
    session = _require_session(store, request.session_id)
    return store.complete(session)


@router.post("/cancel-enrollment", response_model=AckResponse)
async def cancel_enrollment(
    request: SessionRequest,
    store: EnrollmentSessionStore = Depends(get_session_store),
):
    """Abandon a session and drop its captured poses."""
    session = _require_session(store, request.session_id)
    return store.cancel(session)


@router.get("/enrollment-status/{session_id}", response_model=EnrollmentStatusResponse)
async def enrollment_status(
    session_id: str,
    store: EnrollmentSessionStore = Depends(get_session_store),
):
    """Report progress and status of a session."""
    return _require_session(store, session_id).to_status()
