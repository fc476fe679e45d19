"""
Capture controller for guided face-pose enrollment.

Drives the enrollment flow: a TickScheduler calls ``tick()`` ten times a
second; each tick reads a frame, runs the FaceAnalyzer, refreshes the guidance
message and, when every capture rule holds, uploads the original frame for
its pose bucket. The server decides whether a pose counts; the controller only
marks a bucket once the server has accepted it.

    IDLE --start()--> ACTIVE --all five accepted + completed--> COMPLETED
                        |
                        +--cancel() or server closes session--> CANCELLED

Uploads run as background tasks so ticks never wait on the network. A
continuation only touches controller state if the controller is still ACTIVE
on the session that issued the upload.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from core.frame import FrameSource
from core.frame_analyzer import DetectionResult, FaceAnalyzer
from core.guidance import guidance_message
from core.pose_classifier import REQUIRED_BUCKETS, PoseBucket
from frontend.api_client import EnrollmentClientError, EnrollmentSessionClient, SessionClosedError

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FrameSourceError(Exception):
    """The frame source could not be opened."""


@dataclass
class EnrollmentSession:
    """Local mirror of the remote session. The server holds the real state."""
    session_id: str
    child_id: str
    status: str = "active"


@dataclass(frozen=True)
class CaptureEvent:
    """
    Notification sent to controller listeners.

    kind is one of: session_started, upload_accepted, upload_rejected,
    upload_failed, completed, complete_failed, cancelled, session_closed.
    """
    kind: str
    bucket: Optional[PoseBucket] = None
    message: str = ""
    progress: float = 0.0
    captured: Tuple[PoseBucket, ...] = field(default_factory=tuple)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class TickScheduler:
    """
    Calls a synchronous callback every ``interval_sec`` on the running loop.

    A tick that raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        interval_sec: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval_sec = interval_sec
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: Callable[[], None]) -> None:
        if self.running:
            raise RuntimeError("Tick scheduler already running")
        self._task = asyncio.get_running_loop().create_task(self._run(callback))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, callback: Callable[[], None]) -> None:
        while True:
            await self._sleep(self.interval_sec)
            try:
                callback()
            except Exception:
                logger.exception("Capture tick failed")


class CaptureController:
    """
    Per-tick orchestrator and enrollment state machine.

    Args:
        client: Enrollment API client.
        frame_source: Camera (or any FrameSource).
        analyzer: Per-frame detection pipeline.
        config: ``capture`` config section.
        clock: Millisecond clock, defaults to time.monotonic.
        scheduler: Tick scheduler, defaults to a TickScheduler at the
                   configured interval.
    """

    def __init__(
        self,
        client: EnrollmentSessionClient,
        frame_source: FrameSource,
        analyzer: FaceAnalyzer,
        config: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        scheduler: Optional[TickScheduler] = None,
    ):
        config = config or {}

        self.cooldown_ms = config.get("cooldown_ms", 2000)
        self.min_face_confidence = config.get("min_face_confidence", 0.9)
        self.min_quality = config.get("min_quality", 0.85)
        self.jpeg_quality = config.get("jpeg_quality", 90)

        self.client = client
        self.frame_source = frame_source
        self.analyzer = analyzer
        self._clock = clock or _monotonic_ms
        self._scheduler = scheduler or TickScheduler(config.get("tick_interval_ms", 100) / 1000.0)

        self.state = CaptureState.IDLE
        self.session: Optional[EnrollmentSession] = None
        self.pose_progress: Set[PoseBucket] = set()
        self.cooldown_ledger: Dict[PoseBucket, float] = {}
        self.last_detection = DetectionResult.empty()
        self.status_message = ""
        self._server_completed = False
        self._starting = False

        self._listeners: List[Callable[[CaptureEvent], None]] = []
        self._tasks: Set[asyncio.Task] = set()

    # ==================== Public API ====================

    def add_listener(self, listener: Callable[[CaptureEvent], None]) -> None:
        self._listeners.append(listener)

    @property
    def progress_percent(self) -> float:
        return len(self.pose_progress) / len(REQUIRED_BUCKETS) * 100.0

    @property
    def missing_buckets(self) -> List[PoseBucket]:
        return [bucket for bucket in REQUIRED_BUCKETS if bucket not in self.pose_progress]

    async def start(self, child_id: str, name: Optional[str] = None) -> EnrollmentSession:
        """
        Open a session and begin ticking.

        Raises:
            RuntimeError: If an enrollment is already running.
            SessionInitError: If the server did not open a session.
            FrameSourceError: If the frame source could not be opened.
        """
        if self.state is CaptureState.ACTIVE or self._starting:
            raise RuntimeError("Enrollment already in progress")

        self._starting = True
        try:
            response = await self.client.start_enrollment(child_id, name)
        finally:
            self._starting = False
        session_id = response.session_id

        if not self.frame_source.open():
            logger.error(f"Frame source unavailable, abandoning session {session_id}")
            self._spawn(self._cancel_remote(session_id))
            raise FrameSourceError("Unable to access camera")

        self.session = EnrollmentSession(session_id=session_id, child_id=child_id)
        self.pose_progress.clear()
        self.cooldown_ledger.clear()
        self.last_detection = DetectionResult.empty()
        self._server_completed = False
        self.state = CaptureState.ACTIVE
        self.status_message = guidance_message(
            self.last_detection, self.pose_progress, self.min_face_confidence, self.min_quality
        )

        logger.info(f"Capture started for session {session_id}")
        self._emit(CaptureEvent("session_started", message=response.message))
        self._scheduler.start(self.tick)
        return self.session

    def tick(self) -> None:
        """Analyze one frame and upload it if it fills a missing pose."""
        if self.state is not CaptureState.ACTIVE:
            return

        frame = self.frame_source.read()
        detection = self.analyzer.analyze(frame)
        self.last_detection = detection
        self.status_message = guidance_message(
            detection, self.pose_progress, self.min_face_confidence, self.min_quality
        )

        now = self._clock()
        if frame is None or not self.should_capture(detection, now):
            return

        bucket = detection.pose_bucket
        self.cooldown_ledger[bucket] = max(self.cooldown_ledger.get(bucket, now), now)

        image_bytes = frame.encode_jpeg(self.jpeg_quality)
        logger.info(f"Capturing {bucket.value} pose (quality={detection.quality:.2f})")
        self._spawn(self._upload(self.session.session_id, bucket, detection.quality, image_bytes))

    def should_capture(self, detection: DetectionResult, now: float) -> bool:
        """Every capture rule must hold for the frame to be uploaded."""
        if detection.face_count != 1:
            return False
        if detection.pose_bucket is PoseBucket.NONE:
            return False
        if detection.face_confidence < self.min_face_confidence:
            return False
        if not detection.face_in_frame:
            return False
        if detection.quality < self.min_quality:
            return False
        if detection.pose_bucket in self.pose_progress:
            return False

        last_attempt = self.cooldown_ledger.get(detection.pose_bucket)
        return last_attempt is None or now - last_attempt >= self.cooldown_ms

    def cancel(self) -> None:
        """
        Stop capturing immediately and abandon the session.

        The server is told in the background; failures there are only logged.
        """
        if self.state is not CaptureState.ACTIVE:
            return

        session_id = self.session.session_id
        self._stop_capture()
        self.pose_progress.clear()
        self.cooldown_ledger.clear()
        self._server_completed = False
        self.state = CaptureState.CANCELLED
        self.session.status = "cancelled"
        self.status_message = "Enrollment cancelled"

        logger.info(f"Capture cancelled for session {session_id}")
        self._emit(CaptureEvent("cancelled"))

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, session {session_id} not cancelled on server")
            return
        self._spawn(self._cancel_remote(session_id))

    async def drain(self) -> None:
        """Wait for every outstanding upload and server call."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== Background work ====================

    def _is_current(self, session_id: str) -> bool:
        return (
            self.state is CaptureState.ACTIVE
            and self.session is not None
            and self.session.session_id == session_id
        )

    async def _upload(self, session_id: str, bucket: PoseBucket, quality: float, image_bytes: bytes) -> None:
        try:
            response = await self.client.upload_frame(session_id, bucket, quality, image_bytes)
        except SessionClosedError as e:
            if self._is_current(session_id):
                await self._session_closed(session_id, e.message)
            return
        except EnrollmentClientError as e:
            if not self._is_current(session_id):
                return
            logger.warning(f"Upload failed for {bucket.value}: {e.message}")
            self.status_message = f"Upload failed for {bucket.value} pose. Please try again."
            self._emit(CaptureEvent("upload_failed", bucket=bucket, message=e.message, progress=self.progress_percent))
            return

        if not self._is_current(session_id):
            logger.info(f"Discarding {bucket.value} upload result for inactive session {session_id}")
            return

        if not response.accepted:
            logger.info(f"{bucket.value} rejected: {response.message}")
            self._emit(CaptureEvent("upload_rejected", bucket=bucket, message=response.message, progress=self.progress_percent))
            return

        self.pose_progress.add(bucket)
        logger.info(f"{bucket.value} accepted ({len(self.pose_progress)}/{len(REQUIRED_BUCKETS)})")
        self._emit(CaptureEvent("upload_accepted", bucket=bucket, message=response.message, progress=self.progress_percent))

        # The completion flag may arrive before the response for the last bucket
        if response.completed:
            self._server_completed = True

        all_held = not self.missing_buckets
        if all_held and self._server_completed:
            await self._finish(session_id)
        elif response.completed:
            logger.info(
                f"Server reported completion with {len(self.pose_progress)} poses held locally, "
                f"waiting for the remaining responses"
            )
        elif all_held:
            logger.warning("Every pose accepted but the server has not confirmed completion")
            self.status_message = "All poses captured. Waiting for the server to confirm."

    async def _finish(self, session_id: str) -> None:
        self._stop_capture()
        self.state = CaptureState.COMPLETED
        self.session.status = "completed"
        self.status_message = "Enrollment complete!"

        captured = tuple(bucket for bucket in REQUIRED_BUCKETS if bucket in self.pose_progress)
        logger.info(f"Enrollment complete for session {session_id}")
        self._emit(CaptureEvent("completed", message=self.status_message, progress=100.0, captured=captured))
        self.pose_progress.clear()
        self._server_completed = False

        try:
            ack = await self.client.complete_enrollment(session_id)
        except EnrollmentClientError as e:
            logger.warning(f"Failed to complete session {session_id}: {e.message}")
            self._emit(CaptureEvent("complete_failed", message=e.message))
            return

        if not ack.success:
            logger.warning(f"Server refused to complete session {session_id}: {ack.message}")
            self._emit(CaptureEvent("complete_failed", message=ack.message))

    async def _session_closed(self, session_id: str, message: str) -> None:
        """The server stopped accepting frames for this session: stop capturing."""
        session = self.session
        self._stop_capture()
        self.pose_progress.clear()
        self.cooldown_ledger.clear()
        self._server_completed = False
        self.state = CaptureState.CANCELLED
        self.status_message = f"Enrollment stopped: {message}"

        logger.warning(f"Session {session_id} closed by server: {message}")
        self._emit(CaptureEvent("session_closed", message=message))

        try:
            remote = await self.client.get_enrollment_status(session_id)
        except EnrollmentClientError as e:
            logger.warning(f"Could not fetch status of session {session_id}: {e.message}")
            session.status = "expired"
            return
        session.status = remote.status

    async def _cancel_remote(self, session_id: str) -> None:
        try:
            await self.client.cancel_enrollment(session_id)
        except EnrollmentClientError as e:
            logger.warning(f"Failed to cancel session {session_id}: {e.message}")

    def _stop_capture(self) -> None:
        self._scheduler.stop()
        self.frame_source.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background enrollment task failed", exc_info=task.exception())

    def _emit(self, event: CaptureEvent) -> None:
        for listener in list(self._listeners):
            listener(event)
