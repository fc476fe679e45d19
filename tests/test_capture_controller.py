"""
Unit Tests for the Capture Controller

This module tests the enrollment state machine with in-memory fakes for the
API client, frame source, analyzer, tick scheduler and clock:
- Session start (success, init failure, camera failure)
- Capture rules and the per-bucket cooldown
- Server-authoritative progress and completion
- Uploads for different buckets resolving out of order
- Cancellation, including uploads that resolve after cancel, and sessions
  closed by the server
- TickScheduler error isolation

Usage:
    pytest tests/test_capture_controller.py -v
"""

import asyncio
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from api.schemas import (
    AckResponse,
    EnrollmentStatusResponse,
    FrameUploadResponse,
    StartEnrollmentResponse,
)
from core.frame import Frame
from core.frame_analyzer import DetectionResult
from core.pose_classifier import REQUIRED_BUCKETS, PoseBucket
from frontend.api_client import EnrollmentTransportError, SessionClosedError, SessionInitError
from frontend.capture_controller import (
    CaptureController,
    CaptureState,
    FrameSourceError,
    TickScheduler,
)


# ============================================================
# Fakes
# ============================================================

class FakeEnrollmentClient:
    """Records calls and answers like a cooperative server."""

    def __init__(self):
        self.start_error = None
        self.upload_error = None
        self.reject_message = None
        self.report_completed = None
        self.complete_error = None
        self.complete_ack = AckResponse(success=True, message="Enrollment completed")
        self.cancel_error = None
        self.gate = None
        self.bucket_gates = {}
        self.start_gate = None
        self.remote_status = "expired"
        self.status_error = None

        self.start_calls = 0
        self.uploads = []
        self.accepted = set()
        self.completed_sessions = []
        self.cancelled_sessions = []

    async def start_enrollment(self, child_id, name=None):
        self.start_calls += 1
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error
        return StartEnrollmentResponse(success=True, session_id="enr_test", message="Enrollment session started")

    async def upload_frame(self, session_id, bucket, quality, image_bytes):
        """The verdict is decided on arrival; the response may be held back by a gate."""
        self.uploads.append((session_id, bucket, quality, image_bytes))
        response = self._verdict(bucket, quality)

        gate = self.bucket_gates.get(bucket, self.gate)
        if gate is not None:
            await gate.wait()
        if self.upload_error is not None:
            raise self.upload_error
        return response

    def _verdict(self, bucket, quality):
        if self.reject_message is not None:
            return FrameUploadResponse(success=True, accepted=False, pose=bucket.value, message=self.reject_message)

        self.accepted.add(bucket)
        completed = len(self.accepted) == 5 if self.report_completed is None else self.report_completed
        return FrameUploadResponse(
            success=True,
            accepted=True,
            pose=bucket.value,
            progress=len(self.accepted) * 20.0,
            completed=completed,
            quality=quality,
            message=f"{bucket.value} pose captured",
        )

    async def get_enrollment_status(self, session_id):
        if self.status_error is not None:
            raise self.status_error
        return EnrollmentStatusResponse(
            session_id=session_id,
            child_id="42",
            required_poses=[b.value for b in REQUIRED_BUCKETS],
            status=self.remote_status,
        )

    async def complete_enrollment(self, session_id):
        self.completed_sessions.append(session_id)
        if self.complete_error is not None:
            raise self.complete_error
        return self.complete_ack

    async def cancel_enrollment(self, session_id):
        self.cancelled_sessions.append(session_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        return AckResponse(success=True, message="Enrollment cancelled")


class FakeFrameSource:
    def __init__(self, can_open=True):
        self.can_open = can_open
        self.is_open = False
        self.close_calls = 0

    def open(self):
        self.is_open = self.can_open
        return self.can_open

    def read(self):
        pixels = np.zeros((48, 64, 4), dtype=np.uint8)
        pixels[:, :, 3] = 255
        return Frame.from_rgba(pixels)

    def close(self):
        self.is_open = False
        self.close_calls += 1


class FakeAnalyzer:
    def __init__(self):
        self.result = DetectionResult.empty()

    def analyze(self, frame):
        return self.result


class ManualScheduler:
    """Scheduler that never ticks on its own; tests call controller.tick()."""

    def __init__(self):
        self.callback = None
        self.stopped = False

    def start(self, callback):
        self.callback = callback
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeClock:
    def __init__(self):
        self.now = 10_000.0

    def __call__(self):
        return self.now


def ready(bucket=PoseBucket.LEFT, quality=0.9):
    """A detection that satisfies every capture rule."""
    return DetectionResult(
        face_detected=True,
        face_count=1,
        face_confidence=0.95,
        face_in_frame=True,
        pose_bucket=bucket,
        quality=quality,
    )


class Harness:
    def __init__(self, can_open=True):
        self.client = FakeEnrollmentClient()
        self.source = FakeFrameSource(can_open)
        self.analyzer = FakeAnalyzer()
        self.scheduler = ManualScheduler()
        self.clock = FakeClock()
        self.events = []
        self.controller = CaptureController(
            client=self.client,
            frame_source=self.source,
            analyzer=self.analyzer,
            config={"cooldown_ms": 2000, "min_face_confidence": 0.9, "min_quality": 0.85},
            clock=self.clock,
            scheduler=self.scheduler,
        )
        self.controller.add_listener(self.events.append)

    def kinds(self):
        return [event.kind for event in self.events]

    async def capture(self, bucket):
        self.analyzer.result = ready(bucket)
        self.controller.tick()
        await self.controller.drain()


@pytest.fixture
def harness():
    return Harness()


# ============================================================
# Session Start
# ============================================================

class TestStart:
    """Tests for CaptureController.start."""

    def test_start_activates(self, harness):
        async def scenario():
            return await harness.controller.start("42")

        session = asyncio.run(scenario())

        assert session.session_id == "enr_test"
        assert harness.controller.state is CaptureState.ACTIVE
        assert harness.scheduler.callback == harness.controller.tick
        assert harness.source.is_open
        assert harness.kinds() == ["session_started"]
        assert harness.controller.status_message == "Position your face in the circular guide"

    def test_session_init_failure(self, harness):
        harness.client.start_error = SessionInitError("Unable to connect to server.")

        with pytest.raises(SessionInitError):
            asyncio.run(harness.controller.start("42"))

        assert harness.controller.state is CaptureState.IDLE
        assert not harness.source.is_open
        assert harness.scheduler.callback is None

    def test_frame_source_failure_cancels_session(self):
        harness = Harness(can_open=False)

        async def scenario():
            with pytest.raises(FrameSourceError):
                await harness.controller.start("42")
            await harness.controller.drain()

        asyncio.run(scenario())

        assert harness.controller.state is CaptureState.IDLE
        assert harness.client.cancelled_sessions == ["enr_test"]
        assert harness.scheduler.callback is None

    def test_start_while_active_fails(self, harness):
        async def scenario():
            await harness.controller.start("42")
            await harness.controller.start("42")

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())

    def test_overlapping_start_rejected(self, harness):
        """A second start while the first awaits the server opens no second session."""

        async def scenario():
            harness.client.start_gate = asyncio.Event()
            first = asyncio.ensure_future(harness.controller.start("42"))
            await asyncio.sleep(0)
            with pytest.raises(RuntimeError):
                await harness.controller.start("42")
            harness.client.start_gate.set()
            return await first

        session = asyncio.run(scenario())
        assert session.session_id == "enr_test"
        assert harness.client.start_calls == 1
        assert harness.controller.state is CaptureState.ACTIVE

    def test_start_retry_after_init_failure(self, harness):
        harness.client.start_error = SessionInitError("Unable to connect to server.")

        async def scenario():
            with pytest.raises(SessionInitError):
                await harness.controller.start("42")
            harness.client.start_error = None
            await harness.controller.start("42")

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE

    def test_restart_after_cancel(self, harness):
        async def scenario():
            await harness.controller.start("42")
            harness.controller.cancel()
            await harness.controller.drain()
            await harness.controller.start("42")

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE
        assert harness.controller.pose_progress == set()


# ============================================================
# Capture Rules
# ============================================================

class TestShouldCapture:
    """Tests for the capture decision."""

    @pytest.mark.parametrize(
        "changes",
        [
            {"face_count": 0},
            {"face_count": 2},
            {"pose_bucket": PoseBucket.NONE},
            {"face_confidence": 0.89},
            {"face_in_frame": False},
            {"quality": 0.84},
        ],
    )
    def test_each_rule_blocks_capture(self, harness, changes):
        detection = replace(ready(), **changes)
        assert not harness.controller.should_capture(detection, 0.0)

    def test_ready_detection_captures(self, harness):
        assert harness.controller.should_capture(ready(), 0.0)

    def test_thresholds_are_inclusive(self, harness):
        detection = replace(ready(), face_confidence=0.9, quality=0.85)
        assert harness.controller.should_capture(detection, 0.0)

    def test_captured_bucket_is_skipped(self, harness):
        harness.controller.pose_progress.add(PoseBucket.LEFT)
        assert not harness.controller.should_capture(ready(PoseBucket.LEFT), 0.0)
        assert harness.controller.should_capture(ready(PoseBucket.RIGHT), 0.0)

    def test_cooldown(self, harness):
        harness.controller.cooldown_ledger[PoseBucket.LEFT] = 1000.0
        assert not harness.controller.should_capture(ready(), 2999.0)
        assert harness.controller.should_capture(ready(), 3000.0)


# ============================================================
# Ticks and Uploads
# ============================================================

class TestTick:
    """Tests for per-tick uploads."""

    def test_qualifying_tick_uploads(self, harness):
        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.LEFT)

        asyncio.run(scenario())

        assert len(harness.client.uploads) == 1
        session_id, bucket, quality, image_bytes = harness.client.uploads[0]
        assert session_id == "enr_test"
        assert bucket is PoseBucket.LEFT
        assert quality == pytest.approx(0.9)
        assert image_bytes[:2] == b"\xff\xd8"  # JPEG magic
        assert harness.controller.pose_progress == {PoseBucket.LEFT}
        assert harness.controller.cooldown_ledger[PoseBucket.LEFT] == 10_000.0
        assert harness.kinds()[-1] == "upload_accepted"
        assert harness.controller.progress_percent == pytest.approx(20.0)

    def test_multiple_faces_never_upload(self, harness):
        async def scenario():
            await harness.controller.start("42")
            harness.analyzer.result = replace(ready(), face_count=2)
            harness.controller.tick()
            await harness.controller.drain()

        asyncio.run(scenario())
        assert harness.client.uploads == []
        assert harness.controller.status_message.startswith("2 faces detected.")

    def test_captured_bucket_does_not_upload_again(self, harness):
        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.LEFT)
            harness.clock.now += 5000
            await harness.capture(PoseBucket.LEFT)

        asyncio.run(scenario())
        assert len(harness.client.uploads) == 1
        assert harness.controller.status_message == "LEFT pose completed. Try another direction."

    def test_cooldown_limits_retries(self, harness):
        """Two qualifying ticks under 2 s apart produce one upload."""
        harness.client.reject_message = "Face not clear enough"

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.UP)
            harness.clock.now += 1999
            await harness.capture(PoseBucket.UP)
            first_window = len(harness.client.uploads)
            harness.clock.now += 1
            await harness.capture(PoseBucket.UP)
            return first_window

        first_window = asyncio.run(scenario())
        assert first_window == 1
        assert len(harness.client.uploads) == 2

    def test_cooldown_set_before_upload_resolves(self, harness):
        """A second tick while the first upload is in flight does not upload."""

        async def scenario():
            harness.client.gate = asyncio.Event()
            await harness.controller.start("42")
            harness.analyzer.result = ready(PoseBucket.DOWN)
            harness.controller.tick()
            await asyncio.sleep(0)
            harness.controller.tick()
            harness.client.gate.set()
            await harness.controller.drain()

        asyncio.run(scenario())
        assert len(harness.client.uploads) == 1

    def test_rejection_leaves_bucket_open(self, harness):
        harness.client.reject_message = "Face not clear enough"

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.RIGHT)

        asyncio.run(scenario())
        assert harness.controller.pose_progress == set()
        assert harness.events[-1].kind == "upload_rejected"
        assert harness.events[-1].message == "Face not clear enough"

    def test_transport_failure_is_transient(self, harness):
        harness.client.upload_error = EnrollmentTransportError("Server error occurred. Please try again later.", 500)

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.FRONT)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE
        assert harness.controller.pose_progress == set()
        assert harness.events[-1].kind == "upload_failed"
        assert harness.controller.status_message == "Upload failed for FRONT pose. Please try again."

    def test_tick_ignored_when_not_active(self, harness):
        harness.analyzer.result = ready()
        harness.controller.tick()
        assert harness.client.uploads == []


# ============================================================
# Completion
# ============================================================

class TestCompletion:
    """Tests for the terminal success path."""

    def test_completes_after_five_accepted(self, harness):
        async def scenario():
            await harness.controller.start("42")
            for bucket in REQUIRED_BUCKETS:
                await harness.capture(bucket)

        asyncio.run(scenario())

        controller = harness.controller
        assert controller.state is CaptureState.COMPLETED
        assert harness.scheduler.stopped
        assert not harness.source.is_open
        assert harness.client.completed_sessions == ["enr_test"]
        assert controller.pose_progress == set()

        completed = [e for e in harness.events if e.kind == "completed"]
        assert len(completed) == 1
        assert completed[0].captured == REQUIRED_BUCKETS

    def test_completed_flag_waits_for_missing_buckets(self, harness):
        harness.client.report_completed = True

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.FRONT)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE
        assert harness.client.completed_sessions == []

    def test_all_buckets_without_server_confirmation(self, harness):
        harness.client.report_completed = False

        async def scenario():
            await harness.controller.start("42")
            for bucket in REQUIRED_BUCKETS:
                await harness.capture(bucket)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE
        assert len(harness.controller.pose_progress) == 5
        assert "Waiting for the server" in harness.controller.status_message

    def test_complete_call_failure_is_non_fatal(self, harness):
        harness.client.complete_error = EnrollmentTransportError("Server error occurred. Please try again later.", 500)

        async def scenario():
            await harness.controller.start("42")
            for bucket in REQUIRED_BUCKETS:
                await harness.capture(bucket)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.COMPLETED
        assert harness.kinds()[-2:] == ["completed", "complete_failed"]

    def test_complete_refused_by_server(self, harness):
        harness.client.complete_ack = AckResponse(success=False, message="Missing poses: UP")

        async def scenario():
            await harness.controller.start("42")
            for bucket in REQUIRED_BUCKETS:
                await harness.capture(bucket)

        asyncio.run(scenario())
        assert harness.events[-1].kind == "complete_failed"
        assert harness.events[-1].message == "Missing poses: UP"


# ============================================================
# Concurrent Uploads
# ============================================================

async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestConcurrentUploads:
    """Uploads for different buckets in flight at the same time."""

    async def two_in_flight(self, harness, first, second):
        """Hold FRONT/RIGHT/UP, then send LEFT and DOWN with gated responses."""
        await harness.controller.start("42")
        for bucket in (PoseBucket.FRONT, PoseBucket.RIGHT, PoseBucket.UP):
            await harness.capture(bucket)

        gates = {PoseBucket.LEFT: asyncio.Event(), PoseBucket.DOWN: asyncio.Event()}
        harness.client.bucket_gates = gates
        for bucket in (first, second):
            harness.analyzer.result = ready(bucket)
            harness.controller.tick()
            await settle()
        return gates

    @pytest.mark.parametrize(
        "release_order",
        [
            (PoseBucket.DOWN, PoseBucket.LEFT),
            (PoseBucket.LEFT, PoseBucket.DOWN),
        ],
    )
    def test_completes_in_either_response_order(self, harness, release_order):
        """The server accepts LEFT then DOWN; DOWN carries completed=True."""

        async def scenario():
            gates = await self.two_in_flight(harness, PoseBucket.LEFT, PoseBucket.DOWN)
            assert len(harness.client.uploads) == 5

            first, second = release_order
            gates[first].set()
            await settle()
            assert first in harness.controller.pose_progress
            assert harness.controller.state is CaptureState.ACTIVE

            gates[second].set()
            await harness.controller.drain()

        asyncio.run(scenario())

        assert harness.controller.state is CaptureState.COMPLETED
        assert harness.client.completed_sessions == ["enr_test"]
        completed = [e for e in harness.events if e.kind == "completed"]
        assert len(completed) == 1
        assert completed[0].captured == REQUIRED_BUCKETS

    def test_progress_counts_each_response(self, harness):
        async def scenario():
            gates = await self.two_in_flight(harness, PoseBucket.LEFT, PoseBucket.DOWN)
            gates[PoseBucket.DOWN].set()
            await settle()
            progress = harness.controller.progress_percent
            gates[PoseBucket.LEFT].set()
            await harness.controller.drain()
            return progress

        assert asyncio.run(scenario()) == pytest.approx(80.0)

    def test_completion_flag_cleared_by_cancel(self, harness):
        """A flag from a cancelled session does not complete the next one early."""
        harness.client.report_completed = True

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.FRONT)
            harness.controller.cancel()
            await harness.controller.drain()

            harness.client.report_completed = False
            await harness.controller.start("42")
            for bucket in REQUIRED_BUCKETS:
                await harness.capture(bucket)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.ACTIVE
        assert harness.client.completed_sessions == []


# ============================================================
# Session Closed by Server
# ============================================================

class TestSessionClosed:
    """Uploads refused because the session is no longer active."""

    def test_expired_session_stops_capture(self, harness):
        harness.client.upload_error = SessionClosedError("Session is expired")

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.FRONT)
            harness.clock.now += 5000
            harness.controller.tick()
            await harness.controller.drain()

        asyncio.run(scenario())

        controller = harness.controller
        assert controller.state is CaptureState.CANCELLED
        assert controller.session.status == "expired"
        assert harness.scheduler.stopped
        assert not harness.source.is_open
        assert len(harness.client.uploads) == 1
        assert harness.kinds()[-1] == "session_closed"
        assert harness.events[-1].message == "Session is expired"

    def test_mirror_follows_server_status(self, harness):
        harness.client.upload_error = SessionClosedError("Session is cancelled")
        harness.client.remote_status = "cancelled"

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.UP)

        asyncio.run(scenario())
        assert harness.controller.session.status == "cancelled"

    def test_status_lookup_failure(self, harness):
        harness.client.upload_error = SessionClosedError("Session is expired")
        harness.client.status_error = EnrollmentTransportError("Unable to connect to server.")

        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.UP)

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.CANCELLED
        assert harness.controller.session.status == "expired"


# ============================================================
# Cancellation
# ============================================================

class TestCancel:
    """Tests for stop / navigate-away."""

    def test_cancel_resets_everything(self, harness):
        async def scenario():
            await harness.controller.start("42")
            await harness.capture(PoseBucket.LEFT)
            harness.controller.cancel()
            await harness.controller.drain()

        asyncio.run(scenario())

        controller = harness.controller
        assert controller.state is CaptureState.CANCELLED
        assert harness.scheduler.stopped
        assert harness.source.close_calls == 1
        assert controller.pose_progress == set()
        assert controller.cooldown_ledger == {}
        assert harness.client.cancelled_sessions == ["enr_test"]
        assert harness.kinds()[-1] == "cancelled"

    def test_no_uploads_after_cancel(self, harness):
        async def scenario():
            await harness.controller.start("42")
            harness.controller.cancel()
            harness.analyzer.result = ready()
            harness.controller.tick()
            await harness.controller.drain()

        asyncio.run(scenario())
        assert harness.client.uploads == []

    def test_late_upload_result_is_discarded(self, harness):
        """An upload resolving after cancel does not touch controller state."""

        async def scenario():
            harness.client.gate = asyncio.Event()
            await harness.controller.start("42")
            harness.analyzer.result = ready(PoseBucket.FRONT)
            harness.controller.tick()
            await asyncio.sleep(0)
            harness.controller.cancel()
            harness.client.gate.set()
            await harness.controller.drain()

        asyncio.run(scenario())
        assert harness.controller.pose_progress == set()
        assert "upload_accepted" not in harness.kinds()

    def test_cancel_failure_is_only_logged(self, harness):
        harness.client.cancel_error = EnrollmentTransportError("Unable to connect to server.")

        async def scenario():
            await harness.controller.start("42")
            harness.controller.cancel()
            await harness.controller.drain()

        asyncio.run(scenario())
        assert harness.controller.state is CaptureState.CANCELLED

    def test_cancel_when_idle_is_noop(self, harness):
        harness.controller.cancel()
        assert harness.controller.state is CaptureState.IDLE
        assert harness.events == []

    def test_cancel_outside_event_loop(self, harness):
        """Without a running loop the local state still resets."""
        asyncio.run(harness.controller.start("42"))
        harness.controller.cancel()

        assert harness.controller.state is CaptureState.CANCELLED
        assert harness.client.cancelled_sessions == []


# ============================================================
# TickScheduler
# ============================================================

class TestTickScheduler:
    """Tests for the explicit tick loop."""

    def test_failing_tick_does_not_stop_loop(self):
        async def scenario():
            ticks = []

            def callback():
                ticks.append(1)
                raise RuntimeError("boom")

            async def fast_sleep(_):
                await asyncio.sleep(0)

            scheduler = TickScheduler(0.1, sleep=fast_sleep)
            scheduler.start(callback)
            assert scheduler.running
            for _ in range(10):
                await asyncio.sleep(0)
            scheduler.stop()
            return scheduler, len(ticks)

        scheduler, count = asyncio.run(scenario())
        assert count >= 2
        assert not scheduler.running

    def test_double_start_rejected(self):
        async def scenario():
            scheduler = TickScheduler(0.1)
            scheduler.start(lambda: None)
            try:
                with pytest.raises(RuntimeError):
                    scheduler.start(lambda: None)
            finally:
                scheduler.stop()

        asyncio.run(scenario())

    def test_interval_passed_to_sleep(self):
        async def scenario():
            intervals = []

            async def recording_sleep(seconds):
                intervals.append(seconds)
                await asyncio.sleep(0)

            scheduler = TickScheduler(0.25, sleep=recording_sleep)
            scheduler.start(lambda: None)
            for _ in range(3):
                await asyncio.sleep(0)
            scheduler.stop()
            return intervals

        intervals = asyncio.run(scenario())
        assert intervals
        assert all(seconds == 0.25 for seconds in intervals)
