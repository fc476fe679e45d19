"""
Guided Enrollment Runner

Runs a complete guided enrollment from the command line:
  1. Open a session on the enrollment backend
  2. Stream the webcam through the face analysis pipeline
  3. Upload one frame per pose (FRONT, LEFT, RIGHT, UP, DOWN) as guidance allows

Usage:
    # Start the reference backend first
    uvicorn api.app:app --port 3000

    # Then enroll
    python scripts/run_enroll.py --child-id 42
    python scripts/run_enroll.py --child-id 42 --name "Alice" --api-url http://localhost:3000

Press Ctrl+C to cancel the enrollment.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

from core.config import (
    get_camera_config,
    get_capture_config,
    get_enrollment_api_config,
    get_face_detection_config,
    get_quality_config,
)
from core.frame_analyzer import FaceAnalyzer
from core.pose_classifier import POSE_INSTRUCTIONS, REQUIRED_BUCKETS
from frontend.api_client import EnrollmentSessionClient, SessionInitError
from frontend.capture_controller import (
    CaptureController,
    CaptureEvent,
    CaptureState,
    FrameSourceError,
)
from frontend.components.webcam_capture import CaptureConfig, WebcamCapture

logger = logging.getLogger(__name__)

STATUS_POLL_SEC = 0.2


def print_banner(title: str) -> None:
    print()
    print("=" * 60)
    print(f"  {title}")
    print("=" * 60)


def print_event(event: CaptureEvent) -> None:
    """Print controller events as they arrive."""
    if event.kind == "upload_accepted":
        print(f"  [+] {event.bucket.value} accepted ({event.progress:.0f}%)")
    elif event.kind == "upload_rejected":
        print(f"  [-] {event.bucket.value} rejected: {event.message}")
    elif event.kind == "upload_failed":
        print(f"  [!] {event.bucket.value} upload failed: {event.message}")
    elif event.kind == "completed":
        poses = ", ".join(bucket.value for bucket in event.captured)
        print(f"  [*] Enrollment complete: {poses}")
    elif event.kind == "complete_failed":
        print(f"  [!] Server did not confirm completion: {event.message}")
    elif event.kind == "cancelled":
        print("  [x] Enrollment cancelled")
    elif event.kind == "session_closed":
        print(f"  [x] Session closed by server: {event.message}")


def parse_resolution(value: str):
    width, height = value.lower().split("x")
    return int(width), int(height)


def build_camera_config(args: argparse.Namespace, camera_section: dict) -> CaptureConfig:
    """config.yaml camera settings, overridden only by flags that were given."""
    camera_config = CaptureConfig.from_dict(camera_section)
    if args.camera is not None:
        camera_config.device_id = args.camera
    if args.resolution:
        camera_config.width, camera_config.height = parse_resolution(args.resolution)
    return camera_config


async def run_enrollment(args: argparse.Namespace) -> int:
    camera_config = build_camera_config(args, get_camera_config())

    api_config = dict(get_enrollment_api_config())
    if args.api_url:
        api_config["base_url"] = args.api_url

    analyzer = FaceAnalyzer(get_face_detection_config(), get_quality_config())

    async with EnrollmentSessionClient.from_config(api_config) as client:
        controller = CaptureController(
            client=client,
            frame_source=WebcamCapture(camera_config),
            analyzer=analyzer,
            config=get_capture_config(),
        )
        controller.add_listener(print_event)

        try:
            session = await controller.start(args.child_id, args.name)
        except (SessionInitError, FrameSourceError) as e:
            print(f"\nERROR: {e}")
            return 1

        print(f"  Session:  {session.session_id}")
        print(f"  Server:   {api_config['base_url']}")
        print()
        for bucket in REQUIRED_BUCKETS:
            print(f"  {bucket.value:<6} {POSE_INSTRUCTIONS[bucket]}")
        print()

        last_message = ""
        try:
            while controller.state is CaptureState.ACTIVE:
                if controller.status_message != last_message:
                    last_message = controller.status_message
                    print(f"  {last_message}")
                await asyncio.sleep(STATUS_POLL_SEC)
        finally:
            controller.cancel()
            await controller.drain()

        return 0 if controller.state is CaptureState.COMPLETED else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Guided face-pose enrollment from the webcam",
    )
    parser.add_argument(
        "--child-id", type=str, required=True,
        help="Identifier of the person being enrolled",
    )
    parser.add_argument(
        "--name", type=str, default=None,
        help="Display name (default: 'Child <child-id>')",
    )
    parser.add_argument(
        "--api-url", type=str, default=None,
        help="Enrollment backend URL (default: enrollment_api.base_url from config.yaml)",
    )
    parser.add_argument(
        "--camera", type=int, default=None,
        help="Camera device ID (default: camera.device_id from config.yaml)",
    )
    parser.add_argument(
        "--resolution", type=str, default=None,
        help="Webcam resolution WxH (default: camera section of config.yaml)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Enable debug logging",
    )
    return parser


def main() -> int:
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print_banner(f"ENROLLMENT: {args.child_id}")

    try:
        rc = asyncio.run(run_enrollment(args))
    except KeyboardInterrupt:
        print_banner("ENROLLMENT CANCELLED")
        return 130

    if rc == 0:
        print_banner("ENROLLMENT COMPLETE")
    else:
        print_banner(f"ENROLLMENT FAILED (exit code {rc})")
    return rc


if __name__ == "__main__":
    sys.exit(main())
