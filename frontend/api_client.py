"""
API client for the guided enrollment backend.

Async HTTP boundary between the capture controller and the remote session
authority. Every call returns a parsed schema model or raises a subclass of
EnrollmentClientError whose message is safe to show to the user.

Usage:
    async with EnrollmentSessionClient("http://localhost:3000") as client:
        started = await client.start_enrollment("child-42")
        verdict = await client.upload_frame(started.session_id, PoseBucket.FRONT, 0.91, jpeg)
"""

import logging
import time
from typing import Any, Dict, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from api.schemas import (
    AckResponse,
    EnrollmentStatusResponse,
    FrameUploadResponse,
    SessionRequest,
    StartEnrollmentRequest,
    StartEnrollmentResponse,
)
from core.pose_classifier import PoseBucket

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Request timed out. Please check your connection and try again."
CONNECTION_MESSAGE = "Unable to connect to server. Please check your internet connection."
SERVER_ERROR_MESSAGE = "Server error occurred. Please try again later."

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


class EnrollmentClientError(Exception):
    """Base error for enrollment API calls. ``message`` is user-facing."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class EnrollmentTransportError(EnrollmentClientError):
    """The request never produced a usable response (timeout, network, HTTP error)."""


class SessionInitError(EnrollmentClientError):
    """A session could not be opened."""


class SessionClosedError(EnrollmentClientError):
    """The server refused an upload because the session is no longer active."""


class EnrollmentSessionClient:
    """
    Client for the enrollment session endpoints.

    Args:
        base_url: Root URL of the enrollment backend.
        timeout_sec: Timeout applied to every request.
        transport: Optional httpx transport (e.g. httpx.ASGITransport in tests).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_sec,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EnrollmentSessionClient":
        """Build a client from the ``enrollment_api`` config section."""
        return cls(
            base_url=config.get("base_url", "http://localhost:3000"),
            timeout_sec=config.get("timeout_sec", 30.0),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    # ==================== Session lifecycle ====================

    async def start_enrollment(self, child_id: str, name: Optional[str] = None) -> StartEnrollmentResponse:
        """
        Open an enrollment session.

        Raises:
            SessionInitError: If the request fails or the server declines.
        """
        request = StartEnrollmentRequest(child_id=child_id, name=name or f"Child {child_id}")
        try:
            data = await self._request("POST", "/start-enrollment", json=request.model_dump(by_alias=True))
            result = self._parse(StartEnrollmentResponse, data)
        except EnrollmentClientError as e:
            raise SessionInitError(e.message, e.status_code) from e

        if not result.success or not result.session_id:
            raise SessionInitError(result.message or "Failed to start enrollment session")

        logger.info(f"Enrollment session {result.session_id} started for {child_id}")
        return result

    async def complete_enrollment(self, session_id: str) -> AckResponse:
        """Ask the server to finalize a session."""
        return await self._session_call("/complete", session_id)

    async def cancel_enrollment(self, session_id: str) -> AckResponse:
        """Ask the server to abandon a session."""
        return await self._session_call("/cancel-enrollment", session_id)

    async def get_enrollment_status(self, session_id: str) -> EnrollmentStatusResponse:
        data = await self._request("GET", f"/enrollment-status/{session_id}")
        return self._parse(EnrollmentStatusResponse, data)

    # ==================== Frame upload ====================

    async def upload_frame(
        self,
        session_id: str,
        bucket: Union[PoseBucket, str],
        quality: float,
        image_bytes: bytes,
    ) -> FrameUploadResponse:
        """
        Upload one JPEG frame for a pose bucket.

        Args:
            session_id: Active session.
            bucket: Pose bucket the frame was captured for.
            quality: Client-side quality score (0-1).
            image_bytes: JPEG-encoded frame.

        Returns:
            FrameUploadResponse. ``accepted`` may still be False; that is a
            server verdict, not an error.

        Raises:
            SessionClosedError: If the session is no longer accepting frames.
            EnrollmentTransportError: If the request itself failed.
        """
        pose = PoseBucket(bucket).value
        filename = f"{pose.lower()}_{int(time.time() * 1000)}.jpg"

        data = await self._request(
            "POST",
            "/enroll-frame",
            files={"image": (filename, image_bytes, "image/jpeg")},
            data={"sessionId": session_id, "poseBucket": pose, "quality": str(quality)},
        )
        result = self._parse(FrameUploadResponse, data)

        if not result.success:
            raise SessionClosedError(result.message or f"Session {session_id} is not active")
        return result

    # ==================== Internals ====================

    async def _session_call(self, path: str, session_id: str) -> AckResponse:
        body = SessionRequest(session_id=session_id).model_dump(by_alias=True)
        data = await self._request("POST", path, json=body)
        return self._parse(AckResponse, data)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out: {e}")
            raise EnrollmentTransportError(TIMEOUT_MESSAGE) from e
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise EnrollmentTransportError(CONNECTION_MESSAGE) from e

        if response.status_code >= 500:
            logger.warning(f"{method} {path} returned {response.status_code}")
            raise EnrollmentTransportError(SERVER_ERROR_MESSAGE, response.status_code)

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"{method} {path} returned {response.status_code}: {message}")
            raise EnrollmentTransportError(message, response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise EnrollmentTransportError("Invalid response from server", response.status_code) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Prefer the server's own explanation of a 4xx response."""
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            for key in ("message", "detail"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value

        return f"Request failed with status {response.status_code}"

    @staticmethod
    def _parse(model: Type[ResponseModel], data: Any) -> ResponseModel:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Unexpected {model.__name__} payload: {e}")
            raise EnrollmentTransportError("Invalid response from server") from e
