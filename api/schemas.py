"""
Pydantic Schemas for API Request/Response Models

This module defines the wire models shared by the enrollment client
(frontend/api_client.py) and the reference backend (api/routes/enrollment.py).

Field names are snake_case in Python and camelCase on the wire. Models accept
either form when parsing; dump with ``model_dump(by_alias=True)`` to produce
the wire form.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================
# Session Schemas
# ============================================================

class StartEnrollmentRequest(WireModel):
    """Request to open an enrollment session."""
    child_id: str = Field(..., min_length=1, description="Identifier of the person being enrolled")
    name: Optional[str] = Field(None, description="Display name for the session")


class StartEnrollmentResponse(WireModel):
    """Response from session initialization."""
    success: bool = Field(..., description="Whether a session was opened")
    session_id: Optional[str] = Field(None, description="Opaque session identifier")
    message: str = Field("", description="Status message")


class SessionRequest(WireModel):
    """Request body for operations on an existing session."""
    session_id: str = Field(..., min_length=1, description="Session identifier")


class AckResponse(WireModel):
    """Plain success/message acknowledgement."""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field("", description="Status message")


# ============================================================
# Frame Upload Schemas
# ============================================================

class FrameUploadResponse(WireModel):
    """Server verdict on one uploaded pose frame."""
    success: bool = Field(..., description="Whether the request was processed")
    accepted: bool = Field(False, description="Whether the frame was accepted for its pose")
    pose: Optional[str] = Field(None, description="Pose bucket the frame was uploaded for")
    progress: float = Field(0.0, description="Percent of required poses captured (0-100)")
    completed: bool = Field(False, description="True once every required pose is captured")
    quality: Optional[float] = Field(None, description="Quality score echoed back by the server")
    message: str = Field("", description="Human-readable verdict")


class EnrollmentStatusResponse(WireModel):
    """Current state of an enrollment session."""
    session_id: str = Field(..., description="Session identifier")
    child_id: str = Field(..., description="Identifier of the person being enrolled")
    required_poses: List[str] = Field(..., description="Pose buckets the session needs")
    status: str = Field(..., description="'active', 'completed', 'cancelled' or 'expired'")
    progress: float = Field(0.0, description="Percent of required poses captured (0-100)")
    captured_poses: List[str] = Field(default_factory=list, description="Pose buckets accepted so far")


# ============================================================
# Health Check Schemas
# ============================================================

class HealthResponse(WireModel):
    """System health check response."""
    status: str = Field(..., description="Overall status: 'healthy'")
    active_sessions: int = Field(..., description="Number of sessions currently active")
