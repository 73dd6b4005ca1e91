"""
Pydantic Schemas for API Request/Response Models

This module defines the data models used by the HTTP service.

These schemas provide:
- Type validation
- Automatic documentation in OpenAPI/Swagger
- Clear interface contracts
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


# ============================================================
# Enrollment Schemas
# ============================================================

class StartEnrollmentRequest(BaseModel):
    """Request to begin an enrollment session."""
    user_id: Optional[str] = Field(None, description="Identity id; generated when omitted")
    user_name: str = Field(..., min_length=1, description="Display name for the user")


class DetectionRequest(BaseModel):
    """One detector output submitted for admission."""
    confidence: float = Field(..., description="Detector confidence score (0-1)")
    bbox: Optional[List[float]] = Field(
        None, min_length=4, max_length=4, description="Face box [x1, y1, x2, y2] in pixels"
    )
    embedding: Optional[List[float]] = Field(None, description="Identity embedding, if extracted")
    frame: Optional[str] = Field(None, description="Base64-encoded JPEG frame for the thumbnail")


class Progress(BaseModel):
    """Capture progress."""
    current: int
    total: int
    percentage: int


class AdmissionResponse(BaseModel):
    """Outcome of submitting a detection."""
    accepted: bool = Field(..., description="Whether the embedding was captured")
    reason: Optional[str] = Field(None, description="Rejection reason, e.g. 'too_fast'")
    count: int = Field(0, description="Captured embeddings after this call")
    progress: Optional[Progress] = None
    distance: Optional[float] = Field(None, description="Distance that failed the similarity gate")
    state: str = Field(..., description="Session state after this call")


class EnrollmentStatusResponse(BaseModel):
    """Current enrollment session status."""
    state: str
    user_id: str = ""
    user_name: str = ""
    progress: Progress
    thumbnails: List[Optional[str]] = Field(default_factory=list)


class UndoResponse(BaseModel):
    """Result of undoing the last capture."""
    undone: bool
    progress: Progress


class EnrollmentCompleteResponse(BaseModel):
    """Response sent when enrollment is complete."""
    type: str = Field(default="enrollment_complete", description="Message type")
    user_id: str = Field(..., description="Enrolled identity id")
    user_name: str = Field(..., description="User's display name")
    capture_count: int = Field(..., description="Number of embeddings in the template")
    embedding_dim: int = Field(..., description="Embedding length")
    registered_at: int = Field(..., description="Registration time, ms since epoch")


class EnrollmentEventResponse(BaseModel):
    """One queued session notification."""
    kind: str
    data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# Identification Schemas
# ============================================================

class IdentifyRequest(BaseModel):
    """1:N identification query."""
    embedding: Optional[List[float]] = Field(None, description="Probe embedding")
    top_k: int = Field(0, ge=0, le=50, description="Also return the k closest identities")


class TopMatchResponse(BaseModel):
    """One ranked identity."""
    user_id: str
    user_name: str
    distance: float
    confidence: float
    is_match: bool


class IdentifyResponse(BaseModel):
    """Result of an identification query."""
    status: str = Field(..., description="'matched', 'no_match' or 'unknown'")
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    distance: Optional[float] = Field(None, description="Best distance; null when unknown")
    confidence: float = 0.0
    is_high_confidence: bool = False
    match_time_ms: float = 0.0
    top_matches: List[TopMatchResponse] = Field(default_factory=list)


class GalleryStatsResponse(BaseModel):
    """Match index counters."""
    total_queries: int
    successful_queries: int
    last_query_latency_ms: float
    user_count: int
    descriptor_count: int
    match_rate: Optional[float] = None


# ============================================================
# User Management Schemas
# ============================================================

class UserInfo(BaseModel):
    """User information summary."""
    user_id: str = Field(..., description="Unique user identifier")
    user_name: str = Field(..., description="User's display name")
    registered_at: int = Field(..., description="Registration time, ms since epoch")
    capture_count: Optional[int] = Field(None, description="Number of stored embeddings")
    embedding_dim: Optional[int] = Field(None, description="Embedding length")
    has_mean: bool = Field(False, description="Whether a mean embedding is stored")


class UserListResponse(BaseModel):
    """Response containing list of enrolled users."""
    users: List[UserInfo] = Field(default_factory=list)
    total: int = Field(0, description="Total number of enrolled users")


class DeleteUserResponse(BaseModel):
    """Response from user deletion."""
    success: bool = Field(..., description="Whether deletion was successful")
    user_id: str = Field(..., description="ID of deleted user")
    message: str = Field(..., description="Status message")


class ImportResponse(BaseModel):
    """Response from a gallery import."""
    success: bool
    count: int = Field(..., description="Identities written")


# ============================================================
# Health Check Schemas
# ============================================================

class HealthResponse(BaseModel):
    """System health check response."""
    status: str = Field(..., description="Overall status")
    enrolled_users: int = Field(..., description="Number of enrolled users in storage")
    indexed_users: int = Field(..., description="Number of users in the match index")
    enrollment_state: str = Field(..., description="Current enrollment session state")
