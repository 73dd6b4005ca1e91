"""
Core Module for Face Enrollment and 1:N Matching

This package contains the enrollment state machine, the matching engine,
and the persistence and exchange formats they share.

Main components:
    - config: Configuration loading and management
    - enrollment: EnrollmentSession state machine and admission gates
    - matching: MatchIndex nearest-neighbor search with confidence
    - template_store: Identity template and progress persistence
    - gallery_io: JSON import/export of identities
    - thumbnails: Capture preview images
    - vector_ops: Euclidean distance and mean embeddings

Usage:
    from faceid import EnrollmentSession, Detection, MatchIndex
    from faceid import get_template_store
"""

from faceid.config import (
    get_config,
    get_section,
    get_enrollment_config,
    get_matching_config,
    get_storage_config,
    get_api_config,
    get_server_config,
)

from faceid.errors import (
    FaceIdError,
    InvalidInputError,
    InsufficientSamplesError,
    EnrollmentStateError,
    PersistenceError,
    InvalidGalleryRecordError,
    InvalidImportFormatError,
)

from faceid.vector_ops import euclidean_distance, mean_embedding

from faceid.template_store import (
    IdentityTemplate,
    TemplateStorage,
    TemplateStore,
    get_template_store,
    generate_user_id,
)

from faceid.gallery_io import export_gallery, import_gallery

from faceid.enrollment import (
    EnrollmentSession,
    EnrollmentState,
    EnrollmentObserver,
    EventRecorder,
    Detection,
    AdmissionResult,
    RejectReason,
)

from faceid.matching import (
    MatchIndex,
    MatchOutcome,
    MatchStatus,
    TopMatch,
)

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_enrollment_config",
    "get_matching_config",
    "get_storage_config",
    "get_api_config",
    "get_server_config",
    # Errors
    "FaceIdError",
    "InvalidInputError",
    "InsufficientSamplesError",
    "EnrollmentStateError",
    "PersistenceError",
    "InvalidGalleryRecordError",
    "InvalidImportFormatError",
    # Vector utilities
    "euclidean_distance",
    "mean_embedding",
    # Storage
    "IdentityTemplate",
    "TemplateStorage",
    "TemplateStore",
    "get_template_store",
    "generate_user_id",
    # Import / Export
    "export_gallery",
    "import_gallery",
    # Enrollment
    "EnrollmentSession",
    "EnrollmentState",
    "EnrollmentObserver",
    "EventRecorder",
    "Detection",
    "AdmissionResult",
    "RejectReason",
    # Matching
    "MatchIndex",
    "MatchOutcome",
    "MatchStatus",
    "TopMatch",
]
