"""
Error Types for the Face Enrollment and Matching Engine

Admission rejections during enrollment are not exceptions: they are
returned as AdmissionResult values (see faceid.enrollment) because the
caller simply retries on the next frame. Everything below is raised.

Hierarchy:
    FaceIdError
    ├── InvalidInputError          mismatched embedding lengths, bad vectors
    ├── InsufficientSamplesError   finish_early() below the sample floor
    ├── EnrollmentStateError       operation not valid in the current state
    ├── PersistenceError           storage read/write failure
    ├── InvalidGalleryRecordError  malformed identity record (skipped on load)
    └── InvalidImportFormatError   import payload cannot be processed
"""

from typing import Optional


class FaceIdError(Exception):
    """Base class for all errors raised by the faceid package."""


class InvalidInputError(FaceIdError, ValueError):
    """Raised when vectors of different lengths are compared, or a value
    cannot be interpreted as an embedding."""


class InsufficientSamplesError(FaceIdError):
    """Raised by finish_early() when too few embeddings were captured."""

    def __init__(self, captured: int, required: int):
        self.captured = captured
        self.required = required
        super().__init__(
            f"Need at least {required} captures to finish, have {captured}"
        )


class EnrollmentStateError(FaceIdError):
    """Raised when an enrollment operation is invoked in the wrong state."""


class PersistenceError(FaceIdError):
    """
    Raised when the storage layer fails to read or write.

    When the failure interrupts an import, `imported` holds the number of
    records written before it; otherwise it is None.
    """

    def __init__(self, message: str, imported: Optional[int] = None):
        self.imported = imported
        super().__init__(message)


class InvalidGalleryRecordError(FaceIdError):
    """Raised for a single malformed identity record."""


class InvalidImportFormatError(FaceIdError):
    """
    Raised when an import payload cannot be processed.

    Import is not atomic: records written before the failing one are kept.
    `imported` tells the caller how many made it.
    """

    def __init__(self, message: str, imported: int = 0):
        self.imported = imported
        super().__init__(message)
