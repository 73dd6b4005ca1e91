"""
Shared FastAPI dependencies.

The service keeps one template store, one match index and one enrollment
session per process. Routes receive them through Depends() so tests can
swap any of them with app.dependency_overrides.
"""

import logging
from typing import Optional

from fastapi import Depends

from faceid.config import get_enrollment_config, get_matching_config
from faceid.enrollment import EnrollmentSession, EventRecorder
from faceid.matching import MatchIndex
from faceid.template_store import TemplateStore, get_template_store

logger = logging.getLogger(__name__)

_match_index: Optional[MatchIndex] = None
_session: Optional[EnrollmentSession] = None


def get_store() -> TemplateStore:
    """Template store dependency."""
    return get_template_store()


def get_match_index(store: TemplateStore = Depends(get_store)) -> MatchIndex:
    """Match index dependency; loaded from the store on first use."""
    global _match_index

    if _match_index is None:
        _match_index = MatchIndex(get_matching_config())
        _match_index.load_from_storage(store)

    return _match_index


def get_enrollment_session(store: TemplateStore = Depends(get_store)) -> EnrollmentSession:
    """
    Enrollment session dependency.

    Created on first use, which resumes any checkpoint left in the store.
    Its observer is an EventRecorder drained by GET /enrollment/events.
    """
    global _session

    if _session is None:
        _session = EnrollmentSession(
            get_enrollment_config(),
            storage=store,
            observer=EventRecorder(),
        )

    return _session


def reset_state() -> None:
    """Forget the cached index and session (used on shutdown and in tests)."""
    global _match_index, _session

    _match_index = None
    _session = None
    logger.debug("Service state reset")
