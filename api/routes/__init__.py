"""
API Routes Package

This package contains route handlers organized by feature:
- enrollment.py: REST endpoints driving the enrollment session
- identification.py: 1:N identification and match index control
- management.py: REST endpoints for user management and import/export
"""

from api.routes.enrollment import router as enrollment_router
from api.routes.identification import router as identification_router
from api.routes.management import router as management_router

__all__ = [
    "enrollment_router",
    "identification_router",
    "management_router",
]
