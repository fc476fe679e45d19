"""
API Routes Package

Route handlers organized by feature:
- enrollment.py: session lifecycle and per-pose frame uploads
"""

from api.routes.enrollment import router as enrollment_router

__all__ = [
    "enrollment_router",
]
