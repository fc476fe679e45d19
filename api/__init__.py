"""
API Layer for Guided Face-Pose Enrollment

This package provides the FastAPI reference backend that the enrollment
client talks to:
- REST endpoints for the enrollment session lifecycle and frame uploads
- Health check endpoint
"""
