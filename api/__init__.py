"""
API Layer for the Face Enrollment and Matching Engine

This package provides the FastAPI-based HTTP service that exposes:
- REST endpoints that drive an enrollment session one detection at a time
- 1:N identification against the enrolled gallery
- User management, JSON import/export and health checks

The client runs the face detector and embedder; the service only receives
detector outputs (confidence, box, embedding, optional frame).
"""
