"""
API Layer for the Face Authentication Service

This package provides the FastAPI-based API layer that exposes:
- WebSocket endpoints for enrollment and verification (the browser owns the camera)
- REST endpoints for enrollment status, opt-out and health checks
"""
