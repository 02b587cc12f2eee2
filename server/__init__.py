"""
FitLink API Server

FastAPI application exposing device linking, sync and health data queries.

Modules:
- api: HTTP routes and error mapping over WearableService
"""

__version__ = "0.1.0"
