"""
Per-user preference service.

This package provides a FastAPI application that stores a flat string map
of preferences per authenticated user, with DynamoDB, SQLAlchemy and
in-memory storage backends.
"""
