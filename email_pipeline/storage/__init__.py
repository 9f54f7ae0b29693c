"""Persistence layer: table definitions and engine management."""

from __future__ import annotations

from email_pipeline.storage import schema
from email_pipeline.storage.engine import dispose_engines, get_engine, init_db

__all__ = ["dispose_engines", "get_engine", "init_db", "schema"]
