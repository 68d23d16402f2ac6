"""Persistence for knowledge chunks."""

from .database import ChunkStore

__all__ = ["ChunkStore"]
