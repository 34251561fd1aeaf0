"""State persistence helpers for mcpforge."""
from __future__ import annotations

from .registry import JsonDocumentStore

__all__ = ["JsonDocumentStore"]
