# ==============================================================================
# Session Module
# ==============================================================================
#
# Handle-based client for deep learning on a Ray cluster.
#
# Components:
#   - client.py: connect() and the Session operations
#   - handles.py: DatasetHandle / ModelHandle
#   - registry.py: session-scoped handle registry
#   - frames.py: Ray Data reading, typing, splitting, summaries
#   - errors.py: SessionError hierarchy
#   - config.py: environment-driven session settings
#
# Usage:
#   from src.session import connect
#   with connect(thread_count=4) as session:
#       ...
#
# ==============================================================================
"""Session client for distributed deep learning."""

from src.session.client import Session, connect
from src.session.handles import DatasetHandle, ModelHandle

__all__ = ["DatasetHandle", "ModelHandle", "Session", "connect"]
