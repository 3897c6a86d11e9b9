# ==============================================================================
# Utilities Module
# ==============================================================================
#
# Shared utilities for the session client, training jobs and serving.
#
# Components:
#   - logging.py: Rich-based logging configuration
#
# Usage:
#   from src._utils.logging import get_logger, log_section
#
# ==============================================================================
"""Shared utilities."""
