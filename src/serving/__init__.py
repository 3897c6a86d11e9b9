# ==============================================================================
# Serving Module
# ==============================================================================
#
# Saved model serving with Ray Serve + FastAPI.
#
# Components:
#   - serve.py: Ray Serve deployment with FastAPI
#   - schemas.py: Pydantic request/response models
#   - config.py: Serving configuration
#
# Entry Point:
#   serve run src.serving.serve:app_builder model_dir="/models/deeplearning_1a2b3c4d"
#
# ==============================================================================
"""Serving module for saved deep learning models."""
