# ==============================================================================
# Serving Configuration
# ==============================================================================
#
# Configuration settings for the serving application.
#
# Settings:
#   - REQUEST_MAX_LENGTH: Maximum rows per prediction request (prevent DOS)
#   - MODEL_DIR: Saved model directory loaded when the app is built without one
#
# Usage:
#   from src.serving.config import SERVING_CONFIG
#   max_rows = SERVING_CONFIG.request_max_length
#
# ==============================================================================

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServingConfig(BaseSettings):
    model_config = SettingsConfigDict(protected_namespaces=())

    request_max_length: int = 1000
    model_dir: str | None = None


SERVING_CONFIG = ServingConfig()
