# ==============================================================================
# Session Configuration
# ==============================================================================
#
# Centralized configuration for the session client using pydantic-settings.
#
# All settings can be overridden via environment variables (uppercase with
# underscores, e.g., RAY_ADDRESS, RAY_NUM_WORKERS, REQUEST_TIMEOUT_S).
#
# Configuration Categories:
#   - Ray: cluster address, local cluster sizing, Train workers, storage
#   - Requests: timeout applied to every remote call
#   - MLflow: optional experiment tracking of fits
#
# Usage:
#   from src.session.config import SESSION_CONFIG
#   print(SESSION_CONFIG.ray_storage_path)
#
# ==============================================================================

from pydantic_settings import BaseSettings


class SessionSettings(BaseSettings):
    """Session settings loaded from environment variables."""

    # Ray cluster; None starts a local cluster
    ray_address: str | None = None
    ray_num_workers: int = 1

    # Ray Train result storage (local path, or bucket path when an endpoint is set)
    ray_storage_path: str = "/tmp/ray_results"
    ray_storage_endpoint: str | None = None
    ray_storage_scheme: str = "http"

    # Seconds; None blocks until the cluster answers
    request_timeout_s: float | None = None

    # For experiment tracking (disabled unless a tracking URI is configured)
    mlflow_tracking_uri: str | None = None
    mlflow_experiment_name: str = "deeplearning-session"


# Singleton instance
SESSION_CONFIG = SessionSettings()
