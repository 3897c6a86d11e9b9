# ==============================================================================
# Serving API Schemas
# ==============================================================================
#
# Pydantic models for request/response validation of the model server.
#
# Schema Overview:
#   - PredictionRequest: rows of raw column values to score
#   - PredictionResponse: one prediction per row plus metadata
#   - ModelInfo: saved model metadata (category, features, domain)
#   - HealthResponse: health check status information
#
# Input Format:
#   {"rows": [{"x1": 0.3, "color": "red"}, ...]}
#   Feature columns missing from a row are treated as missing values
#   (mean-imputed numerics, all-zero categoricals).
#
# Validation:
#   - Batch size limited to REQUEST_MAX_LENGTH (default: 1000)
#   - Values must be numbers, strings, booleans or null
#
# ==============================================================================

"""Schema definitions for the model serving module."""

from datetime import datetime
from enum import StrEnum, auto
from typing import Annotated, Dict, List

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from src.serving.config import SERVING_CONFIG
from src.training.schemas import MetricsSummary, ModelCategory

RowValue = float | int | str | bool | None


def validate_rows(rows: List[Dict[str, RowValue]]) -> List[Dict[str, RowValue]]:
    """Reject rows that carry no values at all."""
    for i, row in enumerate(rows):
        if not row:
            raise ValueError(f"Row {i} is empty")
    return rows


class PredictionRequest(BaseModel):
    """Input model for predictions with validation."""

    rows: Annotated[
        List[Dict[str, RowValue]],
        AfterValidator(validate_rows),
        Field(
            min_length=1,
            max_length=SERVING_CONFIG.request_max_length,  # Prevent DOS attacks with huge batches
            description="Rows to score, as column name -> raw value mappings.",
            examples=[[{"x1": 0.5, "x2": -1.2, "color": "red"}]],
        ),
    ]


class Prediction(BaseModel):
    """Single prediction result."""

    predict: str | float = Field(
        ..., description="Predicted level (classification) or value (regression)"
    )
    probabilities: Dict[str, float] | None = Field(
        None, description="Probability per level (classification only)"
    )


class PredictionResponse(BaseModel):
    """Response model for predictions."""

    model_config = ConfigDict(protected_namespaces=())

    predictions: List[Prediction] = Field(
        ..., description="List of predictions for each input row"
    )
    model_id: str = Field(..., description="Id of the model used")
    timestamp: datetime = Field(..., description="Prediction timestamp UTC")
    processing_time_ms: float = Field(
        ..., description="Time taken to process request in milliseconds"
    )


class ModelInfo(BaseModel):
    """Model metadata information."""

    model_config = ConfigDict(protected_namespaces=())

    model_dir: str = Field(..., description="Directory the model was loaded from")
    model_id: str = Field(..., description="Model id at save time")
    algorithm: str = Field(..., description="Training algorithm")
    model_category: ModelCategory = Field(..., description="Binomial, Multinomial or Regression")
    features: List[str] = Field(..., description="Feature columns expected in each row")
    response: str = Field(..., description="Target column the model predicts")
    domain: List[str] = Field(
        default_factory=list, description="Output levels (classification only)"
    )
    epochs_trained: int = Field(..., description="Epochs the model was trained for")
    training_metrics: MetricsSummary | None = Field(
        None, description="Metrics on the training data"
    )
    validation_metrics: MetricsSummary | None = Field(
        None, description="Metrics on the validation data"
    )


class APIStatus(StrEnum):
    """API status enumeration."""

    LOADING = auto()
    HEALTHY = auto()
    UNHEALTHY = auto()
    NOT_READY = auto()


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    model_config = ConfigDict(protected_namespaces=())

    status: APIStatus = Field(..., description="API health status")
    model_loaded: bool = Field(..., description="Whether a model is loaded")
    model_dir: str | None = Field(None, description="Current model directory")
    uptime_seconds: int | None = Field(None, description="Service uptime in seconds")


class RootResponse(BaseModel):
    """Response model for root endpoint."""

    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    status: str = Field(..., description="Service status")
    docs: str = Field(..., description="URL to API documentation")
    health: str = Field(..., description="URL to health check endpoint")


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error details")
