"""Saved model serving application using Ray Serve + MLflow."""

from datetime import datetime, timezone
from pathlib import Path

import mlflow
import mlflow.pytorch
import pandas as pd
from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel, Field
from ray import serve
from ray.serve import Application

from src._utils.logging import get_logger
from src.serving.config import SERVING_CONFIG
from src.serving.schemas import (
    APIStatus,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    Prediction,
    PredictionRequest,
    PredictionResponse,
    RootResponse,
)
from src.session.handles import ModelHandle
from src.training.scoring import probability_columns, predict_frame

logger = get_logger(__name__)

app = FastAPI(
    title="🧠 Deep Learning Model API",
    description="Tabular model scoring using Ray Serve + MLflow + PyTorch Lightning",
    version="1.0.0",
)


def rows_to_frame(rows: list[dict], handle: ModelHandle) -> pd.DataFrame:
    """Frame with exactly the model's feature columns, missing ones as NaN."""
    frame = pd.DataFrame.from_records(rows)
    return frame.reindex(columns=handle.feature_spec.feature_names)


def to_predictions(scored: pd.DataFrame, handle: ModelHandle) -> list[Prediction]:
    spec = handle.feature_spec
    if not spec.is_classification:
        return [Prediction(predict=float(v)) for v in scored["predict"]]

    columns = probability_columns(spec)
    return [
        Prediction(
            predict=row["predict"],
            probabilities={level: float(row[c]) for level, c in zip(spec.domain, columns)},
        )
        for _, row in scored.iterrows()
    ]


@serve.deployment(
    ray_actor_options={"num_cpus": 1},
)
@serve.ingress(app)
class TabularModelServer:
    def __init__(self, model_dir: str | None = None) -> None:
        """Initialize the server, optionally with a saved model directory."""
        logger.info("🧠 Initializing Tabular Model Service")
        self.status = APIStatus.NOT_READY
        self.model = None
        self.handle: ModelHandle | None = None
        self.model_info: ModelInfo | None = None
        self.start_time = datetime.now(timezone.utc)

        # Load model if a directory is provided at init
        if model_dir:
            try:
                self._load_model(model_dir)
            except HTTPException as e:
                logger.error(f"Failed to load model during initialization: {e.detail}")
                self.status = APIStatus.UNHEALTHY

    def _load_model(self, model_dir: str) -> None:
        """Load a directory written by Session.save()."""
        logger.info(f"📦 Loading model from: {model_dir}")
        self.status = APIStatus.LOADING
        source = Path(model_dir)

        try:
            handle = ModelHandle.model_validate_json(
                (source / "handle.json").read_text()
            )
            model = mlflow.pytorch.load_model(str(source / "model"), map_location="cpu")
        except FileNotFoundError as e:
            self.status = APIStatus.UNHEALTHY
            logger.error(f"❌ No saved model at {model_dir}: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"No saved model at {model_dir}",
            )
        except mlflow.exceptions.MlflowException as e:
            self.status = APIStatus.UNHEALTHY
            logger.error(f"❌ MLflow error loading model: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to load model: {str(e)}",
            )

        self.model = model.eval()
        self.handle = handle
        spec = handle.feature_spec
        self.model_info = ModelInfo(
            model_dir=str(source),
            model_id=handle.id,
            algorithm=handle.algorithm,
            model_category=handle.model_category,
            features=spec.feature_names,
            response=spec.response.name,
            domain=spec.domain,
            epochs_trained=handle.epochs_trained,
            training_metrics=handle.training_metrics,
            validation_metrics=handle.validation_metrics,
        )

        self.status = APIStatus.HEALTHY
        logger.success("✅ Model loaded successfully")
        logger.info(f"   Model id: {handle.id}")
        logger.info(f"   Category: {handle.model_category.value}")
        logger.info(f"   Features: {', '.join(spec.feature_names)}")

    def reconfigure(self, config: dict) -> None:
        """Handle model updates without restarting the deployment.

        Update via: serve.run(..., user_config={"model_dir": "/models/dl_1234"})
        """
        new_model_dir = config.get("model_dir")

        if not new_model_dir:
            logger.warning("⚠️ No model_dir provided in config")
            return

        if self.model_info is None or self.model_info.model_dir != new_model_dir:
            logger.info(f"🔄 Loading model from {new_model_dir}")
            self._load_model(new_model_dir)
        else:
            logger.info("ℹ️ Model directory unchanged, skipping reload")

    @app.get(
        "/",
        response_model=RootResponse,
        summary="Root endpoint",
    )
    async def root(self):
        """Root endpoint with basic info."""
        return RootResponse(
            service="Deep Learning Model API",
            version="1.0.0",
            status=self.status.value,
            docs="/docs",
            health="/health",
        )

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="Health Check",
        responses={
            200: {"description": "Service is healthy"},
            503: {"description": "Service is not ready or unhealthy"},
        },
    )
    async def health(self):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        response = HealthResponse(
            status=self.status,
            model_loaded=self.model is not None,
            model_dir=self.model_info.model_dir if self.model_info else None,
            uptime_seconds=int(uptime),
        )

        # Return 503 if not healthy
        if self.status != APIStatus.HEALTHY:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=response.model_dump(mode="json"),
            )
        return response

    @app.get(
        "/info",
        response_model=ModelInfo,
        summary="Model Information",
        responses={
            503: {"description": "Model not loaded", "model": ErrorResponse},
        },
    )
    async def info(self):
        """Get the loaded model's metadata and metrics."""
        if self.model_info is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Model not loaded. Please configure the deployment with a model_dir.",
            )
        return self.model_info

    @app.post(
        "/predict",
        response_model=PredictionResponse,
        summary="Score rows",
        responses={
            200: {"description": "Successful prediction"},
            400: {"description": "Invalid input", "model": ErrorResponse},
            503: {"description": "Model not loaded", "model": ErrorResponse},
        },
    )
    async def predict(self, request: PredictionRequest):
        """
        Score rows of raw column values.

        **Input:** rows keyed by the model's feature columns; extra keys are
        ignored and missing ones are treated as missing values.

        **Output:** the predicted level and per-level probabilities
        (classification) or the predicted value (regression), one per row.
        """
        if self.model is None or self.handle is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Model not loaded. Configure the deployment with a model_dir.",
            )

        start_time = datetime.now(timezone.utc)

        try:
            frame = rows_to_frame(request.rows, self.handle)
            scored = predict_frame(self.model, self.handle.feature_spec, frame)
        except ValueError as e:
            logger.error(f"❌ Validation error: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid input: {str(e)}",
            )

        processing_time = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        return PredictionResponse(
            predictions=to_predictions(scored, self.handle),
            model_id=self.handle.id,
            timestamp=datetime.now(timezone.utc),
            processing_time_ms=processing_time,
        )


class AppBuilderArgs(BaseModel):
    """Arguments for building the Ray Serve application."""

    model_dir: str | None = Field(
        None,
        description="Directory written by Session.save (e.g. /models/deeplearning_1a2b3c4d)",
    )


def app_builder(args: AppBuilderArgs) -> Application:
    """Helper function to build the deployment with an optional model directory.

    Examples:
        >>> serve run src.serving.serve:app_builder model_dir="/models/deeplearning_1a2b3c4d"

    Args:
        args: Configuration arguments including the model directory

    Returns:
        Ray Serve Application ready to deploy
    """
    return TabularModelServer.bind(model_dir=args.model_dir or SERVING_CONFIG.model_dir)
