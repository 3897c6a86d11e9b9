# ==============================================================================
# Session Handles
# ==============================================================================
#
# Client-side references to datasets and models that live on the cluster.
#
# Handle Overview:
#   - DatasetHandle: id, shape, per-column semantic type, source
#   - ModelHandle: id, algorithm, parameter snapshot, encoding, metrics
#
# Handles are immutable snapshots. Operations that derive new data (split,
# as_factor, predict) or new models (fit, load) return new handles; the
# objects they reference are owned by the session registry.
#
# ==============================================================================

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from src.training.schemas import (
    ColumnInfo,
    ColumnType,
    FeatureSpec,
    MetricsSummary,
    ModelCategory,
)


class DatasetHandle(BaseModel):
    """Reference to a tabular dataset resident on the cluster."""

    model_config = ConfigDict(frozen=True)

    id: str
    nrows: int
    columns: List[ColumnInfo]
    source: str | None = None

    @property
    def ncols(self) -> int:
        return len(self.columns)

    @property
    def names(self) -> List[str]:
        return [col.name for col in self.columns]

    @property
    def types(self) -> Dict[str, ColumnType]:
        return {col.name: col.type for col in self.columns}

    def column(self, name: str) -> ColumnInfo | None:
        return next((col for col in self.columns if col.name == name), None)

    def __repr__(self) -> str:
        return f"DatasetHandle(id={self.id!r}, nrows={self.nrows}, ncols={self.ncols})"


class ModelHandle(BaseModel):
    """Reference to a trained model resident on the cluster."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str
    algorithm: str
    parameters: Dict[str, Any]
    model_category: ModelCategory
    feature_spec: FeatureSpec
    epochs_trained: int

    training_metrics: MetricsSummary | None = None
    validation_metrics: MetricsSummary | None = None
    cross_validation_metrics: MetricsSummary | None = None
    cross_validation_models: List[str] = Field(default_factory=list)
    scoring_history: List[Dict[str, float]] = Field(default_factory=list)

    # Model this one was continued from
    checkpoint_of: str | None = None

    @property
    def x(self) -> List[str]:
        return self.feature_spec.feature_names

    @property
    def y(self) -> str:
        return self.feature_spec.response.name

    def __repr__(self) -> str:
        return (
            f"ModelHandle(id={self.id!r}, algorithm={self.algorithm!r}, "
            f"category={self.model_category.value}, epochs={self.epochs_trained})"
        )
