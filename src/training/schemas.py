# ==============================================================================
# Training Schemas
# ==============================================================================
#
# Pydantic models shared by the session client and the cluster-side jobs.
#
# Schema Overview:
#   - ColumnType / ColumnInfo: semantic type of a dataset column
#   - FeatureSpec: how raw columns are encoded into the network input
#   - MetricsSummary: regression or classification metrics for a model
#   - VariableImportance: per-column importance of a trained network
#
# FeatureSpec is computed once from the training data and travels with the
# model (workers, saved model directories, serving), so the same encoding is
# applied at training, prediction and serving time.
#
# ==============================================================================

from enum import StrEnum, auto
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ColumnType(StrEnum):
    """Semantic column type."""

    NUMERIC = auto()
    CATEGORICAL = auto()


class ModelCategory(StrEnum):
    BINOMIAL = "Binomial"
    MULTINOMIAL = "Multinomial"
    REGRESSION = "Regression"


class ColumnInfo(BaseModel):
    """Name, semantic type and (for categoricals) sorted levels of a column."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ColumnType
    levels: List[str] | None = None

    @property
    def is_categorical(self) -> bool:
        return self.type == ColumnType.CATEGORICAL


class FeatureColumn(BaseModel):
    """Encoding parameters of one input column."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ColumnType
    mean: float = 0.0
    std: float = 1.0
    levels: List[str] = Field(default_factory=list)

    @property
    def width(self) -> int:
        return len(self.levels) if self.type == ColumnType.CATEGORICAL else 1


class FeatureSpec(BaseModel):
    """Input and response encoding of a model."""

    model_config = ConfigDict(frozen=True)

    features: List[FeatureColumn]
    response: ColumnInfo
    standardize: bool = True

    @property
    def input_dim(self) -> int:
        return sum(col.width for col in self.features)

    @property
    def is_classification(self) -> bool:
        return self.response.is_categorical

    @property
    def domain(self) -> List[str]:
        return list(self.response.levels or [])

    @property
    def output_dim(self) -> int:
        return len(self.domain) if self.is_classification else 1

    @property
    def category(self) -> ModelCategory:
        if not self.is_classification:
            return ModelCategory.REGRESSION
        if len(self.domain) == 2:
            return ModelCategory.BINOMIAL
        return ModelCategory.MULTINOMIAL

    @property
    def feature_names(self) -> List[str]:
        return [col.name for col in self.features]

    def source_columns(self) -> List[str]:
        """Source column of every encoded input unit, in encoding order."""
        sources = []
        for col in self.features:
            sources.extend([col.name] * col.width)
        return sources


class ConfusionMatrix(BaseModel):
    """Rows are actual levels, columns are predicted levels."""

    domain: List[str]
    matrix: List[List[int]]


class MetricsSummary(BaseModel):
    """Scoring metrics of a model on one dataset."""

    model_config = ConfigDict(protected_namespaces=())

    model_category: ModelCategory
    nobs: int
    mse: float
    rmse: float

    # Regression
    mae: float | None = None
    r2: float | None = None
    mean_residual_deviance: float | None = None

    # Classification
    logloss: float | None = None
    accuracy: float | None = None
    mean_per_class_error: float | None = None
    auc: float | None = None
    confusion_matrix: ConfusionMatrix | None = None


class VariableImportance(BaseModel):
    variable: str
    relative_importance: float
    scaled_importance: float
    percentage: float
