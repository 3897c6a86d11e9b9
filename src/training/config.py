# ==============================================================================
# Algorithm Configuration
# ==============================================================================
#
# Enumerated, immutable configuration structures per algorithm, validated
# when a request is constructed (before anything is sent to the cluster).
#
# Algorithms:
#   - deeplearning: feed-forward network (DeepLearningConfig)
#
# Option groups (DeepLearningConfig):
#   - Columns: x (features), y (target)
#   - Architecture: hidden, activation, dropout ratios
#   - Regularization: l1, l2
#   - Optimizer: adaptive_rate (ADADELTA: rho, epsilon) or manual SGD
#     (rate, rate_annealing, momentum_start/ramp/stable, nesterov)
#   - Stopping: epochs, stopping_rounds/metric/tolerance, max_runtime_secs
#   - Continuation: checkpoint (id of a previously trained model)
#   - Cross-validation: nfolds + fold_assignment, or fold_column
#   - Reproducibility: reproducible + seed
#
# Usage:
#   config_cls = resolve_algorithm("deeplearning")
#   config = config_cls(x=["x1", "x2"], y="label", hidden=[32, 32], epochs=5)
#
# ==============================================================================

from enum import StrEnum
from typing import Dict, List, Literal, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveInt,
    model_validator,
)


class Activation(StrEnum):
    TANH = "Tanh"
    TANH_WITH_DROPOUT = "TanhWithDropout"
    RECTIFIER = "Rectifier"
    RECTIFIER_WITH_DROPOUT = "RectifierWithDropout"
    MAXOUT = "Maxout"
    MAXOUT_WITH_DROPOUT = "MaxoutWithDropout"

    @property
    def base(self) -> str:
        return self.value.removesuffix("WithDropout")

    @property
    def with_dropout(self) -> bool:
        return self.value.endswith("WithDropout")


# Options whose change makes a checkpoint incompatible
ARCHITECTURE_OPTIONS = ("hidden", "activation", "x", "y", "adaptive_rate")

_MANUAL_RATE_OPTIONS = (
    "rate",
    "rate_annealing",
    "momentum_start",
    "momentum_ramp",
    "momentum_stable",
    "nesterov_accelerated_gradient",
)
_ADAPTIVE_RATE_OPTIONS = ("rho", "epsilon")


class DeepLearningConfig(BaseModel):
    """Options of a deep learning (multi-layer perceptron) fit."""

    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    # Columns
    x: List[str] = Field(..., min_length=1, description="Feature columns")
    y: str = Field(..., min_length=1, description="Target column")
    model_id: str | None = None

    # Architecture
    hidden: List[PositiveInt] = Field(default_factory=lambda: [200, 200])
    activation: Activation = Activation.RECTIFIER
    input_dropout_ratio: float = Field(0.0, ge=0.0, lt=1.0)
    hidden_dropout_ratios: List[float] | None = None

    # Training length and batching
    epochs: PositiveInt = 10
    mini_batch_size: PositiveInt = 32
    num_workers: PositiveInt | None = None

    # Regularization
    l1: NonNegativeFloat = 0.0
    l2: NonNegativeFloat = 0.0

    # Optimizer
    adaptive_rate: bool = True
    rho: float = Field(0.99, gt=0.0, lt=1.0)
    epsilon: float = Field(1e-8, gt=0.0)
    rate: float = Field(0.005, gt=0.0)
    rate_annealing: NonNegativeFloat = 1e-6
    momentum_start: float = Field(0.0, ge=0.0, lt=1.0)
    momentum_ramp: float = Field(1e6, gt=0.0)
    momentum_stable: float = Field(0.0, ge=0.0, lt=1.0)
    nesterov_accelerated_gradient: bool = True

    # Preprocessing
    standardize: bool = True

    # Early stopping
    stopping_rounds: NonNegativeInt = 5
    stopping_metric: Literal[
        "AUTO", "deviance", "logloss", "MSE", "misclassification"
    ] = "AUTO"
    stopping_tolerance: NonNegativeFloat = 0.0
    max_runtime_secs: NonNegativeFloat = 0.0

    # Checkpoint continuation
    checkpoint: str | None = None

    # Cross-validation
    nfolds: NonNegativeInt = 0
    fold_assignment: Literal["AUTO", "Random"] = "AUTO"
    fold_column: str | None = None

    # Reproducibility
    reproducible: bool = False
    seed: int | None = None

    @model_validator(mode="after")
    def _check_options(self) -> "DeepLearningConfig":
        if self.y in self.x:
            raise ValueError(f"Target column '{self.y}' cannot also be a feature")
        if len(set(self.x)) != len(self.x):
            raise ValueError("Feature columns must be unique")

        if self.hidden_dropout_ratios is not None:
            if not self.activation.with_dropout:
                raise ValueError(
                    "hidden_dropout_ratios requires a *WithDropout activation, "
                    f"got {self.activation.value}"
                )
            if len(self.hidden_dropout_ratios) != len(self.hidden):
                raise ValueError(
                    f"hidden_dropout_ratios has {len(self.hidden_dropout_ratios)} "
                    f"entries but hidden has {len(self.hidden)} layers"
                )
            if any(not 0.0 <= r < 1.0 for r in self.hidden_dropout_ratios):
                raise ValueError("hidden_dropout_ratios must be in [0, 1)")

        given = self.model_fields_set
        if self.adaptive_rate:
            misplaced = [o for o in _MANUAL_RATE_OPTIONS if o in given]
            if misplaced:
                raise ValueError(
                    f"{', '.join(misplaced)} only apply when adaptive_rate=False"
                )
        else:
            misplaced = [o for o in _ADAPTIVE_RATE_OPTIONS if o in given]
            if misplaced:
                raise ValueError(
                    f"{', '.join(misplaced)} only apply when adaptive_rate=True"
                )

        if self.nfolds == 1:
            raise ValueError("nfolds must be 0 (disabled) or at least 2")
        if self.nfolds and self.fold_column:
            raise ValueError("Specify either nfolds or fold_column, not both")
        if self.fold_column and (
            self.fold_column in self.x or self.fold_column == self.y
        ):
            raise ValueError("fold_column cannot be a feature or the target")

        if self.reproducible and self.seed is None:
            raise ValueError("reproducible=True requires a seed")
        return self

    @property
    def effective_hidden_dropout(self) -> List[float]:
        """Dropout per hidden layer (0.5 default for *WithDropout activations)."""
        if self.hidden_dropout_ratios is not None:
            return list(self.hidden_dropout_ratios)
        if self.activation.with_dropout:
            return [0.5] * len(self.hidden)
        return [0.0] * len(self.hidden)

    @property
    def cross_validated(self) -> bool:
        return self.nfolds >= 2 or self.fold_column is not None

    def architecture(self) -> Dict[str, object]:
        """Snapshot of the options that define the network topology."""
        return {name: getattr(self, name) for name in ARCHITECTURE_OPTIONS}


ALGORITHMS: Dict[str, Type[BaseModel]] = {
    "deeplearning": DeepLearningConfig,
}


def resolve_algorithm(name: str) -> Type[BaseModel]:
    """Return the configuration class of an algorithm name."""
    try:
        return ALGORITHMS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown algorithm '{name}'. Available: {', '.join(sorted(ALGORITHMS))}"
        ) from None
