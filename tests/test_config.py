"""Option validation of DeepLearningConfig."""

import pytest
from pydantic import ValidationError

from src.training.config import (
    Activation,
    DeepLearningConfig,
    resolve_algorithm,
)


def make(**options) -> DeepLearningConfig:
    return DeepLearningConfig(x=["x1", "x2"], y="label", **options)


def test_defaults():
    config = make()
    assert config.hidden == [200, 200]
    assert config.activation == Activation.RECTIFIER
    assert config.adaptive_rate
    assert config.effective_hidden_dropout == [0.0, 0.0]
    assert not config.cross_validated


def test_config_is_frozen():
    config = make()
    with pytest.raises(ValidationError):
        config.epochs = 3


def test_unknown_option_rejected():
    with pytest.raises(ValidationError, match="extra"):
        make(hiden=[10])


def test_target_cannot_be_feature():
    with pytest.raises(ValidationError, match="cannot also be a feature"):
        DeepLearningConfig(x=["x1", "label"], y="label")


def test_feature_columns_required():
    with pytest.raises(ValidationError):
        DeepLearningConfig(x=[], y="label")


def test_hidden_dropout_needs_dropout_activation():
    with pytest.raises(ValidationError, match="WithDropout"):
        make(hidden=[10, 10], hidden_dropout_ratios=[0.1, 0.1])


def test_hidden_dropout_length_must_match():
    with pytest.raises(ValidationError, match="layers"):
        make(
            hidden=[10, 10],
            activation="TanhWithDropout",
            hidden_dropout_ratios=[0.1],
        )


def test_dropout_activation_defaults_to_half():
    config = make(hidden=[8, 8, 8], activation="MaxoutWithDropout")
    assert config.activation.base == "Maxout"
    assert config.effective_hidden_dropout == [0.5, 0.5, 0.5]


def test_manual_rate_options_need_adaptive_rate_off():
    with pytest.raises(ValidationError, match="adaptive_rate=False"):
        make(rate=0.01)
    config = make(adaptive_rate=False, rate=0.01, momentum_start=0.5)
    assert config.rate == 0.01


def test_adaptive_options_need_adaptive_rate_on():
    with pytest.raises(ValidationError, match="adaptive_rate=True"):
        make(adaptive_rate=False, rho=0.9)


@pytest.mark.parametrize("options", [{"nfolds": 1}, {"nfolds": 3, "fold_column": "f"}])
def test_invalid_cross_validation(options):
    with pytest.raises(ValidationError):
        make(**options)


def test_fold_column_cannot_be_feature():
    with pytest.raises(ValidationError, match="fold_column"):
        make(fold_column="x1")


def test_reproducible_requires_seed():
    with pytest.raises(ValidationError, match="seed"):
        make(reproducible=True)
    assert make(reproducible=True, seed=1).reproducible


def test_architecture_snapshot():
    config = make(hidden=[5], activation="Tanh")
    assert config.architecture() == {
        "hidden": [5],
        "activation": Activation.TANH,
        "x": ["x1", "x2"],
        "y": "label",
        "adaptive_rate": True,
    }


def test_resolve_algorithm():
    assert resolve_algorithm("DeepLearning") is DeepLearningConfig
    with pytest.raises(ValueError, match="Unknown algorithm"):
        resolve_algorithm("gbm")
