"""Feature encoding, network construction, scoring and metrics on in-memory data."""

import math

import numpy as np
import pandas as pd
import pytest
import torch

from src.training.data import encode_batch, encode_features, encode_target
from src.training.metrics import compute_metrics
from src.training.model import Maxout, TabularMLP, gedeon_importance
from src.training.schemas import (
    ColumnInfo,
    ColumnType,
    FeatureColumn,
    FeatureSpec,
    ModelCategory,
)
from src.training.scoring import BatchScorer, predict_frame, probability_columns


@pytest.fixture
def spec() -> FeatureSpec:
    return FeatureSpec(
        features=[
            FeatureColumn(name="x", type=ColumnType.NUMERIC, mean=1.0, std=2.0),
            FeatureColumn(
                name="color", type=ColumnType.CATEGORICAL, levels=["blue", "red"]
            ),
        ],
        response=ColumnInfo(
            name="label", type=ColumnType.CATEGORICAL, levels=["no", "yes"]
        ),
    )


@pytest.fixture
def regression_spec() -> FeatureSpec:
    return FeatureSpec(
        features=[FeatureColumn(name="x", type=ColumnType.NUMERIC)],
        response=ColumnInfo(name="target", type=ColumnType.NUMERIC),
        standardize=False,
    )


def test_feature_spec_layout(spec):
    assert spec.input_dim == 3
    assert spec.output_dim == 2
    assert spec.category == ModelCategory.BINOMIAL
    assert spec.source_columns() == ["x", "color", "color"]


def test_encode_features_standardizes_and_one_hot_encodes(spec):
    frame = pd.DataFrame({"x": [3.0, None, 1.0], "color": ["red", "green", None]})
    encoded = encode_features(frame, spec)

    assert encoded.dtype == np.float32
    np.testing.assert_allclose(
        encoded,
        [
            [1.0, 0.0, 1.0],  # (3 - 1) / 2, red
            [0.0, 0.0, 0.0],  # missing -> mean, unseen level -> zeros
            [0.0, 0.0, 0.0],
        ],
    )


def test_encode_target(spec, regression_spec):
    codes = encode_target(pd.Series(["yes", "no", None, "maybe"]), spec)
    assert codes.tolist() == [1, 0, -1, -1]

    values = encode_target(pd.Series([1.5, None]), regression_spec)
    assert values[0] == pytest.approx(1.5)
    assert math.isnan(values[1])


def test_encode_batch_drops_missing_targets(spec):
    batch = pd.DataFrame(
        {"x": [1.0, 2.0, 3.0], "color": ["red", "blue", "red"], "label": ["yes", None, "no"]}
    )
    encoded = encode_batch(batch, spec)
    assert encoded["features"].shape == (2, 3)
    assert encoded["target"].tolist() == [1, 0]


@pytest.mark.parametrize("activation", ["Tanh", "Rectifier", "Maxout", "MaxoutWithDropout"])
def test_network_shapes(activation):
    model = TabularMLP(
        input_dim=4,
        output_dim=3,
        hidden=[6, 5],
        activation=activation,
        hidden_dropout_ratios=[0.2, 0.2] if "Dropout" in activation else None,
    )
    out = model(torch.randn(7, 4))
    assert out.shape == (7, 3)
    assert len(model.weight_matrices()) == 3
    assert any(isinstance(m, Maxout) for m in model.net) == activation.startswith("Maxout")


def test_regression_network_outputs_vector():
    model = TabularMLP(input_dim=2, output_dim=1, hidden=[4], classification=False)
    assert model(torch.randn(5, 2)).shape == (5,)


def test_l1_l2_penalty():
    model = TabularMLP(input_dim=2, output_dim=2, hidden=[3], l1=0.1, l2=0.01)
    expected = sum(
        0.1 * w.abs().sum() + 0.01 * w.pow(2).sum() for w in model.weight_matrices()
    )
    assert model._penalty().item() == pytest.approx(expected.item(), rel=1e-5)


def test_manual_rate_uses_sgd_with_annealing():
    model = TabularMLP(
        input_dim=2, output_dim=2, hidden=[3], adaptive_rate=False, rate=0.1, momentum_start=0.5
    )
    optimizers = model.configure_optimizers()
    assert isinstance(optimizers["optimizer"], torch.optim.SGD)
    assert optimizers["lr_scheduler"]["interval"] == "step"

    adaptive = TabularMLP(input_dim=2, output_dim=2, hidden=[3])
    assert isinstance(adaptive.configure_optimizers(), torch.optim.Adadelta)


@pytest.mark.parametrize("activation", ["Rectifier", "Maxout"])
def test_gedeon_importance_per_input(activation):
    model = TabularMLP(input_dim=5, output_dim=2, hidden=[8, 4], activation=activation)
    importance = gedeon_importance(model)
    assert importance.shape == (5,)
    assert torch.all(importance >= 0)


def test_predict_frame_classification(spec):
    model = TabularMLP(input_dim=spec.input_dim, output_dim=2, hidden=[4]).eval()
    frame = pd.DataFrame({"x": [0.0, 2.0, 5.0], "color": ["red", "blue", "red"]})
    scored = predict_frame(model, spec, frame)

    assert list(scored.columns) == ["predict", "p_no", "p_yes"]
    assert set(scored["predict"]) <= {"no", "yes"}
    np.testing.assert_allclose(scored[probability_columns(spec)].sum(axis=1), 1.0)


def test_batch_scorer_keeps_columns_and_resets_index(spec):
    model = TabularMLP(input_dim=spec.input_dim, output_dim=2, hidden=[4])
    batch = pd.DataFrame(
        {"x": [1.0, 2.0], "color": ["red", "blue"], "label": ["no", "yes"]},
        index=[10, 11],
    )
    scored = BatchScorer(model, spec, keep_columns=["label"])(batch)
    assert scored.index.tolist() == [0, 1]
    assert scored["label"].tolist() == ["no", "yes"]


def test_classification_metrics(spec):
    scored = pd.DataFrame(
        {
            "label": ["no", "yes", "yes", "no", None],
            "p_no": [0.9, 0.2, 0.6, 0.7, 0.5],
            "p_yes": [0.1, 0.8, 0.4, 0.3, 0.5],
        }
    )
    metrics = compute_metrics(scored, spec)

    assert metrics.model_category == ModelCategory.BINOMIAL
    assert metrics.nobs == 4
    assert metrics.accuracy == pytest.approx(0.75)
    assert metrics.confusion_matrix.domain == ["no", "yes"]
    assert metrics.confusion_matrix.matrix == [[2, 0], [1, 1]]
    assert metrics.mean_per_class_error == pytest.approx(0.25)
    assert metrics.auc == pytest.approx(1.0)
    expected_logloss = -np.mean(np.log([0.9, 0.8, 0.4, 0.7]))
    assert metrics.logloss == pytest.approx(expected_logloss)
    assert metrics.mae is None


def test_regression_metrics(regression_spec):
    scored = pd.DataFrame({"target": [1.0, 2.0, 3.0, None], "predict": [1.5, 2.0, 2.5, 9.0]})
    metrics = compute_metrics(scored, regression_spec)

    assert metrics.model_category == ModelCategory.REGRESSION
    assert metrics.nobs == 3
    assert metrics.mse == pytest.approx(1 / 6)
    assert metrics.mae == pytest.approx(1 / 3)
    assert metrics.r2 == pytest.approx(0.75)
    assert metrics.confusion_matrix is None


def test_metrics_need_known_targets(regression_spec):
    scored = pd.DataFrame({"target": [None, None], "predict": [1.0, 2.0]})
    with pytest.raises(ValueError, match="No rows"):
        compute_metrics(scored, regression_spec)
